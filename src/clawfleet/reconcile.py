"""Map a backend's reported deployment status onto InstanceStatus."""

from __future__ import annotations

from clawfleet.types import InstanceStatus

_IN_PROGRESS = frozenset({"building", "deploying", "initializing", "waiting", "removing"})
_FAILED = frozenset({"failed", "crashed"})


def reconcile_status(current: InstanceStatus, backend_status: str | None) -> InstanceStatus:
    """Next internal status given what the backend reports.

    - ``success`` is always RUNNING.
    - In-progress labels become DEPLOYING, except that a RESTARTING instance
      stays RESTARTING until the backend settles.
    - ``failed`` / ``crashed`` become ERROR.
    - Anything unrecognized leaves the status as it was.
    """
    status = (backend_status or "").strip().lower()
    if status == "success":
        return "RUNNING"
    if status in _IN_PROGRESS:
        return "RESTARTING" if current == "RESTARTING" else "DEPLOYING"
    if status in _FAILED:
        return "ERROR"
    return current
