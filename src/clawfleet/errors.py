"""Exception hierarchy.

Every lifecycle failure surfaces as one of these. Only the best-effort paths
(orphan cleanup, public domain creation, prompt enrichment, health checks)
catch them; everything else propagates to the caller.
"""

from __future__ import annotations


class FleetError(Exception):
    """Base class for all clawfleet errors."""


class ConfigValidationError(FleetError):
    """A required secret or credential is missing; nothing was created."""


class PortExhaustedError(FleetError):
    """Every slot in the port range is taken."""


class InstanceNotFoundError(FleetError):
    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Instance not found: {instance_id}")
        self.instance_id = instance_id


class ResourceNotFoundError(FleetError):
    """The instance row exists but its backend resource (or deployment) doesn't."""


class ControlPlaneError(FleetError):
    """Transport or API-level failure from the remote control plane.

    ``status`` is the HTTP status when the failure came from the transport,
    or ``None`` for GraphQL-level errors returned with a 200.
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class CooldownBlockedError(FleetError):
    """Control plane kept rejecting a mutation until the back-off budget ran out."""

    def __init__(self, label: str, budget: float, last_error: BaseException) -> None:
        super().__init__(
            f"{label} blocked by control-plane cooldown for {budget:.0f}s: {last_error}"
        )
        self.label = label
        self.last_error = last_error


class DeploymentFailedError(FleetError):
    """The backend reported a terminal failure (FAILED / CRASHED)."""

    def __init__(self, status: str, logs: list[str] | None = None) -> None:
        self.status = status
        self.logs = logs or []
        message = f"Deployment {status.lower()}"
        if self.logs:
            message += ":\n" + "\n".join(self.logs)
        super().__init__(message)


class DeploymentTimeoutError(FleetError):
    """Polling gave up before the deployment reached a terminal state."""


class EnrichmentError(FleetError):
    """A prompt enrichment step could not run. Always caught by the synchronizer."""


class SecretDecryptionError(FleetError):
    """Stored ciphertext couldn't be decrypted with the configured key."""
