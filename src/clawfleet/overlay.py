"""Meta overlay: side data persisted alongside the compiled config.

The compiler never sees the overlay. After every rebuild the synchronizer
stores the compiled config next to the overlay dict exactly as it was read,
so the roster and the encrypted variables survive recompilation. The roster
and variable mutators rewrite only the key they edit.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from clawfleet.types import BindingRule, MultiAgentRoster, SpecialistAgent

META_KEY = "__clawfleet_meta"


@dataclass
class StoredVariable:
    """A named secret variable as persisted: the value stays encrypted."""

    name: str
    value_enc: str
    description: str | None = None


@dataclass
class MetaOverlay:
    multi_agent: MultiAgentRoster | None = None
    env_vars: list[StoredVariable] = field(default_factory=list)
    # Keys this version doesn't know about; written back untouched.
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> MetaOverlay:
        if not isinstance(raw, dict):
            return cls()

        roster = None
        ma = raw.get("nativeMultiAgent")
        if isinstance(ma, dict):
            roster = MultiAgentRoster(
                enabled=bool(ma.get("enabled", False)),
                agents=[
                    SpecialistAgent(
                        id=a["id"],
                        name=a.get("name") or a["id"],
                        role=a.get("role"),
                        bindings=[
                            BindingRule(
                                channel=b.get("channel"),
                                account_id=b.get("accountId"),
                                peer_id=b.get("peerId"),
                            )
                            for b in a.get("bindings") or []
                        ],
                    )
                    for a in ma.get("agents") or []
                    if isinstance(a, dict) and a.get("id")
                ],
            )

        env_vars = [
            StoredVariable(
                name=v["name"],
                value_enc=v.get("valueEnc", ""),
                description=v.get("description"),
            )
            for v in raw.get("envVars") or []
            if isinstance(v, dict) and v.get("name")
        ]
        extra = {k: v for k, v in raw.items() if k not in ("nativeMultiAgent", "envVars")}
        return cls(multi_agent=roster, env_vars=env_vars, extra=copy.deepcopy(extra))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = copy.deepcopy(self.extra)
        if self.multi_agent is not None:
            out["nativeMultiAgent"] = {
                "enabled": self.multi_agent.enabled,
                "agents": [_agent_to_dict(a) for a in self.multi_agent.agents],
            }
        if self.env_vars:
            out["envVars"] = [
                {
                    "name": v.name,
                    "valueEnc": v.value_enc,
                    **({"description": v.description} if v.description else {}),
                }
                for v in self.env_vars
            ]
        return out


def _agent_to_dict(agent: SpecialistAgent) -> dict[str, Any]:
    out: dict[str, Any] = {"id": agent.id, "name": agent.name}
    if agent.role:
        out["role"] = agent.role
    bindings = []
    for b in agent.bindings:
        entry = {}
        if b.channel:
            entry["channel"] = b.channel
        if b.account_id:
            entry["accountId"] = b.account_id
        if b.peer_id:
            entry["peerId"] = b.peer_id
        bindings.append(entry)
    if bindings:
        out["bindings"] = bindings
    return out


def extract_overlay(blob: dict[str, Any] | None) -> MetaOverlay:
    """Read the overlay out of a persisted config blob (missing → empty)."""
    return MetaOverlay.from_dict((blob or {}).get(META_KEY))


def stored_overlay(blob: dict[str, Any] | None) -> dict[str, Any] | None:
    """The overlay exactly as persisted, or None when the blob has none."""
    raw = (blob or {}).get(META_KEY)
    return copy.deepcopy(raw) if isinstance(raw, dict) else None


def merge_overlay(
    compiled_config: dict[str, Any], overlay: MetaOverlay | dict[str, Any] | None
) -> dict[str, Any]:
    """Return the blob to persist: compiled config plus the overlay under its key.

    A plain dict (see :func:`stored_overlay`) is written back as is, so fields
    :class:`MetaOverlay` doesn't model survive. ``compiled_config`` is not modified.
    """
    blob = copy.deepcopy(compiled_config)
    blob.pop(META_KEY, None)
    if isinstance(overlay, MetaOverlay):
        blob[META_KEY] = overlay.to_dict()
    else:
        blob[META_KEY] = copy.deepcopy(overlay) if overlay else {}
    return blob


def strip_overlay(blob: dict[str, Any] | None) -> dict[str, Any]:
    """The runtime-facing part of a persisted blob."""
    return {k: v for k, v in (blob or {}).items() if k != META_KEY}
