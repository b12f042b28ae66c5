from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

InstanceStatus = Literal["DEPLOYING", "RUNNING", "STOPPED", "RESTARTING", "ERROR"]

DeploymentAction = Literal[
    "DEPLOY",
    "CLEANUP",
    "START",
    "STOP",
    "RESTART",
    "DESTROY",
    "REDEPLOY",
    "CONFIG_UPDATE",
]
LogStatus = Literal["SUCCESS", "QUEUED", "FAILED"]


@dataclass
class ChannelEntry:
    """One messaging channel: its type plus a free-form credential/settings map.

    ``config`` keys keep the runtime's camelCase spelling (``botToken``,
    ``allowlist``, ``guilds`` ...), because that's how they are stored and
    submitted.
    """

    type: str
    config: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    enabled: bool = True

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ChannelEntry:
        raw = dict(raw)
        ch_type = str(raw.pop("type")).upper()
        config = raw.pop("config", None)
        ch_id = raw.pop("id", None)
        enabled = bool(raw.pop("enabled", True))
        # Flat form: {"type": "TELEGRAM", "botToken": "..."}
        merged = {**raw, **(config or {})}
        return cls(type=ch_type, config=merged, id=ch_id, enabled=enabled)


@dataclass
class DelegationTarget:
    """Another instance this one may hand tasks to (legacy single-hop relay)."""

    id: str
    name: str
    gateway_url: str | None = None
    token: str | None = None
    role: str | None = None


@dataclass
class BindingRule:
    """Route messages from one channel account/peer straight to a specialist."""

    channel: str
    account_id: str | None = None
    peer_id: str | None = None


@dataclass
class SpecialistAgent:
    id: str
    name: str
    role: str | None = None
    bindings: list[BindingRule] = field(default_factory=list)


@dataclass
class MultiAgentRoster:
    enabled: bool = False
    agents: list[SpecialistAgent] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.agents)


@dataclass
class SecretVariable:
    name: str
    value: str
    description: str | None = None


@dataclass
class DesiredConfiguration:
    """Backend-agnostic description of what an instance should run.

    The last four fields are never stored directly: the synchronizer fills them
    in from memory, agent links and the meta overlay right before compiling.
    """

    provider: str
    api_key: str
    model: str | None = None
    channels: list[ChannelEntry] = field(default_factory=list)

    web_search_enabled: bool = False
    web_search_key: str | None = None
    browser_enabled: bool = False
    tts_enabled: bool = False
    tts_key: str | None = None
    canvas_enabled: bool = False
    cron_enabled: bool = False
    memory_enabled: bool = False

    workspace: str | None = None
    agent_name: str | None = None
    system_prompt: str | None = None
    thinking_mode: str | None = None
    session_mode: str | None = None
    dm_policy: str | None = None
    gateway_token: str | None = None

    memory_digest: str | None = None
    delegation_targets: list[DelegationTarget] = field(default_factory=list)
    multi_agent: MultiAgentRoster | None = None
    secret_variables: list[SecretVariable] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DesiredConfiguration:
        """Build from a snake_case dict (CLI input, fixtures)."""
        raw = dict(raw)
        channels = [ChannelEntry.from_dict(c) for c in raw.pop("channels", [])]
        targets = [DelegationTarget(**t) for t in raw.pop("delegation_targets", [])]
        variables = [SecretVariable(**v) for v in raw.pop("secret_variables", [])]
        roster_raw = raw.pop("multi_agent", None)
        roster = None
        if roster_raw is not None:
            roster = MultiAgentRoster(
                enabled=bool(roster_raw.get("enabled", False)),
                agents=[
                    SpecialistAgent(
                        id=a["id"],
                        name=a.get("name", a["id"]),
                        role=a.get("role"),
                        bindings=[BindingRule(**b) for b in a.get("bindings", [])],
                    )
                    for a in roster_raw.get("agents", [])
                ],
            )
        return cls(
            channels=channels,
            delegation_targets=targets,
            secret_variables=variables,
            multi_agent=roster,
            **raw,
        )


@dataclass
class Instance:
    id: str
    user_id: str
    port: int
    container_name: str
    status: InstanceStatus = "DEPLOYING"
    container_id: str | None = None
    service_url: str | None = None
    access_url: str | None = None
    last_health_check: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class DeploymentLogEntry:
    instance_id: str
    action: DeploymentAction
    status: LogStatus
    message: str | None = None
    error: str | None = None
    timestamp: str | None = None
    id: int | None = None


@dataclass
class DeploymentResult:
    instance_id: str
    resource_id: str | None
    resource_name: str
    port: int
    access_url: str | None
    status: InstanceStatus
    gateway_token: str


@dataclass
class Deployment:
    """Latest deployment of a remote service as reported by the control plane."""

    id: str
    status: str
    url: str | None = None
    created_at: str | None = None


@dataclass
class LogLine:
    timestamp: str
    severity: str
    message: str

    def render(self) -> str:
        return f"[{self.timestamp}] [{self.severity}] {self.message}"
