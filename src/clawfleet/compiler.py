"""DesiredConfiguration → (runtime config tree, secret env map).

Everything here is pure: no I/O, no clock, no randomness. Ports and the
default workspace come from the ``runtime`` settings section, the same values
the backends publish. The synchronizer calls :func:`compile_config` on every
rebuild and relies on equal input producing equal output.

Channel ``config`` maps keep the runtime's camelCase keys; the compiled tree
is the runtime's JSON document, so its keys are camelCase too.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from clawfleet.ai_providers import default_model, provider_env_var
from clawfleet.config import RuntimeConfig, get_settings
from clawfleet.types import ChannelEntry, DesiredConfiguration, MultiAgentRoster

AGENT_NAME_VAR = "_AGENT_NAME"
SYSTEM_PROMPT_VAR = "_SYSTEM_PROMPT"

# Channel type → credential fields that must all be non-empty.
REQUIRED_CHANNEL_FIELDS: dict[str, tuple[str, ...]] = {
    "WHATSAPP": (),  # paired by QR code at runtime
    "TELEGRAM": ("botToken",),
    "DISCORD": ("token", "applicationId"),
    "SLACK": ("botToken", "appToken"),
    "SIGNAL": ("phoneNumber",),
    "GOOGLE_CHAT": ("serviceAccount",),
    "MATRIX": ("homeserverUrl", "accessToken"),
}

# Channel type → (env var, credential field)
CHANNEL_ENV_VARS: dict[str, tuple[tuple[str, str], ...]] = {
    "TELEGRAM": (("TELEGRAM_BOT_TOKEN", "botToken"),),
    "DISCORD": (("DISCORD_TOKEN", "token"), ("DISCORD_APPLICATION_ID", "applicationId")),
    "SLACK": (("SLACK_BOT_TOKEN", "botToken"), ("SLACK_APP_TOKEN", "appToken")),
}

_DM_POLICIES = {
    "pairing": "pairing",
    "open": "open",
    "closed": "disabled",
    "allowlist": "allowlist",
}


@dataclass(frozen=True)
class CompiledConfig:
    runtime_config: dict[str, Any]
    env: dict[str, str]

    def to_json(self) -> str:
        """Canonical serialization of the runtime config (stable key order)."""
        return json.dumps(self.runtime_config, sort_keys=True, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------


def normalize_dm_policy(value: str | None) -> str:
    """Map the stored DM policy onto the runtime's vocabulary.

    Anything missing or unknown becomes ``pairing``: strangers must pair
    before they can talk to the agent.
    """
    if not value:
        return "pairing"
    return _DM_POLICIES.get(value.strip().lower(), "pairing")


def _split_ids(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        items: list[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        return []
    return [s for s in (str(v).strip() for v in items if v is not None) if s]


def normalize_allowlist(value: Any) -> list[str]:
    """Accept a list or a comma-separated string; return trimmed, non-empty ids."""
    return _split_ids(value)


def normalize_guilds(value: Any) -> dict[str, Any] | None:
    """Expand guild/room ids into ``{id: {}}``; already-keyed maps pass through.

    Returns ``None`` for empty input so the caller can omit the field.
    """
    if not value:
        return None
    if isinstance(value, dict):
        return dict(value)
    ids = _split_ids(value)
    if not ids:
        return None
    return {gid: {} for gid in ids}


def is_channel_configured(channel: ChannelEntry) -> bool:
    required = REQUIRED_CHANNEL_FIELDS.get(channel.type.upper(), ())
    return all(channel.config.get(f) for f in required)


def filter_configured_channels(channels: list[ChannelEntry]) -> list[ChannelEntry]:
    """Drop disabled channels and channels missing a required credential.

    Incomplete entries are expected (templates pre-seed empty channels), so
    they are skipped silently.
    """
    return [c for c in channels if c.enabled and is_channel_configured(c)]


# ---------------------------------------------------------------------------
# Runtime config
# ---------------------------------------------------------------------------


def _channel_block(channel: ChannelEntry, dm_policy: str | None) -> tuple[str, dict[str, Any]]:
    cfg = channel.config
    policy = normalize_dm_policy(dm_policy)
    allow_from = normalize_allowlist(cfg.get("allowlist"))

    match channel.type.upper():
        case "WHATSAPP":
            block: dict[str, Any] = {
                "allowFrom": allow_from,
                "dmPolicy": normalize_dm_policy(cfg.get("dmPolicy") or dm_policy),
            }
            if cfg.get("groups"):
                block["groups"] = cfg["groups"]
            if cfg.get("selfChatMode"):
                block["selfChatMode"] = True
            return "whatsapp", block
        case "TELEGRAM":
            return "telegram", {
                "enabled": True,
                "botToken": cfg["botToken"],
                "allowFrom": allow_from,
                "dmPolicy": policy,
            }
        case "DISCORD":
            block = {
                "enabled": True,
                "token": cfg["token"],
                "dm": {"policy": policy, "allowFrom": allow_from},
            }
            guilds = normalize_guilds(cfg.get("guilds"))
            if guilds:
                block["guilds"] = guilds
            return "discord", block
        case "SLACK":
            return "slack", {
                "enabled": True,
                "botToken": cfg["botToken"],
                "appToken": cfg["appToken"],
                "dm": {"policy": policy, "allowFrom": allow_from},
            }
        case "SIGNAL":
            return "signal", {
                "enabled": True,
                "phoneNumber": cfg["phoneNumber"],
                "allowFrom": allow_from,
            }
        case "GOOGLE_CHAT":
            return "googlechat", {"enabled": True, "serviceAccount": cfg["serviceAccount"]}
        case "MATRIX":
            block = {
                "enabled": True,
                "homeserverUrl": cfg["homeserverUrl"],
                "accessToken": cfg["accessToken"],
            }
            if cfg.get("userId"):
                block["userId"] = cfg["userId"]
            rooms = normalize_guilds(cfg.get("rooms"))
            if rooms:
                block["rooms"] = rooms
            return "matrix", block
        case other:
            # Unknown types carry their raw settings under the lowercased type.
            return other.lower(), dict(cfg)


def _peer_match(channel: str | None, peer_id: str | None) -> dict[str, str] | None:
    if not peer_id:
        return None
    normalized = str(peer_id).strip()
    if not normalized:
        return None
    # Telegram group ids are negative (-100...), DMs are positive
    kind = "group" if channel == "telegram" and normalized.startswith("-") else "dm"
    return {"kind": kind, "id": normalized}


def _apply_roster(config: dict[str, Any], roster: MultiAgentRoster, workspace: str) -> None:
    specialist_ids = [a.id for a in roster.agents]
    main: dict[str, Any] = {
        "id": "main",
        "default": True,
        # Without allowAgents the coordinator can only spawn itself.
        "subagents": {"allowAgents": specialist_ids},
    }
    specialists = []
    for agent in roster.agents:
        entry: dict[str, Any] = {"id": agent.id, "workspace": f"{workspace}/{agent.id}"}
        if agent.name:
            entry["identity"] = {"name": agent.name}
        specialists.append(entry)
    config["agents"]["list"] = [main, *specialists]
    config["tools"]["agentToAgent"] = {"enabled": True, "allow": specialist_ids}

    bindings = []
    for agent in roster.agents:
        for rule in agent.bindings:
            if not (rule.channel or rule.account_id or rule.peer_id):
                continue
            match: dict[str, Any] = {}
            if rule.channel:
                match["channel"] = rule.channel
            if rule.account_id:
                match["accountId"] = rule.account_id
            peer = _peer_match(rule.channel, rule.peer_id)
            if peer:
                match["peer"] = peer
            bindings.append({"agentId": agent.id, "match": match})
    if bindings:
        config["bindings"] = bindings


def needs_web_fetch(desired: DesiredConfiguration) -> bool:
    """Features that make the agent call back over HTTP need web fetch."""
    return bool(
        desired.browser_enabled
        or desired.memory_enabled
        or desired.delegation_targets
        or (desired.multi_agent is not None and desired.multi_agent.enabled)
        or desired.secret_variables
    )


def build_runtime_config(
    desired: DesiredConfiguration, runtime: RuntimeConfig | None = None
) -> dict[str, Any]:
    """The runtime's JSON document. Ports and the default workspace come from ``runtime``."""
    runtime = runtime or get_settings().runtime
    workspace = desired.workspace or runtime.default_workspace
    config: dict[str, Any] = {
        "gateway": {
            "bind": "lan",
            "port": runtime.gateway_port,
            "mode": "local",
            "auth": {"mode": "token", "token": desired.gateway_token},
            "http": {"endpoints": {"chatCompletions": {"enabled": True}}},
        },
        "agents": {
            "defaults": {
                "workspace": workspace,
                "model": {"primary": desired.model or default_model(desired.provider)},
            },
        },
        "channels": {},
        "tools": {"web": {}},
    }

    if desired.thinking_mode:
        config["agents"]["defaults"]["thinkingDefault"] = desired.thinking_mode

    if desired.multi_agent is not None and desired.multi_agent.active:
        _apply_roster(config, desired.multi_agent, workspace)

    for channel in filter_configured_channels(desired.channels):
        key, block = _channel_block(channel, desired.dm_policy)
        config["channels"][key] = block

    if desired.web_search_enabled:
        search: dict[str, Any] = {"enabled": True}
        if desired.web_search_key:
            search["apiKey"] = desired.web_search_key
        config["tools"]["web"]["search"] = search

    if needs_web_fetch(desired):
        config["tools"]["web"]["fetch"] = {"enabled": True}

    if desired.tts_enabled and desired.tts_key:
        config["messages"] = {
            "tts": {
                "auto": "inbound",
                "provider": "elevenlabs",
                "elevenlabs": {"enabled": True, "apiKey": desired.tts_key},
            }
        }

    if desired.canvas_enabled:
        config["canvasHost"] = {"enabled": True, "port": runtime.canvas_port}

    if desired.cron_enabled:
        config["cron"] = {"enabled": True}

    if desired.memory_enabled:
        config["agents"]["defaults"]["memorySearch"] = {"enabled": True}

    return config


# ---------------------------------------------------------------------------
# Secret env
# ---------------------------------------------------------------------------


def _is_env_name(name: str) -> bool:
    return bool(name) and name.isidentifier() and name.isascii() and name.upper() == name


def build_secret_env(desired: DesiredConfiguration) -> dict[str, str]:
    env: dict[str, str] = {provider_env_var(desired.provider): desired.api_key}

    for channel in filter_configured_channels(desired.channels):
        for var, field_name in CHANNEL_ENV_VARS.get(channel.type.upper(), ()):
            env[var] = str(channel.config[field_name])

    if desired.web_search_key:
        env["BRAVE_API_KEY"] = desired.web_search_key
    if desired.tts_key:
        env["ELEVENLABS_API_KEY"] = desired.tts_key

    # Consumed by the boot script (identity files), never by the JSON config
    if desired.agent_name:
        env[AGENT_NAME_VAR] = desired.agent_name
    if desired.system_prompt:
        env[SYSTEM_PROMPT_VAR] = desired.system_prompt

    for var in desired.secret_variables:
        if _is_env_name(var.name) and var.name not in env and var.value:
            env[var.name] = var.value

    return env


def compile_config(
    desired: DesiredConfiguration, runtime: RuntimeConfig | None = None
) -> CompiledConfig:
    return CompiledConfig(
        runtime_config=build_runtime_config(desired, runtime),
        env=build_secret_env(desired),
    )
