"""Rebuild-and-apply: converge a running instance to its stored configuration.

Every settings mutation ends in :meth:`ConfigSynchronizer.rebuild_and_apply`,
which always recomputes the full desired state from storage:

1. load the stored configuration, channels, delegation links and overlay
2. memory digest (prepended) and memory instructions (appended)
3. delegation instructions, only when native multi-agent is off
4. orchestration instructions, when native multi-agent is on
5. variable-lookup instructions (names only)
6. compile
7. persist compiled config + untouched overlay
8. push to the active backend

Steps 2-5 are fault-isolated: a failure is logged and that step is skipped.
Rebuilds for the same instance are serialized by a per-instance lock.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any

from clawfleet.compiler import compile_config
from clawfleet.config import get_settings
from clawfleet.crypto import SecretBox, get_secret_box, mask_secret
from clawfleet.deploy import DeploymentProvider, get_provider
from clawfleet.errors import (
    ConfigValidationError,
    EnrichmentError,
    InstanceNotFoundError,
    ResourceNotFoundError,
    SecretDecryptionError,
)
from clawfleet.logger import logger
from clawfleet.memory import MemoryService, get_memory_service
from clawfleet.overlay import (
    MetaOverlay,
    StoredVariable,
    extract_overlay,
    merge_overlay,
    stored_overlay,
    strip_overlay,
)
from clawfleet.prompts import (
    append_section,
    build_delegation_instructions,
    build_memory_instructions,
    build_orchestration_instructions,
    build_variable_instructions,
    prepend_memory_digest,
    variable_lookup_url,
)
from clawfleet.state import (
    add_agent_link,
    delete_channel,
    get_full_config,
    get_instance,
    list_delegation_targets,
    load_configuration,
    remove_agent_link,
    set_full_config,
    update_configuration,
    update_instance,
    upsert_channel,
)
from clawfleet.types import (
    BindingRule,
    ChannelEntry,
    DesiredConfiguration,
    MultiAgentRoster,
    SecretVariable,
    SpecialistAgent,
)

_SECRET_CHANNEL_FIELDS = frozenset(
    {"botToken", "token", "appToken", "accessToken", "serviceAccount"}
)
_AGENT_ID_UNSAFE = re.compile(r"[^a-z0-9_-]+")
_VAR_NAME_UNSAFE = re.compile(r"[^A-Z0-9_]+")

_Step = Callable[[str | None], Awaitable[str | None]]


def normalize_agent_id(raw: str) -> str:
    return _AGENT_ID_UNSAFE.sub("-", raw.strip().lower()).strip("-")


def normalize_variable_name(raw: str) -> str:
    name = _VAR_NAME_UNSAFE.sub("_", raw.strip().upper()).strip("_")
    if name and name[0].isdigit():
        name = f"_{name}"
    return name


class ConfigSynchronizer:
    def __init__(
        self,
        provider: DeploymentProvider | None = None,
        box: SecretBox | None = None,
        memory: MemoryService | None = None,
    ) -> None:
        self._provider = provider
        self._box = box
        self._memory = memory
        self._memory_resolved = memory is not None
        self._locks: dict[str, asyncio.Lock] = {}
        # holders plus waiters per instance; the lock is dropped when it hits zero
        self._lock_users: dict[str, int] = {}

    @property
    def provider(self) -> DeploymentProvider:
        if self._provider is None:
            self._provider = get_provider()
        return self._provider

    @property
    def box(self) -> SecretBox:
        if self._box is None:
            self._box = get_secret_box()
        return self._box

    @property
    def memory(self) -> MemoryService | None:
        if not self._memory_resolved:
            self._memory = get_memory_service()
            self._memory_resolved = True
        return self._memory

    @asynccontextmanager
    async def _instance_lock(self, instance_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(instance_id, asyncio.Lock())
        self._lock_users[instance_id] = self._lock_users.get(instance_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[instance_id] -= 1
            if not self._lock_users[instance_id]:
                del self._lock_users[instance_id]
                del self._locks[instance_id]

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _load(
        self, instance_id: str
    ) -> tuple[DesiredConfiguration, dict[str, Any] | None]:
        desired = await load_configuration(instance_id, self.box)
        if desired is None:
            raise ResourceNotFoundError(f"Configuration not found for instance {instance_id}")
        blob = await get_full_config(instance_id)
        overlay = extract_overlay(blob)
        targets = await list_delegation_targets(instance_id, self.box)

        variables: list[SecretVariable] = []
        for stored in overlay.env_vars:
            try:
                value = self.box.decrypt(stored.value_enc)
            except SecretDecryptionError:
                logger.warning(
                    "Skipping undecryptable variable", instance_id=instance_id, name=stored.name
                )
                continue
            if value:
                variables.append(SecretVariable(stored.name, value, stored.description))

        desired = replace(
            desired,
            delegation_targets=targets,
            multi_agent=overlay.multi_agent,
            secret_variables=variables,
        )
        return desired, stored_overlay(blob)

    async def load_desired_config(self, instance_id: str) -> DesiredConfiguration:
        """Stored configuration with links, roster and decrypted variables joined in."""
        desired, _ = await self._load(instance_id)
        return desired

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    async def _enrich(
        self, instance_id: str, step: str, prompt: str | None, fn: _Step
    ) -> str | None:
        try:
            return await fn(prompt)
        except Exception as exc:
            logger.warning(
                "Enrichment step skipped",
                instance_id=instance_id,
                step=step,
                error=str(exc),
                exc_info=True,
            )
            return prompt

    def _public_url(self) -> str:
        url = get_settings().service.public_url
        if not url:
            raise EnrichmentError("service.public_url is not set")
        return url

    async def _memory_step(
        self, instance_id: str, prompt: str | None
    ) -> tuple[str | None, str | None]:
        memory = self.memory
        if memory is None:
            raise EnrichmentError("No memory service plugin is installed")
        digest, api_key = await asyncio.gather(
            memory.build_digest(instance_id), memory.get_api_key(instance_id)
        )
        prompt = prepend_memory_digest(prompt, digest)
        base_url = get_settings().service.public_url
        if base_url and api_key:
            text = build_memory_instructions(instance_id, api_key, base_url)
            prompt = append_section(prompt, text)
        return digest, prompt

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    async def rebuild_and_apply(self, instance_id: str) -> DesiredConfiguration:
        """Recompute the full desired state, persist it and push it to the backend.

        Returns the configuration that was pushed (system prompt enriched).
        """
        async with self._instance_lock(instance_id):
            desired, raw_overlay = await self._load(instance_id)
            roster_active = desired.multi_agent is not None and desired.multi_agent.active
            prompt = desired.system_prompt

            if desired.memory_enabled:
                digest: str | None = None

                async def memory(p: str | None) -> str | None:
                    nonlocal digest
                    digest, p = await self._memory_step(instance_id, p)
                    return p

                prompt = await self._enrich(instance_id, "memory", prompt, memory)
                desired = replace(desired, memory_digest=digest)

            if desired.delegation_targets and not roster_active:

                async def delegation(p: str | None) -> str | None:
                    if not desired.gateway_token:
                        raise EnrichmentError("gateway token is missing")
                    text = build_delegation_instructions(
                        instance_id,
                        desired.gateway_token,
                        desired.delegation_targets,
                        self._public_url(),
                    )
                    return append_section(p, text)

                prompt = await self._enrich(instance_id, "delegation", prompt, delegation)

            if roster_active:

                async def orchestration(p: str | None) -> str | None:
                    text = build_orchestration_instructions(desired.multi_agent.agents)
                    return append_section(p, text)

                prompt = await self._enrich(instance_id, "orchestration", prompt, orchestration)

            if desired.secret_variables:

                async def variables(p: str | None) -> str | None:
                    if not desired.gateway_token:
                        raise EnrichmentError("gateway token is missing")
                    url = variable_lookup_url(
                        instance_id, desired.gateway_token, self._public_url()
                    )
                    names = [v.name for v in desired.secret_variables]
                    return append_section(p, build_variable_instructions(names, url))

                prompt = await self._enrich(instance_id, "variables", prompt, variables)

            desired = replace(desired, system_prompt=prompt)
            compiled = compile_config(desired)
            await set_full_config(instance_id, merge_overlay(compiled.runtime_config, raw_overlay))
            await update_instance(instance_id)

            logger.info(
                "Configuration rebuilt",
                instance_id=instance_id,
                channels=len(desired.channels),
                delegation_targets=len(desired.delegation_targets),
                roster_active=roster_active,
                variables=len(desired.secret_variables),
            )
            await self.provider.update_config(instance_id, desired)
            return desired

    # ------------------------------------------------------------------
    # Settings mutations (each ends in a rebuild)
    # ------------------------------------------------------------------

    async def _require_config(self, instance_id: str) -> DesiredConfiguration:
        desired = await load_configuration(instance_id, self.box)
        if desired is None:
            raise ResourceNotFoundError(f"Configuration not found for instance {instance_id}")
        return desired

    async def _update_fields(self, instance_id: str, fields: dict[str, Any]) -> None:
        await self._require_config(instance_id)
        if fields:
            await update_configuration(instance_id, self.box, **fields)
        logger.info("Configuration updated", instance_id=instance_id, fields=sorted(fields))

    async def apply_agent_update(
        self,
        instance_id: str,
        *,
        agent_name: str | None = None,
        system_prompt: str | None = None,
        provider: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        thinking_mode: str | None = None,
    ) -> None:
        """``None`` leaves a field unchanged; an empty ``api_key`` keeps the stored key."""
        fields: dict[str, Any] = {
            k: v
            for k, v in {
                "agent_name": agent_name,
                "system_prompt": system_prompt,
                "provider": provider.upper() if provider else None,
                "model": model,
                "thinking_mode": thinking_mode,
            }.items()
            if v is not None
        }
        if api_key:
            fields["api_key"] = api_key
        await self._update_fields(instance_id, fields)
        await self.rebuild_and_apply(instance_id)

    async def apply_channel_update(
        self,
        instance_id: str,
        *,
        add: Iterable[ChannelEntry] = (),
        update: Iterable[ChannelEntry] = (),
        remove: Iterable[str] = (),
    ) -> None:
        """Channels are keyed by type.

        ``update`` merges the given fields into the stored ones, so credentials
        that aren't resubmitted are kept.
        """
        current = await self._require_config(instance_id)
        by_type = {c.type.upper(): c for c in current.channels}

        for ch_type in remove:
            await delete_channel(instance_id, ch_type)
            by_type.pop(ch_type.upper(), None)
        for channel in update:
            existing = by_type.get(channel.type.upper())
            if existing is None:
                raise ResourceNotFoundError(f"No {channel.type.upper()} channel to update")
            merged = replace(existing, config={**existing.config, **channel.config})
            await upsert_channel(instance_id, merged, self.box)
        for channel in add:
            await upsert_channel(instance_id, channel, self.box)

        logger.info("Channels updated", instance_id=instance_id)
        await self.rebuild_and_apply(instance_id)

    async def apply_skills_update(
        self,
        instance_id: str,
        *,
        web_search_enabled: bool | None = None,
        web_search_key: str | None = None,
        browser_enabled: bool | None = None,
        tts_enabled: bool | None = None,
        tts_key: str | None = None,
        canvas_enabled: bool | None = None,
        cron_enabled: bool | None = None,
        memory_enabled: bool | None = None,
    ) -> None:
        fields: dict[str, Any] = {
            k: v
            for k, v in {
                "web_search_enabled": web_search_enabled,
                "browser_enabled": browser_enabled,
                "tts_enabled": tts_enabled,
                "canvas_enabled": canvas_enabled,
                "cron_enabled": cron_enabled,
                "memory_enabled": memory_enabled,
            }.items()
            if v is not None
        }
        if web_search_key:
            fields["web_search_key"] = web_search_key
        if tts_key:
            fields["tts_key"] = tts_key
        await self._update_fields(instance_id, fields)
        await self.rebuild_and_apply(instance_id)

    async def apply_security_update(
        self,
        instance_id: str,
        *,
        dm_policy: str | None = None,
        session_mode: str | None = None,
    ) -> None:
        fields = {
            k: v
            for k, v in {"dm_policy": dm_policy, "session_mode": session_mode}.items()
            if v is not None
        }
        await self._update_fields(instance_id, fields)
        await self.rebuild_and_apply(instance_id)

    async def _save_overlay(self, instance_id: str, overlay: MetaOverlay, key: str) -> None:
        """Re-serialize only ``key``; the rest of the stored overlay is kept as is."""
        blob = await get_full_config(instance_id)
        raw = stored_overlay(blob) or {}
        fresh = overlay.to_dict()
        if key in fresh:
            raw[key] = fresh[key]
        else:
            raw.pop(key, None)
        await set_full_config(instance_id, merge_overlay(strip_overlay(blob), raw))

    async def apply_multi_agent_update(self, instance_id: str, roster: MultiAgentRoster) -> None:
        """Replace the native multi-agent roster.

        Agent ids are lower-cased and deduplicated; bindings without a channel
        are dropped.
        """
        await self._require_config(instance_id)
        agents: list[SpecialistAgent] = []
        seen: set[str] = set()
        for agent in roster.agents:
            agent_id = normalize_agent_id(agent.id)
            if not agent_id or agent_id in seen or agent_id == "main":
                continue
            seen.add(agent_id)
            bindings = [
                BindingRule(
                    channel=b.channel.strip().lower(),
                    account_id=b.account_id or None,
                    peer_id=b.peer_id or None,
                )
                for b in agent.bindings
                if b.channel and b.channel.strip()
            ]
            agents.append(
                SpecialistAgent(
                    id=agent_id,
                    name=(agent.name or "").strip() or agent_id,
                    role=(agent.role or "").strip() or None,
                    bindings=bindings,
                )
            )

        overlay = extract_overlay(await get_full_config(instance_id))
        overlay.multi_agent = MultiAgentRoster(enabled=roster.enabled, agents=agents)
        await self._save_overlay(instance_id, overlay, "nativeMultiAgent")
        logger.info(
            "Multi-agent roster updated",
            instance_id=instance_id,
            enabled=roster.enabled,
            agents=[a.id for a in agents],
        )
        await self.rebuild_and_apply(instance_id)

    async def apply_variables_update(
        self, instance_id: str, variables: Iterable[SecretVariable]
    ) -> None:
        """Replace the named variables.

        Names are normalized to upper-case identifiers. An empty value keeps the
        stored value for that name; names left out of ``variables`` are removed.
        """
        await self._require_config(instance_id)
        overlay = extract_overlay(await get_full_config(instance_id))
        previous = {v.name: v for v in overlay.env_vars}

        updated: dict[str, StoredVariable] = {}
        for var in variables:
            name = normalize_variable_name(var.name)
            if not name:
                raise ConfigValidationError(f"Invalid variable name: {var.name!r}")
            if var.value:
                value_enc = self.box.encrypt(var.value) or ""
            elif name in previous:
                value_enc = previous[name].value_enc
            else:
                continue
            updated[name] = StoredVariable(name, value_enc, var.description or None)

        overlay.env_vars = list(updated.values())
        await self._save_overlay(instance_id, overlay, "envVars")
        logger.info("Variables updated", instance_id=instance_id, names=sorted(updated))
        await self.rebuild_and_apply(instance_id)

    async def apply_connections_update(
        self,
        instance_id: str,
        *,
        add: Iterable[tuple[str, str | None]] = (),
        remove: Iterable[str] = (),
    ) -> None:
        """Add ``(target_id, role)`` delegation links and remove links by target id."""
        await self._require_config(instance_id)
        for target_id in remove:
            await remove_agent_link(instance_id, target_id)
        for target_id, role in add:
            if target_id == instance_id:
                raise ConfigValidationError("An instance cannot delegate to itself")
            if await get_instance(target_id) is None:
                raise InstanceNotFoundError(target_id)
            await add_agent_link(instance_id, target_id, (role or "").strip() or None)
        logger.info("Agent links updated", instance_id=instance_id)
        await self.rebuild_and_apply(instance_id)

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    async def get_config_for_display(self, instance_id: str) -> dict[str, Any] | None:
        """Stored settings with every secret masked. None if there is no configuration."""
        desired = await load_configuration(instance_id, self.box)
        if desired is None:
            return None
        overlay = extract_overlay(await get_full_config(instance_id))
        targets = await list_delegation_targets(instance_id, self.box)
        roster = overlay.multi_agent

        return {
            "provider": desired.provider,
            "api_key": mask_secret(desired.api_key),
            "model": desired.model,
            "channels": [
                {
                    "id": c.id,
                    "type": c.type,
                    "enabled": c.enabled,
                    "config": {
                        k: mask_secret(str(v)) if k in _SECRET_CHANNEL_FIELDS else v
                        for k, v in c.config.items()
                    },
                }
                for c in desired.channels
            ],
            "web_search_enabled": desired.web_search_enabled,
            "web_search_key": mask_secret(desired.web_search_key),
            "browser_enabled": desired.browser_enabled,
            "tts_enabled": desired.tts_enabled,
            "tts_key": mask_secret(desired.tts_key),
            "canvas_enabled": desired.canvas_enabled,
            "cron_enabled": desired.cron_enabled,
            "memory_enabled": desired.memory_enabled,
            "workspace": desired.workspace,
            "agent_name": desired.agent_name,
            "system_prompt": desired.system_prompt,
            "thinking_mode": desired.thinking_mode,
            "session_mode": desired.session_mode,
            "dm_policy": desired.dm_policy,
            "gateway_token": mask_secret(desired.gateway_token),
            "connections": [{"id": t.id, "name": t.name, "role": t.role} for t in targets],
            "multi_agent": {
                "enabled": roster.enabled if roster else False,
                "agents": [
                    {"id": a.id, "name": a.name, "role": a.role}
                    for a in (roster.agents if roster else [])
                ],
            },
            "variables": [
                {"name": v.name, "description": v.description} for v in overlay.env_vars
            ],
        }
