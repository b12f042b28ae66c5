"""Tests for rebuild-and-apply and the settings mutations built on it."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from clawfleet.config import ServiceConfig
from clawfleet.errors import (
    ConfigValidationError,
    InstanceNotFoundError,
    ResourceNotFoundError,
)
from clawfleet.overlay import META_KEY, extract_overlay
from clawfleet.ports import PortAllocator
from clawfleet.state import (
    add_agent_link,
    create_instance,
    get_full_config,
    list_delegation_targets,
    load_configuration,
    save_configuration,
    set_full_config,
)
from clawfleet.sync import ConfigSynchronizer, normalize_agent_id, normalize_variable_name
from clawfleet.types import (
    BindingRule,
    ChannelEntry,
    MultiAgentRoster,
    SecretVariable,
    SpecialistAgent,
)
from conftest import make_settings


@pytest.fixture(autouse=True)
async def _setup(db):
    pass


@pytest.fixture
def provider():
    return AsyncMock()


@pytest.fixture
def sync(provider, box):
    return ConfigSynchronizer(provider=provider, box=box)


@pytest.fixture
def make_instance(desired, box):
    async def _make(user_id: str = "u1", **overrides) -> str:
        inst = await create_instance(user_id, f"openclaw-{user_id}", PortAllocator())
        overrides.setdefault("gateway_token", f"gw-{user_id}")
        await save_configuration(inst.id, desired(**overrides), box)
        return inst.id

    return _make


def _pushed(provider):
    """The configuration handed to the backend by the last rebuild."""
    return provider.update_config.await_args.args[1]


def _memory(digest="User likes tea.", api_key="mem-key"):
    return SimpleNamespace(
        name="fake-memory",
        build_digest=AsyncMock(return_value=digest),
        get_api_key=AsyncMock(return_value=api_key),
    )


class TestNormalizers:
    def test_agent_id(self):
        assert normalize_agent_id("  Research Bot! ") == "research-bot"
        assert normalize_agent_id("ops_2") == "ops_2"

    def test_variable_name(self):
        assert normalize_variable_name("stripe-key") == "STRIPE_KEY"
        assert normalize_variable_name("1password token") == "_1PASSWORD_TOKEN"
        assert normalize_variable_name("!!!") == ""


class TestRebuild:
    async def test_pushes_compiled_state(self, sync, provider, make_instance):
        instance_id = await make_instance(system_prompt="Be brief.")
        desired = await sync.rebuild_and_apply(instance_id)

        provider.update_config.assert_awaited_once_with(instance_id, desired)
        assert desired.system_prompt == "Be brief."
        blob = await get_full_config(instance_id)
        assert blob["gateway"]["auth"]["token"] == "gw-u1"

    async def test_missing_configuration(self, sync):
        with pytest.raises(ResourceNotFoundError):
            await sync.rebuild_and_apply("nope")

    async def test_memory_digest_and_instructions(self, provider, box, make_instance):
        memory = _memory()
        sync = ConfigSynchronizer(provider=provider, box=box, memory=memory)
        instance_id = await make_instance(system_prompt="Be brief.", memory_enabled=True)

        desired = await sync.rebuild_and_apply(instance_id)

        assert desired.memory_digest == "User likes tea."
        assert desired.system_prompt.startswith("User likes tea.\n\nBe brief.\n\n[MEMORY API")
        assert f"/api/memory/{instance_id}/search?key=mem-key" in desired.system_prompt
        memory.build_digest.assert_awaited_once_with(instance_id)

    async def test_memory_failure_is_isolated(self, provider, box, make_instance):
        memory = _memory()
        memory.build_digest.side_effect = RuntimeError("memory store down")
        sync = ConfigSynchronizer(provider=provider, box=box, memory=memory)
        instance_id = await make_instance(system_prompt="Be brief.", memory_enabled=True)

        desired = await sync.rebuild_and_apply(instance_id)

        assert desired.system_prompt == "Be brief."
        assert desired.memory_digest is None
        provider.update_config.assert_awaited_once()

    async def test_memory_without_plugin_is_skipped(self, sync, make_instance):
        instance_id = await make_instance(system_prompt="Be brief.", memory_enabled=True)
        with patch("clawfleet.sync.get_memory_service", return_value=None):
            desired = await sync.rebuild_and_apply(instance_id)
        assert desired.system_prompt == "Be brief."

    async def test_memory_disabled_is_not_consulted(self, provider, box, make_instance):
        memory = _memory()
        sync = ConfigSynchronizer(provider=provider, box=box, memory=memory)
        instance_id = await make_instance()
        await sync.rebuild_and_apply(instance_id)
        memory.build_digest.assert_not_awaited()

    async def test_delegation_instructions(self, sync, make_instance):
        source = await make_instance("u1", system_prompt="Be brief.")
        target = await make_instance("u2", agent_name="Bee")
        await add_agent_link(source, target, "research")

        desired = await sync.rebuild_and_apply(source)

        assert [t.id for t in desired.delegation_targets] == [target]
        assert "[AGENT DELEGATION" in desired.system_prompt
        assert "Bee (research)" in desired.system_prompt
        assert f"/api/agent-relay/{source}?key=gw-u1" in desired.system_prompt
        assert desired.system_prompt.startswith("Be brief.")

    async def test_delegation_skipped_without_public_url(
        self, sync, provider, make_instance, monkeypatch
    ):
        monkeypatch.setattr(
            "clawfleet.config._settings", make_settings(service=ServiceConfig())
        )
        source = await make_instance("u1", system_prompt="Be brief.")
        target = await make_instance("u2")
        await add_agent_link(source, target)

        desired = await sync.rebuild_and_apply(source)

        assert desired.system_prompt == "Be brief."
        provider.update_config.assert_awaited_once()

    async def test_serialized_per_instance(self, sync, provider, make_instance):
        instance_id = await make_instance()
        events: list[str] = []

        async def slow_push(_instance_id, _desired):
            events.append("start")
            await asyncio.sleep(0.01)
            events.append("end")

        provider.update_config.side_effect = slow_push
        await asyncio.gather(
            sync.rebuild_and_apply(instance_id), sync.rebuild_and_apply(instance_id)
        )
        assert events == ["start", "end", "start", "end"]

    async def test_sections_appended_in_fixed_order(self, provider, box, make_instance):
        sync = ConfigSynchronizer(provider=provider, box=box, memory=_memory())
        source = await make_instance("u1", system_prompt="Be brief.", memory_enabled=True)
        target = await make_instance("u2", agent_name="Bee")
        await add_agent_link(source, target)

        await sync.apply_variables_update(source, [SecretVariable("STRIPE_KEY", "sk_1")])

        prompt = _pushed(provider).system_prompt
        markers = [
            "User likes tea.",
            "Be brief.",
            "[MEMORY API",
            "[AGENT DELEGATION",
            "[ENV VARIABLES",
        ]
        positions = [prompt.index(m) for m in markers]
        assert positions == sorted(positions)

    async def test_memory_failure_still_appends_later_sections(
        self, provider, box, make_instance
    ):
        memory = _memory()
        memory.build_digest.side_effect = RuntimeError("memory store down")
        sync = ConfigSynchronizer(provider=provider, box=box, memory=memory)
        instance_id = await make_instance(system_prompt="Be brief.", memory_enabled=True)

        await sync.apply_variables_update(instance_id, [SecretVariable("STRIPE_KEY", "sk_1")])

        prompt = _pushed(provider).system_prompt
        assert prompt.startswith("Be brief.\n\n[ENV VARIABLES")
        assert "[MEMORY API" not in prompt
        assert "- STRIPE_KEY" in prompt

    async def test_back_to_back_rebuilds_are_identical(self, provider, box, make_instance):
        sync = ConfigSynchronizer(provider=provider, box=box, memory=_memory())
        source = await make_instance("u1", system_prompt="Be brief.", memory_enabled=True)
        target = await make_instance("u2")
        await add_agent_link(source, target)
        await sync.apply_variables_update(source, [SecretVariable("A", "one")])

        first = await sync.rebuild_and_apply(source)
        first_blob = await get_full_config(source)
        second = await sync.rebuild_and_apply(source)

        assert second == first
        assert await get_full_config(source) == first_blob
        calls = provider.update_config.await_args_list[-2:]
        assert calls[0].args == calls[1].args

    async def test_failed_push_keeps_persisted_config(self, sync, provider, make_instance):
        instance_id = await make_instance(system_prompt="Be brief.")
        provider.update_config.side_effect = RuntimeError("backend unreachable")

        with pytest.raises(RuntimeError, match="backend unreachable"):
            await sync.rebuild_and_apply(instance_id)

        blob = await get_full_config(instance_id)
        assert blob["gateway"]["auth"]["token"] == "gw-u1"
        assert (await load_configuration(instance_id, sync.box)).system_prompt == "Be brief."

    async def test_locks_released_after_rebuild(self, sync, provider, make_instance):
        instance_id = await make_instance()
        await asyncio.gather(
            sync.rebuild_and_apply(instance_id), sync.rebuild_and_apply(instance_id)
        )
        assert sync._locks == {}

        provider.update_config.side_effect = RuntimeError("backend unreachable")
        with pytest.raises(RuntimeError):
            await sync.rebuild_and_apply(instance_id)
        assert sync._locks == {}


class TestMultiAgent:
    async def test_roster_normalized_and_orchestration_replaces_delegation(
        self, sync, provider, make_instance
    ):
        source = await make_instance("u1")
        target = await make_instance("u2")
        await add_agent_link(source, target)
        roster = MultiAgentRoster(
            enabled=True,
            agents=[
                SpecialistAgent(
                    "Research Bot",
                    "Research",
                    " finds sources ",
                    [BindingRule("Telegram", peer_id="-100"), BindingRule("", peer_id="x")],
                ),
                SpecialistAgent("research-bot", "Duplicate"),
                SpecialistAgent("main", "Shadow"),
            ],
        )

        await sync.apply_multi_agent_update(source, roster)

        stored = extract_overlay(await get_full_config(source)).multi_agent
        assert [a.id for a in stored.agents] == ["research-bot"]
        assert stored.agents[0].role == "finds sources"
        assert stored.agents[0].bindings == [BindingRule("telegram", peer_id="-100")]

        prompt = _pushed(provider).system_prompt
        assert "[NATIVE MULTI-AGENT ORCHESTRATION]" in prompt
        assert "[AGENT DELEGATION" not in prompt
        blob = await get_full_config(source)
        assert [a["id"] for a in blob["agents"]["list"]] == ["main", "research-bot"]

    async def test_disabled_roster_falls_back_to_delegation(self, sync, provider, make_instance):
        source = await make_instance("u1")
        target = await make_instance("u2")
        await add_agent_link(source, target)
        roster = MultiAgentRoster(enabled=False, agents=[SpecialistAgent("ops", "Ops")])

        await sync.apply_multi_agent_update(source, roster)

        prompt = _pushed(provider).system_prompt
        assert "[AGENT DELEGATION" in prompt
        assert "ORCHESTRATION" not in prompt


class TestVariables:
    async def test_values_encrypted_and_only_names_in_prompt(
        self, sync, provider, box, make_instance
    ):
        instance_id = await make_instance()
        await sync.apply_variables_update(
            instance_id, [SecretVariable("stripe key", "sk_live_1", "billing")]
        )

        stored = extract_overlay(await get_full_config(instance_id)).env_vars
        assert [v.name for v in stored] == ["STRIPE_KEY"]
        assert stored[0].value_enc != "sk_live_1"
        assert box.decrypt(stored[0].value_enc) == "sk_live_1"

        pushed = _pushed(provider)
        assert pushed.secret_variables == [SecretVariable("STRIPE_KEY", "sk_live_1", "billing")]
        assert "- STRIPE_KEY" in pushed.system_prompt
        assert "sk_live_1" not in pushed.system_prompt
        assert f"/api/variables/{instance_id}?key=gw-u1" in pushed.system_prompt

    async def test_empty_value_keeps_stored_and_omitted_names_are_removed(
        self, sync, provider, make_instance
    ):
        instance_id = await make_instance()
        await sync.apply_variables_update(
            instance_id, [SecretVariable("A", "one"), SecretVariable("B", "two")]
        )
        await sync.apply_variables_update(
            instance_id, [SecretVariable("A", ""), SecretVariable("C", "")]
        )
        pushed = _pushed(provider)
        assert [(v.name, v.value) for v in pushed.secret_variables] == [("A", "one")]

    async def test_invalid_name(self, sync, make_instance):
        instance_id = await make_instance()
        with pytest.raises(ConfigValidationError):
            await sync.apply_variables_update(instance_id, [SecretVariable("!!!", "x")])

    async def test_overlay_survives_other_updates(self, sync, provider, make_instance):
        instance_id = await make_instance()
        await sync.apply_variables_update(instance_id, [SecretVariable("TOKEN", "t")])
        await sync.apply_multi_agent_update(
            instance_id, MultiAgentRoster(enabled=True, agents=[SpecialistAgent("ops", "Ops")])
        )
        await sync.apply_agent_update(instance_id, agent_name="Nova")
        await sync.apply_skills_update(instance_id, cron_enabled=True)

        overlay = extract_overlay(await get_full_config(instance_id))
        assert [v.name for v in overlay.env_vars] == ["TOKEN"]
        assert [a.id for a in overlay.multi_agent.agents] == ["ops"]
        blob = await get_full_config(instance_id)
        assert blob["cron"] == {"enabled": True}

    async def test_rebuild_keeps_unmodelled_overlay_fields(self, sync, make_instance):
        instance_id = await make_instance()
        await sync.apply_multi_agent_update(
            instance_id,
            MultiAgentRoster(
                enabled=True,
                agents=[SpecialistAgent("ops", "Ops", bindings=[BindingRule("telegram")])],
            ),
        )
        await sync.apply_variables_update(instance_id, [SecretVariable("TOKEN", "t")])

        blob = await get_full_config(instance_id)
        meta = blob[META_KEY]
        meta["nativeMultiAgent"]["agents"][0]["model"] = "claude-sonnet"
        meta["nativeMultiAgent"]["agents"][0]["bindings"][0]["note"] = "support group"
        meta["envVars"][0]["createdAt"] = "2026-01-01T00:00:00Z"
        await set_full_config(instance_id, blob)

        await sync.rebuild_and_apply(instance_id)

        assert (await get_full_config(instance_id))[META_KEY] == meta

    async def test_variables_update_keeps_unmodelled_roster_fields(self, sync, make_instance):
        instance_id = await make_instance()
        await sync.apply_multi_agent_update(
            instance_id, MultiAgentRoster(enabled=True, agents=[SpecialistAgent("ops", "Ops")])
        )
        blob = await get_full_config(instance_id)
        blob[META_KEY]["nativeMultiAgent"]["agents"][0]["model"] = "claude-sonnet"
        blob[META_KEY]["futureFeature"] = {"x": 1}
        await set_full_config(instance_id, blob)

        await sync.apply_variables_update(instance_id, [SecretVariable("TOKEN", "t")])

        meta = (await get_full_config(instance_id))[META_KEY]
        assert meta["nativeMultiAgent"]["agents"][0]["model"] == "claude-sonnet"
        assert meta["futureFeature"] == {"x": 1}
        assert [v["name"] for v in meta["envVars"]] == ["TOKEN"]


class TestSettingsMutations:
    async def test_agent_update(self, sync, box, make_instance):
        instance_id = await make_instance()
        await sync.apply_agent_update(
            instance_id, agent_name="Nova", provider="openai", api_key="", model="openai/gpt-5.2"
        )
        stored = await load_configuration(instance_id, box)
        assert stored.agent_name == "Nova"
        assert stored.provider == "OPENAI"
        assert stored.model == "openai/gpt-5.2"
        # Empty key keeps the stored one
        assert stored.api_key == "sk-test-key-123456"

    async def test_skills_update_ignores_empty_keys(self, sync, box, make_instance):
        instance_id = await make_instance(web_search_key="brave-1")
        await sync.apply_skills_update(instance_id, web_search_enabled=True, web_search_key="")
        stored = await load_configuration(instance_id, box)
        assert stored.web_search_enabled is True
        assert stored.web_search_key == "brave-1"

    async def test_security_update(self, sync, provider, make_instance):
        instance_id = await make_instance(
            channels=[ChannelEntry("TELEGRAM", {"botToken": "123456:ABCDEF"})]
        )
        await sync.apply_security_update(instance_id, dm_policy="closed", session_mode="per-peer")
        pushed = _pushed(provider)
        assert pushed.dm_policy == "closed"
        assert pushed.session_mode == "per-peer"
        blob = await get_full_config(instance_id)
        assert blob["channels"]["telegram"]["dmPolicy"] == "disabled"

    async def test_channel_update_merges_and_removes(self, sync, provider, box, make_instance):
        instance_id = await make_instance(
            channels=[
                ChannelEntry("TELEGRAM", {"botToken": "123456:ABCDEF"}),
                ChannelEntry("WHATSAPP"),
            ]
        )
        await sync.apply_channel_update(
            instance_id,
            update=[ChannelEntry("telegram", {"allowlist": "1,2"})],
            remove=["WHATSAPP"],
            add=[ChannelEntry("SLACK", {"botToken": "xb", "appToken": "xa"})],
        )
        stored = await load_configuration(instance_id, box)
        channels = {c.type: c.config for c in stored.channels}
        assert channels == {
            "TELEGRAM": {"botToken": "123456:ABCDEF", "allowlist": "1,2"},
            "SLACK": {"botToken": "xb", "appToken": "xa"},
        }
        assert {c.type for c in _pushed(provider).channels} == {"TELEGRAM", "SLACK"}

    async def test_updating_missing_channel(self, sync, make_instance):
        instance_id = await make_instance()
        with pytest.raises(ResourceNotFoundError):
            await sync.apply_channel_update(
                instance_id, update=[ChannelEntry("DISCORD", {"token": "t"})]
            )

    async def test_connections(self, sync, box, make_instance):
        source = await make_instance("u1")
        target = await make_instance("u2")
        await sync.apply_connections_update(source, add=[(target, " research ")])
        targets = await list_delegation_targets(source, box)
        assert [(t.id, t.role) for t in targets] == [(target, "research")]

        await sync.apply_connections_update(source, remove=[target])
        assert await list_delegation_targets(source, box) == []

    async def test_connection_to_self_or_unknown(self, sync, make_instance):
        source = await make_instance("u1")
        with pytest.raises(ConfigValidationError):
            await sync.apply_connections_update(source, add=[(source, None)])
        with pytest.raises(InstanceNotFoundError):
            await sync.apply_connections_update(source, add=[("ghost", None)])

    async def test_mutation_without_configuration(self, sync):
        with pytest.raises(ResourceNotFoundError):
            await sync.apply_security_update("nope", dm_policy="open")


class TestDisplay:
    async def test_secrets_masked(self, sync, make_instance):
        instance_id = await make_instance(
            tts_key="eleven-key-abcdef",
            channels=[ChannelEntry("TELEGRAM", {"botToken": "123456:ABCDEF", "allowlist": "1"})],
        )
        await sync.apply_variables_update(instance_id, [SecretVariable("TOKEN", "secret-v")])

        shown = await sync.get_config_for_display(instance_id)

        assert shown["api_key"] == "sk-t...3456"
        assert shown["tts_key"] == "elev...cdef"
        assert shown["gateway_token"] == "****"
        assert shown["channels"][0]["config"] == {"botToken": "1234...CDEF", "allowlist": "1"}
        assert shown["variables"] == [{"name": "TOKEN", "description": None}]
        assert "secret-v" not in str(shown)

    async def test_no_configuration(self, sync):
        assert await sync.get_config_for_display("nope") is None
