"""Tests for system-prompt enrichment text."""

from __future__ import annotations

from clawfleet.prompts import (
    append_section,
    build_delegation_instructions,
    build_memory_instructions,
    build_orchestration_instructions,
    build_variable_instructions,
    prepend_memory_digest,
    variable_lookup_url,
)
from clawfleet.types import DelegationTarget, SpecialistAgent


class TestComposition:
    def test_prepend_digest(self):
        result = prepend_memory_digest("Be brief.", "User likes tea.")
        assert result == "User likes tea.\n\nBe brief."

    def test_prepend_digest_without_prompt(self):
        assert prepend_memory_digest(None, "digest") == "digest"

    def test_empty_digest_keeps_prompt(self):
        assert prepend_memory_digest("Be brief.", "  ") == "Be brief."
        assert prepend_memory_digest(None, None) is None

    def test_append_section(self):
        assert append_section("base", "extra") == "base\n\nextra"
        assert append_section(None, "extra") == "extra"
        assert append_section("base\n\n", "extra") == "base\n\nextra"


class TestInstructionText:
    def test_memory_instructions_reference_instance_and_key(self):
        text = build_memory_instructions("inst-1", "mem-key", "https://fleet.example.com/")
        assert "https://fleet.example.com/api/memory/inst-1/search?key=mem-key" in text
        assert "https://fleet.example.com/api/memory/inst-1/write?key=mem-key" in text
        assert text.startswith("[MEMORY API")

    def test_variable_instructions_list_names_only(self):
        url = variable_lookup_url("inst-1", "gw", "https://fleet.example.com")
        text = build_variable_instructions(["STRIPE_KEY", "DB_URL"], url)
        assert "- STRIPE_KEY" in text
        assert "- DB_URL" in text
        assert "https://fleet.example.com/api/variables/inst-1?key=gw" in text

    def test_delegation_with_roles_auto_routes(self):
        targets = [DelegationTarget("b1", "Bee", role="research")]
        text = build_delegation_instructions("a1", "tok", targets, "https://x.test")
        assert "Bee (research) (id: b1)" in text
        assert "Auto-route" in text
        assert "https://x.test/api/agent-relay/a1?key=tok" in text

    def test_delegation_without_roles(self):
        targets = [DelegationTarget("b1", "Bee")]
        text = build_delegation_instructions("a1", "tok", targets, "https://x.test")
        assert "Auto-route" not in text
        assert "explicitly asks" in text

    def test_orchestration_lists_specialists(self):
        text = build_orchestration_instructions(
            [SpecialistAgent("ops", "Ops", "runs deploys"), SpecialistAgent("qa", "QA")]
        )
        assert '- Ops (id: "ops") - runs deploys' in text
        assert '- QA (id: "qa")' in text
        assert "sessions_spawn" in text
