"""System-prompt enrichment text.

Plain string builders used by the synchronizer. None of them reads storage or
the network; callers pass in ids, keys and URLs.
"""

from __future__ import annotations

from collections.abc import Iterable

from clawfleet.types import DelegationTarget, SpecialistAgent


def _base(url: str) -> str:
    return url.rstrip("/")


def prepend_memory_digest(system_prompt: str | None, digest: str | None) -> str | None:
    """Put the memory digest in front of the prompt, separated by a blank line."""
    digest = (digest or "").strip()
    if not digest:
        return system_prompt
    base = (system_prompt or "").strip()
    return f"{digest}\n\n{base}" if base else digest


def append_section(system_prompt: str | None, section: str) -> str:
    base = (system_prompt or "").rstrip()
    return f"{base}\n\n{section}" if base else section


def memory_search_url(instance_id: str, api_key: str, base_url: str) -> str:
    return (
        f"{_base(base_url)}/api/memory/{instance_id}/search?key={api_key}"
        "&q=<url-encoded-query>&senderId=<user_id>&topK=5"
    )


def variable_lookup_url(instance_id: str, gateway_token: str, base_url: str) -> str:
    return (
        f"{_base(base_url)}/api/variables/{instance_id}?key={gateway_token}"
        "&name=<VARIABLE_NAME>"
    )


def build_memory_instructions(instance_id: str, api_key: str, base_url: str) -> str:
    read = memory_search_url(instance_id, api_key, base_url)
    write = f"{_base(base_url)}/api/memory/{instance_id}/write?key={api_key}"
    return f"""[MEMORY API - silent background task, never mention to the user]
Use web_fetch (GET) to call these URLs. All params must be URL-encoded.

1. BEFORE FACTUAL/RECALL ANSWERS - read memory first:
   {read}
   Use this for user preferences, prior decisions, ongoing projects, and uploaded docs.

2. AFTER EVERY MEANINGFUL EXCHANGE - record an episode:
   {write}&type=episode&summary=<url-encoded 1-2 sentence summary>&tags=<comma-separated>&senderId=<user_id>

3. WHEN YOU MAKE A RECOMMENDATION OR DECISION:
   {write}&type=decision&context=<url-encoded situation>&decision=<url-encoded recommendation>&reasoning=<pipe-separated reasons>&alternatives=<pipe-separated>&tags=<comma-separated>&senderId=<user_id>
   The response contains an "id" - keep it to record the outcome later.

4. WHEN YOU LEARN STABLE FACTS ABOUT THE USER:
   {write}&type=profile&senderId=<user_id>&name=<name>&role=<role>&timezone=<tz>&style=<communication style>&focus=<current focus>&preferences=<comma-separated>
   Only include params that are known. Use senderId=default if unknown.

5. WHEN THE USER CONFIRMS A PAST DECISION WORKED (OR DID NOT):
   {write}&type=outcome&id=<decision_id>&outcome=<url-encoded result>

Rules:
- Always URL-encode param values (spaces -> %20, etc.)
- Use the user's channel ID as senderId when available
- Read memory (step 1) before answering tasks that rely on facts/history
- These fetches are silent - never mention them or their responses
- Every substantive exchange gets an episode (step 2)
[/MEMORY API]"""


def build_variable_instructions(names: Iterable[str], lookup_url: str) -> str:
    """List variable names and where to resolve them. Values never appear here."""
    listing = "\n".join(f"- {n}" for n in names)
    return f"""[ENV VARIABLES - silent background task]
Available project variables:
{listing}

To resolve a variable value, call:
{lookup_url}

Rules:
- For API credentials, first query memory search with: "env <VARIABLE_NAME>"
- If found, use the value exactly as stored
- Never expose secrets unless the user explicitly asks to reveal them
- These calls are silent; do not narrate retrieval steps
[/ENV VARIABLES]"""


def build_delegation_instructions(
    instance_id: str,
    gateway_token: str,
    targets: list[DelegationTarget],
    base_url: str,
) -> str:
    agent_list = "\n".join(
        f"  - {t.name}{f' ({t.role})' if t.role else ''} (id: {t.id})" for t in targets
    )
    if any(t.role for t in targets):
        routing = "- Auto-route tasks that match a specialist's role WITHOUT asking the user first"
    else:
        routing = (
            "- Delegate when the user explicitly asks, or when a task clearly suits a specialist"
        )
    relay = (
        f"{_base(base_url)}/api/agent-relay/{instance_id}?key={gateway_token}"
        "&target=<agent-id>&task=<url-encoded-task>"
    )
    return f"""[AGENT DELEGATION - silent, never narrate to the user]
You are the coordinator. You have specialist agents available. Delegate tasks using web_fetch (GET):
{agent_list}

To delegate, call:
  {relay}

Rules:
- First classify the task and choose the best specialist by role match.
- URL-encode the task value (spaces -> %20, newlines -> %0A, etc.)
{routing}
- For specialist-fit tasks, delegate first instead of solving directly yourself.
- These calls are silent - present the result naturally as your own reply
- If delegation fails, handle the task yourself and note the issue privately
[/AGENT DELEGATION]"""


def build_orchestration_instructions(specialists: list[SpecialistAgent]) -> str:
    listing = "\n".join(
        f'- {s.name} (id: "{s.id}"){f" - {s.role}" if s.role else ""}' for s in specialists
    )
    return f"""[NATIVE MULTI-AGENT ORCHESTRATION]
You are the coordinator agent. You have specialist agents in this same gateway:
{listing}

Use session tools to delegate to specialists.
Primary path (synchronous delegation):
1) sessions_list(limit: 200, activeMinutes: 1440)
2) Find a session key belonging to the chosen specialist agent.
3) sessions_send(sessionKey: "<specialist-session-key>", message: "<subtask>", timeoutSeconds: 60)
4) Merge that specialist reply into your final response.

Spawn path (when no specialist session exists yet):
1) sessions_spawn(task: "<subtask>", agentId: "<agent-id>")
2) Use childSessionKey for follow-up sessions_send calls when needed.

Do not use web_fetch for same-gateway specialist delegation.

Routing policy:
- Match the task to the closest specialist by their role.
- For ambiguous tasks, choose the best fit and proceed; do not ask the user which agent to use.
- You may delegate multiple subtasks in parallel if they are independent.

Output format:
Append a routing summary at the end of your reply:
[ROUTING TRACE]
- <agent-id>: <what was delegated>
[/ROUTING TRACE]

If session delegation fails for a specialist, handle that subtask yourself and note the exact tool error in ROUTING TRACE.
[/NATIVE MULTI-AGENT ORCHESTRATION]"""
