"""Boot script for the agent runtime container.

The remote platform runs start commands in exec form (no shell, no variable
expansion), so the script is shipped base64-encoded inside a ``/bin/sh -c``
wrapper. The local backend writes the same script to a mounted file instead.

At boot the script:

1. optionally sources an env file (local backend),
2. optionally writes ``$OPENCLAW_CONFIG`` to the config path (remote backend),
3. writes IDENTITY.md / SOUL.md from ``$_AGENT_NAME`` / ``$_SYSTEM_PROMPT``,
   emitting only the lines for inputs that are actually set,
4. starts the bridge server in the background,
5. execs the runtime.

All quoting goes through :func:`sh_quote`.
"""

from __future__ import annotations

import base64
import shlex

from clawfleet.compiler import AGENT_NAME_VAR, SYSTEM_PROMPT_VAR

CONFIG_ENV = "OPENCLAW_CONFIG"
GATEWAY_TOKEN_ENV = "OPENCLAW_GATEWAY_TOKEN"
BRIDGE_ENV = "_BRIDGE_SCRIPT_B64"
BRIDGE_PATH = "/tmp/bridge-server.js"
SCRIPT_PATH = "/tmp/clawfleet-start.sh"


def sh_quote(value: str) -> str:
    return shlex.quote(value)


def _sh_path(path: str) -> str:
    """Quote a path, keeping a leading ``~/`` expandable as ``$HOME``."""
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"' + sh_quote(path[1:])
    return sh_quote(path)


def build_start_script(
    *,
    agent_name: bool,
    system_prompt: bool,
    binary: str = "openclaw",
    config_path: str = "/tmp/.openclaw/openclaw.json",
    workspace: str = "~/.openclaw/workspace",
    inline_config: bool = True,
    env_file: str | None = None,
    bridge_from_env: bool = True,
) -> str:
    """Render the boot script.

    ``agent_name`` / ``system_prompt`` say whether those identity inputs are
    set; with neither, no identity files are written at all.
    """
    config_dir = config_path.rsplit("/", 1)[0] or "/"
    lines = ["#!/bin/sh", "set -e"]

    if env_file:
        lines.append(f". {sh_quote(env_file)}")

    bin_q = sh_quote(binary)
    lines += [
        f"RUNTIME_BIN={bin_q}",
        f'if [ ! -x "$RUNTIME_BIN" ]; then RUNTIME_BIN="$(command -v {bin_q} 2>/dev/null || true)"; fi',
        'if [ -z "$RUNTIME_BIN" ]; then echo "[startup] runtime binary not found (PATH=$PATH)" >&2; exit 1; fi',
        f"WORKSPACE={_sh_path(workspace)}",
        f'mkdir -p {sh_quote(config_dir)} "$WORKSPACE"',
    ]

    if inline_config:
        lines.append(f"printf '%s' \"${CONFIG_ENV}\" > {sh_quote(config_path)}")

    if agent_name:
        lines.append(
            f'if [ -n "${AGENT_NAME_VAR}" ]; then '
            f"printf '# Identity\\n\\nname: %s\\n' \"${AGENT_NAME_VAR}\" > \"$WORKSPACE/IDENTITY.md\"; "
            "fi"
        )
    if agent_name or system_prompt:
        soul = ["{"]
        if agent_name:
            soul.append(
                f'  if [ -n "${AGENT_NAME_VAR}" ]; then printf \'# %s\\n\\n\' "${AGENT_NAME_VAR}"; fi'
            )
        if system_prompt:
            soul.append(
                f'  if [ -n "${SYSTEM_PROMPT_VAR}" ]; then printf \'%s\\n\' "${SYSTEM_PROMPT_VAR}"; fi'
            )
        soul.append('} > "$WORKSPACE/SOUL.md"')
        lines += soul

    if bridge_from_env:
        lines.append(f"printf '%s' \"${BRIDGE_ENV}\" | base64 -d > {BRIDGE_PATH}")
    lines += [
        f"node {BRIDGE_PATH} &",
        "sleep 1",
        f'exec "$RUNTIME_BIN" --config {sh_quote(config_path)}',
    ]
    return "\n".join(lines) + "\n"


def wrap_start_script(script: str) -> str:
    """One-line exec-form command that unpacks and runs ``script`` under /bin/sh."""
    encoded = base64.b64encode(script.encode("utf-8")).decode("ascii")
    return (
        f"/bin/sh -c \"printf '%s' '{encoded}' | base64 -d > {SCRIPT_PATH} "
        f'&& /bin/sh {SCRIPT_PATH}"'
    )


def build_start_command(*, agent_name: bool, system_prompt: bool, **kwargs) -> str:
    return wrap_start_script(
        build_start_script(agent_name=agent_name, system_prompt=system_prompt, **kwargs)
    )


def render_env_file(env: dict[str, str]) -> str:
    """``export NAME='value'`` lines for sourcing from the boot script."""
    lines = [
        f"export {name}={sh_quote(value)}"
        for name, value in sorted(env.items())
        if name.isidentifier() and name.isascii()
    ]
    return "\n".join(lines) + "\n"
