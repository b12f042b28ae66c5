"""The bridge-server.js artifact run beside every agent runtime.

Both backends ship it byte-for-byte: the remote one as a base64 env var, the
local one as a read-only bind mount.
"""

from __future__ import annotations

import base64
from functools import cache
from importlib import resources
from pathlib import Path

from clawfleet.config import get_settings


@cache
def _packaged_script() -> str:
    return resources.files("clawfleet").joinpath("assets/bridge-server.js").read_text("utf-8")


def bridge_script() -> str:
    override = get_settings().runtime.bridge_script
    if override:
        return Path(override).expanduser().read_text("utf-8")
    return _packaged_script()


def bridge_script_b64() -> str:
    return base64.b64encode(bridge_script().encode("utf-8")).decode("ascii")


def write_bridge_script(dest: Path) -> Path:
    """Write the script to ``dest`` if its content differs. Returns ``dest``."""
    content = bridge_script()
    dest.parent.mkdir(parents=True, exist_ok=True)
    if not dest.exists() or dest.read_text("utf-8") != content:
        dest.write_text(content, "utf-8")
    return dest
