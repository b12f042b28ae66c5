"""Stored configuration per instance, plus its channels.

Secrets are written through a :class:`SecretBox` and come back decrypted.
The ``full_config`` column holds the last compiled runtime config merged with
the meta overlay (see :mod:`clawfleet.overlay`).
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from clawfleet.crypto import SecretBox
from clawfleet.state.connection import _get_db, _now, atomic_write
from clawfleet.types import ChannelEntry, DesiredConfiguration

# DesiredConfiguration field → encrypted column
_SECRET_COLUMNS = {
    "api_key": "api_key_enc",
    "web_search_key": "web_search_key_enc",
    "tts_key": "tts_key_enc",
    "gateway_token": "gateway_token_enc",
}
_FLAG_COLUMNS = {
    "web_search_enabled",
    "browser_enabled",
    "tts_enabled",
    "canvas_enabled",
    "cron_enabled",
    "memory_enabled",
}
_PLAIN_COLUMNS = {
    "provider",
    "model",
    "workspace",
    "agent_name",
    "system_prompt",
    "thinking_mode",
    "session_mode",
    "dm_policy",
}


def _to_columns(fields: dict[str, Any], box: SecretBox) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name, value in fields.items():
        if name in _SECRET_COLUMNS:
            out[_SECRET_COLUMNS[name]] = box.encrypt(value)
        elif name in _FLAG_COLUMNS:
            out[name] = 1 if value else 0
        elif name in _PLAIN_COLUMNS:
            out[name] = value
        else:
            raise KeyError(f"Not a stored configuration field: {name}")
    return out


def _row_to_desired(row, channels: list[ChannelEntry], box: SecretBox) -> DesiredConfiguration:
    return DesiredConfiguration(
        provider=row["provider"],
        api_key=box.decrypt(row["api_key_enc"]) or "",
        model=row["model"],
        channels=channels,
        web_search_enabled=bool(row["web_search_enabled"]),
        web_search_key=box.decrypt(row["web_search_key_enc"]),
        browser_enabled=bool(row["browser_enabled"]),
        tts_enabled=bool(row["tts_enabled"]),
        tts_key=box.decrypt(row["tts_key_enc"]),
        canvas_enabled=bool(row["canvas_enabled"]),
        cron_enabled=bool(row["cron_enabled"]),
        memory_enabled=bool(row["memory_enabled"]),
        workspace=row["workspace"],
        agent_name=row["agent_name"],
        system_prompt=row["system_prompt"],
        thinking_mode=row["thinking_mode"],
        session_mode=row["session_mode"],
        dm_policy=row["dm_policy"],
        gateway_token=box.decrypt(row["gateway_token_enc"]),
    )


async def _config_id(instance_id: str) -> str | None:
    db = _get_db()
    cursor = await db.execute(
        "SELECT id FROM configurations WHERE instance_id = ?", (instance_id,)
    )
    row = await cursor.fetchone()
    return row["id"] if row else None


async def save_configuration(
    instance_id: str, desired: DesiredConfiguration, box: SecretBox
) -> str:
    """Create or replace the stored configuration and channels. Returns the config id.

    Enrichment fields (digest, delegation targets, roster, variables) are
    not stored here.
    """
    fields = {name: getattr(desired, name) for name in _SECRET_COLUMNS}
    fields.update({name: getattr(desired, name) for name in _FLAG_COLUMNS | _PLAIN_COLUMNS})
    columns = _to_columns(fields, box)
    columns["updated_at"] = _now()

    async with atomic_write() as db:
        cursor = await db.execute(
            "SELECT id FROM configurations WHERE instance_id = ?", (instance_id,)
        )
        row = await cursor.fetchone()
        if row:
            config_id = row["id"]
            assignments = ", ".join(f"{c} = ?" for c in columns)
            await db.execute(
                f"UPDATE configurations SET {assignments} WHERE id = ?",
                [*columns.values(), config_id],
            )
            await db.execute("DELETE FROM channels WHERE config_id = ?", (config_id,))
        else:
            config_id = str(uuid.uuid4())
            names = ["id", "instance_id", *columns]
            await db.execute(
                f"INSERT INTO configurations ({', '.join(names)}) "
                f"VALUES ({', '.join('?' for _ in names)})",
                [config_id, instance_id, *columns.values()],
            )
        for channel in desired.channels:
            await db.execute(
                "INSERT INTO channels (id, config_id, type, enabled, config_enc) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    channel.id or str(uuid.uuid4()),
                    config_id,
                    channel.type.upper(),
                    1 if channel.enabled else 0,
                    box.encrypt(json.dumps(channel.config)),
                ),
            )
    return config_id


async def load_configuration(instance_id: str, box: SecretBox) -> DesiredConfiguration | None:
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM configurations WHERE instance_id = ?", (instance_id,)
    )
    row = await cursor.fetchone()
    if row is None:
        return None
    channels = await list_channels(row["id"], box)
    return _row_to_desired(row, channels, box)


async def update_configuration(instance_id: str, box: SecretBox, **fields: Any) -> None:
    """Partial update of stored fields (secret fields are re-encrypted)."""
    columns = _to_columns(fields, box)
    if not columns:
        return
    columns["updated_at"] = _now()
    db = _get_db()
    assignments = ", ".join(f"{c} = ?" for c in columns)
    await db.execute(
        f"UPDATE configurations SET {assignments} WHERE instance_id = ?",
        [*columns.values(), instance_id],
    )
    await db.commit()


async def get_gateway_token(instance_id: str, box: SecretBox) -> str | None:
    db = _get_db()
    cursor = await db.execute(
        "SELECT gateway_token_enc FROM configurations WHERE instance_id = ?", (instance_id,)
    )
    row = await cursor.fetchone()
    return box.decrypt(row["gateway_token_enc"]) if row else None


async def get_full_config(instance_id: str) -> dict[str, Any] | None:
    db = _get_db()
    cursor = await db.execute(
        "SELECT full_config FROM configurations WHERE instance_id = ?", (instance_id,)
    )
    row = await cursor.fetchone()
    if row is None or not row["full_config"]:
        return None
    return json.loads(row["full_config"])


async def set_full_config(instance_id: str, blob: dict[str, Any]) -> None:
    db = _get_db()
    await db.execute(
        "UPDATE configurations SET full_config = ?, updated_at = ? WHERE instance_id = ?",
        (json.dumps(blob, sort_keys=True), _now(), instance_id),
    )
    await db.commit()


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


async def list_channels(config_id: str, box: SecretBox) -> list[ChannelEntry]:
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM channels WHERE config_id = ? ORDER BY rowid", (config_id,)
    )
    return [
        ChannelEntry(
            id=row["id"],
            type=row["type"],
            enabled=bool(row["enabled"]),
            config=json.loads(box.decrypt(row["config_enc"]) or "{}"),
        )
        for row in await cursor.fetchall()
    ]


async def upsert_channel(instance_id: str, channel: ChannelEntry, box: SecretBox) -> None:
    """Add a channel, or replace the stored one of the same type."""
    config_id = await _config_id(instance_id)
    if config_id is None:
        raise KeyError(f"No configuration for instance {instance_id}")
    ch_type = channel.type.upper()
    async with atomic_write() as db:
        await db.execute(
            "DELETE FROM channels WHERE config_id = ? AND type = ?", (config_id, ch_type)
        )
        await db.execute(
            "INSERT INTO channels (id, config_id, type, enabled, config_enc) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                channel.id or str(uuid.uuid4()),
                config_id,
                ch_type,
                1 if channel.enabled else 0,
                box.encrypt(json.dumps(channel.config)),
            ),
        )


async def delete_channel(instance_id: str, channel_type: str) -> bool:
    config_id = await _config_id(instance_id)
    if config_id is None:
        return False
    db = _get_db()
    cursor = await db.execute(
        "DELETE FROM channels WHERE config_id = ? AND type = ?",
        (config_id, channel_type.upper()),
    )
    await db.commit()
    return cursor.rowcount > 0
