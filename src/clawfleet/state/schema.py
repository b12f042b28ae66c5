"""DDL and column migrations.

``_SCHEMA`` is the source of truth for the latest table definitions.
``CREATE TABLE IF NOT EXISTS`` handles brand-new databases; ``_ensure_columns``
adds columns that older databases are missing.
"""

from __future__ import annotations

import re

import aiosqlite

from clawfleet.logger import logger

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS instances (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    port INTEGER NOT NULL,
    container_id TEXT,
    container_name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'DEPLOYING',
    service_url TEXT,
    access_url TEXT,
    last_health_check TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_instances_user ON instances(user_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_instances_port ON instances(port);

CREATE TABLE IF NOT EXISTS deployment_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id TEXT NOT NULL,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    error TEXT,
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_deployment_logs_instance ON deployment_logs(instance_id, id);

CREATE TABLE IF NOT EXISTS configurations (
    id TEXT PRIMARY KEY,
    instance_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    api_key_enc TEXT,
    model TEXT,
    web_search_enabled INTEGER DEFAULT 0,
    web_search_key_enc TEXT,
    browser_enabled INTEGER DEFAULT 0,
    tts_enabled INTEGER DEFAULT 0,
    tts_key_enc TEXT,
    canvas_enabled INTEGER DEFAULT 0,
    cron_enabled INTEGER DEFAULT 0,
    memory_enabled INTEGER DEFAULT 0,
    workspace TEXT,
    agent_name TEXT,
    system_prompt TEXT,
    thinking_mode TEXT,
    session_mode TEXT,
    dm_policy TEXT,
    gateway_token_enc TEXT,
    full_config TEXT,
    updated_at TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_configurations_instance ON configurations(instance_id);

CREATE TABLE IF NOT EXISTS channels (
    id TEXT PRIMARY KEY,
    config_id TEXT NOT NULL,
    type TEXT NOT NULL,
    enabled INTEGER DEFAULT 1,
    config_enc TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_channels_config ON channels(config_id);

CREATE TABLE IF NOT EXISTS agent_links (
    source_instance_id TEXT NOT NULL,
    target_instance_id TEXT NOT NULL,
    role TEXT,
    created_at TEXT,
    PRIMARY KEY (source_instance_id, target_instance_id)
);
"""


_TABLE_RE = re.compile(r"CREATE TABLE IF NOT EXISTS (\w+)\s*\((.*?)\);", re.DOTALL)
_CONSTRAINT_PREFIXES = ("PRIMARY", "FOREIGN", "UNIQUE", "CHECK")


def _declared_columns(schema: str) -> dict[str, dict[str, str]]:
    """``{table: {column: "column definition"}}`` for every table in ``schema``."""
    declared: dict[str, dict[str, str]] = {}
    for table, body in _TABLE_RE.findall(schema):
        columns: dict[str, str] = {}
        for raw in body.splitlines():
            definition = raw.strip().rstrip(",")
            if not definition or definition.startswith("--"):
                continue
            if definition.upper().startswith(_CONSTRAINT_PREFIXES):
                continue
            name, _, rest = definition.partition(" ")
            if rest:
                columns[name] = definition
        declared[table] = columns
    return declared


async def _ensure_columns(database: aiosqlite.Connection) -> None:
    """Bring databases created by older releases up to the current columns."""
    for table, columns in _declared_columns(_SCHEMA).items():
        cursor = await database.execute(f"PRAGMA table_info({table})")
        present = {row[1] for row in await cursor.fetchall()}
        if not present:
            continue
        for name in columns.keys() - present:
            await database.execute(f"ALTER TABLE {table} ADD COLUMN {columns[name]}")
            logger.info("Schema column added", table=table, column=name)
    await database.commit()


async def create_schema(database: aiosqlite.Connection) -> None:
    await database.executescript(_SCHEMA)
    await _ensure_columns(database)
