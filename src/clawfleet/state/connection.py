"""The fleet database handle.

One aiosqlite connection per process, opened by ``init_database()`` against
``Settings.db_path``. Table definitions live in :mod:`clawfleet.state.schema`.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from clawfleet.config import get_settings
from clawfleet.state.schema import create_schema

_db: aiosqlite.Connection | None = None

# sqlite3 opens its implicit transaction per connection, not per coroutine,
# so interleaved multi-statement writes would commit or roll back each
# other's rows. They all go through atomic_write().
_write_lock: asyncio.Lock | None = None


def _get_db() -> aiosqlite.Connection:
    if _db is None:
        raise RuntimeError("Fleet database is not open; call init_database() first")
    return _db


def _now() -> str:
    """UTC ISO-8601 timestamp used for every created_at / updated_at column."""
    return datetime.now(UTC).isoformat()


@asynccontextmanager
async def atomic_write() -> AsyncIterator[aiosqlite.Connection]:
    """Serialize a multi-statement write: commit on exit, roll back on error.

    Port allocation and the instance insert share one of these, so two
    concurrent deploys can never take the same port.
    """
    global _write_lock
    if _write_lock is None:
        _write_lock = asyncio.Lock()

    db = _get_db()
    async with _write_lock:
        try:
            yield db
            await db.commit()
        except Exception:
            await db.rollback()
            raise


async def _update_by_id(
    table: str,
    row_id: str,
    updates: dict[str, Any],
    allowed_fields: Iterable[str],
) -> None:
    """Partial UPDATE of one row. Keys outside ``allowed_fields`` are dropped."""
    allowed = set(allowed_fields)
    columns = [name for name in updates if name in allowed]
    if not columns:
        return

    assignments = ", ".join(f"{name} = ?" for name in columns)
    db = _get_db()
    await db.execute(
        f"UPDATE {table} SET {assignments} WHERE id = ?",
        [*(updates[name] for name in columns), row_id],
    )
    await db.commit()


async def _open(target: str) -> aiosqlite.Connection:
    global _write_lock
    conn = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row
    # a lock created under a previous event loop can't be awaited on this one
    _write_lock = None
    await create_schema(conn)
    return conn


async def init_database() -> None:
    global _db
    path = get_settings().db_path
    path.parent.mkdir(parents=True, exist_ok=True)
    _db = await _open(str(path))


async def close_database() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _init_test_database() -> None:
    """Swap in a fresh in-memory database (tests).

    The old connection's worker thread belongs to the previous test's event
    loop, which is already closed, so ``await close()`` would never return.
    ``stop()`` queues the close on the worker thread directly.
    """
    global _db
    if _db is not None:
        _db.stop()
        if _db._thread is not None and _db._thread.is_alive():
            _db._thread.join(timeout=2)
    _db = await _open(":memory:")
