"""Instance rows: one per user slot."""

from __future__ import annotations

import uuid

from clawfleet.ports import PortAllocator
from clawfleet.state.connection import _get_db, _now, _update_by_id, atomic_write
from clawfleet.types import Instance, InstanceStatus

_UPDATABLE = {
    "container_id",
    "status",
    "service_url",
    "access_url",
    "last_health_check",
    "updated_at",
}


def _row_to_instance(row) -> Instance:
    return Instance(
        id=row["id"],
        user_id=row["user_id"],
        port=row["port"],
        container_id=row["container_id"],
        container_name=row["container_name"],
        status=row["status"],
        service_url=row["service_url"],
        access_url=row["access_url"],
        last_health_check=row["last_health_check"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


async def create_instance(user_id: str, container_name: str, allocator: PortAllocator) -> Instance:
    """Insert a DEPLOYING row, claiming the lowest free port.

    Port lookup and insert share the write lock so concurrent deploys can't
    claim the same port.
    """
    now = _now()
    async with atomic_write() as db:
        cursor = await db.execute("SELECT port FROM instances")
        used = [row["port"] for row in await cursor.fetchall()]
        port = allocator.allocate(used)
        instance = Instance(
            id=str(uuid.uuid4()),
            user_id=user_id,
            port=port,
            container_name=container_name,
            status="DEPLOYING",
            created_at=now,
            updated_at=now,
        )
        await db.execute(
            """
            INSERT INTO instances
                (id, user_id, port, container_id, container_name, status,
                 created_at, updated_at)
            VALUES (?, ?, ?, NULL, ?, ?, ?, ?)
            """,
            (
                instance.id,
                user_id,
                port,
                container_name,
                instance.status,
                now,
                now,
            ),
        )
    return instance


async def get_instance(instance_id: str) -> Instance | None:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM instances WHERE id = ?", (instance_id,))
    row = await cursor.fetchone()
    return _row_to_instance(row) if row else None


async def get_instance_for_user(user_id: str) -> Instance | None:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM instances WHERE user_id = ?", (user_id,))
    row = await cursor.fetchone()
    return _row_to_instance(row) if row else None


async def list_instances() -> list[Instance]:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM instances ORDER BY created_at")
    return [_row_to_instance(row) for row in await cursor.fetchall()]


async def update_instance(instance_id: str, **updates) -> None:
    updates.setdefault("updated_at", _now())
    await _update_by_id("instances", instance_id, updates, _UPDATABLE)


async def set_instance_status(instance_id: str, status: InstanceStatus) -> None:
    await update_instance(instance_id, status=status)


async def delete_instance(instance_id: str) -> None:
    """Remove the row plus its configuration, channels and agent links.

    Deployment logs are kept.
    """
    async with atomic_write() as db:
        cursor = await db.execute(
            "SELECT id FROM configurations WHERE instance_id = ?", (instance_id,)
        )
        row = await cursor.fetchone()
        if row:
            await db.execute("DELETE FROM channels WHERE config_id = ?", (row["id"],))
            await db.execute("DELETE FROM configurations WHERE id = ?", (row["id"],))
        await db.execute(
            "DELETE FROM agent_links WHERE source_instance_id = ? OR target_instance_id = ?",
            (instance_id, instance_id),
        )
        await db.execute("DELETE FROM instances WHERE id = ?", (instance_id,))
