"""Agent links: instance A may delegate tasks to instance B."""

from __future__ import annotations

from clawfleet.crypto import SecretBox
from clawfleet.state.connection import _get_db, _now
from clawfleet.types import DelegationTarget


async def add_agent_link(source_id: str, target_id: str, role: str | None = None) -> None:
    db = _get_db()
    await db.execute(
        """
        INSERT INTO agent_links (source_instance_id, target_instance_id, role, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT (source_instance_id, target_instance_id) DO UPDATE SET role = excluded.role
        """,
        (source_id, target_id, role, _now()),
    )
    await db.commit()


async def remove_agent_link(source_id: str, target_id: str) -> bool:
    db = _get_db()
    cursor = await db.execute(
        "DELETE FROM agent_links WHERE source_instance_id = ? AND target_instance_id = ?",
        (source_id, target_id),
    )
    await db.commit()
    return cursor.rowcount > 0


async def list_delegation_targets(source_id: str, box: SecretBox) -> list[DelegationTarget]:
    """Outgoing links joined with the target's name, URL and gateway token."""
    db = _get_db()
    cursor = await db.execute(
        """
        SELECT l.target_instance_id, l.role, i.service_url, i.container_name,
               c.agent_name, c.gateway_token_enc
        FROM agent_links l
        JOIN instances i ON i.id = l.target_instance_id
        LEFT JOIN configurations c ON c.instance_id = l.target_instance_id
        WHERE l.source_instance_id = ?
        ORDER BY l.created_at, l.target_instance_id
        """,
        (source_id,),
    )
    return [
        DelegationTarget(
            id=row["target_instance_id"],
            name=row["agent_name"] or row["container_name"],
            gateway_url=row["service_url"],
            token=box.decrypt(row["gateway_token_enc"]),
            role=row["role"],
        )
        for row in await cursor.fetchall()
    ]
