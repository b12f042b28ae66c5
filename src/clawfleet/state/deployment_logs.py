"""Deployment audit log. Append-only: there is no update or delete here."""

from __future__ import annotations

from clawfleet.state.connection import _get_db, _now
from clawfleet.types import DeploymentAction, DeploymentLogEntry, LogStatus


def _row_to_entry(row) -> DeploymentLogEntry:
    return DeploymentLogEntry(
        id=row["id"],
        instance_id=row["instance_id"],
        action=row["action"],
        status=row["status"],
        message=row["message"],
        error=row["error"],
        timestamp=row["timestamp"],
    )


async def log_deployment(
    instance_id: str,
    action: DeploymentAction,
    status: LogStatus,
    message: str | None = None,
    error: str | None = None,
) -> None:
    db = _get_db()
    await db.execute(
        """
        INSERT INTO deployment_logs (instance_id, action, status, message, error, timestamp)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (instance_id, action, status, message, error, _now()),
    )
    await db.commit()


async def get_deployment_logs(
    instance_id: str | None = None, limit: int | None = None
) -> list[DeploymentLogEntry]:
    """Entries in insertion order, optionally for one instance / the last ``limit``."""
    db = _get_db()
    sql = "SELECT * FROM deployment_logs"
    params: list = []
    if instance_id is not None:
        sql += " WHERE instance_id = ?"
        params.append(instance_id)
    sql += " ORDER BY id"
    cursor = await db.execute(sql, params)
    entries = [_row_to_entry(row) for row in await cursor.fetchall()]
    if limit is not None:
        entries = entries[-limit:]
    return entries
