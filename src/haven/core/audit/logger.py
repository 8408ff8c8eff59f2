"""Audit logger: PHI-free trail of journal writes and data exports.

Every append, correction, delete, export and store migration is recorded in
the ``audit_log`` table. No entry content is ever written here:

* ``input_hash``    -- SHA-256 of canonical JSON of the request, never the request.
* ``data_exported`` -- set when decrypted data left the store (user export).
* ``record_id`` / ``record_count`` -- identifiers and counts only.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any

from haven.core.storage.database import HealthDatabase
from haven.core.storage.models import format_timestamp, utc_now

logger = logging.getLogger(__name__)

ACTION_APPEND = "entry_append"
ACTION_SUPERSEDE = "entry_supersede"
ACTION_DELETE = "entry_delete"
ACTION_EXPORT = "data_export"
ACTION_MIGRATION = "store_migration"
ACTION_TOOL = "tool_invocation"


def hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON.

    Returns:
        Hex-encoded digest, or empty string if ``data`` is not serializable.
    """
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return ""
    return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str
    tool_name: str = ""
    input_hash: str = ""
    record_id: str | None = None
    record_count: int | None = None
    data_exported: bool = False
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'failure'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    Writes are committed immediately. A failed audit write is logged and
    never breaks the journal operation it describes.

    Usage::

        audit = AuditLogger(health_db)
        await audit.log_export(record_count=12, fields=["timestamp", "severity"])
        times = await audit.count_exports()
    """

    def __init__(self, database: HealthDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    async def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID (empty string if lost)."""
        event_id = str(uuid.uuid4())
        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), sort_keys=True)
            if event.metadata
            else None
        )

        try:
            conn = self._db.connection
            await conn.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, tool_name, input_hash, record_id,
                    record_count, data_exported, duration_ms, status,
                    error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    format_timestamp(utc_now()),
                    event.action,
                    event.tool_name or None,
                    event.input_hash or None,
                    event.record_id,
                    event.record_count,
                    1 if event.data_exported else 0,
                    event.duration_ms,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
            await conn.commit()
        except sqlite3.Error:
            logger.exception("Failed to write audit event %s; event lost", event.action)
            return ""

        return event_id

    async def log_entry_write(
        self,
        action: str,
        record_id: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log an append, supersede or delete of a single entry."""
        return await self.log_event(AuditEvent(
            action=action,
            record_id=record_id,
            record_count=1,
            metadata=metadata or {},
        ))

    async def log_export(
        self,
        *,
        record_count: int,
        fields: list[str],
        request: Any = None,
    ) -> str:
        """Log a user-initiated export of decrypted data.

        Args:
            record_count: Number of entries that left the store.
            fields: Field names included in the export.
            request: Export parameters (hashed, never stored raw).
        """
        return await self.log_event(AuditEvent(
            action=ACTION_EXPORT,
            input_hash=hash_input(request) if request is not None else "",
            record_count=record_count,
            data_exported=True,
            metadata={"fields": sorted(fields)},
        ))

    async def log_migration(
        self,
        *,
        from_version: int,
        to_version: int,
        migrated: int,
        failed: int,
    ) -> str:
        return await self.log_event(AuditEvent(
            action=ACTION_MIGRATION,
            record_count=migrated,
            status="success" if failed == 0 else "failure",
            metadata={"from_version": from_version, "to_version": to_version, "failed": failed},
        ))

    async def log_tool_call(
        self,
        tool_name: str,
        tool_input: Any = None,
        *,
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
    ) -> str:
        return await self.log_event(AuditEvent(
            action=ACTION_TOOL,
            tool_name=tool_name,
            input_hash=hash_input(tool_input) if tool_input else "",
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    async def get_events(
        self,
        *,
        action: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        async with self._db.connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def count_events(self, *, since: str | None = None) -> int:
        if since:
            query, params = "SELECT COUNT(*) FROM audit_log WHERE timestamp >= ?", (since,)
        else:
            query, params = "SELECT COUNT(*) FROM audit_log", ()
        async with self._db.connection.execute(query, params) as cursor:
            row = await cursor.fetchone()
        return row[0]

    async def count_exports(self, *, since: str | None = None) -> int:
        """Count events where decrypted data left the store.

        This answers: "How many times has my journal left this device?"
        """
        query = "SELECT COUNT(*) FROM audit_log WHERE data_exported = 1"
        params: tuple[Any, ...] = ()
        if since:
            query += " AND timestamp >= ?"
            params = (since,)
        async with self._db.connection.execute(query, params) as cursor:
            row = await cursor.fetchone()
        return row[0]
