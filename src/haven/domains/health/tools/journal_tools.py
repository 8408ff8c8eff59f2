"""MCP tools for writing, reading and exporting journal entries.

Entries are persisted to the encrypted journal store. Corrections never edit
an entry in place; deletes and exports are explicit, confirmed and
audit-logged.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from haven.core.storage.models import DraftEntry, Entry, ValidationError, utc_now
from haven.core.storage.record_store import NotFound, QuotaExceeded

if TYPE_CHECKING:
    from haven.core.server.runtime import JournalRuntime

logger = logging.getLogger(__name__)


def storage_disabled(runtime: JournalRuntime) -> str:
    return json.dumps({
        "status": "storage_disabled",
        "message": runtime.disabled_reason
        or "Journal storage is disabled. Set HAVEN_ENCRYPTION_KEY to enable it.",
    })


def _entry_view(entry: Entry) -> dict[str, Any]:
    payload = entry.to_payload()
    payload.pop("legacy", None)
    return payload


def _draft(
    severity: float,
    tags: list[str],
    notes: str | None,
    interventions: list[str] | None,
    sleep: str | None,
    stress: str | None,
    mood: str | None,
    activity_level: float | None,
    timestamp: str,
) -> DraftEntry:
    return DraftEntry(
        severity=severity,
        tags=tags,
        notes=notes,
        interventions=interventions or [],
        context={"sleep": sleep, "stress": stress, "mood": mood, "activity_level": activity_level},
        timestamp=timestamp or None,
    )


def _invalid(exc: ValidationError) -> str:
    return json.dumps({"status": "invalid", "issues": exc.issues})


def _quota(exc: QuotaExceeded) -> str:
    return json.dumps({
        "status": "quota_exceeded",
        "required_bytes": exc.required_bytes,
        "used_bytes": exc.used_bytes,
        "quota_bytes": exc.quota_bytes,
        "message": "Storage is full. Export your journal, then delete old entries to free space.",
    })


def register_journal_tools(mcp: FastMCP, runtime: JournalRuntime) -> None:
    """Register journal entry tools on the MCP server."""

    @mcp.tool
    async def append_entry(
        ctx: Context,
        severity: float,
        tags: list[str],
        notes: str | None = None,
        interventions: list[str] | None = None,
        sleep: str | None = None,
        stress: str | None = None,
        mood: str | None = None,
        activity_level: float | None = None,
        timestamp: str = "",
    ) -> str:
        """Record a new journal entry.

        Args:
            severity: Symptom severity on the configured scale (default 0-10).
            tags: Labels such as 'location:lower back', 'symptom:stiffness'
                or 'trigger:weather'. Bare text is treated as a symptom.
            notes: Optional free text. Omit if not recorded; '' means explicitly empty.
            interventions: What you did about it, e.g. 'ibuprofen' or 'rest:nap'.
            sleep: Sleep quality bucket ('low', 'medium', 'high') or a 0-10 score.
            stress: Stress bucket or score.
            mood: Mood bucket or score.
            activity_level: Numeric activity level.
            timestamp: ISO 8601 time to back-date the entry. Defaults to now.
        """
        repo = await runtime.repository()
        if repo is None:
            return storage_disabled(runtime)

        draft = _draft(severity, tags, notes, interventions, sleep, stress, mood, activity_level, timestamp)
        try:
            entry = await repo.append(draft)
        except ValidationError as exc:
            return _invalid(exc)
        except QuotaExceeded as exc:
            return _quota(exc)

        return json.dumps({
            "status": "saved",
            "entry_id": entry.id,
            "timestamp": entry.timestamp.isoformat(),
            "severity": entry.severity,
        })

    @mcp.tool
    async def list_entries(
        ctx: Context,
        days: int = 30,
        include_superseded: bool = False,
    ) -> str:
        """List your journal entries, oldest first.

        Args:
            days: Number of days to look back (default: 30). 0 lists everything.
            include_superseded: Also show entries that were later corrected.
        """
        repo = await runtime.repository()
        if repo is None:
            return storage_disabled(runtime)

        since = utc_now() - timedelta(days=days) if days > 0 else None
        entries = await repo.list(since, include_superseded=include_superseded)
        skipped = [
            {"entry_id": issue.record_id, "reason": issue.kind}
            for issue in repo.last_read_issues
        ]
        return json.dumps({
            "status": "ok",
            "count": len(entries),
            "entries": [_entry_view(e) for e in entries],
            "skipped": skipped,
        })

    @mcp.tool
    async def supersede_entry(
        ctx: Context,
        entry_id: str,
        severity: float,
        tags: list[str],
        notes: str | None = None,
        interventions: list[str] | None = None,
        sleep: str | None = None,
        stress: str | None = None,
        mood: str | None = None,
        activity_level: float | None = None,
        timestamp: str = "",
    ) -> str:
        """Correct an entry. The original is kept for your records but hidden from lists.

        Args:
            entry_id: The entry being corrected (must be its newest version).
            severity: Corrected severity.
            tags: Corrected tags.
            notes: Corrected notes.
            interventions: Corrected interventions.
            sleep: Corrected sleep bucket or score.
            stress: Corrected stress bucket or score.
            mood: Corrected mood bucket or score.
            activity_level: Corrected activity level.
            timestamp: New time for the entry. Defaults to the original's time.
        """
        repo = await runtime.repository()
        if repo is None:
            return storage_disabled(runtime)

        draft = _draft(severity, tags, notes, interventions, sleep, stress, mood, activity_level, timestamp)
        try:
            correction = await repo.supersede(entry_id, draft)
        except NotFound:
            return json.dumps({"status": "not_found", "entry_id": entry_id})
        except ValidationError as exc:
            return _invalid(exc)
        except QuotaExceeded as exc:
            return _quota(exc)

        return json.dumps({
            "status": "superseded",
            "entry_id": correction.id,
            "supersedes": entry_id,
            "timestamp": correction.timestamp.isoformat(),
        })

    @mcp.tool
    async def delete_entry(
        ctx: Context,
        entry_id: str,
        confirm: str = "",
    ) -> str:
        """Permanently delete an entry and all of its corrections.

        Args:
            entry_id: The entry to delete.
            confirm: Must be exactly 'DELETE' to proceed. Safety gate.
        """
        if confirm != "DELETE":
            return json.dumps({
                "status": "cancelled",
                "message": (
                    "To delete this entry, call this tool with confirm='DELETE'. "
                    "This action cannot be undone."
                ),
            })

        repo = await runtime.repository()
        if repo is None:
            return storage_disabled(runtime)

        start_time = time.monotonic()
        try:
            removed = await repo.delete(entry_id)
        except NotFound:
            return json.dumps({
                "status": "not_found",
                "entry_id": entry_id,
                "message": "No entry found with that ID.",
            })
        elapsed_ms = (time.monotonic() - start_time) * 1000

        return json.dumps({
            "status": "deleted",
            "entry_id": entry_id,
            "records_deleted": len(removed),
            "duration_ms": round(elapsed_ms, 1),
        })

    @mcp.tool
    async def export_snapshot(
        ctx: Context,
        start: str = "",
        end: str = "",
        fields: list[str] | None = None,
        coarsen: bool = False,
        confirm: bool = False,
    ) -> str:
        """Export decrypted entries. This is the only way journal data leaves the store.

        Args:
            start: ISO 8601 lower bound (inclusive). Empty for no bound.
            end: ISO 8601 upper bound (inclusive). Empty for no bound.
            fields: Fields to include. Defaults to timestamp, severity and tags.
                Available: id, timestamp, severity, tags, notes, interventions,
                context, supersedes, legacy.
            coarsen: Round severities to whole numbers.
            confirm: Must be true. Exports are recorded in the audit trail.
        """
        if not confirm:
            return json.dumps({
                "status": "cancelled",
                "message": (
                    "Exports contain decrypted health data. Call this tool with "
                    "confirm=true to proceed; the export will be audit-logged."
                ),
            })

        repo = await runtime.repository()
        if repo is None:
            return storage_disabled(runtime)

        try:
            exported = await repo.export_snapshot(
                (start or None, end or None), fields, coarsen=coarsen
            )
        except ValidationError as exc:
            return _invalid(exc)

        return json.dumps({
            "status": "exported",
            "count": len(exported),
            "entries": exported,
        })
