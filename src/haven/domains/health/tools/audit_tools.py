"""MCP tool for viewing the audit trail.

The audit log is PHI-free: it records which operations happened, when, and
whether decrypted data left the store, but never any entry content.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from haven.core.storage.models import format_timestamp, utc_now
from haven.domains.health.tools.journal_tools import storage_disabled

if TYPE_CHECKING:
    from haven.core.server.runtime import JournalRuntime

logger = logging.getLogger(__name__)


def register_audit_tools(mcp: FastMCP, runtime: JournalRuntime) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def audit_summary(
        ctx: Context,
        days: int = 30,
    ) -> str:
        """View recent journal activity and how many times your data was exported.

        Args:
            days: Number of days to look back (default: 30).
        """
        audit_logger = await runtime.audit_logger()
        if audit_logger is None:
            return storage_disabled(runtime)

        since = format_timestamp(utc_now() - timedelta(days=days))
        total_events = await audit_logger.count_events(since=since)
        export_count = await audit_logger.count_exports(since=since)
        recent_events = await audit_logger.get_events(since=since, limit=20)

        display_events = [
            {
                "timestamp": event.get("timestamp"),
                "action": event.get("action"),
                "tool_name": event.get("tool_name"),
                "record_count": event.get("record_count"),
                "data_exported": bool(event.get("data_exported")),
                "status": event.get("status"),
            }
            for event in recent_events
        ]

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": total_events,
            "exports": export_count,
            "recent_events": display_events,
            "note": (
                "This audit trail contains no journal content. "
                "It tracks operations and whether data left this device."
            ),
        }, indent=2)
