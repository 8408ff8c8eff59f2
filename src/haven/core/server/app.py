"""Haven journal MCP server: application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from haven.core.config.settings import Settings, get_settings
from haven.core.server.runtime import JournalRuntime
from haven.domains.health.tools.audit_tools import register_audit_tools
from haven.domains.health.tools.insight_tools import register_insight_tools
from haven.domains.health.tools.journal_tools import register_journal_tools

logger = logging.getLogger(__name__)

SERVER_VERSION = "0.1.0"


def create_app(
    *,
    settings_override: Settings | None = None,
    runtime_override: JournalRuntime | None = None,
) -> FastMCP:
    """Create and configure the Haven journal MCP server.

    This is the main application factory. It:
    1. Creates the FastMCP server instance
    2. Creates the lazily opened journal runtime (storage, audit, insights)
    3. Registers the journal, insight and audit tools
    """
    settings = settings_override or get_settings()
    runtime = runtime_override or JournalRuntime(settings)

    server = FastMCP(
        "Haven Journal",
        instructions=(
            "Local-first encrypted health journal. Records symptom entries, "
            "keeps them encrypted at rest on this device, and computes trends, "
            "forecasts, correlations and crisis signals locally."
        ),
    )

    if not runtime.storage_configured:
        logger.info(
            "No HAVEN_ENCRYPTION_KEY configured; journal tools will report storage_disabled. "
            "Set HAVEN_ENCRYPTION_KEY to enable the encrypted journal."
        )

    @server.tool
    async def health_check() -> dict:
        """Check server health and return basic status information."""
        status = {
            "status": "ok",
            "server": "Haven Journal",
            "version": SERVER_VERSION,
            "storage_enabled": False,
        }
        repo = await runtime.repository()
        if repo is not None:
            status["storage_enabled"] = True
            status["records_stored"] = await repo.count()
        elif runtime.disabled_reason:
            status["storage_message"] = runtime.disabled_reason
        return status

    register_journal_tools(server, runtime)
    register_insight_tools(server, runtime)
    register_audit_tools(server, runtime)
    logger.info("Journal, insight and audit tools registered")

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
