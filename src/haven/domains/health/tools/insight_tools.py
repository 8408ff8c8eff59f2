"""MCP tools for on-device journal insights.

Every computation runs locally over a snapshot of the journal; nothing is
sent anywhere. Results carry confidence scores and plain-language
explanations, and report insufficient data explicitly instead of guessing.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from haven.domains.health.domain_logic.insight_models import FeatureDisabled, InsufficientData
from haven.domains.health.tools.journal_tools import storage_disabled

if TYPE_CHECKING:
    from haven.core.server.runtime import JournalRuntime
    from haven.domains.health.domain_logic.insights_service import InsightsService

logger = logging.getLogger(__name__)


def register_insight_tools(mcp: FastMCP, runtime: JournalRuntime) -> None:
    """Register insight tools on the MCP server."""

    async def _compute(
        tool_name: str,
        compute: Callable[[InsightsService], Awaitable[dict[str, Any]]],
    ) -> str:
        service = await runtime.insights()
        if service is None:
            return storage_disabled(runtime)

        start_time = time.monotonic()
        try:
            body = await compute(service)
        except FeatureDisabled as exc:
            return json.dumps({
                "status": "feature_disabled",
                "feature": exc.feature,
                "message": f"The '{exc.feature}' insight is turned off in settings.",
            })
        elapsed_ms = (time.monotonic() - start_time) * 1000

        audit = await runtime.audit_logger()
        if audit is not None:
            await audit.log_tool_call(tool_name, duration_ms=elapsed_ms)
        return json.dumps({"status": "ok", **body})

    @mcp.tool
    async def crisis_signal(ctx: Context) -> str:
        """Check whether your most recent entry is a sudden jump above your recent baseline.

        This only signals; it never contacts anyone on your behalf.
        """
        async def _run(service: InsightsService) -> dict[str, Any]:
            return {"signal": (await service.compute_crisis_signal()).to_dict()}

        return await _compute("crisis_signal", _run)

    @mcp.tool
    async def trend_analysis(ctx: Context, days: int | None = None) -> str:
        """Analyze how your severity has been trending and flag unusual entries.

        Needs at least 3 entries in the lookback period.

        Args:
            days: Lookback period in days, ending at your newest entry
                (default: the configured trend lookback, 30 days).
        """
        if days is not None and days <= 0:
            return json.dumps({"status": "invalid", "issues": ["days: must be positive"]})

        async def _run(service: InsightsService) -> dict[str, Any]:
            result = await service.compute_trend(lookback_days=days)
            if isinstance(result, InsufficientData):
                return {"insufficient_data": True, "trend": result.to_dict()}
            return {"insufficient_data": False, "trend": result.to_dict()}

        return await _compute("trend_analysis", _run)

    @mcp.tool
    async def severity_prediction(ctx: Context) -> str:
        """Forecast your next severity value, with suggestions and good check-in times.

        No forecast is made with fewer than 7 entries.
        """
        async def _run(service: InsightsService) -> dict[str, Any]:
            prediction = await service.compute_prediction()
            actions = await service.compute_preventive_actions()
            times = await service.compute_check_in_times()
            return {
                "prediction": prediction.to_dict() if prediction is not None else None,
                "message": None if prediction is not None else (
                    f"At least {service.config.prediction_min_points} entries are needed for a forecast."
                ),
                "preventive_actions": [vars(a) for a in actions],
                "check_in_times": [vars(t) for t in times],
            }

        return await _compute("severity_prediction", _run)

    @mcp.tool
    async def multivariate_analysis(ctx: Context) -> str:
        """Find which combinations of time, tags, interventions and context go with your severity."""
        async def _run(service: InsightsService) -> dict[str, Any]:
            return {"analysis": (await service.compute_multivariate()).to_dict()}

        return await _compute("multivariate_analysis", _run)
