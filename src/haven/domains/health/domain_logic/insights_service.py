"""Insights facade: feature gating plus snapshot-then-compute for the engines.

The ``get_*`` methods are synchronous and pure over the entry list they are
given. The async ``compute_*`` methods take a snapshot from the repository
and run the computation in a worker thread; a caller that stops awaiting
simply discards the result.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from haven.core.storage.models import Entry, utc_now
from haven.core.storage.repository import EntryRepository
from haven.domains.health.domain_logic.crisis_detector import detect_crisis
from haven.domains.health.domain_logic.insight_models import (
    CheckInTime,
    CrisisSignal,
    FeatureConfig,
    FeatureDisabled,
    InsightConfig,
    InsufficientData,
    MultiVariateResult,
    Prediction,
    PreventiveAction,
    TrendResult,
)
from haven.domains.health.domain_logic.multivariate_analysis import MultiVariateAnalysisEngine
from haven.domains.health.domain_logic.predictive_insights import PredictiveInsightsEngine
from haven.domains.health.domain_logic.trend_analyzer import TrendAnalysisEngine

logger = logging.getLogger(__name__)


class InsightsService:
    """Single entry point for every insight the journal offers.

    Usage::

        service = InsightsService(repo, config=settings.insight_config(),
                                  features=settings.feature_config())
        signal = await service.compute_crisis_signal()
        trend = service.get_trend(entries)
    """

    def __init__(
        self,
        repository: EntryRepository | None = None,
        *,
        config: InsightConfig | None = None,
        features: FeatureConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repo = repository
        self._cfg = config or InsightConfig()
        self._features = features or FeatureConfig()
        self._clock = clock
        self._trend = TrendAnalysisEngine(self._cfg)
        self._predictive = PredictiveInsightsEngine(self._cfg)
        self._multivariate = MultiVariateAnalysisEngine(self._cfg)

    @property
    def config(self) -> InsightConfig:
        return self._cfg

    @property
    def features(self) -> FeatureConfig:
        return self._features

    def _require(self, enabled: bool, feature: str) -> None:
        if not enabled:
            raise FeatureDisabled(feature)

    # ------------------------------------------------------------------
    # Synchronous, over a snapshot
    # ------------------------------------------------------------------

    def get_crisis_signal(self, entries: Sequence[Entry], *, now: datetime | None = None) -> CrisisSignal:
        self._require(self._features.crisis_detection, "crisis_detection")
        return detect_crisis(entries, config=self._cfg, now=now)

    def get_trend(
        self,
        entries: Sequence[Entry],
        *,
        now: datetime | None = None,
        lookback_days: int | None = None,
    ) -> TrendResult | InsufficientData:
        self._require(self._features.trend_analysis, "trend_analysis")
        return self._trend.analyze(entries, now=now, lookback_days=lookback_days)

    def get_prediction(self, entries: Sequence[Entry], *, now: datetime | None = None) -> Prediction | None:
        self._require(self._features.predictions, "predictions")
        return self._predictive.predict(entries, now=now)

    def get_preventive_actions(
        self, entries: Sequence[Entry], *, now: datetime | None = None
    ) -> list[PreventiveAction]:
        self._require(self._features.predictions, "predictions")
        return self._predictive.suggest_preventive_actions(entries, now=now)

    def get_check_in_times(self, entries: Sequence[Entry]) -> list[CheckInTime]:
        self._require(self._features.predictions, "predictions")
        return self._predictive.optimal_check_in_times(entries)

    def get_multivariate(
        self, entries: Sequence[Entry], *, now: datetime | None = None
    ) -> MultiVariateResult:
        self._require(self._features.multivariate, "multivariate")
        return self._multivariate.analyze(entries, now=now)

    # ------------------------------------------------------------------
    # Async: snapshot from the repository, compute off the event loop
    # ------------------------------------------------------------------

    async def snapshot(self, *, days: int | None = None) -> list[Entry]:
        """Materialise visible entries, optionally only the last ``days``."""
        if self._repo is None:
            raise RuntimeError("InsightsService has no repository; pass entries to get_* instead")
        since = self._clock() - timedelta(days=days) if days is not None else None
        return await self._repo.list(since)

    async def compute_crisis_signal(self) -> CrisisSignal:
        self._require(self._features.crisis_detection, "crisis_detection")
        entries = await self.snapshot()
        return await asyncio.to_thread(self.get_crisis_signal, entries, now=self._clock())

    async def compute_trend(self, *, lookback_days: int | None = None) -> TrendResult | InsufficientData:
        self._require(self._features.trend_analysis, "trend_analysis")
        entries = await self.snapshot()
        return await asyncio.to_thread(
            self.get_trend, entries, now=self._clock(), lookback_days=lookback_days
        )

    async def compute_prediction(self) -> Prediction | None:
        self._require(self._features.predictions, "predictions")
        entries = await self.snapshot()
        return await asyncio.to_thread(self.get_prediction, entries, now=self._clock())

    async def compute_preventive_actions(self) -> list[PreventiveAction]:
        self._require(self._features.predictions, "predictions")
        entries = await self.snapshot()
        return await asyncio.to_thread(self.get_preventive_actions, entries, now=self._clock())

    async def compute_check_in_times(self) -> list[CheckInTime]:
        self._require(self._features.predictions, "predictions")
        entries = await self.snapshot()
        return await asyncio.to_thread(self.get_check_in_times, entries)

    async def compute_multivariate(self) -> MultiVariateResult:
        self._require(self._features.multivariate, "multivariate")
        entries = await self.snapshot()
        logger.debug("Multivariate analysis over %d entries", len(entries))
        return await asyncio.to_thread(self.get_multivariate, entries, now=self._clock())
