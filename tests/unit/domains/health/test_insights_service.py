"""Tests for the InsightsService facade."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import BASE_TIME, daily_entries
from haven.core.storage.database import HealthDatabase
from haven.core.storage.encryption import EncryptionGateway
from haven.core.storage.models import DraftEntry
from haven.core.storage.record_store import VersionedRecordStore
from haven.core.storage.repository import EntryRepository
from haven.domains.health.domain_logic.insight_models import (
    CrisisSignal,
    FeatureConfig,
    FeatureDisabled,
    InsightConfig,
    InsufficientData,
    TrendResult,
)
from haven.domains.health.domain_logic.insights_service import InsightsService


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestFeatureGating:
    def test_disabled_crisis_detection(self):
        service = InsightsService(features=FeatureConfig(crisis_detection=False))
        with pytest.raises(FeatureDisabled) as info:
            service.get_crisis_signal(daily_entries([3, 4]))
        assert info.value.feature == "crisis_detection"

    def test_disabled_predictions_cover_suggestions(self):
        service = InsightsService(features=FeatureConfig(predictions=False))
        entries = daily_entries([3] * 8)
        for call in (service.get_prediction, service.get_preventive_actions, service.get_check_in_times):
            with pytest.raises(FeatureDisabled):
                call(entries)

    def test_disabled_multivariate(self):
        service = InsightsService(features=FeatureConfig(multivariate=False))
        with pytest.raises(FeatureDisabled):
            service.get_multivariate([])

    def test_other_features_unaffected(self):
        service = InsightsService(features=FeatureConfig(multivariate=False))
        assert isinstance(service.get_trend(daily_entries([1, 2, 3])), TrendResult)

    def test_disabled_feature_short_circuits_compute(self):
        service = InsightsService(features=FeatureConfig(trend_analysis=False))
        with pytest.raises(FeatureDisabled):
            _run(service.compute_trend())


class TestConfig:
    def test_thresholds_injected(self):
        service = InsightsService(config=InsightConfig(crisis_min_delta=1.0))
        assert service.get_crisis_signal(daily_entries([4, 4, 4, 4, 5])).detected is True

    def test_trend_lookback_per_call(self):
        service = InsightsService()
        entries = daily_entries([9, 8, 7, 6, 5, 4, 4, 5, 6, 7])
        assert service.get_trend(entries).sample_size == 10
        assert service.get_trend(entries, lookback_days=3).sample_size == 4

    def test_snapshot_needs_repository(self):
        with pytest.raises(RuntimeError, match="no repository"):
            _run(InsightsService().snapshot())


class TestCompute:
    def test_compute_from_repository(self):
        now = BASE_TIME + timedelta(days=9, hours=1)

        async def _go():
            async with HealthDatabase(":memory:") as db:
                store = VersionedRecordStore(db, EncryptionGateway(EncryptionGateway.generate_key()))
                repo = EntryRepository(store)
                for day, severity in enumerate([3, 3, 4, 3, 4, 3, 4, 3, 4, 9]):
                    await repo.append(DraftEntry(
                        severity=severity,
                        tags=["symptom:ache"],
                        timestamp=BASE_TIME + timedelta(days=day),
                    ))
                service = InsightsService(repo, clock=lambda: now)
                return (
                    await service.compute_crisis_signal(),
                    await service.compute_trend(),
                    await service.compute_prediction(),
                    await service.snapshot(days=3),
                    await service.compute_trend(lookback_days=2),
                )

        signal, trend, prediction, recent, short_trend = _run(_go())
        assert short_trend.sample_size == 3
        assert isinstance(signal, CrisisSignal)
        assert signal.detected is True
        assert signal.latest == 9
        assert isinstance(trend, TrendResult)
        assert len(trend.anomalies) == 1
        assert prediction is not None
        assert len(recent) == 3

    def test_compute_on_empty_journal(self):
        async def _go():
            async with HealthDatabase(":memory:") as db:
                store = VersionedRecordStore(db, EncryptionGateway(EncryptionGateway.generate_key()))
                service = InsightsService(EntryRepository(store))
                return (
                    await service.compute_crisis_signal(),
                    await service.compute_trend(),
                    await service.compute_prediction(),
                    await service.compute_check_in_times(),
                )

        signal, trend, prediction, times = _run(_go())
        assert signal.detected is False
        assert isinstance(trend, InsufficientData)
        assert prediction is None
        assert times == []
