"""Tests for the trend analysis engine."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import BASE_TIME, daily_entries, make_entry
from haven.domains.health.domain_logic.insight_models import (
    InsightConfig,
    InsufficientData,
    TrendLabel,
    TrendResult,
)
from haven.domains.health.domain_logic.trend_analyzer import (
    TrendAnalysisEngine,
    least_squares_slope,
)


@pytest.fixture
def engine() -> TrendAnalysisEngine:
    return TrendAnalysisEngine(InsightConfig())


class TestSlope:
    def test_perfect_line(self):
        assert least_squares_slope([0, 1, 2, 3], [1, 3, 5, 7]) == pytest.approx(2.0)

    def test_no_x_spread(self):
        assert least_squares_slope([1, 1, 1], [1, 2, 3]) == 0.0

    def test_single_point(self):
        assert least_squares_slope([0], [5]) == 0.0


class TestLabels:
    def test_rising_is_worsening(self, engine):
        result = engine.analyze(daily_entries([1, 2, 3, 4, 5, 6]))
        assert isinstance(result, TrendResult)
        assert result.label is TrendLabel.WORSENING
        assert result.slope_per_day == pytest.approx(1.0)
        assert result.total_change == pytest.approx(5.0)

    def test_falling_is_improving(self, engine):
        result = engine.analyze(daily_entries([8, 7, 6, 5, 4, 3]))
        assert result.label is TrendLabel.IMPROVING

    def test_flat_is_stable(self, engine):
        result = engine.analyze(daily_entries([5, 5, 5, 5, 5]))
        assert result.label is TrendLabel.STABLE
        assert result.std_dev == 0.0

    def test_noise_without_direction_is_stable(self, engine):
        result = engine.analyze(daily_entries([3, 6, 3, 6, 3, 6]))
        assert result.label is TrendLabel.STABLE
        assert any("usual day-to-day spread" in line for line in result.explanation)

    def test_slope_uses_elapsed_days(self, engine):
        # same values, twice the spacing: half the slope per day
        entries = [make_entry(s, day=2 * i) for i, s in enumerate([1, 2, 3, 4])]
        assert engine.analyze(entries).slope_per_day == pytest.approx(0.5)

    def test_skewed_rise_is_still_worsening(self, engine):
        # tiny steps then one large jump, logged twice a day
        severities = [i * 0.001 for i in range(59)] + [10]
        entries = [make_entry(s, day=i / 2) for i, s in enumerate(severities)]
        result = engine.analyze(entries)
        assert abs(result.total_change) < result.std_dev
        assert result.label is TrendLabel.WORSENING

    def test_skewed_fall_is_still_improving(self, engine):
        severities = [10] + [5 - i * 0.001 for i in range(59)]
        entries = [make_entry(s, day=i / 2) for i, s in enumerate(severities)]
        assert engine.analyze(entries).label is TrendLabel.IMPROVING

    def test_plateau_is_not_monotone(self, engine):
        result = engine.analyze(daily_entries([3, 6, 6, 3, 6, 3]))
        assert result.label is TrendLabel.STABLE


class TestInsufficientData:
    def test_fewer_than_three(self, engine):
        result = engine.analyze(daily_entries([4, 9]))
        assert isinstance(result, InsufficientData)
        assert result.required == 3
        assert result.available == 2
        assert result.confidence == 0.0

    def test_empty(self, engine):
        assert isinstance(engine.analyze([]), InsufficientData)

    def test_lookback_excludes_old_entries(self, engine):
        entries = [make_entry(9, day=0)] + [make_entry(3, day=d) for d in (40, 41)]
        result = engine.analyze(entries)
        assert isinstance(result, InsufficientData)
        assert result.available == 2


class TestLookback:
    def test_shorter_lookback_narrows_the_window(self, engine):
        entries = daily_entries([9, 8, 7, 6, 5, 4, 4, 5, 6, 7])
        full = engine.analyze(entries)
        recent = engine.analyze(entries, lookback_days=3)
        assert full.sample_size == 10
        assert recent.sample_size == 4
        assert recent.label is TrendLabel.WORSENING
        assert recent.span_days == pytest.approx(3.0)

    def test_lookback_can_drop_below_minimum(self, engine):
        result = engine.analyze(daily_entries([3, 4, 5, 6]), lookback_days=1)
        assert isinstance(result, InsufficientData)
        assert result.available == 2

    def test_non_positive_lookback_rejected(self, engine):
        with pytest.raises(ValueError, match="lookback_days"):
            engine.analyze(daily_entries([3, 4, 5]), lookback_days=0)


class TestAnomalies:
    def test_spike_after_steady_history(self, engine):
        entries = daily_entries([3, 3, 4, 3, 4, 3, 4, 3, 4, 9])
        result = engine.analyze(entries)
        assert result.anomalies == [entries[-1].id]
        assert result.points[-1].anomalous is True
        # preceding seven: 4,3,4,3,4,3,4
        assert result.points[-2].rolling_mean == pytest.approx(25 / 7)

    def test_needs_three_preceding_points(self, engine):
        result = engine.analyze(daily_entries([1, 1, 9]))
        assert result.anomalies == []

    def test_drop_is_not_anomalous(self, engine):
        result = engine.analyze(daily_entries([6, 6, 7, 6, 7, 0]))
        assert result.anomalies == []

    def test_points_in_time_order(self, engine):
        entries = daily_entries([2, 3, 4, 5])
        result = engine.analyze(list(reversed(entries)))
        assert [p.entry_id for p in result.points] == [e.id for e in entries]


class TestEngagement:
    def test_steady_logging(self):
        entries = daily_entries([3] * 14)
        trend = TrendAnalysisEngine.engagement_trend(entries, entries[-1].timestamp)
        assert (trend.recent_count, trend.previous_count, trend.label) == (7, 7, "stable")

    def test_tailing_off(self):
        entries = daily_entries([3] * 7) + [make_entry(3, day=12)]
        trend = TrendAnalysisEngine.engagement_trend(entries, BASE_TIME + timedelta(days=13))
        assert trend.label == "decreasing"

    def test_reported_on_result(self, engine):
        result = engine.analyze(daily_entries([3, 4, 5, 4]))
        assert result.engagement is not None
        assert result.engagement.recent_count == 4


class TestConfidence:
    def test_more_data_more_confidence(self, engine):
        few = engine.analyze(daily_entries([3, 4, 3]))
        many = engine.analyze(daily_entries([3, 4] * 7))
        assert few.confidence < many.confidence <= 1.0

    def test_to_dict(self, engine):
        data = engine.analyze(daily_entries([1, 2, 3])).to_dict()
        assert data["type"] == "TrendResult"
        assert data["label"] == "worsening"
        assert isinstance(data["points"][0]["timestamp"], str)
