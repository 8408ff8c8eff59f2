"""Tests for the predictive insights engine."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import BASE_TIME, daily_entries, make_entry
from haven.domains.health.domain_logic.insight_models import InsightConfig
from haven.domains.health.domain_logic.predictive_insights import (
    PredictiveInsightsEngine,
    median_gap,
    time_of_day,
)


@pytest.fixture
def engine() -> PredictiveInsightsEngine:
    return PredictiveInsightsEngine(InsightConfig())


class TestHelpers:
    @pytest.mark.parametrize("hour,label", [
        (6, "morning"), (11, "morning"), (12, "afternoon"), (18, "evening"), (22, "night"), (3, "night"),
    ])
    def test_time_of_day(self, hour, label):
        assert time_of_day(hour) == label

    def test_median_gap(self):
        entries = [make_entry(3, day=d) for d in (0, 1, 2, 4)]
        assert median_gap(entries) == timedelta(days=1)

    def test_median_gap_defaults_to_a_day(self):
        assert median_gap([make_entry(3)]) == timedelta(days=1)


class TestPredict:
    def test_fewer_than_seven_entries(self, engine):
        assert engine.predict(daily_entries([3, 4, 5, 4, 3, 4])) is None

    def test_rising_spike(self, engine):
        prediction = engine.predict(daily_entries([3, 4, 3, 4, 3, 4, 9]))
        assert prediction.baseline == pytest.approx(30 / 7)
        assert prediction.trend == pytest.approx(18 / 28)
        assert prediction.weekday_adjustment == 0.0
        assert prediction.predicted == pytest.approx(30 / 7 + 18 / 28)
        assert "increasing trend" in prediction.factors
        assert "recent high severity" in prediction.factors
        assert prediction.low < prediction.predicted < prediction.high

    def test_uses_only_the_recent_window(self, engine):
        history = daily_entries([9] * 10 + [2] * 7)
        prediction = engine.predict(history)
        assert prediction.baseline == pytest.approx(2.0)
        assert prediction.sample_size == 17

    def test_target_date_is_one_interval_ahead(self, engine):
        entries = [make_entry(4, day=2 * i) for i in range(7)]
        prediction = engine.predict(entries)
        assert prediction.target_date == entries[-1].timestamp + timedelta(days=2)

    def test_range_clamped_to_scale(self):
        engine = PredictiveInsightsEngine(InsightConfig(scale_max=5))
        prediction = engine.predict(daily_entries([1, 2, 3, 4, 5, 5, 5]))
        assert prediction.high == 5.0
        assert 0.0 <= prediction.low <= prediction.predicted <= 5.0

    def test_floor_at_zero(self, engine):
        prediction = engine.predict(daily_entries([6, 5, 4, 3, 2, 1, 0]))
        assert prediction.predicted >= 0.0
        assert prediction.low == 0.0
        assert "decreasing trend" in prediction.factors

    def test_stable_history(self, engine):
        prediction = engine.predict(daily_entries([4] * 7))
        assert prediction.predicted == pytest.approx(4.0)
        assert prediction.factors == ["recent pattern stability"]
        assert "similar to the recent average" in prediction.explanation[0]

    def test_weekday_pattern(self, engine):
        # BASE_TIME is a Monday; Mondays run high
        severities = [8 if day % 7 == 0 else 3 for day in range(21)]
        prediction = engine.predict(daily_entries(severities))
        assert prediction.target_date.weekday() == 0
        assert prediction.weekday_adjustment == pytest.approx(8 - 78 / 21)
        assert "day-of-week pattern" in prediction.factors

    def test_stale_history_lowers_confidence(self, engine):
        entries = daily_entries([4] * 10)
        fresh = engine.predict(entries)
        stale = engine.predict(entries, now=entries[-1].timestamp + timedelta(days=20))
        assert stale.confidence < fresh.confidence
        assert any("older than your usual" in line for line in stale.explanation)

    def test_regular_interventions_factor(self, engine):
        entries = daily_entries([4] * 7, interventions=("rest:nap",))
        assert "regular intervention use" in engine.predict(entries).factors


class TestPreventiveActions:
    def test_too_little_data(self, engine):
        actions = engine.suggest_preventive_actions(daily_entries([3, 4]))
        assert [a.action for a in actions] == ["Continue tracking daily"]

    def test_high_forecast_and_rising_trend(self, engine):
        actions = engine.suggest_preventive_actions(daily_entries([4, 5, 6, 7, 8, 9, 10]))
        names = [a.action for a in actions]
        assert "Prepare symptom management strategies" in names
        assert "Consider consulting a healthcare provider" in names

    def test_effective_intervention_suggested(self, engine):
        entries = [
            make_entry(8 if i % 2 == 0 else 4, day=i, interventions=("ice",) if i % 2 == 0 else ())
            for i in range(10)
        ]
        actions = engine.suggest_preventive_actions(entries)
        assert any(a.action == "Consider ice when symptoms rise" for a in actions)

    def test_sparse_logging_nudged(self, engine):
        entries = [make_entry(4, day=3 * i) for i in range(8)]
        actions = engine.suggest_preventive_actions(entries)
        assert any(a.action == "Track more consistently" for a in actions)


class TestCheckInTimes:
    def test_needs_five_entries(self, engine):
        assert engine.optimal_check_in_times(daily_entries([3, 4, 5])) == []

    def test_most_common_period_first(self, engine):
        entries = [make_entry(4, day=i, hour=8) for i in range(6)]
        entries += [make_entry(6, day=i + 0.5, hour=20) for i in range(2)]
        entries.append(make_entry(5, day=9, hour=14))
        times = engine.optimal_check_in_times(entries)
        assert [t.label for t in times] == ["morning", "evening"]
        assert times[0].hour == 8
        assert times[0].entry_count == 6
        assert times[0].reason == "most consistent tracking time"
        assert times[1].mean_severity == pytest.approx(6.0)

    def test_night_hours_wrap_midnight(self, engine):
        entries = [make_entry(5, day=i, hour=23) for i in range(3)]
        entries += [make_entry(5, day=i + 0.5, hour=1) for i in range(2)]
        times = engine.optimal_check_in_times(entries)
        assert [t.label for t in times] == ["night"]
        assert times[0].hour == 23

    def test_night_tie_prefers_late_evening(self, engine):
        entries = [make_entry(5, day=i, hour=23) for i in range(3)]
        entries += [make_entry(5, day=i + 0.5, hour=1) for i in range(3)]
        assert engine.optimal_check_in_times(entries)[0].hour == 23
