"""Next-period severity forecasts with confidence and contributing factors.

Forecasts come from an ordinary least-squares line over the most recent
entries plus an optional day-of-week adjustment. Below the minimum number
of entries no forecast is produced at all.
"""

from __future__ import annotations

import logging
import statistics
from collections import Counter, defaultdict
from collections.abc import Sequence
from datetime import datetime, timedelta

from haven.core.storage.models import Entry
from haven.domains.health.domain_logic.insight_models import (
    CheckInTime,
    InsightConfig,
    Prediction,
    PreventiveAction,
)
from haven.domains.health.domain_logic.trend_analyzer import least_squares_slope

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86_400.0
_DAY = timedelta(days=1)


def time_of_day(hour: int) -> str:
    """Bucket an hour: morning 6-12, afternoon 12-18, evening 18-22, else night."""
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


def median_gap(entries: Sequence[Entry]) -> timedelta:
    """Typical logging interval; one day when it cannot be measured."""
    gaps = [
        (b.timestamp - a.timestamp).total_seconds()
        for a, b in zip(entries, entries[1:])
        if b.timestamp > a.timestamp
    ]
    if not gaps:
        return _DAY
    return timedelta(seconds=statistics.median(gaps))


def _most_common_hour(entries: Sequence[Entry]) -> int:
    # ties go to the earliest hour after 06:00 so night ranks 22, 23, 0 .. 5
    counts = Counter(e.timestamp.hour for e in entries)
    return min(counts, key=lambda hour: (-counts[hour], (hour - 6) % 24))


class PredictiveInsightsEngine:
    """Forecasts the next severity value and derives suggestions from it.

    Usage::

        engine = PredictiveInsightsEngine(InsightConfig())
        prediction = engine.predict(entries, now=datetime.now(timezone.utc))
        if prediction is not None:
            print(prediction.predicted, prediction.factors)
    """

    def __init__(self, config: InsightConfig | None = None) -> None:
        self._cfg = config or InsightConfig()

    def predict(self, entries: Sequence[Entry], *, now: datetime | None = None) -> Prediction | None:
        """Forecast the severity of the next entry.

        Args:
            entries: Entry snapshot, any order.
            now: Reference time for the recency term; defaults to the newest
                entry (no decay).

        Returns:
            A ``Prediction``, or ``None`` with fewer than
            ``prediction_min_points`` entries.
        """
        cfg = self._cfg
        history = sorted(entries, key=lambda e: (e.timestamp, e.id))
        if now is not None:
            history = [e for e in history if e.timestamp <= now]
        if len(history) < cfg.prediction_min_points:
            return None

        recent = history[-cfg.prediction_window:]
        origin = recent[0].timestamp
        xs = [(e.timestamp - origin).total_seconds() / _SECONDS_PER_DAY for e in recent]
        ys = [e.severity for e in recent]

        baseline = statistics.fmean(ys)
        trend = least_squares_slope(xs, ys)
        std_dev = statistics.pstdev(ys)

        interval = median_gap(history)
        latest = history[-1]
        target_date = latest.timestamp + interval
        adjustment = self._weekday_adjustment(history, target_date)

        predicted = self._clamp(baseline + trend + adjustment)
        low = self._clamp(predicted - std_dev)
        high = self._clamp(predicted + std_dev)

        reference = now or latest.timestamp
        age = reference - latest.timestamp
        recency = 1.0 if age <= interval else interval / age
        stability = 1.0 - min(1.0, std_dev / cfg.scale_max)
        confidence = (
            0.4 * min(1.0, len(history) / 30)
            + 0.4 * stability
            + 0.2 * recency
        )

        factors = self._factors(recent, trend, baseline, std_dev, adjustment)
        direction = "higher" if predicted > baseline else "lower"
        if abs(predicted - baseline) < 0.5:
            headline = f"expected to be similar to the recent average ({baseline:.1f})"
        else:
            headline = f"expected to be {direction} than the recent average ({baseline:.1f})"
        explanation = [headline, "based on: " + ", ".join(factors)]
        if recency < 1.0:
            explanation.append("last entry is older than your usual logging interval")

        return Prediction(
            predicted=predicted,
            low=low,
            high=high,
            baseline=baseline,
            trend=trend,
            weekday_adjustment=adjustment,
            target_date=target_date,
            sample_size=len(history),
            factors=factors,
            confidence=confidence,
            explanation=explanation,
        )

    def _clamp(self, value: float) -> float:
        return max(0.0, min(self._cfg.scale_max, value))

    def _weekday_adjustment(self, history: Sequence[Entry], target: datetime) -> float:
        same_day = [e.severity for e in history if e.timestamp.weekday() == target.weekday()]
        if len(same_day) < self._cfg.weekday_min_samples:
            return 0.0
        overall = statistics.fmean(e.severity for e in history)
        return statistics.fmean(same_day) - overall

    def _factors(
        self,
        recent: Sequence[Entry],
        trend: float,
        baseline: float,
        std_dev: float,
        adjustment: float,
    ) -> list[str]:
        scale = self._cfg.scale_max
        factors: list[str] = []

        if abs(trend) > 0.3:
            factors.append("increasing trend" if trend > 0 else "decreasing trend")
        if std_dev > 0.2 * scale:
            factors.append("elevated volatility")

        latest = recent[-1].severity
        if (std_dev > 0 and latest >= baseline + std_dev) or latest > 0.7 * scale:
            factors.append("recent high severity")

        with_interventions = sum(1 for e in recent if e.has_intervention)
        if with_interventions > 0.6 * len(recent):
            factors.append("regular intervention use")
        if adjustment != 0.0:
            factors.append("day-of-week pattern")

        if not factors:
            factors.append("recent pattern stability")
        return factors

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def suggest_preventive_actions(
        self,
        entries: Sequence[Entry],
        *,
        now: datetime | None = None,
    ) -> list[PreventiveAction]:
        """Practical suggestions derived from the forecast and logging habits."""
        cfg = self._cfg
        history = sorted(entries, key=lambda e: (e.timestamp, e.id))
        if len(history) < cfg.prediction_min_points:
            return [PreventiveAction(
                action="Continue tracking daily",
                reason="More entries make personal insights possible",
                priority="high",
                timing="daily",
                confidence=1.0,
            )]

        actions: list[PreventiveAction] = []
        prediction = self.predict(history, now=now)
        if prediction is not None:
            if prediction.predicted > 0.7 * cfg.scale_max:
                actions.append(PreventiveAction(
                    action="Prepare symptom management strategies",
                    reason=f"Next entry forecast at {prediction.predicted:.1f}/{cfg.scale_max:g}",
                    priority="high",
                    timing="before your next entry",
                    confidence=prediction.confidence,
                ))
            if "increasing trend" in prediction.factors:
                actions.append(PreventiveAction(
                    action="Consider consulting a healthcare provider",
                    reason="Severity has been rising over recent entries",
                    priority="medium",
                    timing="this week",
                    confidence=prediction.confidence,
                ))

        best = self._most_effective_intervention(history)
        if best is not None:
            name, effectiveness, uses = best
            actions.append(PreventiveAction(
                action=f"Consider {name} when symptoms rise",
                reason=f"Followed by lower severity in the past ({uses} uses)",
                priority="medium",
                timing="as needed",
                confidence=min(uses / 10, 0.9),
            ))

        reference = now or history[-1].timestamp
        recent_count = sum(1 for e in history if e.timestamp > reference - timedelta(days=7))
        if recent_count < 4:
            actions.append(PreventiveAction(
                action="Track more consistently",
                reason=f"Only {recent_count} entries in the last 7 days",
                priority="medium",
                timing="daily",
                confidence=0.8,
            ))
        return actions

    def _most_effective_intervention(
        self, history: Sequence[Entry]
    ) -> tuple[str, float, int] | None:
        improvements: dict[str, list[float]] = defaultdict(list)
        for current, following in zip(history, history[1:]):
            for item in current.interventions:
                drop = current.severity - following.severity
                improvements[item.name.lower()].append(max(0.0, drop))

        best: tuple[str, float, int] | None = None
        for name, drops in sorted(improvements.items()):
            if len(drops) < 3:
                continue
            effectiveness = min(1.0, statistics.fmean(drops) / (self._cfg.scale_max / 2))
            if effectiveness > 0.6 and (best is None or effectiveness > best[1]):
                best = (name, effectiveness, len(drops))
        return best

    def optimal_check_in_times(self, entries: Sequence[Entry]) -> list[CheckInTime]:
        """Times of day the user logs most consistently (UTC hours).

        Each period reports its most common logging hour; the night period
        wraps midnight, so hours are never averaged.
        """
        if len(entries) < 5:
            return []

        by_period: dict[str, list[Entry]] = defaultdict(list)
        for entry in entries:
            by_period[time_of_day(entry.timestamp.hour)].append(entry)

        ranked = sorted(
            ((label, group) for label, group in by_period.items() if len(group) >= 2),
            key=lambda item: (-len(item[1]), item[0]),
        )
        times: list[CheckInTime] = []
        for rank, (label, group) in enumerate(ranked):
            times.append(CheckInTime(
                hour=_most_common_hour(group),
                label=label,
                entry_count=len(group),
                mean_severity=statistics.fmean(e.severity for e in group),
                share=len(group) / len(entries),
                reason="most consistent tracking time" if rank == 0 else "regular tracking time",
            ))
        return times
