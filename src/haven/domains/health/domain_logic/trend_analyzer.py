"""Longitudinal trend analysis over journal entries.

Computes rolling statistics, a least-squares slope over day-index, a
categorical trend label and per-entry anomaly flags against the user's own
recent baseline.
"""

from __future__ import annotations

import logging
import statistics
from collections.abc import Sequence
from datetime import datetime, timedelta

from haven.core.storage.models import Entry
from haven.domains.health.domain_logic.insight_models import (
    EngagementTrend,
    InsightConfig,
    InsufficientData,
    TrendLabel,
    TrendPoint,
    TrendResult,
)

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86_400.0


def least_squares_slope(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Slope of the ordinary least-squares line; 0.0 when x has no spread."""
    if len(xs) < 2:
        return 0.0
    mx = statistics.fmean(xs)
    my = statistics.fmean(ys)
    sxx = sum((x - mx) ** 2 for x in xs)
    if sxx == 0:
        return 0.0
    sxy = sum((x - mx) * (y - my) for x, y in zip(xs, ys))
    return sxy / sxx


class TrendAnalysisEngine:
    """Computes severity trends from an entry snapshot.

    Usage::

        engine = TrendAnalysisEngine(InsightConfig())
        result = engine.analyze(entries)
        if isinstance(result, TrendResult):
            print(result.label, result.anomalies)
    """

    def __init__(self, config: InsightConfig | None = None) -> None:
        self._cfg = config or InsightConfig()

    def analyze(
        self,
        entries: Sequence[Entry],
        *,
        now: datetime | None = None,
        lookback_days: int | None = None,
    ) -> TrendResult | InsufficientData:
        """Analyze the last ``lookback_days`` ending at the newest entry.

        Args:
            entries: Entry snapshot, any order.
            now: Reference time. Entries after it are ignored; also anchors
                the engagement comparison (defaults to the newest entry).
            lookback_days: Window length in days (defaults to
                ``trend_lookback_days``).

        Returns:
            ``TrendResult``, or ``InsufficientData`` below ``trend_min_points``.
        """
        cfg = self._cfg
        days = cfg.trend_lookback_days if lookback_days is None else lookback_days
        if days <= 0:
            raise ValueError("lookback_days must be positive")
        ordered = sorted(entries, key=lambda e: (e.timestamp, e.id))
        if now is not None:
            ordered = [e for e in ordered if e.timestamp <= now]

        if ordered:
            start = ordered[-1].timestamp - timedelta(days=days)
            window = [e for e in ordered if e.timestamp >= start]
        else:
            window = []

        if len(window) < cfg.trend_min_points:
            return InsufficientData("trend analysis", cfg.trend_min_points, len(window))

        origin = window[0].timestamp
        xs = [(e.timestamp - origin).total_seconds() / _SECONDS_PER_DAY for e in window]
        ys = [e.severity for e in window]

        mean = statistics.fmean(ys)
        std_dev = statistics.pstdev(ys)
        slope = least_squares_slope(xs, ys)
        span = xs[-1] - xs[0]
        total_change = slope * span

        # a strictly monotone window is labelled by direction, whatever the spread
        if all(a < b for a, b in zip(ys, ys[1:])):
            label = TrendLabel.WORSENING
        elif all(a > b for a, b in zip(ys, ys[1:])):
            label = TrendLabel.IMPROVING
        elif (std_dev == 0 and slope == 0) or abs(total_change) < std_dev:
            label = TrendLabel.STABLE
        elif slope > 0:
            label = TrendLabel.WORSENING
        else:
            label = TrendLabel.IMPROVING

        points = self._rolling_points(window)
        anomalies = [p.entry_id for p in points if p.anomalous]

        reference = now or ordered[-1].timestamp
        engagement = self.engagement_trend(ordered, reference)

        confidence = (
            0.7 * min(1.0, len(window) / 14)
            + 0.3 * (1.0 - min(1.0, std_dev / cfg.scale_max))
        )

        explanation = [
            f"{len(window)} entries over {span:.1f} days",
            f"average severity {mean:.2f} (spread {std_dev:.2f})",
            f"change over the period {total_change:+.2f}",
        ]
        if label is TrendLabel.STABLE:
            explanation.append("change is smaller than the usual day-to-day spread")
        else:
            explanation.append(f"severity is {label.value}")
        if anomalies:
            explanation.append(f"{len(anomalies)} unusually high entries")

        return TrendResult(
            label=label,
            mean=mean,
            std_dev=std_dev,
            slope_per_day=slope,
            total_change=total_change,
            span_days=span,
            sample_size=len(window),
            points=points,
            anomalies=anomalies,
            engagement=engagement,
            confidence=confidence,
            explanation=explanation,
        )

    def _rolling_points(self, window: Sequence[Entry]) -> list[TrendPoint]:
        cfg = self._cfg
        points: list[TrendPoint] = []
        for i, entry in enumerate(window):
            recent = [e.severity for e in window[max(0, i - cfg.rolling_window + 1): i + 1]]
            preceding = [e.severity for e in window[max(0, i - cfg.rolling_window): i]]
            anomalous = False
            if len(preceding) >= cfg.anomaly_min_history:
                threshold = statistics.fmean(preceding) + cfg.anomaly_sigma * statistics.pstdev(preceding)
                anomalous = entry.severity > threshold
            points.append(TrendPoint(
                entry_id=entry.id,
                timestamp=entry.timestamp,
                severity=entry.severity,
                rolling_mean=statistics.fmean(recent),
                rolling_std=statistics.pstdev(recent),
                anomalous=anomalous,
            ))
        return points

    @staticmethod
    def engagement_trend(entries: Sequence[Entry], reference: datetime) -> EngagementTrend:
        """Compare logging frequency in the last week with the week before."""
        week = timedelta(days=7)
        recent = sum(1 for e in entries if reference - week < e.timestamp <= reference)
        previous = sum(1 for e in entries if reference - 2 * week < e.timestamp <= reference - week)
        if abs(recent - previous) <= 1:
            label = "stable"
        elif recent > previous:
            label = "increasing"
        else:
            label = "decreasing"
        return EngagementTrend(recent_count=recent, previous_count=previous, label=label)
