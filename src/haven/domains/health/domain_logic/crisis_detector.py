"""Crisis detector: flags a sudden severity escalation against a recent baseline.

Pure function over an entry snapshot. It only signals; responding to a
signal (surfacing resources, alerting someone) is the caller's decision.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from statistics import mean

from haven.core.storage.models import Entry
from haven.domains.health.domain_logic.insight_models import CrisisSignal, InsightConfig

logger = logging.getLogger(__name__)


def _window(entries: Sequence[Entry], lookback_days: int, now: datetime | None) -> list[Entry]:
    ordered = sorted(entries, key=lambda e: (e.timestamp, e.id))
    if now is not None:
        ordered = [e for e in ordered if e.timestamp <= now]
    if not ordered:
        return []
    start = ordered[-1].timestamp - timedelta(days=lookback_days)
    return [e for e in ordered if e.timestamp >= start]


def detect_crisis(
    entries: Sequence[Entry],
    *,
    config: InsightConfig | None = None,
    now: datetime | None = None,
) -> CrisisSignal:
    """Compare the most recent severity against the mean of the window before it.

    Fires when ``baseline > 0`` and the latest value is both at least
    ``crisis_ratio`` times the baseline and ``crisis_min_delta`` above it, or,
    with a zero baseline, when the latest value rose at least
    ``crisis_min_delta`` above the earliest value in the window.

    Args:
        entries: Entry snapshot, any order.
        config: Thresholds; defaults to :class:`InsightConfig`.
        now: Reference time. Entries after it are ignored.

    Returns:
        A ``CrisisSignal``. Fewer than two entries in the window always
        yields ``detected=False``.
    """
    cfg = config or InsightConfig()
    parameters = {
        "ratio_threshold": cfg.crisis_ratio,
        "min_delta": cfg.crisis_min_delta,
        "lookback_days": float(cfg.crisis_lookback_days),
    }
    window = _window(entries, cfg.crisis_lookback_days, now)

    if len(window) < 2:
        return CrisisSignal(
            detected=False,
            baseline=None,
            latest=window[-1].severity if window else None,
            delta=None,
            ratio=None,
            window_size=len(window),
            parameters=parameters,
            confidence=0.0,
            explanation=["insufficient data: fewer than 2 entries in the last "
                         f"{cfg.crisis_lookback_days} days"],
        )

    previous = window[:-1]
    latest = window[-1].severity
    baseline = mean(e.severity for e in previous)
    delta = latest - baseline
    confidence = min(1.0, len(previous) / cfg.crisis_lookback_days)

    explanation = [
        f"baseline {baseline:.2f} from {len(previous)} earlier entries in the last "
        f"{cfg.crisis_lookback_days} days",
    ]

    if baseline > 0:
        ratio = latest / baseline
        detected = ratio >= cfg.crisis_ratio and delta >= cfg.crisis_min_delta
        explanation.append(
            f"latest {latest:g} is {ratio:.2f}x baseline (threshold {cfg.crisis_ratio:g}x)"
        )
        explanation.append(
            f"change of {delta:+.2f} (threshold {cfg.crisis_min_delta:g})"
        )
    else:
        ratio = None
        rise = latest - window[0].severity
        detected = rise >= cfg.crisis_min_delta
        explanation.append(
            f"baseline is zero; rise of {rise:+.2f} from the earliest entry "
            f"(threshold {cfg.crisis_min_delta:g})"
        )

    if detected:
        explanation.append("sudden escalation relative to your recent baseline")
        logger.info("Crisis signal raised (window=%d)", len(window))

    return CrisisSignal(
        detected=detected,
        baseline=baseline,
        latest=latest,
        delta=delta,
        ratio=ratio,
        window_size=len(window),
        parameters=parameters,
        confidence=confidence,
        explanation=explanation,
    )
