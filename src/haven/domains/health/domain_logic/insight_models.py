"""Insight result types and the analytics configuration structs.

Results are ephemeral: they are computed from a snapshot of entries and never
persisted. Every result carries a ``confidence`` in [0, 1] and a list of
plain-language ``explanation`` lines.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Configuration (injected at construction, never read from globals)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InsightConfig:
    """Thresholds for every analytics engine.

    The numbers are heuristics to be tuned against real data, not clinical
    cut-offs.
    """

    scale_max: float = 10.0

    # Crisis detection
    crisis_ratio: float = 1.2
    crisis_min_delta: float = 2.0
    crisis_lookback_days: int = 7

    # Trend analysis
    trend_lookback_days: int = 30
    trend_min_points: int = 3
    rolling_window: int = 7
    anomaly_sigma: float = 2.0
    anomaly_min_history: int = 3

    # Prediction
    prediction_window: int = 7
    prediction_min_points: int = 7
    weekday_min_samples: int = 3

    # Multivariate analysis
    min_cell_count: int = 3
    interaction_threshold: float = 1.0
    min_support: int = 3
    min_lift: float = 1.2
    max_clusters: int = 3
    min_cluster_size: int = 3
    correlation_min_entries: int = 10
    interaction_min_entries: int = 15
    pattern_min_entries: int = 20
    causal_min_entries: int = 14
    cluster_min_entries: int = 10


@dataclass(frozen=True)
class FeatureConfig:
    """Which insight features are enabled for this installation."""

    crisis_detection: bool = True
    trend_analysis: bool = True
    predictions: bool = True
    multivariate: bool = True


class FeatureDisabled(Exception):
    """Raised when an insight is requested for a disabled feature."""

    def __init__(self, feature: str) -> None:
        self.feature = feature
        super().__init__(f"Insight feature disabled: {feature}")


# ---------------------------------------------------------------------------
# Serialization helper
# ---------------------------------------------------------------------------

def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float):
        return round(value, 4)
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class _Result:
    def to_dict(self) -> dict[str, Any]:
        data = _jsonable(asdict(self))
        data["type"] = type(self).__name__
        return data


# ---------------------------------------------------------------------------
# Shared results
# ---------------------------------------------------------------------------

@dataclass
class InsufficientData(_Result):
    """Returned instead of a degenerate number when data is too thin."""

    analysis: str
    required: int
    available: int
    confidence: float = 0.0
    explanation: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.explanation:
            self.explanation = [
                f"{self.analysis} needs at least {self.required} entries; "
                f"{self.available} available"
            ]


# ---------------------------------------------------------------------------
# Crisis
# ---------------------------------------------------------------------------

@dataclass
class CrisisSignal(_Result):
    detected: bool
    baseline: float | None
    latest: float | None
    delta: float | None
    ratio: float | None
    window_size: int
    parameters: dict[str, float] = field(default_factory=dict)
    confidence: float = 0.0
    explanation: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Trend
# ---------------------------------------------------------------------------

class TrendLabel(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    WORSENING = "worsening"


@dataclass
class TrendPoint:
    entry_id: str
    timestamp: datetime
    severity: float
    rolling_mean: float
    rolling_std: float
    anomalous: bool = False


@dataclass
class EngagementTrend:
    """Logging frequency over the last two weeks."""

    recent_count: int        # entries in the last 7 days
    previous_count: int      # entries in the 7 days before that
    label: str               # 'increasing' | 'stable' | 'decreasing'


@dataclass
class TrendResult(_Result):
    label: TrendLabel
    mean: float
    std_dev: float
    slope_per_day: float
    total_change: float
    span_days: float
    sample_size: int
    points: list[TrendPoint] = field(default_factory=list)
    anomalies: list[str] = field(default_factory=list)
    engagement: EngagementTrend | None = None
    confidence: float = 0.0
    explanation: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Prediction
# ---------------------------------------------------------------------------

@dataclass
class Prediction(_Result):
    predicted: float
    low: float
    high: float
    baseline: float
    trend: float
    weekday_adjustment: float
    target_date: datetime
    sample_size: int
    factors: list[str] = field(default_factory=list)
    confidence: float = 0.0
    explanation: list[str] = field(default_factory=list)


@dataclass
class PreventiveAction:
    action: str
    reason: str
    priority: str            # 'high' | 'medium' | 'low'
    timing: str
    confidence: float


@dataclass
class CheckInTime:
    hour: int                # 0-23, UTC
    label: str
    entry_count: int
    mean_severity: float
    share: float             # fraction of all entries logged in this period
    reason: str


# ---------------------------------------------------------------------------
# Multivariate
# ---------------------------------------------------------------------------

@dataclass
class Correlation:
    covariate: str
    r: float
    significance: float      # 0-1, from the t statistic
    strength: str            # 'weak' | 'moderate' | 'strong'
    n_present: int
    n_absent: int


@dataclass
class CorrelationSet(_Result):
    correlations: list[Correlation]
    sample_size: int
    confidence: float = 0.0
    explanation: list[str] = field(default_factory=list)


@dataclass
class InteractionEffect:
    factor_a: str
    factor_b: str
    interaction: float
    kind: str                # 'synergistic' | 'antagonistic'
    cell_means: dict[str, float]
    cell_counts: dict[str, int]
    confidence: float


@dataclass
class InteractionSet(_Result):
    effects: list[InteractionEffect]
    sample_size: int
    pairs_tested: int
    confidence: float = 0.0
    explanation: list[str] = field(default_factory=list)


@dataclass
class CompoundPattern:
    conditions: list[str]
    support: int
    mean_severity: float
    deviation: float
    direction: str           # 'higher' | 'lower'
    recommendation: str
    confidence: float


@dataclass
class PatternSet(_Result):
    patterns: list[CompoundPattern]
    sample_size: int
    overall_mean: float
    overall_std: float
    confidence: float = 0.0
    explanation: list[str] = field(default_factory=list)


@dataclass
class SeverityCluster:
    label: str               # 'low severity' | 'moderate severity' | 'high severity'
    centroid_severity: float
    centroid_hour: float
    size: int
    entry_ids: list[str]
    common_tags: list[str] = field(default_factory=list)


@dataclass
class ClusterSet(_Result):
    clusters: list[SeverityCluster]
    sample_size: int
    confidence: float = 0.0
    explanation: list[str] = field(default_factory=list)


@dataclass
class CausalHint:
    antecedent: str
    outcome: str
    occurrences: int
    lift: float
    confidence: float


@dataclass
class CausalHintSet(_Result):
    hints: list[CausalHint]
    sample_size: int
    pairs_considered: int
    confidence: float = 0.0
    explanation: list[str] = field(default_factory=list)


@dataclass
class MultiVariateResult(_Result):
    correlations: CorrelationSet | InsufficientData
    interactions: InteractionSet | InsufficientData
    patterns: PatternSet | InsufficientData
    clusters: ClusterSet | InsufficientData
    causal_hints: CausalHintSet | InsufficientData
    sample_size: int
    confidence: float = 0.0
    explanation: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "correlations": self.correlations.to_dict(),
            "interactions": self.interactions.to_dict(),
            "patterns": self.patterns.to_dict(),
            "clusters": self.clusters.to_dict(),
            "causal_hints": self.causal_hints.to_dict(),
            "sample_size": self.sample_size,
            "confidence": round(self.confidence, 4),
            "explanation": list(self.explanation),
        }
