"""Multi-variate analysis: which combinations of circumstances go with severity.

Five independent sub-analyses share one covariate extraction step:

* correlation matrix (point-biserial r between severity and each flag)
* interaction effects between pairs of flags
* compound patterns (2-3 flag conjunctions with unusual mean severity)
* lightweight clustering over (severity, hour of day)
* causal-direction hints between consecutive entries

Each degrades to ``InsufficientData`` on its own when data is too thin, and
every reported item carries its sample size and a confidence score. Hours and
weekdays are taken from the UTC timestamps.
"""

from __future__ import annotations

import itertools
import logging
import math
import statistics
from collections import Counter
from collections.abc import Sequence
from datetime import datetime

from haven.core.storage.models import Bucket, Entry
from haven.domains.health.domain_logic.insight_models import (
    CausalHint,
    CausalHintSet,
    ClusterSet,
    CompoundPattern,
    Correlation,
    CorrelationSet,
    InsightConfig,
    InsufficientData,
    InteractionEffect,
    InteractionSet,
    MultiVariateResult,
    PatternSet,
    SeverityCluster,
)
from haven.domains.health.domain_logic.predictive_insights import median_gap, time_of_day

logger = logging.getLogger(__name__)

_WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
_MAX_PATTERNS = 10


# ---------------------------------------------------------------------------
# Covariates
# ---------------------------------------------------------------------------

def entry_features(entry: Entry, frequent_tags: frozenset[str] = frozenset()) -> dict[str, bool]:
    """Binary covariates for one entry.

    Args:
        entry: The entry.
        frequent_tags: Tag keys common enough to be worth a covariate.
    """
    period = time_of_day(entry.timestamp.hour)
    weekday = entry.timestamp.weekday()
    features = {f"time:{p}": p == period for p in ("morning", "afternoon", "evening", "night")}
    features.update({f"day:{name}": i == weekday for i, name in enumerate(_WEEKDAYS)})
    features["weekend"] = weekday >= 5
    features["intervention"] = entry.has_intervention
    features["context:high_stress"] = entry.context.stress is Bucket.HIGH
    features["context:poor_sleep"] = entry.context.sleep is Bucket.LOW
    features["context:low_mood"] = entry.context.mood is Bucket.LOW
    keys = entry.tag_keys
    for tag in frequent_tags:
        features[f"tag:{tag}"] = tag in keys
    return features


def describe_feature(name: str) -> str:
    """Plain-language label for a covariate name."""
    kind, _, value = name.partition(":")
    if kind == "time":
        return f"{value}s"
    if kind == "day":
        return {n: d for n, d in zip(_WEEKDAYS, (
            "Mondays", "Tuesdays", "Wednesdays", "Thursdays", "Fridays", "Saturdays", "Sundays",
        ))}[value]
    if kind == "tag":
        tag_kind, _, tag_value = value.partition(":")
        return f"{tag_kind} '{tag_value}'"
    if kind == "context":
        return value.replace("_", " ")
    if name == "weekend":
        return "weekends"
    if name == "intervention":
        return "entries with an intervention"
    return name


def _strength(r: float) -> str:
    magnitude = abs(r)
    if magnitude < 0.3:
        return "weak"
    if magnitude <= 0.6:
        return "moderate"
    return "strong"


def _significance(r: float, n: int) -> float:
    if n <= 2:
        return 0.0
    if abs(r) >= 1.0:
        return 1.0
    t = abs(r) * math.sqrt((n - 2) / (1 - r * r))
    return math.erf(t / math.sqrt(2))


class MultiVariateAnalysisEngine:
    """Runs the multi-variate sub-analyses over an entry snapshot.

    Usage::

        engine = MultiVariateAnalysisEngine(InsightConfig())
        result = engine.analyze(entries)
        correlations = engine.correlation_matrix(entries)
    """

    def __init__(self, config: InsightConfig | None = None) -> None:
        self._cfg = config or InsightConfig()

    def _prepare(
        self, entries: Sequence[Entry], now: datetime | None
    ) -> tuple[list[Entry], list[dict[str, bool]]]:
        ordered = sorted(entries, key=lambda e: (e.timestamp, e.id))
        if now is not None:
            ordered = [e for e in ordered if e.timestamp <= now]
        tag_counts = Counter(key for e in ordered for key in e.tag_keys)
        frequent = frozenset(k for k, c in tag_counts.items() if c >= self._cfg.min_cell_count)
        return ordered, [entry_features(e, frequent) for e in ordered]

    def analyze(self, entries: Sequence[Entry], *, now: datetime | None = None) -> MultiVariateResult:
        """Run every sub-analysis and summarise them."""
        ordered, _ = self._prepare(entries, now)
        correlations = self.correlation_matrix(ordered)
        interactions = self.interaction_effects(ordered)
        patterns = self.compound_patterns(ordered)
        clusters = self.clusters(ordered)
        causal = self.causal_hints(ordered)

        correlation_score = 0.0
        if isinstance(correlations, CorrelationSet) and correlations.correlations:
            correlation_score = statistics.fmean(c.significance for c in correlations.correlations)
        pattern_score = 0.0
        if isinstance(patterns, PatternSet) and patterns.patterns:
            pattern_score = statistics.fmean(p.confidence for p in patterns.patterns)
        confidence = (
            0.4 * min(1.0, len(ordered) / 30)
            + 0.3 * correlation_score
            + 0.3 * pattern_score
        )

        explanation = [f"{len(ordered)} entries analysed"]
        for part in (correlations, interactions, patterns, clusters, causal):
            if isinstance(part, InsufficientData):
                explanation.append(part.explanation[0])
        if isinstance(correlations, CorrelationSet):
            explanation.append(f"{len(correlations.correlations)} covariates tested against severity")
        if isinstance(patterns, PatternSet) and patterns.patterns:
            explanation.append(f"{len(patterns.patterns)} notable combinations found")

        return MultiVariateResult(
            correlations=correlations,
            interactions=interactions,
            patterns=patterns,
            clusters=clusters,
            causal_hints=causal,
            sample_size=len(ordered),
            confidence=confidence,
            explanation=explanation,
        )

    # ------------------------------------------------------------------
    # Correlation matrix
    # ------------------------------------------------------------------

    def correlation_matrix(
        self, entries: Sequence[Entry], *, now: datetime | None = None
    ) -> CorrelationSet | InsufficientData:
        """Point-biserial correlation of severity with each binary covariate."""
        cfg = self._cfg
        ordered, features = self._prepare(entries, now)
        n = len(ordered)
        if n < cfg.correlation_min_entries:
            return InsufficientData("correlation analysis", cfg.correlation_min_entries, n)

        ys = [e.severity for e in ordered]
        if statistics.pstdev(ys) == 0:
            return CorrelationSet(
                correlations=[],
                sample_size=n,
                confidence=0.0,
                explanation=["severity never varies, so nothing can correlate with it"],
            )

        results: list[Correlation] = []
        for name in sorted(features[0]):
            xs = [1.0 if f[name] else 0.0 for f in features]
            present = int(sum(xs))
            absent = n - present
            if present < cfg.min_cell_count or absent < cfg.min_cell_count:
                continue
            r = statistics.correlation(xs, ys)
            results.append(Correlation(
                covariate=name,
                r=r,
                significance=_significance(r, n),
                strength=_strength(r),
                n_present=present,
                n_absent=absent,
            ))

        results.sort(key=lambda c: (-abs(c.r), c.covariate))
        explanation = [
            f"{c.strength} {'positive' if c.r > 0 else 'negative'} link between "
            f"{describe_feature(c.covariate)} and severity (r={c.r:.2f}, n={n})"
            for c in results
            if c.strength != "weak"
        ]
        confidence = min(1.0, n / 30)
        return CorrelationSet(
            correlations=results,
            sample_size=n,
            confidence=confidence,
            explanation=explanation or ["no covariate shows more than a weak link"],
        )

    # ------------------------------------------------------------------
    # Interaction effects
    # ------------------------------------------------------------------

    def interaction_effects(
        self, entries: Sequence[Entry], *, now: datetime | None = None
    ) -> InteractionSet | InsufficientData:
        """Pairs whose joint effect departs from the sum of their separate effects.

        A pair is only considered when each of its four cells (both, only A,
        only B, neither) holds at least ``min_cell_count`` entries.
        """
        cfg = self._cfg
        ordered, features = self._prepare(entries, now)
        n = len(ordered)
        if n < cfg.interaction_min_entries:
            return InsufficientData("interaction analysis", cfg.interaction_min_entries, n)

        names = sorted(k for k in features[0] if not k.startswith("day:"))
        effects: list[InteractionEffect] = []
        tested = 0
        for a, b in itertools.combinations(names, 2):
            cells: dict[str, list[float]] = {"both": [], "a_only": [], "b_only": [], "neither": []}
            for entry, flags in zip(ordered, features):
                if flags[a] and flags[b]:
                    cells["both"].append(entry.severity)
                elif flags[a]:
                    cells["a_only"].append(entry.severity)
                elif flags[b]:
                    cells["b_only"].append(entry.severity)
                else:
                    cells["neither"].append(entry.severity)
            counts = {k: len(v) for k, v in cells.items()}
            if min(counts.values()) < cfg.min_cell_count:
                continue
            tested += 1

            means = {k: statistics.fmean(v) for k, v in cells.items()}
            interaction = means["both"] - means["a_only"] - means["b_only"] + means["neither"]
            if interaction > cfg.interaction_threshold:
                kind = "synergistic"
            elif interaction < -cfg.interaction_threshold:
                kind = "antagonistic"
            else:
                continue
            effects.append(InteractionEffect(
                factor_a=a,
                factor_b=b,
                interaction=interaction,
                kind=kind,
                cell_means=means,
                cell_counts=counts,
                confidence=min(1.0, min(counts.values()) / 10),
            ))

        effects.sort(key=lambda e: (-abs(e.interaction), e.factor_a, e.factor_b))
        explanation = [
            f"{describe_feature(e.factor_a)} and {describe_feature(e.factor_b)} together are "
            f"{'worse' if e.interaction > 0 else 'better'} than either alone suggests "
            f"({e.interaction:+.2f})"
            for e in effects
        ]
        return InteractionSet(
            effects=effects,
            sample_size=n,
            pairs_tested=tested,
            confidence=min(1.0, n / 30) if effects else 0.0,
            explanation=explanation or [f"{tested} pairs tested, no interaction found"],
        )

    # ------------------------------------------------------------------
    # Compound patterns
    # ------------------------------------------------------------------

    def compound_patterns(
        self, entries: Sequence[Entry], *, now: datetime | None = None
    ) -> PatternSet | InsufficientData:
        """Conjunctions of 2-3 conditions whose mean severity stands out."""
        cfg = self._cfg
        ordered, features = self._prepare(entries, now)
        n = len(ordered)
        if n < cfg.pattern_min_entries:
            return InsufficientData("pattern discovery", cfg.pattern_min_entries, n)

        severities = [e.severity for e in ordered]
        overall_mean = statistics.fmean(severities)
        overall_std = statistics.pstdev(severities)

        names = sorted(k for k in features[0] if not k.startswith("day:"))
        matches = {
            name: frozenset(i for i, f in enumerate(features) if f[name]) for name in names
        }
        frequent = [name for name in names if len(matches[name]) >= cfg.min_support]

        pairs: dict[tuple[str, ...], frozenset[int]] = {}
        for a, b in itertools.combinations(frequent, 2):
            rows = matches[a] & matches[b]
            if len(rows) >= cfg.min_support:
                pairs[(a, b)] = rows

        triples: dict[tuple[str, ...], frozenset[int]] = {}
        for (a, b), rows in pairs.items():
            for c in frequent:
                if c <= b:
                    continue
                combined = rows & matches[c]
                if len(combined) < cfg.min_support:
                    continue
                subsets = ((a, b), (a, c), (b, c))
                if any(pairs.get(s) == combined for s in subsets):
                    continue
                triples[(a, b, c)] = combined

        patterns: list[CompoundPattern] = []
        if overall_std > 0:
            for conditions, rows in itertools.chain(pairs.items(), triples.items()):
                values = [severities[i] for i in rows]
                mean = statistics.fmean(values)
                deviation = mean - overall_mean
                if abs(deviation) <= overall_std:
                    continue
                patterns.append(CompoundPattern(
                    conditions=list(conditions),
                    support=len(rows),
                    mean_severity=mean,
                    deviation=deviation,
                    direction="higher" if deviation > 0 else "lower",
                    recommendation=self._recommend(conditions, deviation, mean, overall_mean),
                    confidence=min(1.0, len(rows) / 10) * min(1.0, abs(deviation) / (2 * overall_std)),
                ))

        patterns.sort(key=lambda p: (-abs(p.deviation) * p.support, p.conditions))
        patterns = patterns[:_MAX_PATTERNS]
        explanation = [
            f"when {' + '.join(describe_feature(c) for c in p.conditions)}: severity averages "
            f"{p.mean_severity:.1f} vs {overall_mean:.1f} overall ({p.support} entries)"
            for p in patterns
        ]
        return PatternSet(
            patterns=patterns,
            sample_size=n,
            overall_mean=overall_mean,
            overall_std=overall_std,
            confidence=statistics.fmean(p.confidence for p in patterns) if patterns else 0.0,
            explanation=explanation or ["no combination of conditions stands out"],
        )

    @staticmethod
    def _recommend(conditions: Sequence[str], deviation: float, mean: float, overall: float) -> str:
        described = " + ".join(describe_feature(c) for c in conditions)
        if deviation > 0:
            return (
                f"Plan ahead for {described}: severity tends to run higher "
                f"({mean:.1f} vs {overall:.1f})"
            )
        return (
            f"Keep doing what works during {described}: severity tends to run lower "
            f"({mean:.1f} vs {overall:.1f})"
        )

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    def clusters(
        self, entries: Sequence[Entry], *, now: datetime | None = None
    ) -> ClusterSet | InsufficientData:
        """Deterministic k-means over (severity, hour of day), k <= ``max_clusters``.

        Centroids start at severity quantiles. The largest k whose clusters all
        reach ``min_cluster_size`` is kept.
        """
        cfg = self._cfg
        ordered, _ = self._prepare(entries, now)
        n = len(ordered)
        if n < cfg.cluster_min_entries:
            return InsufficientData("clustering", cfg.cluster_min_entries, n)

        points = [(e.severity / cfg.scale_max, e.timestamp.hour / 24) for e in ordered]
        assignment: list[int] = [0] * n
        k = 1
        for k in range(min(cfg.max_clusters, n // cfg.min_cluster_size), 0, -1):
            assignment = _kmeans(points, k)
            sizes = Counter(assignment)
            if len(sizes) == k and min(sizes.values()) >= cfg.min_cluster_size:
                break
        else:
            k = 1
            assignment = [0] * n

        clusters: list[SeverityCluster] = []
        for index in sorted(set(assignment)):
            members = [e for e, a in zip(ordered, assignment) if a == index]
            centroid_sev = statistics.fmean(e.severity for e in members)
            centroid_hour = statistics.fmean(e.timestamp.hour for e in members)
            tag_counts = Counter(key for e in members for key in e.tag_keys)
            common = [t for t, c in tag_counts.most_common(3) if c * 2 >= len(members)]
            clusters.append(SeverityCluster(
                label=self._band(centroid_sev),
                centroid_severity=centroid_sev,
                centroid_hour=centroid_hour,
                size=len(members),
                entry_ids=[e.id for e in members],
                common_tags=common,
            ))

        clusters.sort(key=lambda c: c.centroid_severity)
        labels = Counter(c.label for c in clusters)
        for cluster in clusters:
            if labels[cluster.label] > 1:
                cluster.label = f"{cluster.label} ({time_of_day(round(cluster.centroid_hour) % 24)})"

        return ClusterSet(
            clusters=clusters,
            sample_size=n,
            confidence=min(1.0, n / 30) if k > 1 else 0.0,
            explanation=[
                f"{c.label}: {c.size} entries around {c.centroid_severity:.1f} "
                f"near {round(c.centroid_hour) % 24:02d}:00"
                for c in clusters
            ],
        )

    def _band(self, severity: float) -> str:
        scale = self._cfg.scale_max
        if severity < 0.4 * scale:
            return "low severity"
        if severity < 0.7 * scale:
            return "moderate severity"
        return "high severity"

    # ------------------------------------------------------------------
    # Causal-direction hints
    # ------------------------------------------------------------------

    def causal_hints(
        self, entries: Sequence[Entry], *, now: datetime | None = None
    ) -> CausalHintSet | InsufficientData:
        """Conditions that repeatedly precede an outcome in the next entry.

        Only consecutive entries within one logging cycle (1.5x the median
        gap) are paired. A hint needs at least three occurrences, a lift above
        ``min_lift`` and no occurrence of the outcome preceding the condition.
        These are hints, never causal claims; confidence is capped at 0.6.
        """
        cfg = self._cfg
        ordered, features = self._prepare(entries, now)
        n = len(ordered)
        if n < cfg.causal_min_entries:
            return InsufficientData("causal-direction analysis", cfg.causal_min_entries, n)

        cycle = median_gap(ordered) * 1.5
        severities = [e.severity for e in ordered]
        mean = statistics.fmean(severities)
        std = statistics.pstdev(severities)
        change = max(1.0, std)

        outcomes: list[set[str]] = []
        for i, entry in enumerate(ordered):
            flags: set[str] = set()
            if std > 0 and entry.severity >= mean + std:
                flags.add("high severity")
            if std > 0 and entry.severity <= mean - std:
                flags.add("low severity")
            if i > 0 and entry.timestamp - ordered[i - 1].timestamp <= cycle:
                delta = entry.severity - ordered[i - 1].severity
                if delta >= change:
                    flags.add("severity rise")
                elif delta <= -change:
                    flags.add("severity drop")
            outcomes.append(flags)

        pairs = [
            (i, i + 1)
            for i in range(n - 1)
            if ordered[i + 1].timestamp - ordered[i].timestamp <= cycle
        ]
        if not pairs:
            return CausalHintSet(hints=[], sample_size=n, pairs_considered=0,
                                 explanation=["no consecutive entries within one logging cycle"])

        names = sorted(k for k in features[0] if not k.startswith("day:"))
        outcome_names = ("high severity", "low severity", "severity rise", "severity drop")
        hints: list[CausalHint] = []
        for name in names:
            with_a = [(i, j) for i, j in pairs if features[i][name]]
            if len(with_a) < 3:
                continue
            for outcome in outcome_names:
                base_rate = sum(1 for _, j in pairs if outcome in outcomes[j]) / len(pairs)
                if base_rate == 0:
                    continue
                occurrences = sum(1 for _, j in with_a if outcome in outcomes[j])
                if occurrences < 3:
                    continue
                lift = (occurrences / len(with_a)) / base_rate
                if lift <= cfg.min_lift:
                    continue
                reverse = sum(1 for i, j in pairs if outcome in outcomes[i] and features[j][name])
                if reverse:
                    continue
                hints.append(CausalHint(
                    antecedent=name,
                    outcome=outcome,
                    occurrences=occurrences,
                    lift=lift,
                    confidence=min(0.6, 0.3 * min(1.0, occurrences / 5) + 0.3 * min(1.0, lift - 1.0)),
                ))

        hints.sort(key=lambda h: (-h.confidence, -h.lift, h.antecedent, h.outcome))
        return CausalHintSet(
            hints=hints,
            sample_size=n,
            pairs_considered=len(pairs),
            confidence=max((h.confidence for h in hints), default=0.0),
            explanation=[
                f"{describe_feature(h.antecedent)} was followed by {h.outcome} "
                f"{h.occurrences} times (lift {h.lift:.1f}); a hint, not a cause"
                for h in hints
            ] or ["no repeatable ordering between conditions and outcomes"],
        )


def _kmeans(points: Sequence[tuple[float, float]], k: int, *, max_iter: int = 50) -> list[int]:
    """Lloyd's algorithm with severity-quantile initial centroids."""
    by_severity = sorted(points)
    centroids = [by_severity[min(len(points) - 1, int((i + 0.5) * len(points) / k))] for i in range(k)]
    assignment = [-1] * len(points)
    for _ in range(max_iter):
        updated = [
            min(range(k), key=lambda c: (p[0] - centroids[c][0]) ** 2 + (p[1] - centroids[c][1]) ** 2)
            for p in points
        ]
        if updated == assignment:
            break
        assignment = updated
        for c in range(k):
            members = [p for p, a in zip(points, assignment) if a == c]
            if members:
                centroids[c] = (
                    statistics.fmean(m[0] for m in members),
                    statistics.fmean(m[1] for m in members),
                )
    return assignment
