"""
Output objects produced by the analytics layers.

Every object carries a stable string `id` so recommendations can cite the
pattern / correlation / prediction that produced them, and a confidence
tier computed from the samples that actually back it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from constants import CONFIDENCE_BANDS


class ConfidenceTier(str, Enum):
    INSUFFICIENT = "insufficient"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def at_least(self, other: "ConfidenceTier") -> bool:
        return self.rank >= other.rank


_TIER_RANK = {
    ConfidenceTier.INSUFFICIENT: 0,
    ConfidenceTier.LOW: 1,
    ConfidenceTier.MEDIUM: 2,
    ConfidenceTier.HIGH: 3,
}


def tier_for(n: Optional[int]) -> ConfidenceTier:
    """Map a supporting sample count onto its tier via CONFIDENCE_BANDS."""
    n = int(n or 0)
    for minimum, label in CONFIDENCE_BANDS:
        if n >= minimum:
            return ConfidenceTier(label)
    return ConfidenceTier.INSUFFICIENT


def band_for(value: float, bands, fallback: str) -> str:
    """First label whose lower bound `value` reaches; bands ordered high → low."""
    for minimum, label in bands:
        if value >= minimum:
            return label
    return fallback


def slugify(text: str) -> str:
    return "-".join("".join(ch if ch.isalnum() else " " for ch in str(text).lower()).split())


# ─── Baseline & patterns ──────────────────────────────────────


@dataclass
class Anomaly:
    timestamp: datetime
    pain_level: int
    z_score: float
    direction: str


@dataclass
class Baseline:
    id: str
    mean: Optional[float]
    std: Optional[float]
    sample_count: int
    window_days: int
    window_start: Optional[datetime]
    window_end: Optional[datetime]
    current_level: Optional[float]
    slope: Optional[float]
    trend: Optional[str]
    tier: ConfidenceTier
    trend_tier: ConfidenceTier
    trend_samples: int = 0
    tracked_days_last_week: int = 0
    anomalies: List[Anomaly] = field(default_factory=list)


@dataclass
class PatternWindow:
    duration_days: float
    recurrence: str
    description: str


@dataclass
class Pattern:
    id: str
    kind: str
    label: str
    window: PatternWindow
    magnitude: float
    sample_count: int
    tier: ConfidenceTier
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PatternSet:
    long_term: List[Pattern] = field(default_factory=list)
    cyclical: List[Pattern] = field(default_factory=list)
    trigger: List[Pattern] = field(default_factory=list)
    recovery: List[Pattern] = field(default_factory=list)
    tier: ConfidenceTier = ConfidenceTier.INSUFFICIENT

    def all(self) -> List[Pattern]:
        return self.long_term + self.cyclical + self.trigger + self.recovery


# ─── Relationships ────────────────────────────────────────────


@dataclass
class Correlation:
    id: str
    factor: str
    label: str
    kind: str  # "binary" | "numeric"
    coefficient: float
    p_value: Optional[float]
    effect: Optional[float]
    strength: str
    direction: str
    sample_count: int
    tier: ConfidenceTier


@dataclass
class InteractionEffect:
    id: str
    factors: Tuple[str, str]
    effect_a: float
    effect_b: float
    combined_effect: float
    interaction: float
    kind: str  # "synergistic" | "antagonistic"
    sample_count: int
    tier: ConfidenceTier
    description: str


@dataclass
class CompoundPattern:
    id: str
    conditions: Tuple[str, ...]
    label: str
    support: int
    frequency: float
    mean_pain: float
    lift: float
    actionable: bool
    sample_count: int
    tier: ConfidenceTier


@dataclass
class CausalInsight:
    id: str
    cause: str
    effect: str
    effect_size: float
    direction: str
    lag_hours: float
    consistency: float
    occurrences: int
    p_value: Optional[float]
    q_value: Optional[float]
    controllable: bool
    reversibility: str
    sample_count: int
    tier: ConfidenceTier
    heuristic: bool = True
    label: str = "Heuristic signal based on timing and consistency, not proven causation."


@dataclass
class Cluster:
    id: str
    label: str
    size: int
    share: float
    mean_pain: float
    dominant_time_of_day: Optional[str]
    dominant_symptoms: Tuple[str, ...]
    sample_count: int
    tier: ConfidenceTier


@dataclass
class CorrelationAnalysis:
    correlation_matrix: List[Correlation] = field(default_factory=list)
    interaction_effects: List[InteractionEffect] = field(default_factory=list)
    compound_patterns: List[CompoundPattern] = field(default_factory=list)
    causal_insights: List[CausalInsight] = field(default_factory=list)
    clusters: List[Cluster] = field(default_factory=list)


# ─── Predictions ──────────────────────────────────────────────


@dataclass
class Prediction:
    id: str
    kind: str  # "next-period" | "effectiveness"
    target: str
    value: float
    low: Optional[float]
    high: Optional[float]
    confidence: float
    tier: ConfidenceTier
    sample_count: int
    factors: List[str] = field(default_factory=list)
    explanation: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TimeSuggestion:
    id: str
    intervention_id: str
    bucket_kind: str  # "time_of_day" | "day_type" | "day_of_week"
    bucket: str
    success_rate: float
    overall_rate: float
    typical_hour: int
    confidence: float
    tier: ConfidenceTier
    sample_count: int
    explanation: str


@dataclass
class TrendForecast:
    id: str
    direction: str
    slope: float
    horizon_days: int
    projected_level: float
    projected_change: float
    confidence: float
    tier: ConfidenceTier
    sample_count: int
    caveat: str


@dataclass
class PredictionSet:
    next_period: Optional[Prediction] = None
    optimal_timing: List[TimeSuggestion] = field(default_factory=list)
    effectiveness: Dict[str, Optional[Prediction]] = field(default_factory=dict)
    trend: Optional[TrendForecast] = None


# ─── Recommendations ──────────────────────────────────────────


@dataclass
class ScheduleConstraints:
    """Host-supplied scheduling constraints (hours are 0-23, local time).

    `do_not_disturb` holds (start, end) ranges, end exclusive; a range may
    wrap midnight, e.g. (22, 7).
    """

    do_not_disturb: Tuple[Tuple[int, int], ...] = ()
    preferred_hours: Tuple[int, ...] = ()

    def blocked(self, hour: int) -> bool:
        for start, end in self.do_not_disturb:
            if start <= end:
                if start <= hour < end:
                    return True
            elif hour >= start or hour < end:
                return True
        return False


@dataclass
class Recommendation:
    id: str
    priority: str
    category: str
    title: str
    rationale: str
    source_ids: List[str]
    score: float
    sample_count: int
    tier: ConfidenceTier
    expected_impact: Optional[float] = None


@dataclass
class TimingOptimization:
    id: str
    intervention_id: str
    hour: int
    days: str
    source_ids: List[str]
    rationale: str


@dataclass
class InterventionRanking:
    id: str
    intervention_id: str
    rank: int
    level: str  # "try" | "consider" | "insufficient-data"
    effect: Optional[float]
    adjusted_benefit: Optional[float]
    sample_count: int
    tier: ConfidenceTier
    source_ids: List[str]
    rationale: str


@dataclass
class ActionStep:
    order: int
    recommendation_id: str
    action: str
    expected_impact: str
    timeline: str
    source_ids: List[str]


@dataclass
class ActionPlan:
    id: str
    title: str
    steps: List[ActionStep]
    expected_impact: str
    timeline: str
    source_ids: List[str]


@dataclass
class SynthesisResult:
    recommendations: List[Recommendation] = field(default_factory=list)
    timing_optimizations: List[TimingOptimization] = field(default_factory=list)
    intervention_rankings: List[InterventionRanking] = field(default_factory=list)
    action_plans: List[ActionPlan] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)


# ─── Report ───────────────────────────────────────────────────


@dataclass
class InsightsReport:
    baseline: Baseline
    patterns: PatternSet
    correlations: CorrelationAnalysis
    predictions: PredictionSet
    recommendations: List[Recommendation]
    timing_optimizations: List[TimingOptimization]
    intervention_rankings: List[InterventionRanking]
    action_plans: List[ActionPlan]
    summary: Dict[str, Any]
    entry_count: int
    excluded_entries: int
    analysis_status: str = "success"
    degraded_reasons: List[str] = field(default_factory=list)

    def source_ids(self) -> set:
        """Every citable object id present in this report."""
        ids = {self.baseline.id}
        ids.update(p.id for p in self.patterns.all())
        c = self.correlations
        for group in (c.correlation_matrix, c.interaction_effects, c.compound_patterns,
                      c.causal_insights, c.clusters):
            ids.update(obj.id for obj in group)
        p = self.predictions
        if p.next_period is not None:
            ids.add(p.next_period.id)
        if p.trend is not None:
            ids.add(p.trend.id)
        ids.update(s.id for s in p.optimal_timing)
        ids.update(pred.id for pred in p.effectiveness.values() if pred is not None)
        ids.update(r.id for r in self.intervention_rankings)
        return ids

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


def to_jsonable(obj: Any) -> Any:
    """Recursively convert dataclasses / enums / numpy scalars to plain JSON types."""
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        items = sorted(obj) if isinstance(obj, (set, frozenset)) else obj
        return [to_jsonable(v) for v in items]
    if isinstance(obj, np.generic):
        return to_jsonable(obj.item())
    if isinstance(obj, float) and (math.isnan(obj) or math.isinf(obj)):
        return None
    return obj
