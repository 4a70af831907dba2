"""
Recommendation synthesizer.

Turns upstream baseline / pattern / correlation / prediction objects into
ranked, explainable suggestions.  Every recommendation is built from one
upstream object and cites it in `source_ids`; nothing is emitted without a
source.

Priority scoring (weights in constants.PRIORITY_WEIGHTS):

    score = w_gap * pain_gap + w_trend * trend + w_match * match + w_recency * recency

  pain_gap  how far the latest entry sits above the baseline mean (0-1)
  trend     worsening 1.0, stable 0.5, improving 0.0
  match     strength of the source object (reliability, confidence, ...)
  recency   0.5 ** (days since the source last occurred / half-life)

Scores map onto priorities through PRIORITY_BANDS.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pandas as pd

from analytics.patterns import split_factor
from config import EngineSettings, resolve
from constants import (
    ACTION_TIMELINES,
    ENGAGEMENT_MIN_DAYS,
    MIN_SAMPLES,
    PRIORITY_BANDS,
    PRIORITY_ORDER,
    PRIORITY_WEIGHTS,
    RANKING_BANDS,
    RANKING_FALLBACK,
    RECENCY_HALF_LIFE_DAYS,
    TIME_OF_DAY_HOURS,
    TREND_SCORES,
)
from models import (
    ActionPlan,
    ActionStep,
    Baseline,
    ConfidenceTier,
    CorrelationAnalysis,
    InterventionRanking,
    PatternSet,
    PredictionSet,
    Recommendation,
    ScheduleConstraints,
    SynthesisResult,
    TimeSuggestion,
    TimingOptimization,
    band_for,
)

log = logging.getLogger("analytics.recommendations")


def _clamp01(x: float) -> float:
    return max(0.0, min(1.0, float(x)))


@dataclass
class _Candidate:
    category: str
    title: str
    rationale: str
    source_ids: List[str]
    match: float
    sample_count: int
    tier: ConfidenceTier
    recency: float = 1.0
    expected_impact: Optional[float] = None

    def __post_init__(self):
        self.source_ids = list(self.source_ids)
        self.match = _clamp01(self.match)
        self.recency = _clamp01(self.recency)
        self.sample_count = int(self.sample_count)


# ─── Candidate generation ─────────────────────────────────────


def _recency(last_seen: Optional[str], baseline: Baseline) -> float:
    if not last_seen or baseline.window_end is None:
        return 1.0
    age = (pd.Timestamp(baseline.window_end) - pd.Timestamp(last_seen)) / pd.Timedelta(days=1)
    return 0.5 ** (max(age, 0.0) / RECENCY_HALF_LIFE_DAYS)


def _from_baseline(baseline: Baseline) -> List[_Candidate]:
    out = []
    if baseline.sample_count == 0:
        return out
    if baseline.trend_tier is ConfidenceTier.INSUFFICIENT:
        out.append(_Candidate(
            "tracking",
            "Keep logging to build your personal baseline",
            f"Only {baseline.trend_samples} recent entries so far; trend and pattern detection "
            f"need at least {MIN_SAMPLES}.",
            [baseline.id], 0.6, baseline.sample_count, baseline.tier,
        ))
    elif baseline.tracked_days_last_week < ENGAGEMENT_MIN_DAYS:
        out.append(_Candidate(
            "tracking",
            "Log on more days each week",
            f"Entries were logged on {baseline.tracked_days_last_week} of the last 7 days; "
            f"gaps make patterns harder to confirm.",
            [baseline.id], 0.4, baseline.sample_count, baseline.tier,
        ))
    highs = [a for a in baseline.anomalies if a.direction == "high"]
    if highs:
        worst = max(highs, key=lambda a: a.z_score)
        out.append(_Candidate(
            "monitoring",
            "Recent pain is unusually high for you",
            f"{len(highs)} entr{'y' if len(highs) == 1 else 'ies'} in the last week sat above "
            f"your usual range (up to {worst.pain_level}/10, z={worst.z_score:+.1f}).",
            [baseline.id], 0.7, baseline.sample_count, baseline.tier,
        ))
    return out


def _from_patterns(patterns: PatternSet, baseline: Baseline) -> List[_Candidate]:
    out = []
    for p in patterns.trigger:
        d = p.details
        out.append(_Candidate(
            "trigger-avoidance",
            f"Watch for {p.label.split(' after ', 1)[-1]}",
            f"{p.label}: in {d['spikes']} of {d['observed']} independent occurrences pain rose "
            f"well above your baseline (typically after {d['median_lag_hours']:g}h).",
            [p.id], d["reliability"], p.sample_count, p.tier,
            recency=_recency(d.get("last_seen"), baseline),
            expected_impact=-round(p.magnitude, 2) if p.magnitude > 0 else None,
        ))
    for p in patterns.cyclical:
        if p.magnitude <= 0:
            continue
        d = p.details
        out.append(_Candidate(
            "scheduling",
            f"Plan lighter commitments for {p.window.description.split(', ', 1)[-1]}",
            f"{p.label}: {p.magnitude:+.1f} points vs baseline across {p.sample_count} entries "
            f"(strength {d['strength']:.2f}, p={d['p_value']:.3g}).",
            [p.id], d["strength"] / 0.3, p.sample_count, p.tier,
            recency=_recency(d.get("last_seen"), baseline),
        ))
    for p in patterns.long_term:
        if p.magnitude <= 0:
            continue
        out.append(_Candidate(
            "monitoring",
            "Pain has stayed above your baseline for a sustained stretch",
            f"{p.label} ({p.window.description}), averaging {p.magnitude:+.1f} points.",
            [p.id], p.magnitude / 3.0, p.sample_count, p.tier,
            recency=_recency(p.details.get("last_seen"), baseline),
        ))
    for p in patterns.recovery:
        d = p.details
        if "action" not in d or d.get("rank", 99) > 3:
            continue
        value = split_factor(d["action"])[1]
        out.append(_Candidate(
            "recovery",
            f"Lean on {value} after pain peaks",
            f"{p.label}: recovered in {d['consistency']:.0%} of peaks at "
            f"{d['average_speed']:.1f} points/day.",
            [p.id], d["consistency"], p.sample_count, p.tier,
            recency=_recency(d.get("last_seen"), baseline),
        ))
    return out


def _from_correlations(correlations: CorrelationAnalysis) -> List[_Candidate]:
    out = []
    for cp in correlations.compound_patterns:
        if not cp.actionable:
            continue
        if cp.id == "compound:high-pain-continuation":
            title = "Act early after a high-pain day"
        else:
            title = f"Prepare for {cp.label}"
        out.append(_Candidate(
            "lifestyle",
            title,
            f"{cp.label} occurred {cp.support} times with average pain {cp.mean_pain:.1f} "
            f"({cp.lift:.2f}x your overall average).",
            [cp.id], cp.lift - 1.0, cp.sample_count, cp.tier,
        ))
    for ci in correlations.causal_insights:
        if not ci.controllable:
            continue
        value = split_factor(ci.cause)[1]
        sig = f", q={ci.q_value:.3g}" if ci.q_value is not None else ""
        rationale = (
            f"Pain {ci.direction.split()[0]} by {abs(ci.effect_size):.1f} points within "
            f"{ci.lag_hours:.0f}h after {value} in {ci.consistency:.0%} of {ci.occurrences} "
            f"occurrences{sig}. {ci.label}"
        )
        if ci.effect_size > 0:
            out.append(_Candidate(
                "trigger-avoidance", f"Consider cutting back on {value}", rationale,
                [ci.id], ci.consistency, ci.sample_count, ci.tier,
                expected_impact=-round(ci.effect_size, 2),
            ))
        else:
            out.append(_Candidate(
                "intervention", f"Keep {value} in your routine when pain rises", rationale,
                [ci.id], ci.consistency, ci.sample_count, ci.tier,
                expected_impact=round(ci.effect_size, 2),
            ))
    return out


def _from_predictions(predictions: PredictionSet, baseline: Baseline,
                      rankings: List[InterventionRanking]) -> List[_Candidate]:
    out = []
    pred = predictions.next_period
    if pred is not None and baseline.mean is not None and pred.value - baseline.mean >= 1.0:
        out.append(_Candidate(
            "forecast",
            f"Plan a lighter day for {pred.target}",
            f"Forecast {pred.value:.1f}/10 (range {pred.low:.1f}-{pred.high:.1f}), "
            f"{pred.value - baseline.mean:+.1f} above your baseline. {pred.explanation}",
            [pred.id] + [s for s in pred.details.get("source_ids", []) if s != pred.id],
            pred.confidence, pred.sample_count, pred.tier,
        ))
    trend = predictions.trend
    if trend is not None and trend.direction == "worsening":
        out.append(_Candidate(
            "monitoring",
            "Pain is trending upward",
            f"Slope {trend.slope:+.2f} points/day over the last two weeks, about "
            f"{trend.projected_change:+.1f} points over {trend.horizon_days} days. {trend.caveat}",
            [trend.id], trend.confidence, trend.sample_count, trend.tier,
        ))
    elif trend is not None and trend.direction == "improving":
        out.append(_Candidate(
            "reinforcement",
            "Keep doing what has been working",
            f"Pain has been easing ({trend.slope:+.2f} points/day). {trend.caveat}",
            [trend.id], trend.confidence * 0.5, trend.sample_count, trend.tier,
        ))
    best_time = {}
    for s in predictions.optimal_timing:
        best_time.setdefault(s.intervention_id, s)
    for r in rankings:
        if r.level != "try":
            continue
        family, value = split_factor(r.intervention_id)
        rationale = r.rationale
        sources = list(r.source_ids) + [r.id]
        if r.intervention_id in best_time:
            s = best_time[r.intervention_id]
            rationale += f" It has worked best in the {s.bucket} ({s.success_rate:.0%} of uses)."
            sources.append(s.id)
        out.append(_Candidate(
            family, f"Try {value} when pain flares", rationale, sources,
            r.adjusted_benefit / 2.0, r.sample_count, r.tier, expected_impact=r.effect,
        ))
    return out


# ─── Rankings / timing / plans ────────────────────────────────


def rank_interventions(predictions: PredictionSet, settings: Optional[EngineSettings] = None) -> List[InterventionRanking]:
    """Rank by benefit shrunk toward zero for small samples: benefit * n / (n + k)."""
    cfg = resolve(settings)
    scored, insufficient = [], []
    for iid, pred in sorted(predictions.effectiveness.items()):
        name = split_factor(iid)[1]
        if pred is None:
            insufficient.append(dict(
                intervention_id=iid, level=RANKING_FALLBACK, effect=None, adjusted_benefit=None,
                sample_count=0, tier=ConfidenceTier.INSUFFICIENT, source_ids=[],
                rationale=f"Fewer than {MIN_SAMPLES} uses of {name} with pain logged before and after.",
            ))
            continue
        n = pred.sample_count
        adjusted = -pred.value * n / (n + cfg.shrinkage_k)
        level = band_for(adjusted, RANKING_BANDS, RANKING_FALLBACK)
        if level == RANKING_FALLBACK:
            why = f"No reliable benefit yet: pain changed {pred.value:+.1f} points after {n} uses of {name}."
        else:
            why = (
                f"After {n} uses of {name}, pain changed {pred.value:+.1f} points on average "
                f"({pred.tier.value} confidence)."
            )
        scored.append(dict(
            intervention_id=iid, level=level, effect=pred.value, adjusted_benefit=round(adjusted, 3),
            sample_count=n, tier=pred.tier, source_ids=[pred.id], rationale=why,
        ))
    scored.sort(key=lambda r: (-r["adjusted_benefit"], -r["sample_count"], r["intervention_id"]))
    return [
        InterventionRanking(id=f"ranking:{r['intervention_id']}", rank=i, **r)
        for i, r in enumerate(scored + insufficient, start=1)
    ]


def _hour_gap(a: int, b: int) -> int:
    d = abs(a - b) % 24
    return min(d, 24 - d)


def schedule_timing(
    suggestions: List[TimeSuggestion], constraints: Optional[ScheduleConstraints] = None
) -> List[TimingOptimization]:
    """Conflict-free hourly slots honouring do-not-disturb and preferred hours."""
    constraints = constraints or ScheduleConstraints()
    preferred = set(constraints.preferred_hours)
    used = set()
    out: List[TimingOptimization] = []
    for s in suggestions:
        if s.bucket_kind == "time_of_day":
            window, days = TIME_OF_DAY_HOURS[s.bucket], "daily"
        else:
            window, days = tuple(range(24)), s.bucket
        ordered = sorted(window, key=lambda h: (h not in preferred, _hour_gap(h, s.typical_hour), h))
        hour = next((h for h in ordered if h not in used and not constraints.blocked(h)), None)
        if hour is None:
            log.debug("   No free slot for %s", s.id)
            continue
        used.add(hour)
        name = split_factor(s.intervention_id)[1]
        out.append(TimingOptimization(
            id=f"schedule:{s.intervention_id}:{s.bucket_kind}:{s.bucket}",
            intervention_id=s.intervention_id,
            hour=hour,
            days=days,
            source_ids=[s.id],
            rationale=f"{name} at {hour:02d}:00 ({days}): {s.explanation}.",
        ))
    return out


def _impact_text(rec: Recommendation) -> str:
    if rec.expected_impact is None:
        return "Qualitative: less exposure to a known high-pain pattern"
    if rec.expected_impact < 0:
        return f"About {abs(rec.expected_impact):.1f} points lower pain when it applies"
    return f"About {rec.expected_impact:+.1f} points"


def build_action_plans(recommendations: List[Recommendation], settings: Optional[EngineSettings] = None) -> List[ActionPlan]:
    cfg = resolve(settings)
    top = recommendations[: cfg.action_plan_size]
    if not top:
        return []
    steps = [
        ActionStep(
            order=i,
            recommendation_id=r.id,
            action=r.title,
            expected_impact=_impact_text(r),
            timeline=ACTION_TIMELINES[min(i - 1, len(ACTION_TIMELINES) - 1)],
            source_ids=list(r.source_ids),
        )
        for i, r in enumerate(top, start=1)
    ]
    numeric = [r.expected_impact for r in top if r.expected_impact is not None and r.expected_impact < 0]
    if numeric:
        impact = f"Up to {abs(sum(numeric)):.1f} fewer pain points on days these apply"
    else:
        impact = "Qualitative: better planning around known patterns"
    sources = sorted({s for r in top for s in r.source_ids})
    return [ActionPlan(
        id="plan:primary",
        title=f"{len(steps)}-step plan for the next two weeks",
        steps=steps,
        expected_impact=impact,
        timeline=f"{ACTION_TIMELINES[0]} to {ACTION_TIMELINES[min(len(steps), len(ACTION_TIMELINES)) - 1]}",
        source_ids=sources,
    )]


# ─── Entry point ──────────────────────────────────────────────


def synthesize(
    baseline: Baseline,
    patterns: PatternSet,
    correlations: CorrelationAnalysis,
    predictions: PredictionSet,
    constraints: Optional[ScheduleConstraints] = None,
    settings: Optional[EngineSettings] = None,
) -> SynthesisResult:
    """Merge upstream outputs into prioritised recommendations, schedule, rankings and plan."""
    cfg = resolve(settings)
    rankings = rank_interventions(predictions, cfg)

    candidates = (
        _from_baseline(baseline)
        + _from_patterns(patterns, baseline)
        + _from_correlations(correlations)
        + _from_predictions(predictions, baseline, rankings)
    )

    if baseline.mean is not None and baseline.current_level is not None:
        pain_gap = _clamp01((baseline.current_level - baseline.mean) / 3.0)
    else:
        pain_gap = 0.0
    trend_score = TREND_SCORES.get(baseline.trend, 0.5)

    recs: Dict[str, Recommendation] = {}
    for c in candidates:
        score = (
            PRIORITY_WEIGHTS["pain_gap"] * pain_gap
            + PRIORITY_WEIGHTS["trend"] * trend_score
            + PRIORITY_WEIGHTS["match"] * c.match
            + PRIORITY_WEIGHTS["recency"] * c.recency
        )
        rid = f"rec:{c.category}:{c.source_ids[0]}"
        if rid in recs:
            continue
        recs[rid] = Recommendation(
            id=rid,
            priority=band_for(score, PRIORITY_BANDS, PRIORITY_ORDER[-1]),
            category=c.category,
            title=c.title,
            rationale=c.rationale,
            source_ids=c.source_ids,
            score=round(score, 4),
            sample_count=c.sample_count,
            tier=c.tier,
            expected_impact=c.expected_impact,
        )

    ordered = sorted(
        recs.values(),
        key=lambda r: (PRIORITY_ORDER.index(r.priority), -r.sample_count, -r.score, r.id),
    )[: cfg.max_recommendations]

    timing = schedule_timing(predictions.optimal_timing, constraints)
    plans = build_action_plans(ordered, cfg)
    counts = Counter(r.priority for r in ordered)
    summary: Dict[str, Any] = {
        "total_recommendations": len(ordered),
        "by_priority": {p: counts.get(p, 0) for p in PRIORITY_ORDER},
        "critical_actions": [r.title for r in ordered if r.priority == "critical"],
        "top_recommendation": ordered[0].title if ordered else None,
        "estimated_impact": plans[0].expected_impact if plans else None,
        "confidence": baseline.tier.value,
        "baseline_mean": baseline.mean,
        "trend": baseline.trend,
    }
    log.info(
        "   Synthesizer: %d candidates -> %d recommendations, %d rankings, %d timing slots",
        len(candidates), len(ordered), len(rankings), len(timing),
    )
    return SynthesisResult(
        recommendations=ordered,
        timing_optimizations=timing,
        intervention_rankings=rankings,
        action_plans=plans,
        summary=summary,
    )
