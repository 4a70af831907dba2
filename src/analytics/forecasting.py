"""
Forecasting over the entry history.

  predict_next_period     recency-weighted WLS over the trailing window,
                          adjusted by the strongest matching cyclical pattern.
  optimal_timing          success-rate buckets (time of day / day type /
                          day of week) for each logged intervention.
  effectiveness_forecast  paired before/after windows around independent
                          intervention occurrences.
  trend_forecast          OLS slope over the last two weeks, projected ahead.

Every function returns None (or an empty list) instead of guessing when
fewer than MIN_SAMPLES observations back the estimate.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats as sp_stats

from analytics.baseline import classify_slope, compute_baseline, recency_weights
from analytics.markov_layer import compute_markov_layer, persistence
from analytics.patterns import following_window, independent_occurrences, split_factor
from config import EngineSettings, resolve
from constants import (
    CYCLICAL_ADJUSTMENT_WEIGHT,
    DAY_NAMES,
    MIN_SAMPLES,
    SPREAD_SCALE,
    TREND_CAVEAT,
)
from entries import as_frame, hours_since, month_phase
from models import Baseline, PatternSet, Prediction, PredictionSet, TimeSuggestion, TrendForecast, tier_for

log = logging.getLogger("analytics.forecasting")

INTERVENTION_FAMILIES = ("medication", "activity")
TIMING_BUCKETS = (
    ("time_of_day", "tod"),
    ("day_type", "day_type"),
    ("day_of_week", "day_name"),
)


def _clip(value: float) -> float:
    return float(min(10.0, max(0.0, value)))


def _size_factor(n: int) -> float:
    return math.sqrt(min(1.0, n / 30.0))


def _spread_factor(sd: float) -> float:
    return max(0.0, 1.0 - sd / SPREAD_SCALE)


# ─── Next period ──────────────────────────────────────────────


def _target_phase(candidate: str, target: pd.Timestamp) -> str:
    if candidate == "day-of-week":
        return DAY_NAMES[target.weekday()]
    if candidate == "weekend":
        return "weekend" if target.weekday() >= 5 else "weekday"
    return month_phase(target.day)


def predict_next_period(
    entries: Any,
    baseline: Optional[Baseline] = None,
    patterns: Optional[PatternSet] = None,
    settings: Optional[EngineSettings] = None,
) -> Optional[Prediction]:
    """Point estimate and range for the day after the latest entry."""
    cfg = resolve(settings)
    df = as_frame(entries)
    if df.empty:
        return None
    if baseline is None:
        baseline = compute_baseline(df, cfg)

    end = df["ts"].iloc[-1]
    window = df[df["ts"] > end - pd.Timedelta(days=cfg.forecast_window_days)]
    n = len(window)
    if n < MIN_SAMPLES:
        log.info("   Next-period: %d samples in window, insufficient", n)
        return None

    origin = window["ts"].iloc[0]
    x = ((window["ts"] - origin) / pd.Timedelta(days=1)).to_numpy(dtype=np.float64)
    y = window["pain"].to_numpy(dtype=np.float64)
    w = recency_weights(window["ts"], end, cfg.forecast_half_life_days)
    target = end + pd.Timedelta(days=1)
    x_target = (target - origin) / pd.Timedelta(days=1)

    if np.ptp(x) == 0:
        slope = 0.0
        point = float(np.average(y, weights=w))
        resid = y - point
    else:
        fit = sm.WLS(y, sm.add_constant(x), weights=w).fit()
        intercept, slope = (float(v) for v in fit.params)
        point = intercept + slope * x_target
        resid = np.asarray(fit.resid, dtype=np.float64)
    sd = float(np.sqrt(np.average(resid ** 2, weights=w)))

    factors: List[str] = []
    sources: List[str] = [baseline.id]
    trend = classify_slope(slope, cfg.trend_deadband)
    factors.append(f"Recent trend is {trend} ({slope:+.2f} points/day, recent days weighted more)")

    adjustment = 0.0
    if patterns is not None and baseline.mean is not None:
        matching = []
        for p in patterns.cyclical:
            phase = _target_phase(p.details["candidate"], target)
            if phase in p.details["phase_means"]:
                matching.append((p.details["strength"], p, phase))
        if matching:
            _, p, phase = max(matching, key=lambda m: (m[0], m[1].id))
            adjustment = CYCLICAL_ADJUSTMENT_WEIGHT * (p.details["phase_means"][phase] - baseline.mean)
            factors.append(f"Cyclical pattern for {phase} ({adjustment:+.1f} points): {p.label}")
            sources.append(p.id)

    markov = compute_markov_layer(df)
    if markov and markov["last_date"] == end.normalize() and markov["last_state"] == "HIGH":
        stay = persistence(markov, "HIGH")
        if stay["from_count"] >= MIN_SAMPLES and stay["probability"] >= 0.5:
            factors.append(
                f"High-pain days were followed by another high-pain day "
                f"{stay['stay_count']} of {stay['from_count']} times"
            )

    value = _clip(point + adjustment)
    confidence = _size_factor(n) * _spread_factor(sd)
    prediction = Prediction(
        id="prediction:next-period",
        kind="next-period",
        target=target.strftime("%Y-%m-%d"),
        value=round(value, 2),
        low=round(_clip(value - sd), 2),
        high=round(_clip(value + sd), 2),
        confidence=round(confidence, 3),
        tier=tier_for(n),
        sample_count=n,
        factors=factors,
        explanation=(
            f"Weighted regression over the last {cfg.forecast_window_days} days "
            f"({n} entries) predicts about {value:.1f}/10 for {target:%A}."
        ),
        details={
            "slope": round(slope, 4),
            "residual_sd": round(sd, 3),
            "cyclical_adjustment": round(adjustment, 3),
            "source_ids": sources,
        },
    )
    log.info("   Next-period: %.2f [%.2f, %.2f] conf=%.2f", value, prediction.low, prediction.high, confidence)
    return prediction


# ─── Interventions ────────────────────────────────────────────


def intervention_occurrences(df: pd.DataFrame) -> Dict[str, List[int]]:
    occ: Dict[str, List[int]] = defaultdict(list)
    for pos, (meds, acts) in enumerate(zip(df["medications"], df["activities"])):
        for m in meds:
            occ[f"medication:{m}"].append(pos)
        for a in acts:
            occ[f"activity:{a}"].append(pos)
    return dict(occ)


def resolve_intervention(
    df: pd.DataFrame, intervention_id: str, known: Optional[Dict[str, List[int]]] = None
) -> Optional[str]:
    """Map "medication:x", "activity:x" or a bare name onto a known id."""
    if known is None:
        known = intervention_occurrences(df)
    key = " ".join(str(intervention_id).strip().lower().split())
    if key in known:
        return key
    family, value = split_factor(key)
    if value and family in INTERVENTION_FAMILIES:
        return key
    for fam in INTERVENTION_FAMILIES:
        if f"{fam}:{key}" in known:
            return f"{fam}:{key}"
    return None


def intervention_effects(
    df: pd.DataFrame,
    intervention_id: str,
    cfg: EngineSettings,
    occurrences: Optional[Dict[str, List[int]]] = None,
) -> List[Dict[str, Any]]:
    """Before/after pain change around each independent occurrence.

    before = entries in [t - W, t] (the logging entry included),
    after  = entries in (t, t + W].
    """
    if occurrences is None:
        occurrences = intervention_occurrences(df)
    positions = occurrences.get(intervention_id, [])
    if not positions:
        return []
    ts_h = hours_since(df, df["ts"].iloc[0])
    pain = df["pain"].to_numpy(dtype=np.float64)
    hour = df["hour"].to_numpy()
    dow = df["dow"].to_numpy()
    tod = df["tod"].to_numpy()
    span = cfg.effect_window_hours
    records = []
    for pos in independent_occurrences(positions, ts_h, span):
        b_lo = int(np.searchsorted(ts_h, ts_h[pos] - span, side="left"))
        b_hi = int(np.searchsorted(ts_h, ts_h[pos], side="right"))
        a_lo, a_hi = following_window(ts_h, pos, span)
        if b_hi <= b_lo or a_hi <= a_lo:
            continue
        day = int(dow[pos])
        records.append(
            {
                "pos": pos,
                "effect": float(pain[a_lo:a_hi].mean() - pain[b_lo:b_hi].mean()),
                "hour": int(hour[pos]),
                "tod": tod[pos],
                "day_type": "weekend" if day >= 5 else "weekday",
                "day_name": DAY_NAMES[day],
            }
        )
    return records


def effectiveness_forecast(
    entries: Any, intervention_id: str, settings: Optional[EngineSettings] = None
) -> Optional[Prediction]:
    """Expected pain change after an intervention; None below MIN_SAMPLES uses."""
    cfg = resolve(settings)
    df = as_frame(entries)
    if df.empty:
        return None
    occurrences = intervention_occurrences(df)
    iid = resolve_intervention(df, intervention_id, occurrences)
    if iid is None:
        return None
    return _effectiveness(iid, intervention_effects(df, iid, cfg, occurrences), cfg)


def _effectiveness(iid: str, records: List[Dict[str, Any]], cfg: EngineSettings) -> Optional[Prediction]:
    n = len(records)
    if n < MIN_SAMPLES:
        log.debug("   Effectiveness %s: %d paired uses, insufficient", iid, n)
        return None

    effects = np.array([r["effect"] for r in records])
    effect = float(effects.mean())
    se = float(effects.std(ddof=1) / math.sqrt(n))
    consistency = float(np.mean(np.sign(effects) == np.sign(effect))) if effect != 0 else 0.0
    improved = int((effects <= -cfg.success_min_drop).sum())
    name = split_factor(iid)[1]
    return Prediction(
        id=f"prediction:effectiveness:{iid}",
        kind="effectiveness",
        target=iid,
        value=round(effect, 3),
        low=round(effect - 1.96 * se, 3),
        high=round(effect + 1.96 * se, 3),
        confidence=round(_size_factor(n) * consistency, 3),
        tier=tier_for(n),
        sample_count=n,
        factors=[
            f"{n} logged uses with pain recorded before and after",
            f"Pain dropped by at least {cfg.success_min_drop:g} point(s) after {improved} of {n} uses",
        ],
        explanation=(
            f"Within {cfg.effect_window_hours:g}h of {name}, pain changed by "
            f"{effect:+.1f} points on average."
        ),
        details={"consistency": round(consistency, 3), "successes": improved},
    )


def optimal_timing(entries: Any, settings: Optional[EngineSettings] = None) -> List[TimeSuggestion]:
    """Buckets where an intervention works noticeably more often than usual."""
    cfg = resolve(settings)
    df = as_frame(entries)
    if len(df) < MIN_SAMPLES:
        return []
    occurrences = intervention_occurrences(df)
    return _timing_suggestions(
        {iid: intervention_effects(df, iid, cfg, occurrences) for iid in sorted(occurrences)}, cfg
    )


def _timing_suggestions(effects: Dict[str, List[Dict[str, Any]]], cfg: EngineSettings) -> List[TimeSuggestion]:
    out: List[TimeSuggestion] = []
    for iid in sorted(effects):
        records = effects[iid]
        if len(records) < MIN_SAMPLES:
            continue
        success = [r["effect"] <= -cfg.success_min_drop for r in records]
        overall = float(np.mean(success))
        name = split_factor(iid)[1]
        for kind, key in TIMING_BUCKETS:
            buckets: Dict[str, List[int]] = defaultdict(list)
            for i, r in enumerate(records):
                buckets[r[key]].append(i)
            for value, idx in sorted(buckets.items()):
                n_b = len(idx)
                if n_b < MIN_SAMPLES:
                    continue
                rate = float(np.mean([success[i] for i in idx]))
                if rate < overall + cfg.timing_margin:
                    continue
                hours = [records[i]["hour"] for i in idx if success[i]]
                out.append(
                    TimeSuggestion(
                        id=f"timing:{iid}:{kind}:{value}",
                        intervention_id=iid,
                        bucket_kind=kind,
                        bucket=value,
                        success_rate=round(rate, 3),
                        overall_rate=round(overall, 3),
                        typical_hour=int(round(float(np.median(hours)))),
                        confidence=round(_size_factor(n_b) * rate, 3),
                        tier=tier_for(n_b),
                        sample_count=n_b,
                        explanation=(
                            f"{name} helped {rate:.0%} of the time in the {value} "
                            f"vs {overall:.0%} overall ({n_b} uses)"
                        ),
                    )
                )
    out.sort(key=lambda s: (-s.success_rate, -s.sample_count, s.id))
    log.info("   Optimal timing: %d suggestions", len(out))
    return out


# ─── Trend ────────────────────────────────────────────────────


def trend_forecast(entries: Any, settings: Optional[EngineSettings] = None) -> Optional[TrendForecast]:
    """Direction over the last two weeks, projected `trend_horizon_days` ahead."""
    cfg = resolve(settings)
    df = as_frame(entries)
    if df.empty:
        return None
    end = df["ts"].iloc[-1]
    window = df[df["ts"] > end - pd.Timedelta(days=cfg.trend_forecast_days)]
    n = len(window)
    if n < MIN_SAMPLES:
        return None

    x = ((window["ts"] - window["ts"].iloc[0]) / pd.Timedelta(days=1)).to_numpy(dtype=np.float64)
    y = window["pain"].to_numpy(dtype=np.float64)
    if np.ptp(x) == 0:
        slope, intercept = 0.0, float(y.mean())
    else:
        res = sp_stats.linregress(x, y)
        slope, intercept = float(res.slope), float(res.intercept)
    resid = y - (intercept + slope * x)
    sd = float(np.sqrt(np.mean(resid ** 2)))
    horizon = cfg.trend_horizon_days
    projected = _clip(intercept + slope * (x[-1] + horizon))

    return TrendForecast(
        id="prediction:trend",
        direction=classify_slope(slope, cfg.trend_deadband),
        slope=round(slope, 4),
        horizon_days=horizon,
        projected_level=round(projected, 2),
        projected_change=round(slope * horizon, 2),
        confidence=round(_size_factor(n) * _spread_factor(sd), 3),
        tier=tier_for(n),
        sample_count=n,
        caveat=TREND_CAVEAT,
    )


# ─── Bundle ───────────────────────────────────────────────────


def build_predictions(
    entries: Any,
    baseline: Optional[Baseline] = None,
    patterns: Optional[PatternSet] = None,
    settings: Optional[EngineSettings] = None,
) -> PredictionSet:
    """All forecasts for one snapshot; effectiveness covers every known intervention."""
    cfg = resolve(settings)
    df = as_frame(entries)
    occurrences = intervention_occurrences(df) if not df.empty else {}
    effects = {iid: intervention_effects(df, iid, cfg, occurrences) for iid in sorted(occurrences)}
    return PredictionSet(
        next_period=predict_next_period(df, baseline, patterns, cfg),
        optimal_timing=_timing_suggestions(effects, cfg) if len(df) >= MIN_SAMPLES else [],
        effectiveness={iid: _effectiveness(iid, records, cfg) for iid, records in effects.items()},
        trend=trend_forecast(df, cfg),
    )
