"""
Recurring-structure detection over a sorted entry history.

Four detectors, each returning fully materialised Pattern objects:

  Long-term:  7- and 30-day windows anchored on the first entry day;
              runs of same-sign deviations from the baseline mean.
  Cyclical:   same-phase buckets at fixed candidate periods (day of week,
              weekend vs weekday, phase of month) compared with a one-way
              ANOVA; strength = eta squared.
  Trigger:    pain spikes within a lag window after a candidate event,
              counted over independent occurrences.
  Recovery:   declines from local peaks back toward baseline, attributed
              to the actions logged during the decline.

Untracked days are never zero-filled: windows and phases only aggregate
entries that exist.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats as sp_stats

from analytics.baseline import compute_baseline
from config import EngineSettings, resolve
from constants import (
    CYCLE_MIN_PERIODS,
    CYCLE_MIN_PHASE_SAMPLES,
    CYCLE_TIME_OF_DAY_MARGIN,
    DAY_NAMES,
    LONG_TERM_WINDOWS,
    MIN_SAMPLES,
    TIME_OF_DAY_ORDER,
    TRIGGER_MIN_SPIKES,
)
from entries import as_frame, hours_since
from models import Baseline, ConfidenceTier, Pattern, PatternSet, PatternWindow, slugify, tier_for

log = logging.getLogger("analytics.patterns")

# (recurrence, candidate, period days, phase column, phase order)
CYCLE_CANDIDATES = (
    ("weekly", "day-of-week", 7, "day_name", DAY_NAMES),
    ("weekly", "weekend", 7, "day_type", ("weekday", "weekend")),
    ("monthly", "month-phase", 30, "month_phase", ("early", "mid", "late")),
)
PHASE_DAYS = {"day-of-week": 1, "weekday": 5, "weekend": 2, "month-phase": 10}


def split_factor(factor: str) -> Tuple[str, str]:
    family, _, value = factor.partition(":")
    return family, value


def row_actions(row) -> List[str]:
    """Controllable actions logged on one frame row."""
    acts = [f"medication:{m}" for m in row.medications]
    acts += [f"activity:{a}" for a in row.activities]
    acts += [f"tag:{t}" for t in row.tags]
    return acts


def _iso(ts) -> str:
    return pd.Timestamp(ts).isoformat()


# ─── Long-term ────────────────────────────────────────────────


def _long_term(df: pd.DataFrame, mean: float, cfg: EngineSettings) -> List[Pattern]:
    first_day = df["date"].iloc[0]
    day_idx = ((df["date"] - first_day) / pd.Timedelta(days=1)).astype(int)
    out: List[Pattern] = []

    for name, size in LONG_TERM_WINDOWS:
        grouped = df.groupby(day_idx // size)["pain"].agg(["sum", "count"])
        runs: List[List[Tuple[int, float, int]]] = []
        run: List[Tuple[int, float, int]] = []
        run_sign = 0
        prev_w: Optional[int] = None
        for w, row in grouped.iterrows():
            dev = row["sum"] / row["count"] - mean
            if dev >= cfg.long_term_min_deviation:
                sign = 1
            elif dev <= -cfg.long_term_min_deviation:
                sign = -1
            else:
                sign = 0
            contiguous = prev_w is not None and w == prev_w + 1
            if sign != 0 and run and contiguous and sign == run_sign:
                run.append((int(w), float(row["sum"]), int(row["count"])))
            else:
                runs.append(run)
                run = [(int(w), float(row["sum"]), int(row["count"]))] if sign != 0 else []
                run_sign = sign
            prev_w = w
        runs.append(run)

        for r in runs:
            if len(r) < cfg.long_term_min_windows:
                continue
            total = sum(c for _, _, c in r)
            magnitude = sum(s for _, s, _ in r) / total - mean
            tier = tier_for(total)
            if tier is ConfidenceTier.INSUFFICIENT:
                continue
            start = first_day + pd.Timedelta(days=r[0][0] * size)
            end = first_day + pd.Timedelta(days=(r[-1][0] + 1) * size - 1)
            direction = "elevated" if magnitude > 0 else "reduced"
            out.append(
                Pattern(
                    id=f"pattern:long-term:{name}:{start:%Y-%m-%d}",
                    kind="long_term",
                    label=f"Sustained {direction} pain across {len(r)} consecutive {name} windows",
                    window=PatternWindow(
                        duration_days=float(len(r) * size),
                        recurrence=f"{name} windows",
                        description=f"{start:%Y-%m-%d} to {end:%Y-%m-%d}",
                    ),
                    magnitude=round(magnitude, 3),
                    sample_count=total,
                    tier=tier,
                    details={
                        "direction": direction,
                        "windows": len(r),
                        "window_means": [round(s / c, 3) for _, s, c in r],
                        "start": _iso(start),
                        "end": _iso(end),
                        "last_seen": _iso(end),
                    },
                )
            )
    return out


# ─── Cyclical ─────────────────────────────────────────────────


def one_way_anova(groups: Sequence[np.ndarray]) -> Optional[Tuple[float, float, float]]:
    """Return (F, p, eta squared) or None when the test is undefined."""
    groups = [np.asarray(g, dtype=np.float64) for g in groups if len(g)]
    k = len(groups)
    n = sum(len(g) for g in groups)
    if k < 2 or n <= k:
        return None
    values = np.concatenate(groups)
    grand = values.mean()
    sst = float(((values - grand) ** 2).sum())
    if sst < 1e-12:
        return None
    ssb = float(sum(len(g) * (g.mean() - grand) ** 2 for g in groups))
    ssw = max(sst - ssb, 0.0)
    eta2 = ssb / sst
    if ssw < 1e-12:
        return math.inf, 0.0, eta2
    f_stat = (ssb / (k - 1)) / (ssw / (n - k))
    p = float(sp_stats.f.sf(f_stat, k - 1, n - k))
    return float(f_stat), p, eta2


def _peak_time_of_day(sub: pd.DataFrame) -> Optional[str]:
    phase_mean = sub["pain"].mean()
    best, best_mean = None, None
    for tod in TIME_OF_DAY_ORDER:
        vals = sub.loc[sub["tod"] == tod, "pain"]
        if len(vals) < CYCLE_MIN_PHASE_SAMPLES:
            continue
        if best_mean is None or vals.mean() > best_mean:
            best, best_mean = tod, vals.mean()
    if best is not None and best_mean >= phase_mean + CYCLE_TIME_OF_DAY_MARGIN:
        return best
    return None


def _cyclical(df: pd.DataFrame, mean: float, cfg: EngineSettings) -> List[Pattern]:
    span_days = (df["date"].iloc[-1] - df["date"].iloc[0]).days + 1
    frame = df.assign(day_type=np.where(df["is_weekend"], "weekend", "weekday"))
    out: List[Pattern] = []

    for recurrence, candidate, period, column, phases in CYCLE_CANDIDATES:
        if span_days < CYCLE_MIN_PERIODS * period:
            log.debug("   cyclical %s: span %d days < %d periods", candidate, span_days, CYCLE_MIN_PERIODS)
            continue
        grouped = {ph: frame.loc[frame[column] == ph, "pain"].to_numpy() for ph in phases}
        test = one_way_anova(list(grouped.values()))
        if test is None:
            continue
        f_stat, p, eta2 = test
        if p >= cfg.cycle_max_p or eta2 < cfg.cycle_min_strength:
            log.debug("   cyclical %s: p=%.3f eta2=%.3f below floor", candidate, p, eta2)
            continue

        eligible = [ph for ph in phases if len(grouped[ph]) >= CYCLE_MIN_PHASE_SAMPLES]
        if not eligible:
            continue
        peak = max(eligible, key=lambda ph: (grouped[ph].mean(), -phases.index(ph)))
        count = len(grouped[peak])
        tier = tier_for(count)
        if tier is ConfidenceTier.INSUFFICIENT:
            continue

        sub = frame[frame[column] == peak]
        tod = _peak_time_of_day(sub)
        phase_label = f"{peak}-month" if candidate == "month-phase" else peak
        description = f"{recurrence}, {phase_label}" + (f" {tod}s" if tod else "")
        magnitude = float(grouped[peak].mean() - mean)
        out.append(
            Pattern(
                id=f"pattern:cyclical:{candidate}:{slugify(peak)}",
                kind="cyclical",
                label=f"Pain tends to run higher on {phase_label}" + (f" {tod}s" if tod else ""),
                window=PatternWindow(
                    duration_days=float(PHASE_DAYS.get(peak, PHASE_DAYS.get(candidate, 1))),
                    recurrence=recurrence,
                    description=description,
                ),
                magnitude=round(magnitude, 3),
                sample_count=count,
                tier=tier,
                details={
                    "candidate": candidate,
                    "period_days": period,
                    "peak_phase": peak,
                    "peak_time_of_day": tod,
                    "phase_means": {ph: round(float(v.mean()), 3) for ph, v in grouped.items() if len(v)},
                    "phase_counts": {ph: int(len(v)) for ph, v in grouped.items()},
                    "strength": round(eta2, 4),
                    "f_stat": None if math.isinf(f_stat) else round(f_stat, 3),
                    "p_value": p,
                    "last_seen": _iso(sub["ts"].iloc[-1]),
                },
            )
        )
    return out


# ─── Trigger ──────────────────────────────────────────────────


def _trigger_candidates(df: pd.DataFrame) -> Dict[str, List[int]]:
    cands: Dict[str, List[int]] = defaultdict(list)
    for pos, row in enumerate(df.itertuples(index=False)):
        for a in row.activities:
            cands[f"activity:{a}"].append(pos)
        for t in row.tags:
            cands[f"tag:{t}"].append(pos)
        if row.weather:
            cands[f"weather:{row.weather}"].append(pos)

    # Medication changes compare tracked days, not single entries.
    day_first: Dict[pd.Timestamp, int] = {}
    day_meds: Dict[pd.Timestamp, set] = defaultdict(set)
    for pos, (day, meds) in enumerate(zip(df["date"], df["medications"])):
        day_first.setdefault(day, pos)
        day_meds[day].update(meds)
    days = sorted(day_first)
    for prev, cur in zip(days, days[1:]):
        for m in sorted(day_meds[cur] - day_meds[prev]):
            cands[f"medication-start:{m}"].append(day_first[cur])
        for m in sorted(day_meds[prev] - day_meds[cur]):
            cands[f"medication-stop:{m}"].append(day_first[cur])
    for key in cands:
        cands[key].sort()
    return cands


def independent_occurrences(positions: Sequence[int], ts_h: np.ndarray, min_gap_h: float) -> List[int]:
    """Keep occurrences at least `min_gap_h` hours after the previous kept one."""
    kept: List[int] = []
    last = -math.inf
    for pos in positions:
        if ts_h[pos] - last >= min_gap_h:
            kept.append(pos)
            last = ts_h[pos]
    return kept


def following_window(ts_h: np.ndarray, pos: int, hours: float) -> Tuple[int, int]:
    """Index range of entries strictly after `pos` and within `hours` of it."""
    lo = int(np.searchsorted(ts_h, ts_h[pos], side="right"))
    hi = int(np.searchsorted(ts_h, ts_h[pos] + hours, side="right"))
    return lo, hi


def _trigger_label(family: str, value: str) -> str:
    if family == "medication-start":
        return f"starting {value}"
    if family == "medication-stop":
        return f"stopping {value}"
    if family == "weather":
        return f"{value} weather"
    return value


def _triggers(df: pd.DataFrame, mean: float, cfg: EngineSettings) -> List[Pattern]:
    ts_h = hours_since(df, df["ts"].iloc[0])
    pain = df["pain"].to_numpy(dtype=np.float64)
    lag = cfg.trigger_lag_hours
    out: List[Pattern] = []

    for cand, positions in sorted(_trigger_candidates(df).items()):
        kept = independent_occurrences(positions, ts_h, lag)
        if len(kept) < MIN_SAMPLES:
            continue
        observed, spikes, deviations, lags = 0, 0, [], []
        for pos in kept:
            lo, hi = following_window(ts_h, pos, lag)
            if hi <= lo:
                continue
            observed += 1
            seg = pain[lo:hi]
            peak_at = int(np.argmax(seg))
            deviations.append(seg[peak_at] - mean)
            if seg[peak_at] - mean >= cfg.trigger_spike_points:
                spikes += 1
                lags.append(ts_h[lo + peak_at] - ts_h[pos])
        if observed < MIN_SAMPLES or spikes < TRIGGER_MIN_SPIKES:
            continue
        reliability = spikes / observed
        if reliability < cfg.trigger_min_reliability:
            continue

        family, value = split_factor(cand)
        what = _trigger_label(family, value)
        out.append(
            Pattern(
                id=f"pattern:trigger:{family}:{slugify(value)}",
                kind="trigger",
                label=f"Pain spikes within {lag:g}h after {what}",
                window=PatternWindow(
                    duration_days=lag / 24.0,
                    recurrence="after each occurrence",
                    description=f"within {lag:g}h after {what}",
                ),
                magnitude=round(float(np.mean(deviations)), 3),
                sample_count=observed,
                tier=tier_for(observed),
                details={
                    "trigger": cand,
                    "family": family,
                    "reliability": round(reliability, 3),
                    "spikes": spikes,
                    "observed": observed,
                    "median_lag_hours": round(float(np.median(lags)), 2),
                    "last_seen": _iso(df["ts"].iloc[kept[-1]]),
                },
            )
        )
    out.sort(key=lambda p: (-p.details["reliability"], -p.sample_count, p.id))
    return out


# ─── Recovery ─────────────────────────────────────────────────


def _recovery_episodes(df: pd.DataFrame, mean: float, cfg: EngineSettings) -> List[Dict[str, Any]]:
    pain = df["pain"].to_numpy(dtype=np.float64)
    ts_h = hours_since(df, df["ts"].iloc[0])
    actions = [row_actions(row) for row in df.itertuples(index=False)]
    peak_level = mean + cfg.recovery_peak_margin
    back_level = mean + cfg.recovery_return_margin
    max_h = cfg.recovery_max_days * 24.0

    episodes: List[Dict[str, Any]] = []
    n = len(pain)
    i = 0
    while i < n - 1:
        is_peak = pain[i] >= peak_level and (i == 0 or pain[i] >= pain[i - 1]) and pain[i] > pain[i + 1]
        if not is_peak:
            i += 1
            continue
        limit = int(np.searchsorted(ts_h, ts_h[i] + max_h, side="right"))
        j = next((k for k in range(i + 1, limit) if pain[k] <= back_level), None)
        end = j if j is not None else max(limit - 1, i)
        acts = sorted({a for k in range(i, end + 1) for a in actions[k]})
        ep = {"peak": i, "peak_pain": pain[i], "recovered": j is not None, "actions": acts,
              "last_seen": df["ts"].iloc[end]}
        if j is not None:
            days = max((ts_h[j] - ts_h[i]) / 24.0, 1.0 / 24.0)
            ep["days"] = days
            ep["speed"] = (pain[i] - pain[j]) / days
        episodes.append(ep)
        i = (j if j is not None else i) + 1
    return episodes


def _recovery(df: pd.DataFrame, mean: float, cfg: EngineSettings) -> List[Pattern]:
    episodes = _recovery_episodes(df, mean, cfg)
    recovered = [e for e in episodes if e["recovered"]]
    out: List[Pattern] = []
    if len(recovered) >= MIN_SAMPLES:
        out.append(
            Pattern(
                id="pattern:recovery:general",
                kind="recovery",
                label="Pain typically returns toward baseline after peaks",
                window=PatternWindow(
                    duration_days=round(float(np.median([e["days"] for e in recovered])), 2),
                    recurrence="after each pain peak",
                    description=f"within {cfg.recovery_max_days:g} days of a peak",
                ),
                magnitude=round(float(np.mean([e["peak_pain"] for e in recovered]) - mean), 3),
                sample_count=len(recovered),
                tier=tier_for(len(recovered)),
                details={
                    "episodes": len(episodes),
                    "recovered": len(recovered),
                    "recovery_rate": round(len(recovered) / len(episodes), 3),
                    "average_speed": round(float(np.mean([e["speed"] for e in recovered])), 3),
                    "median_days": round(float(np.median([e["days"] for e in recovered])), 2),
                    "last_seen": _iso(recovered[-1]["last_seen"]),
                },
            )
        )

    per_action: List[Tuple[float, Pattern]] = []
    all_actions = sorted({a for e in episodes for a in e["actions"]})
    for action in all_actions:
        with_action = [e for e in episodes if action in e["actions"]]
        if len(with_action) < MIN_SAMPLES:
            continue
        rec = [e for e in with_action if e["recovered"]]
        if not rec:
            continue
        consistency = len(rec) / len(with_action)
        speed = float(np.mean([e["speed"] for e in rec]))
        family, value = split_factor(action)
        per_action.append(
            (
                speed * consistency,
                Pattern(
                    id=f"pattern:recovery:{family}:{slugify(value)}",
                    kind="recovery",
                    label=f"Recovery from pain peaks when {value} is logged",
                    window=PatternWindow(
                        duration_days=round(float(np.median([e["days"] for e in rec])), 2),
                        recurrence="after each pain peak",
                        description=f"peaks where {value} was logged during the decline",
                    ),
                    magnitude=round(float(np.mean([e["peak_pain"] for e in with_action]) - mean), 3),
                    sample_count=len(with_action),
                    tier=tier_for(len(with_action)),
                    details={
                        "action": action,
                        "family": family,
                        "average_speed": round(speed, 3),
                        "consistency": round(consistency, 3),
                        "score": round(speed * consistency, 3),
                        "last_seen": _iso(with_action[-1]["last_seen"]),
                    },
                ),
            )
        )
    per_action.sort(key=lambda sp: (-sp[0], sp[1].id))
    for rank, (_, pattern) in enumerate(per_action, start=1):
        pattern.details["rank"] = rank
        out.append(pattern)
    return out


# ─── Entry point ──────────────────────────────────────────────


def detect_patterns(
    entries: Any,
    baseline: Optional[Baseline] = None,
    settings: Optional[EngineSettings] = None,
) -> PatternSet:
    """Detect long-term, cyclical, trigger and recovery patterns.

    Fewer than MIN_SAMPLES usable entries yields an empty set tagged
    `insufficient`.
    """
    cfg = resolve(settings)
    df = as_frame(entries)
    if baseline is None:
        baseline = compute_baseline(df, cfg)
    if len(df) < MIN_SAMPLES or baseline.mean is None:
        log.info("   Patterns: %d entries, insufficient for detection", len(df))
        return PatternSet(tier=ConfidenceTier.INSUFFICIENT)

    mean = baseline.mean
    result = PatternSet(
        long_term=_long_term(df, mean, cfg),
        cyclical=_cyclical(df, mean, cfg),
        trigger=_triggers(df, mean, cfg),
        recovery=_recovery(df, mean, cfg),
        tier=tier_for(len(df)),
    )
    log.info(
        "   Patterns: %d long-term, %d cyclical, %d trigger, %d recovery",
        len(result.long_term), len(result.cyclical), len(result.trigger), len(result.recovery),
    )
    return result
