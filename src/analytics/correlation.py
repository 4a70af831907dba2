"""
Relationship analysis between logged context and pain level.

Layers (each usable on its own, `analyze` runs them all):
  correlation_matrix   point-biserial r for binary factors, Pearson r for
                       quality-of-life metrics, with p-values.
  interaction_effects  2x2 cell means for pairs of strong binary factors;
                       combined effect vs the sum of individual effects.
  compound_patterns    frequent itemsets (size 2-3) over discretised
                       conditions, gated on support and lift; plus the
                       high-pain continuation pattern from the Markov layer.
  causal_insights      temporal-precedence heuristic over independent
                       occurrences, with Mann-Whitney p-values and
                       Benjamini-Hochberg q-values reported alongside.

Anything backed by fewer than MIN_SAMPLES observations is omitted.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from itertools import combinations
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats as sp_stats
from statsmodels.stats.multitest import multipletests

from analytics.clustering import cluster_entries
from analytics.markov_layer import compute_markov_layer, persistence
from analytics.patterns import independent_occurrences, split_factor
from config import EngineSettings, resolve
from constants import (
    CAUSAL_FDR_ALPHA,
    CAUSAL_MIN_OCCURRENCES,
    COMPOUND_MAX_RESULTS,
    COMPOUND_MAX_SIZE,
    CONTROLLABLE_FAMILIES,
    INTERACTION_MAX_FACTORS,
    MIN_SAMPLES,
    PASSIVE_FAMILIES,
    POOR_SLEEP_MAX,
    STRENGTH_BANDS,
    TIME_OF_DAY_ORDER,
)
from entries import as_frame, hours_since, qol_columns
from models import (
    Baseline,
    CausalInsight,
    CompoundPattern,
    Correlation,
    CorrelationAnalysis,
    InteractionEffect,
    band_for,
    slugify,
    tier_for,
)

log = logging.getLogger("analytics.correlation")

# Families whose values are mutually exclusive on one entry
EXCLUSIVE_FAMILIES = {"tod", "day", "dow", "weather"}
# Families compared as one group when pairing factors
FAMILY_GROUPS = {"dow": "day"}
ITEM_FAMILY_ORDER = ("day", "tod", "medication", "activity", "tag", "weather", "sleep", "symptom")


def factor_label(factor: str) -> str:
    family, value = split_factor(factor)
    if family == "tod":
        return value
    if family == "day":
        return value
    if family == "dow":
        return value.capitalize()
    if family == "medication":
        return "any medication" if value == "any" else value
    if family == "weather":
        return f"{value} weather"
    if family == "qol":
        return f"{value} rating"
    if family == "sleep":
        return f"{value} sleep"
    return value


def _family_group(factor: str) -> str:
    family = split_factor(factor)[0]
    return FAMILY_GROUPS.get(family, family)


# ─── Encoding ─────────────────────────────────────────────────


def binary_factors(df: pd.DataFrame) -> Dict[str, np.ndarray]:
    """Boolean masks for every categorical factor present in the history."""
    n = len(df)
    masks: Dict[str, np.ndarray] = {}
    tod = df["tod"].to_numpy()
    for bucket in TIME_OF_DAY_ORDER:
        m = tod == bucket
        if m.any():
            masks[f"tod:{bucket}"] = m
    masks["day:weekend"] = df["is_weekend"].to_numpy(dtype=bool)
    day_names = df["day_name"].to_numpy()
    for name in pd.unique(day_names):
        masks[f"dow:{name}"] = day_names == name
    masks["medication:any"] = df["has_medication"].to_numpy(dtype=bool)

    per_value: Dict[str, np.ndarray] = {}
    for pos, row in enumerate(df.itertuples(index=False)):
        keys = [f"medication:{m}" for m in row.medications]
        keys += [f"activity:{a}" for a in row.activities]
        keys += [f"tag:{t}" for t in row.tags]
        if row.weather:
            keys.append(f"weather:{row.weather}")
        for key in keys:
            if key not in per_value:
                per_value[key] = np.zeros(n, dtype=bool)
            per_value[key][pos] = True
    for key in sorted(per_value):
        if key != "medication:any":
            masks[key] = per_value[key]
    return masks


def condition_items(df: pd.DataFrame) -> Dict[str, np.ndarray]:
    """Discretised per-entry conditions for itemset mining."""
    n = len(df)
    items: Dict[str, np.ndarray] = {}
    tod = df["tod"].to_numpy()
    for bucket in TIME_OF_DAY_ORDER:
        m = tod == bucket
        if m.any():
            items[f"tod:{bucket}"] = m
    weekend = df["is_weekend"].to_numpy(dtype=bool)
    items["day:weekend"] = weekend
    items["day:weekday"] = ~weekend
    items["medication:any"] = df["has_medication"].to_numpy(dtype=bool)
    if "qol:sleep" in df.columns:
        items["sleep:poor"] = (df["qol:sleep"] <= POOR_SLEEP_MAX).to_numpy(dtype=bool)

    per_value: Dict[str, np.ndarray] = {}
    for pos, row in enumerate(df.itertuples(index=False)):
        keys = [f"medication:{m}" for m in row.medications]
        keys += [f"activity:{a}" for a in row.activities]
        keys += [f"tag:{t}" for t in row.tags]
        keys += [f"symptom:{s}" for s in row.symptoms]
        if row.weather:
            keys.append(f"weather:{row.weather}")
        for key in keys:
            if key not in per_value:
                per_value[key] = np.zeros(n, dtype=bool)
            per_value[key][pos] = True
    for key in sorted(per_value):
        items.setdefault(key, per_value[key])
    return {k: v for k, v in items.items() if v.any()}


# ─── Layer 1: correlation matrix ──────────────────────────────


def correlation_matrix(entries: Any) -> List[Correlation]:
    df = as_frame(entries)
    n = len(df)
    if n < MIN_SAMPLES:
        return []
    pain = df["pain"].to_numpy(dtype=np.float64)
    if np.ptp(pain) == 0:
        log.info("   Layer 1: pain never varies, no correlations")
        return []

    out: List[Correlation] = []
    for factor, mask in binary_factors(df).items():
        n_with = int(mask.sum())
        support = min(n_with, n - n_with)
        if support < MIN_SAMPLES:
            continue
        r, p = sp_stats.pointbiserialr(mask, pain)
        if not np.isfinite(r):
            continue
        effect = float(pain[mask].mean() - pain[~mask].mean())
        label = factor_label(factor)
        out.append(
            Correlation(
                id=f"correlation:{factor}",
                factor=factor,
                label=label,
                kind="binary",
                coefficient=round(float(r), 4),
                p_value=float(p),
                effect=round(effect, 3),
                strength=band_for(abs(r), STRENGTH_BANDS, "weak"),
                direction=f"{'higher' if r > 0 else 'lower'} pain with {label}",
                sample_count=support,
                tier=tier_for(support),
            )
        )

    for col in qol_columns(df):
        sub = df[[col, "pain"]].dropna()
        if len(sub) < MIN_SAMPLES or sub[col].nunique() < 2 or sub["pain"].nunique() < 2:
            continue
        r, p = sp_stats.pearsonr(sub[col].to_numpy(), sub["pain"].to_numpy())
        if not np.isfinite(r):
            continue
        factor = col
        label = factor_label(factor)
        out.append(
            Correlation(
                id=f"correlation:{factor}",
                factor=factor,
                label=label,
                kind="numeric",
                coefficient=round(float(r), 4),
                p_value=float(p),
                effect=None,
                strength=band_for(abs(r), STRENGTH_BANDS, "weak"),
                direction=f"{'higher' if r > 0 else 'lower'} pain as {label} rises",
                sample_count=len(sub),
                tier=tier_for(len(sub)),
            )
        )

    out.sort(key=lambda c: (-abs(c.coefficient), c.id))
    log.info("   Layer 1: %d correlations", len(out))
    return out


# ─── Layer 2: interaction effects ─────────────────────────────


def interaction_effects(
    entries: Any,
    correlations: Optional[List[Correlation]] = None,
    settings: Optional[EngineSettings] = None,
) -> List[InteractionEffect]:
    cfg = resolve(settings)
    df = as_frame(entries)
    if len(df) < MIN_SAMPLES:
        return []
    if correlations is None:
        correlations = correlation_matrix(df)
    pain = df["pain"].to_numpy(dtype=np.float64)
    masks = binary_factors(df)
    strongest = [c.factor for c in correlations if c.kind == "binary" and c.factor in masks]
    strongest = strongest[:INTERACTION_MAX_FACTORS]

    out: List[InteractionEffect] = []
    for fa, fb in combinations(strongest, 2):
        if _family_group(fa) == _family_group(fb):
            continue
        a, b = masks[fa], masks[fb]
        cells = {
            "00": ~a & ~b,
            "10": a & ~b,
            "01": ~a & b,
            "11": a & b,
        }
        counts = {k: int(m.sum()) for k, m in cells.items()}
        if min(counts.values()) < MIN_SAMPLES:
            continue
        means = {k: float(pain[m].mean()) for k, m in cells.items()}
        eff_a = means["10"] - means["00"]
        eff_b = means["01"] - means["00"]
        combined = means["11"] - means["00"]
        interaction = combined - (eff_a + eff_b)
        if interaction > cfg.interaction_threshold:
            kind = "synergistic"
        elif interaction < -cfg.interaction_threshold:
            kind = "antagonistic"
        else:
            continue
        first, second = sorted((fa, fb))
        la, lb = factor_label(fa), factor_label(fb)
        support = min(counts.values())
        out.append(
            InteractionEffect(
                id=f"interaction:{first}+{second}",
                factors=(first, second),
                effect_a=round(eff_a, 3),
                effect_b=round(eff_b, 3),
                combined_effect=round(combined, 3),
                interaction=round(interaction, 3),
                kind=kind,
                sample_count=support,
                tier=tier_for(support),
                description=(
                    f"{la} together with {lb}: combined effect {combined:+.1f} points "
                    f"vs {eff_a + eff_b:+.1f} expected from each alone"
                ),
            )
        )
    out.sort(key=lambda ie: (-abs(ie.interaction), ie.id))
    log.info("   Layer 2: %d interaction effects", len(out))
    return out


# ─── Layer 3: compound patterns ───────────────────────────────


def _item_sort_key(item: str) -> Tuple[int, str]:
    family = split_factor(item)[0]
    order = ITEM_FAMILY_ORDER.index(family) if family in ITEM_FAMILY_ORDER else len(ITEM_FAMILY_ORDER)
    return order, item


def _compatible(a: str, b: str) -> bool:
    fa, fb = split_factor(a)[0], split_factor(b)[0]
    if fa != fb:
        return True
    if fa in EXCLUSIVE_FAMILIES:
        return False
    return "medication:any" not in (a, b)


def _continuation_pattern(df: pd.DataFrame, cfg: EngineSettings) -> Optional[CompoundPattern]:
    markov = compute_markov_layer(df)
    stay = persistence(markov, "HIGH")
    if not stay or stay["from_count"] < MIN_SAMPLES:
        return None
    observed = stay["stay_count"] / stay["from_count"]
    next_mean = markov["next_day_mean"]["HIGH"]
    daily_mean = float(df.groupby("date")["pain"].mean().mean())
    if observed < 0.5 or next_mean is None or daily_mean <= 0:
        return None
    lift = next_mean / daily_mean
    if lift < cfg.compound_min_lift:
        return None
    return CompoundPattern(
        id="compound:high-pain-continuation",
        conditions=("state:high-day", "state:next-day"),
        label="high-pain day + following day",
        support=stay["stay_count"],
        frequency=round(observed, 3),
        mean_pain=round(next_mean, 3),
        lift=round(lift, 3),
        actionable=True,
        sample_count=stay["from_count"],
        tier=tier_for(stay["from_count"]),
    )


def compound_patterns(entries: Any, settings: Optional[EngineSettings] = None) -> List[CompoundPattern]:
    cfg = resolve(settings)
    df = as_frame(entries)
    n = len(df)
    if n < MIN_SAMPLES:
        return []
    pain = df["pain"].to_numpy(dtype=np.float64)
    overall = float(pain.mean())
    if overall <= 0:
        return []
    min_support = cfg.compound_min_support

    items = {k: m for k, m in condition_items(df).items() if np.count_nonzero(m) >= min_support}
    names = sorted(items, key=_item_sort_key)
    rank = {name: i for i, name in enumerate(names)}
    compatible = {(a, b) for a in names for b in names if a != b and _compatible(a, b)}
    frequent: Dict[Tuple[str, ...], np.ndarray] = {}
    level = {(name,): items[name] for name in names}
    for size in range(2, COMPOUND_MAX_SIZE + 1):
        nxt: Dict[Tuple[str, ...], np.ndarray] = {}
        for itemset, mask in level.items():
            for name in names[rank[itemset[-1]] + 1:]:
                if not all((name, other) in compatible for other in itemset):
                    continue
                if size > 2 and any(
                    sub + (name,) not in frequent for sub in combinations(itemset, size - 2)
                ):
                    continue
                joint = mask & items[name]
                if np.count_nonzero(joint) >= min_support:
                    nxt[itemset + (name,)] = joint
        frequent.update(nxt)
        level = nxt
        if not level:
            break

    reported: Dict[Tuple[str, ...], Tuple[int, float]] = {}
    for itemset, mask in frequent.items():
        support = int(mask.sum())
        lift = float(pain[mask].mean()) / overall
        if lift >= cfg.compound_min_lift:
            reported[itemset] = (support, lift)

    out: List[CompoundPattern] = []
    for itemset, (support, lift) in reported.items():
        redundant = any(
            sub in reported and reported[sub][0] == support
            for k in range(2, len(itemset))
            for sub in combinations(itemset, k)
        )
        if redundant:
            continue
        mask = frequent[itemset]
        families = {split_factor(i)[0] for i in itemset}
        out.append(
            CompoundPattern(
                id="compound:" + "+".join(itemset),
                conditions=itemset,
                label=" + ".join(factor_label(i) for i in itemset),
                support=support,
                frequency=round(support / n, 4),
                mean_pain=round(float(pain[mask].mean()), 3),
                lift=round(lift, 3),
                actionable=not families <= PASSIVE_FAMILIES,
                sample_count=support,
                tier=tier_for(support),
            )
        )
    out.sort(key=lambda cp: (-cp.lift, -cp.support, cp.id))
    out = out[:COMPOUND_MAX_RESULTS]

    continuation = _continuation_pattern(df, cfg)
    if continuation is not None:
        out.append(continuation)
    log.info("   Layer 3: %d compound patterns", len(out))
    return out


# ─── Layer 4: causal insights ─────────────────────────────────


def _antecedents(df: pd.DataFrame) -> Dict[str, List[int]]:
    cands: Dict[str, List[int]] = defaultdict(list)
    has_sleep = "qol:sleep" in df.columns
    for pos, row in enumerate(df.itertuples(index=False)):
        for m in row.medications:
            cands[f"medication:{m}"].append(pos)
        for a in row.activities:
            cands[f"activity:{a}"].append(pos)
        for t in row.tags:
            cands[f"tag:{t}"].append(pos)
        if row.weather:
            cands[f"weather:{row.weather}"].append(pos)
    if has_sleep:
        poor = np.flatnonzero((df["qol:sleep"] <= POOR_SLEEP_MAX).to_numpy())
        if len(poor):
            cands["sleep:poor"] = [int(p) for p in poor]
    return cands


def _following_deltas(pain: np.ndarray, ts_h: np.ndarray, lag_h: float) -> Tuple[np.ndarray, np.ndarray]:
    """Mean pain within `lag_h` after each entry minus its own pain; NaN when nothing follows."""
    n = len(pain)
    deltas = np.full(n, np.nan)
    lags = np.full(n, np.nan)
    lo = np.searchsorted(ts_h, ts_h, side="right")
    hi = np.searchsorted(ts_h, ts_h + lag_h, side="right")
    count = hi - lo
    has = count > 0
    pain_sum = np.concatenate(([0.0], np.cumsum(pain)))
    ts_sum = np.concatenate(([0.0], np.cumsum(ts_h)))
    deltas[has] = (pain_sum[hi[has]] - pain_sum[lo[has]]) / count[has] - pain[has]
    lags[has] = (ts_sum[hi[has]] - ts_sum[lo[has]]) / count[has] - ts_h[has]
    return deltas, lags


def _reversibility(label: str, controllable: bool, effect: float) -> str:
    if not controllable:
        return f"{label} is outside your control; plan around it rather than change it."
    if effect > 0:
        return f"{label} is something you can change; reducing it may lower pain."
    return f"{label} is within your control and tends to precede lower pain."


def causal_insights(entries: Any, settings: Optional[EngineSettings] = None) -> List[CausalInsight]:
    cfg = resolve(settings)
    df = as_frame(entries)
    if len(df) < MIN_SAMPLES:
        return []
    pain = df["pain"].to_numpy(dtype=np.float64)
    ts_h = hours_since(df, df["ts"].iloc[0])
    lag = cfg.causal_max_lag_hours
    deltas, lags = _following_deltas(pain, ts_h, lag)
    min_occ = max(CAUSAL_MIN_OCCURRENCES, MIN_SAMPLES)

    evaluated: List[Dict[str, Any]] = []
    for cause, positions in sorted(_antecedents(df).items()):
        kept = [p for p in independent_occurrences(positions, ts_h, lag) if np.isfinite(deltas[p])]
        if len(kept) < min_occ:
            continue
        occ = deltas[kept]
        without = np.ones(len(df), dtype=bool)
        without[positions] = False
        ctrl = deltas[without & np.isfinite(deltas)]
        ctrl_mean = float(ctrl.mean()) if len(ctrl) else 0.0
        effect = float(occ.mean()) - ctrl_mean
        if effect == 0:
            continue
        consistency = float(np.mean(np.sign(occ - ctrl_mean) == np.sign(effect)))
        p_value = None
        if len(ctrl) >= MIN_SAMPLES:
            p = sp_stats.mannwhitneyu(occ, ctrl, alternative="two-sided").pvalue
            p_value = float(p) if np.isfinite(p) else None
        evaluated.append(
            {
                "cause": cause,
                "effect": effect,
                "consistency": consistency,
                "occurrences": len(kept),
                "lag": float(np.nanmean(lags[kept])),
                "p": p_value,
            }
        )

    tested = [e for e in evaluated if e["p"] is not None]
    if tested:
        _, qvals, _, _ = multipletests([e["p"] for e in tested], alpha=CAUSAL_FDR_ALPHA, method="fdr_bh")
        for e, q in zip(tested, qvals):
            e["q"] = float(q)

    out: List[CausalInsight] = []
    for e in evaluated:
        if abs(e["effect"]) < cfg.causal_min_effect or e["consistency"] < cfg.causal_min_consistency:
            continue
        family, value = split_factor(e["cause"])
        controllable = family in CONTROLLABLE_FAMILIES
        label = factor_label(e["cause"])
        out.append(
            CausalInsight(
                id=f"causal:{family}:{slugify(value)}",
                cause=e["cause"],
                effect="pain_level",
                effect_size=round(e["effect"], 3),
                direction="increases pain" if e["effect"] > 0 else "decreases pain",
                lag_hours=round(e["lag"], 2),
                consistency=round(e["consistency"], 3),
                occurrences=e["occurrences"],
                p_value=e["p"],
                q_value=e.get("q"),
                controllable=controllable,
                reversibility=_reversibility(label.capitalize(), controllable, e["effect"]),
                sample_count=e["occurrences"],
                tier=tier_for(e["occurrences"]),
            )
        )
    out.sort(key=lambda ci: (-abs(ci.effect_size), ci.id))
    log.info("   Layer 4: %d causal insights (%d candidates evaluated)", len(out), len(evaluated))
    return out


# ─── Entry point ──────────────────────────────────────────────


def analyze(
    entries: Any,
    baseline: Optional[Baseline] = None,
    settings: Optional[EngineSettings] = None,
) -> CorrelationAnalysis:
    """Run every relationship layer plus clustering over one snapshot.

    Relationship effects are measured against the snapshot itself (factor
    present vs absent, itemset vs overall mean), so `baseline` is not read.
    """
    cfg = resolve(settings)
    df = as_frame(entries)
    matrix = correlation_matrix(df)
    return CorrelationAnalysis(
        correlation_matrix=matrix,
        interaction_effects=interaction_effects(df, matrix, cfg),
        compound_patterns=compound_patterns(df, cfg),
        causal_insights=causal_insights(df, cfg),
        clusters=cluster_entries(df, cfg),
    )
