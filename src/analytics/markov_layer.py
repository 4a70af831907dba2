"""Day-to-day pain-state transitions (LOW / MED / HIGH) with adaptive smoothing."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from constants import (
    PAIN_STATE_EDGES,
    PAIN_STATE_LABELS,
    SMOOTH_ALPHA_BASE,
    SMOOTH_ALPHA_MAX,
    SMOOTH_ALPHA_MIN,
)

log = logging.getLogger("analytics.markov_layer")


def adaptive_alpha(n_transitions: int) -> float:
    """Kernel smoothing strength from sample size.

    α = clamp(BASE / √n, MIN, MAX)

    With 4 transitions  → α ≈ 0.25 (heavy smoothing, sparse data)
    With 50 transitions → α ≈ 0.07
    With 700+           → α = 0.02 (data speaks)
    """
    if n_transitions <= 0:
        return SMOOTH_ALPHA_MAX
    raw = SMOOTH_ALPHA_BASE / math.sqrt(n_transitions)
    return max(SMOOTH_ALPHA_MIN, min(SMOOTH_ALPHA_MAX, raw))


def pain_state(values) -> np.ndarray:
    """Discretise pain levels into state indices 0..len(PAIN_STATE_LABELS)-1."""
    return np.digitize(np.asarray(values, dtype=np.float64), PAIN_STATE_EDGES)


def compute_markov_layer(df: pd.DataFrame) -> Optional[Dict[str, Any]]:
    """Transition model over daily mean pain.

    Only consecutive calendar days contribute a transition; untracked days
    break the chain instead of being filled.  Returns None when no
    transition exists.
    """
    if df.empty:
        return None

    daily = df.groupby("date")["pain"].mean().sort_index()
    if len(daily) < 2:
        return None

    vals = daily.to_numpy(dtype=np.float64)
    dates = daily.index.to_numpy()
    states = pain_state(vals)
    k = len(PAIN_STATE_LABELS)

    counts = np.zeros((k, k), dtype=np.float64)
    next_pain: Dict[int, list] = {i: [] for i in range(k)}
    for t in range(len(states) - 1):
        day_gap = (dates[t + 1] - dates[t]) / np.timedelta64(1, "D")
        if day_gap == 1:
            counts[states[t], states[t + 1]] += 1
            next_pain[int(states[t])].append(vals[t + 1])

    n_trans = int(counts.sum())
    if n_trans == 0:
        return None

    alpha = adaptive_alpha(n_trans)
    rs = counts.sum(axis=1, keepdims=True)
    rs[rs == 0] = 1
    matrix = counts / rs
    uniform = np.ones_like(matrix) / k
    matrix = (1 - alpha) * matrix + alpha * uniform
    matrix = matrix / matrix.sum(axis=1, keepdims=True)

    try:
        eigvals, eigvecs = np.linalg.eig(matrix.T)
        idx = np.argmin(np.abs(eigvals - 1.0))
        stationary = np.real(eigvecs[:, idx])
        stationary = stationary / stationary.sum()
    except np.linalg.LinAlgError:
        stationary = np.ones(k) / k

    log.info("   Markov layer: %d daily transitions (alpha=%.3f)", n_trans, alpha)
    return {
        "labels": list(PAIN_STATE_LABELS),
        "counts": counts,
        "matrix": matrix,
        "stationary": stationary,
        "n_transitions": n_trans,
        "smooth_alpha": alpha,
        "next_day_mean": {
            PAIN_STATE_LABELS[i]: (float(np.mean(v)) if v else None) for i, v in next_pain.items()
        },
        "last_state": PAIN_STATE_LABELS[int(states[-1])],
        "last_date": pd.Timestamp(dates[-1]),
    }


def persistence(markov: Optional[Dict[str, Any]], state: str) -> Optional[Dict[str, float]]:
    """Observed count and smoothed probability of staying in `state` next day."""
    if not markov:
        return None
    i = markov["labels"].index(state)
    from_state = int(markov["counts"][i].sum())
    return {
        "from_count": from_state,
        "stay_count": int(markov["counts"][i, i]),
        "probability": float(markov["matrix"][i, i]),
        "stationary": float(markov["stationary"][i]),
    }
