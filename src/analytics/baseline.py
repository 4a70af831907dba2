"""Personal baseline: trailing-window mean/std, recency-weighted trend, anomalies."""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

import numpy as np
import pandas as pd

from config import EngineSettings, resolve
from constants import (
    ANOMALY_HIGH_PCT,
    ANOMALY_LOOKBACK_DAYS,
    ANOMALY_LOW_PCT,
    ANOMALY_MIN_SAMPLES,
    ENGAGEMENT_WINDOW_DAYS,
    MIN_SAMPLES,
)
from entries import as_frame
from models import Anomaly, Baseline, ConfidenceTier, tier_for

log = logging.getLogger("analytics.baseline")

BASELINE_ID = "baseline"


def classify_slope(slope: Optional[float], deadband: float) -> Optional[str]:
    """Deadband classification shared by the baseline and trend forecast."""
    if slope is None:
        return None
    if abs(slope) < deadband:
        return "stable"
    return "improving" if slope < 0 else "worsening"


def recency_weights(ts: pd.Series, end: pd.Timestamp, half_life_days: float) -> np.ndarray:
    age_days = ((end - ts) / pd.Timedelta(days=1)).to_numpy(dtype=np.float64)
    return np.power(0.5, age_days / half_life_days)


def _weighted_trend(recent: pd.DataFrame, end: pd.Timestamp, cfg: EngineSettings) -> Tuple[Optional[float], int]:
    n = len(recent)
    if n < MIN_SAMPLES:
        return None, n
    x = ((recent["ts"] - recent["ts"].iloc[0]) / pd.Timedelta(days=1)).to_numpy(dtype=np.float64)
    y = recent["pain"].to_numpy(dtype=np.float64)
    if np.ptp(x) == 0:
        return 0.0, n
    w = recency_weights(recent["ts"], end, cfg.trend_half_life_days)
    # polyfit weights multiply residuals, so sqrt(w) gives a w-weighted fit
    slope, _ = np.polyfit(x, y, 1, w=np.sqrt(w))
    return float(slope), n


def _anomalies(window: pd.DataFrame, end: pd.Timestamp, mean: float, std: float) -> List[Anomaly]:
    if len(window) < ANOMALY_MIN_SAMPLES or std <= 0:
        return []
    pain = window["pain"].to_numpy(dtype=np.float64)
    lo, hi = np.percentile(pain, [ANOMALY_LOW_PCT, ANOMALY_HIGH_PCT])
    recent = window[window["ts"] > end - pd.Timedelta(days=ANOMALY_LOOKBACK_DAYS)]
    out = []
    for row in recent.itertuples(index=False):
        if lo <= row.pain <= hi:
            continue
        out.append(
            Anomaly(
                timestamp=row.ts.to_pydatetime(),
                pain_level=int(row.pain),
                z_score=round(float((row.pain - mean) / std), 3),
                direction="high" if row.pain > hi else "low",
            )
        )
    return out


def compute_baseline(entries: Any, settings: Optional[EngineSettings] = None) -> Baseline:
    """Baseline over the trailing window that ends at the latest entry.

    The window is anchored on the data, not on the wall clock, so the same
    snapshot always yields the same baseline.
    """
    cfg = resolve(settings)
    df = as_frame(entries)
    if df.empty:
        return Baseline(
            id=BASELINE_ID,
            mean=None,
            std=None,
            sample_count=0,
            window_days=cfg.baseline_window_days,
            window_start=None,
            window_end=None,
            current_level=None,
            slope=None,
            trend=None,
            tier=ConfidenceTier.INSUFFICIENT,
            trend_tier=ConfidenceTier.INSUFFICIENT,
        )

    end = df["ts"].iloc[-1]
    start = end - pd.Timedelta(days=cfg.baseline_window_days)
    window = df[df["ts"] > start]
    pain = window["pain"].to_numpy(dtype=np.float64)
    n = len(pain)
    mean = float(pain.mean())
    std = float(pain.std(ddof=1)) if n > 1 else 0.0

    slope, trend_n = _weighted_trend(window.tail(cfg.trend_max_entries), end, cfg)
    trend = classify_slope(slope, cfg.trend_deadband)
    trend_tier = tier_for(trend_n) if slope is not None else ConfidenceTier.INSUFFICIENT

    tracked = int(df.loc[df["ts"] > end - pd.Timedelta(days=ENGAGEMENT_WINDOW_DAYS), "date"].nunique())

    baseline = Baseline(
        id=BASELINE_ID,
        mean=round(mean, 4),
        std=round(std, 4),
        sample_count=n,
        window_days=cfg.baseline_window_days,
        window_start=window["ts"].iloc[0].to_pydatetime(),
        window_end=end.to_pydatetime(),
        current_level=float(df["pain"].iloc[-1]),
        slope=None if slope is None else round(slope, 5),
        trend=trend,
        tier=tier_for(n),
        trend_tier=trend_tier,
        trend_samples=trend_n,
        tracked_days_last_week=tracked,
        anomalies=_anomalies(window, end, mean, std),
    )
    log.info(
        "   Baseline: mean=%.2f sd=%.2f n=%d trend=%s (%s)",
        mean, std, n, trend or "n/a", trend_tier.value,
    )
    return baseline
