"""Configuration loaded from .env

Every tunable threshold of the engine lives on `EngineSettings`.  Defaults
come from `constants`; `EngineSettings.from_env()` overrides any of them
from PAIN_INSIGHTS_<FIELD> environment variables, e.g.

    PAIN_INSIGHTS_TREND_DEADBAND=0.08
    PAIN_INSIGHTS_MAX_RECOMMENDATIONS=5
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Dict, Optional

from dotenv import load_dotenv

import constants as C
from exceptions import ConfigurationError

load_dotenv()

log = logging.getLogger("config")

ENV_PREFIX = "PAIN_INSIGHTS_"


@dataclass(frozen=True)
class EngineSettings:
    # baseline
    baseline_window_days: int = C.BASELINE_WINDOW_DAYS
    trend_max_entries: int = C.TREND_MAX_ENTRIES
    trend_half_life_days: float = C.TREND_HALF_LIFE_DAYS
    trend_deadband: float = C.TREND_DEADBAND
    # patterns
    long_term_min_windows: int = C.LONG_TERM_MIN_WINDOWS
    long_term_min_deviation: float = C.LONG_TERM_MIN_DEVIATION
    cycle_max_p: float = C.CYCLE_MAX_P
    cycle_min_strength: float = C.CYCLE_MIN_STRENGTH
    trigger_lag_hours: float = C.TRIGGER_LAG_HOURS
    trigger_spike_points: float = C.TRIGGER_SPIKE_POINTS
    trigger_min_reliability: float = C.TRIGGER_MIN_RELIABILITY
    recovery_peak_margin: float = C.RECOVERY_PEAK_MARGIN
    recovery_return_margin: float = C.RECOVERY_RETURN_MARGIN
    recovery_max_days: float = C.RECOVERY_MAX_DAYS
    # correlation & clustering
    interaction_threshold: float = C.INTERACTION_THRESHOLD
    compound_min_support: int = C.COMPOUND_MIN_SUPPORT
    compound_min_lift: float = C.COMPOUND_MIN_LIFT
    causal_max_lag_hours: float = C.CAUSAL_MAX_LAG_HOURS
    causal_min_effect: float = C.CAUSAL_MIN_EFFECT
    causal_min_consistency: float = C.CAUSAL_MIN_CONSISTENCY
    cluster_max_count: int = C.CLUSTER_MAX_COUNT
    # forecasting
    forecast_window_days: int = C.FORECAST_WINDOW_DAYS
    forecast_half_life_days: float = C.FORECAST_HALF_LIFE_DAYS
    effect_window_hours: float = C.EFFECT_WINDOW_HOURS
    success_min_drop: float = C.SUCCESS_MIN_DROP
    timing_margin: float = C.TIMING_MARGIN
    trend_forecast_days: int = C.TREND_FORECAST_DAYS
    trend_horizon_days: int = C.TREND_HORIZON_DAYS
    # recommendations
    max_recommendations: int = C.MAX_RECOMMENDATIONS
    shrinkage_k: int = C.SHRINKAGE_K
    action_plan_size: int = C.ACTION_PLAN_SIZE

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "EngineSettings":
        """Build settings, overriding defaults from PAIN_INSIGHTS_* variables."""
        env = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw.strip() == "":
                continue
            caster = int if f.type in ("int", int) else float
            try:
                overrides[f.name] = caster(raw)
            except ValueError as e:
                raise ConfigurationError(
                    f"{ENV_PREFIX}{f.name.upper()}={raw!r} is not a valid {caster.__name__}"
                ) from e
        if overrides:
            log.info("Engine settings overridden from environment: %s", sorted(overrides))
        return replace(cls(), **overrides)


DEFAULT_SETTINGS = EngineSettings()


def resolve(settings: Optional[EngineSettings]) -> EngineSettings:
    return settings if settings is not None else DEFAULT_SETTINGS
