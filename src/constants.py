"""
Shared constants used across the analytics modules.
Single source of truth for thresholds, band tables and label vocabularies.

Every numeric threshold here is a default; `config.EngineSettings` lets the
host override them (PAIN_INSIGHTS_* environment variables or keyword args).
"""

# ─── Confidence tiers ─────────────────────────────────────────
# Ordered bands: (minimum supporting samples, tier).  First match wins.
CONFIDENCE_BANDS = (
    (30, "high"),
    (10, "medium"),
    (5, "low"),
    (0, "insufficient"),
)
MIN_SAMPLES = 5

# ─── Labels ───────────────────────────────────────────────────
# (label, start hour inclusive, end hour exclusive); anything else is night
TIME_OF_DAY_BUCKETS = (
    ("morning", 6, 12),
    ("afternoon", 12, 18),
    ("evening", 18, 22),
)
NIGHT_LABEL = "night"
TIME_OF_DAY_ORDER = ("morning", "afternoon", "evening", "night")
TIME_OF_DAY_HOURS = {
    "morning": tuple(range(6, 12)),
    "afternoon": tuple(range(12, 18)),
    "evening": tuple(range(18, 22)),
    "night": (22, 23, 0, 1, 2, 3, 4, 5),
}

DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# (label, first day of month, last day of month)
MONTH_PHASES = (
    ("early", 1, 10),
    ("mid", 11, 20),
    ("late", 21, 31),
)

# Host-side quality-of-life keys folded onto short metric names
QOL_ALIASES = {
    "sleepquality": "sleep",
    "sleep_quality": "sleep",
    "moodimpact": "mood",
    "mood_impact": "mood",
    "dailyactivities": "activity",
    "daily_activities": "activity",
}

# Pain states used for the day-to-day persistence model
PAIN_STATE_EDGES = (4.0, 7.0)  # LOW < 4 <= MED < 7 <= HIGH
PAIN_STATE_LABELS = ("LOW", "MED", "HIGH")

# Markov smoothing: alpha = clamp(BASE / sqrt(n), MIN, MAX)
SMOOTH_ALPHA_BASE = 0.50
SMOOTH_ALPHA_MIN = 0.02
SMOOTH_ALPHA_MAX = 0.25

# ─── Baseline ─────────────────────────────────────────────────
BASELINE_WINDOW_DAYS = 90
TREND_MAX_ENTRIES = 30
TREND_HALF_LIFE_DAYS = 14.0
TREND_DEADBAND = 0.05  # pain points per day
ANOMALY_LOOKBACK_DAYS = 7
ANOMALY_LOW_PCT = 5
ANOMALY_HIGH_PCT = 95
ANOMALY_MIN_SAMPLES = 10
ENGAGEMENT_WINDOW_DAYS = 7
ENGAGEMENT_MIN_DAYS = 4

# ─── Patterns ─────────────────────────────────────────────────
LONG_TERM_WINDOWS = (("weekly", 7), ("monthly", 30))
LONG_TERM_MIN_WINDOWS = 3
LONG_TERM_MIN_DEVIATION = 1.0

CYCLE_MAX_P = 0.05
CYCLE_MIN_STRENGTH = 0.05  # eta squared
CYCLE_MIN_PERIODS = 2
CYCLE_MIN_PHASE_SAMPLES = 2
CYCLE_TIME_OF_DAY_MARGIN = 0.5

TRIGGER_LAG_HOURS = 48.0
TRIGGER_SPIKE_POINTS = 2.0
TRIGGER_MIN_RELIABILITY = 0.6
TRIGGER_MIN_SPIKES = 3

RECOVERY_PEAK_MARGIN = 1.5
RECOVERY_RETURN_MARGIN = 0.5
RECOVERY_MAX_DAYS = 7.0

# ─── Correlation & clustering ─────────────────────────────────
# Ordered bands on |coefficient|: (lower bound, label)
STRENGTH_BANDS = (
    (0.6, "strong"),
    (0.3, "moderate"),
    (0.0, "weak"),
)
INTERACTION_MAX_FACTORS = 8
INTERACTION_THRESHOLD = 1.0

COMPOUND_MAX_SIZE = 3
COMPOUND_MIN_SUPPORT = 5
COMPOUND_MIN_LIFT = 1.2
COMPOUND_MAX_RESULTS = 10
# Condition families that describe circumstances rather than choices
PASSIVE_FAMILIES = {"weather", "symptom"}
POOR_SLEEP_MAX = 4.0

CAUSAL_MAX_LAG_HOURS = 24.0
CAUSAL_MIN_OCCURRENCES = 3
CAUSAL_MIN_EFFECT = 1.0
CAUSAL_MIN_CONSISTENCY = 0.6
CAUSAL_FDR_ALPHA = 0.05
CONTROLLABLE_FAMILIES = {"medication", "activity", "tag", "sleep"}

CLUSTER_MAX_COUNT = 4
CLUSTER_DOMINANT_TIME_SHARE = 0.6
CLUSTER_DOMINANT_SYMPTOM_SHARE = 0.5
# (upper bound exclusive, label) on cluster mean pain
PAIN_BANDS = (
    (4.0, "Low-pain"),
    (7.0, "Moderate-pain"),
    (11.0, "High-pain"),
)

# ─── Forecasting ──────────────────────────────────────────────
FORECAST_WINDOW_DAYS = 30
FORECAST_HALF_LIFE_DAYS = 7.0
CYCLICAL_ADJUSTMENT_WEIGHT = 0.3
SPREAD_SCALE = 5.0  # residual sd at which confidence reaches zero
EFFECT_WINDOW_HOURS = 4.0
SUCCESS_MIN_DROP = 1.0
TIMING_MARGIN = 0.1
TREND_FORECAST_DAYS = 14
TREND_HORIZON_DAYS = 7
TREND_CAVEAT = (
    "Extrapolated from the recent slope; this is a projection, not a guarantee."
)

# ─── Recommendations ──────────────────────────────────────────
PRIORITY_WEIGHTS = {
    "pain_gap": 0.30,
    "trend": 0.20,
    "match": 0.35,
    "recency": 0.15,
}
# Ordered bands: (minimum score, priority)
PRIORITY_BANDS = (
    (0.75, "critical"),
    (0.55, "high"),
    (0.35, "medium"),
    (0.0, "low"),
)
PRIORITY_ORDER = ("critical", "high", "medium", "low")
TREND_SCORES = {"worsening": 1.0, "stable": 0.5, "improving": 0.0}
RECENCY_HALF_LIFE_DAYS = 14.0
MAX_RECOMMENDATIONS = 8

SHRINKAGE_K = 5
# Ordered bands on shrunken benefit (pain points avoided): (minimum, level)
RANKING_BANDS = (
    (0.75, "try"),
    (0.25, "consider"),
)
RANKING_FALLBACK = "insufficient-data"

ACTION_PLAN_SIZE = 3
ACTION_TIMELINES = ("Days 1-3", "Days 4-7", "Week 2")
