"""
Tests for the forecasting layer.

Covers: next-period prediction (insufficient data, recency weighting,
cyclical adjustment, ranges), intervention effectiveness, optimal timing,
and the trend projection.
"""
import sys
import os
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from analytics.forecasting import (
    build_predictions,
    effectiveness_forecast,
    optimal_timing,
    predict_next_period,
    resolve_intervention,
    trend_forecast,
)
from analytics.patterns import detect_patterns
from builders import (
    START,
    daily,
    entry,
    medication_history,
    ramp_history,
    twice_daily_medication_history,
    weekend_history,
)
from entries import as_frame
from models import ConfidenceTier


# ─── Next period ──────────────────────────────────────────────


class TestPredictNextPeriod:

    def test_empty(self):
        assert predict_next_period([]) is None

    def test_three_entries_is_insufficient(self):
        assert predict_next_period(daily(3, 5)) is None

    def test_flat_history(self):
        pred = predict_next_period(daily(20, 5))
        assert pred.id == "prediction:next-period"
        assert pred.value == pytest.approx(5.0, abs=1e-6)
        assert pred.low <= pred.value <= pred.high
        assert pred.tier is ConfidenceTier.MEDIUM

    def test_recent_entries_weigh_more(self):
        history = daily(30, lambda d: 8 if d < 20 else 2)
        pred = predict_next_period(history)
        assert pred.value < 4.5

    def test_target_is_day_after_latest_entry(self):
        pred = predict_next_period(daily(10, 4))
        assert pred.target == (START + timedelta(days=10)).strftime("%Y-%m-%d")

    def test_value_clipped_to_scale(self):
        pred = predict_next_period(ramp_history(days=30, start_pain=0, step_every=1))
        assert 0.0 <= pred.low <= pred.value <= pred.high <= 10.0

    def test_cyclical_pattern_cited(self):
        history = weekend_history(weeks=8)
        df = as_frame(history)
        patterns = detect_patterns(df)
        pred = predict_next_period(df, patterns=patterns)
        sources = pred.details["source_ids"]
        assert sources[0] == "baseline"
        assert any(s.startswith("pattern:cyclical:") for s in sources[1:])
        # the target is a Monday, a low-pain weekday
        assert pred.details["cyclical_adjustment"] < 0

    def test_confidence_in_unit_range(self):
        pred = predict_next_period(weekend_history(weeks=8))
        assert 0.0 <= pred.confidence <= 1.0


# ─── Effectiveness ────────────────────────────────────────────


class TestEffectivenessForecast:

    def test_medication_reduces_pain(self):
        pred = effectiveness_forecast(medication_history(), "ibuprofen")
        assert pred.id == "prediction:effectiveness:medication:ibuprofen"
        assert pred.value == pytest.approx(-1.6)
        assert pred.sample_count == 10
        assert pred.tier is ConfidenceTier.MEDIUM
        assert pred.details["successes"] == 8
        assert pred.details["consistency"] == pytest.approx(0.8)
        assert pred.low < pred.value < pred.high

    def test_prefixed_id_accepted(self):
        a = effectiveness_forecast(medication_history(), "ibuprofen")
        b = effectiveness_forecast(medication_history(), "medication:Ibuprofen")
        assert a == b

    def test_unknown_intervention(self):
        assert effectiveness_forecast(medication_history(), "acupuncture") is None

    def test_fewer_than_five_uses(self):
        assert effectiveness_forecast(medication_history()[:8], "ibuprofen") is None

    def test_resolve_intervention(self):
        df = as_frame(medication_history())
        assert resolve_intervention(df, "Ibuprofen") == "medication:ibuprofen"
        assert resolve_intervention(df, "unknown") is None


# ─── Optimal timing ───────────────────────────────────────────


class TestOptimalTiming:

    def test_morning_dose_preferred(self):
        suggestions = optimal_timing(twice_daily_medication_history())
        by_id = {s.id: s for s in suggestions}
        s = by_id["timing:medication:ibuprofen:time_of_day:morning"]
        assert s.success_rate == pytest.approx(1.0)
        assert s.overall_rate == pytest.approx(0.5)
        assert s.typical_hour == 8
        assert s.sample_count == 10
        assert "timing:medication:ibuprofen:time_of_day:evening" not in by_id

    def test_no_suggestion_without_contrast(self):
        assert optimal_timing(medication_history()) == []

    def test_too_few_entries(self):
        assert optimal_timing(daily(3, 4)) == []


# ─── Trend ────────────────────────────────────────────────────


class TestTrendForecast:

    def test_empty_and_sparse(self):
        assert trend_forecast([]) is None
        assert trend_forecast(daily(3, 4)) is None

    def test_rising(self):
        t = trend_forecast(ramp_history(days=14))
        assert t.id == "prediction:trend"
        assert t.direction == "worsening"
        assert t.slope == pytest.approx(0.5, abs=0.05)
        assert t.horizon_days == 7
        assert t.projected_change == pytest.approx(t.slope * 7, abs=0.01)
        assert "not a guarantee" in t.caveat

    def test_flat(self):
        t = trend_forecast(daily(14, 4))
        assert t.direction == "stable"
        assert t.projected_level == pytest.approx(4.0)

    def test_only_last_two_weeks_used(self):
        history = daily(30, lambda d: 9 if d < 16 else 3)
        t = trend_forecast(history)
        assert t.sample_count == 14
        assert t.direction == "stable"


# ─── Bundle ───────────────────────────────────────────────────


class TestBuildPredictions:

    def test_effectiveness_for_every_intervention(self):
        history = medication_history()
        history.append(entry(START + timedelta(days=2, hours=15), 5, activities=["yoga"]))
        history.append(entry(START + timedelta(days=4, hours=15), 5, activities=["yoga"]))
        preds = build_predictions(history)
        assert preds.effectiveness["medication:ibuprofen"] is not None
        assert preds.effectiveness["activity:yoga"] is None

    def test_empty(self):
        preds = build_predictions([])
        assert preds.next_period is None
        assert preds.trend is None
        assert preds.optimal_timing == []
        assert preds.effectiveness == {}
