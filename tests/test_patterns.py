"""
Tests for pattern detection.

Covers: one-way ANOVA helper, independent occurrences, cyclical weekend
detection, trigger detection, recovery, long-term runs, and the
insufficient-data path.
"""
import sys
import os
import math
from datetime import timedelta

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from analytics.patterns import (
    detect_patterns,
    following_window,
    independent_occurrences,
    one_way_anova,
    split_factor,
)
from builders import START, daily, entry, gardening_history, weekend_history
from models import ConfidenceTier


# ─── Helpers ──────────────────────────────────────────────────


class TestOneWayAnova:

    def test_identical_groups_undefined(self):
        assert one_way_anova([np.array([3, 3]), np.array([3, 3])]) is None

    def test_single_group_undefined(self):
        assert one_way_anova([np.array([1, 2, 3])]) is None

    def test_separated_groups_significant(self):
        f, p, eta2 = one_way_anova([np.array([1, 2, 1, 2]), np.array([7, 8, 7, 8])])
        assert f > 10
        assert p < 0.001
        assert 0.9 < eta2 <= 1.0

    def test_zero_within_variance(self):
        f, p, eta2 = one_way_anova([np.array([1, 1]), np.array([5, 5])])
        assert math.isinf(f)
        assert p == 0.0
        assert eta2 == pytest.approx(1.0)

    def test_empty_groups_ignored(self):
        assert one_way_anova([np.array([]), np.array([1, 2])]) is None


class TestOccurrenceHelpers:

    def test_split_factor(self):
        assert split_factor("activity:yoga") == ("activity", "yoga")
        assert split_factor("plain") == ("plain", "")

    def test_independent_occurrences_respects_gap(self):
        ts_h = np.array([0.0, 10.0, 30.0, 50.0, 80.0])
        assert independent_occurrences([0, 1, 2, 3, 4], ts_h, 24.0) == [0, 2, 4]

    def test_following_window_excludes_same_timestamp(self):
        ts_h = np.array([0.0, 0.0, 2.0, 5.0])
        assert following_window(ts_h, 0, 4.0) == (2, 3)


# ─── detect_patterns ──────────────────────────────────────────


class TestDetectPatterns:

    def test_insufficient_history(self):
        result = detect_patterns(daily(3, 4))
        assert result.all() == []
        assert result.tier is ConfidenceTier.INSUFFICIENT

    def test_empty_history(self):
        assert detect_patterns([]).all() == []

    def test_weekend_evening_cycle(self):
        result = detect_patterns(weekend_history(weeks=8))
        weekend = [p for p in result.cyclical if p.details["candidate"] == "weekend"]
        assert len(weekend) == 1
        p = weekend[0]
        assert p.id == "pattern:cyclical:weekend:weekend"
        assert p.details["peak_phase"] == "weekend"
        assert p.details["peak_time_of_day"] == "evening"
        assert p.window.recurrence == "weekly"
        assert p.window.description == "weekly, weekend evenings"
        assert p.sample_count == 32
        assert p.tier is ConfidenceTier.HIGH
        assert p.magnitude > 0
        assert p.details["p_value"] < 0.05
        assert p.details["strength"] >= 0.05

    def test_day_of_week_peak_is_weekend_day(self):
        result = detect_patterns(weekend_history(weeks=8))
        dow = [p for p in result.cyclical if p.details["candidate"] == "day-of-week"]
        assert len(dow) == 1
        assert dow[0].details["peak_phase"] in ("saturday", "sunday")
        assert dow[0].tier.at_least(ConfidenceTier.MEDIUM)

    def test_no_cycle_in_flat_history(self):
        result = detect_patterns(daily(28, 4))
        assert result.cyclical == []

    def test_short_span_skips_cycles(self):
        # 10 days cannot hold two full weeks
        result = detect_patterns(weekend_history(weeks=1) + daily(3, 3, start=START + timedelta(days=7)))
        assert result.cyclical == []

    def test_gardening_trigger(self):
        result = detect_patterns(gardening_history(days=12))
        ids = [p.id for p in result.trigger]
        assert "pattern:trigger:activity:gardening" in ids
        p = next(p for p in result.trigger if p.id == "pattern:trigger:activity:gardening")
        assert p.details["reliability"] == pytest.approx(1.0)
        assert p.details["median_lag_hours"] == pytest.approx(6.0)
        assert p.sample_count == 6
        assert p.tier is ConfidenceTier.LOW

    def test_no_trigger_without_spikes(self):
        history = daily(12, 3, activities=["walking"])
        assert detect_patterns(history).trigger == []

    def test_daily_medication_is_not_a_start_or_stop(self):
        history = []
        for d in range(12):
            day = START + timedelta(days=d)
            history.append(entry(day + timedelta(hours=8), 5, medications=["ibuprofen"]))
            history.append(entry(day + timedelta(hours=14), 3))
        triggers = detect_patterns(history).trigger
        assert not any("medication-" in p.id for p in triggers)

    def test_recovery_after_peaks(self):
        result = detect_patterns(weekend_history(weeks=8))
        general = [p for p in result.recovery if p.id == "pattern:recovery:general"]
        assert len(general) == 1
        assert general[0].details["recovery_rate"] == pytest.approx(1.0)
        # the final Sunday evening has no later entry, so it cannot be a peak
        assert general[0].sample_count == 15

    def test_recovery_ranked_per_action(self):
        history = []
        for d in range(12):
            day = START + timedelta(days=d)
            history.append(entry(day + timedelta(hours=9), 3))
            if d % 2 == 0:
                history.append(entry(day + timedelta(hours=12), 8))
                history.append(entry(day + timedelta(hours=14), 3, activities=["stretching"]))
        recovery = detect_patterns(history).recovery
        actions = [p for p in recovery if p.details.get("action") == "activity:stretching"]
        assert len(actions) == 1
        assert actions[0].details["rank"] == 1
        assert actions[0].details["consistency"] == pytest.approx(1.0)

    def test_long_term_elevated_run(self):
        history = daily(56, lambda d: 7 if 21 <= d < 42 else 3)
        long_term = detect_patterns(history).long_term
        weekly = [p for p in long_term if p.window.recurrence == "weekly windows"]
        elevated = [p for p in weekly if p.details["direction"] == "elevated"]
        reduced = [p for p in weekly if p.details["direction"] == "reduced"]
        assert len(elevated) == 1
        # the three quiet weeks before the flare sit below the overall mean
        assert len(reduced) == 1
        p = elevated[0]
        assert p.magnitude == pytest.approx(2.5)
        assert p.details["windows"] == 3
        assert p.sample_count == 21
        assert p.id == "pattern:long-term:weekly:2026-01-26"

    def test_every_pattern_backed_by_enough_samples(self):
        result = detect_patterns(weekend_history(weeks=8))
        for p in result.all():
            assert p.sample_count >= 5
            assert p.tier is not ConfidenceTier.INSUFFICIENT

    def test_order_independent(self):
        history = weekend_history(weeks=4)
        forward = detect_patterns(history)
        backward = detect_patterns(list(reversed(history)))
        assert [p.id for p in forward.all()] == [p.id for p in backward.all()]
