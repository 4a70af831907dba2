"""
Tests for entry validation, normalisation and frame construction.

Covers: Entry field cleaning, exclusion of incomplete entries, contract
errors for corrupt entries, re-sorting, and the analysis frame columns.
"""
import sys
import os
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from builders import START, entry
from entries import (
    Entry,
    entries_to_frame,
    month_phase,
    normalize_entries,
    qol_columns,
    time_of_day,
)
from exceptions import EngineContractError


# ─── Entry model ──────────────────────────────────────────────


class TestEntryModel:

    def test_camel_case_aliases(self):
        e = Entry.model_validate({"timestamp": "2026-01-05T09:00:00", "painLevel": 4})
        assert e.pain_level == 4
        assert e.timestamp == datetime(2026, 1, 5, 9)

    def test_snake_case_accepted(self):
        e = Entry.model_validate({"timestamp": "2026-01-05T09:00:00", "pain_level": 7})
        assert e.pain_level == 7

    def test_timezone_dropped_keeps_wall_clock(self):
        ts = datetime(2026, 1, 5, 21, 30, tzinfo=timezone(timedelta(hours=-5)))
        e = Entry.model_validate({"timestamp": ts, "painLevel": 3})
        assert e.timestamp.tzinfo is None
        assert e.timestamp.hour == 21

    def test_labels_cleaned_sorted_deduplicated(self):
        e = Entry.model_validate({
            "timestamp": "2026-01-05T09:00:00", "painLevel": 3,
            "tags": ["Stress", " stress ", "Poor  Sleep"],
            "activities": "Walking",
        })
        assert e.tags == ("poor sleep", "stress")
        assert e.activities == ("walking",)

    def test_medication_shapes(self):
        e = Entry.model_validate({
            "timestamp": "2026-01-05T09:00:00", "painLevel": 3,
            "medications": ["Ibuprofen", {"name": "Paracetamol", "dose": 500}],
        })
        assert e.medication_names == ("ibuprofen", "paracetamol")
        assert e.medications[1].dose == "500"

    def test_single_medication_mapping(self):
        e = Entry.model_validate({
            "timestamp": "2026-01-05T09:00:00", "painLevel": 3,
            "medications": {"name": "Naproxen"},
        })
        assert e.medication_names == ("naproxen",)

    def test_quality_of_life_aliases(self):
        e = Entry.model_validate({
            "timestamp": "2026-01-05T09:00:00", "painLevel": 3,
            "qualityOfLife": {"sleepQuality": 4, "moodImpact": 6, "energy": None},
        })
        assert e.quality_of_life == {"sleep": 4.0, "mood": 6.0}

    def test_entry_is_frozen(self):
        e = Entry.model_validate({"timestamp": "2026-01-05T09:00:00", "painLevel": 3})
        with pytest.raises(Exception):
            e.pain_level = 5


# ─── normalize_entries ────────────────────────────────────────


class TestNormalizeEntries:

    def test_none_is_empty(self):
        assert normalize_entries(None) == ([], 0)

    def test_missing_required_fields_excluded(self):
        raw = [
            entry(START, 3),
            {"painLevel": 5},
            {"timestamp": START.isoformat()},
            {"timestamp": None, "painLevel": 4},
        ]
        entries, excluded = normalize_entries(raw)
        assert len(entries) == 1
        assert excluded == 3

    def test_resorted_by_timestamp(self):
        raw = [entry(START + timedelta(hours=h), h) for h in (5, 1, 3)]
        entries, _ = normalize_entries(raw)
        assert [e.pain_level for e in entries] == [1, 3, 5]

    def test_equal_timestamps_order_is_input_independent(self):
        a = entry(START, 4, tags=["a"])
        b = entry(START, 4, tags=["b"])
        first, _ = normalize_entries([a, b])
        second, _ = normalize_entries([b, a])
        assert first == second

    def test_equal_timestamps_tie_broken_on_medications_and_quality_of_life(self):
        a = entry(START, 4, medications=[{"name": "ibuprofen", "dose": "200mg"}],
                  qualityOfLife={"sleep": 3})
        b = entry(START, 4, medications=[{"name": "ibuprofen", "dose": "400mg"}],
                  qualityOfLife={"sleep": 3})
        c = entry(START, 4, medications=[{"name": "ibuprofen", "dose": "200mg"}],
                  qualityOfLife={"sleep": 6}, id=7)
        first, _ = normalize_entries([a, b, c])
        second, _ = normalize_entries([c, b, a])
        assert first == second

    def test_boolean_pain_level_is_contract_error(self):
        raw = [entry(START + timedelta(days=d), 3) for d in range(6)]
        raw.append({"timestamp": (START + timedelta(days=6)).isoformat(), "painLevel": True})
        with pytest.raises(EngineContractError) as exc:
            normalize_entries(raw)
        assert exc.value.index == 6
        assert "pain" in (exc.value.field or "").lower()

    def test_numeric_string_pain_level_accepted(self):
        entries, _ = normalize_entries([{"timestamp": START.isoformat(), "painLevel": "6"}])
        assert entries[0].pain_level == 6

    def test_pain_out_of_range_is_contract_error(self):
        with pytest.raises(EngineContractError) as exc:
            normalize_entries([entry(START, 3), entry(START, 11)])
        assert exc.value.index == 1
        assert "pain" in (exc.value.field or "").lower()

    def test_unparseable_timestamp_is_contract_error(self):
        with pytest.raises(EngineContractError):
            normalize_entries([{"timestamp": "not a date", "painLevel": 3}])

    def test_non_numeric_quality_of_life_is_contract_error(self):
        with pytest.raises(EngineContractError):
            normalize_entries([entry(START, 3, qualityOfLife={"sleep": "good"})])

    def test_non_mapping_is_contract_error(self):
        with pytest.raises(EngineContractError) as exc:
            normalize_entries([entry(START, 3), 42])
        assert exc.value.index == 1

    def test_entry_instances_pass_through(self):
        e = Entry.model_validate(entry(START, 2))
        entries, excluded = normalize_entries([e])
        assert entries == [e]
        assert excluded == 0


# ─── Buckets ──────────────────────────────────────────────────


class TestBuckets:

    @pytest.mark.parametrize("hour,label", [
        (6, "morning"), (11, "morning"), (12, "afternoon"), (17, "afternoon"),
        (18, "evening"), (21, "evening"), (22, "night"), (0, "night"), (5, "night"),
    ])
    def test_time_of_day(self, hour, label):
        assert time_of_day(hour) == label

    @pytest.mark.parametrize("day,label", [(1, "early"), (10, "early"), (11, "mid"), (20, "mid"), (21, "late"), (31, "late")])
    def test_month_phase(self, day, label):
        assert month_phase(day) == label


# ─── entries_to_frame ─────────────────────────────────────────


class TestEntriesToFrame:

    def test_empty_frame_has_columns(self):
        df = entries_to_frame([])
        assert df.empty
        assert "pain" in df.columns and "tod" in df.columns

    def test_derived_columns(self):
        saturday_evening = START + timedelta(days=5, hours=19)
        entries, _ = normalize_entries([
            entry(saturday_evening, 6, medications=["ibuprofen"], weather="Rainy"),
        ])
        row = entries_to_frame(entries).iloc[0]
        assert row["pain"] == 6.0
        assert row["day_name"] == "saturday"
        assert row["tod"] == "evening"
        assert bool(row["is_weekend"]) is True
        assert bool(row["has_medication"]) is True
        assert row["medications"] == ("ibuprofen",)
        assert row["weather"] == "rainy"

    def test_missing_quality_of_life_is_nan_not_zero(self):
        entries, _ = normalize_entries([
            entry(START, 3, qualityOfLife={"sleep": 5}),
            entry(START + timedelta(hours=1), 4),
        ])
        df = entries_to_frame(entries)
        assert qol_columns(df) == ["qol:sleep"]
        assert df["qol:sleep"].iloc[0] == 5.0
        assert np.isnan(df["qol:sleep"].iloc[1])
