"""
End-to-end tests for the insights engine and its host query functions.

Covers: empty and sparse histories, the medication and weekend scenarios,
excluded entries, contract errors, degraded mode, input-order
independence, idempotence, and source traceability.
"""
import json
import random
import sys
import os
import time
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import insights_engine
from builders import (
    START,
    daily,
    entry,
    medication_history,
    twice_daily_medication_history,
    varied_history,
    weekend_history,
)
from config import EngineSettings
from exceptions import EngineContractError
from insights_engine import (
    InsightsEngine,
    compute_insights,
    get_baseline,
    get_correlations,
    get_effectiveness_forecast,
    get_next_period_prediction,
    get_optimal_timing,
    get_patterns,
    get_recommendations,
    get_trend_forecast,
)
from models import ConfidenceTier, ScheduleConstraints


# ─── Empty / sparse ───────────────────────────────────────────


class TestEmptyAndSparse:

    def test_empty_history_is_not_an_error(self):
        report = compute_insights([])
        assert report.entry_count == 0
        assert report.baseline.mean is None
        assert report.patterns.all() == []
        assert report.correlations.correlation_matrix == []
        assert report.predictions.next_period is None
        assert report.predictions.trend is None
        assert report.recommendations == []
        assert report.analysis_status == "degraded"
        assert report.degraded_reasons == ["no_entries"]

    def test_none_history(self):
        assert compute_insights(None).entry_count == 0

    def test_three_entries(self):
        report = compute_insights(daily(3, lambda d: [3, 5, 4][d]))
        assert report.baseline.mean == pytest.approx(4.0)
        assert report.baseline.std == pytest.approx(1.0)
        assert report.baseline.trend_tier is ConfidenceTier.INSUFFICIENT
        assert report.predictions.next_period is None
        assert report.degraded_reasons == ["insufficient_entries"]

    def test_host_functions_on_empty_history(self):
        assert get_baseline([]).mean is None
        assert get_patterns([]).all() == []
        assert get_correlations([]).correlation_matrix == []
        assert get_next_period_prediction([]) is None
        assert get_optimal_timing([]) == []
        assert get_effectiveness_forecast([], "ibuprofen") is None
        assert get_trend_forecast([]) is None
        assert get_recommendations([]).recommendations == []


# ─── Scenarios ────────────────────────────────────────────────


class TestScenarios:

    def test_medication_scenario(self):
        report = compute_insights(medication_history())
        pred = report.predictions.effectiveness["medication:ibuprofen"]
        assert pred.value == pytest.approx(-1.6)
        assert pred.tier is ConfidenceTier.MEDIUM
        ranking = report.intervention_rankings[0]
        assert ranking.intervention_id == "medication:ibuprofen"
        assert ranking.level == "try"
        assert report.analysis_status == "success"

    def test_medication_host_function(self):
        pred = get_effectiveness_forecast(medication_history(), "ibuprofen")
        assert pred.value == pytest.approx(-1.6)

    def test_weekend_scenario(self):
        report = compute_insights(weekend_history(weeks=8))
        cyclical = {p.id: p for p in report.patterns.cyclical}
        p = cyclical["pattern:cyclical:weekend:weekend"]
        assert p.tier.at_least(ConfidenceTier.MEDIUM)
        assert p.details["peak_time_of_day"] == "evening"
        compound = {cp.id: cp for cp in report.correlations.compound_patterns}
        assert compound["compound:day:weekend+tod:evening"].tier.at_least(ConfidenceTier.MEDIUM)

    def test_summary_fields(self):
        report = compute_insights(weekend_history(weeks=8))
        s = report.summary
        assert s["entry_count"] == 112
        assert s["excluded_entries"] == 0
        assert s["analysis_status"] == "success"
        assert s["text"].count("\n") == 2


# ─── Input contract ───────────────────────────────────────────


class TestInputContract:

    def test_excluded_entries_counted(self):
        history = daily(10, 4) + [{"painLevel": 5}, {"timestamp": START.isoformat()}]
        report = compute_insights(history)
        assert report.entry_count == 10
        assert report.excluded_entries == 2
        assert report.summary["excluded_entries"] == 2

    def test_corrupt_entry_raises(self):
        history = daily(10, 4) + [entry(START, 42)]
        with pytest.raises(EngineContractError):
            compute_insights(history)

    def test_corrupt_entry_raises_from_host_functions(self):
        with pytest.raises(EngineContractError):
            get_baseline([entry(START, -1)])


# ─── Invariants ───────────────────────────────────────────────


class TestInvariants:

    def test_input_order_does_not_matter(self):
        history = weekend_history(weeks=6) + medication_history()
        shuffled = list(history)
        random.Random(7).shuffle(shuffled)
        assert compute_insights(history).to_dict() == compute_insights(shuffled).to_dict()

    def test_idempotent(self):
        history = weekend_history(weeks=6)
        first = compute_insights(history).to_dict()
        second = compute_insights(history).to_dict()
        assert first == second

    def test_report_is_json_serialisable(self):
        report = compute_insights(weekend_history(weeks=6) + medication_history())
        json.dumps(report.to_dict())

    def test_recommendations_trace_to_report_objects(self):
        report = compute_insights(weekend_history(weeks=6) + medication_history())
        known = report.source_ids()
        assert report.recommendations
        for rec in report.recommendations:
            assert rec.source_ids
            assert set(rec.source_ids) <= known
        for t in report.timing_optimizations:
            assert set(t.source_ids) <= known
        for plan in report.action_plans:
            for step in plan.steps:
                assert set(step.source_ids) <= known

    def test_no_output_below_minimum_samples(self):
        report = compute_insights(weekend_history(weeks=6) + medication_history())
        c = report.correlations
        groups = [report.patterns.all(), c.correlation_matrix, c.interaction_effects,
                  c.compound_patterns, c.causal_insights, c.clusters]
        for group in groups:
            for obj in group:
                assert obj.sample_count >= 5
                assert obj.tier is not ConfidenceTier.INSUFFICIENT

    def test_more_data_never_lowers_baseline_tier(self):
        history = weekend_history(weeks=8)
        ranks = [compute_insights(history[:n]).baseline.tier.rank for n in (2, 6, 12, 40, 112)]
        assert ranks == sorted(ranks)


# ─── Degraded mode / engine ───────────────────────────────────


class TestEngine:

    def test_clustering_failure_degrades(self):
        with patch.object(insights_engine, "cluster_entries", side_effect=ValueError("boom")):
            report = compute_insights(weekend_history(weeks=8))
        assert report.analysis_status == "degraded"
        assert "clustering_failed" in report.degraded_reasons
        assert report.correlations.clusters == []
        assert report.patterns.cyclical

    def test_causal_failure_degrades(self):
        with patch.object(insights_engine, "causal_insights", side_effect=FloatingPointError("nan")):
            report = compute_insights(weekend_history(weeks=8))
        assert "causal_layer_failed" in report.degraded_reasons

    def test_settings_applied(self):
        engine = InsightsEngine(EngineSettings(max_recommendations=1))
        report = engine.compute(weekend_history(weeks=8))
        assert len(report.recommendations) <= 1

    def test_settings_from_environment(self, monkeypatch):
        monkeypatch.setenv("PAIN_INSIGHTS_MAX_RECOMMENDATIONS", "2")
        assert InsightsEngine().settings.max_recommendations == 2

    def test_constraints_passed_per_call(self):
        history = twice_daily_medication_history()
        assert InsightsEngine().compute(history).timing_optimizations
        report = InsightsEngine().compute(history, ScheduleConstraints(do_not_disturb=((0, 24),)))
        assert report.timing_optimizations == []

    def test_get_recommendations_matches_report(self):
        history = weekend_history(weeks=8)
        result = get_recommendations(history)
        report = compute_insights(history)
        assert [r.id for r in result.recommendations] == [r.id for r in report.recommendations]

    def test_host_functions_read_environment_like_the_engine(self, monkeypatch):
        monkeypatch.setenv("PAIN_INSIGHTS_BASELINE_WINDOW_DAYS", "10")
        history = daily(60, lambda d: 2 if d < 50 else 8)
        report = compute_insights(history)
        baseline = get_baseline(history)
        assert baseline.window_days == 10
        assert baseline.mean == pytest.approx(8.0)
        assert baseline.mean == report.baseline.mean
        assert [p.id for p in get_patterns(history).all()] == [p.id for p in report.patterns.all()]
        assert get_next_period_prediction(history).value == report.predictions.next_period.value
        assert get_trend_forecast(history).slope == report.predictions.trend.slope

    def test_explicit_settings_beat_environment(self, monkeypatch):
        monkeypatch.setenv("PAIN_INSIGHTS_BASELINE_WINDOW_DAYS", "10")
        history = daily(60, lambda d: 2 if d < 50 else 8)
        baseline = get_baseline(history, EngineSettings())
        assert baseline.window_days == 90


# ─── Latency ──────────────────────────────────────────────────


class TestLatency:

    def test_thousand_varied_entries(self):
        history = varied_history(1000)
        started = time.perf_counter()
        report = compute_insights(history)
        elapsed = time.perf_counter() - started
        assert report.entry_count == 1000
        assert elapsed < 1.0
