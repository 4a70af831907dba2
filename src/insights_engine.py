"""
Pain Insights Engine
====================
Turns a user's pain-tracking entries into baseline statistics, recurring
patterns, relationships, forecasts and ranked recommendations.  Runs fully
locally and synchronously; no state survives between calls.

Architecture (5 layers over one sorted snapshot):
  Layer 0 (Entries):  validate, exclude incomplete entries, re-sort by
            timestamp, build the analysis frame.
  Layer 1 (Baseline & patterns):  trailing-window mean/std + recency
            weighted trend; long-term, cyclical, trigger, recovery patterns.
  Layer 2 (Relationships):  correlation matrix, interaction effects,
            compound patterns, heuristic causal insights, clusters.
  Layer 3 (Forecasts):  next period, optimal timing, intervention
            effectiveness, trend projection.
  Layer 4 (Synthesis):  prioritised recommendations, timing schedule,
            intervention rankings, action plan, summary.

Status contract (mirrors `report.analysis_status`):
  success   every layer ran
  degraded  an optional layer (causal significance, clustering) failed on
            a numeric edge case, or there are too few entries to analyse;
            `degraded_reasons` says which
Contract breaches (corrupt entries) raise EngineContractError and are
never converted into a status.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from analytics.baseline import compute_baseline
from analytics.clustering import cluster_entries
from analytics.correlation import (
    analyze,
    causal_insights,
    compound_patterns,
    correlation_matrix,
    interaction_effects,
)
from analytics.forecasting import (
    build_predictions,
    effectiveness_forecast,
    optimal_timing,
    predict_next_period,
    trend_forecast,
)
from analytics.patterns import detect_patterns
from analytics.recommendations import synthesize
from config import EngineSettings
from constants import MIN_SAMPLES
from entries import entries_to_frame, normalize_entries
from models import (
    Baseline,
    CorrelationAnalysis,
    InsightsReport,
    PatternSet,
    Prediction,
    ScheduleConstraints,
    SynthesisResult,
    TimeSuggestion,
    TrendForecast,
)
from pipeline.summary_builder import build_concise_summary

log = logging.getLogger("insights_engine")

# Numeric edge cases an optional layer may hit on odd data
OPTIONAL_LAYER_ERRORS = (ValueError, FloatingPointError, ZeroDivisionError, np.linalg.LinAlgError)


class InsightsEngine:
    """
    Orchestrates all layers of insight computation.
    Holds configuration only; every call works on the snapshot it is given.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        constraints: Optional[ScheduleConstraints] = None,
    ):
        self.settings = host_settings(settings)
        self.constraints = constraints

    def compute(self, entries: Any, constraints: Optional[ScheduleConstraints] = None) -> InsightsReport:
        """Run layers 0-4 and return the fully materialised report."""
        started = time.perf_counter()
        log.info("Insights engine - computing...")
        status: Dict[str, Any] = {"analysis_status": "success", "degraded_reasons": []}

        df, excluded = self._layer0_entries(entries, status)
        baseline, patterns = self._layer1_baseline_patterns(df)
        correlations = self._layer2_relationships(df, baseline, status)
        predictions = self._layer3_forecasts(df, baseline, patterns)
        synthesis = self._layer4_synthesis(
            baseline, patterns, correlations, predictions, constraints or self.constraints
        )

        report = InsightsReport(
            baseline=baseline,
            patterns=patterns,
            correlations=correlations,
            predictions=predictions,
            recommendations=synthesis.recommendations,
            timing_optimizations=synthesis.timing_optimizations,
            intervention_rankings=synthesis.intervention_rankings,
            action_plans=synthesis.action_plans,
            summary=dict(synthesis.summary),
            entry_count=len(df),
            excluded_entries=excluded,
            analysis_status=status["analysis_status"],
            degraded_reasons=list(status["degraded_reasons"]),
        )
        report.summary.update(
            entry_count=len(df),
            excluded_entries=excluded,
            analysis_status=report.analysis_status,
        )
        report.summary["text"] = build_concise_summary(report)

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self._log_digest(report, elapsed_ms)
        return report

    # ─── Layers ───────────────────────────────────────────────

    def _layer0_entries(self, entries: Any, status: Dict[str, Any]):
        log.info("   Layer 0: validating entries...")
        normalized, excluded = normalize_entries(entries)
        df = entries_to_frame(normalized)
        if df.empty:
            self._degrade(status, "no_entries")
        elif len(df) < MIN_SAMPLES:
            self._degrade(status, "insufficient_entries")
        log.info("   Loaded %d entries (%d excluded)", len(df), excluded)
        return df, excluded

    def _layer1_baseline_patterns(self, df: pd.DataFrame):
        log.info("   Layer 1: baseline + patterns...")
        baseline = compute_baseline(df, self.settings)
        patterns = detect_patterns(df, baseline, self.settings)
        return baseline, patterns

    def _layer2_relationships(self, df: pd.DataFrame, baseline: Baseline, status: Dict[str, Any]) -> CorrelationAnalysis:
        log.info("   Layer 2: relationships...")
        matrix = correlation_matrix(df)
        result = CorrelationAnalysis(
            correlation_matrix=matrix,
            interaction_effects=interaction_effects(df, matrix, self.settings),
            compound_patterns=compound_patterns(df, self.settings),
        )
        try:
            result.causal_insights = causal_insights(df, self.settings)
        except OPTIONAL_LAYER_ERRORS as e:
            log.warning("Causal layer failed; continuing in degraded mode: %s", e)
            self._degrade(status, "causal_layer_failed")
        try:
            result.clusters = cluster_entries(df, self.settings)
        except OPTIONAL_LAYER_ERRORS as e:
            log.warning("Clustering failed; continuing in degraded mode: %s", e)
            self._degrade(status, "clustering_failed")
        return result

    def _layer3_forecasts(self, df: pd.DataFrame, baseline: Baseline, patterns: PatternSet):
        log.info("   Layer 3: forecasts...")
        return build_predictions(df, baseline, patterns, self.settings)

    def _layer4_synthesis(self, baseline, patterns, correlations, predictions, constraints) -> SynthesisResult:
        log.info("   Layer 4: synthesis...")
        return synthesize(baseline, patterns, correlations, predictions, constraints, self.settings)

    # ─── Helpers ──────────────────────────────────────────────

    @staticmethod
    def _degrade(status: Dict[str, Any], reason: str) -> None:
        status["analysis_status"] = "degraded"
        if reason not in status["degraded_reasons"]:
            status["degraded_reasons"].append(reason)

    @staticmethod
    def _log_digest(report: InsightsReport, elapsed_ms: float) -> None:
        c = report.correlations
        log.info("─" * 55)
        log.info("  INSIGHTS DIGEST")
        log.info("  entries=%d excluded=%d status=%s", report.entry_count, report.excluded_entries,
                 report.analysis_status)
        log.info("  patterns=%d correlations=%d interactions=%d compound=%d causal=%d clusters=%d",
                 len(report.patterns.all()), len(c.correlation_matrix), len(c.interaction_effects),
                 len(c.compound_patterns), len(c.causal_insights), len(c.clusters))
        log.info("  recommendations=%d rankings=%d timing=%d plans=%d",
                 len(report.recommendations), len(report.intervention_rankings),
                 len(report.timing_optimizations), len(report.action_plans))
        if report.degraded_reasons:
            log.warning("  degraded: %s", ", ".join(report.degraded_reasons))
        log.info("  elapsed=%.1f ms", elapsed_ms)
        log.info("─" * 55)


# ═══════════════════════════════════════════════════════════════
#  HOST QUERY FUNCTIONS, one per output category
# ═══════════════════════════════════════════════════════════════


def host_settings(settings: Optional[EngineSettings]) -> EngineSettings:
    """Explicit settings win; otherwise PAIN_INSIGHTS_* overrides on top of the defaults."""
    return settings if settings is not None else EngineSettings.from_env()


def _frame(entries: Any) -> pd.DataFrame:
    normalized, _ = normalize_entries(entries)
    return entries_to_frame(normalized)


def compute_insights(
    entries: Any,
    constraints: Optional[ScheduleConstraints] = None,
    settings: Optional[EngineSettings] = None,
) -> InsightsReport:
    return InsightsEngine(settings, constraints).compute(entries)


def get_baseline(entries: Any, settings: Optional[EngineSettings] = None) -> Baseline:
    return compute_baseline(_frame(entries), host_settings(settings))


def get_patterns(entries: Any, settings: Optional[EngineSettings] = None) -> PatternSet:
    settings = host_settings(settings)
    df = _frame(entries)
    return detect_patterns(df, compute_baseline(df, settings), settings)


def get_correlations(entries: Any, settings: Optional[EngineSettings] = None) -> CorrelationAnalysis:
    settings = host_settings(settings)
    df = _frame(entries)
    return analyze(df, compute_baseline(df, settings), settings)


def get_next_period_prediction(entries: Any, settings: Optional[EngineSettings] = None) -> Optional[Prediction]:
    settings = host_settings(settings)
    df = _frame(entries)
    baseline = compute_baseline(df, settings)
    return predict_next_period(df, baseline, detect_patterns(df, baseline, settings), settings)


def get_optimal_timing(entries: Any, settings: Optional[EngineSettings] = None) -> List[TimeSuggestion]:
    return optimal_timing(_frame(entries), host_settings(settings))


def get_effectiveness_forecast(
    entries: Any, intervention_id: str, settings: Optional[EngineSettings] = None
) -> Optional[Prediction]:
    return effectiveness_forecast(_frame(entries), intervention_id, host_settings(settings))


def get_trend_forecast(entries: Any, settings: Optional[EngineSettings] = None) -> Optional[TrendForecast]:
    return trend_forecast(_frame(entries), host_settings(settings))


def get_recommendations(
    entries: Any,
    constraints: Optional[ScheduleConstraints] = None,
    settings: Optional[EngineSettings] = None,
) -> SynthesisResult:
    report = compute_insights(entries, constraints, settings)
    return SynthesisResult(
        recommendations=report.recommendations,
        timing_optimizations=report.timing_optimizations,
        intervention_rankings=report.intervention_rankings,
        action_plans=report.action_plans,
        summary=report.summary,
    )
