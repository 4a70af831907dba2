"""Helpers for building concise insight text for UI consumption."""

from __future__ import annotations

from typing import Optional

from models import ConfidenceTier, InsightsReport

INSUFFICIENT_TEXT = (
    "- What changed: Not enough data yet in this run.\n"
    "- Why it matters: Patterns and forecasts need at least a few days of entries before they are reliable.\n"
    "- Next steps: Keep logging pain level, time of day and anything you did or took."
)


def clip(s: str, limit: int = 260) -> str:
    s = s.replace("\n", " ").strip()
    if len(s) <= limit:
        return s
    return s[: limit - 3].rstrip() + "..."


def bullet(label: str, value: str) -> str:
    prefix = f"- {label}: "
    allowed = max(48, 280 - len(prefix))
    return prefix + clip(value, allowed)


def _what_changed(report: InsightsReport) -> Optional[str]:
    b = report.baseline
    trend = report.predictions.trend
    if trend is not None:
        return (
            f"Pain is {trend.direction} over the last two weeks "
            f"({trend.slope:+.2f} points/day; baseline {b.mean:.1f}/10)."
        )
    if b.trend is not None:
        return f"Your baseline is {b.mean:.1f}/10 and the recent trend is {b.trend}."
    return None


def _why_it_matters(report: InsightsReport) -> Optional[str]:
    patterns = sorted(
        report.patterns.all(),
        key=lambda p: (-p.tier.rank, -abs(p.magnitude), p.id),
    )
    if patterns:
        p = patterns[0]
        return f"{p.label} ({p.magnitude:+.1f} points vs baseline, {p.tier.value} confidence)."
    strong = [c for c in report.correlations.correlation_matrix if c.strength != "weak"]
    if strong:
        c = strong[0]
        return f"{c.direction.capitalize()} ({c.strength} association, {c.sample_count} entries)."
    return None


def build_concise_summary(report: InsightsReport) -> str:
    """Create a strict 3-bullet, human-friendly summary for UI cards."""
    if report.entry_count == 0 or report.baseline.tier is ConfidenceTier.INSUFFICIENT:
        return INSUFFICIENT_TEXT

    what_changed = _what_changed(report)
    why_it_matters = _why_it_matters(report)
    next_steps = report.recommendations[0].title if report.recommendations else None

    what_changed = clip(what_changed or "No clear change in your recent pain levels.")
    why_it_matters = clip(why_it_matters or "No recurring pattern is strong enough to report yet.")
    next_steps = clip(next_steps or "Keep logging consistently so patterns can be confirmed.")

    return (
        f"{bullet('What changed', what_changed)}\n"
        f"{bullet('Why it matters', why_it_matters)}\n"
        f"{bullet('Next steps', next_steps)}"
    )
