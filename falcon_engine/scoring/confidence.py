#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon Confidence Engine: attribution confidence and injection priority.

Both scores are pure functions of stored data and are never persisted.

    attribution_confidence = clamp(
        base(quoteType)
        + min(activeOccurrences - 1, 5) * 0.05
        - decayPenalty
        - 0.15 if suspected synthesis drift,
        0, 1)

    decayPenalty = base * (1 - 2 ** (-daysSinceLastSeenActive / halfLife))

The decay term halves the evidence-quality base every half-life (90 days by
default) and is zero for permanent patterns or patterns never seen active.

    injection_priority = severityWeight(severityMax)
                         * touchOverlapFactor
                         * crossProjectPenalty (0.95 when cross-project)

Usage:
    from falcon_engine.scoring.confidence import attribution_confidence, compute_pattern_stats

    stats = compute_pattern_stats(pattern.id, occurrences)
    score = attribution_confidence(pattern, stats, now="2026-01-01T00:00:00+00:00")
"""

import logging
from typing import Any, Dict, Iterable, Optional, Sequence

from falcon_engine.compat.config import get_section
from falcon_engine.compat.db_utils import parse_timestamp, utc_now_iso
from falcon_engine.schemas.core import PatternDefinition, PatternOccurrence, PatternStats

logger = logging.getLogger("falcon.scoring.confidence")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def days_since(timestamp: Optional[str], now: Any = None) -> float:
    """Elapsed days (fractional, never negative) between timestamp and now."""
    if not timestamp:
        return 0.0
    then = parse_timestamp(timestamp)
    current = parse_timestamp(utc_now_iso(now))
    return max(0.0, (current - then).total_seconds() / 86400.0)


def compute_pattern_stats(
    pattern_id: str, occurrences: Iterable[PatternOccurrence]
) -> PatternStats:
    """Aggregate occurrence rows belonging to one pattern."""
    rows = [o for o in occurrences if o.pattern_id == pattern_id]
    active = [o for o in rows if o.status == "active"]
    injected = [o for o in rows if o.was_injected]
    rated = [o for o in rows if o.was_adhered_to is not None]

    last_seen = None
    if active:
        last_seen = utc_now_iso(max(parse_timestamp(o.created_at) for o in active))

    adherence = None
    if rated:
        adherence = sum(1 for o in rated if o.was_adhered_to) / len(rated)

    return PatternStats(
        pattern_id=pattern_id,
        total_occurrences=len(rows),
        active_occurrences=len(active),
        last_seen_active=last_seen,
        injection_count=len(injected),
        adherence_rate=adherence,
    )


def base_confidence(quote_type: str, config: Optional[Dict[str, Any]] = None) -> float:
    bases = get_section("confidence", config)["base"]
    return float(bases.get(quote_type, bases["inferred"]))


def decay_penalty(
    pattern: PatternDefinition,
    stats: PatternStats,
    now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> float:
    if pattern.permanent or not stats.last_seen_active:
        return 0.0
    half_life = float(get_section("confidence", config)["decay_half_life_days"])
    base = base_confidence(pattern.primary_carrier_quote_type, config)
    elapsed = days_since(stats.last_seen_active, now)
    return base * (1.0 - 2.0 ** (-elapsed / half_life))


def attribution_confidence(
    pattern: PatternDefinition,
    stats: PatternStats,
    flags: Optional[Dict[str, bool]] = None,
    now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> float:
    """Decay-aware confidence that the pattern's attribution is correct, in [0, 1]."""
    section = get_section("confidence", config)
    score = base_confidence(pattern.primary_carrier_quote_type, config)
    boost_count = min(stats.active_occurrences - 1, int(section["occurrence_boost_max_count"]))
    score += boost_count * float(section["occurrence_boost_per"])
    score -= decay_penalty(pattern, stats, now=now, config=config)
    if flags and flags.get("suspected_synthesis_drift"):
        score -= float(section["drift_penalty"])
    return _clamp(score)


def severity_weight(severity: str, config: Optional[Dict[str, Any]] = None) -> float:
    weights = get_section("injection", config)["severity_weights"]
    return float(weights.get(str(severity).upper(), weights["LOW"]))


def touch_overlap_factor(
    item_touches: Sequence[str],
    profile_touches: Sequence[str],
    config: Optional[Dict[str, Any]] = None,
) -> float:
    if set(item_touches) & set(profile_touches):
        return 1.0
    return float(get_section("injection", config)["no_touch_overlap_factor"])


def injection_priority(
    pattern: PatternDefinition,
    task_profile: Dict[str, Any],
    stats: Optional[PatternStats] = None,
    cross_project: bool = False,
    config: Optional[Dict[str, Any]] = None,
) -> float:
    """Selection-time ranking score for a pattern; never stored.

    priority = severityWeight(severityMax) x touchOverlapFactor x crossProjectPenalty

    stats is part of the call signature shared with attribution_confidence
    and does not enter the score: evidence strength ranks candidates only as a
    tie-breaker in the selector. Two patterns with the same severity and touch
    overlap get the same priority however many occurrences back them.
    """
    priority = severity_weight(pattern.severity_max, config)
    priority *= touch_overlap_factor(pattern.touches, task_profile.get("touches", []), config)
    if cross_project:
        priority *= float(get_section("injection", config)["cross_project_penalty"])
    logger.debug("Priority %.3f for pattern %s", priority, pattern.id)
    return priority
