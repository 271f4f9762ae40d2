#!/usr/bin/env python3
# CUI // SP-CTI
"""Tagging-miss detection.

After a PR review, every pattern attributed to a confirmed finding is checked
against the issue's most recent InjectionLog. A pattern that was not injected
and would not have matched the logged TaskProfile (no overlap in touches,
technologies or task types) is a tagging miss: the profile extraction, or the
pattern's own tags, left a coverage gap. The check never re-runs the selector.

Missing tags are recorded as "touch:<t>", "tech:<t>" and "type:<t>".
"""

import logging
import sqlite3
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from falcon_engine.compat.db_utils import transaction
from falcon_engine.resilience.errors import ValidationError
from falcon_engine.schemas.core import PatternDefinition, TaggingMiss
from falcon_engine.storage.injection_log_repo import InjectionLogRepository
from falcon_engine.storage.pattern_repo import PatternDefinitionRepository
from falcon_engine.storage.tagging_miss_repo import TaggingMissRepository

logger = logging.getLogger("falcon.workflow.tagging_miss_checker")

# (missing-tag prefix, pattern attribute, TaskProfile key, label)
_DIMENSIONS = (
    ("touch", "touches", "touches", "touches"),
    ("tech", "technologies", "technologies", "technologies"),
    ("type", "task_types", "taskTypes", "task types"),
)

_BROADEN_FIELDS = frozenset(attr for _, attr, _, _ in _DIMENSIONS)


@dataclass
class MatchResult:
    matches: bool
    missing_tags: List[str] = field(default_factory=list)


def check_would_match(pattern: PatternDefinition, task_profile: Dict[str, Any]) -> MatchResult:
    """Whether the pattern overlaps the profile on any tag dimension."""
    missing: List[str] = []
    matched = False
    dimensions = (
        ("touch", pattern.touches, task_profile.get("touches") or []),
        ("tech", pattern.technologies, task_profile.get("technologies") or []),
        ("type", pattern.task_types, task_profile.get("taskTypes") or []),
    )
    for prefix, wanted, present in dimensions:
        if set(wanted) & set(present):
            matched = True
        elif wanted:
            missing.extend(f"{prefix}:{tag}" for tag in wanted)
    return MatchResult(matches=matched, missing_tags=missing)


def check_for_tagging_misses(
    conn: sqlite3.Connection,
    workspace_id: str,
    project_id: str,
    issue_id: str,
    attribution_results: Iterable[Any],
    now: Any = None,
) -> List[TaggingMiss]:
    """Record a TaggingMiss for each attributed pattern the last injection could not have matched.

    attribution_results are AttributionResult objects; only the `pattern`
    variant is considered. Returns the misses created (empty when the issue
    had no injection).
    """
    log = InjectionLogRepository(conn).find_latest_for_issue(workspace_id, project_id, issue_id)
    if log is None:
        return []

    misses = TaggingMissRepository(conn)
    injected = set(log.injected_patterns)
    created: List[TaggingMiss] = []
    for result in attribution_results:
        if result.type != "pattern" or result.pattern is None:
            continue
        pattern = result.pattern
        if pattern.id in injected:
            continue
        match = check_would_match(pattern, log.task_profile)
        if match.matches:
            continue
        finding_id = result.occurrence.finding_id if result.occurrence else "unknown"
        created.append(misses.create(
            workspace_id=workspace_id,
            project_id=project_id,
            finding_id=finding_id,
            pattern_id=pattern.id,
            actual_task_profile=log.task_profile,
            required_match={
                "touches": pattern.touches,
                "technologies": pattern.technologies,
                "taskTypes": pattern.task_types,
            },
            missing_tags=match.missing_tags,
            now=now,
        ))
        logger.info("Tagging miss for pattern %s on %s: missing %s",
                    pattern.id, issue_id, ", ".join(match.missing_tags))
    return created


@dataclass
class ResolutionSuggestion:
    """One way to close a miss: broaden_pattern | improve_extraction | false_positive."""

    action: str
    description: str
    changes: Optional[Dict[str, List[str]]] = None


def _tags_with_prefix(tags: Iterable[str], prefix: str) -> List[str]:
    marker = f"{prefix}:"
    return [t[len(marker):] for t in tags if t.startswith(marker)]


def suggest_resolutions(
    miss: TaggingMiss, pattern: Optional[PatternDefinition]
) -> List[ResolutionSuggestion]:
    """Broaden each dimension the pattern missed on, then the two fallbacks.

    A broaden suggestion carries the full tag list to pass back to
    resolve_tagging_miss: the pattern's tags plus the task's tags on that
    dimension.
    """
    suggestions: List[ResolutionSuggestion] = []
    if pattern is not None:
        profile = miss.actual_task_profile
        for prefix, attr, profile_key, label in _DIMENSIONS:
            if not _tags_with_prefix(miss.missing_tags, prefix):
                continue
            current = list(getattr(pattern, attr))
            added = [t for t in profile.get(profile_key) or [] if t not in current]
            if not added:
                continue
            suggestions.append(ResolutionSuggestion(
                action="broaden_pattern",
                description=f"Add {label} [{', '.join(added)}] to the pattern to match tasks like this",
                changes={attr: current + added},
            ))
    suggestions.append(ResolutionSuggestion(
        action="improve_extraction",
        description=f"Improve TaskProfile extraction to detect [{', '.join(miss.missing_tags)}]",
    ))
    suggestions.append(ResolutionSuggestion(
        action="false_positive",
        description="Mark as false positive: the pattern would not have prevented the issue",
    ))
    return suggestions


@dataclass
class TaggingMissAnalysis:
    total: int = 0
    pending: int = 0
    tag_counts: Dict[str, int] = field(default_factory=dict)
    frequent_patterns: List[Dict[str, Any]] = field(default_factory=list)
    suggestions: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def analyze_tagging_misses(
    conn: sqlite3.Connection, workspace_id: str, project_id: str, min_count: int = 2
) -> TaggingMissAnalysis:
    """Summarise misses: which tags go missing, which patterns miss repeatedly,
    and resolution suggestions for every pending miss, grouped by pattern id."""
    misses = TaggingMissRepository(conn).find_by_project(workspace_id, project_id)
    patterns = PatternDefinitionRepository(conn)
    tags: Counter = Counter()
    per_pattern: Counter = Counter()
    suggestions: Dict[str, List[Dict[str, Any]]] = {}
    for miss in misses:
        tags.update(miss.missing_tags)
        per_pattern[miss.pattern_id] += 1
        if miss.status != "pending":
            continue
        pattern = patterns.find_by_id(workspace_id, miss.pattern_id)
        suggestions.setdefault(miss.pattern_id, []).append({
            "tagging_miss_id": miss.id,
            "suggestions": [asdict(s) for s in suggest_resolutions(miss, pattern)],
        })
    return TaggingMissAnalysis(
        total=len(misses),
        pending=sum(1 for m in misses if m.status == "pending"),
        tag_counts=dict(tags.most_common()),
        frequent_patterns=[
            {"pattern_id": pid, "miss_count": n}
            for pid, n in per_pattern.most_common() if n >= min_count
        ],
        suggestions=suggestions,
    )


def list_tagging_misses(
    conn: sqlite3.Connection, workspace_id: str, project_id: str, pending_only: bool = True
) -> List[TaggingMiss]:
    repo = TaggingMissRepository(conn)
    if pending_only:
        return repo.find_pending(workspace_id, project_id)
    return repo.find_by_project(workspace_id, project_id)


@dataclass
class ResolutionOutcome:
    success: bool
    tagging_miss_id: str
    resolution: str
    pattern_updated: bool = False
    tagging_miss: Optional[TaggingMiss] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tagging_miss"] = self.tagging_miss.to_dict() if self.tagging_miss else None
        return data


def resolve_tagging_miss(
    conn: sqlite3.Connection,
    workspace_id: str,
    miss_id: str,
    resolution: str,
    pattern_changes: Optional[Dict[str, List[str]]] = None,
    now: Any = None,
) -> ResolutionOutcome:
    """Resolve as broadened_pattern | improved_extraction | false_positive.

    For broadened_pattern, pattern_changes (touches / technologies /
    task_types, each the full new tag list) are applied to the missed
    pattern in the same transaction. A miss that is unknown or already
    resolved is left untouched and reported with success=False.
    """
    changes = dict(pattern_changes or {})
    unknown = sorted(set(changes) - _BROADEN_FIELDS)
    if unknown:
        raise ValidationError(
            f"Only tag fields can be broadened, got {', '.join(unknown)}",
            field="pattern_changes",
        )

    misses = TaggingMissRepository(conn)
    patterns = PatternDefinitionRepository(conn)
    pattern_updated = False
    with transaction(conn):
        if not misses.resolve(workspace_id, miss_id, resolution, now=now):
            return ResolutionOutcome(False, miss_id, resolution)
        miss = misses.find_by_id(workspace_id, miss_id)
        if resolution == "broadened_pattern" and changes:
            pattern_updated = patterns.update(
                workspace_id, miss.pattern_id, changes, now=now) is not None
            if pattern_updated:
                logger.info("Broadened pattern %s: %s", miss.pattern_id,
                            ", ".join(sorted(changes)))
    logger.info("Resolved tagging miss %s as %s", miss_id, resolution)
    return ResolutionOutcome(True, miss_id, resolution, pattern_updated, miss)
