#!/usr/bin/env python3
# CUI // SP-CTI
"""Select warnings for prompt injection.

Gathers candidates for one (workspace, project, target) against a TaskProfile:

    principles  baselines (capped, more when the profile is low-confidence)
                and derived principles (capped), touches empty or overlapping
    patterns    active in-scope patterns sharing a touch, technology or task
                type; inferred-evidence patterns need corroboration
    cross       optional sibling-project HIGH+ security patterns (penalised)
    alerts      active, unexpired provisional alerts for the scope
    fallback    for a low-confidence profile, free slots are topped up with
                the project's HIGH/CRITICAL patterns at a discounted priority

Every candidate is scored, merged, sorted and truncated to max_warnings, then
split into warnings (patterns + principles) and alerts. Each call appends one
InjectionLog row recording exactly what was surfaced.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from falcon_engine.compat.config import get_section
from falcon_engine.injection.task_profile import normalize_profile
from falcon_engine.resilience.errors import ValidationError
from falcon_engine.schemas.core import (
    DerivedPrinciple,
    PatternDefinition,
    ProvisionalAlert,
)
from falcon_engine.schemas.models import CarrierStage, Severity, severity_rank
from falcon_engine.scoring.confidence import (
    attribution_confidence,
    compute_pattern_stats,
    injection_priority,
    severity_weight,
    touch_overlap_factor,
)
from falcon_engine.storage import Repositories

logger = logging.getLogger("falcon.injection.selector")


@dataclass
class InjectedItem:
    """One ranked candidate. `item` is the PatternDefinition, DerivedPrinciple or ProvisionalAlert."""

    kind: str
    item: Any
    priority: float
    confidence: float = 0.0
    cross_project: bool = False

    @property
    def id(self) -> str:
        return self.item.id

    @property
    def is_security(self) -> bool:
        if self.kind == "pattern":
            return self.item.finding_category == "security"
        return self.kind == "alert"

    @property
    def recency(self) -> str:
        return getattr(self.item, "updated_at", "") or self.item.created_at

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "id": self.id,
            "priority": round(self.priority, 4),
            "confidence": round(self.confidence, 4),
            "cross_project": self.cross_project,
            "item": self.item.to_dict(),
        }


@dataclass
class InjectionResult:
    target: str
    task_profile: Dict[str, Any]
    warnings: List[InjectedItem] = field(default_factory=list)
    alerts: List[InjectedItem] = field(default_factory=list)
    injection_log_id: Optional[str] = None

    @property
    def patterns(self) -> List[PatternDefinition]:
        return [w.item for w in self.warnings if w.kind == "pattern"]

    @property
    def principles(self) -> List[DerivedPrinciple]:
        return [w.item for w in self.warnings if w.kind == "principle"]

    @property
    def provisional_alerts(self) -> List[ProvisionalAlert]:
        return [a.item for a in self.alerts]

    @property
    def is_empty(self) -> bool:
        return not self.warnings and not self.alerts

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "task_profile": self.task_profile,
            "warnings": [w.to_dict() for w in self.warnings],
            "alerts": [a.to_dict() for a in self.alerts],
            "injection_log_id": self.injection_log_id,
        }


def _overlap(a: List[str], b: List[str]) -> int:
    return len(set(a) & set(b))


def _rank(items: List[InjectedItem]) -> List[InjectedItem]:
    """Priority desc, then security first, confidence desc, newest, id."""
    ordered = sorted(items, key=lambda c: c.id)
    ordered.sort(key=lambda c: c.recency, reverse=True)
    ordered.sort(key=lambda c: c.confidence, reverse=True)
    ordered.sort(key=lambda c: 0 if c.is_security else 1)
    ordered.sort(key=lambda c: c.priority, reverse=True)
    return ordered


def _passes_inferred_gate(pattern: PatternDefinition, active_occurrences: int) -> bool:
    """Inferred-evidence patterns surface only once corroborated."""
    if pattern.primary_carrier_quote_type != "inferred":
        return True
    if active_occurrences >= 2:
        return True
    if severity_rank(pattern.severity_max) >= severity_rank(Severity.HIGH) and pattern.aligned_baseline_id:
        return True
    return pattern.failure_mode == "missing_reference"


class _Selector:
    def __init__(self, repos: Repositories, workspace_id: str, project_id: str,
                 target: str, profile: Dict[str, Any], now: Any, config: Optional[Dict[str, Any]]):
        self.repos = repos
        self.workspace_id = workspace_id
        self.project_id = project_id
        self.target = target
        self.profile = profile
        self.now = now
        self.config = config
        self.section = get_section("injection", config)

    def principle_candidates(self) -> List[InjectedItem]:
        touches = self.profile["touches"]
        low_confidence = (self.profile["confidence"]
                          < float(self.section["low_confidence_profile_threshold"]))
        max_baselines = int(self.section["max_baselines_low_confidence"] if low_confidence
                            else self.section["max_baselines"])
        max_derived = int(self.section["max_derived_principles"])

        active = self.repos.principles.find_active(self.workspace_id, inject_into=self.target)
        matching = [p for p in active if not p.touches or _overlap(p.touches, touches)]

        baselines = sorted(
            (p for p in matching if p.origin == "baseline"),
            key=lambda p: (-_overlap(p.touches, touches), p.baseline_code or "", p.id),
        )[:max_baselines]

        derived = sorted(
            (p for p in matching if p.origin == "derived"),
            key=lambda p: p.id,
        )
        derived.sort(key=lambda p: p.updated_at, reverse=True)
        derived.sort(key=lambda p: (-_overlap(p.touches, touches), -p.confidence))
        derived = derived[:max_derived]

        items = []
        for principle in baselines + derived:
            factor = touch_overlap_factor(principle.touches, touches, self.config)
            items.append(InjectedItem(
                kind="principle",
                item=principle,
                priority=principle.confidence * factor,
                confidence=principle.confidence,
            ))
        return items

    def _score_pattern(self, pattern: PatternDefinition, cross_project: bool) -> Optional[InjectedItem]:
        occurrences = self.repos.occurrences.find_by_pattern_id(self.workspace_id, pattern.id)
        stats = compute_pattern_stats(pattern.id, occurrences)
        if not _passes_inferred_gate(pattern, stats.active_occurrences):
            logger.debug("Pattern %s held back: uncorroborated inferred evidence", pattern.id)
            return None
        return InjectedItem(
            kind="pattern",
            item=pattern,
            priority=injection_priority(pattern, self.profile, stats=stats,
                                        cross_project=cross_project, config=self.config),
            confidence=attribution_confidence(pattern, stats, now=self.now, config=self.config),
            cross_project=cross_project,
        )

    def pattern_candidates(self, include_cross_project: bool) -> List[InjectedItem]:
        profile = self.profile
        local = [
            p for p in self.repos.patterns.find_active(
                self.workspace_id, self.project_id, carrier_stage=self.target)
            if _overlap(p.touches, profile["touches"])
            or _overlap(p.technologies, profile["technologies"])
            or _overlap(p.task_types, profile["taskTypes"])
        ]
        items = [i for i in (self._score_pattern(p, False) for p in local) if i]
        if not include_cross_project:
            return items

        seen: Set[str] = {p.pattern_key for p in local}
        for pattern in self.repos.patterns.find_cross_project(
            self.workspace_id, self.project_id, carrier_stage=self.target,
            min_severity="HIGH", finding_category="security",
        ):
            if pattern.pattern_key in seen:
                continue
            touch_hits = _overlap(pattern.touches, profile["touches"])
            tech_hits = _overlap(pattern.technologies, profile["technologies"])
            if not (touch_hits >= 2 or (touch_hits >= 1 and tech_hits >= 1)):
                continue
            seen.add(pattern.pattern_key)
            item = self._score_pattern(pattern, True)
            if item:
                items.append(item)
        return items

    def fallback_candidates(self, taken: List[InjectedItem], free_slots: int) -> List[InjectedItem]:
        """Project HIGH/CRITICAL patterns that missed a vague profile, discounted.

        Only fills slots the regular candidates left free.
        """
        threshold = float(self.section["low_confidence_profile_threshold"])
        if self.profile["confidence"] >= threshold:
            return []
        budget = min(free_slots, int(self.section["low_confidence_fallback_max"]))
        if budget <= 0:
            return []

        taken_ids = {c.id for c in taken}
        severe = sorted(
            (p for p in self.repos.patterns.find_active(
                self.workspace_id, self.project_id, carrier_stage=self.target)
             if p.id not in taken_ids
             and severity_rank(p.severity_max) >= severity_rank(Severity.HIGH)),
            key=lambda p: (-severity_rank(p.severity_max), p.id),
        )
        factor = float(self.section["low_confidence_fallback_factor"])
        items: List[InjectedItem] = []
        for pattern in severe:
            if len(items) >= budget:
                break
            item = self._score_pattern(pattern, False)
            if item is None:
                continue
            item.priority *= factor
            items.append(item)
        return items

    def alert_candidates(self) -> List[InjectedItem]:
        touches = self.profile["touches"]
        alerts = self.repos.alerts.find_active(
            self.workspace_id, self.project_id, inject_into=self.target,
            touches=touches, now=self.now,
        )
        return [
            InjectedItem(
                kind="alert",
                item=alert,
                priority=(severity_weight(alert.severity, self.config)
                          * touch_overlap_factor(alert.touches, touches, self.config)),
            )
            for alert in alerts
        ]


def select_warnings_for_injection(
    conn: sqlite3.Connection,
    workspace_id: str,
    project_id: str,
    target: str,
    task_profile: Dict[str, Any],
    issue_id: str,
    max_warnings: Optional[int] = None,
    cross_project: Optional[bool] = None,
    now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> InjectionResult:
    """Rank and log the warnings to inject for one task.

    Returns an empty result, and writes no log, when the project is missing
    or archived.
    """
    if target not in {s.value for s in CarrierStage}:
        raise ValidationError(f"Unknown injection target '{target}'", field="target")
    profile = normalize_profile(task_profile)
    result = InjectionResult(target=target, task_profile=profile)

    repos = Repositories(conn)
    project = repos.projects.find_by_id(workspace_id, project_id)
    if project is None or project.status != "active":
        return result

    section = get_section("injection", config)
    limit = int(max_warnings if max_warnings is not None else section["max_warnings"])
    include_cross = bool(section["include_cross_project"] if cross_project is None else cross_project)

    selector = _Selector(repos, workspace_id, project_id, target, profile, now, config)
    candidates = (selector.principle_candidates()
                  + selector.pattern_candidates(include_cross)
                  + selector.alert_candidates())
    candidates += selector.fallback_candidates(candidates, max(limit, 0) - len(candidates))
    for c in candidates:
        logger.debug("Candidate %s %s priority=%.3f confidence=%.3f",
                     c.kind, c.id, c.priority, c.confidence)

    chosen = _rank(candidates)[:max(limit, 0)]
    result.warnings = [c for c in chosen if c.kind != "alert"]
    result.alerts = [c for c in chosen if c.kind == "alert"]

    log = repos.injection_logs.create(
        workspace_id=workspace_id,
        project_id=project_id,
        issue_id=issue_id,
        target=target,
        task_profile=profile,
        injected_patterns=[p.id for p in result.patterns],
        injected_principles=[p.id for p in result.principles],
        injected_alerts=[a.id for a in result.provisional_alerts],
        now=now,
    )
    result.injection_log_id = log.id
    logger.info("Selected %d warnings and %d alerts for %s (%s)",
                len(result.warnings), len(result.alerts), issue_id, target)
    return result
