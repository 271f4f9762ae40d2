#!/usr/bin/env python3
# CUI // SP-CTI
"""Tier 2 promotion: PatternDefinition -> workspace DerivedPrinciple.

A pattern key qualifies when it is active in at least min_projects (3)
distinct projects of the workspace, its severityMax is HIGH or CRITICAL, its
category is security, and the average attribution confidence over every
active pattern sharing the key, plus a project-count boost (0.05 per project
beyond the minimum, capped at 0.15), reaches min_confidence (0.6).

Promotion is idempotent through

    promotionKey = sha256(workspaceId | patternKey | carrierStage | findingCategory)

and a partial unique index on ACTIVE principles. Rolling a principle back
archives it (reason 'rollback'), freeing the key for a later re-promotion.

CLI usage is through falcon_cli (promote-check, rollback-principle).
"""

import hashlib
import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from falcon_engine.compat.config import get_section
from falcon_engine.scoring.confidence import attribution_confidence, compute_pattern_stats
from falcon_engine.schemas.core import DerivedPrinciple, PatternDefinition
from falcon_engine.storage.occurrence_repo import PatternOccurrenceRepository
from falcon_engine.storage.pattern_repo import PatternDefinitionRepository
from falcon_engine.storage.principle_repo import DerivedPrincipleRepository

logger = logging.getLogger("falcon.evolution.promotion_checker")


def compute_promotion_key(
    workspace_id: str, pattern_key: str, carrier_stage: str, finding_category: str
) -> str:
    payload = f"{workspace_id}|{pattern_key}|{carrier_stage}|{finding_category}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class PromotionCheck:
    qualifies: bool
    project_count: int
    average_confidence: float
    reason: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PrinciplePromotionResult:
    promoted: bool
    reason: str
    derived_principle_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class PromotionChecker:
    def __init__(self, conn: sqlite3.Connection, config: Optional[Dict[str, Any]] = None):
        self.conn = conn
        self.config = config
        self.patterns = PatternDefinitionRepository(conn)
        self.occurrences = PatternOccurrenceRepository(conn)
        self.principles = DerivedPrincipleRepository(conn)
        settings = get_section("promotion", config)
        self.min_projects = int(settings["min_projects"])
        self.min_confidence = float(settings["min_confidence"])
        self.boost_per = float(settings["project_boost_per"])
        self.boost_max = float(settings["project_boost_max"])

    def derived_confidence(
        self, patterns: List[PatternDefinition], project_count: int, now: Any = None
    ) -> float:
        """Average attribution confidence of same-key patterns plus project boost."""
        if not patterns:
            return 0.0
        total = 0.0
        for pattern in patterns:
            occurrences = self.occurrences.find_by_pattern_id(pattern.workspace_id, pattern.id)
            stats = compute_pattern_stats(pattern.id, occurrences)
            total += attribution_confidence(pattern, stats, now=now, config=self.config)
        average = total / len(patterns)
        extra = max(0, project_count - self.min_projects)
        boost = min(extra * self.boost_per, self.boost_max)
        return min(1.0, average + boost)

    def check(self, pattern: PatternDefinition, now: Any = None) -> PromotionCheck:
        project_count = self.patterns.count_distinct_projects(
            pattern.workspace_id, pattern.pattern_key)
        if project_count < self.min_projects:
            return PromotionCheck(
                False, project_count, 0.0,
                f"Insufficient project coverage ({project_count}/{self.min_projects})")
        if pattern.severity_max not in ("HIGH", "CRITICAL"):
            return PromotionCheck(False, project_count, 0.0,
                                  f"Severity too low ({pattern.severity_max})")
        if pattern.finding_category != "security":
            return PromotionCheck(
                False, project_count, 0.0,
                "Non-security patterns not eligible for promotion "
                f"(category: {pattern.finding_category})")

        same_key = self.patterns.find_by_key_in_workspace(pattern.workspace_id, pattern.pattern_key)
        confidence = self.derived_confidence(same_key, project_count, now=now)
        if confidence < self.min_confidence:
            return PromotionCheck(
                False, project_count, confidence,
                f"Insufficient confidence ({confidence * 100:.1f}%/{self.min_confidence * 100:.1f}%)")
        return PromotionCheck(
            True, project_count, confidence,
            f"Pattern qualifies: {project_count} projects, {confidence * 100:.1f}% confidence")

    def promote(
        self, pattern: PatternDefinition, force: bool = False, now: Any = None
    ) -> PrinciplePromotionResult:
        """Promote the pattern's key into a DerivedPrinciple (idempotent)."""
        promotion_key = compute_promotion_key(
            pattern.workspace_id, pattern.pattern_key, pattern.carrier_stage,
            pattern.finding_category)
        existing = self.principles.find_by_promotion_key(pattern.workspace_id, promotion_key)
        if existing:
            return PrinciplePromotionResult(False, "Already promoted", existing.id)

        if not force:
            check = self.check(pattern, now=now)
            if not check.qualifies:
                return PrinciplePromotionResult(False, check.reason)

        same_key = self.patterns.find_by_key_in_workspace(pattern.workspace_id, pattern.pattern_key)
        project_count = self.patterns.count_distinct_projects(
            pattern.workspace_id, pattern.pattern_key)
        confidence = self.derived_confidence(same_key, project_count, now=now)
        try:
            principle = self.principles.create(
                workspace_id=pattern.workspace_id,
                principle=f"Avoid: {pattern.pattern_content}",
                rationale=f"Observed in {project_count} projects. {pattern.alternative}",
                origin="derived",
                inject_into=pattern.carrier_stage,
                confidence=confidence,
                touches=pattern.touches,
                technologies=pattern.technologies,
                task_types=pattern.task_types,
                derived_from=[p.id for p in same_key],
                promotion_key=promotion_key,
                now=now,
            )
        except sqlite3.IntegrityError:
            winner = self.principles.find_by_promotion_key(pattern.workspace_id, promotion_key)
            if winner is None:
                raise
            return PrinciplePromotionResult(False, "Already promoted", winner.id)

        logger.info("Promoted pattern %s to principle %s (%d projects, %.1f%% confidence)",
                    pattern.id, principle.id, project_count, confidence * 100)
        return PrinciplePromotionResult(True, "Promoted to workspace-level principle",
                                        principle.id)

    def rollback(
        self, workspace_id: str, promotion_key: str, archived_by: Optional[str] = None,
        now: Any = None,
    ) -> Optional[DerivedPrinciple]:
        """Archive the active principle for a promotion key (reason 'rollback')."""
        archived = self.principles.archive_by_promotion_key(
            workspace_id, promotion_key, reason="rollback", archived_by=archived_by, now=now)
        if archived is None:
            logger.warning("Rollback found no active principle for key %s...", promotion_key[:12])
        else:
            logger.info("Rolled back principle %s", archived.id)
        return archived

    def check_workspace(self, workspace_id: str, now: Any = None) -> List[Dict[str, Any]]:
        """Evaluate every active pattern key seen in >= min_projects projects."""
        rows = self.conn.execute(
            "SELECT DISTINCT pattern_key FROM pattern_definitions "
            "WHERE workspace_id = ? AND status = 'active' ORDER BY pattern_key",
            (workspace_id,),
        ).fetchall()
        results = []
        for row in rows:
            key = row["pattern_key"]
            project_count = self.patterns.count_distinct_projects(workspace_id, key)
            if project_count < self.min_projects:
                continue
            representative = self.patterns.find_by_key_in_workspace(workspace_id, key)[0]
            check = self.check(representative, now=now)
            results.append({
                "pattern_key": key,
                "pattern_id": representative.id,
                "project_count": project_count,
                "result": check.to_dict(),
            })
        return results

    def promote_workspace(self, workspace_id: str, now: Any = None) -> List[PrinciplePromotionResult]:
        """Promote every qualifying pattern key in the workspace."""
        promoted = []
        for entry in self.check_workspace(workspace_id, now=now):
            if not entry["result"]["qualifies"]:
                continue
            pattern = self.patterns.find_by_id(workspace_id, entry["pattern_id"])
            result = self.promote(pattern, now=now)
            if result.promoted:
                promoted.append(result)
        return promoted


def check_workspace_for_promotions(
    conn: sqlite3.Connection, workspace_id: str, now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    return PromotionChecker(conn, config).check_workspace(workspace_id, now=now)
