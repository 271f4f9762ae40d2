#!/usr/bin/env python3
# CUI // SP-CTI
"""Detect guidance that is injected but repeatedly ignored.

A pattern whose occurrences show was_injected=1 and was_adhered_to=0 at
least `salience.threshold` times within `salience.window_days` raises a
SalienceIssue for human review. Issues are keyed by a location hash of the
pattern's guidance; a pending issue gets its count refreshed and a resolved
issue is left alone.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from falcon_engine.compat.config import get_section
from falcon_engine.compat.db_utils import parse_timestamp, utc_now_iso
from falcon_engine.storage.guidance_repo import SalienceIssueRepository, compute_location_hash
from falcon_engine.storage.occurrence_repo import PatternOccurrenceRepository
from falcon_engine.storage.pattern_repo import PatternDefinitionRepository

logger = logging.getLogger("falcon.evolution.salience_detector")


@dataclass
class SalienceResult:
    issues_found: int = 0
    new_issue_ids: List[str] = field(default_factory=list)
    existing_issue_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def detect_salience_issues(
    conn: sqlite3.Connection,
    workspace_id: str,
    project_id: str,
    now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> SalienceResult:
    settings = get_section("salience", config)
    threshold = int(settings["threshold"])
    window_days = int(settings["window_days"])
    window_start = parse_timestamp(utc_now_iso(now)) - timedelta(days=window_days)

    patterns = PatternDefinitionRepository(conn)
    occurrences = PatternOccurrenceRepository(conn)
    salience = SalienceIssueRepository(conn)
    result = SalienceResult()

    for pattern in patterns.find_active(workspace_id, project_id):
        violations = [
            o for o in occurrences.find_by_pattern_id(workspace_id, pattern.id)
            if o.was_injected and o.was_adhered_to is False
            and parse_timestamp(o.created_at) >= window_start
        ]
        if len(violations) < threshold:
            continue

        location = pattern.pattern_content[:100]
        location_hash = compute_location_hash(pattern.carrier_stage, location,
                                              pattern.pattern_content)
        existing = salience.find_by_location_hash(workspace_id, project_id, location_hash)
        if existing is None:
            issue = salience.upsert(
                workspace_id, project_id,
                guidance_stage=pattern.carrier_stage,
                guidance_location=location,
                guidance_excerpt=pattern.pattern_content,
                reference_id=violations[0].id,
                occurrence_count=len(violations),
                window_days=window_days,
                now=now,
            )
            result.new_issue_ids.append(issue.id)
            logger.info("Salience issue %s for pattern %s (%d violations in %d days)",
                        issue.id, pattern.id, len(violations), window_days)
        elif existing.status == "pending":
            salience.update_count(workspace_id, existing.id, len(violations), now=now)
            result.existing_issue_ids.append(existing.id)

    result.issues_found = len(result.new_issue_ids) + len(result.existing_issue_ids)
    return result
