#!/usr/bin/env python3
# CUI // SP-CTI
"""Adherence tracking after a PR review.

For each pattern in the issue's most recent injection, the occurrences for
that (pattern, issue) are marked was_injected. was_adhered_to is True unless
a confirmed finding in the pattern's category shares a keyword (longer than
three characters) with the pattern text.

The same comparison feeds the kill switch: record_recurrence sets
recurrence_observed on the issue's attribution outcomes, which is what the
observed-improvement rate is computed from.
"""

import logging
import re
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from falcon_engine.resilience.kill_switch import KillSwitchService
from falcon_engine.schemas.core import PatternDefinition
from falcon_engine.schemas.models import ConfirmedFinding, category_for_scout
from falcon_engine.storage.injection_log_repo import InjectionLogRepository
from falcon_engine.storage.occurrence_repo import PatternOccurrenceRepository
from falcon_engine.storage.pattern_repo import PatternDefinitionRepository

logger = logging.getLogger("falcon.workflow.adherence_updater")

_NON_WORD = re.compile(r"[^a-z0-9\s]")


def pattern_keywords(text: str) -> List[str]:
    return [w for w in _NON_WORD.sub(" ", text.lower()).split() if len(w) > 3]


def has_related_finding(pattern: PatternDefinition, findings: Iterable[ConfirmedFinding]) -> bool:
    keywords = pattern_keywords(pattern.pattern_content)
    for finding in findings:
        if category_for_scout(finding.scout_type) != pattern.finding_category:
            continue
        text = f"{finding.title} {finding.description}".lower()
        if any(kw in text for kw in keywords):
            return True
    return False


def update_adherence(
    conn: sqlite3.Connection,
    workspace_id: str,
    project_id: str,
    issue_id: str,
    findings: List[ConfirmedFinding],
) -> int:
    """Returns the number of occurrences updated."""
    log = InjectionLogRepository(conn).find_latest_for_issue(workspace_id, project_id, issue_id)
    if log is None:
        return 0

    patterns = PatternDefinitionRepository(conn)
    occurrences = PatternOccurrenceRepository(conn)
    updated = 0
    for pattern_id in log.injected_patterns:
        pattern = patterns.find_by_id(workspace_id, pattern_id)
        if pattern is None:
            continue
        adhered = not has_related_finding(pattern, findings)
        for occ in occurrences.find_by_pattern_and_issue(workspace_id, pattern_id, issue_id):
            occurrences.update(workspace_id, occ.id,
                               {"was_injected": True, "was_adhered_to": adhered})
            updated += 1
    logger.debug("Updated adherence on %d occurrences for %s", updated, issue_id)
    return updated


def record_recurrence(
    conn: sqlite3.Connection,
    workspace_id: str,
    project_id: str,
    issue_id: str,
    findings: List[ConfirmedFinding],
    attributed_pattern_ids: Iterable[str],
    now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> Optional[bool]:
    """Close the injection feedback loop for one reviewed issue.

    An injected pattern recurred when a finding was attributed back to it, or
    when a finding in its category shares one of its keywords. The verdict is
    written to the issue's attribution outcomes and the scope's health is
    re-evaluated. Returns None when the issue had no pattern injection.
    """
    log = InjectionLogRepository(conn).find_latest_for_issue(workspace_id, project_id, issue_id)
    if log is None or not log.injected_patterns:
        return None

    injected = set(log.injected_patterns)
    recurred = bool(injected & set(attributed_pattern_ids))
    if not recurred:
        patterns = PatternDefinitionRepository(conn)
        for pattern_id in log.injected_patterns:
            pattern = patterns.find_by_id(workspace_id, pattern_id)
            if pattern is not None and has_related_finding(pattern, findings):
                recurred = True
                break

    kill_switch = KillSwitchService(conn, config)
    kill_switch.update_recurrence(workspace_id, issue_id, recurred, project_id=project_id,
                                  now=now)
    kill_switch.evaluate_health(workspace_id, project_id, now=now)
    logger.info("Issue %s: injected guidance %s", issue_id,
                "did not prevent a recurrence" if recurred else "held")
    return recurred
