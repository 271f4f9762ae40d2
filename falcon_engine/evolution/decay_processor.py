#!/usr/bin/env python3
# CUI // SP-CTI
"""Tier 3: confidence decay sweep.

Per project, in ONE transaction: recompute the attribution confidence of
every active non-permanent pattern and archive those below the configured
floor (decay.archive_floor, 0.2). Any failure rolls the whole sweep back.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from falcon_engine.compat.config import get_section
from falcon_engine.compat.db_utils import transaction
from falcon_engine.resilience.errors import TransactionError
from falcon_engine.scoring.confidence import attribution_confidence, compute_pattern_stats
from falcon_engine.storage.occurrence_repo import PatternOccurrenceRepository
from falcon_engine.storage.pattern_repo import PatternDefinitionRepository

logger = logging.getLogger("falcon.evolution.decay_processor")


@dataclass
class DecayResult:
    archived_count: int = 0
    archived_pattern_ids: List[str] = field(default_factory=list)
    skipped_permanent: int = 0
    evaluated: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def process_confidence_decay(
    conn: sqlite3.Connection,
    workspace_id: str,
    project_id: str,
    now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> DecayResult:
    floor = float(get_section("decay", config)["archive_floor"])
    patterns = PatternDefinitionRepository(conn)
    occurrences = PatternOccurrenceRepository(conn)
    result = DecayResult()

    try:
        with transaction(conn):
            for pattern in patterns.find_active(workspace_id, project_id):
                if pattern.permanent:
                    result.skipped_permanent += 1
                    continue
                result.evaluated += 1
                stats = compute_pattern_stats(
                    pattern.id, occurrences.find_by_pattern_id(workspace_id, pattern.id))
                confidence = attribution_confidence(pattern, stats, now=now, config=config)
                if confidence < floor:
                    patterns.archive(workspace_id, pattern.id, reason="confidence_decay", now=now)
                    result.archived_pattern_ids.append(pattern.id)
                    logger.info("Archived pattern %s (confidence %.1f%%)",
                                pattern.id, confidence * 100)
    except sqlite3.Error as exc:
        raise TransactionError(
            f"Decay sweep for project {project_id} failed: {exc}", operation="decay_sweep"
        ) from exc

    result.archived_count = len(result.archived_pattern_ids)
    return result


def process_workspace_decay(
    conn: sqlite3.Connection, workspace_id: str, now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> Dict[str, DecayResult]:
    rows = conn.execute(
        "SELECT id FROM projects WHERE workspace_id = ? AND status = 'active' ORDER BY id",
        (workspace_id,),
    ).fetchall()
    return {
        row["id"]: process_confidence_decay(conn, workspace_id, row["id"], now=now, config=config)
        for row in rows
    }
