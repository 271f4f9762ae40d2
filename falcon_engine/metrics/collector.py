#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon Metrics: read-only snapshot of one workspace/project scope.

Aggregates straight from the tables; nothing is cached or written.

    patterns       counts by status and by primary carrier quote type
    occurrences    total and active
    injections     logs per target, average warnings surfaced per injection
    principles     active baseline / derived (workspace-wide)
    health         kill-switch rolling-window metrics plus current state

Usage:
    from falcon_engine.metrics.collector import collect_metrics

    snapshot = collect_metrics(conn, workspace_id, project_id)
    print(snapshot.to_dict())
"""

import json
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from falcon_engine.resilience.kill_switch import KillSwitchService

logger = logging.getLogger("falcon.metrics.collector")


@dataclass
class MetricsSnapshot:
    workspace_id: str
    project_id: str
    patterns: Dict[str, Any] = field(default_factory=dict)
    occurrences: Dict[str, int] = field(default_factory=dict)
    injections: Dict[str, Any] = field(default_factory=dict)
    principles: Dict[str, int] = field(default_factory=dict)
    health: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def _grouped(conn, sql, params):
    return {row[0]: row[1] for row in conn.execute(sql, params).fetchall()}


def _collect_pattern_stats(conn, workspace_id, project_id):
    """Pattern counts by lifecycle status and by carrier quote type (active only)."""
    scope = (workspace_id, project_id)
    by_status = {"active": 0, "archived": 0, "superseded": 0}
    by_status.update(_grouped(
        conn,
        "SELECT status, COUNT(*) FROM pattern_definitions "
        "WHERE workspace_id = ? AND project_id = ? GROUP BY status", scope))
    by_quote = {"verbatim": 0, "paraphrase": 0, "inferred": 0}
    by_quote.update(_grouped(
        conn,
        "SELECT primary_carrier_quote_type, COUNT(*) FROM pattern_definitions "
        "WHERE workspace_id = ? AND project_id = ? AND status = 'active' "
        "GROUP BY primary_carrier_quote_type", scope))
    return {"total": sum(by_status.values()), "by_status": by_status, "by_quote_type": by_quote}


def _collect_occurrence_stats(conn, workspace_id, project_id):
    row = conn.execute(
        "SELECT COUNT(*), COALESCE(SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END), 0) "
        "FROM pattern_occurrences WHERE workspace_id = ? AND project_id = ?",
        (workspace_id, project_id)).fetchone()
    return {"total": row[0], "active": row[1]}


def _collect_injection_stats(conn, workspace_id, project_id):
    """Injection logs per target and the mean number of warnings each one carried."""
    rows = conn.execute(
        "SELECT target, injected_patterns, injected_principles, injected_alerts "
        "FROM injection_logs WHERE workspace_id = ? AND project_id = ?",
        (workspace_id, project_id)).fetchall()
    by_target = {"context-pack": 0, "spec": 0}
    warnings = 0
    for r in rows:
        by_target[r["target"]] = by_target.get(r["target"], 0) + 1
        warnings += sum(len(json.loads(r[col] or "[]"))
                        for col in ("injected_patterns", "injected_principles", "injected_alerts"))
    total = len(rows)
    return {
        "total": total,
        "by_target": by_target,
        "avg_warnings_per_injection": round(warnings / total, 2) if total else 0.0,
    }


def _collect_principle_stats(conn, workspace_id):
    counts = {"baseline": 0, "derived": 0}
    counts.update(_grouped(
        conn,
        "SELECT origin, COUNT(*) FROM derived_principles "
        "WHERE workspace_id = ? AND status = 'active' GROUP BY origin", (workspace_id,)))
    return counts


def collect_metrics(
    conn: sqlite3.Connection,
    workspace_id: str,
    project_id: str,
    now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> MetricsSnapshot:
    kill_switch = KillSwitchService(conn, config)
    status = kill_switch.repo.find_status(workspace_id, project_id)
    health = kill_switch.get_health_metrics(workspace_id, project_id, now=now).to_dict()
    health["kill_switch_state"] = status.state if status else "active"
    health["kill_switch_reason"] = status.reason if status else None

    snapshot = MetricsSnapshot(
        workspace_id=workspace_id,
        project_id=project_id,
        patterns=_collect_pattern_stats(conn, workspace_id, project_id),
        occurrences=_collect_occurrence_stats(conn, workspace_id, project_id),
        injections=_collect_injection_stats(conn, workspace_id, project_id),
        principles=_collect_principle_stats(conn, workspace_id),
        health=health,
    )
    logger.debug("Collected metrics for %s/%s: %d patterns, %d injections",
                 workspace_id, project_id, snapshot.patterns["total"],
                 snapshot.injections["total"])
    return snapshot
