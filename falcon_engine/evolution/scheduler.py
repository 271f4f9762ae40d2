#!/usr/bin/env python3
# CUI // SP-CTI
"""Daily maintenance for the pattern lifecycle.

Cooperative, externally invoked (cron, CI job or the CLI `maintenance`
command); nothing here runs on a timer. Per project, in order:

    1. confidence decay sweep
    2. provisional alert expiry / promotion
    3. salience detection
    4. kill-switch auto-resume for scopes whose cooldown has elapsed
"""

import logging
import sqlite3
import time
from typing import Any, Dict, Optional

from falcon_engine.evolution.decay_processor import process_confidence_decay
from falcon_engine.evolution.provisional_alerts import ProvisionalAlertProcessor
from falcon_engine.evolution.salience_detector import detect_salience_issues
from falcon_engine.resilience.kill_switch import KillSwitchService
from falcon_engine.storage.workspace_repo import ProjectRepository

logger = logging.getLogger("falcon.evolution.scheduler")


def run_daily_maintenance(
    conn: sqlite3.Connection,
    workspace_id: str,
    project_id: str,
    now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    started = time.perf_counter()

    decay = process_confidence_decay(conn, workspace_id, project_id, now=now, config=config)
    alerts = ProvisionalAlertProcessor(conn, config).process_expiry(
        workspace_id, project_id, now=now)
    salience = detect_salience_issues(conn, workspace_id, project_id, now=now, config=config)

    kill_switch = KillSwitchService(conn, config)
    due = [s for s in kill_switch.find_due_for_resume_evaluation(now=now)
           if s.workspace_id == workspace_id and s.project_id == project_id]
    resumed = sum(1 for _ in due if kill_switch.evaluate_resume(workspace_id, project_id, now=now))

    duration_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        "Maintenance %s/%s in %dms: archived %d, expired %d, promoted %d alerts, "
        "%d salience issues, resumed %d",
        workspace_id, project_id, duration_ms, decay.archived_count, alerts.expired,
        alerts.promoted, salience.issues_found, resumed,
    )
    return {
        "decay": {
            "archived_patterns": decay.archived_count,
            "skipped_permanent": decay.skipped_permanent,
        },
        "alerts": {"expired": alerts.expired, "promoted": alerts.promoted},
        "salience": {
            "new_issues": len(salience.new_issue_ids),
            "existing_issues": len(salience.existing_issue_ids),
        },
        "kill_switch": {"resumed": resumed, "evaluated": len(due)},
        "duration_ms": duration_ms,
    }


def run_workspace_maintenance(
    conn: sqlite3.Connection,
    workspace_id: str,
    now: Any = None,
    config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Dict[str, Any]]:
    """Run maintenance for every active project; one failing project never stops the rest."""
    results: Dict[str, Dict[str, Any]] = {}
    for project in ProjectRepository(conn).list_by_workspace(workspace_id):
        try:
            results[project.id] = run_daily_maintenance(
                conn, workspace_id, project.id, now=now, config=config)
        except Exception as exc:
            logger.exception("Maintenance failed for project %s", project.id)
            results[project.id] = {"error": str(exc)}
    return results
