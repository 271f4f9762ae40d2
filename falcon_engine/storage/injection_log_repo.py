#!/usr/bin/env python3
# CUI // SP-CTI
"""InjectionLog repository: immutable audit of what each selection surfaced.

The most recent log for an issue is the sole source of truth consulted by
the tagging-miss check and the adherence updater.
"""

import sqlite3
from typing import Any, Dict, List, Optional

from falcon_engine.compat.db_utils import from_json, to_json
from falcon_engine.schemas.core import InjectionLog
from falcon_engine.schemas.models import CarrierStage
from falcon_engine.storage.base import BaseRepository


def _row_to_log(row: sqlite3.Row) -> InjectionLog:
    return InjectionLog(
        id=row["id"],
        workspace_id=row["workspace_id"],
        project_id=row["project_id"],
        issue_id=row["issue_id"],
        target=row["target"],
        task_profile=from_json(row["task_profile"], {}),
        injected_patterns=from_json(row["injected_patterns"], []),
        injected_principles=from_json(row["injected_principles"], []),
        injected_alerts=from_json(row["injected_alerts"], []),
        injected_at=row["injected_at"],
    )


class InjectionLogRepository(BaseRepository):
    table = "injection_logs"

    def create(
        self,
        workspace_id: str,
        project_id: str,
        issue_id: str,
        target: str,
        task_profile: Dict[str, Any],
        injected_patterns: List[str],
        injected_principles: List[str],
        injected_alerts: List[str],
        now: Any = None,
    ) -> InjectionLog:
        log = InjectionLog(
            id=self.new_id(),
            workspace_id=workspace_id,
            project_id=project_id,
            issue_id=self._require(issue_id, "issue_id"),
            target=self._check_enum(CarrierStage, target, "target"),
            task_profile=dict(task_profile),
            injected_patterns=list(injected_patterns),
            injected_principles=list(injected_principles),
            injected_alerts=list(injected_alerts),
            injected_at=self.now(now),
        )
        self._execute(
            "INSERT INTO injection_logs (id, workspace_id, project_id, issue_id, target, "
            "injected_patterns, injected_principles, injected_alerts, task_profile, injected_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (log.id, workspace_id, project_id, issue_id, log.target,
             to_json(log.injected_patterns), to_json(log.injected_principles),
             to_json(log.injected_alerts), to_json(log.task_profile), log.injected_at),
        )
        return log

    def find_by_id(self, workspace_id: str, log_id: str) -> Optional[InjectionLog]:
        row = self._fetch_one(
            "SELECT * FROM injection_logs WHERE id = ? AND workspace_id = ?",
            (log_id, workspace_id),
        )
        return _row_to_log(row) if row else None

    def find_by_issue(self, workspace_id: str, project_id: str, issue_id: str) -> List[InjectionLog]:
        rows = self._fetch_all(
            "SELECT * FROM injection_logs WHERE workspace_id = ? AND project_id = ? "
            "AND issue_id = ? ORDER BY injected_at DESC, rowid DESC",
            (workspace_id, project_id, issue_id),
        )
        return [_row_to_log(r) for r in rows]

    def find_latest_for_issue(
        self, workspace_id: str, project_id: str, issue_id: str
    ) -> Optional[InjectionLog]:
        logs = self.find_by_issue(workspace_id, project_id, issue_id)
        return logs[0] if logs else None
