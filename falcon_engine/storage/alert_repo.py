#!/usr/bin/env python3
# CUI // SP-CTI
"""ProvisionalAlert repository: time-boxed, low-confidence security warnings."""

import sqlite3
from datetime import timedelta
from typing import Any, List, Optional

from falcon_engine.compat.db_utils import from_json, parse_timestamp, to_json, utc_now_iso
from falcon_engine.schemas.core import ProvisionalAlert
from falcon_engine.schemas.models import InjectTarget, Severity, validate_touches
from falcon_engine.storage.base import BaseRepository


def _row_to_alert(row: sqlite3.Row) -> ProvisionalAlert:
    return ProvisionalAlert(
        id=row["id"],
        workspace_id=row["workspace_id"],
        project_id=row["project_id"],
        finding_id=row["finding_id"],
        issue_id=row["issue_id"],
        message=row["message"],
        severity=row["severity"],
        touches=from_json(row["touches"], []),
        inject_into=row["inject_into"],
        expires_at=row["expires_at"],
        status=row["status"],
        promoted_to_pattern_id=row["promoted_to_pattern_id"],
        created_at=row["created_at"],
    )


class ProvisionalAlertRepository(BaseRepository):
    table = "provisional_alerts"

    def create(
        self,
        workspace_id: str,
        project_id: str,
        finding_id: str,
        issue_id: str,
        message: str,
        inject_into: str,
        ttl_days: int,
        severity: str = "HIGH",
        touches: Optional[List[str]] = None,
        now: Any = None,
    ) -> ProvisionalAlert:
        self._require(message, "message")
        created = parse_timestamp(self.now(now))
        alert = ProvisionalAlert(
            id=self.new_id(),
            workspace_id=workspace_id,
            project_id=project_id,
            finding_id=finding_id,
            issue_id=issue_id,
            message=message,
            severity=self._check_enum(Severity, severity, "severity"),
            touches=validate_touches(touches),
            inject_into=self._check_enum(InjectTarget, inject_into, "inject_into"),
            expires_at=utc_now_iso(created + timedelta(days=ttl_days)),
            status="active",
            created_at=utc_now_iso(created),
        )
        self._execute(
            """INSERT INTO provisional_alerts
               (id, workspace_id, project_id, finding_id, issue_id, message, severity, touches,
                inject_into, expires_at, status, promoted_to_pattern_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (alert.id, workspace_id, project_id, finding_id, issue_id, message, alert.severity,
             to_json(alert.touches), alert.inject_into, alert.expires_at, "active", None,
             alert.created_at),
        )
        return alert

    def find_by_id(self, workspace_id: str, alert_id: str) -> Optional[ProvisionalAlert]:
        row = self._fetch_one(
            "SELECT * FROM provisional_alerts WHERE id = ? AND workspace_id = ?",
            (alert_id, workspace_id),
        )
        return _row_to_alert(row) if row else None

    def find_active(
        self,
        workspace_id: str,
        project_id: str,
        inject_into: Optional[str] = None,
        touches: Optional[List[str]] = None,
        now: Any = None,
    ) -> List[ProvisionalAlert]:
        """Unexpired active alerts, optionally filtered by target and touch overlap."""
        sql = ("SELECT * FROM provisional_alerts WHERE workspace_id = ? AND project_id = ? "
               "AND status = 'active' AND expires_at > ?")
        params: List[Any] = [workspace_id, project_id, self.now(now)]
        if inject_into:
            sql += " AND inject_into IN (?, 'both')"
            params.append(inject_into)
        sql += " ORDER BY created_at, id"
        alerts = [_row_to_alert(r) for r in self._fetch_all(sql, params)]
        if touches:
            wanted = set(validate_touches(touches))
            alerts = [a for a in alerts if not a.touches or wanted.intersection(a.touches)]
        return alerts

    def find_active_by_message(
        self, workspace_id: str, project_id: str, message: str, now: Any = None
    ) -> Optional[ProvisionalAlert]:
        row = self._fetch_one(
            "SELECT * FROM provisional_alerts WHERE workspace_id = ? AND project_id = ? "
            "AND message = ? AND status = 'active' AND expires_at > ? "
            "ORDER BY created_at LIMIT 1",
            (workspace_id, project_id, message, self.now(now)),
        )
        return _row_to_alert(row) if row else None

    def find_expired(self, workspace_id: str, project_id: str, now: Any = None) -> List[ProvisionalAlert]:
        """Alerts still marked active whose expiry has passed."""
        rows = self._fetch_all(
            "SELECT * FROM provisional_alerts WHERE workspace_id = ? AND project_id = ? "
            "AND status = 'active' AND expires_at <= ? ORDER BY expires_at, id",
            (workspace_id, project_id, self.now(now)),
        )
        return [_row_to_alert(r) for r in rows]

    def find_by_finding_id(self, workspace_id: str, finding_id: str) -> List[ProvisionalAlert]:
        rows = self._fetch_all(
            "SELECT * FROM provisional_alerts WHERE workspace_id = ? AND finding_id = ? "
            "ORDER BY created_at, id",
            (workspace_id, finding_id),
        )
        return [_row_to_alert(r) for r in rows]

    def find_by_project(
        self, workspace_id: str, project_id: str, status: Optional[str] = None
    ) -> List[ProvisionalAlert]:
        sql = "SELECT * FROM provisional_alerts WHERE workspace_id = ? AND project_id = ?"
        params: List[Any] = [workspace_id, project_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at, id"
        return [_row_to_alert(r) for r in self._fetch_all(sql, params)]

    def expire(self, workspace_id: str, alert_id: str) -> bool:
        changed = self._execute(
            "UPDATE provisional_alerts SET status = 'expired' "
            "WHERE id = ? AND workspace_id = ? AND status = 'active'",
            (alert_id, workspace_id),
        )
        return changed > 0

    def promote(self, workspace_id: str, alert_id: str, pattern_id: str) -> bool:
        changed = self._execute(
            "UPDATE provisional_alerts SET status = 'promoted', promoted_to_pattern_id = ? "
            "WHERE id = ? AND workspace_id = ? AND status = 'active'",
            (pattern_id, alert_id, workspace_id),
        )
        return changed > 0
