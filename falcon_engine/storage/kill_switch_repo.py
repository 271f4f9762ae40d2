#!/usr/bin/env python3
# CUI // SP-CTI
"""Kill-switch persistence: per-scope state rows and the attribution outcome log.

Health metrics are computed from attribution_outcomes over a rolling window
ending at `now`:

    attribution_precision = verbatim / total           (1.0 when empty)
    inferred_ratio        = inferred / total           (0.0 when empty)
    observed_improvement  = injections without recurrence
                            / injections with a recurrence verdict (1.0 when none)
"""

import sqlite3
from datetime import timedelta
from typing import Any, List, Optional

from falcon_engine.compat.db_utils import bool_to_int, int_to_bool, parse_timestamp, utc_now_iso
from falcon_engine.schemas.core import AttributionOutcome, HealthMetrics, KillSwitchStatus
from falcon_engine.schemas.models import KillSwitchState, QuoteType
from falcon_engine.storage.base import BaseRepository


def _row_to_status(row: sqlite3.Row) -> KillSwitchStatus:
    return KillSwitchStatus(
        id=row["id"],
        workspace_id=row["workspace_id"],
        project_id=row["project_id"],
        state=row["state"],
        reason=row["reason"],
        entered_at=row["entered_at"],
        auto_resume_at=row["auto_resume_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_outcome(row: sqlite3.Row) -> AttributionOutcome:
    return AttributionOutcome(
        id=row["id"],
        workspace_id=row["workspace_id"],
        project_id=row["project_id"],
        issue_key=row["issue_key"],
        carrier_quote_type=row["carrier_quote_type"],
        pattern_created=bool(row["pattern_created"]),
        injection_occurred=bool(row["injection_occurred"]),
        recurrence_observed=int_to_bool(row["recurrence_observed"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class KillSwitchRepository(BaseRepository):
    table = "kill_switch_status"

    # -- state rows --------------------------------------------------------

    def find_status(self, workspace_id: str, project_id: str) -> Optional[KillSwitchStatus]:
        row = self._fetch_one(
            "SELECT * FROM kill_switch_status WHERE workspace_id = ? AND project_id = ?",
            (workspace_id, project_id),
        )
        return _row_to_status(row) if row else None

    def get_status(self, workspace_id: str, project_id: str, now: Any = None) -> KillSwitchStatus:
        """Current status, creating the default ACTIVE row on first access."""
        existing = self.find_status(workspace_id, project_id)
        if existing:
            return existing
        ts = self.now(now)
        status = KillSwitchStatus(
            id=self.new_id(), workspace_id=workspace_id, project_id=project_id,
            state="active", created_at=ts, updated_at=ts,
        )
        self._execute(
            "INSERT OR IGNORE INTO kill_switch_status "
            "(id, workspace_id, project_id, state, reason, entered_at, auto_resume_at, "
            "created_at, updated_at) VALUES (?, ?, ?, 'active', NULL, NULL, NULL, ?, ?)",
            (status.id, workspace_id, project_id, ts, ts),
        )
        return self.find_status(workspace_id, project_id) or status

    def set_status(
        self,
        workspace_id: str,
        project_id: str,
        state: str,
        reason: Optional[str],
        auto_resume_at: Optional[str] = None,
        now: Any = None,
    ) -> KillSwitchStatus:
        state = self._check_enum(KillSwitchState, state, "state")
        current = self.get_status(workspace_id, project_id, now=now)
        ts = self.now(now)
        entered_at = current.entered_at if current.state == state and current.entered_at else ts
        self._execute(
            "UPDATE kill_switch_status SET state = ?, reason = ?, entered_at = ?, "
            "auto_resume_at = ?, updated_at = ? WHERE workspace_id = ? AND project_id = ?",
            (state, reason, entered_at, auto_resume_at if state != "active" else None, ts,
             workspace_id, project_id),
        )
        return self.find_status(workspace_id, project_id)

    def find_due_for_resume(self, now: Any = None) -> List[KillSwitchStatus]:
        rows = self._fetch_all(
            "SELECT * FROM kill_switch_status WHERE state != 'active' "
            "AND auto_resume_at IS NOT NULL AND auto_resume_at <= ? "
            "ORDER BY auto_resume_at, id",
            (self.now(now),),
        )
        return [_row_to_status(r) for r in rows]

    def find_by_state(self, workspace_id: str, state: str) -> List[KillSwitchStatus]:
        rows = self._fetch_all(
            "SELECT * FROM kill_switch_status WHERE workspace_id = ? AND state = ? ORDER BY project_id",
            (workspace_id, self._check_enum(KillSwitchState, state, "state")),
        )
        return [_row_to_status(r) for r in rows]

    # -- outcome log -------------------------------------------------------

    def record_outcome(
        self,
        workspace_id: str,
        project_id: str,
        issue_key: str,
        carrier_quote_type: str,
        pattern_created: bool,
        injection_occurred: bool = False,
        recurrence_observed: Optional[bool] = None,
        now: Any = None,
    ) -> AttributionOutcome:
        ts = self.now(now)
        outcome = AttributionOutcome(
            id=self.new_id(),
            workspace_id=workspace_id,
            project_id=project_id,
            issue_key=self._require(issue_key, "issue_key"),
            carrier_quote_type=self._check_enum(QuoteType, carrier_quote_type, "carrier_quote_type"),
            pattern_created=bool(pattern_created),
            injection_occurred=bool(injection_occurred),
            recurrence_observed=recurrence_observed,
            created_at=ts,
            updated_at=ts,
        )
        self._execute(
            "INSERT INTO attribution_outcomes (id, workspace_id, project_id, issue_key, "
            "carrier_quote_type, pattern_created, injection_occurred, recurrence_observed, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (outcome.id, workspace_id, project_id, issue_key, outcome.carrier_quote_type,
             1 if pattern_created else 0, 1 if injection_occurred else 0,
             bool_to_int(recurrence_observed), ts, ts),
        )
        return outcome

    def update_recurrence(
        self,
        workspace_id: str,
        issue_key: str,
        recurrence_observed: bool,
        project_id: Optional[str] = None,
        now: Any = None,
    ) -> bool:
        sql = ("UPDATE attribution_outcomes SET recurrence_observed = ?, updated_at = ? "
               "WHERE workspace_id = ? AND issue_key = ?")
        params: List[Any] = [bool_to_int(recurrence_observed), self.now(now), workspace_id,
                             issue_key]
        if project_id is not None:
            sql += " AND project_id = ?"
            params.append(project_id)
        return self._execute(sql, tuple(params)) > 0

    def find_outcomes(self, workspace_id: str, project_id: str) -> List[AttributionOutcome]:
        rows = self._fetch_all(
            "SELECT * FROM attribution_outcomes WHERE workspace_id = ? AND project_id = ? "
            "ORDER BY created_at, id",
            (workspace_id, project_id),
        )
        return [_row_to_outcome(r) for r in rows]

    def compute_health_metrics(
        self, workspace_id: str, project_id: str, window_days: int = 30, now: Any = None
    ) -> HealthMetrics:
        end = parse_timestamp(self.now(now))
        window_end = utc_now_iso(end)
        window_start = utc_now_iso(end - timedelta(days=window_days))
        row = self._fetch_one(
            """SELECT
                 COUNT(*) AS total,
                 SUM(CASE WHEN carrier_quote_type = 'verbatim' THEN 1 ELSE 0 END) AS verbatim,
                 SUM(CASE WHEN carrier_quote_type = 'paraphrase' THEN 1 ELSE 0 END) AS paraphrase,
                 SUM(CASE WHEN carrier_quote_type = 'inferred' THEN 1 ELSE 0 END) AS inferred,
                 SUM(CASE WHEN injection_occurred = 1 AND recurrence_observed = 0
                          THEN 1 ELSE 0 END) AS without_recurrence,
                 SUM(CASE WHEN injection_occurred = 1 AND recurrence_observed = 1
                          THEN 1 ELSE 0 END) AS with_recurrence
               FROM attribution_outcomes
               WHERE workspace_id = ? AND project_id = ? AND created_at >= ? AND created_at <= ?""",
            (workspace_id, project_id, window_start, window_end),
        )
        total = int(row["total"] or 0)
        verbatim = int(row["verbatim"] or 0)
        inferred = int(row["inferred"] or 0)
        without = int(row["without_recurrence"] or 0)
        with_rec = int(row["with_recurrence"] or 0)
        injections = without + with_rec
        return HealthMetrics(
            workspace_id=workspace_id,
            project_id=project_id,
            total_attributions=total,
            verbatim_attributions=verbatim,
            paraphrase_attributions=int(row["paraphrase"] or 0),
            inferred_attributions=inferred,
            injections_without_recurrence=without,
            injections_with_recurrence=with_rec,
            attribution_precision_score=verbatim / total if total else 1.0,
            inferred_ratio=inferred / total if total else 0.0,
            observed_improvement_rate=without / injections if injections else 1.0,
            window_start_at=window_start,
            window_end_at=window_end,
        )
