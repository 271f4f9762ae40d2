#!/usr/bin/env python3
# CUI // SP-CTI
"""PatternOccurrence repository: append-only evidence log.

Content fields (evidence, fingerprints, excerpt hashes, finding identity)
are written once. update() accepts only pattern reassignment (alert
promotion relinking), injection/adherence tracking and the active/inactive
lifecycle. Occurrences are never deleted except by cascading project deletion.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from falcon_engine.compat.db_utils import bool_to_int, from_json, int_to_bool, to_json
from falcon_engine.resilience.errors import ValidationError
from falcon_engine.schemas.core import PatternOccurrence
from falcon_engine.schemas.models import InactiveReason, Severity, parse_fingerprint
from falcon_engine.storage.base import BaseRepository

logger = logging.getLogger("falcon.storage.occurrence_repo")

UPDATABLE_FIELDS = frozenset({
    "pattern_id", "was_injected", "was_adhered_to", "status", "inactive_reason",
})

# json_extract paths identifying one document per fingerprint kind.
_FINGERPRINT_KEYS = {
    "git": ("repo", "path"),
    "linear": ("docId",),
    "web": ("url",),
    "external": ("id",),
}


def _row_to_occurrence(row: sqlite3.Row) -> PatternOccurrence:
    return PatternOccurrence(
        id=row["id"],
        workspace_id=row["workspace_id"],
        project_id=row["project_id"],
        pattern_id=row["pattern_id"],
        finding_id=row["finding_id"],
        issue_id=row["issue_id"],
        pr_number=row["pr_number"],
        severity=row["severity"],
        evidence=from_json(row["evidence"], {}),
        carrier_fingerprint=from_json(row["carrier_fingerprint"], {}),
        origin_fingerprint=from_json(row["origin_fingerprint"]),
        provenance_chain=from_json(row["provenance_chain"], []),
        carrier_excerpt_hash=row["carrier_excerpt_hash"],
        origin_excerpt_hash=row["origin_excerpt_hash"],
        was_injected=bool(row["was_injected"]),
        was_adhered_to=int_to_bool(row["was_adhered_to"]),
        status=row["status"],
        inactive_reason=row["inactive_reason"],
        provisional_alert_id=row["provisional_alert_id"],
        created_at=row["created_at"],
    )


class PatternOccurrenceRepository(BaseRepository):
    table = "pattern_occurrences"

    def create(
        self,
        workspace_id: str,
        project_id: str,
        finding_id: str,
        issue_id: str,
        pr_number: int,
        severity: str,
        evidence: Dict[str, Any],
        carrier_fingerprint: Dict[str, Any],
        carrier_excerpt_hash: str,
        pattern_id: Optional[str] = None,
        origin_fingerprint: Optional[Dict[str, Any]] = None,
        provenance_chain: Optional[List[Dict[str, Any]]] = None,
        origin_excerpt_hash: Optional[str] = None,
        provisional_alert_id: Optional[str] = None,
        was_injected: bool = False,
        was_adhered_to: Optional[bool] = None,
        now: Any = None,
    ) -> PatternOccurrence:
        if pattern_id is None and provisional_alert_id is None:
            raise ValidationError(
                "An occurrence must reference a pattern or a provisional alert",
                field="pattern_id",
            )
        self._require(finding_id, "finding_id")
        self._require(issue_id, "issue_id")
        if int(pr_number) < 1:
            raise ValidationError("pr_number must be positive", field="pr_number")
        if len(carrier_excerpt_hash or "") != 64:
            raise ValidationError("carrier_excerpt_hash must be a sha256 hex digest",
                                  field="carrier_excerpt_hash")
        severity = self._check_enum(Severity, severity, "severity")
        carrier = parse_fingerprint(carrier_fingerprint)
        origin = parse_fingerprint(origin_fingerprint) if origin_fingerprint else None
        chain = [parse_fingerprint(fp) for fp in (provenance_chain or [])]

        occurrence = PatternOccurrence(
            id=self.new_id(),
            workspace_id=workspace_id,
            project_id=project_id,
            pattern_id=pattern_id,
            finding_id=finding_id,
            issue_id=issue_id,
            pr_number=int(pr_number),
            severity=severity,
            evidence=dict(evidence),
            carrier_fingerprint=carrier,
            origin_fingerprint=origin,
            provenance_chain=chain,
            carrier_excerpt_hash=carrier_excerpt_hash,
            origin_excerpt_hash=origin_excerpt_hash,
            was_injected=bool(was_injected),
            was_adhered_to=was_adhered_to,
            status="active",
            provisional_alert_id=provisional_alert_id,
            created_at=self.now(now),
        )
        self._execute(
            """INSERT INTO pattern_occurrences
               (id, workspace_id, project_id, pattern_id, finding_id, issue_id, pr_number,
                severity, evidence, carrier_fingerprint, origin_fingerprint, provenance_chain,
                carrier_excerpt_hash, origin_excerpt_hash, was_injected, was_adhered_to,
                status, inactive_reason, provisional_alert_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (occurrence.id, workspace_id, project_id, pattern_id, finding_id, issue_id,
             occurrence.pr_number, severity, to_json(occurrence.evidence), to_json(carrier),
             to_json(origin), to_json(chain), carrier_excerpt_hash, origin_excerpt_hash,
             1 if was_injected else 0, bool_to_int(was_adhered_to), "active", None,
             provisional_alert_id, occurrence.created_at),
        )
        return occurrence

    # -- lookups -----------------------------------------------------------

    def find_by_id(self, workspace_id: str, occurrence_id: str) -> Optional[PatternOccurrence]:
        row = self._fetch_one(
            "SELECT * FROM pattern_occurrences WHERE id = ? AND workspace_id = ?",
            (occurrence_id, workspace_id),
        )
        return _row_to_occurrence(row) if row else None

    def find_by_pattern_id(
        self, workspace_id: str, pattern_id: str, status: Optional[str] = None
    ) -> List[PatternOccurrence]:
        sql = "SELECT * FROM pattern_occurrences WHERE workspace_id = ? AND pattern_id = ?"
        params: List[Any] = [workspace_id, pattern_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at, id"
        return [_row_to_occurrence(r) for r in self._fetch_all(sql, params)]

    def find_by_provisional_alert_id(
        self, workspace_id: str, alert_id: str
    ) -> List[PatternOccurrence]:
        rows = self._fetch_all(
            "SELECT * FROM pattern_occurrences WHERE workspace_id = ? AND provisional_alert_id = ? "
            "ORDER BY created_at, id",
            (workspace_id, alert_id),
        )
        return [_row_to_occurrence(r) for r in rows]

    def count_by_provisional_alert_id(self, workspace_id: str, alert_id: str) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS n FROM pattern_occurrences "
            "WHERE workspace_id = ? AND provisional_alert_id = ? AND status = 'active'",
            (workspace_id, alert_id),
        )
        return int(row["n"]) if row else 0

    def find_by_pattern_and_issue(
        self, workspace_id: str, pattern_id: str, issue_id: str
    ) -> List[PatternOccurrence]:
        rows = self._fetch_all(
            "SELECT * FROM pattern_occurrences "
            "WHERE workspace_id = ? AND pattern_id = ? AND issue_id = ? ORDER BY created_at, id",
            (workspace_id, pattern_id, issue_id),
        )
        return [_row_to_occurrence(r) for r in rows]

    def find_active(self, workspace_id: str, project_id: str) -> List[PatternOccurrence]:
        rows = self._fetch_all(
            "SELECT * FROM pattern_occurrences "
            "WHERE workspace_id = ? AND project_id = ? AND status = 'active' "
            "ORDER BY created_at, id",
            (workspace_id, project_id),
        )
        return [_row_to_occurrence(r) for r in rows]

    def find_by_issue_id(
        self, workspace_id: str, project_id: str, issue_id: str
    ) -> List[PatternOccurrence]:
        rows = self._fetch_all(
            "SELECT * FROM pattern_occurrences "
            "WHERE workspace_id = ? AND project_id = ? AND issue_id = ? ORDER BY created_at, id",
            (workspace_id, project_id, issue_id),
        )
        return [_row_to_occurrence(r) for r in rows]

    def find_active_by_document(
        self, workspace_id: str, kind: str, identity: Dict[str, Any]
    ) -> List[PatternOccurrence]:
        """Active occurrences whose carrier or origin fingerprint names this document.

        ``identity`` holds the identifying keys for ``kind`` in fingerprint
        (camelCase) form, e.g. {"repo": ..., "path": ...} for git.
        """
        if kind not in _FINGERPRINT_KEYS:
            raise ValidationError(f"Unknown fingerprint kind '{kind}'", field="kind")
        keys = _FINGERPRINT_KEYS[kind]
        missing = [k for k in keys if not identity.get(k)]
        if missing:
            raise ValidationError(
                f"Fingerprint of kind '{kind}' needs {', '.join(missing)}", field=missing[0])
        clauses = []
        params: List[Any] = [workspace_id]
        for column in ("carrier_fingerprint", "origin_fingerprint"):
            parts = [f"json_extract({column}, '$.kind') = ?"]
            params.append(kind)
            for key in keys:
                parts.append(f"json_extract({column}, '$.{key}') = ?")
                params.append(identity[key])
            clauses.append("(" + " AND ".join(parts) + ")")
        sql = ("SELECT * FROM pattern_occurrences WHERE workspace_id = ? AND status = 'active' "
               f"AND ({' OR '.join(clauses)}) ORDER BY created_at, id")
        return [_row_to_occurrence(r) for r in self._fetch_all(sql, params)]

    # -- writes ------------------------------------------------------------

    def update(
        self, workspace_id: str, occurrence_id: str, changes: Dict[str, Any]
    ) -> Optional[PatternOccurrence]:
        """Update tracking/lifecycle fields only; content fields are ignored."""
        existing = self.find_by_id(workspace_id, occurrence_id)
        if existing is None:
            return None

        ignored = sorted(set(changes) - UPDATABLE_FIELDS)
        if ignored:
            logger.debug("Ignoring append-only fields %s on occurrence %s", ignored, occurrence_id)

        updated = existing.to_dict()
        for key in UPDATABLE_FIELDS:
            if key in changes:
                updated[key] = changes[key]

        if updated["status"] not in ("active", "inactive"):
            raise ValidationError(f"Invalid status '{updated['status']}'", field="status")
        if updated["status"] == "active":
            updated["inactive_reason"] = None
        elif updated["inactive_reason"] is not None:
            updated["inactive_reason"] = self._check_enum(
                InactiveReason, updated["inactive_reason"], "inactive_reason")

        self._execute(
            """UPDATE pattern_occurrences
               SET pattern_id = ?, was_injected = ?, was_adhered_to = ?, status = ?,
                   inactive_reason = ?
               WHERE id = ? AND workspace_id = ?""",
            (updated["pattern_id"], 1 if updated["was_injected"] else 0,
             bool_to_int(updated["was_adhered_to"]), updated["status"],
             updated["inactive_reason"], occurrence_id, workspace_id),
        )
        return PatternOccurrence.from_dict(updated)

    def relink_alert_occurrences(self, workspace_id: str, alert_id: str, pattern_id: str) -> int:
        """Point every occurrence of a provisional alert at its promoted pattern."""
        return self._execute(
            "UPDATE pattern_occurrences SET pattern_id = ? "
            "WHERE workspace_id = ? AND provisional_alert_id = ?",
            (pattern_id, workspace_id, alert_id),
        )

    def mark_inactive(self, workspace_id: str, occurrence_id: str, reason: str) -> bool:
        reason = self._check_enum(InactiveReason, reason, "inactive_reason")
        changed = self._execute(
            "UPDATE pattern_occurrences SET status = 'inactive', inactive_reason = ? "
            "WHERE id = ? AND workspace_id = ? AND status = 'active'",
            (reason, occurrence_id, workspace_id),
        )
        return changed > 0
