#!/usr/bin/env python3
# CUI // SP-CTI
"""PatternDefinition repository: content-hash deduplicated pattern storage.

Pattern identity is a deterministic hash, never a free-text label:

    patternKey  = sha256(carrierStage | normalize(content) | findingCategory)
    contentHash = sha256(normalize(content))

where normalize() trims, lowercases and collapses whitespace. Dedup is scoped
to (workspace, project). patternContent, patternKey and contentHash are
write-once; severityMax only ever increases.
"""

import hashlib
import logging
import re
import sqlite3
from typing import Any, Dict, List, Optional

from falcon_engine.compat.db_utils import from_json, to_json
from falcon_engine.resilience.errors import ImmutableFieldError
from falcon_engine.schemas.core import PatternDefinition, ProvisionalAlert
from falcon_engine.schemas.models import (
    CarrierStage,
    FailureMode,
    FindingCategory,
    QuoteType,
    Severity,
    SEVERITY_RANK,
    max_severity,
    normalize_tags,
    validate_touches,
)
from falcon_engine.storage.base import BaseRepository, placeholders

logger = logging.getLogger("falcon.storage.pattern_repo")

IMMUTABLE_FIELDS = frozenset({
    "id", "workspace_id", "project_id", "pattern_key", "content_hash",
    "pattern_content", "created_at",
})

_MUTABLE_COLUMNS = (
    "failure_mode", "finding_category", "severity", "severity_max", "alternative",
    "consequence_class", "primary_carrier_quote_type", "technologies", "task_types",
    "touches", "aligned_baseline_id", "status", "permanent", "superseded_by",
    "archived_reason",
)

_SEVERITY_RANK_SQL = (
    "CASE severity_max WHEN 'CRITICAL' THEN 4 WHEN 'HIGH' THEN 3 "
    "WHEN 'MEDIUM' THEN 2 ELSE 1 END"
)


# ---------------------------------------------------------------------------
# Identity hashing
# ---------------------------------------------------------------------------

def normalize_content(content: str) -> str:
    return re.sub(r"\s+", " ", (content or "").strip().lower())


def compute_content_hash(content: str) -> str:
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()


def compute_pattern_key(carrier_stage: str, content: str, finding_category: str) -> str:
    payload = f"{carrier_stage}|{normalize_content(content)}|{finding_category}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _row_to_pattern(row: sqlite3.Row) -> PatternDefinition:
    return PatternDefinition(
        id=row["id"],
        workspace_id=row["workspace_id"],
        project_id=row["project_id"],
        pattern_key=row["pattern_key"],
        content_hash=row["content_hash"],
        pattern_content=row["pattern_content"],
        failure_mode=row["failure_mode"],
        finding_category=row["finding_category"],
        severity=row["severity"],
        severity_max=row["severity_max"],
        alternative=row["alternative"],
        consequence_class=row["consequence_class"],
        carrier_stage=row["carrier_stage"],
        primary_carrier_quote_type=row["primary_carrier_quote_type"],
        technologies=from_json(row["technologies"], []),
        task_types=from_json(row["task_types"], []),
        touches=from_json(row["touches"], []),
        aligned_baseline_id=row["aligned_baseline_id"],
        status=row["status"],
        permanent=bool(row["permanent"]),
        superseded_by=row["superseded_by"],
        archived_reason=row["archived_reason"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PatternDefinitionRepository(BaseRepository):
    table = "pattern_definitions"

    # -- lookups -----------------------------------------------------------

    def find_by_id(self, workspace_id: str, pattern_id: str) -> Optional[PatternDefinition]:
        row = self._fetch_one(
            "SELECT * FROM pattern_definitions WHERE id = ? AND workspace_id = ?",
            (pattern_id, workspace_id),
        )
        return _row_to_pattern(row) if row else None

    def find_by_pattern_key(
        self, workspace_id: str, project_id: str, pattern_key: str
    ) -> Optional[PatternDefinition]:
        row = self._fetch_one(
            "SELECT * FROM pattern_definitions "
            "WHERE workspace_id = ? AND project_id = ? AND pattern_key = ?",
            (workspace_id, project_id, pattern_key),
        )
        return _row_to_pattern(row) if row else None

    def find_active(
        self,
        workspace_id: str,
        project_id: str,
        carrier_stage: Optional[str] = None,
        finding_category: Optional[str] = None,
    ) -> List[PatternDefinition]:
        sql = ("SELECT * FROM pattern_definitions "
               "WHERE workspace_id = ? AND project_id = ? AND status = 'active'")
        params: List[Any] = [workspace_id, project_id]
        if carrier_stage:
            sql += " AND carrier_stage = ?"
            params.append(carrier_stage)
        if finding_category:
            sql += " AND finding_category = ?"
            params.append(finding_category)
        sql += " ORDER BY created_at, id"
        return [_row_to_pattern(r) for r in self._fetch_all(sql, params)]

    def find_by_touches(
        self,
        workspace_id: str,
        project_id: str,
        touches: List[str],
        finding_category: Optional[str] = None,
    ) -> List[PatternDefinition]:
        """Active patterns sharing at least one touch with the given set."""
        wanted = set(validate_touches(touches))
        if not wanted:
            return []
        return [
            p for p in self.find_active(workspace_id, project_id, finding_category=finding_category)
            if wanted.intersection(p.touches)
        ]

    def find_by_key_in_workspace(
        self, workspace_id: str, pattern_key: str, active_only: bool = True
    ) -> List[PatternDefinition]:
        sql = "SELECT * FROM pattern_definitions WHERE workspace_id = ? AND pattern_key = ?"
        if active_only:
            sql += " AND status = 'active'"
        sql += " ORDER BY created_at, id"
        return [_row_to_pattern(r) for r in self._fetch_all(sql, (workspace_id, pattern_key))]

    def find_cross_project(
        self,
        workspace_id: str,
        exclude_project_id: str,
        carrier_stage: Optional[str] = None,
        min_severity: Optional[str] = None,
        finding_category: Optional[str] = None,
    ) -> List[PatternDefinition]:
        """Active patterns from sibling projects, highest severity and newest first."""
        sql = ("SELECT * FROM pattern_definitions "
               "WHERE workspace_id = ? AND project_id != ? AND status = 'active'")
        params: List[Any] = [workspace_id, exclude_project_id]
        if carrier_stage:
            sql += " AND carrier_stage = ?"
            params.append(carrier_stage)
        if finding_category:
            sql += " AND finding_category = ?"
            params.append(finding_category)
        if min_severity:
            allowed = [s for s, rank in SEVERITY_RANK.items()
                       if rank >= SEVERITY_RANK[self._check_enum(Severity, min_severity, "min_severity")]]
            sql += f" AND severity_max IN ({placeholders(allowed)})"
            params.extend(allowed)
        sql += f" ORDER BY {_SEVERITY_RANK_SQL} DESC, updated_at DESC, id"
        return [_row_to_pattern(r) for r in self._fetch_all(sql, params)]

    def count_distinct_projects(self, workspace_id: str, pattern_key: str) -> int:
        row = self._fetch_one(
            "SELECT COUNT(DISTINCT project_id) AS n FROM pattern_definitions "
            "WHERE workspace_id = ? AND pattern_key = ? AND status = 'active'",
            (workspace_id, pattern_key),
        )
        return int(row["n"]) if row else 0

    # -- writes ------------------------------------------------------------

    def create(
        self,
        workspace_id: str,
        project_id: str,
        pattern_content: str,
        failure_mode: str,
        finding_category: str,
        severity: str,
        alternative: str,
        carrier_stage: str,
        primary_carrier_quote_type: str,
        consequence_class: Optional[str] = None,
        technologies: Optional[List[str]] = None,
        task_types: Optional[List[str]] = None,
        touches: Optional[List[str]] = None,
        aligned_baseline_id: Optional[str] = None,
        permanent: bool = False,
        now: Any = None,
    ) -> PatternDefinition:
        """Create a pattern, or return the existing one with the same key.

        On a dedup hit only severityMax may change (raised to the new severity).
        """
        self._require(pattern_content, "pattern_content")
        self._require(alternative, "alternative")
        carrier_stage = self._check_enum(CarrierStage, carrier_stage, "carrier_stage")
        finding_category = self._check_enum(FindingCategory, finding_category, "finding_category")
        failure_mode = self._check_enum(FailureMode, failure_mode, "failure_mode")
        severity = self._check_enum(Severity, severity, "severity")
        quote_type = self._check_enum(QuoteType, primary_carrier_quote_type,
                                      "primary_carrier_quote_type")
        touches = validate_touches(touches)
        technologies = normalize_tags(technologies)
        task_types = normalize_tags(task_types)

        pattern_key = compute_pattern_key(carrier_stage, pattern_content, finding_category)
        existing = self.find_by_pattern_key(workspace_id, project_id, pattern_key)
        if existing:
            return self._raise_severity_max(existing, severity, now)

        ts = self.now(now)
        pattern = PatternDefinition(
            id=self.new_id(),
            workspace_id=workspace_id,
            project_id=project_id,
            pattern_key=pattern_key,
            content_hash=compute_content_hash(pattern_content),
            pattern_content=pattern_content,
            failure_mode=failure_mode,
            finding_category=finding_category,
            severity=severity,
            severity_max=severity,
            alternative=alternative,
            consequence_class=consequence_class,
            carrier_stage=carrier_stage,
            primary_carrier_quote_type=quote_type,
            technologies=technologies,
            task_types=task_types,
            touches=touches,
            aligned_baseline_id=aligned_baseline_id,
            status="active",
            permanent=bool(permanent),
            created_at=ts,
            updated_at=ts,
        )
        try:
            self._execute(
                """INSERT INTO pattern_definitions
                   (id, workspace_id, project_id, pattern_key, content_hash, pattern_content,
                    failure_mode, finding_category, severity, severity_max, alternative,
                    consequence_class, carrier_stage, primary_carrier_quote_type,
                    technologies, task_types, touches, aligned_baseline_id, status,
                    permanent, superseded_by, archived_reason, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (pattern.id, workspace_id, project_id, pattern_key, pattern.content_hash,
                 pattern_content, failure_mode, finding_category, severity, severity,
                 alternative, consequence_class, carrier_stage, quote_type,
                 to_json(technologies), to_json(task_types), to_json(touches),
                 aligned_baseline_id, "active", 1 if permanent else 0, None, None, ts, ts),
            )
        except sqlite3.IntegrityError:
            # Lost a race on the scope/key unique index: fall back to the winner.
            winner = self.find_by_pattern_key(workspace_id, project_id, pattern_key)
            if winner is None:
                raise
            return self._raise_severity_max(winner, severity, now)
        logger.debug("Created pattern %s (key %s...)", pattern.id, pattern_key[:12])
        return pattern

    def _raise_severity_max(
        self, pattern: PatternDefinition, severity: str, now: Any = None
    ) -> PatternDefinition:
        new_max = max_severity(pattern.severity_max, severity)
        if new_max == pattern.severity_max:
            return pattern
        ts = self.now(now)
        self._execute(
            "UPDATE pattern_definitions SET severity_max = ?, updated_at = ? "
            "WHERE id = ? AND workspace_id = ?",
            (new_max, ts, pattern.id, pattern.workspace_id),
        )
        pattern.severity_max = new_max
        pattern.updated_at = ts
        return pattern

    def update(
        self,
        workspace_id: str,
        pattern_id: str,
        changes: Dict[str, Any],
        strict: bool = False,
        now: Any = None,
    ) -> Optional[PatternDefinition]:
        """Apply mutable-field changes; write-once fields are dropped.

        With strict=True an attempt to change a write-once field raises
        ImmutableFieldError instead of being ignored.
        """
        existing = self.find_by_id(workspace_id, pattern_id)
        if existing is None:
            return None

        for key in changes:
            if key in IMMUTABLE_FIELDS:
                if strict and changes[key] != getattr(existing, key):
                    raise ImmutableFieldError(key)
                logger.debug("Ignoring change to immutable field %s on %s", key, pattern_id)

        updated = existing.to_dict()
        for key, value in changes.items():
            if key in _MUTABLE_COLUMNS:
                updated[key] = value

        updated["failure_mode"] = self._check_enum(FailureMode, updated["failure_mode"], "failure_mode")
        updated["finding_category"] = self._check_enum(
            FindingCategory, updated["finding_category"], "finding_category")
        updated["severity"] = self._check_enum(Severity, updated["severity"], "severity")
        requested_max = self._check_enum(Severity, updated["severity_max"], "severity_max")
        updated["severity_max"] = max_severity(existing.severity_max, requested_max)
        updated["primary_carrier_quote_type"] = self._check_enum(
            QuoteType, updated["primary_carrier_quote_type"], "primary_carrier_quote_type")
        updated["touches"] = validate_touches(updated["touches"])
        updated["technologies"] = normalize_tags(updated["technologies"])
        updated["task_types"] = normalize_tags(updated["task_types"])
        updated["updated_at"] = self.now(now)

        self._execute(
            """UPDATE pattern_definitions
               SET failure_mode = ?, finding_category = ?, severity = ?, severity_max = ?,
                   alternative = ?, consequence_class = ?, primary_carrier_quote_type = ?,
                   technologies = ?, task_types = ?, touches = ?, aligned_baseline_id = ?,
                   status = ?, permanent = ?, superseded_by = ?, archived_reason = ?,
                   updated_at = ?
               WHERE id = ? AND workspace_id = ?""",
            (updated["failure_mode"], updated["finding_category"], updated["severity"],
             updated["severity_max"], updated["alternative"], updated["consequence_class"],
             updated["primary_carrier_quote_type"], to_json(updated["technologies"]),
             to_json(updated["task_types"]), to_json(updated["touches"]),
             updated["aligned_baseline_id"], updated["status"],
             1 if updated["permanent"] else 0, updated["superseded_by"],
             updated["archived_reason"], updated["updated_at"], pattern_id, workspace_id),
        )
        return PatternDefinition.from_dict(updated)

    def archive(
        self, workspace_id: str, pattern_id: str, reason: Optional[str] = None, now: Any = None
    ) -> bool:
        """Soft delete: status=archived. Returns False when nothing matched."""
        changed = self._execute(
            "UPDATE pattern_definitions SET status = 'archived', archived_reason = ?, "
            "updated_at = ? WHERE id = ? AND workspace_id = ? AND status = 'active'",
            (reason, self.now(now), pattern_id, workspace_id),
        )
        return changed > 0

    def create_from_provisional_alert(
        self,
        alert: ProvisionalAlert,
        technologies: Optional[List[str]] = None,
        task_types: Optional[List[str]] = None,
        now: Any = None,
    ) -> PatternDefinition:
        """Build a durable pattern from a promoted provisional alert.

        Alerts carry only a message, so the pattern takes conservative defaults:
        failureMode incomplete, inferred quote type, security category.
        """
        carrier_stage = "context-pack" if alert.inject_into == "both" else alert.inject_into
        return self.create(
            workspace_id=alert.workspace_id,
            project_id=alert.project_id,
            pattern_content=alert.message,
            failure_mode="incomplete",
            finding_category="security",
            severity=alert.severity or "HIGH",
            alternative="See original alert message for guidance",
            carrier_stage=carrier_stage,
            primary_carrier_quote_type="inferred",
            technologies=technologies,
            task_types=task_types,
            touches=alert.touches,
            now=now,
        )
