#!/usr/bin/env python3
# CUI // SP-CTI
"""DerivedPrinciple repository: workspace-level guardrails.

Two origins share the table: the eleven seeded baselines (permanent, keyed
by baseline_code) and principles promoted from cross-project patterns
(keyed by promotion_key). A partial unique index allows only one ACTIVE
principle per (workspace, promotion_key); archiving frees the key.
"""

import logging
import sqlite3
from typing import Any, List, Optional

from falcon_engine.compat.db_utils import from_json, to_json
from falcon_engine.resilience.errors import ValidationError
from falcon_engine.schemas.core import DerivedPrinciple
from falcon_engine.schemas.models import InjectTarget, normalize_tags, validate_touches
from falcon_engine.storage.base import BaseRepository

logger = logging.getLogger("falcon.storage.principle_repo")


def _row_to_principle(row: sqlite3.Row) -> DerivedPrinciple:
    return DerivedPrinciple(
        id=row["id"],
        workspace_id=row["workspace_id"],
        principle=row["principle"],
        rationale=row["rationale"],
        origin=row["origin"],
        baseline_code=row["baseline_code"],
        derived_from=from_json(row["derived_from"], []),
        external_refs=from_json(row["external_refs"], []),
        inject_into=row["inject_into"],
        touches=from_json(row["touches"], []),
        technologies=from_json(row["technologies"], []),
        task_types=from_json(row["task_types"], []),
        confidence=float(row["confidence"]),
        status=row["status"],
        permanent=bool(row["permanent"]),
        superseded_by=row["superseded_by"],
        promotion_key=row["promotion_key"],
        archived_reason=row["archived_reason"],
        archived_at=row["archived_at"],
        archived_by=row["archived_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class DerivedPrincipleRepository(BaseRepository):
    table = "derived_principles"

    def create(
        self,
        workspace_id: str,
        principle: str,
        rationale: str,
        origin: str,
        inject_into: str,
        confidence: float,
        touches: Optional[List[str]] = None,
        technologies: Optional[List[str]] = None,
        task_types: Optional[List[str]] = None,
        derived_from: Optional[List[str]] = None,
        external_refs: Optional[List[str]] = None,
        baseline_code: Optional[str] = None,
        promotion_key: Optional[str] = None,
        permanent: bool = False,
        now: Any = None,
    ) -> DerivedPrinciple:
        self._require(principle, "principle")
        if origin not in ("baseline", "derived"):
            raise ValidationError(f"Invalid origin '{origin}'", field="origin")
        if not 0.0 <= float(confidence) <= 1.0:
            raise ValidationError("confidence must be within [0, 1]", field="confidence")
        inject_into = self._check_enum(InjectTarget, inject_into, "inject_into")
        ts = self.now(now)
        entity = DerivedPrinciple(
            id=self.new_id(),
            workspace_id=workspace_id,
            principle=principle,
            rationale=rationale,
            origin=origin,
            inject_into=inject_into,
            confidence=float(confidence),
            baseline_code=baseline_code,
            derived_from=list(derived_from or []),
            external_refs=list(external_refs or []),
            touches=validate_touches(touches),
            technologies=normalize_tags(technologies),
            task_types=normalize_tags(task_types),
            status="active",
            permanent=bool(permanent),
            promotion_key=promotion_key,
            created_at=ts,
            updated_at=ts,
        )
        self._execute(
            """INSERT INTO derived_principles
               (id, workspace_id, principle, rationale, origin, baseline_code, derived_from,
                external_refs, inject_into, touches, technologies, task_types, confidence,
                status, permanent, superseded_by, promotion_key, archived_reason, archived_at,
                archived_by, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (entity.id, workspace_id, principle, rationale, origin, baseline_code,
             to_json(entity.derived_from), to_json(entity.external_refs), inject_into,
             to_json(entity.touches), to_json(entity.technologies), to_json(entity.task_types),
             entity.confidence, "active", 1 if permanent else 0, None, promotion_key,
             None, None, None, ts, ts),
        )
        return entity

    # -- lookups -----------------------------------------------------------

    def find_by_id(self, workspace_id: str, principle_id: str) -> Optional[DerivedPrinciple]:
        row = self._fetch_one(
            "SELECT * FROM derived_principles WHERE id = ? AND workspace_id = ?",
            (principle_id, workspace_id),
        )
        return _row_to_principle(row) if row else None

    def find_by_promotion_key(self, workspace_id: str, promotion_key: str) -> Optional[DerivedPrinciple]:
        """The ACTIVE principle holding this promotion key, if any."""
        row = self._fetch_one(
            "SELECT * FROM derived_principles "
            "WHERE workspace_id = ? AND promotion_key = ? AND status = 'active'",
            (workspace_id, promotion_key),
        )
        return _row_to_principle(row) if row else None

    def find_by_baseline_code(self, workspace_id: str, code: str) -> Optional[DerivedPrinciple]:
        row = self._fetch_one(
            "SELECT * FROM derived_principles WHERE workspace_id = ? AND baseline_code = ?",
            (workspace_id, code),
        )
        return _row_to_principle(row) if row else None

    def find_active(
        self,
        workspace_id: str,
        origin: Optional[str] = None,
        inject_into: Optional[str] = None,
    ) -> List[DerivedPrinciple]:
        """Active principles; inject_into matches the target or 'both'."""
        sql = "SELECT * FROM derived_principles WHERE workspace_id = ? AND status = 'active'"
        params: List[Any] = [workspace_id]
        if origin:
            sql += " AND origin = ?"
            params.append(origin)
        if inject_into:
            sql += " AND inject_into IN (?, 'both')"
            params.append(inject_into)
        sql += " ORDER BY baseline_code, created_at, id"
        return [_row_to_principle(r) for r in self._fetch_all(sql, params)]

    def count_baselines(self, workspace_id: str) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS n FROM derived_principles "
            "WHERE workspace_id = ? AND origin = 'baseline'",
            (workspace_id,),
        )
        return int(row["n"]) if row else 0

    # -- lifecycle ---------------------------------------------------------

    def archive(
        self,
        workspace_id: str,
        principle_id: str,
        reason: str,
        archived_by: Optional[str] = None,
        now: Any = None,
    ) -> bool:
        ts = self.now(now)
        changed = self._execute(
            "UPDATE derived_principles SET status = 'archived', archived_reason = ?, "
            "archived_at = ?, archived_by = ?, updated_at = ? "
            "WHERE id = ? AND workspace_id = ? AND status = 'active' AND permanent = 0",
            (reason, ts, archived_by, ts, principle_id, workspace_id),
        )
        return changed > 0

    def archive_by_promotion_key(
        self,
        workspace_id: str,
        promotion_key: str,
        reason: str = "rollback",
        archived_by: Optional[str] = None,
        now: Any = None,
    ) -> Optional[DerivedPrinciple]:
        """Archive the active principle for a promotion key; None when absent."""
        existing = self.find_by_promotion_key(workspace_id, promotion_key)
        if existing is None:
            return None
        if not self.archive(workspace_id, existing.id, reason, archived_by=archived_by, now=now):
            return None
        return self.find_by_id(workspace_id, existing.id)
