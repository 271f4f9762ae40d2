#!/usr/bin/env python3
# CUI // SP-CTI
"""Baseline principles B01-B11.

Eleven fixed guardrails seeded into every workspace. They are permanent,
inject into both carrier stages at confidence 0.9, and are never derived
from evidence. Seeding is idempotent by baseline code.
"""

import logging
import sqlite3
from typing import Any, Dict, List

from falcon_engine.storage.principle_repo import DerivedPrincipleRepository

logger = logging.getLogger("falcon.injection.baselines")

BASELINE_CONFIDENCE = 0.9

BASELINE_PRINCIPLES: List[Dict[str, Any]] = [
    {
        "code": "B01",
        "principle": "Always use parameterized queries for SQL. Never interpolate user input "
                     "into query strings.",
        "rationale": "Prevents SQL injection, the most common and dangerous database "
                     "vulnerability.",
        "touches": ["database", "user_input"],
        "external_refs": ["CWE-89"],
    },
    {
        "code": "B02",
        "principle": "Validate, sanitize, and bound all external input before processing. "
                     "Reject unexpected types, formats, and sizes.",
        "rationale": "Prevents injection attacks, type confusion, and DoS via malformed input.",
        "touches": ["user_input"],
        "external_refs": ["CWE-20"],
    },
    {
        "code": "B03",
        "principle": "Never log secrets, credentials, API keys, or PII. Redact or omit "
                     "sensitive fields.",
        "rationale": "Prevents credential leakage through log aggregation and monitoring "
                     "systems.",
        "touches": ["logging", "auth"],
        "external_refs": ["CWE-532"],
    },
    {
        "code": "B04",
        "principle": "Require explicit authorization checks before sensitive operations. "
                     "Never rely on implicit permissions.",
        "rationale": "Prevents privilege escalation and unauthorized access to protected "
                     "resources.",
        "touches": ["auth", "authz"],
        "external_refs": ["CWE-862"],
    },
    {
        "code": "B05",
        "principle": "Set timeouts on all network calls. No unbounded waits.",
        "rationale": "Prevents resource exhaustion and cascading failures from "
                     "slow/unresponsive services.",
        "touches": ["network"],
        "external_refs": [],
    },
    {
        "code": "B06",
        "principle": "Implement retry with exponential backoff, jitter, and maximum attempt "
                     "limits.",
        "rationale": "Prevents retry storms and allows graceful degradation during outages.",
        "touches": ["network"],
        "external_refs": [],
    },
    {
        "code": "B07",
        "principle": "Use idempotency keys for operations that cannot be safely retried.",
        "rationale": "Prevents duplicate processing and data corruption during network "
                     "retries.",
        "touches": ["network", "database"],
        "external_refs": [],
    },
    {
        "code": "B08",
        "principle": "Enforce size limits and rate limits on user-provided data and requests.",
        "rationale": "Prevents DoS attacks and resource exhaustion from malicious or buggy "
                     "clients.",
        "touches": ["user_input", "api"],
        "external_refs": ["CWE-400"],
    },
    {
        "code": "B09",
        "principle": "Require migration plan with rollback strategy for all schema changes.",
        "rationale": "Prevents data loss and enables recovery from failed deployments.",
        "touches": ["schema"],
        "external_refs": [],
    },
    {
        "code": "B10",
        "principle": "Define error contract (status codes, error shapes, error codes) before "
                     "implementation.",
        "rationale": "Ensures consistent error handling across the system and clear client "
                     "expectations.",
        "touches": ["api"],
        "external_refs": [],
    },
    {
        "code": "B11",
        "principle": "Use least-privilege credentials for DB/service access. Don't run "
                     "migrations/ops with app runtime creds. Scope tokens tightly.",
        "rationale": "Reduces blast radius of credential compromise and limits damage from "
                     "bugs.",
        "touches": ["database", "auth", "config"],
        "external_refs": ["CWE-250"],
    },
]


def seed_baselines(conn: sqlite3.Connection, workspace_id: str, now: Any = None) -> int:
    """Insert any missing baselines for the workspace. Returns how many were added."""
    repo = DerivedPrincipleRepository(conn)
    seeded = 0
    for baseline in BASELINE_PRINCIPLES:
        if repo.find_by_baseline_code(workspace_id, baseline["code"]):
            continue
        repo.create(
            workspace_id=workspace_id,
            principle=baseline["principle"],
            rationale=baseline["rationale"],
            origin="baseline",
            inject_into="both",
            confidence=BASELINE_CONFIDENCE,
            touches=baseline["touches"],
            external_refs=baseline["external_refs"],
            baseline_code=baseline["code"],
            permanent=True,
            now=now,
        )
        seeded += 1
    if seeded:
        logger.info("Seeded %d baseline principles into workspace %s", seeded, workspace_id)
    return seeded


def check_baselines_seeded(conn: sqlite3.Connection, workspace_id: str) -> Dict[str, int]:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM derived_principles "
        "WHERE workspace_id = ? AND origin = 'baseline' AND status = 'active'",
        (workspace_id,),
    ).fetchone()
    return {"seeded": int(row["n"]), "expected": len(BASELINE_PRINCIPLES)}
