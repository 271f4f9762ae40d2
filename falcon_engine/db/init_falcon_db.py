#!/usr/bin/env python3
# CUI // SP-CTI
"""Initialize the Falcon attribution database with full schema.

Every table is keyed by workspace_id/project_id. Enumerated columns carry
CHECK constraints mirroring the boundary enums in falcon_engine.schemas.models,
and JSON array columns default to '[]'.

CLI:
    python -m falcon_engine.db.init_falcon_db
    python -m falcon_engine.db.init_falcon_db --db-path /tmp/falcon.db --reset
"""

import argparse
import json
import logging
import sqlite3
from pathlib import Path
from typing import List, Optional, Union

from falcon_engine.compat.db_utils import get_db_connection, get_falcon_db_path

logger = logging.getLogger("falcon.db.init_falcon_db")

SCHEMA_SQL = """
-- ============================================================
-- WORKSPACES & PROJECTS
-- ============================================================
CREATE TABLE IF NOT EXISTS workspaces (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    config TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'archived')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    name TEXT NOT NULL,
    repo_path TEXT,
    repo_origin_url TEXT NOT NULL,
    repo_subdir TEXT NOT NULL DEFAULT '',
    config TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'archived')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_projects_identity
    ON projects(workspace_id, repo_origin_url, repo_subdir);
CREATE INDEX IF NOT EXISTS idx_projects_workspace ON projects(workspace_id);

-- ============================================================
-- DERIVED PRINCIPLES (baselines + promoted patterns)
-- ============================================================
CREATE TABLE IF NOT EXISTS derived_principles (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    principle TEXT NOT NULL,
    rationale TEXT NOT NULL,
    origin TEXT NOT NULL CHECK(origin IN ('baseline', 'derived')),
    baseline_code TEXT,
    derived_from TEXT NOT NULL DEFAULT '[]',
    external_refs TEXT NOT NULL DEFAULT '[]',
    inject_into TEXT NOT NULL CHECK(inject_into IN ('context-pack', 'spec', 'both')),
    touches TEXT NOT NULL DEFAULT '[]',
    technologies TEXT NOT NULL DEFAULT '[]',
    task_types TEXT NOT NULL DEFAULT '[]',
    confidence REAL NOT NULL CHECK(confidence >= 0 AND confidence <= 1),
    status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'archived', 'superseded')),
    permanent INTEGER NOT NULL DEFAULT 0,
    superseded_by TEXT REFERENCES derived_principles(id),
    promotion_key TEXT,
    archived_reason TEXT,
    archived_at TEXT,
    archived_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_principles_workspace ON derived_principles(workspace_id);
CREATE INDEX IF NOT EXISTS idx_principles_status ON derived_principles(status);
-- At most one ACTIVE principle per promotion key; archived rows free the key.
CREATE UNIQUE INDEX IF NOT EXISTS idx_principles_promotion_key
    ON derived_principles(workspace_id, promotion_key)
    WHERE promotion_key IS NOT NULL AND status = 'active';
CREATE UNIQUE INDEX IF NOT EXISTS idx_principles_baseline_code
    ON derived_principles(workspace_id, baseline_code)
    WHERE baseline_code IS NOT NULL;

-- ============================================================
-- PATTERNS
-- ============================================================
CREATE TABLE IF NOT EXISTS pattern_definitions (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    pattern_key TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    pattern_content TEXT NOT NULL,
    failure_mode TEXT NOT NULL CHECK(failure_mode IN ('incorrect', 'incomplete', 'missing_reference',
        'ambiguous', 'conflict_unresolved', 'synthesis_drift')),
    finding_category TEXT NOT NULL CHECK(finding_category IN ('security', 'correctness', 'testing',
        'compliance', 'decisions')),
    severity TEXT NOT NULL CHECK(severity IN ('CRITICAL', 'HIGH', 'MEDIUM', 'LOW')),
    severity_max TEXT NOT NULL CHECK(severity_max IN ('CRITICAL', 'HIGH', 'MEDIUM', 'LOW')),
    alternative TEXT NOT NULL,
    consequence_class TEXT,
    carrier_stage TEXT NOT NULL CHECK(carrier_stage IN ('context-pack', 'spec')),
    primary_carrier_quote_type TEXT NOT NULL CHECK(primary_carrier_quote_type IN ('verbatim', 'paraphrase', 'inferred')),
    technologies TEXT NOT NULL DEFAULT '[]',
    task_types TEXT NOT NULL DEFAULT '[]',
    touches TEXT NOT NULL DEFAULT '[]',
    aligned_baseline_id TEXT REFERENCES derived_principles(id),
    status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'archived', 'superseded')),
    permanent INTEGER NOT NULL DEFAULT 0,
    superseded_by TEXT REFERENCES pattern_definitions(id),
    archived_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_patterns_scope_key
    ON pattern_definitions(workspace_id, project_id, pattern_key);
CREATE INDEX IF NOT EXISTS idx_patterns_status ON pattern_definitions(status);
CREATE INDEX IF NOT EXISTS idx_patterns_workspace_key ON pattern_definitions(workspace_id, pattern_key);

-- ============================================================
-- PROVISIONAL ALERTS
-- ============================================================
CREATE TABLE IF NOT EXISTS provisional_alerts (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    finding_id TEXT NOT NULL,
    issue_id TEXT NOT NULL,
    message TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'HIGH' CHECK(severity IN ('CRITICAL', 'HIGH', 'MEDIUM', 'LOW')),
    touches TEXT NOT NULL DEFAULT '[]',
    inject_into TEXT NOT NULL CHECK(inject_into IN ('context-pack', 'spec', 'both')),
    expires_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'expired', 'promoted')),
    promoted_to_pattern_id TEXT REFERENCES pattern_definitions(id),
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_provisional_alerts_scope ON provisional_alerts(workspace_id, project_id, status);
CREATE INDEX IF NOT EXISTS idx_provisional_alerts_expires_at ON provisional_alerts(expires_at);

-- ============================================================
-- OCCURRENCES (append-only; pattern_id is NULL while linked only to an alert)
-- ============================================================
CREATE TABLE IF NOT EXISTS pattern_occurrences (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    pattern_id TEXT REFERENCES pattern_definitions(id),
    finding_id TEXT NOT NULL,
    issue_id TEXT NOT NULL,
    pr_number INTEGER NOT NULL,
    severity TEXT NOT NULL CHECK(severity IN ('CRITICAL', 'HIGH', 'MEDIUM', 'LOW')),
    evidence TEXT NOT NULL,
    carrier_fingerprint TEXT NOT NULL,
    origin_fingerprint TEXT,
    provenance_chain TEXT NOT NULL DEFAULT '[]',
    carrier_excerpt_hash TEXT NOT NULL,
    origin_excerpt_hash TEXT,
    was_injected INTEGER NOT NULL DEFAULT 0,
    was_adhered_to INTEGER,
    status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'inactive')),
    inactive_reason TEXT CHECK(inactive_reason IS NULL OR inactive_reason IN
        ('superseded_doc', 'pattern_archived', 'false_positive')),
    provisional_alert_id TEXT REFERENCES provisional_alerts(id),
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_occurrences_pattern_id ON pattern_occurrences(pattern_id);
CREATE INDEX IF NOT EXISTS idx_occurrences_issue_id ON pattern_occurrences(issue_id);
CREATE INDEX IF NOT EXISTS idx_occurrences_alert_id ON pattern_occurrences(provisional_alert_id);
CREATE INDEX IF NOT EXISTS idx_occurrences_scope ON pattern_occurrences(workspace_id, project_id);

-- ============================================================
-- NONCOMPLIANCE, DOC UPDATES, SALIENCE
-- ============================================================
CREATE TABLE IF NOT EXISTS execution_noncompliance (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    finding_id TEXT NOT NULL,
    issue_id TEXT NOT NULL,
    pr_number INTEGER NOT NULL,
    violated_guidance_stage TEXT NOT NULL CHECK(violated_guidance_stage IN ('context-pack', 'spec')),
    violated_guidance_location TEXT NOT NULL,
    violated_guidance_excerpt TEXT NOT NULL,
    possible_causes TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_noncompliance_scope ON execution_noncompliance(workspace_id, project_id);

CREATE TABLE IF NOT EXISTS doc_update_requests (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    finding_id TEXT NOT NULL,
    issue_id TEXT NOT NULL,
    finding_category TEXT NOT NULL,
    scout_type TEXT NOT NULL,
    target_doc TEXT NOT NULL,
    update_type TEXT NOT NULL CHECK(update_type IN ('add_decision', 'clarify_guidance', 'fix_error', 'add_constraint')),
    decision_class TEXT,
    description TEXT NOT NULL,
    suggested_content TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'completed', 'rejected')),
    completed_at TEXT,
    rejection_reason TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_doc_updates_scope ON doc_update_requests(workspace_id, project_id, status);

CREATE TABLE IF NOT EXISTS salience_issues (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    guidance_location_hash TEXT NOT NULL,
    guidance_stage TEXT NOT NULL CHECK(guidance_stage IN ('context-pack', 'spec')),
    guidance_location TEXT NOT NULL,
    guidance_excerpt TEXT NOT NULL,
    occurrence_count INTEGER NOT NULL DEFAULT 0,
    window_days INTEGER NOT NULL DEFAULT 30,
    noncompliance_ids TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'resolved')),
    resolution TEXT CHECK(resolution IS NULL OR resolution IN ('reformatted', 'moved_earlier', 'false_positive')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    resolved_at TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_salience_issues_hash
    ON salience_issues(workspace_id, project_id, guidance_location_hash);

-- ============================================================
-- INJECTION LOG & TAGGING MISSES
-- ============================================================
CREATE TABLE IF NOT EXISTS injection_logs (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    issue_id TEXT NOT NULL,
    target TEXT NOT NULL CHECK(target IN ('context-pack', 'spec')),
    injected_patterns TEXT NOT NULL DEFAULT '[]',
    injected_principles TEXT NOT NULL DEFAULT '[]',
    injected_alerts TEXT NOT NULL DEFAULT '[]',
    task_profile TEXT NOT NULL,
    injected_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_injection_logs_issue ON injection_logs(workspace_id, project_id, issue_id);

CREATE TABLE IF NOT EXISTS tagging_misses (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    finding_id TEXT NOT NULL,
    pattern_id TEXT NOT NULL REFERENCES pattern_definitions(id),
    actual_task_profile TEXT NOT NULL,
    required_match TEXT NOT NULL,
    missing_tags TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'resolved')),
    resolution TEXT CHECK(resolution IS NULL OR resolution IN ('broadened_pattern', 'improved_extraction', 'false_positive')),
    created_at TEXT NOT NULL,
    resolved_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_tagging_misses_scope ON tagging_misses(workspace_id, project_id, status);

-- ============================================================
-- KILL SWITCH
-- ============================================================
CREATE TABLE IF NOT EXISTS kill_switch_status (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    state TEXT NOT NULL DEFAULT 'active' CHECK(state IN ('active', 'inferred_paused', 'fully_paused')),
    reason TEXT,
    entered_at TEXT,
    auto_resume_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_kill_switch_scope ON kill_switch_status(workspace_id, project_id);

CREATE TABLE IF NOT EXISTS attribution_outcomes (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    issue_key TEXT NOT NULL,
    carrier_quote_type TEXT NOT NULL CHECK(carrier_quote_type IN ('verbatim', 'paraphrase', 'inferred')),
    pattern_created INTEGER NOT NULL DEFAULT 0,
    injection_occurred INTEGER NOT NULL DEFAULT 0,
    recurrence_observed INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_attribution_outcomes_scope
    ON attribution_outcomes(workspace_id, project_id, created_at);
CREATE INDEX IF NOT EXISTS idx_attribution_outcomes_issue_key ON attribution_outcomes(issue_key);
"""

# Dependency order for deleting one project's rows: children before parents.
PROJECT_CASCADE_TABLES = (
    "tagging_misses",
    "pattern_occurrences",
    "injection_logs",
    "execution_noncompliance",
    "doc_update_requests",
    "salience_issues",
    "kill_switch_status",
    "attribution_outcomes",
    "provisional_alerts",
    "pattern_definitions",
)


def init_schema(conn: sqlite3.Connection) -> List[str]:
    """Create every table and index on an open connection; return table names."""
    conn.executescript(SCHEMA_SQL)
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    ).fetchall()
    return [row[0] for row in rows]


def init_db(db_path: Optional[Union[str, Path]] = None) -> List[str]:
    """Initialize the database file at db_path (or the resolved default)."""
    path = get_falcon_db_path(db_path)
    conn = get_db_connection(path)
    try:
        tables = init_schema(conn)
    finally:
        conn.close()
    logger.info("Falcon database initialized at %s (%d tables)", path, len(tables))
    return tables


def main():
    parser = argparse.ArgumentParser(description="Initialize the Falcon database")
    parser.add_argument("--db-path", type=Path, default=None, help="Database file path")
    parser.add_argument("--reset", action="store_true", help="Drop and recreate all tables")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    path = get_falcon_db_path(args.db_path)
    if args.reset and path.exists():
        path.unlink()
        print(f"Removed existing database: {path}")

    tables = init_db(path)
    if args.json:
        print(json.dumps({"db_path": str(path), "tables": tables}, indent=2))
    else:
        print(f"Falcon database initialized at {path}")
        print(f"Tables created ({len(tables)}): {', '.join(tables)}")


if __name__ == "__main__":
    main()
