#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon Storage Package: one repository per table over a shared connection.

Usage:
    from falcon_engine.storage import Repositories

    repos = Repositories(conn)
    pattern = repos.patterns.find_by_id(workspace_id, pattern_id)
"""

import sqlite3

from falcon_engine.storage.alert_repo import ProvisionalAlertRepository
from falcon_engine.storage.guidance_repo import (
    DocUpdateRequestRepository,
    ExecutionNoncomplianceRepository,
    SalienceIssueRepository,
)
from falcon_engine.storage.injection_log_repo import InjectionLogRepository
from falcon_engine.storage.kill_switch_repo import KillSwitchRepository
from falcon_engine.storage.occurrence_repo import PatternOccurrenceRepository
from falcon_engine.storage.pattern_repo import PatternDefinitionRepository
from falcon_engine.storage.principle_repo import DerivedPrincipleRepository
from falcon_engine.storage.tagging_miss_repo import TaggingMissRepository
from falcon_engine.storage.workspace_repo import (
    ProjectRepository,
    WorkspaceRepository,
    delete_project_cascade,
)

__all__ = [
    "Repositories",
    "delete_project_cascade",
]


class Repositories:
    """Bundle of every repository bound to one connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.workspaces = WorkspaceRepository(conn)
        self.projects = ProjectRepository(conn)
        self.patterns = PatternDefinitionRepository(conn)
        self.occurrences = PatternOccurrenceRepository(conn)
        self.alerts = ProvisionalAlertRepository(conn)
        self.principles = DerivedPrincipleRepository(conn)
        self.kill_switch = KillSwitchRepository(conn)
        self.injection_logs = InjectionLogRepository(conn)
        self.tagging_misses = TaggingMissRepository(conn)
        self.noncompliance = ExecutionNoncomplianceRepository(conn)
        self.doc_updates = DocUpdateRequestRepository(conn)
        self.salience = SalienceIssueRepository(conn)
