#!/usr/bin/env python3
# CUI // SP-CTI
"""Shared pytest fixtures for the Falcon engine test suite.

Every test gets a fresh file-backed SQLite database with the full schema,
a workspace/project pair, builders for EvidenceBundle and ConfirmedFinding
payloads (camelCase, as collaborators send them) and a deterministic stand-in
for the attribution agent. Time is pinned through NOW.
"""

import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path
BASE_DIR = Path(__file__).resolve().parent.parent
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from falcon_engine.attribution.orchestrator import SourceDocument  # noqa: E402
from falcon_engine.compat.config import clear_config_cache  # noqa: E402
from falcon_engine.compat.db_utils import get_db_connection  # noqa: E402
from falcon_engine.db.init_falcon_db import init_schema  # noqa: E402
from falcon_engine.storage.workspace_repo import (  # noqa: E402
    ProjectRepository,
    WorkspaceRepository,
)

NOW = "2026-03-02T12:00:00+00:00"

CONTEXT_PACK_FP = {
    "kind": "git",
    "repo": "acme/platform",
    "path": "docs/context-pack.md",
    "commitSha": "a" * 40,
}
SPEC_FP = {
    "kind": "linear",
    "docId": "DOC-42",
    "updatedAt": NOW,
    "contentHash": "b" * 64,
}

# Neutral documents: nothing in them matches the default finding's keywords.
CONTEXT_PACK_TEXT = "\n".join([
    "# Context Pack",
    "",
    "Follow the repository layout described in README.",
    "Keep modules small and cohesive.",
    "Prefer composition over inheritance.",
    "Write docstrings for public functions.",
])
SPEC_TEXT = "\n".join([
    "# Spec",
    "",
    "Deliver the feature behind a flag.",
    "Coordinate the rollout with the platform team.",
    "Record the release in the changelog.",
    "Notify stakeholders after deploy.",
])


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------
def make_evidence(**overrides):
    """Verbatim, explicitly harmful evidence that resolves to `incorrect`."""
    evidence = {
        "carrierStage": "context-pack",
        "carrierQuote": "Use string concatenation for SQL",
        "carrierQuoteType": "verbatim",
        "carrierLocation": "Section 3",
        "carrierInstructionKind": "explicitly_harmful",
        "hasCitation": False,
        "citedSources": [],
        "sourceRetrievable": False,
        "mandatoryDocMissing": False,
        "vaguenessSignals": [],
        "hasTestableAcceptanceCriteria": False,
        "conflictSignals": [],
    }
    evidence.update(overrides)
    return evidence


def make_finding(**overrides):
    finding = {
        "id": "F-1",
        "scoutType": "security",
        "title": "SQL injection in search endpoint",
        "description": "The search handler concatenates the filter into SQL",
        "severity": "HIGH",
        "evidence": "query = 'SELECT * FROM items WHERE ' + filter",
        "location": {"file": "src/api/search.py", "line": 42},
    }
    finding.update(overrides)
    return finding


class StubAgent:
    """Deterministic attribution agent: evidence per finding id, or a default."""

    def __init__(self, default=None, by_finding=None):
        self.default = default if default is not None else make_evidence()
        self.by_finding = dict(by_finding or {})
        self.calls = []

    def __call__(self, finding, context_pack, spec):
        self.calls.append(finding.id)
        return self.by_finding.get(finding.id, self.default)


def make_project(conn, workspace, name, url=None):
    return ProjectRepository(conn).create(
        workspace.id, name, url or f"git@github.com:acme/{name}.git", now=NOW)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _clear_config(monkeypatch):
    """Isolate tests from any policy file or DB path set in the environment."""
    monkeypatch.delenv("FALCON_CONFIG_PATH", raising=False)
    monkeypatch.delenv("FALCON_DB_PATH", raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "falcon.db"


@pytest.fixture
def conn(db_path):
    """Open connection on a freshly initialised database."""
    connection = get_db_connection(db_path)
    init_schema(connection)
    yield connection
    connection.close()


@pytest.fixture
def workspace(conn):
    return WorkspaceRepository(conn).create("Acme Platform", now=NOW)


@pytest.fixture
def project(conn, workspace):
    return make_project(conn, workspace, "api")


@pytest.fixture
def other_project(conn, workspace):
    return make_project(conn, workspace, "billing")


@pytest.fixture
def context_pack():
    return SourceDocument(content=CONTEXT_PACK_TEXT, fingerprint=dict(CONTEXT_PACK_FP))


@pytest.fixture
def spec_doc():
    return SourceDocument(content=SPEC_TEXT, fingerprint=dict(SPEC_FP))
