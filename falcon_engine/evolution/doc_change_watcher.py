#!/usr/bin/env python3
# CUI // SP-CTI
"""Invalidate occurrences when a source document changes.

A change event names one document by kind:

    git       {"kind": "git", "repo": ..., "path": ...}
    linear    {"kind": "linear", "docId": ...}
    web       {"kind": "web", "url": ...}
    external  {"kind": "external", "externalId": ...}

Every ACTIVE occurrence whose carrier or origin fingerprint identifies the
document is marked inactive with reason superseded_doc. An event missing its
identifying keys, or of an unknown kind, invalidates nothing.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from falcon_engine.compat.db_utils import transaction
from falcon_engine.storage.occurrence_repo import PatternOccurrenceRepository

logger = logging.getLogger("falcon.evolution.doc_change_watcher")

# change-event key -> fingerprint key, per document kind
_IDENTITY_KEYS = {
    "git": {"repo": "repo", "path": "path"},
    "linear": {"docId": "docId"},
    "web": {"url": "url"},
    "external": {"externalId": "id"},
}


@dataclass
class DocChangeResult:
    invalidated_count: int = 0
    occurrence_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _identity(change: Dict[str, Any]) -> Optional[Dict[str, str]]:
    mapping = _IDENTITY_KEYS.get(change.get("kind"))
    if mapping is None:
        return None
    identity = {}
    for event_key, fp_key in mapping.items():
        value = change.get(event_key)
        if not value:
            return None
        identity[fp_key] = value
    return identity


def on_document_change(
    conn: sqlite3.Connection, workspace_id: str, change: Dict[str, Any]
) -> DocChangeResult:
    result = DocChangeResult()
    identity = _identity(change)
    if identity is None:
        logger.debug("Ignoring document change without identity: %s", change)
        return result

    occurrences = PatternOccurrenceRepository(conn)
    with transaction(conn):
        for occ in occurrences.find_active_by_document(workspace_id, change["kind"], identity):
            if occurrences.mark_inactive(workspace_id, occ.id, "superseded_doc"):
                result.occurrence_ids.append(occ.id)

    result.invalidated_count = len(result.occurrence_ids)
    logger.info("Invalidated %d occurrences after %s document change",
                result.invalidated_count, change["kind"])
    return result
