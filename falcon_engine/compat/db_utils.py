#!/usr/bin/env python3
# CUI // SP-CTI
"""Centralized database path resolution, connection and transaction helpers.

Connections are opened in autocommit mode (isolation_level=None): every
single statement is durable on its own, and multi-step mutations that must
be atomic are wrapped in ``transaction(conn)``, which issues BEGIN IMMEDIATE
(or a SAVEPOINT when already inside a transaction) and commits or rolls
back as a unit. Repositories never call commit() themselves.

Usage:
    from falcon_engine.compat.db_utils import get_db_connection, transaction

    conn = get_db_connection()                    # default falcon.db
    conn = get_db_connection(db_path=":memory:")  # scratch DB
    with transaction(conn):
        ...

Fallback chain for the DB path:
    1. Explicit path argument (if provided)
    2. FALCON_DB_PATH environment variable
    3. Default: <project_root>/data/falcon.db
"""

import contextlib
import json
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from falcon_engine.resilience.errors import FalconTransientError

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_DEFAULT_DB = _PROJECT_ROOT / "data" / "falcon.db"


def get_project_root() -> Path:
    """Return the project root directory."""
    return _PROJECT_ROOT


def get_falcon_db_path(explicit: Optional[Union[str, Path]] = None) -> Path:
    """Resolve the engine database path (explicit > FALCON_DB_PATH > default)."""
    if explicit:
        return Path(explicit)

    env_path = os.environ.get("FALCON_DB_PATH")
    if env_path:
        return Path(env_path)

    return _DEFAULT_DB


def get_db_connection(
    db_path: Optional[Union[str, Path]] = None,
    validate: bool = False,
) -> sqlite3.Connection:
    """Open a connection with Row factory, foreign keys and autocommit.

    Args:
        db_path: Explicit path, or ":memory:" for a scratch database.
        validate: If True, raise FileNotFoundError when the DB file is absent.
    """
    if str(db_path) == ":memory:":
        target = ":memory:"
    else:
        path = get_falcon_db_path(db_path)
        if validate and not path.exists():
            raise FileNotFoundError(
                f"Database not found: {path}\n"
                "Run: python -m falcon_engine.cli.falcon_cli init-db"
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        target = str(path)

    conn = sqlite3.connect(target, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements atomically.

    Nested use creates a SAVEPOINT so an inner failure rolls back only the
    inner block when the caller catches it, and everything when it does not.
    """
    if conn.in_transaction:
        name = f"sp_{uuid.uuid4().hex}"
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield conn
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        conn.execute(f"RELEASE SAVEPOINT {name}")
        return

    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as exc:
        if "locked" in str(exc):
            raise FalconTransientError(f"Database busy: {exc}", service="storage") from exc
        raise
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


# ---------------------------------------------------------------------------
# Row helpers shared by the repositories
# ---------------------------------------------------------------------------

def new_id() -> str:
    return str(uuid.uuid4())


def utc_now_iso(now: Optional[Union[str, datetime]] = None) -> str:
    """ISO-8601 UTC timestamp; accepts an override for deterministic callers."""
    if now is None:
        return datetime.now(timezone.utc).isoformat(timespec="microseconds")
    if isinstance(now, datetime):
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc).isoformat(timespec="microseconds")
    return parse_timestamp(now).isoformat(timespec="microseconds")


def parse_timestamp(ts_str: Union[str, datetime, None]) -> datetime:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Raises ValueError for unparseable input rather than guessing a time.
    """
    if ts_str is None:
        return datetime.now(timezone.utc)
    if isinstance(ts_str, datetime):
        dt = ts_str
    else:
        text = ts_str.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            dt = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True)


def from_json(raw: Optional[str], default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)


def bool_to_int(value: Optional[bool]) -> Optional[int]:
    if value is None:
        return None
    return 1 if value else 0


def int_to_bool(value: Optional[int]) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)
