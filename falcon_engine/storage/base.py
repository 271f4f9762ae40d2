#!/usr/bin/env python3
# CUI // SP-CTI
"""Shared repository plumbing for the Falcon SQLite store.

Repositories wrap one open connection (see compat.db_utils.get_db_connection)
and never commit on their own. Lookups return None or [] for "not found".
"""

import sqlite3
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence, Type

from falcon_engine.compat.db_utils import new_id, utc_now_iso
from falcon_engine.resilience.errors import ValidationError


class BaseRepository:
    """Common helpers for table repositories."""

    table = ""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # -- time / ids --------------------------------------------------------

    @staticmethod
    def now(now: Any = None) -> str:
        return utc_now_iso(now)

    @staticmethod
    def new_id() -> str:
        return new_id()

    # -- queries -----------------------------------------------------------

    def _fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return self.conn.execute(sql, tuple(params)).fetchone()

    def _fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        return self.conn.execute(sql, tuple(params)).fetchall()

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a write and return the number of affected rows."""
        return self.conn.execute(sql, tuple(params)).rowcount

    # -- validation --------------------------------------------------------

    @staticmethod
    def _check_enum(enum_cls: Type[Enum], value: Any, field: str) -> str:
        raw = value.value if isinstance(value, Enum) else value
        try:
            return enum_cls(raw).value
        except ValueError:
            allowed = ", ".join(m.value for m in enum_cls)
            raise ValidationError(
                f"Invalid {field} '{raw}'. Expected one of: {allowed}", field=field
            ) from None

    @staticmethod
    def _require(value: Any, field: str) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(f"{field} is required", field=field)
        return value


def placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)
