"""Named-parameter DB protocol and its psycopg 3 implementation."""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional, Protocol, Sequence

import psycopg
from psycopg.rows import dict_row


_NAMED_PARAM_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")


def convert_named_params(sql: str) -> str:
    """Rewrite ``:name`` placeholders into psycopg ``%(name)s`` form; ``::casts`` are left alone."""
    return _NAMED_PARAM_RE.sub(r"%(\1)s", sql)


class SettlementDatabase(Protocol):
    """Minimal read/write DB protocol used by the settlement stores."""

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        """Fetch one row."""

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        """Fetch all rows."""

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        """Execute SQL mutation."""


class PsycopgSettlementDB:
    """Statement-at-a-time adapter; every store operation is a single atomic statement."""

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self.conn = conn

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        converted = convert_named_params(sql)
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(converted, dict(params))
            rows = [dict(row) for row in cur.fetchall()] if cur.description is not None else []
        if not self.conn.autocommit:
            self.conn.commit()
        return rows

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        converted = convert_named_params(sql)
        with self.conn.cursor() as cur:
            cur.execute(converted, dict(params))
        if not self.conn.autocommit:
            self.conn.commit()

    def close(self) -> None:
        self.conn.close()


def connect(dsn: str) -> PsycopgSettlementDB:
    return PsycopgSettlementDB(psycopg.connect(dsn, autocommit=True))
