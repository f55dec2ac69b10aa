"""
Clinical data store collaborator.

`DataStore` is the narrow interface every tool, workflow and the identity
provider depend on: point lookups, filtered listings with an optional date
range, inserts and updates.  `PostgresDataStore` is the default
implementation (one psycopg2 connection per call, identifiers composed with
psycopg2.sql against a fixed table whitelist).
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Protocol

import psycopg2
import psycopg2.extras
from psycopg2 import sql

__all__ = ["DataStore", "PostgresDataStore", "DATA_TABLES"]

DATA_TABLES = frozenset(
    {
        "patients",
        "encounters",
        "lab_results",
        "medications",
        "appointments",
        "notes",
        "user_profiles",
    }
)

Row = dict[str, Any]


class DataStore(Protocol):
    def fetch_one(self, table: str, filters: Mapping[str, Any]) -> Row | None: ...

    def fetch_all(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        date_column: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]: ...

    def insert(self, table: str, row: Mapping[str, Any]) -> Row: ...

    def update(self, table: str, filters: Mapping[str, Any], changes: Mapping[str, Any]) -> Row | None: ...


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return psycopg2.extras.Json(value)
    return value


class PostgresDataStore:
    def __init__(self, pg_dsn: str, tables: Iterable[str] = DATA_TABLES) -> None:
        self._dsn = pg_dsn
        self._tables = frozenset(tables)

    def _table(self, name: str) -> sql.Identifier:
        if name not in self._tables:
            raise ValueError(f"unknown table: {name}")
        return sql.Identifier(name)

    @contextmanager
    def _cursor(self) -> Iterator[psycopg2.extras.RealDictCursor]:
        conn = psycopg2.connect(self._dsn)
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _where(
        filters: Mapping[str, Any] | None,
        date_column: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> tuple[sql.Composable, list[Any]]:
        clauses: list[sql.Composable] = []
        params: list[Any] = []
        for column, value in (filters or {}).items():
            clauses.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
            params.append(value)
        if date_column and since is not None:
            clauses.append(sql.SQL("{} >= %s").format(sql.Identifier(date_column)))
            params.append(since)
        if date_column and until is not None:
            clauses.append(sql.SQL("{} <= %s").format(sql.Identifier(date_column)))
            params.append(until)
        if not clauses:
            return sql.SQL(""), params
        return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params

    def fetch_one(self, table: str, filters: Mapping[str, Any]) -> Row | None:
        where, params = self._where(filters)
        query = sql.SQL("SELECT * FROM {}{} LIMIT 1").format(self._table(table), where)
        with self._cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return dict(row) if row else None

    def fetch_all(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        date_column: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        where, params = self._where(filters, date_column, since, until)
        query = sql.SQL("SELECT * FROM {}{}").format(self._table(table), where)
        if order_by:
            direction = sql.SQL(" DESC") if descending else sql.SQL(" ASC")
            query = query + sql.SQL(" ORDER BY ") + sql.Identifier(order_by) + direction
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params.append(int(limit))
        with self._cursor() as cur:
            cur.execute(query, params)
            return [dict(r) for r in cur.fetchall()]

    def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        columns = list(row)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            self._table(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        with self._cursor() as cur:
            cur.execute(query, [_adapt(row[c]) for c in columns])
            return dict(cur.fetchone())

    def update(self, table: str, filters: Mapping[str, Any], changes: Mapping[str, Any]) -> Row | None:
        if not changes:
            raise ValueError("update requires at least one change")
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in changes
        )
        where, where_params = self._where(filters)
        query = sql.SQL("UPDATE {} SET {}{} RETURNING *").format(self._table(table), assignments, where)
        with self._cursor() as cur:
            cur.execute(query, [_adapt(v) for v in changes.values()] + where_params)
            row = cur.fetchone()
        return dict(row) if row else None
