"""gtfs_etl.gateway

Persistence gateway used by the importer, the deletion engine and the
tenant registry. Each call is independent and commits on its own.

Implementations:
  PostgresGateway: psycopg 3, autocommit per call, statement_timeout and a
    per-call row limit
  InMemoryGateway: dict-backed store with the same contract (foreign keys,
    unknown columns, row limits); used by unit tests

Predicates are plain ``{column: value}`` equality maps, AND-ed together.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol, Sequence

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from gtfs_etl.gtfs_schema import (
    FAVORITE_TABLES,
    FOREIGN_KEYS,
    ORIGINAL_ID_COLUMNS,
    SUB_SOURCE_COLUMNS,
    TENANT_COLUMN,
    TENANT_TABLE,
    VALID_COLUMNS,
)

log = logging.getLogger(__name__)

_REFERENCED_TABLE_RE = re.compile(r'table "([^"]+)"')
_COLUMN_RE = re.compile(r'column "([^"]+)"')


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """A store call failed; the message is the store's own."""

    def __init__(self, message: str, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table


class ForeignKeyViolation(StoreError):
    def __init__(
        self,
        message: str,
        table: str | None = None,
        constraint_name: str | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message, table)
        self.constraint_name = constraint_name
        self.detail = detail

    @property
    def referencing_table(self) -> str | None:
        """Table still holding references, parsed from the detail text."""
        if self.detail:
            m = _REFERENCED_TABLE_RE.search(self.detail)
            if m:
                return m.group(1)
        # message form: ... on table "networks" violates ... on table "agency"
        found = _REFERENCED_TABLE_RE.findall(str(self))
        return found[-1] if found else self.table


class CapacityExceeded(StoreError):
    """Statement timeout or per-call row limit hit; retry with less work."""


class UnknownColumnError(StoreError):
    def __init__(self, message: str, table: str | None = None, column: str | None = None) -> None:
        super().__init__(message, table)
        self.column = column


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class StoreGateway(Protocol):
    def upsert(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        conflict_columns: Sequence[str],
    ) -> int:
        """Insert or update rows keyed by conflict_columns; return rows written."""
        ...

    def delete_where(
        self,
        table: str,
        predicate: dict[str, Any],
        order_by: str | None = None,
        limit: int | None = None,
    ) -> int:
        """Delete matching rows (at most ``limit``); return rows deleted."""
        ...

    def count_where(self, table: str, predicate: dict[str, Any]) -> int:
        ...

    def delete_one(self, table: str, predicate: dict[str, Any]) -> None:
        ...

    def select_rows(
        self,
        table: str,
        columns: Sequence[str],
        predicate: dict[str, Any],
    ) -> list[dict[str, Any]]:
        ...


def _require_predicate(table: str, predicate: dict[str, Any]) -> None:
    if not predicate:
        raise ValueError(f"refusing unscoped statement on {table}: empty predicate")


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

def _where(predicate: dict[str, Any]) -> sql.Composed:
    return sql.SQL(" AND ").join(
        sql.SQL("{} = %s").format(sql.Identifier(col)) for col in predicate
    )


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    return value


@contextmanager
def _translated(table: str) -> Iterator[None]:
    """Map psycopg errors onto the gateway's exception types."""
    try:
        yield
    except errors.ForeignKeyViolation as exc:
        raise ForeignKeyViolation(
            str(exc),
            table=exc.diag.table_name or table,
            constraint_name=exc.diag.constraint_name,
            detail=exc.diag.message_detail,
        ) from exc
    except errors.QueryCanceled as exc:
        raise CapacityExceeded(str(exc), table=table) from exc
    except errors.UndefinedColumn as exc:
        m = _COLUMN_RE.search(str(exc))
        raise UnknownColumnError(str(exc), table=table, column=m.group(1) if m else None) from exc
    except psycopg.Error as exc:
        raise StoreError(str(exc), table=table) from exc


class PostgresGateway:
    """StoreGateway over a single autocommit psycopg connection."""

    def __init__(
        self,
        dsn: str,
        statement_timeout_ms: int = 600_000,
        max_rows_per_call: int | None = 1000,
    ) -> None:
        self._dsn = dsn
        self._statement_timeout_ms = statement_timeout_ms
        self._max_rows_per_call = max_rows_per_call
        self._conn: psycopg.Connection | None = None

    # -- connection lifecycle -------------------------------------------

    @property
    def conn(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed:
            self._conn = psycopg.connect(self._dsn, autocommit=True, row_factory=dict_row)
            self._conn.execute(
                sql.SQL("SET statement_timeout = {}").format(
                    sql.Literal(int(self._statement_timeout_ms))
                )
            )
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "PostgresGateway":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _check_rows(self, table: str, n: int) -> None:
        if self._max_rows_per_call is not None and n > self._max_rows_per_call:
            raise CapacityExceeded(
                f"maximum number of rows per call exceeded on {table}: "
                f"{n} > {self._max_rows_per_call}",
                table=table,
            )

    # -- StoreGateway ----------------------------------------------------

    def upsert(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        conflict_columns: Sequence[str],
    ) -> int:
        if not rows:
            return 0
        self._check_rows(table, len(rows))
        columns: list[str] = []
        for row in rows:
            for col in row:
                if col not in columns:
                    columns.append(col)
        updates = [c for c in columns if c not in conflict_columns]
        if updates:
            on_conflict = sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in updates
                )
            )
        else:
            on_conflict = sql.SQL("DO NOTHING")
        stmt = sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) {}").format(
            sql.Identifier(table),
            sql.SQL(", ").join(map(sql.Identifier, columns)),
            sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            sql.SQL(", ").join(map(sql.Identifier, conflict_columns)),
            on_conflict,
        )
        params = [tuple(_adapt(row.get(c)) for c in columns) for row in rows]
        with _translated(table):
            with self.conn.transaction():
                with self.conn.cursor() as cur:
                    cur.executemany(stmt, params)
        return len(rows)

    def delete_where(
        self,
        table: str,
        predicate: dict[str, Any],
        order_by: str | None = None,
        limit: int | None = None,
    ) -> int:
        _require_predicate(table, predicate)
        if limit is None and order_by is None:
            stmt = sql.SQL("DELETE FROM {} WHERE {}").format(
                sql.Identifier(table), _where(predicate)
            )
            params: list[Any] = list(predicate.values())
        else:
            if limit is not None:
                self._check_rows(table, limit)
            inner = sql.SQL("SELECT ctid FROM {} WHERE {}").format(
                sql.Identifier(table), _where(predicate)
            )
            if order_by is not None:
                inner += sql.SQL(" ORDER BY {}").format(sql.Identifier(order_by))
            params = list(predicate.values())
            if limit is not None:
                inner += sql.SQL(" LIMIT %s")
                params.append(limit)
            stmt = sql.SQL("DELETE FROM {} WHERE ctid IN ({})").format(
                sql.Identifier(table), inner
            )
        with _translated(table):
            cur = self.conn.execute(stmt, params)
        return cur.rowcount

    def count_where(self, table: str, predicate: dict[str, Any]) -> int:
        _require_predicate(table, predicate)
        stmt = sql.SQL("SELECT count(*) AS n FROM {} WHERE {}").format(
            sql.Identifier(table), _where(predicate)
        )
        with _translated(table):
            row = self.conn.execute(stmt, list(predicate.values())).fetchone()
        return int(row["n"]) if row else 0

    def delete_one(self, table: str, predicate: dict[str, Any]) -> None:
        _require_predicate(table, predicate)
        stmt = sql.SQL("DELETE FROM {} WHERE {}").format(
            sql.Identifier(table), _where(predicate)
        )
        with _translated(table):
            self.conn.execute(stmt, list(predicate.values()))

    def select_rows(
        self,
        table: str,
        columns: Sequence[str],
        predicate: dict[str, Any],
    ) -> list[dict[str, Any]]:
        _require_predicate(table, predicate)
        stmt = sql.SQL("SELECT {} FROM {} WHERE {}").format(
            sql.SQL(", ").join(map(sql.Identifier, columns)),
            sql.Identifier(table),
            _where(predicate),
        )
        with _translated(table):
            rows = self.conn.execute(stmt, list(predicate.values())).fetchall()
        return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# In-memory (tests / dry runs)
# ---------------------------------------------------------------------------

def _default_columns() -> dict[str, set[str] | None]:
    cols: dict[str, set[str] | None] = {
        table: {TENANT_COLUMN, *valid, *SUB_SOURCE_COLUMNS}
        for table, valid in VALID_COLUMNS.items()
    }
    for table, original in ORIGINAL_ID_COLUMNS.items():
        cols[table].add(original)  # type: ignore[union-attr]
    cols[TENANT_TABLE] = {TENANT_COLUMN, "network_name", "subnetworks"}
    for table in FAVORITE_TABLES:
        cols[table] = None
    return cols


def _matches(row: dict[str, Any], predicate: dict[str, Any]) -> bool:
    return all(row.get(k) == v for k, v in predicate.items())


def _sort_key(value: Any) -> tuple[bool, Any]:
    return (value is None, value if value is not None else 0)


@dataclass
class InMemoryGateway:
    """Dict-backed StoreGateway enforcing the same keys and foreign keys as the migrations.

    ``max_rows_per_call`` bounds upsert batches and limited deletes;
    ``without_columns`` emulates an older schema lacking some columns.
    """

    max_rows_per_call: int | None = None
    tables: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    columns: dict[str, set[str] | None] = field(default_factory=_default_columns)

    def without_columns(self, *names: str) -> "InMemoryGateway":
        for table, cols in self.columns.items():
            if cols is not None:
                cols.difference_update(names)
        return self

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def close(self) -> None:
        pass

    def _check_rows(self, table: str, n: int) -> None:
        if self.max_rows_per_call is not None and n > self.max_rows_per_call:
            raise CapacityExceeded(
                f"maximum number of rows per call exceeded on {table}: "
                f"{n} > {self.max_rows_per_call}",
                table=table,
            )

    def _check_columns(self, table: str, row: dict[str, Any]) -> None:
        known = self.columns.get(table)
        if known is None:
            return
        for col in row:
            if col not in known:
                raise UnknownColumnError(
                    f'column "{col}" of relation "{table}" does not exist',
                    table=table,
                    column=col,
                )

    def _check_references(self, table: str, row: dict[str, Any]) -> None:
        for fk in FOREIGN_KEYS:
            if fk.table != table:
                continue
            values = tuple(row.get(c) for c in fk.columns)
            if any(v is None for v in values):
                continue
            wanted = dict(zip(fk.ref_columns, values))
            if not any(_matches(r, wanted) for r in self.rows(fk.ref_table)):
                keys = ", ".join(fk.columns)
                raise ForeignKeyViolation(
                    f'insert or update on table "{table}" violates foreign key '
                    f'constraint "{fk.name}"',
                    table=table,
                    constraint_name=fk.name,
                    detail=f"Key ({keys})=({', '.join(map(str, values))}) "
                    f'is not present in table "{fk.ref_table}".',
                )

    def _check_not_referenced(self, table: str, doomed: list[dict[str, Any]]) -> None:
        for fk in FOREIGN_KEYS:
            if fk.ref_table != table:
                continue
            keys = {tuple(r.get(c) for c in fk.ref_columns) for r in doomed}
            for child in self.rows(fk.table):
                ref = tuple(child.get(c) for c in fk.columns)
                if ref in keys:
                    raise ForeignKeyViolation(
                        f'update or delete on table "{table}" violates foreign key '
                        f'constraint "{fk.name}" on table "{fk.table}"',
                        table=fk.table,
                        constraint_name=fk.name,
                        detail=f"Key ({', '.join(fk.ref_columns)})=({', '.join(map(str, ref))}) "
                        f'is still referenced from table "{fk.table}".',
                    )

    # -- StoreGateway ----------------------------------------------------

    def upsert(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        conflict_columns: Sequence[str],
    ) -> int:
        if not rows:
            return 0
        self._check_rows(table, len(rows))
        for row in rows:
            self._check_columns(table, row)
            self._check_references(table, row)
        existing = self.rows(table)
        staged = [dict(r) for r in existing]
        for row in rows:
            key = {c: row.get(c) for c in conflict_columns}
            for current in staged:
                if _matches(current, key):
                    current.update(row)
                    break
            else:
                staged.append(dict(row))
        self.tables[table] = staged
        return len(rows)

    def delete_where(
        self,
        table: str,
        predicate: dict[str, Any],
        order_by: str | None = None,
        limit: int | None = None,
    ) -> int:
        _require_predicate(table, predicate)
        if limit is not None:
            self._check_rows(table, limit)
        matching = [r for r in self.rows(table) if _matches(r, predicate)]
        if order_by is not None:
            matching.sort(key=lambda r: _sort_key(r.get(order_by)))
        if limit is not None:
            matching = matching[:limit]
        self._check_not_referenced(table, matching)
        doomed = {id(r) for r in matching}
        self.tables[table] = [r for r in self.rows(table) if id(r) not in doomed]
        return len(matching)

    def count_where(self, table: str, predicate: dict[str, Any]) -> int:
        _require_predicate(table, predicate)
        return sum(1 for r in self.rows(table) if _matches(r, predicate))

    def delete_one(self, table: str, predicate: dict[str, Any]) -> None:
        self.delete_where(table, predicate)

    def select_rows(
        self,
        table: str,
        columns: Sequence[str],
        predicate: dict[str, Any],
    ) -> list[dict[str, Any]]:
        _require_predicate(table, predicate)
        self._check_columns(table, dict.fromkeys(columns))
        return [
            {c: r.get(c) for c in columns}
            for r in self.rows(table)
            if _matches(r, predicate)
        ]
