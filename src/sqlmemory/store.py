"""Relational store adapter backed by a single SQLite file.

Every call reports through a StoreResult instead of raising, so callers
decide how to surface a failed statement. Table, column and index names
are checked against a strict identifier pattern before they are placed
into SQL; values always travel as parameters.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Protocol, Sequence

from pydantic import BaseModel, Field

from .constants import BUSY_TIMEOUT_MS, CONNECT_TIMEOUT_SECONDS, IN_MEMORY_DB
from .errors import StoreError

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StoreResult(BaseModel):
    """Uniform outcome of a store call."""

    success: bool
    message: str
    data: Any = None
    error: str | None = None
    execution_time: float | None = None  # milliseconds


class ColumnSpec(BaseModel):
    name: str
    type: str
    constraints: list[str] = Field(default_factory=list)
    default: str | None = None


class IndexSpec(BaseModel):
    name: str
    columns: list[str]
    unique: bool = False


class TableSpec(BaseModel):
    columns: list[ColumnSpec]
    primary_key: list[str] = Field(default_factory=list)
    indexes: list[IndexSpec] = Field(default_factory=list)


class RelationalStore(Protocol):
    """The subset of the adapter the memory engine relies on."""

    def create_table(self, name: str, spec: TableSpec) -> StoreResult: ...

    def create_index(self, table: str, index: IndexSpec) -> StoreResult: ...

    def insert(self, table: str, records: Sequence[Mapping[str, Any]]) -> StoreResult: ...

    def query(
        self,
        table: str,
        conditions: Mapping[str, Any] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> StoreResult: ...

    def update(
        self, table: str, conditions: Mapping[str, Any], fields: Mapping[str, Any]
    ) -> StoreResult: ...

    def delete(self, table: str, conditions: Mapping[str, Any]) -> StoreResult: ...

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> StoreResult: ...

    def transaction(self): ...


def _ident(name: str) -> str:
    """Return ``name`` if it is a plain SQL identifier, else raise ValueError."""
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


def _where(conditions: Mapping[str, Any]) -> tuple[str, list[Any]]:
    clause = " AND ".join(f"{_ident(key)} = ?" for key in conditions)
    return clause, list(conditions.values())


def _index_sql(table: str, index: IndexSpec) -> str:
    unique = "UNIQUE " if index.unique else ""
    columns = ", ".join(_ident(c) for c in index.columns)
    return (
        f"CREATE {unique}INDEX IF NOT EXISTS {_ident(index.name)} "
        f"ON {_ident(table)} ({columns})"
    )


def _rows_payload(cursor: sqlite3.Cursor) -> dict:
    rows = [dict(row) for row in cursor.fetchall()]
    columns = [d[0] for d in cursor.description] if cursor.description else []
    return {"columns": columns, "rows": rows, "row_count": len(rows)}


class SQLiteStore:
    """CRUD, raw SQL and inspection over one SQLite database file.

    The connection runs in autocommit mode; ``transaction()`` groups several
    calls into one ``BEGIN IMMEDIATE ... COMMIT``.
    """

    def __init__(self, db_path: Path | str):
        """Initialize the store.

        Args:
            db_path: Path to the database file, or ":memory:"
        """
        self.in_memory = str(db_path) == IN_MEMORY_DB
        self.db_path = Path(db_path)
        if not self.in_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            target = IN_MEMORY_DB if self.in_memory else str(self.db_path)
            self._conn = sqlite3.connect(
                target, timeout=CONNECT_TIMEOUT_SECONDS, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            if not self.in_memory:
                # WAL so the CLI can read while the server writes
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
        return self._conn

    def _run(
        self,
        failure_message: str,
        op: Callable[[sqlite3.Connection], tuple[str, Any]],
    ) -> StoreResult:
        start = time.perf_counter()
        try:
            message, data = op(self._get_conn())
        except (sqlite3.Error, sqlite3.Warning, ValueError, OSError) as e:
            logger.debug(f"{failure_message}: {e}")
            return StoreResult(success=False, message=failure_message, error=str(e))
        elapsed = (time.perf_counter() - start) * 1000
        return StoreResult(
            success=True, message=message, data=data, execution_time=round(elapsed, 3)
        )

    # --- Transactions ---

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed calls atomically.

        Nested use joins the outer transaction. The transaction rolls back if
        the body raises; the exception is re-raised.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StoreError("Failed to begin transaction", str(e)) from e

        self._tx_depth = 1
        try:
            yield
        except BaseException:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            raise
        else:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StoreError("Failed to commit transaction", str(e)) from e
        finally:
            self._tx_depth = 0

    # --- Schema ---

    def create_table(self, name: str, spec: TableSpec) -> StoreResult:
        """CREATE TABLE IF NOT EXISTS, plus any indexes in the spec."""

        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            definitions = []
            for column in spec.columns:
                parts = [_ident(column.name), column.type, *column.constraints]
                if column.default is not None:
                    parts.append(f"DEFAULT {column.default}")
                definitions.append(" ".join(parts))
            if spec.primary_key:
                keys = ", ".join(_ident(c) for c in spec.primary_key)
                definitions.append(f"PRIMARY KEY ({keys})")
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {_ident(name)} ({', '.join(definitions)})"
            )
            for index in spec.indexes:
                conn.execute(_index_sql(name, index))
            return f"Table '{name}' created successfully", None

        return self._run(f"Failed to create table '{name}'", op)

    def create_index(self, table: str, index: IndexSpec) -> StoreResult:
        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            conn.execute(_index_sql(table, index))
            return f"Index '{index.name}' created successfully", None

        return self._run(f"Failed to create index '{index.name}'", op)

    def list_tables(self) -> StoreResult:
        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            rows = conn.execute(
                "SELECT name FROM sqlite_master "
                "WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ).fetchall()
            tables = [row["name"] for row in rows]
            return f"Found {len(tables)} tables", tables

        return self._run("Failed to list tables", op)

    def describe_table(self, table: str) -> StoreResult:
        """Columns, indexes and row count of a table."""

        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            name = _ident(table)
            columns = [
                {
                    "name": row["name"],
                    "type": row["type"],
                    "nullable": row["notnull"] == 0,
                    "default": row["dflt_value"],
                    "primary_key": row["pk"] > 0,
                }
                for row in conn.execute(f"PRAGMA table_info({name})").fetchall()
            ]
            if not columns:
                raise ValueError(f"Table '{table}' does not exist")

            indexes = []
            for row in conn.execute(f"PRAGMA index_list({name})").fetchall():
                index_columns = conn.execute(
                    f"PRAGMA index_info({_ident(row['name'])})"
                ).fetchall()
                indexes.append({
                    "name": row["name"],
                    "columns": [c["name"] for c in index_columns],
                    "unique": row["unique"] == 1,
                    "origin": row["origin"],
                })
            indexes.sort(key=lambda i: i["name"])

            row_count = conn.execute(f"SELECT COUNT(*) FROM {name}").fetchone()[0]
            return f"Table '{table}' described successfully", {
                "name": table,
                "columns": columns,
                "indexes": indexes,
                "row_count": row_count,
            }

        return self._run(f"Failed to describe table '{table}'", op)

    # --- CRUD ---

    def insert(self, table: str, records: Sequence[Mapping[str, Any]]) -> StoreResult:
        """Insert records; column names are taken from the first record."""

        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            if not records:
                raise ValueError("Empty records array")
            columns = list(records[0].keys())
            placeholders = ", ".join("?" for _ in columns)
            sql = (
                f"INSERT INTO {_ident(table)} "
                f"({', '.join(_ident(c) for c in columns)}) VALUES ({placeholders})"
            )
            last_row_id = None
            for record in records:
                cursor = conn.execute(sql, [record.get(c) for c in columns])
                last_row_id = cursor.lastrowid
            return f"{len(records)} records inserted successfully", {
                "inserted_count": len(records),
                "last_row_id": last_row_id,
            }

        return self._run("Failed to insert data", op)

    def query(
        self,
        table: str,
        conditions: Mapping[str, Any] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> StoreResult:
        """SELECT * with equality conditions joined by AND."""

        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            sql = f"SELECT * FROM {_ident(table)}"
            params: list[Any] = []
            if conditions:
                clause, params = _where(conditions)
                sql += f" WHERE {clause}"
            if order_by:
                sql += f" ORDER BY {_ident(order_by)} {'DESC' if descending else 'ASC'}"
            if limit is not None:
                sql += " LIMIT ?"
                params.append(int(limit))
            elif offset:
                sql += " LIMIT -1"
            if offset:
                sql += " OFFSET ?"
                params.append(int(offset))
            return "Query executed successfully", _rows_payload(conn.execute(sql, params))

        return self._run("Failed to query data", op)

    def update(
        self, table: str, conditions: Mapping[str, Any], fields: Mapping[str, Any]
    ) -> StoreResult:
        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            if not conditions:
                raise ValueError("Update requires at least one condition")
            if not fields:
                raise ValueError("Update requires at least one field")
            assignments = ", ".join(f"{_ident(key)} = ?" for key in fields)
            clause, where_params = _where(conditions)
            cursor = conn.execute(
                f"UPDATE {_ident(table)} SET {assignments} WHERE {clause}",
                [*fields.values(), *where_params],
            )
            return f"{cursor.rowcount} records updated successfully", {
                "changes": cursor.rowcount
            }

        return self._run("Failed to update data", op)

    def delete(self, table: str, conditions: Mapping[str, Any]) -> StoreResult:
        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            if not conditions:
                raise ValueError("Delete requires at least one condition")
            clause, params = _where(conditions)
            cursor = conn.execute(f"DELETE FROM {_ident(table)} WHERE {clause}", params)
            return f"{cursor.rowcount} records deleted successfully", {
                "changes": cursor.rowcount
            }

        return self._run("Failed to delete data", op)

    def count(self, table: str, conditions: Mapping[str, Any] | None = None) -> StoreResult:
        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            sql = f"SELECT COUNT(*) FROM {_ident(table)}"
            params: list[Any] = []
            if conditions:
                clause, params = _where(conditions)
                sql += f" WHERE {clause}"
            count = conn.execute(sql, params).fetchone()[0]
            return f"Count: {count}", {"count": count}

        return self._run("Failed to count records", op)

    def execute(
        self, sql: str, params: Sequence[Any] | Mapping[str, Any] | None = None
    ) -> StoreResult:
        """Run one raw statement.

        Statements that produce a result set return rows; anything else
        returns the number of changed rows. A statement that leaves a
        transaction open (BEGIN, SAVEPOINT) is rolled back and reported as a
        failure; ``transaction()`` is the way to group writes.
        """

        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            cursor = conn.execute(sql, params if params is not None else ())
            if conn.in_transaction and not self._tx_depth:
                conn.execute("ROLLBACK")
                raise ValueError("Statement left a transaction open; it was rolled back")
            if cursor.description is not None:
                return "SQL query executed successfully", _rows_payload(cursor)
            return "SQL query executed successfully", {"changes": cursor.rowcount}

        return self._run("Failed to execute SQL query", op)

    # --- Maintenance ---

    def backup(self, dest_path: Path | str) -> StoreResult:
        """Copy the live database to ``dest_path`` with the sqlite backup API."""

        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            dest = Path(dest_path)
            dest.parent.mkdir(parents=True, exist_ok=True)
            target = sqlite3.connect(str(dest))
            try:
                conn.backup(target)
            finally:
                target.close()
            return f"Database backed up to {dest}", {"backup_path": str(dest)}

        return self._run("Failed to backup database", op)

    def restore(self, source_path: Path | str) -> StoreResult:
        """Replace the live database contents with a backup file."""

        def op(conn: sqlite3.Connection) -> tuple[str, Any]:
            source = Path(source_path)
            if not source.is_file():
                raise ValueError(f"Backup file '{source}' does not exist")
            if self._tx_depth:
                raise ValueError("Cannot restore inside a transaction")
            backup = sqlite3.connect(str(source))
            try:
                backup.backup(conn)
            finally:
                backup.close()
            return f"Database restored from {source}", {"restored_from": str(source)}

        return self._run("Failed to restore database", op)

    def close(self) -> None:
        """Close database connection.

        Rolls back a transaction left open, then forces a WAL checkpoint so
        the main database file holds every committed change.
        """
        if self._conn is not None:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            if not self.in_memory:
                self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            self._conn.close()
            self._conn = None
