"""
Centralized Database Access for keyswap.

Single source of truth for:
- Connection factory (scoped acquisition via open_engine)
- The StorageEngine handle every component receives explicitly
- Schema introspection (columns, indexes, foreign keys, triggers)
- Transaction boundaries and bounded retry of single statements

The handle is never a process-wide singleton: the orchestrator gets it from
the caller and the caller releases it when the ``with`` block ends.

Connections run in autocommit mode (isolation_level=None). A statement
outside ``transaction()`` is durable once it returns; ``transaction()``
issues BEGIN IMMEDIATE / COMMIT explicitly. SQLite DDL is transactional, so
a swap inside ``transaction()`` rolls back as a unit.
"""

import logging
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import config, safe_sql
from .errors import StorageUnavailable
from .resilience import RetryConfig, retry_with_backoff

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnInfo:
    """One column as reported by PRAGMA table_xinfo."""

    name: str
    type: str
    notnull: bool
    default: Any
    pk: int
    hidden: int = 0

    @property
    def nullable(self) -> bool:
        return not self.notnull


@dataclass(frozen=True)
class IndexInfo:
    """One index on a table.

    origin is "c" for CREATE INDEX, "u" for a UNIQUE constraint and "pk" for
    the primary key. sql is None for the automatic indexes.
    """

    name: str
    unique: bool
    origin: str
    partial: bool
    columns: tuple[str, ...] = field(default_factory=tuple)
    sql: str | None = None


@dataclass(frozen=True)
class ForeignKeyInfo:
    table: str
    from_column: str
    to_table: str
    to_column: str | None


class StorageEngine:
    """
    Handle over one sqlite3 connection.

    Usage:
        with open_engine("app.db") as engine:
            engine.execute(...)
    """

    supports_transactional_ddl = True

    def __init__(
        self,
        conn: sqlite3.Connection,
        retry: RetryConfig | None = None,
        path: str | None = None,
    ):
        self.conn = conn
        self.retry = retry or RetryConfig()
        self.path = path

    # ------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        """Execute one statement, retrying transient lock/I-O errors."""
        params = tuple(params)
        logger.debug("SQL: %s %s", sql, params)
        return self._with_retry(lambda: self.conn.execute(sql, params))

    def executemany(self, sql: str, rows: list[tuple]) -> int:
        if not rows:
            return 0
        cursor = self._with_retry(lambda: self.conn.executemany(sql, rows))
        return cursor.rowcount

    def _with_retry(self, func):
        """
        Retry *func* on transient errors, unless SQLite already rolled back
        the surrounding transaction.

        Re-running a statement after an automatic rollback would put it (and
        the rest of the ``transaction()`` block) in autocommit mode.
        """
        was_open = self.conn.in_transaction

        def attempt():
            try:
                return func()
            except sqlite3.OperationalError as e:
                if was_open and not self.conn.in_transaction:
                    raise StorageUnavailable(f"Transaction rolled back by SQLite: {e}") from e
                raise

        return retry_with_backoff(attempt, self.retry, logger)

    def query_all(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    def query_scalar(self, sql: str, params: Iterable[Any] = ()) -> Any:
        row = self.execute(sql, params).fetchone()
        return row[0] if row is not None else None

    @property
    def in_transaction(self) -> bool:
        return self.conn.in_transaction

    @contextmanager
    def transaction(self) -> Generator["StorageEngine", None, None]:
        """
        BEGIN IMMEDIATE ... COMMIT, ROLLBACK on any exception.

        Joins the surrounding transaction if one is already open, so a
        global swap boundary can wrap per-table work.
        """
        if self.conn.in_transaction:
            yield self
            return

        self.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except BaseException:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise
        else:
            self.execute("COMMIT")

    # ------------------------------------------------------------
    # Schema introspection
    # ------------------------------------------------------------

    def schemas(self) -> list[str]:
        return [row["name"] for row in self.query_all("PRAGMA database_list")]

    def attach(self, name: str, path: str | Path) -> None:
        safe_sql.validate_identifier(name)
        self.execute(f"ATTACH DATABASE ? AS [{name}]", (str(path),))
        logger.info("Attached %s as schema %s", path, name)

    def table_exists(self, schema: str | None, table: str) -> bool:
        if (schema or safe_sql.DEFAULT_SCHEMA) not in self.schemas():
            return False
        rows = self.query_all(
            safe_sql.select_master(schema, "type = 'table' AND name = ?"), (table,)
        )
        return bool(rows)

    def columns(self, schema: str | None, table: str) -> dict[str, ColumnInfo]:
        """Column name -> ColumnInfo, in table order."""
        rows = self.query_all(safe_sql.pragma_table_xinfo(schema, table))
        return {
            row["name"]: ColumnInfo(
                name=row["name"],
                type=row["type"] or "",
                notnull=bool(row["notnull"]),
                default=row["dflt_value"],
                pk=row["pk"],
                hidden=row["hidden"],
            )
            for row in rows
        }

    def indexes(self, schema: str | None, table: str) -> list[IndexInfo]:
        result = []
        for row in self.query_all(safe_sql.pragma_index_list(schema, table)):
            name = row["name"]
            cols = tuple(
                info["name"] for info in self.query_all(safe_sql.pragma_index_info(schema, name))
            )
            sql_rows = self.query_all(
                safe_sql.select_master(schema, "type = 'index' AND name = ?"), (name,)
            )
            result.append(
                IndexInfo(
                    name=name,
                    unique=bool(row["unique"]),
                    origin=row["origin"],
                    partial=bool(row["partial"]),
                    columns=cols,
                    sql=sql_rows[0]["sql"] if sql_rows else None,
                )
            )
        return result

    def foreign_keys(self, schema: str | None, table: str) -> list[ForeignKeyInfo]:
        return [
            ForeignKeyInfo(
                table=table,
                from_column=row["from"],
                to_table=row["table"],
                to_column=row["to"],
            )
            for row in self.query_all(safe_sql.pragma_foreign_key_list(schema, table))
        ]

    def tables(self, schema: str | None) -> list[str]:
        rows = self.query_all(
            safe_sql.select_master(schema, "type = 'table' AND name NOT LIKE 'sqlite_%'")
        )
        return [row["name"] for row in rows]

    def triggers(self, schema: str | None, table: str) -> list[str]:
        rows = self.query_all(
            safe_sql.select_master(schema, "type = 'trigger' AND tbl_name = ?"), (table,)
        )
        return [row["name"] for row in rows]

    def count(self, schema: str | None, table: str, where: str | None = None, params=()) -> int:
        return int(self.query_scalar(safe_sql.select_count_bare(schema, table, where), params))


# ============================================================
# DB PATH RESOLUTION
# ============================================================


def get_db_path(explicit: str | None = None) -> Path:
    """
    Resolve the database path.

    Resolution order:
    1. explicit argument (CLI --db)
    2. KEYSWAP_DB env var
    """
    value = explicit or config.DB_PATH
    if not value:
        raise ValueError("No database given: pass --db or set KEYSWAP_DB")
    return Path(value).expanduser()


# ============================================================
# CONNECTION FACTORY
# ============================================================


@contextmanager
def open_engine(
    db_path: str | Path,
    attach: dict[str, str | Path] | None = None,
    retry: RetryConfig | None = None,
    busy_timeout: float = config.BUSY_TIMEOUT_SECONDS,
) -> Generator[StorageEngine, None, None]:
    """
    Open a StorageEngine and guarantee the connection is closed.

    Usage:
        with open_engine("app.db", attach={"tenant": "tenant.db"}) as engine:
            report = run(plan, engine)
    """
    path_str = str(db_path)
    if path_str != ":memory:":
        Path(path_str).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path_str, timeout=busy_timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    engine = StorageEngine(conn, retry=retry, path=path_str)
    try:
        for name, attached_path in (attach or {}).items():
            engine.attach(name, attached_path)
        logger.debug("Opened %s (sqlite %s)", path_str, sqlite3.sqlite_version)
        yield engine
    finally:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        conn.close()
