"""
Schema Mutator: one DDL statement per call.

Each primitive checks the current schema first and raises SchemaConflict when
the target is already in the desired (or an impossible) state. Callers decide
whether "already applied" is fine; nothing here skips silently.

Outside a transaction every call is a durable checkpoint once it returns.
"""

import logging
import sqlite3

from . import safe_sql
from .db import IndexInfo, StorageEngine
from .errors import SchemaConflict
from .plan import TargetTable

logger = logging.getLogger(__name__)


class SchemaMutator:
    """Add/drop/rename columns and indexes on a TargetTable."""

    def __init__(self, engine: StorageEngine):
        self.engine = engine

    # ------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------

    def columns(self, table: TargetTable) -> dict:
        return self.engine.columns(table.schema, table.name)

    def column_exists(self, table: TargetTable, name: str) -> bool:
        return name in self.columns(table)

    def column_type(self, table: TargetTable, name: str) -> str | None:
        info = self.columns(table).get(name)
        return info.type if info else None

    def indexes_on(self, table: TargetTable, column: str) -> list[IndexInfo]:
        """Every index of the table that covers *column*."""
        return [
            idx for idx in self.engine.indexes(table.schema, table.name) if column in idx.columns
        ]

    def _index_exists(self, table: TargetTable, name: str) -> bool:
        return any(idx.name == name for idx in self.engine.indexes(table.schema, table.name))

    def check_droppable(self, table: TargetTable, column: str) -> None:
        """
        Raise SchemaConflict if SQLite would refuse ALTER TABLE DROP COLUMN.

        Blocks: primary key, UNIQUE constraint, a foreign key declared on the
        column, and a foreign key elsewhere in the schema pointing at it.
        """
        info = self.columns(table).get(column)
        if info is None:
            raise SchemaConflict(f"{table.key}.{column} does not exist", table.key, column)
        if info.pk:
            raise SchemaConflict(f"{table.key}.{column} is part of the primary key", table.key, column)
        for idx in self.indexes_on(table, column):
            if idx.origin in ("u", "pk"):
                raise SchemaConflict(
                    f"{table.key}.{column} has a UNIQUE constraint ({idx.name}); "
                    "use a unique index instead",
                    table.key,
                    column,
                )
        for fk in self.engine.foreign_keys(table.schema, table.name):
            if fk.from_column == column:
                raise SchemaConflict(
                    f"{table.key}.{column} declares a foreign key to {fk.to_table}",
                    table.key,
                    column,
                )
        for other in self.engine.tables(table.schema):
            for fk in self.engine.foreign_keys(table.schema, other):
                if fk.to_table == table.name and fk.to_column == column:
                    raise SchemaConflict(
                        f"{table.schema}.{other}.{fk.from_column} declares a foreign key "
                        f"to {table.key}.{column}",
                        table.key,
                        column,
                    )

    # ------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------

    def add_column(
        self,
        table: TargetTable,
        name: str,
        column_type: str,
        nullable: bool = True,
        default=None,
    ) -> None:
        if self.column_exists(table, name):
            raise SchemaConflict(f"{table.key}.{name} already exists", table.key, name)
        try:
            self.engine.execute(
                safe_sql.alter_add_column(table.schema, table.name, name, column_type, nullable, default)
            )
        except sqlite3.OperationalError as e:
            if "duplicate column" in str(e).lower():
                raise SchemaConflict(f"{table.key}.{name} already exists", table.key, name) from e
            raise
        logger.info("Added column %s.%s %s", table.key, name, column_type)

    def drop_column(self, table: TargetTable, name: str) -> None:
        if not self.column_exists(table, name):
            raise SchemaConflict(f"{table.key}.{name} does not exist", table.key, name)
        self.engine.execute(safe_sql.alter_drop_column(table.schema, table.name, name))
        logger.info("Dropped column %s.%s", table.key, name)

    def rename_column(self, table: TargetTable, old: str, new: str) -> None:
        cols = self.columns(table)
        if old not in cols:
            raise SchemaConflict(f"{table.key}.{old} does not exist", table.key, old)
        if new in cols:
            raise SchemaConflict(f"{table.key}.{new} already exists", table.key, new)
        self.engine.execute(safe_sql.alter_rename_column(table.schema, table.name, old, new))
        logger.info("Renamed column %s.%s -> %s", table.key, old, new)

    # ------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------

    def _add_index(self, table: TargetTable, column: str, unique: bool, name: str | None) -> str:
        index = name or safe_sql.index_name(table.name, column, unique)
        if not self.column_exists(table, column):
            raise SchemaConflict(f"{table.key}.{column} does not exist", table.key, column)
        if self._index_exists(table, index):
            raise SchemaConflict(f"Index {table.schema}.{index} already exists", table.key, index)
        self.engine.execute(safe_sql.create_index(table.schema, table.name, column, index, unique))
        logger.info("Created %sindex %s on %s(%s)", "unique " if unique else "", index, table.key, column)
        return index

    def add_unique_index(self, table: TargetTable, column: str, name: str | None = None) -> str:
        return self._add_index(table, column, True, name)

    def add_index(self, table: TargetTable, column: str, name: str | None = None) -> str:
        return self._add_index(table, column, False, name)

    def drop_index(self, table: TargetTable, column: str) -> list[str]:
        """Drop every explicit index covering *column*. Returns the dropped names."""
        explicit = [idx for idx in self.indexes_on(table, column) if idx.origin == "c"]
        if not explicit:
            raise SchemaConflict(f"No index on {table.key}.{column}", table.key, column)
        for idx in explicit:
            self.drop_index_named(table, idx.name)
        return [idx.name for idx in explicit]

    def drop_index_named(self, table: TargetTable, name: str) -> None:
        if not self._index_exists(table, name):
            raise SchemaConflict(f"Index {table.schema}.{name} does not exist", table.key, name)
        self.engine.execute(safe_sql.drop_index(table.schema, name))
        logger.info("Dropped index %s.%s", table.schema, name)

    def restore_index(self, table: TargetTable, index: IndexInfo) -> None:
        """Re-create an index from its stored CREATE INDEX statement."""
        if index.sql is None:
            raise SchemaConflict(f"Index {index.name} has no stored definition", table.key, index.name)
        if self._index_exists(table, index.name):
            raise SchemaConflict(f"Index {table.schema}.{index.name} already exists", table.key, index.name)
        sql = index.sql
        if table.schema != safe_sql.DEFAULT_SCHEMA:
            sql = _qualify_index_sql(sql, table.schema, index.name)
        self.engine.execute(sql)
        logger.info("Restored index %s on %s", index.name, table.key)


def _qualify_index_sql(sql: str, schema: str, name: str) -> str:
    """sqlite_master keeps the unqualified CREATE INDEX text; put it back in *schema*."""
    safe_sql.validate_identifier(schema)
    for quoted in (f'"{name}"', f"[{name}]", f"`{name}`", name):
        head, sep, tail = sql.partition(quoted)
        if sep:
            if head.rstrip().endswith("."):
                return sql
            return f"{head}[{schema}].{quoted}{tail}"
    raise SchemaConflict(f"Cannot locate index name {name} in its definition")
