"""
Centralized SQL construction with validated identifiers.

All dynamic SQL assembly lives here. Schema, table, column, index and trigger
names are validated against _SAFE_IDENTIFIER_RE before interpolation. Values
are always passed as parameterized ? and never interpolated.

SQLite does not support parameterized identifiers (? works only for values,
not table/column names), so every f-string in this file is a
validated-identifier interpolation. Identifiers are bracket-quoted.

Tables may live in an attached database. ``qualified("tenant", "products")``
yields ``[tenant].[products]``; ``main`` is the default schema.
"""

# ruff: noqa: S608: all identifiers validated via _validate() before interpolation.

from __future__ import annotations

import re

_SAFE_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

# Column types a shadow column may be declared with.
_SAFE_TYPE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_ ]*(\(\s*\d+(\s*,\s*\d+)?\s*\))?$")

DEFAULT_SCHEMA = "main"


def _validate(name: str) -> str:
    """Validate that *name* is a safe SQL identifier.

    Returns the name unchanged if valid; raises ValueError otherwise.
    """
    if not isinstance(name, str) or not _SAFE_IDENTIFIER_RE.fullmatch(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def validate_identifier(name: str) -> str:
    """Public alias used by plan validation."""
    return _validate(name)


def validate_column_type(column_type: str) -> str:
    """Validate a declared column type such as ``TEXT`` or ``VARCHAR(36)``."""
    if not isinstance(column_type, str) or not _SAFE_TYPE_RE.fullmatch(column_type.strip()):
        raise ValueError(f"Invalid column type: {column_type!r}")
    return column_type.strip()


def qualified(schema: str | None, table: str) -> str:
    """``[schema].[table]`` with both parts validated."""
    return f"[{_validate(schema or DEFAULT_SCHEMA)}].[{_validate(table)}]"


def _literal(value) -> str:
    """Render a DEFAULT literal. Only numbers, NULL and plain strings are allowed."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    raise ValueError(f"Unsupported DEFAULT value: {value!r}")


# ────────────────────────────────────────────────────────────
# PRAGMA helpers (SQLite metadata: cannot use ? for identifiers)
# ────────────────────────────────────────────────────────────


def pragma_table_xinfo(schema: str | None, table: str) -> str:
    """PRAGMA table_xinfo for a validated, schema-qualified table."""
    return f"PRAGMA [{_validate(schema or DEFAULT_SCHEMA)}].table_xinfo([{_validate(table)}])"


def pragma_index_list(schema: str | None, table: str) -> str:
    return f"PRAGMA [{_validate(schema or DEFAULT_SCHEMA)}].index_list([{_validate(table)}])"


def pragma_index_info(schema: str | None, index: str) -> str:
    return f"PRAGMA [{_validate(schema or DEFAULT_SCHEMA)}].index_info([{_validate(index)}])"


def pragma_foreign_key_list(schema: str | None, table: str) -> str:
    return f"PRAGMA [{_validate(schema or DEFAULT_SCHEMA)}].foreign_key_list([{_validate(table)}])"


def select_master(schema: str | None, where: str) -> str:
    """SELECT name, sql FROM <schema>.sqlite_master WHERE ..."""
    return f"SELECT name, sql FROM [{_validate(schema or DEFAULT_SCHEMA)}].sqlite_master WHERE {where}"


# ────────────────────────────────────────────────────────────
# DDL: ALTER, CREATE INDEX, DROP INDEX, TRIGGERS
# ────────────────────────────────────────────────────────────


def alter_add_column(
    schema: str | None,
    table: str,
    column: str,
    column_type: str,
    nullable: bool = True,
    default=None,
) -> str:
    """Build ALTER TABLE ADD COLUMN with validated identifiers."""
    sql = (
        f"ALTER TABLE {qualified(schema, table)} "
        f"ADD COLUMN [{_validate(column)}] {validate_column_type(column_type)}"
    )
    if not nullable:
        sql += " NOT NULL"
    if default is not None or not nullable:
        sql += f" DEFAULT {_literal(default)}"
    return sql


def alter_drop_column(schema: str | None, table: str, column: str) -> str:
    return f"ALTER TABLE {qualified(schema, table)} DROP COLUMN [{_validate(column)}]"


def alter_rename_column(schema: str | None, table: str, old: str, new: str) -> str:
    return (
        f"ALTER TABLE {qualified(schema, table)} "
        f"RENAME COLUMN [{_validate(old)}] TO [{_validate(new)}]"
    )


def index_name(table: str, column: str, unique: bool) -> str:
    """Conventional index name: ``ux_<table>_<column>`` or ``ix_<table>_<column>``."""
    prefix = "ux" if unique else "ix"
    return _validate(f"{prefix}_{_validate(table)}_{_validate(column)}")


def create_index(
    schema: str | None, table: str, column: str, name: str, unique: bool = False
) -> str:
    """CREATE [UNIQUE] INDEX [schema].[name] ON [table] ([column]).

    SQLite qualifies the index, not the table: the index always lives in the
    table's database.
    """
    kind = "UNIQUE INDEX" if unique else "INDEX"
    return (
        f"CREATE {kind} [{_validate(schema or DEFAULT_SCHEMA)}].[{_validate(name)}] "
        f"ON [{_validate(table)}] ([{_validate(column)}])"
    )


def drop_index(schema: str | None, name: str) -> str:
    return f"DROP INDEX [{_validate(schema or DEFAULT_SCHEMA)}].[{_validate(name)}]"


def drop_trigger(schema: str | None, name: str) -> str:
    return f"DROP TRIGGER IF EXISTS [{_validate(schema or DEFAULT_SCHEMA)}].[{_validate(name)}]"


# ────────────────────────────────────────────────────────────
# DML: batch SELECT, UPDATE, COUNT
# ────────────────────────────────────────────────────────────


def select_batch(
    schema: str | None,
    table: str,
    key: str,
    columns: list[str],
    shadow: str,
    not_null: str | None = None,
) -> str:
    """Keyset page of rows still missing a shadow value.

    Rows whose batch key is NULL can never be addressed by key and are skipped.

    Parameters: (last_key, last_key, limit). Pass ``None`` as last_key for
    the first page.
    """
    cols = ", ".join(f"[{_validate(c)}]" for c in [key, *columns])
    conditions = [f"[{_validate(shadow)}] IS NULL", f"[{_validate(key)}] IS NOT NULL"]
    if not_null:
        conditions.append(f"[{_validate(not_null)}] IS NOT NULL")
    conditions.append(f"(? IS NULL OR [{_validate(key)}] > ?)")
    return (
        f"SELECT {cols} FROM {qualified(schema, table)} "
        f"WHERE {' AND '.join(conditions)} "
        f"ORDER BY [{key}] LIMIT ?"
    )


def update_by_key(schema: str | None, table: str, column: str, key: str) -> str:
    """UPDATE one row's column by key, only while it is still NULL."""
    return (
        f"UPDATE {qualified(schema, table)} SET [{_validate(column)}] = ? "
        f"WHERE [{_validate(key)}] = ? AND [{column}] IS NULL"
    )


def select_lookup(schema: str | None, table: str, source: str, target: str, count: int) -> str:
    """SELECT source, target FROM table WHERE source IN (?, ...)."""
    return (
        f"SELECT [{_validate(source)}], [{_validate(target)}] FROM {qualified(schema, table)} "
        f"WHERE [{source}] IN ({in_placeholders(count)})"
    )


def select_count_bare(schema: str | None, table: str, where: str | None = None) -> str:
    """Build SELECT COUNT(*) with validated table name."""
    sql = f"SELECT COUNT(*) FROM {qualified(schema, table)}"
    if where:
        sql += f" WHERE {where}"
    return sql


def count_null_shadow(
    schema: str | None, table: str, shadow: str, source: str | None = None
) -> str:
    """Rows whose shadow column is NULL (and whose source is not)."""
    where = f"[{_validate(shadow)}] IS NULL"
    if source:
        where += f" AND [{_validate(source)}] IS NOT NULL"
    return select_count_bare(schema, table, where)


def count_null(schema: str | None, table: str, column: str) -> str:
    """Rows whose *column* is NULL."""
    return select_count_bare(schema, table, f"[{_validate(column)}] IS NULL")


def count_orphans(
    schema: str | None,
    table: str,
    column: str,
    ref_schema: str | None,
    ref_table: str,
    ref_column: str,
) -> str:
    """Rows whose non-null *column* has no match in ref_table.ref_column."""
    return select_count_bare(
        schema,
        table,
        f"[{_validate(column)}] IS NOT NULL AND NOT EXISTS ("
        f"SELECT 1 FROM {qualified(ref_schema, ref_table)} r "
        f"WHERE r.[{_validate(ref_column)}] = {qualified(schema, table)}.[{column}])",
    )


def count_mistranslated(
    schema: str | None,
    table: str,
    old_column: str,
    shadow: str,
    ref_schema: str | None,
    ref_table: str,
    ref_old: str,
    ref_shadow: str,
) -> str:
    """Rows whose shadow differs from what the old foreign key resolves to."""
    src = qualified(schema, table)
    return select_count_bare(
        schema,
        table,
        f"[{_validate(old_column)}] IS NOT NULL AND [{_validate(shadow)}] IS NOT "
        f"(SELECT r.[{_validate(ref_shadow)}] FROM {qualified(ref_schema, ref_table)} r "
        f"WHERE r.[{_validate(ref_old)}] = {src}.[{old_column}])",
    )


def reset_mistranslated(
    schema: str | None,
    table: str,
    key: str,
    old_column: str,
    shadow: str,
    ref_schema: str | None,
    ref_table: str,
    ref_old: str,
    ref_shadow: str,
) -> str:
    """NULL out shadows that disagree with the old foreign key so a backfill pass redoes them."""
    src = qualified(schema, table)
    key = _validate(key)
    return (
        f"UPDATE {src} SET [{_validate(shadow)}] = NULL WHERE [{key}] IN ("
        f"SELECT s.[{key}] FROM {src} s "
        f"WHERE s.[{_validate(old_column)}] IS NOT NULL AND s.[{shadow}] IS NOT NULL "
        f"AND s.[{shadow}] IS NOT "
        f"(SELECT r.[{_validate(ref_shadow)}] FROM {qualified(ref_schema, ref_table)} r "
        f"WHERE r.[{_validate(ref_old)}] = s.[{old_column}]))"
    )


# ────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────


def in_placeholders(count: int) -> str:
    """Return ``?,?,?`` for use in ``IN (...)`` clauses."""
    if count <= 0:
        raise ValueError(f"IN clause needs at least 1 placeholder, got {count}")
    return ",".join("?" for _ in range(count))
