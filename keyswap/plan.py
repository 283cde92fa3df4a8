"""
Migration plans.

A MigrationPlan declares, per table, the old identity column, its shadow
column, and the reference columns that must be translated in lockstep.
Plans are immutable once built and are usually loaded from YAML:

    name: shop
    batch_size: 500
    swap_boundary: table        # or "global"
    sync_triggers: true
    tables:
      - name: colors
        identity:
          column: color_id
          timestamp_column: created_at
      - name: products
        identity: {column: product_id, timestamp_column: created_at}
        references:
          - column: color_id
            references: colors   # or "tenant.colors"

Usage:
    from keyswap.plan import load_plan

    plan = load_plan("plan.yaml")
    for table in plan.ordered_tables():
        ...
"""

import logging
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from pathlib import Path
from typing import Any

import yaml

from . import config, safe_sql
from .errors import PlanError

logger = logging.getLogger(__name__)

SWAP_BOUNDARIES = ("table", "global")


@dataclass(frozen=True)
class IdentitySpec:
    """The integer identity column being replaced and its shadow."""

    column: str
    shadow_column: str
    shadow_type: str = config.DEFAULT_SHADOW_TYPE
    timestamp_column: str | None = None


@dataclass(frozen=True)
class ReferenceColumn:
    """A column in `schema.table` holding keys of `ref_schema.ref_table`."""

    schema: str
    table: str
    column: str
    shadow_column: str
    ref_schema: str
    ref_table: str
    shadow_type: str = config.DEFAULT_SHADOW_TYPE

    @property
    def key(self) -> str:
        return f"{self.schema}.{self.table}.{self.column}"

    @property
    def table_key(self) -> str:
        return f"{self.schema}.{self.table}"

    @property
    def referenced_key(self) -> str:
        return f"{self.ref_schema}.{self.ref_table}"


@dataclass(frozen=True)
class TargetTable:
    """A table undergoing migration."""

    name: str
    schema: str = safe_sql.DEFAULT_SCHEMA
    identity: IdentitySpec | None = None
    references: tuple[ReferenceColumn, ...] = ()
    order_by: str | None = None

    @property
    def key(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def batch_key(self) -> str:
        """Stable, unique, non-null column used for keyset batching."""
        if self.order_by:
            return self.order_by
        if self.identity:
            return self.identity.column
        return "rowid"

    def column_pairs(self) -> list[tuple[str, str, str]]:
        """(old column, shadow column, shadow type) for identity then references."""
        pairs = []
        if self.identity:
            pairs.append(
                (self.identity.column, self.identity.shadow_column, self.identity.shadow_type)
            )
        for ref in self.references:
            pairs.append((ref.column, ref.shadow_column, ref.shadow_type))
        return pairs


@dataclass(frozen=True)
class MigrationPlan:
    """Immutable description of one migration run."""

    name: str
    tables: tuple[TargetTable, ...]
    batch_size: int = config.BATCH_SIZE
    swap_boundary: str = "table"
    sync_triggers: bool = True
    durable_checkpoints: bool = False
    _by_key: dict = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_by_key", {t.key: t for t in self.tables})
        self.validate()

    def table(self, key: str) -> TargetTable:
        try:
            return self._by_key[key]
        except KeyError:
            raise PlanError(f"Unknown table in plan: {key}") from None

    def referenced_table(self, ref: ReferenceColumn) -> TargetTable:
        return self.table(ref.referenced_key)

    def all_references(self) -> list[ReferenceColumn]:
        return [ref for t in self.ordered_tables() for ref in t.references]

    def validate(self) -> None:
        """Raise PlanError describing the first problem found."""
        if not self.tables:
            raise PlanError("Plan has no tables")
        if not isinstance(self.batch_size, int) or self.batch_size <= 0:
            raise PlanError(f"batch_size must be a positive integer, got {self.batch_size!r}")
        if self.swap_boundary not in SWAP_BOUNDARIES:
            raise PlanError(
                f"swap_boundary must be one of {SWAP_BOUNDARIES}, got {self.swap_boundary!r}"
            )
        if len(self._by_key) != len(self.tables):
            raise PlanError("Duplicate table in plan")

        for table in self.tables:
            _validate_table(table)
            for ref in table.references:
                target = self._by_key.get(ref.referenced_key)
                if target is None:
                    raise PlanError(f"{ref.key} references {ref.referenced_key}, which is not in the plan")
                if target.identity is None:
                    raise PlanError(
                        f"{ref.key} references {ref.referenced_key}, which has no identity column"
                    )

        self.ordered_tables()

    def ordered_tables(self) -> list[TargetTable]:
        """Tables with every referenced table before the tables that reference it.

        Self-references are allowed (a table's identity is always backfilled
        before its own references). Ties keep declaration order.
        """
        position = {t.key: i for i, t in enumerate(self.tables)}
        sorter = TopologicalSorter()
        for table in self.tables:
            deps = {r.referenced_key for r in table.references if r.referenced_key != table.key}
            sorter.add(table.key, *deps)
        try:
            sorter.prepare()
        except CycleError as e:
            raise PlanError(f"Reference cycle between tables: {e.args[1]}") from e

        ordered = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready(), key=position.__getitem__)
            for key in ready:
                ordered.append(self._by_key[key])
                sorter.done(key)
        return ordered


def _validate_table(table: TargetTable) -> None:
    try:
        safe_sql.validate_identifier(table.schema)
        safe_sql.validate_identifier(table.name)
        if table.order_by:
            safe_sql.validate_identifier(table.order_by)
        for old, shadow, shadow_type in table.column_pairs():
            safe_sql.validate_identifier(old)
            safe_sql.validate_identifier(shadow)
            safe_sql.validate_column_type(shadow_type)
        if table.identity and table.identity.timestamp_column:
            safe_sql.validate_identifier(table.identity.timestamp_column)
    except ValueError as e:
        raise PlanError(f"{table.key}: {e}") from e

    if table.identity is None and not table.references:
        raise PlanError(f"{table.key}: nothing to migrate (no identity, no references)")

    olds = [old for old, _, _ in table.column_pairs()]
    shadows = [shadow for _, shadow, _ in table.column_pairs()]
    if len(set(olds)) != len(olds):
        raise PlanError(f"{table.key}: a column is listed twice")
    if len(set(shadows)) != len(shadows):
        raise PlanError(f"{table.key}: two columns share a shadow column name")
    clash = set(olds) & set(shadows)
    if clash:
        raise PlanError(f"{table.key}: shadow column name clashes with migrated column {sorted(clash)}")


# ============================================================
# BUILDING PLANS
# ============================================================


def _split_table_ref(value: str, default_schema: str) -> tuple[str, str]:
    if not isinstance(value, str) or not value:
        raise PlanError(f"Invalid table reference: {value!r}")
    if "." in value:
        schema, _, name = value.partition(".")
        return schema, name
    return default_schema, value


def _shadow_name(entry: dict, column: str) -> str:
    return entry.get("shadow_column") or f"{column}{config.DEFAULT_SHADOW_SUFFIX}"


def plan_from_dict(data: dict[str, Any], default_name: str = "migration") -> MigrationPlan:
    """Build and validate a MigrationPlan from a parsed config mapping."""
    if not isinstance(data, dict) or not isinstance(data.get("tables"), list):
        raise PlanError("Plan must be a mapping with a 'tables' list")

    tables = []
    for entry in data["tables"]:
        if not isinstance(entry, dict) or "name" not in entry:
            raise PlanError(f"Invalid table entry: {entry!r}")
        schema, name = _split_table_ref(entry["name"], entry.get("schema", safe_sql.DEFAULT_SCHEMA))

        identity = None
        ident = entry.get("identity")
        if ident is not None:
            if isinstance(ident, str):
                ident = {"column": ident}
            if not isinstance(ident, dict) or "column" not in ident:
                raise PlanError(f"{schema}.{name}: identity needs a 'column'")
            identity = IdentitySpec(
                column=ident["column"],
                shadow_column=_shadow_name(ident, ident["column"]),
                shadow_type=ident.get("shadow_type", config.DEFAULT_SHADOW_TYPE),
                timestamp_column=ident.get("timestamp_column"),
            )

        refs = []
        for ref in entry.get("references") or []:
            if not isinstance(ref, dict) or "column" not in ref or "references" not in ref:
                raise PlanError(f"{schema}.{name}: references need 'column' and 'references'")
            ref_schema, ref_table = _split_table_ref(ref["references"], schema)
            refs.append(
                ReferenceColumn(
                    schema=schema,
                    table=name,
                    column=ref["column"],
                    shadow_column=_shadow_name(ref, ref["column"]),
                    ref_schema=ref_schema,
                    ref_table=ref_table,
                    shadow_type=ref.get("shadow_type", config.DEFAULT_SHADOW_TYPE),
                )
            )

        tables.append(
            TargetTable(
                name=name,
                schema=schema,
                identity=identity,
                references=tuple(refs),
                order_by=entry.get("order_by"),
            )
        )

    return MigrationPlan(
        name=data.get("name", default_name),
        tables=tuple(tables),
        batch_size=data.get("batch_size", config.BATCH_SIZE),
        swap_boundary=data.get("swap_boundary", "table"),
        sync_triggers=bool(data.get("sync_triggers", True)),
        durable_checkpoints=bool(data.get("durable_checkpoints", False)),
    )


def load_plan(path: str | Path) -> MigrationPlan:
    """
    Load a migration plan from YAML.

    Raises:
        FileNotFoundError if the file doesn't exist.
        yaml.YAMLError if the file is invalid YAML.
        PlanError if the plan is invalid.
    """
    plan_path = Path(path)
    if not plan_path.exists():
        raise FileNotFoundError(f"Migration plan not found: {plan_path}")

    with open(plan_path) as f:
        data = yaml.safe_load(f)

    plan = plan_from_dict(data or {}, default_name=plan_path.stem)
    logger.info("Loaded plan %s with %d table(s)", plan.name, len(plan.tables))
    return plan
