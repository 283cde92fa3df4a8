"""
Migration Orchestrator.

Drives one MigrationPlan through the protocol:

    PLANNED -> SHADOW_COLUMNS_ADDED -> BACKFILLING -> VERIFIED
            -> SWAPPED_IN -> INDEXES_REBUILT -> COMPLETE

ABORTED is reachable from every non-terminal phase. Before SWAPPED_IN an
abort is safe: the old columns were never touched, and the shadow columns,
their indexes, the sync triggers and any checkpoints are dropped again on a
best-effort basis. The swap is the only irreversible step. Once one table's
swap has committed nothing is rolled back automatically: the run stops, the
report lists the swapped tables and sets ``requires_manual_intervention``.

Swap ordering: tables are swapped dependents first (reverse of the backfill
order), so while a table is being swapped the tables it references still
carry both their old integer key and their new shadow key, and every check
inside the boundary compares live columns.

Usage:
    from keyswap import load_plan, open_engine, run

    plan = load_plan("plan.yaml")
    with open_engine("app.db") as engine:
        report = run(plan, engine)
    print(report.to_dict())
"""

import logging
import sqlite3
import time
from collections.abc import Callable
from datetime import datetime

from . import safe_sql
from .backfill import BackfillDriver, CancellationToken
from .checkpoint import CheckpointStore
from .db import IndexInfo, StorageEngine
from .dual_write import drop_sync_triggers, install_sync_triggers
from .errors import (
    InvalidTransition,
    IrreversibleStepFailure,
    KeyswapError,
    MigrationCancelled,
    SchemaConflict,
)
from .identifiers import IdentifierGenerator
from .observability.context import RunContext
from .plan import MigrationPlan, ReferenceColumn, TargetTable
from .report import MigrationPhase, MigrationReport, PhaseResult
from .resilience import RateLimiter
from .schema_mutator import SchemaMutator
from .verifier import ConsistencyVerifier, VerificationResult

logger = logging.getLogger(__name__)

# Errors the orchestrator turns into a report instead of raising
RUN_ERRORS = (KeyswapError, sqlite3.Error, OSError, ValueError)

# phase -> the phase its transition starts from
_PREDECESSOR = {
    MigrationPhase.SHADOW_COLUMNS_ADDED: MigrationPhase.PLANNED,
    MigrationPhase.BACKFILLING: MigrationPhase.SHADOW_COLUMNS_ADDED,
    MigrationPhase.VERIFIED: MigrationPhase.BACKFILLING,
    MigrationPhase.SWAPPED_IN: MigrationPhase.VERIFIED,
    MigrationPhase.INDEXES_REBUILT: MigrationPhase.SWAPPED_IN,
    MigrationPhase.COMPLETE: MigrationPhase.INDEXES_REBUILT,
}

_POST_SWAP = (MigrationPhase.SWAPPED_IN, MigrationPhase.INDEXES_REBUILT)


class MigrationOrchestrator:
    """State machine for one run of one plan over one StorageEngine."""

    def __init__(
        self,
        engine: StorageEngine,
        plan: MigrationPlan,
        generator: IdentifierGenerator | None = None,
        cancel: CancellationToken | None = None,
        rate_limiter: RateLimiter | None = None,
        batch_size: int | None = None,
    ):
        self.engine = engine
        self.plan = plan
        self.cancel = cancel or CancellationToken()
        self.batch_size = batch_size if batch_size is not None else plan.batch_size
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        self.mutator = SchemaMutator(engine)
        self.verifier = ConsistencyVerifier(engine, plan)
        self.checkpoints = CheckpointStore(engine, plan.name) if plan.durable_checkpoints else None
        self.driver = BackfillDriver(
            engine,
            plan,
            generator=generator,
            cancel=self.cancel,
            rate_limiter=rate_limiter,
            checkpoints=self.checkpoints,
        )
        # Catch-up inside a swap boundary must not be interrupted by a cancel
        self._swap_driver = BackfillDriver(engine, plan, generator=self.driver.generator)
        self.phase = MigrationPhase.PLANNED
        self.report: MigrationReport | None = None
        self._preflight_ok = False
        # (table key, index definition) dropped during the swap, restored afterwards
        self._dropped_indexes: list[tuple[str, IndexInfo]] = []

    # ------------------------------------------------------------
    # Run
    # ------------------------------------------------------------

    def run(self, run_id: str | None = None) -> MigrationReport:
        """Run every transition in order. Errors end up in the report, not raised."""
        with RunContext(run_id) as ctx:
            self.report = MigrationReport(
                plan=self.plan.name, run_id=ctx.run_id, started_at=datetime.now()
            )
            logger.info(
                "Migration %s starting: %d table(s), swap boundary %s",
                self.plan.name,
                len(self.plan.tables),
                self.plan.swap_boundary,
            )

            steps: list[Callable[[], PhaseResult]] = [
                self.add_shadow_columns,
                self.backfill,
                self.verify,
                self.swap,
                self.rebuild_indexes,
                self.complete,
            ]
            try:
                for step in steps:
                    step()
            except IrreversibleStepFailure as e:
                self._fail_irreversible(e)
            except RUN_ERRORS as e:
                if self.phase in _POST_SWAP:
                    self._fail_irreversible(IrreversibleStepFailure(_reason(e)))
                else:
                    self.abort(_reason(e))

            self.report.phase = self.phase
            self.report.completed_at = datetime.now()
            logger.info(
                "Migration %s finished in phase %s (%.1fs)",
                self.plan.name,
                self.phase.value,
                self.report.duration_seconds,
            )
            return self.report

    def _ensure_report(self) -> MigrationReport:
        if self.report is None:
            self.report = MigrationReport(plan=self.plan.name, run_id="", started_at=datetime.now())
        return self.report

    def _transition(
        self, target: MigrationPhase, func: Callable[[], dict], cancellable: bool = True
    ) -> PhaseResult:
        """Run one transition: check the starting phase, time it, record a PhaseResult."""
        report = self._ensure_report()
        expected = _PREDECESSOR[target]
        if self.phase != expected:
            raise InvalidTransition(
                f"Cannot move to {target.value} from {self.phase.value} (expected {expected.value})"
            )
        if cancellable:
            self.cancel.raise_if_cancelled()

        logger.info("▶ %s -> %s", self.phase.value, target.value)
        start = time.monotonic()
        try:
            data = func()
        except Exception as e:
            report.phases.append(
                PhaseResult(
                    name=target.value,
                    success=False,
                    error=str(e),
                    duration_seconds=time.monotonic() - start,
                )
            )
            raise

        result = PhaseResult(
            name=target.value,
            success=True,
            duration_seconds=time.monotonic() - start,
            data=data or {},
        )
        report.phases.append(result)
        self.phase = target
        report.last_phase_reached = target
        return result

    # ------------------------------------------------------------
    # PLANNED -> SHADOW_COLUMNS_ADDED
    # ------------------------------------------------------------

    def preflight(self) -> dict:
        """
        Check the plan against the live schema before anything is changed.

        Raises:
            SchemaConflict for missing tables/columns, NULLs in the batch key,
            columns SQLite cannot drop, or a table whose identity was already
            migrated.
        """
        row_counts = {}
        for table in self.plan.ordered_tables():
            if not self.engine.table_exists(table.schema, table.name):
                raise SchemaConflict(f"Table {table.key} does not exist", table.key)
            columns = self.mutator.columns(table)

            needed = [old for old, _, _ in table.column_pairs()]
            if table.order_by:
                needed.append(table.order_by)
            if table.identity and table.identity.timestamp_column:
                needed.append(table.identity.timestamp_column)
            for column in needed:
                if column not in columns:
                    raise SchemaConflict(f"{table.key}.{column} does not exist", table.key, column)

            if table.order_by or table.identity:
                key = table.batch_key
                nulls = self.engine.query_scalar(safe_sql.count_null(table.schema, table.name, key))
                if nulls:
                    raise SchemaConflict(
                        f"{table.key}.{key} has {nulls} NULL value(s); rows cannot be batched by it",
                        table.key,
                        key,
                    )

            identity = table.identity
            if (
                identity
                and identity.shadow_column not in columns
                and columns[identity.column].type.upper() == identity.shadow_type.upper()
            ):
                raise SchemaConflict(
                    f"{table.key}.{identity.column} is already {identity.shadow_type}; "
                    "plan looks already applied",
                    table.key,
                    identity.column,
                )

            for old, _, _ in table.column_pairs():
                self.mutator.check_droppable(table, old)

            row_counts[table.key] = self.engine.count(table.schema, table.name)

        self._ensure_report().row_counts = row_counts
        self._preflight_ok = True
        logger.info("Preflight ok: %s", row_counts)
        return {"row_counts": row_counts}

    def add_shadow_columns(self) -> PhaseResult:
        return self._transition(MigrationPhase.SHADOW_COLUMNS_ADDED, self._add_shadow_columns)

    def _add_shadow_columns(self) -> dict:
        data = self.preflight()
        added, skipped, indexes = [], [], []

        if self.checkpoints is not None:
            self.checkpoints.ensure()

        for table in self.plan.ordered_tables():
            for _, shadow, shadow_type in table.column_pairs():
                try:
                    self.mutator.add_column(table, shadow, shadow_type)
                    added.append(f"{table.key}.{shadow}")
                except SchemaConflict:
                    # Left behind by an interrupted run; backfill resumes on NULLs
                    skipped.append(f"{table.key}.{shadow}")
                    logger.info("Shadow column %s.%s already present, resuming", table.key, shadow)

            if table.identity:
                name = _shadow_index_name(table)
                try:
                    self.mutator.add_unique_index(table, table.identity.shadow_column, name)
                except SchemaConflict:
                    logger.info("Index %s already present, resuming", name)
                indexes.append(f"{table.schema}.{name}")

        triggers: dict = {"triggers_created": [], "skipped": []}
        if self.plan.sync_triggers:
            triggers = install_sync_triggers(self.engine, self.plan)

        data.update(
            {
                "added": added,
                "already_present": skipped,
                "shadow_indexes": indexes,
                "sync_triggers": triggers["triggers_created"],
                "untriggered_references": triggers["skipped"],
            }
        )
        return data

    # ------------------------------------------------------------
    # SHADOW_COLUMNS_ADDED -> BACKFILLING
    # ------------------------------------------------------------

    def backfill(self) -> PhaseResult:
        return self._transition(MigrationPhase.BACKFILLING, self._backfill)

    def _backfill(self) -> dict:
        """Identity first, then references, table by table; verify each table."""
        report = self._ensure_report()
        for table in self.plan.ordered_tables():
            if table.identity:
                result = self.driver.backfill(table, table.identity, self.batch_size)
                report.rows_backfilled[f"{table.key}.{result.column}"] = result.rows_updated
            for ref in table.references:
                result = self.driver.backfill(table, ref, self.batch_size)
                report.rows_backfilled[f"{table.key}.{result.column}"] = result.rows_updated
                if result.unresolved:
                    report.unresolved_references[ref.key] = result.unresolved
            self._check(self.verifier.verify_table(table))
        return {"rows_backfilled": dict(report.rows_backfilled)}

    # ------------------------------------------------------------
    # BACKFILLING -> VERIFIED
    # ------------------------------------------------------------

    def verify(self) -> PhaseResult:
        return self._transition(MigrationPhase.VERIFIED, self._verify)

    def catch_up(
        self,
        tables: list[TargetTable] | None = None,
        references: list[ReferenceColumn] | None = None,
        driver: BackfillDriver | None = None,
    ) -> dict[str, int]:
        """
        Re-run the backfill over rows written since the first pass.

        Identity shadows of *tables* first (new rows), then stale shadows of
        *references* are reset to NULL and every NULL reference shadow is
        filled again. Defaults to the whole plan.
        """
        driver = driver or self.driver
        tables = self.plan.ordered_tables() if tables is None else tables
        references = self.plan.all_references() if references is None else references
        caught = {}
        for table in tables:
            if table.identity:
                result = driver.backfill(table, table.identity, self.batch_size)
                caught[f"{table.key}.{result.column}"] = result.rows_updated
        for ref in references:
            table = self.plan.table(ref.table_key)
            target = self.plan.referenced_table(ref)
            self.engine.execute(
                safe_sql.reset_mistranslated(
                    ref.schema,
                    ref.table,
                    table.batch_key,
                    ref.column,
                    ref.shadow_column,
                    target.schema,
                    target.name,
                    target.identity.column,
                    target.identity.shadow_column,
                )
            )
            result = driver.backfill(table, ref, self.batch_size, require_referenced_complete=False)
            caught[f"{table.key}.{result.column}"] = result.rows_updated
        return caught

    def _verify(self) -> dict:
        report = self._ensure_report()
        caught = self.catch_up()
        report.catch_up_rows = {k: v for k, v in caught.items() if v}
        if report.catch_up_rows:
            logger.info("Catch-up pass wrote %s", report.catch_up_rows)
        results = self.verifier.verify_plan()
        self._check(results)
        return {"catch_up_rows": dict(report.catch_up_rows), "checks": len(results)}

    # ------------------------------------------------------------
    # VERIFIED -> SWAPPED_IN
    # ------------------------------------------------------------

    def swap(self) -> PhaseResult:
        # Cancel requests arriving after this point wait for the swap to finish
        self.cancel.raise_if_cancelled()
        return self._transition(MigrationPhase.SWAPPED_IN, self._swap, cancellable=False)

    def swap_order(self) -> list[TargetTable]:
        """Dependents first; see module docstring."""
        return list(reversed(self.plan.ordered_tables()))

    def _swap(self) -> dict:
        report = self._ensure_report()
        tables = self.swap_order()
        use_global = self.plan.swap_boundary == "global"
        if use_global and not self.engine.supports_transactional_ddl:
            logger.warning("Engine has no transactional DDL; falling back to per-table swap")
            use_global = False

        if use_global:
            try:
                with self.engine.transaction():
                    for position, table in enumerate(tables):
                        self._swap_table(table, tables[position:])
            except Exception as e:
                self._dropped_indexes.clear()
                self._swap_failed(e)
            report.swapped_tables.extend(t.key for t in tables)
        else:
            for position, table in enumerate(tables):
                recorded = len(self._dropped_indexes)
                try:
                    with self.engine.transaction():
                        self._swap_table(table, tables[position:])
                except Exception as e:
                    del self._dropped_indexes[recorded:]
                    self._swap_failed(e)
                report.swapped_tables.append(table.key)
                logger.info("Swapped %s", table.key)

        return {
            "swapped_tables": list(report.swapped_tables),
            "boundary": "global" if use_global else "table",
        }

    def _swap_failed(self, error: Exception) -> None:
        """Translate an exception raised inside a swap boundary (already rolled back)."""
        report = self._ensure_report()
        if not report.swapped_tables and isinstance(error, RUN_ERRORS):
            # Nothing committed: the run is still safely in VERIFIED
            raise error
        raise IrreversibleStepFailure(
            f"Swap failed after {len(report.swapped_tables)} table(s) committed: {error}",
            swapped_tables=report.swapped_tables,
        ) from error

    def _swap_table(self, table: TargetTable, unswapped: list[TargetTable]) -> None:
        """Everything for one table, called inside an open transaction."""
        # Writers are blocked now; fold in whatever landed since VERIFIED
        caught = self.catch_up(unswapped, list(table.references), driver=self._swap_driver)
        for key, rows in caught.items():
            if rows:
                report = self._ensure_report()
                report.catch_up_rows[key] = report.catch_up_rows.get(key, 0) + rows
        self._check(self.verifier.verify_table(table))
        before = self.engine.count(table.schema, table.name)

        drop_sync_triggers(self.engine, table)

        if table.identity:
            name = _shadow_index_name(table)
            if any(idx.name == name for idx in self.mutator.indexes_on(table, table.identity.shadow_column)):
                self.mutator.drop_index_named(table, name)

        for old, _, _ in table.column_pairs():
            for idx in self.mutator.indexes_on(table, old):
                if idx.origin != "c":
                    raise SchemaConflict(
                        f"{table.key}.{old} is covered by constraint index {idx.name}",
                        table.key,
                        old,
                    )
                self.mutator.drop_index_named(table, idx.name)
                self._dropped_indexes.append((table.key, idx))

        for old, shadow, _ in table.column_pairs():
            self.mutator.drop_column(table, old)
            self.mutator.rename_column(table, shadow, old)

        self._check([self.verifier.verify_row_count(table, before)])

    # ------------------------------------------------------------
    # SWAPPED_IN -> INDEXES_REBUILT
    # ------------------------------------------------------------

    def rebuild_indexes(self) -> PhaseResult:
        if self.cancel.cancelled:
            # Queued during the swap; honored now that the boundary committed
            raise IrreversibleStepFailure(
                f"Cancelled after swap ({self.cancel.reason}); indexes not rebuilt",
                swapped_tables=self._ensure_report().swapped_tables,
            )
        return self._transition(
            MigrationPhase.INDEXES_REBUILT, self._rebuild_indexes, cancellable=False
        )

    def _rebuild_indexes(self) -> dict:
        restored, created = [], []
        for table_key, idx in self._dropped_indexes:
            table = self.plan.table(table_key)
            self.mutator.restore_index(table, idx)
            restored.append(f"{table.schema}.{idx.name}")

        for table in self.plan.ordered_tables():
            identity = table.identity
            if identity and not self._has_index(table, identity.column, unique=True):
                name = self.mutator.add_unique_index(table, identity.column)
                created.append(f"{table.schema}.{name}")
            for ref in table.references:
                if not self._has_index(table, ref.column):
                    created.append(f"{table.schema}.{self.mutator.add_index(table, ref.column)}")

        self._check(
            [
                self.verifier.verify_no_orphans(
                    ref,
                    identity_column=self.plan.referenced_table(ref).identity.column,
                    reference_column=ref.column,
                )
                for ref in self.plan.all_references()
            ]
        )
        return {"restored": restored, "created": created}

    def _has_index(self, table: TargetTable, column: str, unique: bool = False) -> bool:
        """An index led by *column*; with unique=True, a unique index on it alone."""
        for idx in self.engine.indexes(table.schema, table.name):
            if idx.partial or not idx.columns or idx.columns[0] != column:
                continue
            if not unique or (idx.unique and len(idx.columns) == 1):
                return True
        return False

    # ------------------------------------------------------------
    # INDEXES_REBUILT -> COMPLETE
    # ------------------------------------------------------------

    def complete(self) -> PhaseResult:
        return self._transition(MigrationPhase.COMPLETE, self._complete, cancellable=False)

    def _complete(self) -> dict:
        if self.checkpoints is not None:
            self.checkpoints.clear()
        return {"tables": [t.key for t in self.plan.ordered_tables()]}

    # ------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------

    def _check(self, results: list[VerificationResult]) -> None:
        report = self._ensure_report()
        for result in results:
            if not result.ok:
                report.record_failure(result.check, result.table, result.column, result.count)
        for result in results:
            result.raise_for_failure()

    def abort(self, reason: str) -> None:
        """
        Move to ABORTED from a phase before SWAPPED_IN and clean up.

        Cleanup is best effort: each failure is logged and recorded, never raised.
        """
        report = self._ensure_report()
        if self.phase.is_terminal:
            return
        if self.phase in _POST_SWAP:
            raise InvalidTransition("Abort after the swap needs manual intervention, not cleanup")

        logger.warning("Aborting %s from %s: %s", self.plan.name, self.phase.value, reason)
        report.reason = reason
        if self._preflight_ok:
            self._cleanup()
        self.phase = MigrationPhase.ABORTED
        report.phase = self.phase

    def _cleanup(self) -> None:
        report = self._ensure_report()

        def attempt(description: str, func: Callable[[], object]) -> None:
            try:
                func()
            except (KeyswapError, sqlite3.Error, ValueError, OSError) as e:
                report.cleanup_errors.append(f"{description}: {e}")
                logger.warning("Cleanup step failed (%s): %s", description, e, exc_info=True)

        if self.engine.in_transaction:
            attempt("rollback", lambda: self.engine.execute("ROLLBACK"))

        tables = self.swap_order()
        for table in tables:
            drop_sync_triggers(self.engine, table, strict=False)

        for table in tables:
            if table.identity:
                name = _shadow_index_name(table)
                attempt(
                    f"drop index {table.schema}.{name}",
                    lambda t=table, n=name: self._drop_index_if_present(t, n),
                )
            for _, shadow, _ in table.column_pairs():
                attempt(
                    f"drop column {table.key}.{shadow}",
                    lambda t=table, s=shadow: self._drop_column_if_present(t, s),
                )

        if self.checkpoints is not None:
            attempt("clear checkpoints", self.checkpoints.clear)
        logger.info("Cleanup finished with %d error(s)", len(report.cleanup_errors))

    def _drop_index_if_present(self, table: TargetTable, name: str) -> None:
        if any(idx.name == name for idx in self.engine.indexes(table.schema, table.name)):
            self.mutator.drop_index_named(table, name)

    def _drop_column_if_present(self, table: TargetTable, column: str) -> None:
        if self.mutator.column_exists(table, column):
            self.mutator.drop_column(table, column)

    def _fail_irreversible(self, error: IrreversibleStepFailure) -> None:
        report = self._ensure_report()
        report.reason = str(error)
        report.requires_manual_intervention = True
        for key in error.swapped_tables:
            if key not in report.swapped_tables:
                report.swapped_tables.append(key)
        logger.error(
            "Migration %s needs manual intervention after %s: %s (swapped: %s)",
            self.plan.name,
            self.phase.value,
            error,
            ", ".join(report.swapped_tables) or "none",
        )
        self.phase = MigrationPhase.ABORTED
        report.phase = self.phase


def _shadow_index_name(table: TargetTable) -> str:
    return safe_sql.index_name(table.name, table.identity.shadow_column, unique=True)


def _reason(error: BaseException) -> str:
    if isinstance(error, MigrationCancelled):
        return f"cancelled: {error}"
    return f"{type(error).__name__}: {error}"


def run(
    plan: MigrationPlan,
    engine: StorageEngine,
    generator: IdentifierGenerator | None = None,
    cancel: CancellationToken | None = None,
    batch_size: int | None = None,
    max_batches_per_minute: int = 0,
    run_id: str | None = None,
) -> MigrationReport:
    """Run *plan* against *engine* and return the MigrationReport."""
    limiter = RateLimiter(max_batches_per_minute) if max_batches_per_minute > 0 else None
    orchestrator = MigrationOrchestrator(
        engine,
        plan,
        generator=generator,
        cancel=cancel,
        rate_limiter=limiter,
        batch_size=batch_size,
    )
    return orchestrator.run(run_id=run_id)
