"""
Backfill Driver.

Populates a shadow column for pre-existing rows in stable keyset order, one
committed batch at a time:

    SELECT key, ... WHERE shadow IS NULL AND key > :last ORDER BY key LIMIT :n
    UPDATE ... SET shadow = ? WHERE key = ? AND shadow IS NULL

Only NULL shadows are selected and only NULL shadows are written, so running
the driver again is idempotent, terminates, and never changes a value that
was already written. No lock is held between batches. The old column is
never touched.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from . import safe_sql
from .db import StorageEngine
from .errors import BackfillOrderError, MigrationCancelled, PlanError
from .identifiers import IdentifierGenerator
from .plan import IdentitySpec, MigrationPlan, ReferenceColumn, TargetTable
from .resilience import RateLimiter

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe abort flag shared by the orchestrator and the driver."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancel requested") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise MigrationCancelled(self.reason or "cancel requested")


@dataclass
class BackfillCursor:
    """Progress marker for one shadow column. Discarded on completion."""

    last_key: Any = None
    rows_processed: int = 0
    batches: int = 0


@dataclass
class BackfillResult:
    table: str
    column: str
    rows_updated: int = 0
    batches: int = 0
    unresolved: int = 0
    completed: bool = True
    cursor: BackfillCursor = field(default_factory=BackfillCursor)

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "column": self.column,
            "rows_updated": self.rows_updated,
            "batches": self.batches,
            "unresolved": self.unresolved,
            "completed": self.completed,
        }


class BackfillDriver:
    """Streams rows in batches and writes shadow values."""

    def __init__(
        self,
        engine: StorageEngine,
        plan: MigrationPlan | None = None,
        generator: IdentifierGenerator | None = None,
        cancel: CancellationToken | None = None,
        rate_limiter: RateLimiter | None = None,
        checkpoints=None,
    ):
        self.engine = engine
        self.plan = plan
        self.generator = generator or IdentifierGenerator()
        self.cancel = cancel or CancellationToken()
        self.rate_limiter = rate_limiter
        self.checkpoints = checkpoints

    def backfill(
        self,
        table: TargetTable,
        source: IdentitySpec | ReferenceColumn,
        batch_size: int | None = None,
        max_batches: int | None = None,
        require_referenced_complete: bool = True,
    ) -> BackfillResult:
        """
        Backfill one shadow column of *table*.

        Args:
            table: the table owning the shadow column
            source: the table's IdentitySpec, or one of its ReferenceColumns
            batch_size: rows per batch (defaults to the plan's, else 500)
            max_batches: stop after this many batches (result.completed is False)
            require_referenced_complete: for references, refuse to start while
                the referenced identity still has NULL shadows

        Returns:
            BackfillResult; ``rows_updated`` counts shadow values written.
        """
        if batch_size is not None:
            size = batch_size
        else:
            size = self.plan.batch_size if self.plan else 500
        if size <= 0:
            raise ValueError(f"batch_size must be positive, got {size}")

        if isinstance(source, IdentitySpec):
            extra = [source.timestamp_column] if source.timestamp_column else []
            not_null = None
            resolve = self._identity_values
        elif isinstance(source, ReferenceColumn):
            if self.plan is None:
                raise PlanError("Backfilling a reference column needs the plan")
            if require_referenced_complete:
                self._check_referenced_complete(source)
            extra = [source.column]
            not_null = source.column
            resolve = self._reference_resolver(source)
        else:
            raise TypeError(f"Unsupported backfill source: {source!r}")

        shadow = source.shadow_column
        key = table.batch_key
        target = f"{table.key}.{shadow}"
        result = BackfillResult(table=table.key, column=shadow)

        cursor = BackfillCursor()
        if self.checkpoints is not None:
            cursor = self.checkpoints.load(target) or cursor
            if cursor.last_key is not None:
                logger.info("Resuming %s after key %s", target, cursor.last_key)

        select_sql = safe_sql.select_batch(table.schema, table.name, key, extra, shadow, not_null)
        update_sql = safe_sql.update_by_key(table.schema, table.name, shadow, key)

        while True:
            if max_batches is not None and result.batches >= max_batches:
                result.completed = False
                break
            self.cancel.raise_if_cancelled()
            if self.rate_limiter is not None:
                self.rate_limiter.acquire()

            rows = self.engine.query_all(select_sql, (cursor.last_key, cursor.last_key, size))
            if not rows:
                break

            updates, unresolved = resolve(rows)
            with self.engine.transaction():
                written = self.engine.executemany(update_sql, updates)
                cursor.last_key = rows[-1][0]
                cursor.rows_processed += written
                cursor.batches += 1
                if self.checkpoints is not None:
                    self.checkpoints.save(target, cursor)

            result.rows_updated += written
            result.unresolved += unresolved
            result.batches += 1
            logger.debug(
                "Batch %d of %s: %d row(s) written, last key %s",
                result.batches,
                target,
                written,
                cursor.last_key,
            )

        if result.completed and self.checkpoints is not None:
            self.checkpoints.clear(target)
        result.cursor = cursor

        if result.unresolved:
            logger.warning(
                "%s: %d row(s) reference keys with no match in %s",
                target,
                result.unresolved,
                source.referenced_key if isinstance(source, ReferenceColumn) else table.key,
            )
        logger.info(
            "Backfill %s %s: %d row(s) in %d batch(es)",
            target,
            "complete" if result.completed else "paused",
            result.rows_updated,
            result.batches,
        )
        return result

    # ------------------------------------------------------------
    # Value computation
    # ------------------------------------------------------------

    def _identity_values(self, rows) -> tuple[list[tuple], int]:
        """One new identifier per row, seeded by its timestamp column if any."""
        updates = []
        for row in rows:
            seed = row[1] if len(row) > 1 else None
            updates.append((self.generator.generate(seed), row[0]))
        return updates, 0

    def _reference_resolver(self, ref: ReferenceColumn):
        target = self.plan.referenced_table(ref)
        identity = target.identity

        def resolve(rows) -> tuple[list[tuple], int]:
            old_keys = sorted({row[1] for row in rows})
            sql = safe_sql.select_lookup(
                target.schema, target.name, identity.column, identity.shadow_column, len(old_keys)
            )
            mapping = {
                r[0]: r[1] for r in self.engine.query_all(sql, old_keys) if r[1] is not None
            }
            updates = []
            unresolved = 0
            for row in rows:
                new_value = mapping.get(row[1])
                if new_value is None:
                    unresolved += 1
                else:
                    updates.append((new_value, row[0]))
            return updates, unresolved

        return resolve

    def _check_referenced_complete(self, ref: ReferenceColumn) -> None:
        target = self.plan.referenced_table(ref)
        identity = target.identity
        missing = self.engine.query_scalar(
            safe_sql.count_null_shadow(
                target.schema, target.name, identity.shadow_column, identity.column
            )
        )
        if missing:
            raise BackfillOrderError(
                f"{ref.key} cannot be backfilled: {target.key}.{identity.shadow_column} "
                f"still has {missing} NULL value(s)"
            )
