"""
Consistency Verifier.

Read-only counting queries that gate the destructive phase:

- verify_complete: shadow still NULL where the source has a value
- verify_no_orphans: non-null reference value with no row in the referenced
  table's new identity space
- verify_translation: reference shadow differs from what the old foreign key
  resolves to (catches writes that landed after the backfill)
- verify_row_count: row count moved between two points of the run

A check returns a VerificationResult; ``raise_for_failure()`` turns a
non-zero count into the matching VerificationFailure subclass.
"""

import logging
from dataclasses import dataclass

from . import safe_sql
from .db import StorageEngine
from .errors import (
    IncompleteBackfill,
    OrphanedReferences,
    RowCountMismatch,
    StaleReferences,
    VerificationFailure,
)
from .plan import MigrationPlan, ReferenceColumn, TargetTable

logger = logging.getLogger(__name__)

_FAILURES: dict[str, type[VerificationFailure]] = {
    IncompleteBackfill.check: IncompleteBackfill,
    OrphanedReferences.check: OrphanedReferences,
    StaleReferences.check: StaleReferences,
    RowCountMismatch.check: RowCountMismatch,
}


@dataclass(frozen=True)
class VerificationResult:
    check: str
    table: str
    column: str
    count: int
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.count == 0

    def raise_for_failure(self) -> None:
        if not self.ok:
            raise _FAILURES[self.check](self.table, self.column, self.count, self.detail)

    def to_dict(self) -> dict:
        return {
            "check": self.check,
            "table": self.table,
            "column": self.column,
            "count": self.count,
            "ok": self.ok,
        }


class ConsistencyVerifier:
    def __init__(self, engine: StorageEngine, plan: MigrationPlan | None = None):
        self.engine = engine
        self.plan = plan

    def _log(self, result: VerificationResult) -> VerificationResult:
        if result.ok:
            logger.debug("%s ok for %s.%s", result.check, result.table, result.column)
        else:
            logger.warning(
                "%s: %d row(s) in %s.%s", result.check, result.count, result.table, result.column
            )
        return result

    def verify_complete(
        self, table: TargetTable, shadow_column: str, source_column: str | None = None
    ) -> VerificationResult:
        count = self.engine.query_scalar(
            safe_sql.count_null_shadow(table.schema, table.name, shadow_column, source_column)
        )
        return self._log(
            VerificationResult(IncompleteBackfill.check, table.key, shadow_column, int(count))
        )

    def verify_no_orphans(
        self,
        ref: ReferenceColumn,
        identity_column: str | None = None,
        reference_column: str | None = None,
    ) -> VerificationResult:
        """
        Count reference values with no match in the referenced identity.

        Defaults compare the shadow columns (before the swap). After the swap
        pass the final names, i.e. ``ref.column`` and the identity's ``column``.
        """
        target = self._referenced(ref)
        column = reference_column or ref.shadow_column
        count = self.engine.query_scalar(
            safe_sql.count_orphans(
                ref.schema,
                ref.table,
                column,
                target.schema,
                target.name,
                identity_column or target.identity.shadow_column,
            )
        )
        return self._log(VerificationResult(OrphanedReferences.check, ref.table_key, column, int(count)))

    def verify_translation(self, ref: ReferenceColumn) -> VerificationResult:
        """Every shadow value equals the new key of the row the old value pointed at."""
        target = self._referenced(ref)
        count = self.engine.query_scalar(
            safe_sql.count_mistranslated(
                ref.schema,
                ref.table,
                ref.column,
                ref.shadow_column,
                target.schema,
                target.name,
                target.identity.column,
                target.identity.shadow_column,
            )
        )
        return self._log(
            VerificationResult(StaleReferences.check, ref.table_key, ref.shadow_column, int(count))
        )

    def verify_row_count(self, table: TargetTable, expected: int) -> VerificationResult:
        actual = self.engine.count(table.schema, table.name)
        return self._log(
            VerificationResult(
                RowCountMismatch.check,
                table.key,
                "*",
                abs(actual - expected),
                detail=f"expected {expected}, found {actual}",
            )
        )

    def verify_table(self, table: TargetTable) -> list[VerificationResult]:
        """All pre-swap checks for one table."""
        results = []
        if table.identity:
            results.append(
                self.verify_complete(table, table.identity.shadow_column, table.identity.column)
            )
        for ref in table.references:
            results.append(self.verify_complete(table, ref.shadow_column, ref.column))
            results.append(self.verify_no_orphans(ref))
            results.append(self.verify_translation(ref))
        return results

    def verify_plan(self) -> list[VerificationResult]:
        return [r for table in self._require_plan().ordered_tables() for r in self.verify_table(table)]

    def _require_plan(self) -> MigrationPlan:
        if self.plan is None:
            raise ValueError("ConsistencyVerifier needs a plan for reference checks")
        return self.plan

    def _referenced(self, ref: ReferenceColumn) -> TargetTable:
        return self._require_plan().referenced_table(ref)
