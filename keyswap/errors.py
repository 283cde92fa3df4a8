"""
Error taxonomy for keyswap.

- PlanError: the migration plan is malformed (configuration error)
- SchemaConflict: a DDL target is already in the desired/undesired state
- VerificationFailure: completeness or referential checks failed
- StorageUnavailable: the engine stayed busy/unreachable after bounded retries
- IrreversibleStepFailure: failure at or after the swap; needs an operator
- MigrationCancelled: an abort was requested
"""


class KeyswapError(Exception):
    """Base class for all keyswap errors."""

    pass


class PlanError(KeyswapError):
    """Raised when a migration plan cannot be built or validated."""

    pass


class SchemaConflict(KeyswapError):
    """Raised when a DDL call targets a column or index in the wrong state."""

    def __init__(self, message: str, table: str | None = None, name: str | None = None):
        super().__init__(message)
        self.table = table
        self.name = name


class VerificationFailure(KeyswapError):
    """Raised when a consistency check returns a non-zero count."""

    check = "verification"

    def __init__(self, table: str, column: str, count: int, detail: str = ""):
        self.table = table
        self.column = column
        self.count = count
        message = f"{self.check} failed for {table}.{column}: {count} row(s)"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class IncompleteBackfill(VerificationFailure):
    """Shadow column still has NULLs where the source has values."""

    check = "incomplete_backfill"


class OrphanedReferences(VerificationFailure):
    """Reference values with no matching row in the referenced table."""

    check = "orphaned_references"


class StaleReferences(VerificationFailure):
    """Reference shadow values that disagree with the old foreign key."""

    check = "stale_references"


class RowCountMismatch(VerificationFailure):
    """Row count changed between two points of the migration."""

    check = "row_count_mismatch"


class BackfillOrderError(KeyswapError):
    """A reference was backfilled before its referenced identity was complete."""

    pass


class StorageUnavailable(KeyswapError):
    """The storage engine could not be reached or stayed locked."""

    pass


class IrreversibleStepFailure(KeyswapError):
    """Failure during or after the swap. Never rolled back automatically."""

    def __init__(self, message: str, swapped_tables: list[str] | None = None):
        super().__init__(message)
        self.swapped_tables = list(swapped_tables or [])


class InvalidTransition(KeyswapError):
    """A transition was requested from a phase that does not lead to it."""

    pass


class MigrationCancelled(KeyswapError):
    """An abort request was honored."""

    pass
