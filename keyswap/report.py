"""
MigrationReport dataclass for orchestrator runs.

Provides structured tracking of a run with per-phase results. This is the
machine-readable output of keyswap; the CLI prints ``to_dict()`` as JSON.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class MigrationPhase(Enum):
    """Position of the orchestrator in the migration protocol."""

    PLANNED = "planned"
    SHADOW_COLUMNS_ADDED = "shadow_columns_added"
    BACKFILLING = "backfilling"
    VERIFIED = "verified"
    SWAPPED_IN = "swapped_in"
    INDEXES_REBUILT = "indexes_rebuilt"
    COMPLETE = "complete"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationPhase.COMPLETE, MigrationPhase.ABORTED)


@dataclass
class PhaseResult:
    """Result of a single transition."""

    name: str
    success: bool
    error: str | None = None
    duration_seconds: float = 0.0
    data: dict = field(default_factory=dict)


@dataclass
class MigrationReport:
    """Result of a complete orchestrator run."""

    plan: str
    run_id: str
    started_at: datetime
    completed_at: datetime | None = None
    phase: MigrationPhase = MigrationPhase.PLANNED
    last_phase_reached: MigrationPhase = MigrationPhase.PLANNED
    reason: str | None = None
    requires_manual_intervention: bool = False
    rows_backfilled: dict[str, int] = field(default_factory=dict)
    catch_up_rows: dict[str, int] = field(default_factory=dict)
    unresolved_references: dict[str, int] = field(default_factory=dict)
    verification_failures: dict[str, int] = field(default_factory=dict)
    swapped_tables: list[str] = field(default_factory=list)
    row_counts: dict[str, int] = field(default_factory=dict)
    cleanup_errors: list[str] = field(default_factory=list)
    phases: list[PhaseResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.phase == MigrationPhase.COMPLETE

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def failed_phases(self) -> list[str]:
        return [p.name for p in self.phases if not p.success]

    def record_failure(self, check: str, table: str, column: str, count: int) -> None:
        self.verification_failures[f"{check}:{table}.{column}"] = count

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "plan": self.plan,
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "phase": self.phase.value,
            "last_phase_reached": self.last_phase_reached.value,
            "success": self.success,
            "reason": self.reason,
            "requires_manual_intervention": self.requires_manual_intervention,
            "rows_backfilled": dict(self.rows_backfilled),
            "catch_up_rows": dict(self.catch_up_rows),
            "unresolved_references": dict(self.unresolved_references),
            "verification_failures": dict(self.verification_failures),
            "swapped_tables": list(self.swapped_tables),
            "row_counts": dict(self.row_counts),
            "cleanup_errors": list(self.cleanup_errors),
            "phases": [
                {
                    "name": p.name,
                    "success": p.success,
                    "error": p.error,
                    "duration_seconds": p.duration_seconds,
                    "data": p.data,
                }
                for p in self.phases
            ],
            "failed_phases": self.failed_phases,
        }
