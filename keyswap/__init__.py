"""
keyswap: online migration of integer identity columns to UUIDv7 keys.

Usage:
    from keyswap import load_plan, open_engine, run

    plan = load_plan("plan.yaml")
    with open_engine("app.db") as engine:
        report = run(plan, engine)
"""

from .backfill import BackfillDriver, BackfillResult, CancellationToken
from .db import StorageEngine, open_engine
from .errors import (
    BackfillOrderError,
    IncompleteBackfill,
    IrreversibleStepFailure,
    KeyswapError,
    MigrationCancelled,
    OrphanedReferences,
    PlanError,
    SchemaConflict,
    StorageUnavailable,
    VerificationFailure,
)
from .identifiers import IdentifierGenerator, uuid7
from .orchestrator import MigrationOrchestrator, run
from .plan import IdentitySpec, MigrationPlan, ReferenceColumn, TargetTable, load_plan, plan_from_dict
from .report import MigrationPhase, MigrationReport, PhaseResult
from .schema_mutator import SchemaMutator
from .verifier import ConsistencyVerifier, VerificationResult

__version__ = "0.1.0"

__all__ = [
    # Entry points
    "run",
    "load_plan",
    "plan_from_dict",
    "open_engine",
    # Components
    "IdentifierGenerator",
    "uuid7",
    "SchemaMutator",
    "BackfillDriver",
    "BackfillResult",
    "CancellationToken",
    "ConsistencyVerifier",
    "VerificationResult",
    "MigrationOrchestrator",
    "StorageEngine",
    # Plan
    "MigrationPlan",
    "TargetTable",
    "IdentitySpec",
    "ReferenceColumn",
    # Report
    "MigrationPhase",
    "MigrationReport",
    "PhaseResult",
    # Errors
    "KeyswapError",
    "PlanError",
    "SchemaConflict",
    "VerificationFailure",
    "IncompleteBackfill",
    "OrphanedReferences",
    "BackfillOrderError",
    "StorageUnavailable",
    "IrreversibleStepFailure",
    "MigrationCancelled",
]
