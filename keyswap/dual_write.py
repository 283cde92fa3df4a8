"""
Dual-write triggers for reference columns.

While a migration is between ShadowColumnsAdded and SwappedIn, application
writes keep using the old integer columns. These triggers translate every
insert or foreign-key update on a referencing table into its shadow column:

    AFTER INSERT / AFTER UPDATE OF <fk> ON <table>
        SET <fk_shadow> = (SELECT <identity_shadow> FROM <referenced> WHERE <identity> = NEW.<fk>)

New identity rows cannot be keyed inside SQL (UUIDv7 generation lives in
Python); the orchestrator's catch-up pass fills those, then re-resolves
any reference that was written before its target had a key.

SQLite triggers may only touch tables of their own database, so references
across attached schemas get no trigger and rely on the catch-up pass alone.
"""
# nosec B608 - identifiers validated through safe_sql before interpolation

import logging
import sqlite3
from typing import Any

from . import safe_sql
from .db import StorageEngine
from .errors import KeyswapError
from .plan import MigrationPlan, ReferenceColumn, TargetTable

logger = logging.getLogger(__name__)

TRIGGER_PREFIX = "ksw_sync"


def trigger_names(ref: ReferenceColumn) -> list[str]:
    base = f"{TRIGGER_PREFIX}_{ref.table}_{ref.column}"
    return [safe_sql.validate_identifier(f"{base}_ins"), safe_sql.validate_identifier(f"{base}_upd")]


def supports_triggers(ref: ReferenceColumn) -> bool:
    return ref.schema == ref.ref_schema


def _get_sync_triggers(plan: MigrationPlan, ref: ReferenceColumn) -> list[tuple[str, str]]:
    """(name, CREATE TRIGGER sql) pairs keeping ref.shadow_column in sync."""
    table = plan.table(ref.table_key)
    target = plan.referenced_table(ref)
    identity = target.identity
    key = safe_sql.validate_identifier(table.batch_key)
    ins_name, upd_name = trigger_names(ref)
    schema = safe_sql.validate_identifier(ref.schema)
    src = safe_sql.validate_identifier(ref.table)
    col = safe_sql.validate_identifier(ref.column)
    shadow = safe_sql.validate_identifier(ref.shadow_column)
    ref_table = safe_sql.validate_identifier(target.name)
    ref_old = safe_sql.validate_identifier(identity.column)
    ref_new = safe_sql.validate_identifier(identity.shadow_column)

    body = f"""
            BEGIN
                UPDATE [{src}] SET [{shadow}] = (
                    SELECT r.[{ref_new}] FROM [{ref_table}] r WHERE r.[{ref_old}] = NEW.[{col}]
                )
                WHERE [{key}] = NEW.[{key}];
            END
    """
    return [
        (
            ins_name,
            f"""
            CREATE TRIGGER [{schema}].[{ins_name}]
            AFTER INSERT ON [{src}]
            FOR EACH ROW
            {body}""",
        ),
        (
            upd_name,
            f"""
            CREATE TRIGGER [{schema}].[{upd_name}]
            AFTER UPDATE OF [{col}] ON [{src}]
            FOR EACH ROW
            {body}""",
        ),
    ]


def install_sync_triggers(engine: StorageEngine, plan: MigrationPlan) -> dict[str, Any]:
    """
    Create (or re-create) sync triggers for every reference in the plan.

    Returns dict with "triggers_created" and "skipped" (cross-schema references).
    """
    results: dict[str, list[str]] = {"triggers_created": [], "skipped": []}

    for ref in plan.all_references():
        if not supports_triggers(ref):
            results["skipped"].append(ref.key)
            logger.warning(
                "No sync trigger for %s: %s is in another schema; relying on catch-up pass",
                ref.key,
                ref.referenced_key,
            )
            continue

        for trigger_name, trigger_sql in _get_sync_triggers(plan, ref):
            # Drop if exists (to allow a resumed run to re-create it)
            engine.execute(safe_sql.drop_trigger(ref.schema, trigger_name))
            engine.execute(trigger_sql)
            results["triggers_created"].append(f"{ref.schema}.{trigger_name}")
            logger.info("Created trigger: %s.%s", ref.schema, trigger_name)

    return results


def drop_sync_triggers(engine: StorageEngine, table: TargetTable, strict: bool = True) -> list[str]:
    """
    Drop the sync triggers of one table's references.

    With strict=False errors are logged and skipped (best-effort cleanup).
    """
    dropped = []
    for ref in table.references:
        for trigger_name in trigger_names(ref):
            try:
                engine.execute(safe_sql.drop_trigger(ref.schema, trigger_name))
                dropped.append(f"{ref.schema}.{trigger_name}")
            except (sqlite3.Error, ValueError, KeyswapError) as e:
                if strict:
                    raise
                logger.warning("Could not drop trigger %s: %s", trigger_name, e, exc_info=True)
    return dropped
