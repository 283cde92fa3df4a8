"""
Durable backfill checkpoints.

Optional: by default the BackfillCursor lives in memory only. With
``durable_checkpoints: true`` in the plan the cursor is written to
``_keyswap_checkpoints`` in the same transaction as each batch, so a restarted
process skips the prefix it already scanned. Correctness never depends on the
checkpoint: rows are still selected by ``shadow IS NULL``.
"""

import logging
from datetime import datetime, timezone

from . import config, safe_sql
from .backfill import BackfillCursor
from .db import StorageEngine

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Per-plan cursor persistence in the main database."""

    def __init__(self, engine: StorageEngine, plan_name: str, table: str = config.CHECKPOINT_TABLE):
        self.engine = engine
        self.plan_name = plan_name
        self.table = safe_sql.validate_identifier(table)

    def ensure(self) -> None:
        self.engine.execute(f"""
            CREATE TABLE IF NOT EXISTS [{self.table}] (
                plan TEXT NOT NULL,
                target TEXT NOT NULL,
                last_key,
                rows_processed INTEGER NOT NULL DEFAULT 0,
                batches INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (plan, target)
            )
        """)

    def load(self, target: str) -> BackfillCursor | None:
        if not self.engine.table_exists(None, self.table):
            return None
        rows = self.engine.query_all(
            f"SELECT last_key, rows_processed, batches FROM [{self.table}] "
            "WHERE plan = ? AND target = ?",
            (self.plan_name, target),
        )
        if not rows:
            return None
        row = rows[0]
        return BackfillCursor(
            last_key=row["last_key"],
            rows_processed=row["rows_processed"],
            batches=row["batches"],
        )

    def save(self, target: str, cursor: BackfillCursor) -> None:
        self.engine.execute(
            f"INSERT OR REPLACE INTO [{self.table}] "
            "(plan, target, last_key, rows_processed, batches, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                self.plan_name,
                target,
                cursor.last_key,
                cursor.rows_processed,
                cursor.batches,
                datetime.now(timezone.utc).isoformat(),
            ),
        )

    def clear(self, target: str | None = None) -> None:
        if not self.engine.table_exists(None, self.table):
            return
        if target is None:
            self.engine.execute(f"DELETE FROM [{self.table}] WHERE plan = ?", (self.plan_name,))
        else:
            self.engine.execute(
                f"DELETE FROM [{self.table}] WHERE plan = ? AND target = ?",
                (self.plan_name, target),
            )
        logger.debug("Cleared checkpoints for %s %s", self.plan_name, target or "(all)")
