"""
Centralized configuration for keyswap.

Defaults that vary by deployment belong here.
Override via environment variables where marked.
"""

import os

# ============================================================
# Storage
# ============================================================

DB_PATH: str | None = os.environ.get("KEYSWAP_DB")
"""Default database path for the CLI when --db is not given."""

BUSY_TIMEOUT_SECONDS: float = float(os.environ.get("KEYSWAP_BUSY_TIMEOUT", "5.0"))
"""How long sqlite3 waits on a locked database before raising."""

# ============================================================
# Backfill
# ============================================================

BATCH_SIZE: int = int(os.environ.get("KEYSWAP_BATCH_SIZE", "500"))
"""Rows per backfill batch. Each batch is committed on its own."""

MAX_BATCHES_PER_MINUTE: int = int(os.environ.get("KEYSWAP_MAX_BATCHES_PER_MINUTE", "0"))
"""Throttle for backfill batches. 0 disables throttling."""

DEFAULT_SHADOW_SUFFIX: str = "_uuid"
"""Shadow column name = <column><suffix> unless the plan names one."""

DEFAULT_SHADOW_TYPE: str = "TEXT"

# ============================================================
# Retry (transient storage errors only)
# ============================================================

MAX_RETRIES: int = int(os.environ.get("KEYSWAP_MAX_RETRIES", "3"))
RETRY_BASE_DELAY: float = float(os.environ.get("KEYSWAP_RETRY_BASE_DELAY", "0.5"))
RETRY_MAX_DELAY: float = float(os.environ.get("KEYSWAP_RETRY_MAX_DELAY", "10.0"))

# ============================================================
# Logging
# ============================================================

LOG_LEVEL: str = os.environ.get("KEYSWAP_LOG_LEVEL", "INFO")

_log_json = os.environ.get("KEYSWAP_LOG_JSON")
LOG_JSON: bool | None = None if _log_json is None else _log_json.lower() in ("1", "true", "yes")
"""Force JSON logs on/off. Unset means auto-detect (JSON when not a TTY)."""

CHECKPOINT_TABLE: str = "_keyswap_checkpoints"
