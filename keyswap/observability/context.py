"""
Run context management with context-local storage.
"""

import contextvars

from ..identifiers import uuid7

# Context variable for the migration run ID
_run_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("run_id", default=None)


def get_run_id() -> str | None:
    """Get the current run ID from context."""
    return _run_id_var.get()


def set_run_id(run_id: str) -> contextvars.Token:
    """Set the run ID in context. Returns token for reset."""
    return _run_id_var.set(run_id)


def generate_run_id() -> str:
    """Generate a new run ID (time-ordered, so runs sort by start)."""
    return f"run-{uuid7()}"


class RunContext:
    """
    Context manager for run-scoped operations.

    Usage:
        with RunContext() as ctx:
            logger.info("Migrating")
            # All logs within this block carry ctx.run_id

        # Or with an existing ID:
        with RunContext(run_id="run-abc123"):
            ...
    """

    def __init__(self, run_id: str | None = None):
        self.run_id = run_id or generate_run_id()
        self._token: contextvars.Token | None = None

    def __enter__(self) -> "RunContext":
        self._token = set_run_id(self.run_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _run_id_var.reset(self._token)
            self._token = None
