"""
Test configuration - ensures repo root is in sys.path + isolation guards.

This allows tests to import from top-level packages (keyswap, cli).
Every test gets its own temp databases; $KEYSWAP_DB is never consulted.
"""

import sys
from pathlib import Path

import pytest

# Add repo root to sys.path so tests can import keyswap.*, cli.*, tests.fixtures
REPO_ROOT = Path(__file__).parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from keyswap import config  # noqa: E402
from keyswap.db import open_engine  # noqa: E402
from keyswap.plan import plan_from_dict  # noqa: E402
from keyswap.resilience import RetryConfig  # noqa: E402
from tests.fixtures import FULL_PLAN, SHOP_PLAN, create_fixture_db, create_tenant_db  # noqa: E402


# =============================================================================
# ISOLATION GUARD: never fall back to a configured database
# =============================================================================


@pytest.fixture(autouse=True)
def guard_default_database(monkeypatch):
    """Automatically keep tests away from $KEYSWAP_DB."""
    monkeypatch.delenv("KEYSWAP_DB", raising=False)
    monkeypatch.setattr(config, "DB_PATH", None)


# =============================================================================
# FIXTURE DBS
# =============================================================================


@pytest.fixture
def db_path(tmp_path):
    """Fresh main fixture database for each test."""
    return create_fixture_db(tmp_path / "shop.db")


@pytest.fixture
def tenant_path(tmp_path):
    """Fresh tenant database for each test."""
    return create_tenant_db(tmp_path / "tenant.db")


@pytest.fixture
def engine(db_path, tenant_path):
    """StorageEngine over the fixture DBs, tenant attached. No retry sleeps."""
    with open_engine(
        db_path, attach={"tenant": tenant_path}, retry=RetryConfig(max_retries=0)
    ) as engine:
        yield engine


@pytest.fixture
def shop_plan():
    """colors <- products."""
    return plan_from_dict(SHOP_PLAN)


@pytest.fixture
def full_plan():
    """Every fixture table, including the self-reference and the tenant schema."""
    return plan_from_dict(FULL_PLAN)
