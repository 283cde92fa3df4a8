"""
Test fixtures for deterministic testing.

This module provides:
- create_fixture_db / create_tenant_db: temp SQLite databases with pinned seed data
- SHOP_PLAN / FULL_PLAN: plan dicts matching the fixture schema
"""

from .fixture_db import FULL_PLAN, SHOP_PLAN, create_fixture_db, create_tenant_db

__all__ = ["create_fixture_db", "create_tenant_db", "SHOP_PLAN", "FULL_PLAN"]
