"""
Tests for dual-write sync triggers.

Writes through the old integer foreign key must land in its shadow column
while the migration is in flight.
"""

import pytest

from keyswap.backfill import BackfillDriver
from keyswap.dual_write import drop_sync_triggers, install_sync_triggers, trigger_names
from keyswap.schema_mutator import SchemaMutator


@pytest.fixture
def in_flight(engine, full_plan):
    """Full plan with shadows added, identities backfilled, triggers installed."""
    mutator = SchemaMutator(engine)
    driver = BackfillDriver(engine, full_plan)
    for table in full_plan.ordered_tables():
        for _, shadow, shadow_type in table.column_pairs():
            mutator.add_column(table, shadow, shadow_type)
        driver.backfill(table, table.identity)
    install_sync_triggers(engine, full_plan)
    return full_plan


def color_uuid(engine, color_id):
    return engine.query_scalar("SELECT color_id_uuid FROM colors WHERE color_id = ?", (color_id,))


class TestInstall:
    """Trigger installation."""

    def test_names(self, full_plan):
        ref = full_plan.table("main.products").references[0]
        assert trigger_names(ref) == ["ksw_sync_products_color_id_ins", "ksw_sync_products_color_id_upd"]

    def test_cross_schema_reference_is_skipped(self, engine, full_plan):
        result = install_sync_triggers(engine, full_plan)
        assert result["skipped"] == ["tenant.orders.product_id"]
        assert len(result["triggers_created"]) == 6
        assert engine.triggers("tenant", "orders") == []

    def test_reinstall_replaces(self, engine, in_flight):
        install_sync_triggers(engine, in_flight)
        assert sorted(engine.triggers("main", "products")) == [
            "ksw_sync_products_color_id_ins",
            "ksw_sync_products_color_id_upd",
        ]

    def test_drop(self, engine, in_flight):
        dropped = drop_sync_triggers(engine, in_flight.table("main.products"))
        assert dropped == [
            "main.ksw_sync_products_color_id_ins",
            "main.ksw_sync_products_color_id_upd",
        ]
        assert engine.triggers("main", "products") == []


class TestSync:
    """Application writes during the migration."""

    def test_insert_fills_shadow(self, engine, in_flight):
        engine.execute(
            "INSERT INTO products (product_id, name, color_id, created_at) "
            "VALUES (11, 'bench', 3, '2023-02-11 10:00:00')"
        )
        shadow = engine.query_scalar("SELECT color_id_uuid FROM products WHERE product_id = 11")
        assert shadow == color_uuid(engine, 3)

    def test_update_of_fk_follows(self, engine, in_flight):
        driver = BackfillDriver(engine, in_flight)
        products = in_flight.table("main.products")
        driver.backfill(products, products.references[0])

        engine.execute("UPDATE products SET color_id = 5 WHERE product_id = 1")
        shadow = engine.query_scalar("SELECT color_id_uuid FROM products WHERE product_id = 1")
        assert shadow == color_uuid(engine, 5)

    def test_update_to_null_clears_shadow(self, engine, in_flight):
        products = in_flight.table("main.products")
        BackfillDriver(engine, in_flight).backfill(products, products.references[0])
        assert engine.query_scalar("SELECT color_id_uuid FROM products WHERE product_id = 2")

        engine.execute("UPDATE products SET color_id = NULL WHERE product_id = 2")
        assert engine.query_scalar("SELECT color_id_uuid FROM products WHERE product_id = 2") is None

    def test_unrelated_update_does_not_fire(self, engine, in_flight):
        engine.execute("UPDATE products SET price = 1.0 WHERE product_id = 2")
        assert engine.query_scalar("SELECT color_id_uuid FROM products WHERE product_id = 2") is None

    def test_self_reference(self, engine, in_flight):
        engine.execute(
            "INSERT INTO users (user_id, name, manager_id, created_at) "
            "VALUES (5, 'edsger', 3, '2022-06-05 09:00:00')"
        )
        manager = engine.query_scalar("SELECT user_id_uuid FROM users WHERE user_id = 3")
        assert engine.query_scalar("SELECT manager_id_uuid FROM users WHERE user_id = 5") == manager

    def test_reference_to_unkeyed_row_stays_null(self, engine, in_flight):
        engine.execute("INSERT INTO colors (color_id, name, created_at) VALUES (6, 'teal', '2023-01-06')")
        engine.execute(
            "INSERT INTO products (product_id, name, color_id, created_at) "
            "VALUES (11, 'bench', 6, '2023-02-11 10:00:00')"
        )
        # colors.6 has no new key yet; the catch-up pass resolves it
        assert engine.query_scalar("SELECT color_id_uuid FROM products WHERE product_id = 11") is None
