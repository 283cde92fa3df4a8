"""
Tests for keyswap.safe_sql statement builders.

Identifiers are validated before interpolation; values never are.
"""

import sqlite3

import pytest

from keyswap import safe_sql


class TestValidation:
    """Identifier and type validation."""

    @pytest.mark.parametrize("name", ["colors", "_tmp", "color_id_uuid", "T1"])
    def test_valid_identifiers(self, name):
        assert safe_sql.validate_identifier(name) == name

    @pytest.mark.parametrize(
        "name", ["", "1table", "col umn", "x;DROP TABLE y", "a]b", "tenant.orders", None]
    )
    def test_invalid_identifiers(self, name):
        with pytest.raises(ValueError, match="Invalid SQL identifier"):
            safe_sql.validate_identifier(name)

    @pytest.mark.parametrize("column_type", ["TEXT", "VARCHAR(36)", "DECIMAL(10, 2)", "BLOB"])
    def test_valid_column_types(self, column_type):
        assert safe_sql.validate_column_type(column_type) == column_type

    @pytest.mark.parametrize("column_type", ["TEXT; DROP", "VARCHAR(abc)", "", "TEXT --"])
    def test_invalid_column_types(self, column_type):
        with pytest.raises(ValueError, match="Invalid column type"):
            safe_sql.validate_column_type(column_type)

    def test_qualified_defaults_to_main(self):
        assert safe_sql.qualified(None, "colors") == "[main].[colors]"
        assert safe_sql.qualified("tenant", "orders") == "[tenant].[orders]"


class TestDDL:
    """DDL statement builders."""

    def test_add_column_nullable(self):
        sql = safe_sql.alter_add_column("main", "colors", "color_id_uuid", "TEXT")
        assert sql == "ALTER TABLE [main].[colors] ADD COLUMN [color_id_uuid] TEXT"

    def test_add_column_not_null_needs_default(self):
        sql = safe_sql.alter_add_column("main", "colors", "flag", "INTEGER", nullable=False, default=0)
        assert sql.endswith("[flag] INTEGER NOT NULL DEFAULT 0")

    def test_add_column_string_default_is_escaped(self):
        sql = safe_sql.alter_add_column("main", "t", "c", "TEXT", default="it's")
        assert sql.endswith("DEFAULT 'it''s'")

    def test_unsupported_default(self):
        with pytest.raises(ValueError, match="Unsupported DEFAULT"):
            safe_sql.alter_add_column("main", "t", "c", "TEXT", default=object())

    def test_index_names(self):
        assert safe_sql.index_name("colors", "color_id", unique=True) == "ux_colors_color_id"
        assert safe_sql.index_name("products", "color_id", unique=False) == "ix_products_color_id"

    def test_create_index_qualifies_index_not_table(self):
        sql = safe_sql.create_index("tenant", "orders", "order_id", "ux_orders_order_id", unique=True)
        assert sql == "CREATE UNIQUE INDEX [tenant].[ux_orders_order_id] ON [orders] ([order_id])"

    def test_drop_trigger_if_exists(self):
        assert safe_sql.drop_trigger(None, "t1") == "DROP TRIGGER IF EXISTS [main].[t1]"

    def test_rejects_injection_in_ddl(self):
        with pytest.raises(ValueError):
            safe_sql.alter_drop_column("main", "colors", "id; DROP TABLE colors")


class TestDML:
    """Batch and verification queries, run against an in-memory database."""

    @pytest.fixture
    def conn(self):
        conn = sqlite3.connect(":memory:")
        conn.executescript(
            """
            CREATE TABLE colors (color_id INTEGER, color_id_uuid TEXT);
            CREATE TABLE products (product_id INTEGER, color_id INTEGER, color_id_uuid TEXT);
            INSERT INTO colors VALUES (1, 'a'), (2, 'b'), (3, NULL);
            INSERT INTO products VALUES (1, 1, 'a'), (2, 2, 'x'), (3, 3, NULL), (4, NULL, NULL), (5, 9, 'zz');
            """
        )
        yield conn
        conn.close()

    def test_select_batch_pages_by_key(self, conn):
        sql = safe_sql.select_batch("main", "colors", "color_id", [], "color_id_uuid")
        assert conn.execute(sql, (None, None, 10)).fetchall() == [(3,)]
        conn.execute("UPDATE colors SET color_id_uuid = NULL")
        assert conn.execute(sql, (None, None, 2)).fetchall() == [(1,), (2,)]
        assert conn.execute(sql, (2, 2, 2)).fetchall() == [(3,)]

    def test_select_batch_skips_null_source(self, conn):
        sql = safe_sql.select_batch(
            "main", "products", "product_id", ["color_id"], "color_id_uuid", not_null="color_id"
        )
        assert conn.execute(sql, (None, None, 10)).fetchall() == [(3, 3)]

    def test_select_batch_skips_null_key(self, conn):
        conn.execute("UPDATE colors SET color_id_uuid = NULL")
        conn.execute("INSERT INTO colors (color_id) VALUES (NULL)")
        sql = safe_sql.select_batch("main", "colors", "color_id", [], "color_id_uuid")
        assert conn.execute(sql, (None, None, 10)).fetchall() == [(1,), (2,), (3,)]

    def test_count_null(self, conn):
        conn.execute("INSERT INTO colors (color_id) VALUES (NULL)")
        assert conn.execute(safe_sql.count_null("main", "colors", "color_id")).fetchone() == (1,)

    def test_update_only_fills_nulls(self, conn):
        sql = safe_sql.update_by_key("main", "colors", "color_id_uuid", "color_id")
        assert conn.execute(sql, ("new", 1)).rowcount == 0
        assert conn.execute(sql, ("new", 3)).rowcount == 1
        assert conn.execute("SELECT color_id_uuid FROM colors WHERE color_id = 3").fetchone() == ("new",)

    def test_select_lookup(self, conn):
        sql = safe_sql.select_lookup("main", "colors", "color_id", "color_id_uuid", 2)
        assert sorted(conn.execute(sql, (1, 2)).fetchall()) == [(1, "a"), (2, "b")]

    def test_count_null_shadow(self, conn):
        assert conn.execute(safe_sql.count_null_shadow("main", "products", "color_id_uuid")).fetchone()[0] == 2
        sql = safe_sql.count_null_shadow("main", "products", "color_id_uuid", "color_id")
        assert conn.execute(sql).fetchone()[0] == 1

    def test_count_orphans(self, conn):
        sql = safe_sql.count_orphans("main", "products", "color_id_uuid", "main", "colors", "color_id_uuid")
        # 'x' and 'zz' have no color
        assert conn.execute(sql).fetchone()[0] == 2

    def test_count_mistranslated(self, conn):
        sql = safe_sql.count_mistranslated(
            "main", "products", "color_id", "color_id_uuid", "main", "colors", "color_id", "color_id_uuid"
        )
        # product 2 says 'x' but color 2 is 'b'; product 5 says 'zz' but color 9 does not exist
        assert conn.execute(sql).fetchone()[0] == 2

    def test_reset_mistranslated(self, conn):
        sql = safe_sql.reset_mistranslated(
            "main",
            "products",
            "product_id",
            "color_id",
            "color_id_uuid",
            "main",
            "colors",
            "color_id",
            "color_id_uuid",
        )
        conn.execute(sql)
        rows = conn.execute("SELECT product_id, color_id_uuid FROM products ORDER BY product_id").fetchall()
        assert rows == [(1, "a"), (2, None), (3, None), (4, None), (5, None)]

    def test_in_placeholders(self):
        assert safe_sql.in_placeholders(3) == "?,?,?"
