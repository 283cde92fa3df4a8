"""
Tests for the keyswap command line.

stdout carries the JSON report; logs and errors go to stderr.
"""

import json
import logging
import signal
import sqlite3
from datetime import datetime

import pytest
import yaml

from cli import main as cli_main
from cli.main import EXIT_FAILED, EXIT_MANUAL_INTERVENTION, EXIT_OK, main, parse_attach
from keyswap import config
from keyswap.orchestrator import MigrationOrchestrator
from keyswap.report import MigrationPhase, MigrationReport
from tests.fixtures import FULL_PLAN, SHOP_PLAN


@pytest.fixture(autouse=True)
def restore_root_logging():
    """main() reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def shop_yaml(tmp_path):
    path = tmp_path / "shop.yaml"
    path.write_text(yaml.safe_dump(SHOP_PLAN))
    return path


@pytest.fixture
def full_yaml(tmp_path):
    path = tmp_path / "full.yaml"
    path.write_text(yaml.safe_dump(FULL_PLAN))
    return path


class TestParseAttach:
    def test_pairs(self):
        assert parse_attach(["tenant=t.db", "audit=/var/a.db"]) == {
            "tenant": "t.db",
            "audit": "/var/a.db",
        }

    def test_none(self):
        assert parse_attach(None) == {}

    @pytest.mark.parametrize("value", ["tenant", "=t.db", "tenant="])
    def test_malformed(self, value):
        with pytest.raises(ValueError, match="NAME=PATH"):
            parse_attach([value])


class TestPlanCommand:
    def test_prints_order(self, full_yaml, capsys):
        assert main(["plan", str(full_yaml)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "PLAN full" in out
        assert out.index("main.colors") < out.index("main.products") < out.index("tenant.orders")
        assert "reference  manager_id -> manager_id_uuid  => main.users" in out
        assert "(seed: created_at)" in out

    def test_missing_file(self, tmp_path, capsys):
        assert main(["plan", str(tmp_path / "nope.yaml")]) == EXIT_FAILED
        assert "Error:" in capsys.readouterr().err

    def test_invalid_plan(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text("tables: []\n")
        assert main(["plan", str(path)]) == EXIT_FAILED
        assert "no tables" in capsys.readouterr().err


class TestRunCommand:
    def test_complete_run(self, shop_yaml, db_path, capsys):
        code = main(["--log-level", "WARNING", "run", str(shop_yaml), "--db", str(db_path)])
        report = json.loads(capsys.readouterr().out)
        assert code == EXIT_OK
        assert report["phase"] == "complete"
        assert report["swapped_tables"] == ["main.products", "main.colors"]

    def test_attached_schema(self, full_yaml, db_path, tenant_path, capsys):
        code = main(
            ["run", str(full_yaml), "--db", str(db_path), "--attach", f"tenant={tenant_path}"]
        )
        assert code == EXIT_OK, capsys.readouterr().out
        conn = sqlite3.connect(str(tenant_path))
        try:
            assert "order_id_uuid" not in [r[1] for r in conn.execute("PRAGMA table_info(orders)")]
        finally:
            conn.close()

    def test_failed_run(self, shop_yaml, db_path, capsys):
        conn = sqlite3.connect(str(db_path))
        conn.execute(
            "INSERT INTO products (product_id, name, color_id, created_at) "
            "VALUES (11, 'ghost', 99, '2023-02-11 10:00:00')"
        )
        conn.commit()
        conn.close()

        assert main(["run", str(shop_yaml), "--db", str(db_path)]) == EXIT_FAILED
        report = json.loads(capsys.readouterr().out)
        assert report["phase"] == "aborted"
        assert report["requires_manual_intervention"] is False

    def test_manual_intervention_exit_code(self, shop_yaml, db_path, monkeypatch, capsys):
        def fake_run(plan, engine, **kwargs):
            return MigrationReport(
                plan=plan.name,
                run_id="run-test",
                started_at=datetime.now(),
                phase=MigrationPhase.ABORTED,
                requires_manual_intervention=True,
            )

        monkeypatch.setattr(cli_main, "run", fake_run)
        assert main(["run", str(shop_yaml), "--db", str(db_path)]) == EXIT_MANUAL_INTERVENTION
        assert json.loads(capsys.readouterr().out)["requires_manual_intervention"] is True

    def test_database_from_environment(self, shop_yaml, db_path, monkeypatch, capsys):
        monkeypatch.setattr(config, "DB_PATH", str(db_path))
        assert main(["run", str(shop_yaml)]) == EXIT_OK

    def test_no_database(self, shop_yaml, capsys):
        assert main(["run", str(shop_yaml)]) == EXIT_FAILED
        assert "No database given" in capsys.readouterr().err

    def test_bad_attach(self, shop_yaml, db_path, capsys):
        assert main(["run", str(shop_yaml), "--db", str(db_path), "--attach", "tenant"]) == EXIT_FAILED
        assert "NAME=PATH" in capsys.readouterr().err

    def test_zero_batch_size(self, shop_yaml, db_path, capsys):
        code = main(["run", str(shop_yaml), "--db", str(db_path), "--batch-size", "0"])
        assert code == EXIT_FAILED
        assert "batch_size must be positive" in capsys.readouterr().err

    def test_signal_handlers_restored(self, shop_yaml, db_path, capsys):
        before = signal.getsignal(signal.SIGTERM)
        main(["run", str(shop_yaml), "--db", str(db_path)])
        assert signal.getsignal(signal.SIGTERM) is before


class TestVerifyCommand:
    def test_before_shadows_exist(self, shop_yaml, db_path, capsys):
        assert main(["verify", str(shop_yaml), "--db", str(db_path)]) == EXIT_FAILED
        assert "Error:" in capsys.readouterr().err

    def test_mid_migration(self, shop_yaml, db_path, engine, shop_plan, capsys):
        orchestrator = MigrationOrchestrator(engine, shop_plan)
        orchestrator.add_shadow_columns()
        orchestrator.backfill()

        assert main(["verify", str(shop_yaml), "--db", str(db_path)]) == EXIT_OK
        result = json.loads(capsys.readouterr().out)
        assert result["plan"] == "shop"
        assert result["ok"] is True
        assert len(result["checks"]) == 5

    def test_reports_failures(self, shop_yaml, db_path, engine, shop_plan, capsys):
        orchestrator = MigrationOrchestrator(engine, shop_plan)
        orchestrator.add_shadow_columns()
        orchestrator.backfill()
        engine.execute("UPDATE colors SET color_id_uuid = NULL WHERE color_id = 1")

        assert main(["verify", str(shop_yaml), "--db", str(db_path)]) == EXIT_FAILED
        result = json.loads(capsys.readouterr().out)
        assert result["ok"] is False
        failed = [c for c in result["checks"] if not c["ok"]]
        assert {c["check"] for c in failed} >= {"incomplete_backfill"}
