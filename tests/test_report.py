"""
Tests for MigrationReport and MigrationPhase.
"""

import json
from datetime import datetime, timedelta

from keyswap.report import MigrationPhase, MigrationReport, PhaseResult


def make_report(**kwargs) -> MigrationReport:
    return MigrationReport(plan="shop", run_id="run-1", started_at=datetime(2024, 5, 1, 12, 0), **kwargs)


class TestMigrationPhase:
    def test_terminal_phases(self):
        terminal = {p for p in MigrationPhase if p.is_terminal}
        assert terminal == {MigrationPhase.COMPLETE, MigrationPhase.ABORTED}

    def test_values_are_stable(self):
        assert [p.value for p in MigrationPhase] == [
            "planned",
            "shadow_columns_added",
            "backfilling",
            "verified",
            "swapped_in",
            "indexes_rebuilt",
            "complete",
            "aborted",
        ]


class TestMigrationReport:
    def test_defaults(self):
        report = make_report()
        assert report.phase == MigrationPhase.PLANNED
        assert not report.success
        assert report.duration_seconds == 0.0
        assert report.failed_phases == []

    def test_success_only_when_complete(self):
        assert make_report(phase=MigrationPhase.COMPLETE).success
        assert not make_report(phase=MigrationPhase.INDEXES_REBUILT).success
        assert not make_report(phase=MigrationPhase.ABORTED).success

    def test_duration(self):
        report = make_report()
        report.completed_at = report.started_at + timedelta(seconds=90)
        assert report.duration_seconds == 90.0

    def test_record_failure(self):
        report = make_report()
        report.record_failure("orphaned_references", "main.products", "color_id_uuid", 3)
        assert report.verification_failures == {"orphaned_references:main.products.color_id_uuid": 3}

    def test_failed_phases(self):
        report = make_report(
            phases=[
                PhaseResult(name="shadow_columns_added", success=True),
                PhaseResult(name="backfilling", success=False, error="boom"),
            ]
        )
        assert report.failed_phases == ["backfilling"]

    def test_to_dict_is_json_serializable(self):
        report = make_report(
            phase=MigrationPhase.ABORTED,
            last_phase_reached=MigrationPhase.VERIFIED,
            reason="SchemaConflict: simulated",
            swapped_tables=["main.products"],
            phases=[PhaseResult(name="swapped_in", success=False, error="simulated", duration_seconds=0.5)],
        )
        report.completed_at = report.started_at + timedelta(seconds=2)
        data = json.loads(json.dumps(report.to_dict()))

        assert data["phase"] == "aborted"
        assert data["last_phase_reached"] == "verified"
        assert data["success"] is False
        assert data["started_at"] == "2024-05-01T12:00:00"
        assert data["duration_seconds"] == 2.0
        assert data["swapped_tables"] == ["main.products"]
        assert data["failed_phases"] == ["swapped_in"]
        assert data["phases"][0]["error"] == "simulated"
