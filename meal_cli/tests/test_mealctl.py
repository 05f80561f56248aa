"""Tests for the mealctl CLI.

Commands run through ``typer.testing.CliRunner`` against throwaway SQLite
files so that every invocation gets its own engine and event loop.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from meal_cli.app import app
from meal_engine.models.results import MaintenanceReport, MaintenanceSummary, TaskOutcome

runner = CliRunner()


@pytest.fixture()
def database_url(tmp_path: Path) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path / 'state.db'}"
    result = runner.invoke(app, ["init-db", "--database-url", url])
    assert result.exit_code == 0, result.output
    return url


# ---------------------------------------------------------------------------
# cycle
# ---------------------------------------------------------------------------


class TestCycle:
    def test_weekly_json(self) -> None:
        result = runner.invoke(app, ["--json", "cycle", "weekly", "2024-03-06", "--count", "2"])

        assert result.exit_code == 0, result.output
        cycles = json.loads(result.stdout)
        assert [(c["cycle_start"], c["cycle_end"], c["renewal_date"]) for c in cycles] == [
            ("2024-03-04", "2024-03-10", "2024-03-11"),
            ("2024-03-11", "2024-03-17", "2024-03-18"),
        ]

    def test_monthly_leap_february(self) -> None:
        result = runner.invoke(app, ["--json", "cycle", "monthly", "2024-02-10"])

        [february] = json.loads(result.stdout)
        assert february["cycle_end"] == "2024-02-29"
        assert february["days"] == 29

    def test_next_boundary(self) -> None:
        result = runner.invoke(app, ["--json", "cycle", "weekly", "2024-03-04", "--next-boundary"])

        assert json.loads(result.stdout)[0]["cycle_start"] == "2024-03-11"

    def test_positions_relative_to_as_of(self) -> None:
        result = runner.invoke(
            app, ["--json", "cycle", "weekly", "2024-03-06", "--count", "4", "--as-of", "2024-03-13"]
        )

        assert result.exit_code == 0, result.output
        cycles = json.loads(result.stdout)
        assert [(c["cycle_start"], c["position"]) for c in cycles] == [
            ("2024-03-04", "past"),
            ("2024-03-11", "current"),
            ("2024-03-18", "next"),
            ("2024-03-25", "future"),
        ]

    def test_positions_omitted_without_as_of(self) -> None:
        result = runner.invoke(app, ["--json", "cycle", "weekly", "2024-03-06"])

        assert "position" not in json.loads(result.stdout)[0]

    def test_table_shows_positions(self) -> None:
        result = runner.invoke(app, ["cycle", "monthly", "2024-02-10", "--count", "2", "--as-of", "2024-02-29"])

        assert result.exit_code == 0, result.output
        assert "current" in result.output
        assert "next" in result.output

    def test_invalid_as_of(self) -> None:
        result = runner.invoke(app, ["cycle", "weekly", "2024-03-06", "--as-of", "soon"])
        assert result.exit_code == 3

    def test_table_output(self) -> None:
        result = runner.invoke(app, ["cycle", "weekly", "2024-03-06"])

        assert result.exit_code == 0
        assert "2024-03-04" in result.output
        assert "2024-03-11" in result.output

    def test_invalid_date(self) -> None:
        result = runner.invoke(app, ["cycle", "weekly", "2024-02-30"])
        assert result.exit_code == 3

    def test_unknown_period(self) -> None:
        result = runner.invoke(app, ["cycle", "daily", "2024-03-04"])
        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# Database commands
# ---------------------------------------------------------------------------


class TestDatabaseCommands:
    def test_init_db_is_idempotent(self, database_url: str) -> None:
        result = runner.invoke(app, ["--json", "init-db", "--database-url", database_url])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"status": "ok"}

    def test_maintenance_on_empty_database(self, database_url: str) -> None:
        result = runner.invoke(app, ["--json", "maintenance", "--database-url", database_url])

        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["success"] is True
        assert sorted(report["results"]) == ["credit_expiry", "order_backfill", "pause_auto_cancel", "trial_completion"]

    def test_maintenance_subset(self, database_url: str) -> None:
        result = runner.invoke(
            app, ["--json", "maintenance", "--task", "credit_expiry", "--database-url", database_url]
        )

        assert result.exit_code == 0, result.output
        assert list(json.loads(result.stdout)["results"]) == ["credit_expiry"]

    def test_maintenance_unknown_task(self, database_url: str) -> None:
        result = runner.invoke(app, ["maintenance", "--task", "defrag", "--database-url", database_url])

        assert result.exit_code == 3
        assert "defrag" in result.output

    def test_maintenance_failure_exit_code(self, database_url: str) -> None:
        failed = MaintenanceReport(
            success=False,
            timestamp="2024-03-04T02:00:00+00:00",
            results={"credit_expiry": TaskOutcome(success=False, error="ledger unavailable")},
            summary=MaintenanceSummary(total_tasks=1, successful=0, failed=1, has_errors=True),
        )

        with patch("meal_engine.maintenance.scheduler.MaintenanceScheduler.run_daily", return_value=failed):
            result = runner.invoke(app, ["maintenance", "--database-url", database_url])

        assert result.exit_code == 1
        assert "ledger unavailable" in result.output

    def test_renew_with_nothing_due(self, database_url: str) -> None:
        result = runner.invoke(app, ["--json", "renew", "--lead-days", "7", "--database-url", database_url])

        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert (report["examined"], report["provisioned"], report["failed"]) == (0, 0, 0)

    def test_renew_table_output(self, database_url: str) -> None:
        result = runner.invoke(app, ["renew", "--database-url", database_url])

        assert result.exit_code == 0
        assert "Renewals" in result.output


class TestServe:
    def test_runs_uvicorn(self) -> None:
        with patch("uvicorn.run") as run:
            result = runner.invoke(app, ["serve", "--port", "9001"])

        assert result.exit_code == 0, result.output
        run.assert_called_once_with("meal_api.main:app", host="127.0.0.1", port=9001, reload=False, log_level="info")
