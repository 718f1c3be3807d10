"""Tests for the Typer command line interface."""

import json
from unittest.mock import Mock

import pytest
from typer.testing import CliRunner

from clinisync import cli
from clinisync.infrastructure.config_manager import AppConfig
from clinisync.main import build_services

runner = CliRunner()


@pytest.fixture
def source(make_source, make_lab_row, tmp_path, today, monkeypatch):
    """Legacy source shared by every command; each command builds its own services."""
    legacy = make_source(
        tables={
            "CO01M": [{"KCSTMR": "7", "MNAME": "Lin", "MBIRTHDT": "0550505", "MTELH": "0912", "MADDR": "Hsinchu"}],
            "CO02M": [], "CO02F": [], "CO03M": [], "CO03L": [], "co05b": [],
        },
        lab_rows=[make_lab_row("7", "09006C", "1130601", "7.5")],
    )
    config = AppConfig(database={"db_path": str(tmp_path / "labs.duckdb")}, sync={"sync_on_startup": False})
    monkeypatch.setattr(cli, "setup_logging", Mock())
    monkeypatch.setattr(cli, "build_services", lambda _: build_services(config, source=legacy, today=lambda: today))
    return legacy


def test_version():
    """Test that --version prints the version and exits cleanly."""
    result = runner.invoke(cli.app, ["--version"])
    assert result.exit_code == 0
    assert "1.0.0" in result.output


def test_sync_then_status(source):
    """Test a sync run followed by the cursor display."""
    result = runner.invoke(cli.app, ["sync"])
    assert result.exit_code == 0, result.output
    assert "Sync completed" in result.output

    result = runner.invoke(cli.app, ["status"])
    assert result.exit_code == 0
    assert "1130601" in result.output


def test_sync_failure_exits_nonzero(source, monkeypatch):
    """Test that a failed run exits with code 1."""
    monkeypatch.setattr(source, "read_batch", Mock(side_effect=RuntimeError("ledger locked")))

    result = runner.invoke(cli.app, ["sync"])

    assert result.exit_code == 1
    assert "ledger locked" in result.output


def test_preload(source):
    """Test the preload summary."""
    result = runner.invoke(cli.app, ["preload"])
    assert result.exit_code == 0, result.output
    assert "Generation 1" in result.output


def test_query_json(source):
    """Test the JSON output of a patient query."""
    runner.invoke(cli.app, ["sync"])

    result = runner.invoke(cli.app, ["query", "7", "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["patient_key"] == "0000007"
    assert payload["action_list"][0]["priority"] == 2


def test_query_malformed_key(source):
    """Test that a malformed key exits with code 1."""
    result = runner.invoke(cli.app, ["query", "abc"])
    assert result.exit_code == 1
    assert "MalformedId" in result.output
