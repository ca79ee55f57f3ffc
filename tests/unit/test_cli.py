"""Unit tests for the changewire CLI (db init, status, poll, consume)."""

from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from changewire.cli import app
from changewire.cli.common import mask_url

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_cwd(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CHANGEWIRE_DATABASE_URL", raising=False)
    monkeypatch.delenv("CHANGEWIRE_CONFIG", raising=False)


def test_status_without_url_exits_2():
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 2
    assert "CHANGEWIRE_DATABASE_URL" in result.output


def test_poll_without_url_exits_2():
    result = runner.invoke(app, ["poll"])
    assert result.exit_code == 2
    assert "CHANGEWIRE_DATABASE_URL" in result.output


def test_db_init_without_url_exits_2():
    result = runner.invoke(app, ["db", "init"])
    assert result.exit_code == 2


def test_invalid_config_exits_2(tmp_path: Path):
    (tmp_path / "changewire.yaml").write_text("capture:\n  mode: wal\n", encoding="utf-8")
    result = runner.invoke(app, ["status", "--database-url", "sqlite+aiosqlite:///x.db"])
    assert result.exit_code == 2
    assert "Invalid configuration" in result.output


def test_db_init_then_status_on_sqlite(tmp_path: Path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    init = runner.invoke(app, ["db", "init", "--database-url", url])
    assert init.exit_code == 0, init.output
    # The watched tables do not exist in an empty database, so capture falls back to hooks.
    assert "hook" in init.output
    assert "Warning" in init.output

    status = runner.invoke(app, ["status", "--database-url", url])
    assert status.exit_code == 0, status.output
    assert "Pending changes" in status.output
    assert "changewire-poller" in status.output


def test_status_reports_storage_errors(tmp_path: Path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}"
    result = runner.invoke(app, ["status", "--database-url", url])
    assert result.exit_code == 1
    assert "Error" in result.output


def test_consume_requires_kafka_client():
    with patch("changewire.cli.run.ensure_bus_dependency", side_effect=RuntimeError("missing aiokafka")):
        result = runner.invoke(app, ["consume"])
    assert result.exit_code == 1
    assert "missing aiokafka" in result.output


def test_version_option():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.output.startswith("changewire ")


def test_mask_url_hides_password():
    assert mask_url("postgresql://u:secret@db:5432/app") == "postgresql://u:***@db:5432/app"
    assert mask_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"
