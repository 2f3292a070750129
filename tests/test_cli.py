"""Tests for cftracker.cli module."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from typer.testing import CliRunner

from cftracker.cli import _coerce_value, _format_duration, _human_time, _log_line_style, app
from cftracker.config import AppConfig, SyncConfig, load_config, save_config
from cftracker.storage.database import _SCHEMA

runner = CliRunner()


# ---------------------------------------------------------------------------
# Helper fixture: patch get_base_dir in the cli module as well
# ---------------------------------------------------------------------------


@pytest.fixture()
def cli_base_dir(base_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Extend the shared ``base_dir`` fixture to also patch the reference
    that ``cftracker.cli`` holds after its ``from cftracker.config import get_base_dir``
    import.
    """
    monkeypatch.setattr("cftracker.cli.get_base_dir", lambda: base_dir)
    return base_dir


def _make_db(base: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(base / "cftracker.db")
    conn.executescript(_SCHEMA)
    return conn


# ---------------------------------------------------------------------------
# 1. --help
# ---------------------------------------------------------------------------


def test_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "codeforces" in result.output.lower()
    for command in ("serve", "sync", "status", "logs", "config", "db"):
        assert command in result.output


# ---------------------------------------------------------------------------
# 2. status
# ---------------------------------------------------------------------------


def test_status_service_not_running(cli_base_dir: Path):
    with patch("cftracker.cli.httpx.Client.get", side_effect=httpx.ConnectError("refused")):
        result = runner.invoke(app, ["status"])
    assert result.exit_code == 1
    assert "could not connect" in result.output.lower()


def test_status_with_service(cli_base_dir: Path):
    answers = {
        "/api/health": {
            "uptime_seconds": 3725,
            "environment": "development",
            "sync": {
                "state": "error",
                "syncing": False,
                "last_stats": {"total_students": 5, "successful_syncs": 4, "failed_syncs": 1, "duration_ms": 900},
            },
        },
        "/api/cron/status": {
            "running": True,
            "paused": True,
            "syncing": False,
            "interval_minutes": 1440,
            "last_sync_at": None,
            "next_sync_at": None,
            "last_result": {"success": True, "students_processed": 4, "errors": 0},
        },
    }
    with patch("cftracker.cli.api_get", side_effect=answers.__getitem__):
        result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "1h 2m" in result.output
    assert "development" in result.output
    assert "paused" in result.output
    assert "1440m" in result.output
    assert "students_processed: 4" in result.output
    assert "Engine:" in result.output
    assert "error" in result.output
    assert "4/5 ok, 1 failed, 900 ms" in result.output


def test_status_error_envelope(cli_base_dir: Path):
    response = httpx.Response(
        503,
        json={"success": False, "message": "Scheduler not configured", "error": None},
        request=httpx.Request("GET", "http://127.0.0.1:8000/api/health"),
    )
    with patch("cftracker.cli.httpx.Client.get", return_value=response):
        result = runner.invoke(app, ["status"])
    assert result.exit_code == 1
    assert "Scheduler not configured" in result.output


# ---------------------------------------------------------------------------
# 3. sync
# ---------------------------------------------------------------------------


def test_sync_flags_are_exclusive(cli_base_dir: Path):
    result = runner.invoke(app, ["sync", "--student-id", "1", "--all"])
    assert result.exit_code == 1
    assert "mutually exclusive" in result.output


@pytest.mark.parametrize(
    ("args", "expected"),
    [
        ([], (None, False)),
        (["--all"], (None, True)),
        (["-s", "7"], (7, False)),
    ],
)
def test_sync_dispatch(cli_base_dir: Path, args: list[str], expected: tuple):
    run_sync = AsyncMock(return_value=True)
    with (
        patch("cftracker.logging.setup_logging"),
        patch("cftracker.cli._run_sync", run_sync),
    ):
        result = runner.invoke(app, ["sync", *args])

    assert result.exit_code == 0
    _cfg, student_id, all_students = run_sync.await_args.args
    assert (student_id, all_students) == expected


def test_sync_failure_exit_code(cli_base_dir: Path):
    with (
        patch("cftracker.logging.setup_logging"),
        patch("cftracker.cli._run_sync", AsyncMock(return_value=False)),
    ):
        result = runner.invoke(app, ["sync"])
    assert result.exit_code == 1


def test_sync_unknown_student_against_database(cli_base_dir: Path):
    save_config(AppConfig(sync=SyncConfig(api_delay_ms=0, student_delay_ms=0)))
    _make_db(cli_base_dir).close()

    with patch("cftracker.logging.setup_logging"):
        result = runner.invoke(app, ["sync", "--student-id", "99"])

    assert result.exit_code == 1
    assert "Student not found" in result.output


def test_sync_empty_database(cli_base_dir: Path):
    save_config(AppConfig(sync=SyncConfig(api_delay_ms=0, student_delay_ms=0)))

    with patch("cftracker.logging.setup_logging"):
        result = runner.invoke(app, ["sync"])

    assert result.exit_code == 0
    assert "0/0" in result.output


# ---------------------------------------------------------------------------
# 4. logs
# ---------------------------------------------------------------------------


def test_logs_no_log_file(cli_base_dir: Path):
    log_file = cli_base_dir / "logs" / "server.log"
    assert not log_file.exists()

    result = runner.invoke(app, ["logs"])
    assert result.exit_code == 1
    assert "not found" in result.output.lower()


def test_logs_with_log_file(cli_base_dir: Path):
    log_file = cli_base_dir / "logs" / "server.log"
    log_file.write_text("2026-01-01 [info     ] service_started host=127.0.0.1\n")

    result = runner.invoke(app, ["logs"])
    assert result.exit_code == 0
    assert "service_started" in result.output


def test_logs_sync_tail(cli_base_dir: Path):
    log_file = cli_base_dir / "logs" / "sync.log"
    lines = [f'{{"event": "line_{i}", "level": "info"}}' for i in range(10)]
    log_file.write_text("\n".join(lines) + "\n")

    result = runner.invoke(app, ["logs", "--sync", "-n", "3"])
    assert result.exit_code == 0
    assert "line_9" in result.output
    assert "line_7" in result.output
    assert "line_6" not in result.output


def test_logs_empty_file(cli_base_dir: Path):
    (cli_base_dir / "logs" / "server.log").write_text("")
    result = runner.invoke(app, ["logs"])
    assert result.exit_code == 0
    assert "empty" in result.output.lower()


def test_log_line_style():
    assert _log_line_style("2026 [error    ] boom") == "red"
    assert _log_line_style('{"level": "warning", "event": "x"}') == "yellow"
    assert _log_line_style("2026 [debug    ] x") == "dim"
    assert _log_line_style("2026 [info     ] x") is None


# ---------------------------------------------------------------------------
# 5. config
# ---------------------------------------------------------------------------


def test_config_show_sections(cli_base_dir: Path):
    result = runner.invoke(app, ["config", "show"])
    assert result.exit_code == 0
    assert "[server]" in result.output
    assert "[sync]" in result.output
    assert "[codeforces]" in result.output
    assert "interval_minutes" in result.output
    assert "https://codeforces.com/api" in result.output


def test_config_set_int(cli_base_dir: Path):
    result = runner.invoke(app, ["config", "set", "sync.interval_minutes", "720"])
    assert result.exit_code == 0
    assert load_config().sync.interval_minutes == 720


def test_config_set_bool_and_literal(cli_base_dir: Path):
    assert runner.invoke(app, ["config", "set", "sync.enabled", "false"]).exit_code == 0
    assert runner.invoke(app, ["config", "set", "server.environment", "development"]).exit_code == 0

    cfg = load_config()
    assert cfg.sync.enabled is False
    assert cfg.is_development()


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("interval", "5", "section.field"),
        ("cache.size", "5", "Unknown section"),
        ("sync.colour", "5", "Unknown field"),
        ("sync.interval_minutes", "soon", "Invalid value"),
        ("sync.interval_minutes", "0", "Invalid value"),
        ("server.environment", "staging", "Invalid value"),
    ],
)
def test_config_set_rejects(cli_base_dir: Path, key: str, value: str, message: str):
    result = runner.invoke(app, ["config", "set", key, value])
    assert result.exit_code == 1
    assert message in result.output
    assert not (cli_base_dir / "config.toml").exists()


def test_coerce_value():
    from typing import Literal

    assert _coerce_value("yes", bool) is True
    assert _coerce_value("0", bool) is False
    assert _coerce_value("42", int) == 42
    assert _coerce_value("info", str) == "info"
    assert _coerce_value("a", Literal["a", "b"]) == "a"
    with pytest.raises(ValueError, match="bool"):
        _coerce_value("maybe", bool)


# ---------------------------------------------------------------------------
# 6. db
# ---------------------------------------------------------------------------


def test_db_no_database(cli_base_dir: Path):
    result = runner.invoke(app, ["db", "status"])
    assert result.exit_code == 1
    assert "not found" in result.output.lower()


def test_db_empty_database(cli_base_dir: Path):
    _make_db(cli_base_dir).close()

    result = runner.invoke(app, ["db", "status"])
    assert result.exit_code == 0
    for table in ("student", "contest", "submission", "rating_change"):
        assert table in result.output
    assert "never synced" not in result.output


def test_db_with_data(cli_base_dir: Path):
    conn = _make_db(cli_base_dir)
    conn.execute(
        "INSERT INTO student (name, email, phone_number, codeforces_handle, last_data_update,"
        " created_at, updated_at) VALUES ('A', 'a@x.io', '+1', 'tourist',"
        " '2026-01-01T00:00:00+00:00', '2026-01-01T00:00:00+00:00', '2026-01-01T00:00:00+00:00')"
    )
    conn.execute(
        "INSERT INTO student (name, email, phone_number, codeforces_handle,"
        " created_at, updated_at) VALUES ('B', 'b@x.io', '+2', 'petr',"
        " '2026-01-01T00:00:00+00:00', '2026-01-01T00:00:00+00:00')"
    )
    conn.commit()
    conn.close()

    result = runner.invoke(app, ["db", "status"])
    assert result.exit_code == 0
    assert "Last sync" in result.output
    assert "tourist" in result.output
    assert "1 student(s) never synced" in result.output


# ---------------------------------------------------------------------------
# 7. formatting helpers
# ---------------------------------------------------------------------------


def test_format_duration():
    assert _format_duration(42) == "42s"
    assert _format_duration(125) == "2m 5s"
    assert _format_duration(3 * 3600 + 60) == "3h 1m"
    assert _format_duration(2 * 86400 + 3600) == "2d 1h"


def test_human_time():
    assert _human_time(None) == "never"
    assert _human_time("garbage") == "garbage"
    assert _human_time("2000-01-01T00:00:00+00:00").endswith("ago")
