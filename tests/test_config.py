"""Tests for cftracker.config module."""

from __future__ import annotations

import os
import stat
import tomllib
from pathlib import Path

import pytest
from pydantic import ValidationError

from cftracker.config import (
    AppConfig,
    CodeforcesConfig,
    ServerConfig,
    SyncConfig,
    _dump_toml,
    _format_toml_value,
    config_exists,
    ensure_dirs,
    load_config,
    save_config,
)

# ---------------------------------------------------------------------------
# 1. Default values
# ---------------------------------------------------------------------------


def test_server_config_defaults():
    cfg = ServerConfig()
    assert cfg.host == "127.0.0.1"
    assert cfg.port == 8000
    assert cfg.log_level == "info"
    assert cfg.environment == "production"


def test_sync_config_defaults():
    cfg = SyncConfig()
    assert cfg.enabled is True
    assert cfg.interval_minutes == 1440
    assert cfg.stale_after_hours == 24
    assert cfg.api_delay_ms == 200
    assert cfg.student_delay_ms == 1000


def test_codeforces_config_defaults():
    cfg = CodeforcesConfig()
    assert cfg.base_url == "https://codeforces.com/api"
    assert cfg.timeout_seconds == 15
    assert cfg.max_retries == 3


def test_interval_must_be_positive():
    with pytest.raises(ValidationError):
        SyncConfig(interval_minutes=0)


def test_environment_rejects_unknown_value():
    with pytest.raises(ValidationError):
        ServerConfig(environment="staging")


# ---------------------------------------------------------------------------
# 2. AppConfig properties (use base_dir fixture)
# ---------------------------------------------------------------------------


def test_base_dir_property(base_dir: Path):
    assert AppConfig().base_dir == base_dir


def test_db_path(base_dir: Path):
    assert AppConfig().db_path == base_dir / "cftracker.db"


def test_log_dir(base_dir: Path):
    assert AppConfig().log_dir == base_dir / "logs"


def test_api_url():
    cfg = AppConfig(server=ServerConfig(host="0.0.0.0", port=9000))
    assert cfg.api_url == "http://0.0.0.0:9000"


def test_is_development():
    assert AppConfig().is_development() is False
    assert AppConfig(server=ServerConfig(environment="development")).is_development() is True


# ---------------------------------------------------------------------------
# 3. ensure_dirs / config_exists
# ---------------------------------------------------------------------------


def test_ensure_dirs_creates_directories(base_dir: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    fresh = tmp_path / "fresh_base"
    monkeypatch.setattr("cftracker.config.get_base_dir", lambda: fresh)

    assert not fresh.exists()
    ensure_dirs()
    assert fresh.is_dir()
    assert (fresh / "logs").is_dir()


def test_config_exists_false_when_missing(base_dir: Path):
    assert config_exists() is False


def test_config_exists_true_when_file_present(base_dir: Path):
    (base_dir / "config.toml").write_text("")
    assert config_exists() is True


# ---------------------------------------------------------------------------
# 4. save_config / load_config
# ---------------------------------------------------------------------------


def test_load_config_no_file_returns_defaults(base_dir: Path):
    cfg = load_config()
    assert cfg == AppConfig()


def test_save_load_round_trip_custom(base_dir: Path):
    original = AppConfig(
        server=ServerConfig(port=1234, log_level="debug", environment="development"),
        sync=SyncConfig(enabled=False, interval_minutes=60, stale_after_hours=6),
        codeforces=CodeforcesConfig(timeout_seconds=30, user_agent='agent "x"'),
    )
    save_config(original)
    loaded = load_config()

    assert loaded.server.port == 1234
    assert loaded.server.environment == "development"
    assert loaded.sync.enabled is False
    assert loaded.sync.interval_minutes == 60
    assert loaded.sync.stale_after_hours == 6
    assert loaded.codeforces.timeout_seconds == 30
    assert loaded.codeforces.user_agent == 'agent "x"'


def test_load_config_partial_file_fills_defaults(base_dir: Path):
    (base_dir / "config.toml").write_text("[sync]\ninterval_minutes = 30\n")
    cfg = load_config()
    assert cfg.sync.interval_minutes == 30
    assert cfg.sync.stale_after_hours == 24
    assert cfg.server.port == 8000


def test_save_config_sets_permissions(base_dir: Path):
    save_config(AppConfig())
    mode = stat.S_IMODE(os.stat(base_dir / "config.toml").st_mode)
    assert mode == 0o600


# ---------------------------------------------------------------------------
# 5. _format_toml_value / _dump_toml
# ---------------------------------------------------------------------------


def test_format_toml_value_string_with_quotes():
    assert _format_toml_value('say "hi"') == '"say \\"hi\\""'


def test_format_toml_value_string_with_backslash():
    assert _format_toml_value("back\\slash") == '"back\\\\slash"'


def test_format_toml_value_scalars():
    assert _format_toml_value(42) == "42"
    assert _format_toml_value(True) == "true"
    assert _format_toml_value(False) == "false"


def test_format_toml_value_unsupported_type():
    with pytest.raises(TypeError, match="Unsupported TOML value type"):
        _format_toml_value([1, 2, 3])


def test_dump_toml_has_all_sections():
    toml_str = _dump_toml(AppConfig())
    for section in ("[server]", "[sync]", "[codeforces]"):
        assert section in toml_str
    parsed = tomllib.loads(toml_str)
    assert parsed["server"]["port"] == 8000
    assert parsed["sync"]["enabled"] is True
    assert parsed["codeforces"]["base_url"] == "https://codeforces.com/api"
