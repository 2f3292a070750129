"""Configuration management for the cftracker service."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".cftracker"
_CONFIG_FILE = "config.toml"
_DB_FILE = "cftracker.db"
_LOG_DIR = "logs"


def get_base_dir() -> Path:
    """Return the base directory for all cftracker runtime files (~/.cftracker/)."""
    return Path.home() / _BASE_DIR_NAME


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    """Settings for the HTTP API process."""

    host: str = Field(default="127.0.0.1", description="Interface the API binds to")
    port: int = Field(default=8000, description="Port for the REST API")
    log_level: str = Field(default="info", description="Logging level")
    environment: Literal["production", "development"] = Field(
        default="production",
        description="Error details are only exposed in development",
    )


class SyncConfig(BaseModel):
    """Settings that control synchronisation behaviour."""

    enabled: bool = Field(default=True, description="Run the periodic scheduler")
    interval_minutes: int = Field(default=1440, ge=1, description="Minutes between scheduled runs")
    stale_after_hours: int = Field(default=24, ge=0, description="Age after which a student's data is stale")
    api_delay_ms: int = Field(default=200, ge=0, description="Delay before each Codeforces API call")
    student_delay_ms: int = Field(default=1000, ge=0, description="Delay between students in a batch")


class CodeforcesConfig(BaseModel):
    """Codeforces API access settings."""

    base_url: str = Field(default="https://codeforces.com/api", description="Codeforces API root")
    timeout_seconds: int = Field(default=15, ge=1, description="Per-request timeout")
    user_agent: str = Field(default="cftracker/0.1", description="User-Agent header")
    max_retries: int = Field(default=3, ge=1, description="Attempts for transient failures")


class AppConfig(BaseModel):
    """Top-level application configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    codeforces: CodeforcesConfig = Field(default_factory=CodeforcesConfig)

    # -- derived paths (not stored in TOML) --------------------------------

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def db_path(self) -> Path:
        return self.base_dir / _DB_FILE

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOG_DIR

    @property
    def api_url(self) -> str:
        return f"http://{self.server.host}:{self.server.port}"

    def is_development(self) -> bool:
        return self.server.environment == "development"


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_dirs() -> None:
    """Create the base directory and log directory if they don't already exist."""
    base = get_base_dir()
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    (base / _LOG_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)


def config_exists() -> bool:
    """Return True if a config file is present on disk."""
    return (get_base_dir() / _CONFIG_FILE).is_file()


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load_config() -> AppConfig:
    """Load configuration from TOML, falling back to defaults if the file is missing."""
    path = get_base_dir() / _CONFIG_FILE
    if not path.is_file():
        return AppConfig()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    return AppConfig.model_validate(raw)


def _format_toml_value(value: object) -> str:
    """Format a single Python value as a TOML literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    msg = f"Unsupported TOML value type: {type(value)}"
    raise TypeError(msg)


def _dump_toml(config: AppConfig) -> str:
    """Serialize an AppConfig to a minimal TOML string.

    Only handles the flat two-level structure we actually use (tables with
    scalar values).
    """
    lines: list[str] = []
    sections = [
        ("server", config.server),
        ("sync", config.sync),
        ("codeforces", config.codeforces),
    ]
    for section_name, section_model in sections:
        lines.append(f"[{section_name}]")
        for key, value in section_model.model_dump(mode="python").items():
            lines.append(f"{key} = {_format_toml_value(value)}")
        lines.append("")
    return "\n".join(lines)


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML and restrict file permissions to owner-only."""
    ensure_dirs()
    path = get_base_dir() / _CONFIG_FILE
    path.write_text(_dump_toml(config), encoding="utf-8")
    os.chmod(path, 0o600)
