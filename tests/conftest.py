"""Shared fixtures for cftracker tests."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all cftracker runtime files to a temporary directory.

    Patches ``cftracker.config.get_base_dir`` so that nothing touches the
    real ``~/.cftracker/``.
    """
    fake_base = tmp_path / ".cftracker"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("cftracker.config.get_base_dir", lambda: fake_base)

    return fake_base
