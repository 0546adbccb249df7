from __future__ import annotations

import pytest

from taskwatch.core.config import DEFAULT_SWEEP_CRON, Settings

_VARS = (
    "TASKWATCH_DATA_DIR",
    "TASKWATCH_LOG_DIR",
    "TASKWATCH_SESSIONS_DIR",
    "TASKWATCH_PORT",
    "TASKWATCH_RUNTIME_URL",
    "TASKWATCH_PRESERVE_DIRS",
    "TASKWATCH_SWEEP_CRON",
    "TASKWATCH_DESKTOP_NOTIFICATIONS",
    "TELEGRAM_BOT_TOKEN",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))


def test_defaults(tmp_path):
    settings = Settings.from_env()
    assert settings.port == 18791
    assert settings.sweep_cron == DEFAULT_SWEEP_CRON
    assert settings.preserve_dirs == ["background-utility"]
    assert settings.runtime_url is None
    assert settings.desktop_notifications is True
    assert settings.sessions_dir.startswith(settings.data_dir)


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("TASKWATCH_DATA_DIR", str(tmp_path / "d"))
    monkeypatch.setenv("TASKWATCH_PORT", "9000")
    monkeypatch.setenv("TASKWATCH_RUNTIME_URL", "http://127.0.0.1:4000")
    monkeypatch.setenv("TASKWATCH_PRESERVE_DIRS", "keep-me, scratch ,")
    monkeypatch.setenv("TASKWATCH_SWEEP_CRON", "*/15 * * * *")
    monkeypatch.setenv("TASKWATCH_DESKTOP_NOTIFICATIONS", "no")

    settings = Settings.from_env()
    assert settings.data_dir == str(tmp_path / "d")
    assert settings.port == 9000
    assert settings.runtime_url == "http://127.0.0.1:4000"
    assert settings.preserve_dirs == ["keep-me", "scratch"]
    assert settings.sweep_cron == "*/15 * * * *"
    assert settings.desktop_notifications is False


def test_invalid_cron(monkeypatch):
    monkeypatch.setenv("TASKWATCH_SWEEP_CRON", "every hour")
    with pytest.raises(ValueError):
        Settings.from_env()
