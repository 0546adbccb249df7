from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from croniter import croniter

DEFAULT_SWEEP_CRON = "0 * * * *"


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [v.strip() for v in raw.split(",") if v.strip()]


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    sessions_dir: str
    host: str
    port: int
    runtime_url: str | None
    runtime_token: str | None
    refresh_timeout: float
    artifact_max_age_days: float
    artifact_max_size_bytes: int
    workdir_max_age_hours: float
    preserve_dirs: list[str]
    sweep_cron: str
    sweep_initial_delay: float
    desktop_notifications: bool
    telegram_bot_token: str | None
    telegram_owner_chat_id: str | None
    clear_logs_on_launch: bool

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".taskwatch")
        data_dir = os.getenv("TASKWATCH_DATA_DIR") or str(Path(default_home) / ".data")
        sweep_cron = os.getenv("TASKWATCH_SWEEP_CRON", DEFAULT_SWEEP_CRON)
        if not croniter.is_valid(sweep_cron):
            raise ValueError(f"Invalid TASKWATCH_SWEEP_CRON expression: {sweep_cron!r}")
        return Settings(
            log_level=os.getenv("TASKWATCH_LOG_LEVEL", "info"),
            log_dir=os.getenv("TASKWATCH_LOG_DIR") or str(Path(default_home) / ".logs"),
            data_dir=data_dir,
            sessions_dir=os.getenv("TASKWATCH_SESSIONS_DIR") or str(Path(data_dir) / "agent-sessions"),
            host=os.getenv("TASKWATCH_HOST", "127.0.0.1"),
            port=int(os.getenv("TASKWATCH_PORT", "18791")),
            runtime_url=os.getenv("TASKWATCH_RUNTIME_URL") or None,
            runtime_token=os.getenv("TASKWATCH_RUNTIME_TOKEN") or None,
            refresh_timeout=float(os.getenv("TASKWATCH_REFRESH_TIMEOUT", "30")),
            artifact_max_age_days=float(os.getenv("TASKWATCH_ARTIFACT_MAX_AGE_DAYS", "7")),
            artifact_max_size_bytes=int(os.getenv("TASKWATCH_ARTIFACT_MAX_SIZE_BYTES", str(50 * 1024 * 1024))),
            workdir_max_age_hours=float(os.getenv("TASKWATCH_WORKDIR_MAX_AGE_HOURS", "24")),
            preserve_dirs=_env_list("TASKWATCH_PRESERVE_DIRS", "background-utility"),
            sweep_cron=sweep_cron,
            sweep_initial_delay=float(os.getenv("TASKWATCH_SWEEP_INITIAL_DELAY", "30")),
            desktop_notifications=_env_flag("TASKWATCH_DESKTOP_NOTIFICATIONS", "true"),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            telegram_owner_chat_id=os.getenv("TELEGRAM_OWNER_CHAT_ID") or None,
            clear_logs_on_launch=_env_flag("TASKWATCH_CLEAR_LOGS_ON_LAUNCH"),
        )
