from __future__ import annotations

from typing import Callable, List, Optional

import pytest

from taskwatch.core.config import Settings
from taskwatch.core.records import TaskRecord, TaskRecordStore


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimers:
    """Timer factory that records timers; tests fire them by hand."""

    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def active(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    @property
    def next_delay(self) -> Optional[float]:
        active = self.active
        return active[-1].delay if active else None

    def fire(self) -> None:
        active = self.active
        assert len(active) == 1, f"expected exactly one pending timer, got {len(active)}"
        timer = active[0]
        timer.fired = True
        timer.callback()


class FakeRuntime:
    def __init__(self, result=None, ready: bool = True) -> None:
        self.result = result
        self.ready = ready
        self.calls: List[str] = []

    def is_ready(self) -> bool:
        return self.ready

    def check_task(self, external_task_id: str):
        self.calls.append(external_task_id)
        return self.result


@pytest.fixture
def timers() -> FakeTimers:
    return FakeTimers()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def store() -> TaskRecordStore:
    return TaskRecordStore()


@pytest.fixture
def make_pending(store, tmp_path):
    """Insert a record acknowledged by the runtime, with an artifact path."""
    counter = {"n": 0}

    def _make(content: Optional[str] = None, session_id: str = "s1", conversation_id: str = "c1") -> TaskRecord:
        counter["n"] += 1
        n = counter["n"]
        path = tmp_path / f"task-{n}.output"
        if content is not None:
            path.write_text(content, encoding="utf-8")
        record = store.insert(session_id, conversation_id, f"call-{n}")
        store.update(record.id, external_task_id=f"b{n}", output_artifact_path=str(path))
        return record

    return _make


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> Settings:
        return _settings(tmp_path, **overrides)

    return _make


def _settings(tmp_path, **overrides) -> Settings:
    values = dict(
        log_level="info",
        log_dir=str(tmp_path / "logs"),
        data_dir=str(tmp_path / "data"),
        sessions_dir=str(tmp_path / "sessions"),
        host="127.0.0.1",
        port=18791,
        runtime_url=None,
        runtime_token=None,
        refresh_timeout=5.0,
        artifact_max_age_days=7,
        artifact_max_size_bytes=50 * 1024 * 1024,
        workdir_max_age_hours=24,
        preserve_dirs=["background-utility"],
        sweep_cron="0 * * * *",
        sweep_initial_delay=30.0,
        desktop_notifications=False,
        telegram_bot_token=None,
        telegram_owner_chat_id=None,
        clear_logs_on_launch=False,
    )
    values.update(overrides)
    return Settings(**values)
