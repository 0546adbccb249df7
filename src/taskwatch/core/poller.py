"""Adaptive poller for background tasks the runtime never reported on.

The runtime normally pushes a notification when a command ends, but the
notification can be missed. This loop re-resolves pending tasks from
their output artifacts, with a single timer and adaptive backoff:

- checks run at 5s, 15s, 30s, then every 60s while nothing finishes;
- any completion resets to 5s, since more work tends to follow;
- three consecutive checks with nothing pending put the poller to sleep
  (no timer at all) until ``notify_new_task`` wakes it.

Each scheduled callback carries its own cancellation token. ``stop`` and
every reschedule cancel the previous token, so a check that was already
in flight finishes its work but never schedules another one.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import threading
from typing import Callable, List, Optional, Protocol

from taskwatch.core.events import EventBus, StatusChange
from taskwatch.core.logging_config import log_status_change
from taskwatch.core.records import TaskRecord, TaskRecordStore
from taskwatch.core.resolver import derive_status

logger = logging.getLogger("taskwatch.poller")

BACKOFF_INTERVALS = (5.0, 15.0, 30.0, 60.0)
IDLE_AFTER_EMPTY_CHECKS = 3
MAX_TASKS_PER_CHECK = 3
NEW_TASK_DELAY = 0.1  # lets the inserting transaction land first


class PollerState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def thread_timer(delay: float, callback: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.name = "task-poller"
    timer.start()
    return timer


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class PollerStatus:
    is_running: bool
    state: str
    backoff_level: int
    current_interval: float
    consecutive_empty_checks: int
    pending_count: int

    def to_dict(self) -> dict:
        return {
            "is_running": self.is_running,
            "state": self.state,
            "backoff_level": self.backoff_level,
            "current_interval": self.current_interval,
            "consecutive_empty_checks": self.consecutive_empty_checks,
            "pending_count": self.pending_count,
        }


class AdaptivePoller:
    def __init__(
        self,
        store: TaskRecordStore,
        bus: EventBus,
        timer_factory: TimerFactory = thread_timer,
        intervals: tuple[float, ...] = BACKOFF_INTERVALS,
        batch_size: int = MAX_TASKS_PER_CHECK,
    ) -> None:
        if not intervals:
            raise ValueError("intervals must not be empty")
        self._store = store
        self._bus = bus
        self._timer_factory = timer_factory
        self._intervals = intervals
        self._batch_size = max(1, batch_size)
        self._lock = threading.RLock()
        self._state = PollerState.IDLE
        self._backoff_index = 0
        self._empty_checks = 0
        self._cursor = 0
        self._timer: Optional[TimerHandle] = None
        self._token: Optional[CancelToken] = None

    # ── Public control ────────────────────────────────────────

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def backoff_level(self) -> int:
        return self._backoff_index

    def start(self) -> None:
        with self._lock:
            if self._state is PollerState.ACTIVE:
                logger.debug("Poller already running")
                return
            logger.info("Poller starting")
            self._state = PollerState.ACTIVE
            self._backoff_index = 0
            self._empty_checks = 0
            self._schedule_locked()

    def stop(self) -> None:
        with self._lock:
            self._cancel_locked()
            self._state = PollerState.IDLE
            self._backoff_index = 0
            self._empty_checks = 0
        logger.info("Poller stopped")

    def notify_new_task(self) -> None:
        """Wake the poller for a freshly created task. Only arms a timer."""
        with self._lock:
            if self._state is PollerState.IDLE:
                logger.info("Poller idle, starting for new task")
                self.start()
                return
            logger.debug("New task, resetting backoff and checking now")
            self._backoff_index = 0
            self._empty_checks = 0
            self._schedule_locked(NEW_TASK_DELAY)

    def status(self) -> PollerStatus:
        with self._lock:
            running = self._state is PollerState.ACTIVE
            level = self._backoff_index
            empty = self._empty_checks
        return PollerStatus(
            is_running=running,
            state=self._state.value,
            backoff_level=level,
            current_interval=self._intervals[level],
            consecutive_empty_checks=empty,
            pending_count=len(self._store.pending()) if running else 0,
        )

    # ── Scheduling ────────────────────────────────────────────

    def _cancel_locked(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_locked(self, delay: Optional[float] = None) -> None:
        self._cancel_locked()
        if self._state is not PollerState.ACTIVE:
            return
        if delay is None:
            delay = self._intervals[self._backoff_index]
        token = CancelToken()
        self._token = token
        logger.debug("Next check in %.1fs (backoff level %d)", delay, self._backoff_index)
        self._timer = self._timer_factory(delay, lambda: self._run_check(token))

    def _increase_backoff_locked(self) -> None:
        self._backoff_index = min(self._backoff_index + 1, len(self._intervals) - 1)

    # ── Check cycle ───────────────────────────────────────────

    def _run_check(self, token: CancelToken) -> None:
        with self._lock:
            if token.cancelled or self._state is not PollerState.ACTIVE:
                return
            self._timer = None

        try:
            pending = self._store.pending()
        except Exception as exc:  # noqa: BLE001
            logger.error("Poller could not list pending tasks: %s", exc)
            pending = None

        completed = 0
        if pending:
            completed = self._check_batch(self._next_batch(pending))

        with self._lock:
            if token.cancelled or self._state is not PollerState.ACTIVE:
                return
            if pending is None:
                self._increase_backoff_locked()
            elif not pending:
                self._empty_checks += 1
                if self._empty_checks >= IDLE_AFTER_EMPTY_CHECKS:
                    logger.info(
                        "No pending tasks for %d consecutive checks, going idle",
                        self._empty_checks,
                    )
                    self._cancel_locked()
                    self._state = PollerState.IDLE
                    return
                self._increase_backoff_locked()
            else:
                self._empty_checks = 0
                if completed:
                    logger.info("%d task(s) finished, back to fast polling", completed)
                    self._backoff_index = 0
                else:
                    self._increase_backoff_locked()
            self._schedule_locked()

    def _next_batch(self, pending: List[TaskRecord]) -> List[TaskRecord]:
        """Round-robin window over pending tasks so none is starved."""
        if len(pending) <= self._batch_size:
            return pending
        start = self._cursor % len(pending)
        self._cursor = start + self._batch_size
        window = pending[start:start + self._batch_size]
        if len(window) < self._batch_size:
            window += pending[: self._batch_size - len(window)]
        return window

    def _check_batch(self, batch: List[TaskRecord]) -> int:
        completed = 0
        for record in batch:
            try:
                if self._check_task(record):
                    completed += 1
            except Exception as exc:  # noqa: BLE001
                logger.error("Poller failed to check task %s: %s", record.id, exc)
        return completed

    def _check_task(self, record: TaskRecord) -> bool:
        """Resolve one pending task; persist and publish if it finished."""
        if not record.is_pending:
            return False
        derived = derive_status(record, infer_from_output=False)
        if not derived.is_terminal:
            return False
        if not self._store.set_external_status(record.id, derived.status):
            return False
        logger.info(
            "Task %s detected as %s from output artifact (exit code: %s)",
            record.id, derived.status, derived.exit_code,
        )
        event = StatusChange(
            task_id=record.id,
            session_id=record.session_id,
            conversation_id=record.conversation_id,
            status=derived.status,
            exit_code=derived.exit_code,
        )
        log_status_change({**event.to_dict(), "source": "poller"})
        self._bus.publish(event)
        return True
