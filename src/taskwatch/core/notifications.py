"""User-facing notifications for finished background tasks.

Subscribes to the event bus and fans ``completed`` / ``failed`` events out
to notification sinks. Other statuses (``stopped``, ``unknown``) stay
silent. A sink that fails is logged and the rest still run.
"""
from __future__ import annotations

import json
import logging
import shutil
import subprocess
import sys
import threading
from typing import Callable, Optional, Protocol, Sequence

from taskwatch.core.events import EventBus, StatusChange, Subscription
from taskwatch.integrations.telegram import TelegramAdapter

logger = logging.getLogger("taskwatch.notifications")

NOTIFY_STATUSES = ("completed", "failed")


class NotificationSink(Protocol):
    name: str

    def notify(self, title: str, body: str) -> bool: ...


def format_notification(event: StatusChange) -> Optional[tuple[str, str]]:
    """Title and body for *event*, or None when it should not notify."""
    if event.status not in NOTIFY_STATUSES:
        return None
    if event.status == "completed":
        body = "Background task finished successfully"
        if event.exit_code is not None:
            body += f" (exit code: {event.exit_code})"
        return "Task Completed", body
    body = "Background task failed"
    if event.exit_code is not None:
        body += f" with exit code {event.exit_code}"
    return "Task Failed", body


class DesktopNotifier:
    name = "desktop"

    def __init__(self, runner: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> None:
        self._runner = runner

    def _command(self, title: str, body: str) -> Optional[list[str]]:
        if sys.platform == "darwin":
            script = f"display notification {json.dumps(body)} with title {json.dumps(title)}"
            return ["osascript", "-e", script]
        if shutil.which("notify-send"):
            return ["notify-send", "--app-name=taskwatch", title, body]
        return None

    def notify(self, title: str, body: str) -> bool:
        cmd = self._command(title, body)
        if cmd is None:
            logger.debug("No desktop notifier available on %s", sys.platform)
            return False
        try:
            self._runner(cmd, check=True, capture_output=True, timeout=10)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("Failed to show desktop notification: %s", exc)
            return False
        return True


class TelegramNotifier:
    name = "telegram"

    def __init__(self, adapter: TelegramAdapter, chat_id: str) -> None:
        self._adapter = adapter
        self._chat_id = chat_id

    def notify(self, title: str, body: str) -> bool:
        try:
            return self._adapter.send_message(self._chat_id, f"{title}\n{body}")
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to send Telegram notification: %s", exc)
            return False


class NotificationDispatcher:
    def __init__(self, sinks: Sequence[NotificationSink], background: bool = True) -> None:
        self.sinks = list(sinks)
        self._background = background
        self._subscription: Optional[Subscription] = None
        self._bus: Optional[EventBus] = None

    def attach(self, bus: EventBus) -> Subscription:
        if self._subscription is not None and self._bus is not None:
            self._bus.unsubscribe(self._subscription)
        self._bus = bus
        self._subscription = bus.subscribe(self.handle)
        logger.info("Notification dispatcher attached (%s)", ", ".join(s.name for s in self.sinks) or "no sinks")
        return self._subscription

    def detach(self) -> None:
        if self._bus is not None and self._subscription is not None:
            self._bus.unsubscribe(self._subscription)
        self._subscription = None
        self._bus = None

    def handle(self, event: StatusChange) -> None:
        message = format_notification(event)
        if message is None or not self.sinks:
            return
        if self._background:
            threading.Thread(
                target=self._deliver, args=(event.task_id, *message), daemon=True, name="task-notify"
            ).start()
        else:
            self._deliver(event.task_id, *message)

    def _deliver(self, task_id: str, title: str, body: str) -> int:
        sent = 0
        for sink in self.sinks:
            try:
                if sink.notify(title, body):
                    sent += 1
            except Exception as exc:  # noqa: BLE001
                logger.error("Notification sink %s failed for %s: %s", sink.name, task_id, exc)
        logger.debug("Notified %d sink(s) for task %s", sent, task_id)
        return sent
