from __future__ import annotations

import subprocess
import sys

import pytest

from taskwatch.core import notifications
from taskwatch.core.events import EventBus, StatusChange
from taskwatch.core.notifications import (
    DesktopNotifier,
    NotificationDispatcher,
    TelegramNotifier,
    format_notification,
)


def _event(status: str, exit_code=None) -> StatusChange:
    return StatusChange(task_id="bg-1", session_id="s1", conversation_id="c1", status=status, exit_code=exit_code)


class FakeSink:
    name = "fake"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent = []

    def notify(self, title: str, body: str) -> bool:
        if self.fail:
            raise RuntimeError("sink down")
        self.sent.append((title, body))
        return True


# ── Formatting ───────────────────────────────────────────────

def test_completed_message():
    assert format_notification(_event("completed", 0)) == (
        "Task Completed", "Background task finished successfully (exit code: 0)",
    )


def test_failed_message():
    assert format_notification(_event("failed", 2)) == ("Task Failed", "Background task failed with exit code 2")


def test_failed_without_exit_code():
    assert format_notification(_event("failed")) == ("Task Failed", "Background task failed")


@pytest.mark.parametrize("status", ["stopped", "unknown", "running"])
def test_other_statuses_are_silent(status):
    assert format_notification(_event(status)) is None


# ── Dispatch ─────────────────────────────────────────────────

def test_dispatcher_delivers_terminal_events():
    bus = EventBus()
    sink = FakeSink()
    dispatcher = NotificationDispatcher([sink], background=False)
    dispatcher.attach(bus)
    bus.publish(_event("completed", 0))
    bus.publish(_event("stopped"))
    assert sink.sent == [("Task Completed", "Background task finished successfully (exit code: 0)")]

    dispatcher.detach()
    bus.publish(_event("failed", 1))
    assert len(sink.sent) == 1


def test_failing_sink_does_not_block_others():
    good = FakeSink()
    dispatcher = NotificationDispatcher([FakeSink(fail=True), good], background=False)
    dispatcher.handle(_event("failed", 1))
    assert good.sent == [("Task Failed", "Background task failed with exit code 1")]


# ── Sinks ────────────────────────────────────────────────────

def test_desktop_notifier_uses_notify_send(monkeypatch):
    calls = []
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setattr(notifications.shutil, "which", lambda name: "/usr/bin/notify-send")

    def runner(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0)

    assert DesktopNotifier(runner=runner).notify("Task Completed", "done") is True
    assert calls == [["notify-send", "--app-name=taskwatch", "Task Completed", "done"]]


def test_desktop_notifier_failure_is_logged(monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setattr(notifications.shutil, "which", lambda name: "/usr/bin/notify-send")

    def runner(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd)

    assert DesktopNotifier(runner=runner).notify("t", "b") is False


def test_desktop_notifier_without_backend(monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setattr(notifications.shutil, "which", lambda name: None)
    assert DesktopNotifier(runner=lambda *a, **k: None).notify("t", "b") is False


def test_telegram_notifier_swallows_errors():
    class BrokenAdapter:
        def send_message(self, chat_id, text):
            raise OSError("network down")

    assert TelegramNotifier(BrokenAdapter(), "123").notify("t", "b") is False


def test_telegram_notifier_sends_title_and_body():
    sent = []

    class Adapter:
        def send_message(self, chat_id, text):
            sent.append((chat_id, text))
            return True

    assert TelegramNotifier(Adapter(), "123").notify("Task Failed", "exit 1") is True
    assert sent == [("123", "Task Failed\nexit 1")]
