"""In-process publish/subscribe for task status changes.

Publishing is synchronous and fire-and-forget. Every subscriber registered
at publish time gets the event; a subscriber that raises is logged and
skipped. There is no replay: a late subscriber recomputes state from the
record store instead.

Handlers run on the publisher's thread, so they must be quick. Consumers
that may be slow (an HTTP event stream, say) use ``open_queue`` which
hands events over through a bounded queue and drops them when full.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import queue
import threading
from typing import Callable, List, Optional
import uuid

logger = logging.getLogger("taskwatch.events")

STATUS_CHANGE = "status-change"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StatusChange:
    task_id: str
    session_id: str
    conversation_id: str
    status: str
    exit_code: Optional[int] = None
    completed_at: Optional[datetime] = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "topic": STATUS_CHANGE,
            "task_id": self.task_id,
            "session_id": self.session_id,
            "conversation_id": self.conversation_id,
            "status": self.status,
            "exit_code": self.exit_code,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


Handler = Callable[[StatusChange], None]


@dataclass
class Subscription:
    handler: Handler
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    sub_id: str = field(default_factory=lambda: f"sub-{uuid.uuid4().hex[:8]}")

    def matches(self, event: StatusChange) -> bool:
        if self.conversation_id is not None and event.conversation_id != self.conversation_id:
            return False
        if self.session_id is not None and event.session_id != self.session_id:
            return False
        return True


class QueueSubscription:
    """Subscription that buffers events for a consumer on another thread."""

    def __init__(self, bus: "EventBus", maxsize: int = 100) -> None:
        self._bus = bus
        self.queue: "queue.Queue[StatusChange]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.subscription: Optional[Subscription] = None

    def _offer(self, event: StatusChange) -> None:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning("Event queue full, dropped %s for task %s", event.status, event.task_id)

    def get(self, timeout: Optional[float] = None) -> Optional[StatusChange]:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        if self.subscription is not None:
            self._bus.unsubscribe(self.subscription)
            self.subscription = None


class EventBus:
    def __init__(self, topic: str = STATUS_CHANGE) -> None:
        self.topic = topic
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(
        self,
        handler: Handler,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Subscription:
        sub = Subscription(handler=handler, conversation_id=conversation_id, session_id=session_id)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> bool:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)
                return True
            return False

    def open_queue(
        self,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
        maxsize: int = 100,
    ) -> QueueSubscription:
        qsub = QueueSubscription(self, maxsize=maxsize)
        qsub.subscription = self.subscribe(qsub._offer, conversation_id=conversation_id, session_id=session_id)
        return qsub

    def publish(self, event: StatusChange) -> int:
        """Deliver *event* to matching subscribers. Returns the delivery count."""
        with self._lock:
            targets = [s for s in self._subscribers if s.matches(event)]
        delivered = 0
        for sub in targets:
            try:
                sub.handler(event)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                logger.error("Subscriber %s failed on %s: %s", sub.sub_id, event.task_id, exc)
        return delivered
