from __future__ import annotations

from taskwatch.core.events import STATUS_CHANGE, EventBus, StatusChange


def _event(task_id: str = "bg-1", conversation_id: str = "c1", session_id: str = "s1") -> StatusChange:
    return StatusChange(
        task_id=task_id,
        session_id=session_id,
        conversation_id=conversation_id,
        status="completed",
        exit_code=0,
    )


def test_fan_out_to_all_subscribers():
    bus = EventBus()
    a, b = [], []
    bus.subscribe(a.append)
    bus.subscribe(b.append)
    assert bus.publish(_event()) == 2
    assert len(a) == len(b) == 1


def test_filter_by_conversation_and_session():
    bus = EventBus()
    conv, sess = [], []
    bus.subscribe(conv.append, conversation_id="c1")
    bus.subscribe(sess.append, session_id="s2")
    bus.publish(_event(conversation_id="c1", session_id="s1"))
    bus.publish(_event(conversation_id="c2", session_id="s2"))
    assert [e.conversation_id for e in conv] == ["c1"]
    assert [e.session_id for e in sess] == ["s2"]


def test_failing_subscriber_is_isolated():
    bus = EventBus()
    received = []

    def boom(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(boom)
    bus.subscribe(received.append)
    assert bus.publish(_event()) == 1
    assert len(received) == 1


def test_unsubscribe_and_no_replay():
    bus = EventBus()
    early = []
    sub = bus.subscribe(early.append)
    bus.publish(_event("bg-1"))
    assert bus.unsubscribe(sub) is True
    assert bus.unsubscribe(sub) is False

    late = []
    bus.subscribe(late.append)
    bus.publish(_event("bg-2"))
    assert [e.task_id for e in early] == ["bg-1"]
    assert [e.task_id for e in late] == ["bg-2"]


def test_subscriber_added_during_publish_misses_current_event():
    bus = EventBus()
    late = []

    def subscribe_more(event):
        bus.subscribe(late.append)

    bus.subscribe(subscribe_more)
    bus.publish(_event("bg-1"))
    assert late == []
    bus.publish(_event("bg-2"))
    assert [e.task_id for e in late] == ["bg-2"]


def test_queue_subscription_drops_when_full():
    bus = EventBus()
    qsub = bus.open_queue(maxsize=2)
    for n in range(4):
        bus.publish(_event(f"bg-{n}"))
    assert qsub.dropped == 2
    assert qsub.get(timeout=0.01).task_id == "bg-0"
    assert qsub.get(timeout=0.01).task_id == "bg-1"
    assert qsub.get(timeout=0.01) is None
    qsub.close()
    assert bus.subscriber_count == 0


def test_event_payload():
    payload = _event().to_dict()
    assert payload["topic"] == STATUS_CHANGE
    assert payload["status"] == "completed"
    assert payload["exit_code"] == 0
    assert payload["completed_at"] is not None
