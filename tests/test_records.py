"""Tests for the task record store and the conversation store."""
from __future__ import annotations

import json

import pytest

from taskwatch.core.conversations import ConversationStore
from taskwatch.core.errors import DuplicateTaskError
from taskwatch.core.records import TaskRecordStore


@pytest.fixture
def store_path(tmp_path):
    return str(tmp_path / "background-tasks.json")


# ── Creation ─────────────────────────────────────────────────

class TestInsert:
    def test_insert_assigns_id(self, store):
        record = store.insert("s1", "c1", "call-1", output_artifact_path="/tmp/x.output", pid=42)
        assert record.id.startswith("bg-")
        assert len(record.id) == len("bg-") + 12
        assert record.external_task_id is None
        assert record.external_status is None
        assert record.pid == 42
        assert not record.is_pending

    def test_ids_are_unique(self, store):
        ids = {store.insert("s1", "c1", f"call-{i}").id for i in range(50)}
        assert len(ids) == 50

    def test_duplicate_correlation_rejected(self, store):
        store.insert("s1", "c1", "call-1")
        with pytest.raises(DuplicateTaskError):
            store.insert("s2", "c2", "call-1")

    def test_persists_and_reloads(self, store_path):
        first = TaskRecordStore(store_path=store_path)
        record = first.insert("s1", "c1", "call-1")
        first.update(record.id, external_task_id="b1")
        first.set_external_status(record.id, "completed", exit_code=5)

        second = TaskRecordStore(store_path=store_path)
        loaded = second.get(record.id)
        assert loaded is not None
        assert loaded.external_task_id == "b1"
        assert loaded.external_status == "completed"
        assert loaded.exit_code == 5
        assert loaded.created_at == record.created_at

    def test_malformed_rows_skipped(self, store_path):
        good = TaskRecordStore(store_path=store_path).insert("s1", "c1", "call-1")
        with open(store_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        payload["tasks"].append({"id": "bg-broken", "session_id": "s1"})
        with open(store_path, "w", encoding="utf-8") as f:
            json.dump(payload, f)

        reloaded = TaskRecordStore(store_path=store_path)
        assert [r.id for r in reloaded.list()] == [good.id]

    def test_corrupt_file_starts_empty(self, store_path):
        with open(store_path, "w", encoding="utf-8") as f:
            f.write("{not json")
        assert TaskRecordStore(store_path=store_path).list() == []


# ── Updates ──────────────────────────────────────────────────

class TestUpdate:
    def test_runtime_id_and_artifact_are_write_once(self, store):
        record = store.insert("s1", "c1", "call-1", output_artifact_path="/a.output")
        store.update(record.id, external_task_id="b1", output_artifact_path="/b.output")
        store.update(record.id, external_task_id="b2")
        assert record.external_task_id == "b1"
        assert record.output_artifact_path == "/a.output"

    def test_same_value_is_accepted(self, store):
        record = store.insert("s1", "c1", "call-1")
        store.update(record.id, external_task_id="b1", output_artifact_path="/a.output")
        store.update(record.id, external_task_id="b1", output_artifact_path="/a.output")
        assert record.external_task_id == "b1"

    def test_update_missing_returns_none(self, store):
        assert store.update("bg-missing", pid=1) is None


class TestExternalStatus:
    def test_terminal_status_is_never_rolled_back(self, store):
        record = store.insert("s1", "c1", "call-1")
        assert store.set_external_status(record.id, "completed") is True
        assert store.set_external_status(record.id, "running") is False
        assert store.set_external_status(record.id, "failed") is False
        assert record.external_status == "completed"

    def test_running_can_become_terminal(self, store):
        record = store.insert("s1", "c1", "call-1")
        assert store.set_external_status(record.id, "running") is True
        assert store.set_external_status(record.id, "stopped") is True
        assert record.has_terminal_status

    def test_invalid_status_rejected(self, store):
        record = store.insert("s1", "c1", "call-1")
        with pytest.raises(ValueError):
            store.set_external_status(record.id, "finished")

    def test_missing_record(self, store):
        assert store.set_external_status("bg-missing", "completed") is False


# ── Queries ──────────────────────────────────────────────────

class TestQueries:
    def test_pending_needs_runtime_id_and_no_terminal_status(self, store):
        fresh = store.insert("s1", "c1", "call-1")
        acked = store.insert("s1", "c1", "call-2")
        store.update(acked.id, external_task_id="b2")
        done = store.insert("s1", "c1", "call-3")
        store.update(done.id, external_task_id="b3")
        store.set_external_status(done.id, "failed")

        assert [r.id for r in store.pending()] == [acked.id]
        assert not fresh.is_pending

    def test_list_filters(self, store):
        a = store.insert("s1", "c1", "call-1")
        b = store.insert("s2", "c1", "call-2")
        store.insert("s3", "c2", "call-3")
        assert [r.id for r in store.list(session_id="s1")] == [a.id]
        assert [r.id for r in store.list(conversation_id="c1")] == [a.id, b.id]

    def test_lookup_by_correlation_and_runtime_id(self, store):
        record = store.insert("s1", "c1", "call-1")
        store.update(record.id, external_task_id="b1")
        assert store.get_by_correlation("call-1") is record
        assert store.get_by_external_id("b1") is record
        assert store.get_by_external_id("b9") is None

    def test_live_parent_ids(self, store):
        store.insert("s1", "c1", "call-1")
        assert store.live_parent_ids() == {"s1", "c1"}

    def test_delete(self, store):
        record = store.insert("s1", "c1", "call-1")
        assert store.delete(record.id) is record
        assert store.delete(record.id) is None
        assert store.get(record.id) is None


# ── Conversations ────────────────────────────────────────────

class TestConversationStore:
    def test_sessions_and_messages(self, tmp_path):
        path = str(tmp_path / "conversations.json")
        convs = ConversationStore(store_path=path)
        convs.upsert_session("c1", "s1")
        assert convs.append_messages("c1", "s1", [{"type": "assistant", "parts": []}]) == 1
        assert convs.append_messages("c1", "s2", [{"type": "user"}]) == 1

        reloaded = ConversationStore(store_path=path)
        assert reloaded.messages("s1") == [{"type": "assistant", "parts": []}]
        assert reloaded.live_ids() == {"c1", "s1", "s2"}

    def test_unknown_session_has_no_messages(self):
        assert ConversationStore().messages("nope") == []

    def test_delete_conversation(self):
        convs = ConversationStore()
        convs.upsert_session("c1", "s1")
        assert convs.delete_conversation("c1") is True
        assert convs.delete_conversation("c1") is False
        assert convs.live_ids() == set()
