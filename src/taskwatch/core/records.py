"""Persisted background task records.

One record per background command the agent launched. Status is not
stored here beyond the runtime's own explicit signal; everything the UI
shows is derived on read (see ``resolver``).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import os
import threading
from typing import Dict, List, Optional
import uuid

from taskwatch.core.errors import DuplicateTaskError

logger = logging.getLogger("taskwatch.records")

EXTERNAL_STATUSES = {"running", "completed", "failed", "stopped"}
TERMINAL_STATUSES = {"completed", "failed", "stopped"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_task_id() -> str:
    return f"bg-{uuid.uuid4().hex[:12]}"


@dataclass
class TaskRecord:
    """A background command launched on behalf of the agent."""
    id: str
    session_id: str
    conversation_id: str
    correlation_id: str                     # tool call that started the command
    external_task_id: Optional[str] = None  # assigned once the runtime acknowledges
    external_status: Optional[str] = None   # pushed by the runtime's own notification
    output_artifact_path: Optional[str] = None
    pid: Optional[int] = None
    exit_code: Optional[int] = None         # stored with a terminal status when known
    created_at: datetime = field(default_factory=_now)

    @property
    def has_terminal_status(self) -> bool:
        return self.external_status in TERMINAL_STATUSES

    @property
    def is_pending(self) -> bool:
        """Acknowledged by the runtime but not yet known to be finished."""
        return bool(self.external_task_id) and not self.has_terminal_status

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "conversation_id": self.conversation_id,
            "correlation_id": self.correlation_id,
            "external_task_id": self.external_task_id,
            "external_status": self.external_status,
            "output_artifact_path": self.output_artifact_path,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "TaskRecord":
        return cls(
            id=d["id"],
            session_id=d["session_id"],
            conversation_id=d["conversation_id"],
            correlation_id=d["correlation_id"],
            external_task_id=d.get("external_task_id"),
            external_status=d.get("external_status"),
            output_artifact_path=d.get("output_artifact_path"),
            pid=d.get("pid"),
            exit_code=d.get("exit_code"),
            created_at=datetime.fromisoformat(d["created_at"]) if d.get("created_at") else _now(),
        )


class TaskRecordStore:
    """JSON-file backed table of task records.

    Every read and write happens under one re-entrant lock, so each
    operation is atomic per row. ``store_path=None`` keeps records in
    memory only.
    """

    def __init__(self, store_path: Optional[str] = None) -> None:
        self._records: Dict[str, TaskRecord] = {}
        self._store_path = store_path
        self._lock = threading.RLock()
        if store_path:
            self._load()

    def _load(self) -> None:
        if not self._store_path or not os.path.exists(self._store_path):
            return
        try:
            with open(self._store_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to load task records from %s: %s", self._store_path, exc)
            return
        for item in raw.get("tasks", []):
            try:
                record = TaskRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed task record %r: %s", item.get("id") if isinstance(item, dict) else item, exc)
                continue
            self._records[record.id] = record

    def _save(self) -> None:
        if not self._store_path:
            return
        dir_path = os.path.dirname(self._store_path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        payload = {"tasks": [r.to_dict() for r in self._records.values()]}
        tmp_path = f"{self._store_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self._store_path)

    # ── Queries ───────────────────────────────────────────────

    def get(self, task_id: str) -> Optional[TaskRecord]:
        with self._lock:
            return self._records.get(task_id)

    def get_by_correlation(self, correlation_id: str) -> Optional[TaskRecord]:
        with self._lock:
            for record in self._records.values():
                if record.correlation_id == correlation_id:
                    return record
            return None

    def get_by_external_id(self, external_task_id: str) -> Optional[TaskRecord]:
        with self._lock:
            for record in self._records.values():
                if record.external_task_id == external_task_id:
                    return record
            return None

    def list(
        self,
        session_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> List[TaskRecord]:
        with self._lock:
            records = list(self._records.values())
        if session_id is not None:
            records = [r for r in records if r.session_id == session_id]
        if conversation_id is not None:
            records = [r for r in records if r.conversation_id == conversation_id]
        return sorted(records, key=lambda r: r.created_at)

    def pending(self) -> List[TaskRecord]:
        return [r for r in self.list() if r.is_pending]

    def live_parent_ids(self) -> set[str]:
        """Session and conversation ids referenced by any record."""
        with self._lock:
            ids: set[str] = set()
            for record in self._records.values():
                ids.add(record.session_id)
                ids.add(record.conversation_id)
            return ids

    # ── Mutations ─────────────────────────────────────────────

    def insert(
        self,
        session_id: str,
        conversation_id: str,
        correlation_id: str,
        output_artifact_path: Optional[str] = None,
        pid: Optional[int] = None,
    ) -> TaskRecord:
        with self._lock:
            if self.get_by_correlation(correlation_id) is not None:
                raise DuplicateTaskError(correlation_id)
            task_id = new_task_id()
            while task_id in self._records:
                task_id = new_task_id()
            record = TaskRecord(
                id=task_id,
                session_id=session_id,
                conversation_id=conversation_id,
                correlation_id=correlation_id,
                output_artifact_path=output_artifact_path,
                pid=pid,
            )
            self._records[task_id] = record
            self._save()
        logger.info("Task record created: %s (tool call %s)", task_id, correlation_id)
        return record

    def update(
        self,
        task_id: str,
        external_task_id: Optional[str] = None,
        output_artifact_path: Optional[str] = None,
        pid: Optional[int] = None,
    ) -> Optional[TaskRecord]:
        """Fill in fields learned after creation.

        The artifact path and runtime id are write-once: a conflicting
        second value is ignored with a warning.
        """
        with self._lock:
            record = self._records.get(task_id)
            if not record:
                return None
            if external_task_id is not None:
                if record.external_task_id and record.external_task_id != external_task_id:
                    logger.warning(
                        "Task %s already has runtime id %s, ignoring %s",
                        task_id, record.external_task_id, external_task_id,
                    )
                else:
                    record.external_task_id = external_task_id
            if output_artifact_path is not None:
                if record.output_artifact_path and record.output_artifact_path != output_artifact_path:
                    logger.warning(
                        "Task %s artifact path is fixed at %s, ignoring %s",
                        task_id, record.output_artifact_path, output_artifact_path,
                    )
                else:
                    record.output_artifact_path = output_artifact_path
            if pid is not None:
                record.pid = pid
            self._save()
            return record

    def set_external_status(self, task_id: str, status: str, exit_code: Optional[int] = None) -> bool:
        """Check-then-set the runtime status. Returns True if it was written.

        A terminal status is final: writing anything over it is refused.
        *exit_code*, when given, is stored alongside and wins over any
        marker in the artifact.
        """
        if status not in EXTERNAL_STATUSES:
            raise ValueError(f"Invalid external status: {status}")
        with self._lock:
            record = self._records.get(task_id)
            if not record:
                return False
            if record.has_terminal_status:
                if record.external_status != status:
                    logger.info(
                        "Task %s already %s, not overwriting with %s",
                        task_id, record.external_status, status,
                    )
                return False
            record.external_status = status
            if exit_code is not None:
                record.exit_code = exit_code
            self._save()
            return True

    def delete(self, task_id: str) -> Optional[TaskRecord]:
        with self._lock:
            record = self._records.pop(task_id, None)
            if record is not None:
                self._save()
            return record
