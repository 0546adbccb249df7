"""Task service: the one object the gateway and CLI talk to.

Wires the record store, the conversation store, the resolver, the
adaptive poller, the event bus and the retention sweep together, and
exposes the task operations (create, acknowledge, refresh, kill, list,
output paging, sweep control).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import os
import signal
from typing import Callable, List, Optional

from taskwatch.core.config import Settings
from taskwatch.core.conversations import ConversationStore
from taskwatch.core.errors import TaskError, TaskKillError, TaskNotFoundError
from taskwatch.core.events import EventBus, QueueSubscription, StatusChange, Subscription
from taskwatch.core.logging_config import log_status_change
from taskwatch.core.poller import AdaptivePoller, PollerStatus
from taskwatch.core.records import EXTERNAL_STATUSES, TaskRecord, TaskRecordStore
from taskwatch.core.resolver import (
    DerivedStatus,
    apply_transcript,
    derive_status,
    read_artifact,
    resolve_status,
)
from taskwatch.core.retention import (
    ArtifactRetentionConfig,
    RetentionScheduler,
    SweepPreview,
    SweepReport,
    WorkDirRetentionConfig,
    WorkDirSweepResult,
    cleanup_output_artifacts,
    cleanup_work_directories,
    preview_work_directories,
)
from taskwatch.core.transcript import TranscriptData, extract_task_data
from taskwatch.integrations.runtime import HttpRuntimeClient, RuntimeCheck, RuntimeClient, RuntimeUnavailable

logger = logging.getLogger("taskwatch.service")

DEFAULT_TAIL_LINES = 500
MAX_PAGE_LINES = 5000
MAX_RUNTIME_CHECKS = 3
SIGKILL_EXIT_CODE = 137
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


@dataclass
class OutputMetadata:
    total_lines: int
    start_line: int
    end_line: int
    has_more: bool

    def to_dict(self) -> dict:
        return {
            "total_lines": self.total_lines,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "has_more": self.has_more,
        }


@dataclass
class TaskView:
    """A record plus its derived status, as consumers see it."""
    record: TaskRecord
    status: str
    exit_code: Optional[int] = None
    output: Optional[str] = None
    output_metadata: Optional[OutputMetadata] = None

    def to_dict(self) -> dict:
        data = self.record.to_dict()
        data.update({"status": self.status, "exit_code": self.exit_code, "output": self.output})
        if self.output_metadata is not None:
            data["output_metadata"] = self.output_metadata.to_dict()
        return data


@dataclass
class KillResult:
    killed: bool
    message: str

    def to_dict(self) -> dict:
        return {"success": True, "killed": self.killed, "message": self.message}


@dataclass
class _LinePage:
    lines: List[str] = field(default_factory=list)
    total_lines: int = 0
    start_line: int = 0
    end_line: int = -1

    def metadata(self) -> OutputMetadata:
        has_more = self.start_line > 0 or self.end_line < self.total_lines - 1
        return OutputMetadata(self.total_lines, self.start_line, self.end_line, has_more)


def _split_lines(text: str) -> List[str]:
    return text.split("\n")


def _page_lines(
    text: str,
    offset: Optional[int] = None,
    limit: Optional[int] = None,
    from_end: bool = False,
) -> _LinePage:
    lines = _split_lines(text)
    total = len(lines)
    if from_end:
        count = limit or total
        selected = lines[-count:]
        start = max(0, total - count)
        return _LinePage(selected, total, start, total - 1)
    start = offset or 0
    count = limit or total
    selected = lines[start:start + count]
    return _LinePage(selected, total, start, start + len(selected) - 1)


def _pid_alive(pid: int, kill: Callable[[int, int], None]) -> bool:
    try:
        kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to someone else.
        return True
    except OSError:
        return False
    return True


def _write_artifact(path: str, content: str) -> None:
    dir_path = os.path.dirname(path)
    if dir_path:
        os.makedirs(dir_path, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class TaskService:
    def __init__(
        self,
        store: TaskRecordStore,
        conversations: ConversationStore,
        bus: Optional[EventBus] = None,
        poller: Optional[AdaptivePoller] = None,
        runtime: Optional[RuntimeClient] = None,
        sessions_dir: Optional[str] = None,
        artifact_config: Optional[ArtifactRetentionConfig] = None,
        workdir_config: Optional[WorkDirRetentionConfig] = None,
        sweep_cron: str = "0 * * * *",
        sweep_initial_delay: float = 30.0,
        kill: Callable[[int, int], None] = os.kill,
    ) -> None:
        self.store = store
        self.conversations = conversations
        self.bus = bus or EventBus()
        self.poller = poller or AdaptivePoller(store, self.bus)
        self.runtime: RuntimeClient = runtime or RuntimeUnavailable()
        self.sessions_dir = sessions_dir
        self.artifact_config = artifact_config or ArtifactRetentionConfig()
        self.workdir_config = workdir_config or WorkDirRetentionConfig()
        self.scheduler = RetentionScheduler(
            self.run_sweep_now, cron_expr=sweep_cron, initial_delay=sweep_initial_delay,
        )
        self._kill = kill

    @classmethod
    def from_settings(cls, settings: Settings, runtime: Optional[RuntimeClient] = None) -> "TaskService":
        if runtime is None:
            if settings.runtime_url:
                runtime = HttpRuntimeClient(
                    settings.runtime_url, token=settings.runtime_token, timeout=settings.refresh_timeout,
                )
            else:
                runtime = RuntimeUnavailable()
        store = TaskRecordStore(store_path=os.path.join(settings.data_dir, "background-tasks.json"))
        conversations = ConversationStore(store_path=os.path.join(settings.data_dir, "conversations.json"))
        return cls(
            store,
            conversations,
            runtime=runtime,
            sessions_dir=settings.sessions_dir,
            artifact_config=ArtifactRetentionConfig(
                max_age_days=settings.artifact_max_age_days,
                max_size_bytes=settings.artifact_max_size_bytes,
            ),
            workdir_config=WorkDirRetentionConfig(
                max_age_hours=settings.workdir_max_age_hours,
                preserve_directories=tuple(settings.preserve_dirs),
            ),
            sweep_cron=settings.sweep_cron,
            sweep_initial_delay=settings.sweep_initial_delay,
        )

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self) -> None:
        if self.store.pending():
            self.poller.start()
        self.scheduler.start()

    def shutdown(self) -> None:
        self.poller.stop()
        self.scheduler.stop()

    # ── Helpers ───────────────────────────────────────────────

    def _require(self, task_id: str) -> TaskRecord:
        record = self.store.get(task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        return record

    def _messages(self, record: TaskRecord) -> List[dict]:
        return self.conversations.messages(record.session_id)

    def _transcript(self, record: TaskRecord) -> TranscriptData:
        messages = self._messages(record)
        if not messages:
            return TranscriptData()
        return extract_task_data(record, messages)

    def _view(self, record: TaskRecord) -> TaskView:
        transcript = self._transcript(record)
        derived = resolve_status(record, artifact_text=read_artifact(record.output_artifact_path))
        if record.exit_code is None:
            derived = apply_transcript(derived, transcript)
        return TaskView(record, derived.status, derived.exit_code, transcript.output)

    def _publish(self, record: TaskRecord, status: str, exit_code: Optional[int], source: str) -> None:
        event = StatusChange(
            task_id=record.id,
            session_id=record.session_id,
            conversation_id=record.conversation_id,
            status=status,
            exit_code=exit_code,
        )
        log_status_change({**event.to_dict(), "source": source})
        self.bus.publish(event)

    # ── Runtime signals ───────────────────────────────────────

    def create(
        self,
        session_id: str,
        conversation_id: str,
        correlation_id: str,
        output_artifact_path: Optional[str] = None,
        pid: Optional[int] = None,
    ) -> TaskRecord:
        record = self.store.insert(
            session_id=session_id,
            conversation_id=conversation_id,
            correlation_id=correlation_id,
            output_artifact_path=output_artifact_path,
            pid=pid,
        )
        self.poller.notify_new_task()
        return record

    def acknowledge(
        self,
        correlation_id: str,
        external_task_id: str,
        output_artifact_path: Optional[str] = None,
        pid: Optional[int] = None,
    ) -> TaskRecord:
        """Attach the runtime's own task id once it confirms the launch."""
        record = self.store.get_by_correlation(correlation_id)
        if record is None:
            raise TaskNotFoundError(correlation_id)
        updated = self.store.update(
            record.id,
            external_task_id=external_task_id,
            output_artifact_path=output_artifact_path,
            pid=pid,
        )
        logger.info("Task %s acknowledged by runtime as %s", record.id, external_task_id)
        self.poller.notify_new_task()
        return updated or record

    def handle_notification(
        self,
        external_task_id: str,
        status: str,
        output_artifact_path: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[TaskRecord]:
        """Apply the runtime's out-of-band status notification.

        Unknown tasks are skipped with a warning; the runtime may report on
        commands that were never registered here.
        """
        if status not in EXTERNAL_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        record = self.store.get_by_external_id(external_task_id)
        if record is None and correlation_id:
            record = self.store.get_by_correlation(correlation_id)
        if record is None:
            logger.warning("Notification for unknown runtime task %s (%s), skipping", external_task_id, status)
            return None

        self.store.update(
            record.id, external_task_id=external_task_id, output_artifact_path=output_artifact_path,
        )
        written = self.store.set_external_status(record.id, status)
        if written and status != "running":
            derived = derive_status(record, self._messages(record))
            logger.info("Task %s reported %s by runtime (exit code: %s)", record.id, status, derived.exit_code)
            self._publish(record, derived.status, derived.exit_code, source="notification")
        return record

    # ── Refresh ───────────────────────────────────────────────

    def _apply_runtime_check(self, record: TaskRecord) -> Optional[RuntimeCheck]:
        if not record.is_pending or not record.external_task_id or not self.runtime.is_ready():
            return None
        check = self.runtime.check_task(record.external_task_id)
        if check is None:
            logger.debug("No runtime check result for %s", record.id)
            return None
        if not check.is_terminal:
            return check
        if not self.store.set_external_status(record.id, check.status, exit_code=check.exit_code):
            return check
        logger.info("Refresh detected %s as %s", record.id, check.status)
        if record.output_artifact_path and check.output:
            try:
                _write_artifact(record.output_artifact_path, check.output)
            except OSError as exc:
                logger.error("Failed to write output for %s: %s", record.id, exc)
        derived = derive_status(record, self._messages(record))
        exit_code = check.exit_code if check.exit_code is not None else derived.exit_code
        self._publish(record, check.status, exit_code, source="refresh")
        return check

    def refresh(self, task_id: str) -> Optional[DerivedStatus]:
        """One-shot re-check of a single task. Returns None if it is gone."""
        record = self.store.get(task_id)
        if record is None:
            return None
        try:
            self._apply_runtime_check(record)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to refresh task %s: %s", task_id, exc)
        return derive_status(record, self._messages(record))

    def refresh_conversation(self, conversation_id: str) -> List[dict]:
        records = self.store.list(conversation_id=conversation_id)
        pending = [r for r in records if r.is_pending]
        logger.info("Manual refresh: checking %d running task(s) in %s", len(pending), conversation_id)
        for record in pending[:MAX_RUNTIME_CHECKS]:
            try:
                self._apply_runtime_check(record)
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to refresh task %s: %s", record.id, exc)
        results = []
        for record in records:
            derived = derive_status(record)
            results.append({"id": record.id, **derived.to_dict()})
        return results

    # ── Queries ───────────────────────────────────────────────

    def get(self, task_id: str) -> TaskView:
        return self._view(self._require(task_id))

    def list_by_session(self, session_id: str) -> List[TaskView]:
        return [self._view(r) for r in self.store.list(session_id=session_id)]

    def list_by_conversation(self, conversation_id: str) -> List[TaskView]:
        return [self._view(r) for r in self.store.list(conversation_id=conversation_id)]

    def get_with_output(
        self,
        task_id: str,
        tail_lines: Optional[int] = None,
        offset: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> TaskView:
        """Task view with output attached.

        Running or still-pending tasks are read live from the artifact. Finished tasks
        prefer the transcript output, unless the caller asked for a tail or
        a page, which only the artifact can serve.
        """
        view = self._view(self._require(task_id))
        artifact = read_artifact(view.record.output_artifact_path)
        wants_tail = tail_lines is not None
        wants_page = offset is not None and limit is not None

        def page_artifact(text: str) -> _LinePage:
            if wants_tail:
                return _page_lines(text, limit=tail_lines, from_end=True)
            if wants_page:
                return _page_lines(text, offset=offset, limit=limit)
            return _page_lines(text, limit=DEFAULT_TAIL_LINES, from_end=True)

        transcript_output = view.output
        live = view.status == "running" or view.record.is_pending
        if live and artifact is not None:
            page = page_artifact(artifact)
        elif transcript_output and not ((wants_tail or wants_page) and artifact is not None):
            lines = _split_lines(transcript_output)
            page = _LinePage(lines, len(lines), 0, len(lines) - 1)
        elif artifact is not None:
            page = page_artifact(artifact)
        else:
            view.output = ""
            return view

        view.output = "\n".join(page.lines)
        view.output_metadata = page.metadata()
        return view

    def output_stats(self, task_id: str) -> Optional[dict]:
        record = self._require(task_id)
        if not record.output_artifact_path:
            return None
        try:
            stat = os.stat(record.output_artifact_path)
        except OSError:
            return {"size": 0, "last_modified": None, "exists": False}
        return {
            "size": stat.st_size,
            "last_modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            "exists": True,
        }

    def running_count(self, conversation_id: str) -> dict:
        views = self.list_by_conversation(conversation_id)
        running = sum(1 for v in views if v.status == "running")
        return {"running": running, "total": len(views)}

    # ── User actions ──────────────────────────────────────────

    def kill_task(self, task_id: str) -> KillResult:
        record = self._require(task_id)
        if not record.pid:
            raise TaskError(f"Task has no PID: {task_id}")
        if not _pid_alive(record.pid, self._kill):
            return KillResult(killed=False, message="Process already terminated")
        try:
            self._kill(record.pid, _SIGKILL)
        except OSError as exc:
            raise TaskKillError(f"Failed to kill process {record.pid}: {exc}") from exc
        logger.info("Killed task %s (pid %s)", task_id, record.pid)
        if self.store.set_external_status(record.id, "failed", exit_code=SIGKILL_EXIT_CODE):
            self._publish(record, "failed", SIGKILL_EXIT_CODE, source="kill")
        else:
            logger.info("Task %s already %s, no status change published", task_id, record.external_status)
        return KillResult(killed=True, message="Process killed")

    def clear_completed(self, conversation_id: str) -> int:
        """Delete finished tasks of a conversation. Live processes are kept."""
        deleted = 0
        for view in self.list_by_conversation(conversation_id):
            if view.status == "running":
                continue
            if view.record.pid and _pid_alive(view.record.pid, self._kill):
                continue
            if self.store.delete(view.record.id) is not None:
                deleted += 1
        logger.info("Cleared %d finished task(s) in %s", deleted, conversation_id)
        return deleted

    def delete(self, task_id: str) -> Optional[TaskRecord]:
        return self.store.delete(task_id)

    # ── Events ────────────────────────────────────────────────

    def subscribe(
        self,
        handler: Callable[[StatusChange], None],
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Subscription:
        return self.bus.subscribe(handler, conversation_id=conversation_id, session_id=session_id)

    def open_stream(
        self,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> QueueSubscription:
        return self.bus.open_queue(conversation_id=conversation_id, session_id=session_id)

    # ── Retention & poller control ────────────────────────────

    def live_ids(self) -> set[str]:
        return self.conversations.live_ids() | self.store.live_parent_ids()

    def sweep_preview(self, config: Optional[WorkDirRetentionConfig] = None) -> SweepPreview:
        if not self.sessions_dir:
            return SweepPreview()
        return preview_work_directories(self.sessions_dir, self.live_ids(), config or self.workdir_config)

    def run_sweep_now(self) -> SweepReport:
        artifacts = cleanup_output_artifacts(self.store, self.artifact_config)
        if self.sessions_dir:
            work_dirs = cleanup_work_directories(self.sessions_dir, self.live_ids(), self.workdir_config)
        else:
            work_dirs = WorkDirSweepResult()
        report = SweepReport(artifacts=artifacts, work_dirs=work_dirs)
        logger.info("Retention sweep finished: %s", report.to_dict())
        return report

    def poller_status(self) -> PollerStatus:
        return self.poller.status()
