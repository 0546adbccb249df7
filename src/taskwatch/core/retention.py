"""Retention sweep for output artifacts and agent work directories.

Two independent passes, both safe to run while tasks are live:

- output artifacts: records whose artifact vanished are dropped (after a
  grace period, since the runtime creates the file lazily), artifacts past
  their age limit are deleted together with their record, and oversize
  artifacts are cut down to their tail;
- work directories: one directory per conversation or session under the
  sessions root, deleted once stale unless protected or still referenced.

A failure on one entry is counted and logged; the pass keeps going.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import errno
import logging
import os
import shutil
import threading
import time
from typing import Any, Callable, Iterable, List, Optional

from croniter import croniter

from taskwatch.core.records import TaskRecordStore

logger = logging.getLogger("taskwatch.retention")

DEFAULT_KEEP_BYTES = 1024 * 1024

REASON_PROTECTED = "Protected directory"
REASON_ACTIVE = "Active in database"
REASON_NOT_OLD_ENOUGH = "Not old enough"
REASON_NO_STATS = "Could not read stats"

_BUSY_ERRNOS = {errno.EBUSY, errno.ENOTEMPTY}


@dataclass
class ArtifactRetentionConfig:
    max_age_days: float = 7
    max_size_bytes: int = 50 * 1024 * 1024
    keep_bytes: int = DEFAULT_KEEP_BYTES
    orphan_grace_seconds: float = 600


@dataclass
class WorkDirRetentionConfig:
    max_age_hours: float = 24
    preserve_directories: tuple[str, ...] = ("background-utility",)


@dataclass
class ArtifactSweepResult:
    deleted: int = 0
    truncated: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {"deleted": self.deleted, "truncated": self.truncated, "errors": self.errors}


@dataclass
class WorkDirSweepResult:
    deleted: int = 0
    preserved: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {"deleted": self.deleted, "preserved": self.preserved, "errors": self.errors}


@dataclass
class DirectoryVerdict:
    name: str
    age_hours: float
    action: str  # "delete" | "preserve"
    reason: str

    def to_dict(self) -> dict:
        return {"name": self.name, "age_hours": self.age_hours, "action": self.action, "reason": self.reason}


@dataclass
class SweepPreview:
    total: int = 0
    would_delete: int = 0
    would_preserve: int = 0
    directories: List[DirectoryVerdict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "would_delete": self.would_delete,
            "would_preserve": self.would_preserve,
            "directories": [d.to_dict() for d in self.directories],
        }


@dataclass
class SweepReport:
    artifacts: ArtifactSweepResult
    work_dirs: WorkDirSweepResult

    def to_dict(self) -> dict:
        return {"artifacts": self.artifacts.to_dict(), "work_dirs": self.work_dirs.to_dict()}


# ── Output artifacts ──────────────────────────────────────────

def truncation_notice(keep_bytes: int) -> str:
    """Header line written in front of a truncated artifact's tail."""
    if keep_bytes >= 1024 * 1024 and keep_bytes % (1024 * 1024) == 0:
        size = f"{keep_bytes // (1024 * 1024)}MB"
    elif keep_bytes >= 1024 and keep_bytes % 1024 == 0:
        size = f"{keep_bytes // 1024}KB"
    else:
        size = f"{keep_bytes} bytes"
    return f"... (output truncated - showing last {size}) ...\n"


def truncate_artifact(path: str, keep_bytes: int) -> bool:
    """Keep only the trailing *keep_bytes* bytes of *path*, behind a notice.

    The file is cut down in place: the runtime may still hold it open in
    append mode, and its later writes (the exit marker among them) must
    land in this same file. Returns False when the file was already small
    enough.
    """
    with open(path, "r+b") as handle:
        size = os.fstat(handle.fileno()).st_size
        if size <= keep_bytes:
            return False
        tail = b""
        if keep_bytes > 0:
            handle.seek(size - keep_bytes)
            tail = handle.read(keep_bytes)
        handle.seek(0)
        handle.write(truncation_notice(keep_bytes).encode("utf-8"))
        handle.write(tail)
        handle.truncate()
        handle.flush()
        os.fsync(handle.fileno())
    return True


def cleanup_output_artifacts(
    store: TaskRecordStore,
    config: Optional[ArtifactRetentionConfig] = None,
    now: Optional[float] = None,
) -> ArtifactSweepResult:
    config = config or ArtifactRetentionConfig()
    now = time.time() if now is None else now
    max_age = config.max_age_days * 24 * 60 * 60
    result = ArtifactSweepResult()

    for record in store.list():
        path = record.output_artifact_path
        if not path:
            continue

        if not os.path.exists(path):
            if now - record.created_at.timestamp() < config.orphan_grace_seconds:
                continue
            store.delete(record.id)
            result.deleted += 1
            logger.info("Removed orphaned task record: %s", record.id)
            continue

        try:
            stat = os.stat(path)
        except OSError as exc:
            logger.error("Error checking artifact %s: %s", path, exc)
            result.errors += 1
            continue

        if now - stat.st_mtime > max_age:
            try:
                os.remove(path)
            except OSError as exc:
                logger.error("Failed to delete %s: %s", path, exc)
                result.errors += 1
                continue
            store.delete(record.id)
            result.deleted += 1
            logger.info("Deleted old output artifact and task: %s", record.id)
            continue

        if stat.st_size > config.max_size_bytes:
            try:
                if truncate_artifact(path, config.keep_bytes):
                    result.truncated += 1
                    logger.info("Truncated large artifact: %s (%d bytes)", path, stat.st_size)
            except OSError as exc:
                logger.error("Failed to truncate %s: %s", path, exc)
                result.errors += 1

    return result


# ── Work directories ──────────────────────────────────────────

def _list_dirs(root: str) -> List[str]:
    with os.scandir(root) as entries:
        return sorted(e.name for e in entries if e.is_dir(follow_symlinks=False))


def _classify(
    name: str,
    path: str,
    live_ids: set[str],
    config: WorkDirRetentionConfig,
    now: float,
) -> DirectoryVerdict:
    try:
        age_seconds = now - os.stat(path).st_mtime
    except OSError as exc:
        logger.debug("Could not stat %s: %s", path, exc)
        return DirectoryVerdict(name, 0.0, "preserve", REASON_NO_STATS)
    age_hours = round(age_seconds / 3600, 1)
    if name in config.preserve_directories:
        return DirectoryVerdict(name, age_hours, "preserve", REASON_PROTECTED)
    if name in live_ids:
        return DirectoryVerdict(name, age_hours, "preserve", REASON_ACTIVE)
    if age_seconds > config.max_age_hours * 3600:
        return DirectoryVerdict(name, age_hours, "delete", f"Older than {config.max_age_hours:g}h")
    return DirectoryVerdict(name, age_hours, "preserve", REASON_NOT_OLD_ENOUGH)


def cleanup_work_directories(
    root: str,
    live_ids: Iterable[str],
    config: Optional[WorkDirRetentionConfig] = None,
    now: Optional[float] = None,
) -> WorkDirSweepResult:
    config = config or WorkDirRetentionConfig()
    now = time.time() if now is None else now
    result = WorkDirSweepResult()
    if not os.path.isdir(root):
        logger.debug("Work directory root %s does not exist, skipping", root)
        return result

    live = set(live_ids)
    try:
        names = _list_dirs(root)
    except OSError as exc:
        logger.error("Error reading work directory root %s: %s", root, exc)
        result.errors += 1
        return result

    for name in names:
        path = os.path.join(root, name)
        verdict = _classify(name, path, live, config, now)
        if verdict.reason == REASON_NO_STATS:
            result.errors += 1
            continue
        if verdict.action == "preserve":
            result.preserved += 1
            continue
        try:
            shutil.rmtree(path)
        except OSError as exc:
            if exc.errno in _BUSY_ERRNOS:
                logger.info("Work directory busy, skipping: %s", name)
                result.preserved += 1
            else:
                logger.error("Failed to delete work directory %s: %s", name, exc)
                result.errors += 1
            continue
        result.deleted += 1
        logger.info("Deleted old work directory: %s (%.1fh old)", name, verdict.age_hours)

    return result


def preview_work_directories(
    root: str,
    live_ids: Iterable[str],
    config: Optional[WorkDirRetentionConfig] = None,
    now: Optional[float] = None,
) -> SweepPreview:
    """Dry run of ``cleanup_work_directories``. Never touches the filesystem."""
    config = config or WorkDirRetentionConfig()
    now = time.time() if now is None else now
    if not os.path.isdir(root):
        return SweepPreview()
    live = set(live_ids)
    try:
        names = _list_dirs(root)
    except OSError as exc:
        logger.error("Error reading work directory root %s: %s", root, exc)
        return SweepPreview()
    verdicts = [_classify(name, os.path.join(root, name), live, config, now) for name in names]
    would_delete = sum(1 for v in verdicts if v.action == "delete")
    return SweepPreview(
        total=len(verdicts),
        would_delete=would_delete,
        would_preserve=len(verdicts) - would_delete,
        directories=verdicts,
    )


# ── Scheduler ─────────────────────────────────────────────────

class RetentionScheduler:
    """Runs the sweep once shortly after start, then on a cron schedule."""

    def __init__(
        self,
        job: Callable[[], Any],
        cron_expr: str = "0 * * * *",
        initial_delay: float = 30.0,
    ) -> None:
        if not croniter.is_valid(cron_expr):
            raise ValueError(f"Invalid cron expression: {cron_expr!r}")
        self._job = job
        self._cron_expr = cron_expr
        self._initial_delay = initial_delay
        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            logger.info("Retention scheduler already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="retention-sweep")
        self._thread.start()
        logger.info("Retention scheduler started (cron %s, first run in %ss)", self._cron_expr, self._initial_delay)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info("Retention scheduler stopped")

    def next_delay(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        next_run = croniter(self._cron_expr, now).get_next(datetime)
        return max(0.0, (next_run - now).total_seconds())

    def run_now(self) -> Any:
        """Run the job on the caller's thread. Errors propagate."""
        with self._run_lock:
            return self._job()

    def _run_safely(self) -> None:
        try:
            self.run_now()
        except Exception as exc:  # noqa: BLE001
            logger.error("Retention sweep failed, will retry next run: %s", exc)

    def _loop(self) -> None:
        if self._stop_event.wait(self._initial_delay):
            return
        logger.info("Running initial retention sweep")
        self._run_safely()
        while not self._stop_event.wait(self.next_delay()):
            self._run_safely()
