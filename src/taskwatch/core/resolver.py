"""Derived task status.

Several sources disagree about whether a background command is done.
They are consulted as a strict precedence chain, first match wins:

1. Explicit runtime status (``external_status`` terminal). Trusted as-is;
   the exit code is the one stored on the record, else the artifact
   marker, else 0 for ``completed`` and 1 for ``failed``.
2. Exit marker in the output artifact (``exit code: N`` or
   ``process exited with code N``).
3. Non-blank artifact without a marker: ``completed`` with exit code 0.
   This is an approximation kept for compatibility with runtimes that never
   write a marker; a command that crashed silently is misreported as a
   success. Callers that must not guess pass ``infer_from_output=False``.
4. Acknowledged by the runtime (``external_task_id``): ``running``.
5. Otherwise ``running``: the record was just created.

Everything here is read-only. Nothing in this module writes a record.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import List, Optional

from taskwatch.core.records import TaskRecord
from taskwatch.core.transcript import TranscriptData, extract_task_data

logger = logging.getLogger("taskwatch.resolver")

DERIVED_STATUSES = ("running", "completed", "failed", "stopped", "unknown")

_EXIT_PATTERNS = (
    re.compile(r"exit\s+code:\s*(\d+)", re.IGNORECASE),
    re.compile(r"process\s+exited\s+with\s+code\s+(\d+)", re.IGNORECASE),
)


@dataclass(frozen=True)
class DerivedStatus:
    status: str
    exit_code: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != "running"

    def to_dict(self) -> dict:
        return {"status": self.status, "exit_code": self.exit_code}


RUNNING = DerivedStatus("running")


def parse_exit_code(text: str) -> Optional[int]:
    """Return the exit code of the last terminal marker in *text*, if any."""
    last_pos = -1
    code: Optional[int] = None
    for pattern in _EXIT_PATTERNS:
        for match in pattern.finditer(text):
            if match.start() > last_pos:
                last_pos = match.start()
                code = int(match.group(1))
    return code


def read_artifact(path: Optional[str]) -> Optional[str]:
    """Read an output artifact. Missing or unreadable means no artifact."""
    if not path:
        return None
    try:
        with open(path, "rb") as handle:
            return handle.read().decode("utf-8", errors="replace")
    except OSError as exc:
        logger.debug("Artifact %s not readable: %s", path, exc)
        return None


def resolve_status(
    record: TaskRecord,
    artifact_text: Optional[str] = None,
    infer_from_output: bool = True,
) -> DerivedStatus:
    """Apply the precedence chain to one record and its artifact content."""
    exit_code = parse_exit_code(artifact_text) if artifact_text else None

    if record.external_status:
        if record.exit_code is not None and record.has_terminal_status:
            exit_code = record.exit_code
        if record.external_status == "completed":
            return DerivedStatus("completed", exit_code if exit_code is not None else 0)
        if record.external_status == "failed":
            return DerivedStatus("failed", exit_code if exit_code is not None else 1)
        if record.external_status == "stopped":
            return DerivedStatus("stopped", exit_code)
        if record.external_status != "running":
            return DerivedStatus("unknown", exit_code)

    if exit_code is not None:
        return DerivedStatus("completed" if exit_code == 0 else "failed", exit_code)

    if infer_from_output and artifact_text and artifact_text.strip():
        return DerivedStatus("completed", 0)

    return RUNNING


def apply_transcript(derived: DerivedStatus, transcript: TranscriptData) -> DerivedStatus:
    """Let a transcript exit code replace the artifact-derived one.

    Only finished tasks take the override; a transcript cannot end a task.
    """
    if transcript.exit_code is None or not derived.is_terminal:
        return derived
    return DerivedStatus(derived.status, transcript.exit_code)


def derive_status(
    record: TaskRecord,
    messages: Optional[List[dict]] = None,
    infer_from_output: bool = True,
) -> DerivedStatus:
    """Read the record's artifact and transcript, then resolve."""
    derived = resolve_status(
        record,
        artifact_text=read_artifact(record.output_artifact_path),
        infer_from_output=infer_from_output,
    )
    if messages and record.exit_code is None:
        derived = apply_transcript(derived, extract_task_data(record, messages))
    return derived
