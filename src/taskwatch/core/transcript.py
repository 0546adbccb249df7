"""Task output recovered from the conversation transcript.

The transcript is a list of agent messages, each with ``parts``. The tool
call that launched a background command carries its first result; later
output-check calls (``TaskOutput`` / ``BashOutput``) that reference the
same runtime task carry newer output and the exit code, and win.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from taskwatch.core.records import TaskRecord

logger = logging.getLogger("taskwatch.transcript")

OUTPUT_CHECK_TOOLS = ("TaskOutput", "BashOutput")


@dataclass(frozen=True)
class TranscriptData:
    output: Optional[str] = None
    exit_code: Optional[int] = None


def _first(mapping: dict, *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _combine_output(result: dict) -> str:
    stdout = _first(result, "stdout", "output") or ""
    stderr = result.get("stderr") or ""
    chunks: list[str] = []
    if stdout:
        chunks.append(str(stdout))
    if stderr:
        chunks.append(f"[stderr]\n{stderr}")
    return "\n\n".join(chunks)


def _exit_code(result: dict) -> Optional[int]:
    value = _first(result, "exit_code", "exitCode")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _is_output_check(part: dict) -> bool:
    part_type = str(part.get("type") or "")
    tool_name = str(part.get("tool_name") or part.get("toolName") or "")
    return any(name in part_type or name == tool_name for name in OUTPUT_CHECK_TOOLS)


def extract_task_data(record: "TaskRecord", messages: List[dict]) -> TranscriptData:
    output: Optional[str] = None
    exit_code: Optional[int] = None
    runtime_task_id: Optional[str] = record.external_task_id

    for message in messages:
        if not isinstance(message, dict) or message.get("type") != "assistant":
            continue
        parts = message.get("parts")
        if not isinstance(parts, list):
            continue
        for part in parts:
            if not isinstance(part, dict):
                continue
            result = _first(part, "output", "result")

            if _first(part, "tool_call_id", "toolCallId") == record.correlation_id:
                if isinstance(result, dict):
                    output = _combine_output(result)
                    exit_code = _exit_code(result)
                    runtime_task_id = _first(result, "task_id", "taskId") or runtime_task_id
                elif isinstance(result, str):
                    output = result
                continue

            if runtime_task_id and _is_output_check(part):
                tool_input = part.get("input") if isinstance(part.get("input"), dict) else {}
                if _first(tool_input, "task_id", "taskId", "bash_id", "shell_id") != runtime_task_id:
                    continue
                if not isinstance(result, dict):
                    continue
                combined = _combine_output(result)
                if combined:
                    output = combined
                code = _exit_code(result)
                if code is not None:
                    exit_code = code

    return TranscriptData(output=output, exit_code=exit_code)
