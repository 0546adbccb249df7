from __future__ import annotations

from taskwatch.core.records import TaskRecord
from taskwatch.core.transcript import TranscriptData, extract_task_data


def _record(**kwargs) -> TaskRecord:
    defaults = dict(id="bg-1", session_id="s1", conversation_id="c1", correlation_id="call-1")
    defaults.update(kwargs)
    return TaskRecord(**defaults)


def _assistant(*parts: dict) -> dict:
    return {"type": "assistant", "parts": list(parts)}


def test_launch_result_with_stderr():
    messages = [_assistant({
        "toolCallId": "call-1",
        "output": {"stdout": "hello", "stderr": "warning: x", "task_id": "b1"},
    })]
    data = extract_task_data(_record(), messages)
    assert data.output == "hello\n\n[stderr]\nwarning: x"
    assert data.exit_code is None


def test_string_result():
    messages = [_assistant({"tool_call_id": "call-1", "result": "plain text"})]
    assert extract_task_data(_record(), messages).output == "plain text"


def test_later_output_check_overrides():
    messages = [
        _assistant({"toolCallId": "call-1", "output": {"stdout": "started", "task_id": "b1"}}),
        _assistant({
            "type": "tool-TaskOutput",
            "input": {"task_id": "b1"},
            "output": {"stdout": "finished", "exitCode": 0},
        }),
    ]
    assert extract_task_data(_record(), messages) == TranscriptData(output="finished", exit_code=0)


def test_bash_output_matched_on_runtime_id_from_record():
    messages = [
        _assistant({"toolCallId": "call-1", "output": {"stdout": "started"}}),
        _assistant({
            "toolName": "BashOutput",
            "input": {"bash_id": "shell-7"},
            "output": {"stdout": "", "stderr": "", "exit_code": 3},
        }),
    ]
    data = extract_task_data(_record(external_task_id="shell-7"), messages)
    # Empty output does not replace what was already there; the exit code does.
    assert data.output == "started"
    assert data.exit_code == 3


def test_output_check_for_other_task_ignored():
    messages = [
        _assistant({"toolCallId": "call-1", "output": {"stdout": "mine", "task_id": "b1"}}),
        _assistant({
            "type": "tool-TaskOutput",
            "input": {"task_id": "b2"},
            "output": {"stdout": "theirs", "exit_code": 1},
        }),
    ]
    assert extract_task_data(_record(), messages) == TranscriptData(output="mine", exit_code=None)


def test_non_assistant_and_malformed_messages_skipped():
    messages = [
        {"type": "user", "parts": [{"toolCallId": "call-1", "output": "nope"}]},
        {"type": "assistant", "parts": "not-a-list"},
        "garbage",
        _assistant("bad-part", {"toolCallId": "call-2", "output": "other"}),
    ]
    assert extract_task_data(_record(), messages) == TranscriptData()
