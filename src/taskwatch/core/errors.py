from __future__ import annotations


class TaskError(RuntimeError):
    """Base error for task operations that callers can act on."""


class TaskNotFoundError(TaskError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class DuplicateTaskError(TaskError):
    def __init__(self, correlation_id: str) -> None:
        super().__init__(f"A task already exists for tool call {correlation_id}")
        self.correlation_id = correlation_id


class TaskKillError(TaskError):
    pass
