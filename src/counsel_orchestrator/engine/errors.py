"""Errors raised by the task orchestrator."""

from __future__ import annotations


class TaskOrchestratorError(RuntimeError):
    """Base class for orchestrator errors surfaced to callers."""


class TaskTimeoutError(TaskOrchestratorError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} timed out waiting for result")
        self.task_id = task_id


class TaskNotFoundError(TaskOrchestratorError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id
