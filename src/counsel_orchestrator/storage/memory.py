"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any

from counsel_orchestrator.storage.models import (
    Conversation,
    ConversationMessage,
    Task,
    TaskStatus,
    ToolExecutionRecord,
)


class InMemoryConversationStore:
    """Dict-backed implementation; returns copies so callers never alias stored state."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: list[ConversationMessage] = []
        self._tool_executions: list[ToolExecutionRecord] = []

    def migrate(self) -> None:
        return None

    def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.task_id in self._tasks:
                raise ValueError(f"Task {task.task_id} already exists")
            self._tasks[task.task_id] = task.model_copy(deep=True)
        return task.model_copy(deep=True)

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def update_task(self, task_id: str, **changes: Any) -> Task:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(f"Task {task_id} does not exist")
            _reject_unknown_fields(Task, changes)
            updated = Task.model_validate({**current.model_dump(), **changes})
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        with self._lock:
            rows = [
                task for task in self._tasks.values() if status is None or task.status == status
            ]
        rows.sort(key=lambda task: task.created_at, reverse=True)
        return [task.model_copy(deep=True) for task in rows[: max(limit, 0)]]

    def create_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock:
            self._conversations[conversation.conversation_id] = conversation.model_copy(deep=True)
        return conversation.model_copy(deep=True)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    def update_conversation(self, conversation_id: str, **changes: Any) -> Conversation:
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                raise KeyError(f"Conversation {conversation_id} does not exist")
            _reject_unknown_fields(Conversation, changes)
            payload = {**current.model_dump(), "updated_at": datetime.now(tz=UTC), **changes}
            updated = Conversation.model_validate(payload)
            self._conversations[conversation_id] = updated
            return updated.model_copy(deep=True)

    def add_message(self, message: ConversationMessage) -> ConversationMessage:
        with self._lock:
            conversation = self._conversations.get(message.conversation_id)
            if conversation is None:
                raise KeyError(f"Conversation {message.conversation_id} does not exist")
            self._messages.append(message.model_copy(deep=True))
            self._conversations[message.conversation_id] = conversation.model_copy(
                update={
                    "message_count": conversation.message_count + 1,
                    "total_tokens_used": conversation.total_tokens_used + message.token_count,
                    "updated_at": datetime.now(tz=UTC),
                }
            )
        return message.model_copy(deep=True)

    def list_messages(self, conversation_id: str) -> list[ConversationMessage]:
        with self._lock:
            rows = [item for item in self._messages if item.conversation_id == conversation_id]
        rows.sort(key=lambda item: item.created_at)
        return [item.model_copy(deep=True) for item in rows]

    def add_tool_execution(self, record: ToolExecutionRecord) -> ToolExecutionRecord:
        with self._lock:
            self._tool_executions.append(record.model_copy(deep=True))
        return record.model_copy(deep=True)

    def list_tool_executions(
        self,
        conversation_id: str,
        *,
        task_id: str | None = None,
    ) -> list[ToolExecutionRecord]:
        with self._lock:
            rows = [
                item
                for item in self._tool_executions
                if item.conversation_id == conversation_id
                and (task_id is None or item.task_id == task_id)
            ]
        rows.sort(key=lambda item: item.created_at)
        return [item.model_copy(deep=True) for item in rows]


def _reject_unknown_fields(model: type[Any], changes: dict[str, Any]) -> None:
    unknown = set(changes) - set(model.model_fields)
    if unknown:
        raise ValueError(f"Unknown {model.__name__} fields: {sorted(unknown)}")
