"""Storage interface for task lifecycle, conversations and tool executions."""

from __future__ import annotations

from typing import Any, Protocol

from counsel_orchestrator.storage.models import (
    Conversation,
    ConversationMessage,
    Task,
    TaskStatus,
    ToolExecutionRecord,
)


class ConversationStore(Protocol):
    def migrate(self) -> None: ...

    def create_task(self, task: Task) -> Task: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def update_task(self, task_id: str, **changes: Any) -> Task: ...

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[Task]: ...

    def create_conversation(self, conversation: Conversation) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    def update_conversation(self, conversation_id: str, **changes: Any) -> Conversation: ...

    def add_message(self, message: ConversationMessage) -> ConversationMessage: ...

    def list_messages(self, conversation_id: str) -> list[ConversationMessage]: ...

    def add_tool_execution(self, record: ToolExecutionRecord) -> ToolExecutionRecord: ...

    def list_tool_executions(
        self,
        conversation_id: str,
        *,
        task_id: str | None = None,
    ) -> list[ToolExecutionRecord]: ...
