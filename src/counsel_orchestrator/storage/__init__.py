"""Storage backends and models."""

from counsel_orchestrator.storage.base import ConversationStore
from counsel_orchestrator.storage.memory import InMemoryConversationStore
from counsel_orchestrator.storage.models import (
    TERMINAL_STATUSES,
    Conversation,
    ConversationMessage,
    Task,
    TaskRequest,
    TaskResult,
    TaskStatus,
    TaskToolExecution,
    ToolExecutionRecord,
)
from counsel_orchestrator.storage.postgres import PostgresConversationStore

__all__ = [
    "TERMINAL_STATUSES",
    "Conversation",
    "ConversationMessage",
    "ConversationStore",
    "InMemoryConversationStore",
    "PostgresConversationStore",
    "Task",
    "TaskRequest",
    "TaskResult",
    "TaskStatus",
    "TaskToolExecution",
    "ToolExecutionRecord",
]
