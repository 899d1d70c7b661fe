"""Storage models shared by the engine, API and persistence backends."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field

# Task lifecycle states used by storage + API responses.
TaskStatus = Literal["queued", "running", "completed", "failed", "cancelled"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

MessageRole = Literal["user", "assistant"]


def _new_id() -> str:
    return str(uuid4())


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class TaskRequest(BaseModel):
    """Caller-supplied request; never mutated after submission."""

    model_config = ConfigDict(frozen=True)

    intent: str = "general"
    query: str = Field(min_length=1)
    source_app: str = "api"
    conversation_id: str | None = None
    callback_url: str | None = None
    # Adapters such as the email gateway persist turns themselves with richer metadata.
    skip_user_persistence: bool = False
    skip_assistant_persistence: bool = False


class Task(BaseModel):
    """Persisted task record."""

    task_id: str = Field(default_factory=_new_id)
    intent: str = "general"
    query: str
    source_app: str = "api"
    conversation_id: str | None = None
    callback_url: str | None = None
    status: TaskStatus = "queued"
    response_text: str | None = None
    tool_execution_count: int = 0
    rounds_used: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    finish_reason: str | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_request(cls, request: TaskRequest) -> Task:
        return cls(
            intent=request.intent,
            query=request.query,
            source_app=request.source_app,
            callback_url=request.callback_url,
        )


class TaskToolExecution(BaseModel):
    """Tool execution as surfaced in a task result (output truncated)."""

    tool_name: str
    output_summary: str
    is_error: bool
    duration_ms: int


class TaskResult(BaseModel):
    """Read-only projection of a task plus its tool executions."""

    task_id: str
    status: TaskStatus
    response_text: str | None = None
    tool_executions: list[TaskToolExecution] = Field(default_factory=list)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    rounds_used: int = 0
    finish_reason: str | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens_used(self) -> int:
        return self.total_input_tokens + self.total_output_tokens


class Conversation(BaseModel):
    conversation_id: str = Field(default_factory=_new_id)
    subject: str
    participant_email: str
    status: str = "active"
    summary: str | None = None
    total_tokens_used: int = 0
    message_count: int = 0
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class ConversationMessage(BaseModel):
    message_id: str = Field(default_factory=_new_id)
    conversation_id: str
    role: MessageRole
    content: str
    email_message_id: str | None = None
    in_reply_to: str | None = None
    intent: str | None = None
    token_count: int = 0
    created_at: datetime = Field(default_factory=_utc_now)


class ToolExecutionRecord(BaseModel):
    """One tool call made by the agent loop, with untruncated output."""

    execution_id: str = Field(default_factory=_new_id)
    conversation_id: str | None = None
    task_id: str | None = None
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_output: str
    is_error: bool = False
    duration_ms: int = 0
    created_at: datetime = Field(default_factory=_utc_now)
