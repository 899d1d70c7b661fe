"""Provider-neutral message types and the completion provider interface."""

from __future__ import annotations

from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

ChatRole = Literal["user", "assistant", "tool"]


class ToolDefinition(BaseModel):
    """Tool advertised to the model: name, description and JSON schema for its input."""

    name: str
    description: str
    input_schema: dict[str, Any] = Field(default_factory=dict)


class ToolCall(BaseModel):
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    tool_call_id: str
    content: str
    is_error: bool = False


class ChatMessage(BaseModel):
    """One turn of the running conversation.

    Assistant turns may carry tool calls; a ``tool`` turn carries the batch of
    results for every call of the preceding assistant turn.
    """

    role: ChatRole
    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> ChatMessage:
        return cls(role="user", text=text)

    @classmethod
    def assistant(cls, text: str, tool_calls: list[ToolCall] | None = None) -> ChatMessage:
        return cls(role="assistant", text=text, tool_calls=list(tool_calls or []))

    @classmethod
    def tool_batch(cls, results: list[ToolResult]) -> ChatMessage:
        return cls(role="tool", tool_results=list(results))


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class CompletionResponse(BaseModel):
    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: str | None = None

    @property
    def requests_tools(self) -> bool:
        return bool(self.tool_calls)


class CompletionProviderError(RuntimeError):
    """Raised when the completion provider cannot produce a response."""


class CompletionProvider(Protocol):
    """Interface for tool-aware chat completions."""

    async def complete(
        self,
        *,
        system_prompt: str,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        model_id: str | None,
        max_tokens: int,
    ) -> CompletionResponse: ...
