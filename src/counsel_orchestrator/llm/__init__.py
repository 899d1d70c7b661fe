"""Completion provider interface and adapters."""

from counsel_orchestrator.llm.base import (
    ChatMessage,
    CompletionProvider,
    CompletionProviderError,
    CompletionResponse,
    TokenUsage,
    ToolCall,
    ToolDefinition,
    ToolResult,
)
from counsel_orchestrator.llm.openai import OpenAIChatCompletionsProvider, build_provider

__all__ = [
    "ChatMessage",
    "CompletionProvider",
    "CompletionProviderError",
    "CompletionResponse",
    "OpenAIChatCompletionsProvider",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
    "ToolResult",
    "build_provider",
]
