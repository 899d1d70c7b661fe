from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from counsel_orchestrator.config.settings import EngineConfig
from counsel_orchestrator.engine.callbacks import CallbackDeliverer
from counsel_orchestrator.engine.orchestrator import TaskOrchestrator
from counsel_orchestrator.llm.base import (
    ChatMessage,
    CompletionResponse,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)
from counsel_orchestrator.storage.memory import InMemoryConversationStore
from counsel_orchestrator.tools.registry import ToolOutcome


def text_response(text: str, *, input_tokens: int = 10, output_tokens: int = 5) -> CompletionResponse:
    return CompletionResponse(
        text=text,
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
        finish_reason="stop",
    )


def tool_response(
    *calls: tuple[str, dict[str, Any]],
    text: str = "",
    input_tokens: int = 10,
    output_tokens: int = 5,
) -> CompletionResponse:
    return CompletionResponse(
        text=text,
        tool_calls=[
            ToolCall(id=f"call_{index}", name=name, input=payload)
            for index, (name, payload) in enumerate(calls, start=1)
        ],
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
        finish_reason="tool_calls",
    )


class ScriptedProvider:
    """Completion provider double that replays a fixed script of responses or errors."""

    def __init__(
        self,
        responses: list[CompletionResponse | Exception] | None = None,
        *,
        repeat_last: bool = False,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.responses = list(responses or [])
        self.repeat_last = repeat_last
        self.gate = gate
        self.calls: list[dict[str, Any]] = []
        self.started = asyncio.Event()

    async def complete(
        self,
        *,
        system_prompt: str,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        model_id: str | None,
        max_tokens: int,
    ) -> CompletionResponse:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "messages": list(messages),
                "tools": [tool.name for tool in tools],
                "model_id": model_id,
                "max_tokens": max_tokens,
            }
        )
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if not self.responses:
            return text_response("done")
        if self.repeat_last and len(self.responses) == 1:
            item = self.responses[0]
        else:
            item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeToolRegistry:
    def __init__(self, outputs: dict[str, str | ToolOutcome] | None = None) -> None:
        self.outputs = dict(outputs or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def all_tools(self) -> list[ToolDefinition]:
        return [
            ToolDefinition(name=name, description=f"{name} tool", input_schema={"type": "object"})
            for name in self.outputs
        ]

    async def execute(self, tool_name: str, tool_input: dict[str, Any]) -> ToolOutcome:
        self.calls.append((tool_name, tool_input))
        value = self.outputs.get(tool_name)
        if value is None:
            return ToolOutcome(text=f"Unknown tool: {tool_name}", is_error=True)
        if isinstance(value, ToolOutcome):
            return value
        return ToolOutcome(text=value)


class RecordingTransport:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    async def send(self, task_id: str, message: str) -> None:
        if self.fail:
            raise RuntimeError("transport down")
        self.sent.append((task_id, message))


class CallbackRecorder:
    """httpx mock handler that records every callback POST."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": True})

    def payloads(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def callback_recorder() -> CallbackRecorder:
    return CallbackRecorder()


@pytest.fixture
def make_orchestrator(
    store: InMemoryConversationStore,
    callback_recorder: CallbackRecorder,
) -> Callable[..., TaskOrchestrator]:
    def factory(
        provider: ScriptedProvider,
        tools: FakeToolRegistry | None = None,
        **overrides: Any,
    ) -> TaskOrchestrator:
        progress_transport = overrides.pop("progress_transport", None)
        config = EngineConfig(**{"max_turns": 5, "model_id": "test-model", **overrides})
        callbacks = CallbackDeliverer(
            client=httpx.AsyncClient(transport=httpx.MockTransport(callback_recorder)),
        )
        return TaskOrchestrator(
            store,
            provider,
            tools or FakeToolRegistry({"imbib_search_library": "[]"}),
            config=config,
            callbacks=callbacks,
            progress_transport=progress_transport,
        )

    return factory
