"""Bounded multi-round tool-calling loop against a completion provider."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from counsel_orchestrator.llm.base import (
    ChatMessage,
    CompletionProvider,
    ToolCall,
    ToolResult,
)
from counsel_orchestrator.storage.models import ToolExecutionRecord
from counsel_orchestrator.tools.registry import ToolDispatcher, ToolOutcome

logger = logging.getLogger(__name__)

FinishReason = Literal["completed", "max_rounds_reached", "error", "cancelled"]

COMPLETED_FALLBACK_TEXT = "Task completed."
MAX_ROUNDS_FALLBACK_TEXT = "I reached the maximum number of turns before finishing this request."
CANCELLED_TEXT = "Task was cancelled before it finished."


@dataclass(frozen=True)
class ToolStarted:
    round: int
    tool_name: str
    tool_input: str


@dataclass(frozen=True)
class ToolCompleted:
    round: int
    tool_name: str
    output_summary: str
    duration_ms: int
    is_error: bool = False


LoopProgress = ToolStarted | ToolCompleted
ProgressCallback = Callable[[LoopProgress], Awaitable[None]]


@dataclass
class LoopResult:
    response_text: str
    finish_reason: FinishReason
    rounds_used: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    tool_executions: list[ToolExecutionRecord] = field(default_factory=list)
    error: str | None = None

    @property
    def total_tokens_used(self) -> int:
        return self.total_input_tokens + self.total_output_tokens


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def summarize_input(tool_input: dict[str, Any], limit: int) -> str:
    """Render tool input as ``key: value`` pairs, each value and the whole line bounded by limit."""
    parts = [f"{key}: {truncate(str(value), limit)}" for key, value in tool_input.items()]
    return truncate(", ".join(parts), limit)


class AgentLoop:
    """Call the provider, run the tools it asks for, feed the results back, repeat.

    Provider failures end the run with ``finish_reason="error"``. Tool failures do
    not: the error-flagged result goes back to the model as a regular tool result.
    Tool calls inside a round run sequentially, in request order.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        tools: ToolDispatcher,
        *,
        max_tokens: int = 4096,
        input_summary_chars: int = 200,
        output_summary_chars: int = 200,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.provider = provider
        self.tools = tools
        self.max_tokens = max_tokens
        self.input_summary_chars = input_summary_chars
        self.output_summary_chars = output_summary_chars
        self._clock = clock

    async def run(
        self,
        *,
        system_prompt: str,
        messages: list[ChatMessage],
        max_turns: int,
        model_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> LoopResult:
        history = list(messages)
        definitions = self.tools.all_tools()
        executions: list[ToolExecutionRecord] = []
        input_tokens = 0
        output_tokens = 0
        rounds_used = 0

        def result(text: str, reason: FinishReason, error: str | None = None) -> LoopResult:
            return LoopResult(
                response_text=text,
                finish_reason=reason,
                rounds_used=rounds_used,
                total_input_tokens=input_tokens,
                total_output_tokens=output_tokens,
                tool_executions=executions,
                error=error,
            )

        for round_number in range(1, max_turns + 1):
            if should_continue is not None and not should_continue():
                logger.info("agent_loop event=stopped round=%d", round_number)
                return result(CANCELLED_TEXT, "cancelled")

            rounds_used = round_number
            try:
                response = await self.provider.complete(
                    system_prompt=system_prompt,
                    messages=history,
                    tools=definitions,
                    model_id=model_id,
                    max_tokens=self.max_tokens,
                )
            except Exception as exc:  # noqa: BLE001
                logger.error("agent_loop event=provider_failed round=%d reason=%s", round_number, exc)
                text = f"I encountered an error while processing your request: {exc}"
                return result(text, "error", error=str(exc) or exc.__class__.__name__)

            input_tokens += response.usage.input_tokens
            output_tokens += response.usage.output_tokens

            if not response.requests_tools:
                logger.info(
                    "agent_loop event=completed rounds=%d tools=%d",
                    round_number,
                    len(executions),
                )
                return result(response.text.strip() or COMPLETED_FALLBACK_TEXT, "completed")

            history.append(ChatMessage.assistant(response.text, response.tool_calls))
            batch: list[ToolResult] = []
            for call in response.tool_calls:
                record = await self._run_tool(call, round_number, on_progress)
                executions.append(record)
                batch.append(
                    ToolResult(
                        tool_call_id=call.id,
                        content=record.tool_output,
                        is_error=record.is_error,
                    )
                )
            history.append(ChatMessage.tool_batch(batch))

        logger.warning("agent_loop event=max_rounds_reached rounds=%d", rounds_used)
        return result(_last_assistant_text(history) or MAX_ROUNDS_FALLBACK_TEXT, "max_rounds_reached")

    async def _run_tool(
        self,
        call: ToolCall,
        round_number: int,
        on_progress: ProgressCallback | None,
    ) -> ToolExecutionRecord:
        await _notify(
            on_progress,
            ToolStarted(
                round=round_number,
                tool_name=call.name,
                tool_input=summarize_input(call.input, self.input_summary_chars),
            ),
        )
        started = self._clock()
        try:
            outcome = await self.tools.execute(call.name, call.input)
        except Exception as exc:  # noqa: BLE001
            outcome = ToolOutcome(text=f"Error: {exc}", is_error=True)
        duration_ms = max(0, int((self._clock() - started) * 1000))

        record = ToolExecutionRecord(
            tool_name=call.name,
            tool_input=dict(call.input),
            tool_output=outcome.text,
            is_error=outcome.is_error,
            duration_ms=duration_ms,
        )
        await _notify(
            on_progress,
            ToolCompleted(
                round=round_number,
                tool_name=call.name,
                output_summary=truncate(outcome.text, self.output_summary_chars),
                duration_ms=duration_ms,
                is_error=outcome.is_error,
            ),
        )
        return record


async def _notify(callback: ProgressCallback | None, progress: LoopProgress) -> None:
    if callback is None:
        return
    try:
        await callback(progress)
    except Exception:  # noqa: BLE001
        logger.exception("agent_loop event=progress_callback_failed tool=%s", progress.tool_name)


def _last_assistant_text(history: list[ChatMessage]) -> str:
    for message in reversed(history):
        if message.role == "assistant" and message.text.strip():
            return message.text.strip()
    return ""
