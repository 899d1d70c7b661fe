from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

import httpx

from counsel_orchestrator.config.settings import Settings
from counsel_orchestrator.llm.base import (
    ChatMessage,
    CompletionProviderError,
    CompletionResponse,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)

logger = logging.getLogger(__name__)


class OpenAIChatCompletionsProvider:
    """Tool-calling completion provider backed by the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 60.0,
        max_retries: int = 1,
        backoff_s: float = 0.5,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def complete(
        self,
        *,
        system_prompt: str,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        model_id: str | None,
        max_tokens: int,
    ) -> CompletionResponse:
        model = model_id or self.model
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": _to_openai_messages(system_prompt, messages),
        }
        if tools:
            payload["tools"] = [_to_openai_tool(tool) for tool in tools]
        response_json = await self._request_with_retry(payload, model=model)
        return _parse_completion(response_json)

    async def _request_with_retry(self, payload: dict[str, Any], *, model: str) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return await self._request(payload)
            except (httpx.HTTPError, CompletionProviderError) as exc:
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    await asyncio.sleep(self.backoff_s)
        if last_error is None:
            raise CompletionProviderError("LLM request failed with unknown error")
        raise CompletionProviderError(str(last_error)) from last_error

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        if _trace_enabled():
            logger.warning(
                "LLM trace request provider=openai model=%s url=%s messages=%d",
                payload.get("model"),
                url,
                len(payload.get("messages", [])),
            )
        response = await self._client.post(
            url,
            json=payload,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout_s,
        )
        if response.status_code >= 400:
            raise CompletionProviderError(
                f"OpenAI API request failed with status {response.status_code}: "
                f"{response.text[:400]}"
            )
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise CompletionProviderError("OpenAI API returned non-JSON response") from exc


def build_provider(settings: Settings) -> OpenAIChatCompletionsProvider | None:
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None
    return OpenAIChatCompletionsProvider(
        api_key=api_key,
        model=settings.model_id,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )


def _to_openai_tool(tool: ToolDefinition) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema or {"type": "object", "properties": {}},
        },
    }


def _to_openai_messages(system_prompt: str, messages: list[ChatMessage]) -> list[dict[str, Any]]:
    output: list[dict[str, Any]] = []
    if system_prompt:
        output.append({"role": "system", "content": system_prompt})
    for message in messages:
        if message.role == "tool":
            # OpenAI expects one tool message per call rather than a batched turn.
            for result in message.tool_results:
                output.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.tool_call_id,
                        "content": result.content,
                    }
                )
            continue
        if message.role == "assistant" and message.tool_calls:
            output.append(
                {
                    "role": "assistant",
                    "content": message.text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.input),
                            },
                        }
                        for call in message.tool_calls
                    ],
                }
            )
            continue
        output.append({"role": message.role, "content": message.text})
    return output


def _parse_completion(response_json: dict[str, Any]) -> CompletionResponse:
    choices = response_json.get("choices", [])
    if not choices:
        raise CompletionProviderError("OpenAI response did not contain choices")

    choice = choices[0]
    message = choice.get("message", {})
    usage = response_json.get("usage") or {}
    return CompletionResponse(
        text=_extract_text(message.get("content")),
        tool_calls=[_parse_tool_call(raw) for raw in message.get("tool_calls") or []],
        usage=TokenUsage(
            input_tokens=int(usage.get("prompt_tokens", 0) or 0),
            output_tokens=int(usage.get("completion_tokens", 0) or 0),
        ),
        finish_reason=choice.get("finish_reason"),
    )


def _extract_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        text_segments: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    text_segments.append(text)
        return "".join(text_segments).strip()
    return ""


def _parse_tool_call(raw: dict[str, Any]) -> ToolCall:
    function = raw.get("function", {})
    arguments = function.get("arguments") or "{}"
    try:
        parsed = json.loads(arguments) if isinstance(arguments, str) else arguments
    except json.JSONDecodeError as exc:
        raise CompletionProviderError(
            f"Tool call arguments for {function.get('name')!r} were not valid JSON"
        ) from exc
    if not isinstance(parsed, dict):
        parsed = {"value": parsed}
    return ToolCall(id=str(raw.get("id", "")), name=str(function.get("name", "")), input=parsed)


def _trace_enabled() -> bool:
    return os.getenv("COUNSEL_LLM_TRACE", "0").strip() == "1"
