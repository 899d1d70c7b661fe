"""Rate-limited "still working" notifications for long-running tasks."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


class ProgressTransport(Protocol):
    async def send(self, task_id: str, message: str) -> None: ...


class WebhookProgressTransport:
    """POST progress messages as JSON to a fixed webhook URL."""

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(self, task_id: str, message: str) -> None:
        response = await self._client.post(
            self.url,
            json={"task_id": task_id, "message": message},
            timeout=self.timeout_s,
        )
        response.raise_for_status()


def format_progress(round_number: int, tools_used: list[str], total_tools: int) -> str:
    distinct = sorted(set(tools_used))
    tools_line = ", ".join(distinct) if distinct else "none yet"
    return (
        f"Still working on your request (round {round_number}, "
        f"{total_tools} tool calls so far). Tools used: {tools_line}."
    )


class ProgressReporter:
    def __init__(
        self,
        task_id: str,
        transport: ProgressTransport,
        *,
        interval_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.task_id = task_id
        self.transport = transport
        self.interval_s = interval_s
        self._clock = clock
        self._last_sent: float | None = None

    async def send_progress(self, round_number: int, tools_used: list[str], total_tools: int) -> bool:
        """Send one notification unless the previous successful send is too recent.

        Returns whether a notification went out. Transport failures are logged and
        do not advance the rate-limit window.
        """
        now = self._clock()
        if self._last_sent is not None and now - self._last_sent < self.interval_s:
            return False

        message = format_progress(round_number, tools_used, total_tools)
        try:
            await self.transport.send(self.task_id, message)
        except Exception as exc:  # noqa: BLE001
            logger.warning("progress event=send_failed task_id=%s reason=%s", self.task_id, exc)
            return False

        self._last_sent = now
        logger.info(
            "progress event=sent task_id=%s round=%d total_tools=%d",
            self.task_id,
            round_number,
            total_tools,
        )
        return True
