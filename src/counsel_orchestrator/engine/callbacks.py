"""Best-effort, single-attempt delivery of task results to caller callbacks."""

from __future__ import annotations

import logging

import httpx

from counsel_orchestrator.storage.models import TaskResult

logger = logging.getLogger(__name__)


class CallbackDeliverer:
    """POST the encoded result once. Failures are logged; there is no retry."""

    def __init__(self, *, timeout_s: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self.timeout_s = timeout_s
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def deliver(self, url: str, result: TaskResult) -> bool:
        try:
            response = await self._client.post(
                url,
                json=result.model_dump(mode="json"),
                timeout=self.timeout_s,
            )
        except httpx.InvalidURL:
            logger.error("callback event=invalid_url task_id=%s url=%s", result.task_id, url)
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "callback event=failed task_id=%s url=%s reason=%s",
                result.task_id,
                url,
                exc,
            )
            return False

        logger.info(
            "callback event=delivered task_id=%s url=%s status=%d",
            result.task_id,
            url,
            response.status_code,
        )
        return response.is_success
