from __future__ import annotations

from datetime import UTC, datetime

import httpx
import pytest
from conftest import CallbackRecorder

from counsel_orchestrator.engine.callbacks import CallbackDeliverer
from counsel_orchestrator.storage.models import TaskResult


def _result() -> TaskResult:
    return TaskResult(
        task_id="task-1",
        status="completed",
        response_text="done",
        total_input_tokens=3,
        total_output_tokens=4,
        created_at=datetime(2026, 1, 2, tzinfo=UTC),
    )


@pytest.mark.asyncio
async def test_deliver_posts_encoded_result_once() -> None:
    recorder = CallbackRecorder()
    deliverer = CallbackDeliverer(client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)))

    assert await deliverer.deliver("http://callback.test/done", _result()) is True

    assert len(recorder.requests) == 1
    assert recorder.requests[0].method == "POST"
    payload = recorder.payloads()[0]
    assert payload["task_id"] == "task-1"
    assert payload["total_tokens_used"] == 7
    assert payload["created_at"].startswith("2026-01-02T00:00:00")


@pytest.mark.asyncio
async def test_error_status_is_reported_without_retry() -> None:
    recorder = CallbackRecorder(status_code=502)
    deliverer = CallbackDeliverer(client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)))

    assert await deliverer.deliver("http://callback.test/done", _result()) is False
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_transport_error_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    calls: list[httpx.Request] = []

    def refuse(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    deliverer = CallbackDeliverer(client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)))

    with caplog.at_level("ERROR"):
        assert await deliverer.deliver("http://callback.test/done", _result()) is False

    assert len(calls) == 1
    assert "callback event=failed task_id=task-1" in caplog.text
