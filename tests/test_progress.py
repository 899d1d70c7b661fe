from __future__ import annotations

import json

import httpx
import pytest
from conftest import RecordingTransport

from counsel_orchestrator.engine.progress import (
    ProgressReporter,
    WebhookProgressTransport,
    format_progress,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_send_progress_is_rate_limited() -> None:
    clock = FakeClock()
    transport = RecordingTransport()
    reporter = ProgressReporter("task-1", transport, interval_s=30.0, clock=clock)

    assert await reporter.send_progress(1, ["imbib_search_library"], 5) is True
    clock.now += 10
    assert await reporter.send_progress(2, ["imbib_search_library"], 6) is False
    clock.now += 25
    assert await reporter.send_progress(3, ["imbib_get_paper"], 7) is True

    assert [task_id for task_id, _ in transport.sent] == ["task-1", "task-1"]
    assert "round 3" in transport.sent[1][1]


@pytest.mark.asyncio
async def test_failed_send_does_not_start_the_interval() -> None:
    clock = FakeClock()
    transport = RecordingTransport(fail=True)
    reporter = ProgressReporter("task-1", transport, interval_s=30.0, clock=clock)

    assert await reporter.send_progress(1, [], 5) is False
    transport.fail = False
    assert await reporter.send_progress(1, [], 5) is True
    assert len(transport.sent) == 1


def test_format_progress_lists_distinct_tools() -> None:
    message = format_progress(2, ["b_tool", "a_tool", "b_tool"], 3)
    assert "round 2" in message
    assert "3 tool calls" in message
    assert message.endswith("Tools used: a_tool, b_tool.")
    assert "none yet" in format_progress(1, [], 0)


@pytest.mark.asyncio
async def test_webhook_transport_posts_json() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    transport = WebhookProgressTransport(
        "http://hooks.test/progress",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    await transport.send("task-9", "still working")
    await transport.aclose()

    assert json.loads(seen[0].content) == {"task_id": "task-9", "message": "still working"}


@pytest.mark.asyncio
async def test_webhook_transport_raises_on_error_status() -> None:
    transport = WebhookProgressTransport(
        "http://hooks.test/progress",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda _: httpx.Response(503))),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await transport.send("task-9", "still working")
