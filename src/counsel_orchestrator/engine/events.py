"""Task events, the sequence-numbered event log and per-subscriber streams."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field


class QueuedEvent(BaseModel):
    type: Literal["queued"] = "queued"
    task_id: str


class StartedEvent(BaseModel):
    type: Literal["started"] = "started"
    task_id: str


class ToolStartEvent(BaseModel):
    type: Literal["tool_start"] = "tool_start"
    task_id: str
    tool_name: str
    tool_input: str


class ToolCompleteEvent(BaseModel):
    type: Literal["tool_complete"] = "tool_complete"
    task_id: str
    tool_name: str
    output_summary: str
    duration_ms: int


class CompletedEvent(BaseModel):
    type: Literal["completed"] = "completed"
    task_id: str
    response_text: str


class FailedEvent(BaseModel):
    type: Literal["failed"] = "failed"
    task_id: str
    error: str


class CancelledEvent(BaseModel):
    type: Literal["cancelled"] = "cancelled"
    task_id: str


TaskEvent = Annotated[
    QueuedEvent
    | StartedEvent
    | ToolStartEvent
    | ToolCompleteEvent
    | CompletedEvent
    | FailedEvent
    | CancelledEvent,
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})


def is_terminal_event(event: TaskEvent) -> bool:
    return event.type in TERMINAL_EVENT_TYPES


class TaskEventRecord(BaseModel):
    sequence: int
    timestamp: datetime
    event: TaskEvent


class EventLog:
    """Capped, sequence-numbered log of one task's events; oldest records are evicted first."""

    def __init__(self, cap: int = 200) -> None:
        self._records: deque[TaskEventRecord] = deque(maxlen=max(1, cap))
        self._next_sequence = 1

    def append(self, event: TaskEvent) -> TaskEventRecord:
        record = TaskEventRecord(
            sequence=self._next_sequence,
            timestamp=datetime.now(tz=UTC),
            event=event,
        )
        self._next_sequence += 1
        self._records.append(record)
        return record

    def after(self, sequence: int) -> list[TaskEventRecord]:
        return [record for record in self._records if record.sequence > sequence]

    @property
    def last_sequence(self) -> int:
        return self._next_sequence - 1

    def __len__(self) -> int:
        return len(self._records)


class EventSubscription:
    """One subscriber's channel: an async iterator that ends on a terminal event or close()."""

    def __init__(
        self,
        task_id: str,
        *,
        on_close: Callable[[EventSubscription], None] | None = None,
    ) -> None:
        self.task_id = task_id
        self._queue: asyncio.Queue[TaskEvent | None] = asyncio.Queue()
        self._on_close = on_close
        self._finished = False
        self._closed = False

    @classmethod
    def finished(cls, task_id: str) -> EventSubscription:
        subscription = cls(task_id)
        subscription.finish()
        return subscription

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: TaskEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def finish(self) -> None:
        """End the stream after any queued events have been consumed."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    def close(self) -> None:
        """Unsubscribe; other subscribers of the same task are unaffected."""
        on_close, self._on_close = self._on_close, None
        self.finish()
        if on_close is not None:
            on_close(self)

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> TaskEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            self._finished = True
            raise StopAsyncIteration
        return event
