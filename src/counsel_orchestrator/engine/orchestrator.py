"""Task orchestrator: submission, background execution, cancellation and event fan-out.

Lifecycle of one task:
- ``submit`` persists a ``queued`` record, adds it to the in-flight set and
  schedules ``_execute`` without awaiting it.
- ``_execute`` marks it ``running``, resolves the conversation, runs the agent
  loop and reconciles the outcome into a single terminal update.
- ``cancel`` may land at any point before reconciliation; reconciliation re-reads
  the persisted status and discards the loop outcome when cancellation won.

All status transitions happen under one ``asyncio.Lock`` so the check-then-write
in ``cancel`` and in reconciliation can never interleave. Event bookkeeping is
plain synchronous code on the event loop and needs no lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from counsel_orchestrator.config.settings import EngineConfig
from counsel_orchestrator.engine.agent_loop import (
    AgentLoop,
    LoopProgress,
    LoopResult,
    ProgressCallback,
    ToolStarted,
    truncate,
)
from counsel_orchestrator.engine.callbacks import CallbackDeliverer
from counsel_orchestrator.engine.errors import TaskNotFoundError, TaskTimeoutError
from counsel_orchestrator.engine.events import (
    CancelledEvent,
    CompletedEvent,
    EventLog,
    EventSubscription,
    FailedEvent,
    QueuedEvent,
    StartedEvent,
    TaskEvent,
    TaskEventRecord,
    ToolCompleteEvent,
    ToolStartEvent,
    is_terminal_event,
)
from counsel_orchestrator.engine.progress import ProgressReporter, ProgressTransport
from counsel_orchestrator.engine.prompts import build_system_prompt
from counsel_orchestrator.llm.base import ChatMessage, CompletionProvider
from counsel_orchestrator.storage.base import ConversationStore
from counsel_orchestrator.storage.models import (
    TERMINAL_STATUSES,
    Conversation,
    ConversationMessage,
    Task,
    TaskRequest,
    TaskResult,
    TaskStatus,
    TaskToolExecution,
)
from counsel_orchestrator.tools.registry import ToolDispatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _TaskChannel:
    log: EventLog
    subscribers: list[EventSubscription] = field(default_factory=list)
    closed: bool = False


class TaskOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        provider: CompletionProvider,
        tools: ToolDispatcher,
        *,
        config: EngineConfig | None = None,
        callbacks: CallbackDeliverer | None = None,
        progress_transport: ProgressTransport | None = None,
    ) -> None:
        self.store = store
        self.tools = tools
        self.config = config or EngineConfig()
        self.loop = AgentLoop(
            provider,
            tools,
            max_tokens=self.config.max_tokens,
            input_summary_chars=self.config.tool_input_summary_chars,
            output_summary_chars=self.config.tool_output_summary_chars,
        )
        self._owns_callbacks = callbacks is None
        self.callbacks = callbacks or CallbackDeliverer(timeout_s=self.config.callback_timeout_s)
        self.progress_transport = progress_transport

        self._state_lock = asyncio.Lock()
        self._in_flight: set[str] = set()
        self._channels: OrderedDict[str, _TaskChannel] = OrderedDict()
        self._background: set[asyncio.Task[None]] = set()

    # Submission

    async def submit(self, request: TaskRequest) -> str:
        """Persist a queued task and start it in the background; returns the task id.

        A store failure here propagates to the caller. Anything after this point is
        reported only through task status and events.
        """
        task = Task.from_request(request)
        await self._store(self.store.create_task, task)
        self._in_flight.add(task.task_id)
        self._open_channel(task.task_id)
        logger.info(
            "task event=queued task_id=%s intent=%s source=%s query=%r",
            task.task_id,
            request.intent,
            request.source_app,
            request.query[:80],
        )
        self._emit(task.task_id, QueuedEvent(task_id=task.task_id))

        background = asyncio.create_task(self._execute(task.task_id, request))
        self._background.add(background)
        background.add_done_callback(self._background.discard)
        return task.task_id

    async def submit_and_wait(
        self,
        request: TaskRequest,
        *,
        timeout_s: float | None = None,
    ) -> TaskResult:
        task_id = await self.submit(request)
        return await self.await_result(task_id, timeout_s=timeout_s)

    # Queries

    async def get_task(self, task_id: str) -> Task | None:
        return await self._store(self.store.get_task, task_id)

    async def get_result(self, task_id: str) -> TaskResult | None:
        task = await self.get_task(task_id)
        if task is None:
            return None

        executions: list[TaskToolExecution] = []
        if task.conversation_id:
            records = await self._store(
                self.store.list_tool_executions,
                task.conversation_id,
                task_id=task.task_id,
            )
            executions = [
                TaskToolExecution(
                    tool_name=record.tool_name,
                    output_summary=truncate(record.tool_output, self.config.result_output_chars),
                    is_error=record.is_error,
                    duration_ms=record.duration_ms,
                )
                for record in records[: self.config.result_max_tool_executions]
            ]

        return TaskResult(
            task_id=task.task_id,
            status=task.status,
            response_text=task.response_text,
            tool_executions=executions,
            total_input_tokens=task.total_input_tokens,
            total_output_tokens=task.total_output_tokens,
            rounds_used=task.rounds_used,
            finish_reason=task.finish_reason,
            error_message=task.error_message,
            created_at=task.created_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )

    async def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        return await self._store(self.store.list_tasks, status=status, limit=limit)

    # Cancellation

    async def cancel(self, task_id: str) -> bool:
        async with self._state_lock:
            task = await self.get_task(task_id)
            if task is None or task.status not in ("queued", "running"):
                return False
            await self._store(
                self.store.update_task,
                task_id,
                status="cancelled",
                completed_at=_utc_now(),
            )
            self._in_flight.discard(task_id)
            self._emit(task_id, CancelledEvent(task_id=task_id))
        logger.info("task event=cancelled task_id=%s previous_status=%s", task_id, task.status)
        return True

    # Events

    def events(self, task_id: str) -> EventSubscription:
        """Subscribe to events emitted from now on. No replay of earlier events.

        Unknown, finished and evicted tasks get an already-finished subscription.
        """
        channel = self._channels.get(task_id)
        if channel is None or channel.closed:
            return EventSubscription.finished(task_id)
        subscription = EventSubscription(task_id, on_close=self._unsubscribe)
        channel.subscribers.append(subscription)
        return subscription

    def get_events(self, task_id: str, after_sequence: int = 0) -> list[TaskEventRecord]:
        channel = self._channels.get(task_id)
        if channel is None:
            return []
        return channel.log.after(after_sequence)

    async def await_result(self, task_id: str, *, timeout_s: float | None = None) -> TaskResult:
        """Wait for a terminal event or the deadline, then re-read the task record."""
        timeout = self.config.await_timeout_s if timeout_s is None else timeout_s
        task = await self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        if not task.is_terminal:
            # A task finishing before this point leaves a closed channel, so the
            # subscription below ends immediately instead of waiting.
            subscription = self.events(task_id)
            try:
                async with asyncio.timeout(timeout):
                    async for event in subscription:
                        if is_terminal_event(event):
                            break
            except TimeoutError:
                logger.warning("task event=await_deadline task_id=%s timeout_s=%.2f", task_id, timeout)
            finally:
                subscription.close()

        result = await self.get_result(task_id)
        if result is None:
            raise TaskNotFoundError(task_id)
        if result.status not in TERMINAL_STATUSES:
            raise TaskTimeoutError(task_id)
        return result

    # Lifecycle

    async def wait_idle(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        await self.wait_idle()
        if self._owns_callbacks:
            await self.callbacks.aclose()

    # Background execution

    async def _execute(self, task_id: str, request: TaskRequest) -> None:
        try:
            await self._run(task_id, request)
        except Exception as exc:  # noqa: BLE001
            logger.exception("task event=crashed task_id=%s", task_id)
            try:
                await self._fail_task(task_id, f"Task execution failed: {exc}")
            except Exception:  # noqa: BLE001
                logger.exception("task event=fail_write_failed task_id=%s", task_id)
                self._in_flight.discard(task_id)
                self._close_streams(task_id)

    async def _run(self, task_id: str, request: TaskRequest) -> None:
        async with self._state_lock:
            if task_id not in self._in_flight:
                logger.info("task event=skipped task_id=%s reason=cancelled_before_start", task_id)
                return
            task = await self._store(
                self.store.update_task,
                task_id,
                status="running",
                started_at=_utc_now(),
            )
            self._emit(task_id, StartedEvent(task_id=task_id))
        logger.info("task event=started task_id=%s", task_id)

        persist = self.config.persistence_enabled
        try:
            conversation = await self._resolve_conversation(task, request)
        except Exception as exc:  # noqa: BLE001
            await self._fail_task(task_id, f"Failed to resolve conversation: {exc}")
            return

        history = await self._prepare_history(task_id, request, conversation)
        system_prompt = build_system_prompt(self.config.system_prompt, conversation.summary)

        if task_id not in self._in_flight:
            logger.info("task event=skipped task_id=%s reason=cancelled_before_loop", task_id)
            return

        result = await self.loop.run(
            system_prompt=system_prompt,
            messages=history,
            max_turns=self.config.max_turns,
            model_id=self.config.model_id,
            on_progress=self._progress_handler(task_id),
            should_continue=lambda: task_id in self._in_flight,
        )

        if persist and task_id in self._in_flight:
            await self._persist_outcome(task_id, request, conversation, result)

        if not await self._reconcile(task_id, result):
            return
        await self._deliver_callback(task_id)
        logger.info(
            "task event=finished task_id=%s finish_reason=%s rounds=%d tokens=%d tools=%d",
            task_id,
            result.finish_reason,
            result.rounds_used,
            result.total_tokens_used,
            len(result.tool_executions),
        )

    async def _resolve_conversation(self, task: Task, request: TaskRequest) -> Conversation:
        if not self.config.persistence_enabled:
            return _new_conversation(request)

        conversation = None
        if request.conversation_id:
            conversation = await self._store(self.store.get_conversation, request.conversation_id)
        if conversation is None:
            conversation = await self._store(self.store.create_conversation, _new_conversation(request))
        await self._store(
            self.store.update_task,
            task.task_id,
            conversation_id=conversation.conversation_id,
        )
        return conversation

    async def _prepare_history(
        self,
        task_id: str,
        request: TaskRequest,
        conversation: Conversation,
    ) -> list[ChatMessage]:
        fallback = [ChatMessage.user(request.query)]
        if not self.config.persistence_enabled:
            return fallback

        if not request.skip_user_persistence:
            message = ConversationMessage(
                conversation_id=conversation.conversation_id,
                role="user",
                content=request.query,
                email_message_id=f"<task-{task_id}@impress.local>",
                intent=request.intent,
            )
            try:
                await self._store(self.store.add_message, message)
            except Exception as exc:  # noqa: BLE001
                logger.error("task event=user_message_failed task_id=%s reason=%s", task_id, exc)

        try:
            messages = await self._store(self.store.list_messages, conversation.conversation_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("task event=history_failed task_id=%s reason=%s", task_id, exc)
            return fallback
        history = [
            ChatMessage.user(item.content) if item.role == "user" else ChatMessage.assistant(item.content)
            for item in messages
        ]
        return history or fallback

    async def _persist_outcome(
        self,
        task_id: str,
        request: TaskRequest,
        conversation: Conversation,
        result: LoopResult,
    ) -> None:
        """Store the run's turn, tokens and tool records, stopping once the task is cancelled.

        In-flight membership is re-checked before each write; a write already
        handed to the store completes.
        """
        conversation_id = conversation.conversation_id
        if not request.skip_assistant_persistence:
            message = ConversationMessage(
                conversation_id=conversation_id,
                role="assistant",
                content=result.response_text,
            )
            try:
                await self._store(self.store.add_message, message)
            except Exception as exc:  # noqa: BLE001
                logger.error("task event=assistant_message_failed task_id=%s reason=%s", task_id, exc)

        if task_id not in self._in_flight:
            return
        try:
            current = await self._store(self.store.get_conversation, conversation_id)
            if current is not None and task_id in self._in_flight:
                await self._store(
                    self.store.update_conversation,
                    conversation_id,
                    total_tokens_used=current.total_tokens_used + result.total_tokens_used,
                )
            for record in result.tool_executions:
                if task_id not in self._in_flight:
                    logger.info("task event=persist_stopped task_id=%s reason=cancelled", task_id)
                    return
                await self._store(
                    self.store.add_tool_execution,
                    record.model_copy(update={"conversation_id": conversation_id, "task_id": task_id}),
                )
        except Exception as exc:  # noqa: BLE001
            logger.error("task event=conversation_update_failed task_id=%s reason=%s", task_id, exc)

    async def _reconcile(self, task_id: str, result: LoopResult) -> bool:
        """Write the loop outcome unless the task already reached a terminal status."""
        async with self._state_lock:
            current = await self.get_task(task_id)
            if current is None:
                logger.error("task event=missing_after_run task_id=%s", task_id)
                self._in_flight.discard(task_id)
                self._close_streams(task_id)
                return False
            if current.is_terminal:
                logger.info(
                    "task event=outcome_discarded task_id=%s status=%s finish_reason=%s",
                    task_id,
                    current.status,
                    result.finish_reason,
                )
                self._in_flight.discard(task_id)
                self._close_streams(task_id)
                return False

            failed = result.finish_reason == "error"
            await self._store(
                self.store.update_task,
                task_id,
                status="failed" if failed else "completed",
                response_text=result.response_text,
                tool_execution_count=len(result.tool_executions),
                rounds_used=result.rounds_used,
                total_input_tokens=result.total_input_tokens,
                total_output_tokens=result.total_output_tokens,
                finish_reason=result.finish_reason,
                error_message=result.error if failed else None,
                completed_at=_utc_now(),
            )
            self._in_flight.discard(task_id)
            event: TaskEvent
            if failed:
                event = FailedEvent(task_id=task_id, error=result.error or result.response_text)
            else:
                event = CompletedEvent(task_id=task_id, response_text=result.response_text)
            self._emit(task_id, event)
        return True

    async def _fail_task(self, task_id: str, error: str) -> None:
        async with self._state_lock:
            task = await self.get_task(task_id)
            if task is None or task.is_terminal:
                self._in_flight.discard(task_id)
                self._close_streams(task_id)
                return
            await self._store(
                self.store.update_task,
                task_id,
                status="failed",
                error_message=error,
                finish_reason="error",
                completed_at=_utc_now(),
            )
            self._in_flight.discard(task_id)
            self._emit(task_id, FailedEvent(task_id=task_id, error=error))
        logger.error("task event=failed task_id=%s reason=%s", task_id, error)
        await self._deliver_callback(task_id)

    async def _deliver_callback(self, task_id: str) -> None:
        task = await self.get_task(task_id)
        if task is None or not task.callback_url:
            return
        result = await self.get_result(task_id)
        if result is not None:
            await self.callbacks.deliver(task.callback_url, result)

    def _progress_handler(self, task_id: str) -> ProgressCallback:
        reporter = None
        if self.progress_transport is not None:
            reporter = ProgressReporter(
                task_id,
                self.progress_transport,
                interval_s=self.config.progress_interval_s,
            )
        tools_used: list[str] = []

        async def on_progress(progress: LoopProgress) -> None:
            if task_id not in self._in_flight:
                return
            if isinstance(progress, ToolStarted):
                self._emit(
                    task_id,
                    ToolStartEvent(
                        task_id=task_id,
                        tool_name=progress.tool_name,
                        tool_input=progress.tool_input,
                    ),
                )
                return

            tools_used.append(progress.tool_name)
            self._emit(
                task_id,
                ToolCompleteEvent(
                    task_id=task_id,
                    tool_name=progress.tool_name,
                    output_summary=progress.output_summary,
                    duration_ms=progress.duration_ms,
                ),
            )
            if reporter is not None and len(tools_used) >= self.config.progress_tool_threshold:
                await reporter.send_progress(progress.round, tools_used, len(tools_used))

        return on_progress

    # Event bookkeeping

    def _emit(self, task_id: str, event: TaskEvent) -> None:
        # Channels exist only from submit until eviction; a closed stream takes no more events.
        channel = self._channels.get(task_id)
        if channel is None or channel.closed:
            logger.debug("task event=event_dropped task_id=%s type=%s", task_id, event.type)
            return
        channel.log.append(event)
        for subscription in list(channel.subscribers):
            subscription.push(event)
        if is_terminal_event(event):
            self._close_streams(task_id)

    def _close_streams(self, task_id: str) -> None:
        channel = self._channels.get(task_id)
        if channel is None:
            return
        channel.closed = True
        subscribers, channel.subscribers = channel.subscribers, []
        for subscription in subscribers:
            subscription.finish()

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        channel = self._channels.get(subscription.task_id)
        if channel is not None and subscription in channel.subscribers:
            channel.subscribers.remove(subscription)

    def _open_channel(self, task_id: str) -> None:
        self._channels[task_id] = _TaskChannel(log=EventLog(cap=self.config.event_log_cap))
        self._evict_channels()

    def _evict_channels(self) -> None:
        # Only logs of finished tasks are evicted; live tasks keep theirs.
        excess = len(self._channels) - self.config.max_tracked_event_logs
        if excess <= 0:
            return
        for task_id in [key for key, channel in self._channels.items() if channel.closed][:excess]:
            del self._channels[task_id]

    @staticmethod
    async def _store(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)


def _new_conversation(request: TaskRequest) -> Conversation:
    return Conversation(
        subject=request.query[:100],
        participant_email=f"{request.source_app}@impress.local",
    )


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)
