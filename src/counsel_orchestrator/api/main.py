"""FastAPI app entrypoint for counsel-orchestrator."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from counsel_orchestrator.config.settings import Settings, get_settings
from counsel_orchestrator.engine.errors import TaskNotFoundError, TaskTimeoutError
from counsel_orchestrator.engine.events import EventSubscription, TaskEventRecord
from counsel_orchestrator.engine.orchestrator import TaskOrchestrator
from counsel_orchestrator.engine.progress import WebhookProgressTransport
from counsel_orchestrator.llm.openai import build_provider
from counsel_orchestrator.storage.models import Task, TaskRequest, TaskResult, TaskStatus
from counsel_orchestrator.storage.postgres import PostgresConversationStore
from counsel_orchestrator.tools.bridge import SiblingBridge
from counsel_orchestrator.tools.registry import ToolRegistry, build_registry

logger = logging.getLogger(__name__)


class SubmitTaskResponse(BaseModel):
    task_id: str


class CancelTaskResponse(BaseModel):
    task_id: str
    cancelled: bool


class _Runtime:
    """Collaborators built from settings, closed together on shutdown."""

    def __init__(self, settings: Settings) -> None:
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set COUNSEL_DATABASE_URL "
                "or ORCHESTRATOR_DATABASE_URL before starting the app."
            )
        provider = build_provider(settings)
        if provider is None:
            raise RuntimeError("Missing LLM credentials. Set COUNSEL_OPENAI_API_KEY or OPENAI_API_KEY.")

        store = PostgresConversationStore(database_url)
        store.migrate()
        self.provider = provider
        self.bridge = SiblingBridge(
            base_urls=settings.sibling_base_urls(),
            timeout_s=settings.tool_timeout_s,
        )
        self.progress_transport = (
            WebhookProgressTransport(
                settings.progress_webhook_url,
                timeout_s=settings.callback_timeout_s,
            )
            if settings.progress_webhook_url
            else None
        )
        self.orchestrator = TaskOrchestrator(
            store,
            provider,
            ToolRegistry(build_registry(self.bridge), tool_timeout_s=settings.tool_timeout_s),
            config=settings.engine_config(),
            progress_transport=self.progress_transport,
        )

    async def aclose(self) -> None:
        await self.orchestrator.aclose()
        await self.provider.aclose()
        await self.bridge.aclose()
        if self.progress_transport is not None:
            await self.progress_transport.aclose()


def create_app(
    *,
    orchestrator: TaskOrchestrator | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        runtime = _Runtime(settings)
        app.state.orchestrator = runtime.orchestrator
        logger.info("app event=started env=%s model=%s", settings.app_env, settings.model_id)
        try:
            yield
        finally:
            await runtime.aclose()
            logger.info("app event=stopped")

    app_lifespan = lifespan if orchestrator is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    def _get_orchestrator(request: Request) -> TaskOrchestrator:
        return request.app.state.orchestrator

    async def _require_task(request: Request, task_id: str) -> Task:
        task = await _get_orchestrator(request).get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/tools")
    def tools(request: Request) -> dict[str, list[str]]:
        definitions = _get_orchestrator(request).tools.all_tools()
        return {"tools": sorted(definition.name for definition in definitions)}

    @app.post("/tasks", response_model=SubmitTaskResponse)
    async def submit_task(payload: TaskRequest, request: Request) -> SubmitTaskResponse:
        task_id = await _get_orchestrator(request).submit(payload)
        return SubmitTaskResponse(task_id=task_id)

    @app.post("/tasks/wait", response_model=TaskResult)
    async def submit_and_wait(
        payload: TaskRequest,
        request: Request,
        timeout_s: float | None = Query(default=None, gt=0),
    ) -> TaskResult:
        try:
            return await _get_orchestrator(request).submit_and_wait(payload, timeout_s=timeout_s)
        except TaskTimeoutError as exc:
            raise HTTPException(status_code=504, detail=str(exc)) from exc
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/tasks", response_model=list[Task])
    async def list_tasks(
        request: Request,
        status: TaskStatus | None = None,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> list[Task]:
        return await _get_orchestrator(request).list_tasks(status=status, limit=limit)

    @app.get("/tasks/{task_id}", response_model=Task)
    async def get_task(task_id: str, request: Request) -> Task:
        return await _require_task(request, task_id)

    @app.get("/tasks/{task_id}/result", response_model=TaskResult)
    async def get_result(task_id: str, request: Request) -> TaskResult:
        result = await _get_orchestrator(request).get_result(task_id)
        if result is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return result

    @app.post("/tasks/{task_id}/cancel", response_model=CancelTaskResponse)
    async def cancel_task(task_id: str, request: Request) -> CancelTaskResponse:
        await _require_task(request, task_id)
        cancelled = await _get_orchestrator(request).cancel(task_id)
        return CancelTaskResponse(task_id=task_id, cancelled=cancelled)

    @app.get("/tasks/{task_id}/events", response_model=list[TaskEventRecord])
    async def get_events(
        task_id: str,
        request: Request,
        after: int = Query(default=0, ge=0),
    ) -> list[TaskEventRecord]:
        await _require_task(request, task_id)
        return _get_orchestrator(request).get_events(task_id, after)

    @app.get("/tasks/{task_id}/stream")
    async def stream_events(task_id: str, request: Request) -> StreamingResponse:
        task = await _require_task(request, task_id)
        if task.is_terminal:
            subscription = EventSubscription.finished(task_id)
        else:
            subscription = _get_orchestrator(request).events(task_id)

        async def event_source() -> AsyncIterator[str]:
            try:
                async for event in subscription:
                    yield f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"
            finally:
                subscription.close()

        return StreamingResponse(event_source(), media_type="text/event-stream")

    return app


# Module-level app for `uvicorn counsel_orchestrator.api.main:app`.
app = create_app()
