"""Tool registry: name -> typed handler lookup used by the agent loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel, ValidationError

from counsel_orchestrator.llm.base import ToolDefinition
from counsel_orchestrator.tools.bridge import SiblingBridge
from counsel_orchestrator.tools.schemas import (
    AddPapersInput,
    CreateArtifactInput,
    ExportBibtexInput,
    GetDocumentInput,
    GetPaperInput,
    ListConversationsInput,
    NoInput,
    SearchArtifactsInput,
    SearchLibraryInput,
    SearchSourcesInput,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolSpec:
    description: str
    input_model: type[BaseModel]
    fn: Callable[[Any], Awaitable[str]]

    def definition(self, name: str) -> ToolDefinition:
        return ToolDefinition(
            name=name,
            description=self.description,
            input_schema=self.input_model.model_json_schema(),
        )


@dataclass(frozen=True)
class ToolOutcome:
    text: str
    is_error: bool = False


class ToolDispatcher(Protocol):
    def all_tools(self) -> list[ToolDefinition]: ...

    async def execute(self, tool_name: str, tool_input: dict[str, Any]) -> ToolOutcome: ...


class ToolRegistry:
    """Validate tool input, enforce a timeout and turn every failure into an error outcome."""

    def __init__(self, registry: dict[str, ToolSpec], *, tool_timeout_s: float = 30.0) -> None:
        self.registry = dict(registry)
        self.tool_timeout_s = tool_timeout_s

    def all_tools(self) -> list[ToolDefinition]:
        return [spec.definition(name) for name, spec in self.registry.items()]

    def names(self) -> list[str]:
        return sorted(self.registry)

    async def execute(self, tool_name: str, tool_input: dict[str, Any]) -> ToolOutcome:
        spec = self.registry.get(tool_name)
        if spec is None:
            return ToolOutcome(text=f"Unknown tool: {tool_name}", is_error=True)

        try:
            payload = spec.input_model.model_validate(tool_input)
        except ValidationError as exc:
            logger.warning("tool event=invalid_input tool=%s errors=%d", tool_name, exc.error_count())
            return ToolOutcome(text=f"Error: invalid input for {tool_name}: {exc}", is_error=True)

        try:
            text = await asyncio.wait_for(spec.fn(payload), timeout=self.tool_timeout_s)
        except TimeoutError:
            logger.error("tool event=timeout tool=%s timeout_s=%.2f", tool_name, self.tool_timeout_s)
            return ToolOutcome(
                text=f"Error: tool '{tool_name}' timed out after {self.tool_timeout_s:.2f}s",
                is_error=True,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("tool event=failed tool=%s reason=%s", tool_name, exc)
            return ToolOutcome(text=f"Error: {exc}", is_error=True)

        logger.info("tool event=ok tool=%s", tool_name)
        return ToolOutcome(text=text)


class SiblingTools:
    """Handlers that dispatch tool calls to sibling apps over HTTP."""

    def __init__(self, bridge: SiblingBridge) -> None:
        self.bridge = bridge

    async def search_library(self, payload: SearchLibraryInput) -> str:
        return await self.bridge.get(
            "/api/search",
            app="imbib",
            params={"query": payload.query, "limit": str(payload.limit)},
        )

    async def search_sources(self, payload: SearchSourcesInput) -> str:
        return await self.bridge.get(
            "/api/search/sources",
            app="imbib",
            params={
                "query": payload.query,
                "sources": payload.sources,
                "limit": str(payload.limit),
            },
        )

    async def add_papers(self, payload: AddPapersInput) -> str:
        body: dict[str, Any] = {"identifiers": payload.identifiers}
        if payload.library:
            body["library"] = payload.library
        return await self.bridge.post("/api/papers/add", app="imbib", body=body)

    async def get_paper(self, payload: GetPaperInput) -> str:
        return await self.bridge.get(f"/api/publications/{payload.citeKey}", app="imbib")

    async def export_bibtex(self, payload: ExportBibtexInput) -> str:
        return await self.bridge.get(
            "/api/export/bibtex",
            app="imbib",
            params={"keys": ",".join(payload.citeKeys)},
        )

    async def create_artifact(self, payload: CreateArtifactInput) -> str:
        body = payload.model_dump(exclude_none=True)
        return await self.bridge.post("/api/artifacts", app="imbib", body=body)

    async def search_artifacts(self, payload: SearchArtifactsInput) -> str:
        params = {"query": payload.query, "limit": str(payload.limit)}
        if payload.type:
            params["type"] = payload.type
        return await self.bridge.get("/api/artifacts", app="imbib", params=params)

    async def list_documents(self, _: NoInput) -> str:
        return await self.bridge.get("/api/documents", app="imprint")

    async def get_document(self, payload: GetDocumentInput) -> str:
        return await self.bridge.get(f"/api/documents/{payload.id}", app="imprint")

    async def list_figures(self, _: NoInput) -> str:
        return await self.bridge.get("/api/figures", app="implore")

    async def list_conversations(self, payload: ListConversationsInput) -> str:
        return await self.bridge.get(
            "/api/research/conversations",
            app="impart",
            params={"limit": str(payload.limit)},
        )


def build_registry(bridge: SiblingBridge) -> dict[str, ToolSpec]:
    tools = SiblingTools(bridge)
    return {
        "imbib_search_library": ToolSpec(
            description="Search the imbib bibliography library for papers matching a query.",
            input_model=SearchLibraryInput,
            fn=tools.search_library,
        ),
        "imbib_search_sources": ToolSpec(
            description="Search online sources (arXiv, ADS, Crossref, etc.) for papers.",
            input_model=SearchSourcesInput,
            fn=tools.search_sources,
        ),
        "imbib_add_papers": ToolSpec(
            description="Add papers to the imbib library by identifier (DOI, arXiv ID, or BibTeX).",
            input_model=AddPapersInput,
            fn=tools.add_papers,
        ),
        "imbib_get_paper": ToolSpec(
            description="Get detailed information about a paper by cite key.",
            input_model=GetPaperInput,
            fn=tools.get_paper,
        ),
        "imbib_export_bibtex": ToolSpec(
            description="Export BibTeX for specified papers.",
            input_model=ExportBibtexInput,
            fn=tools.export_bibtex,
        ),
        "imbib_create_artifact": ToolSpec(
            description=(
                "Create a research artifact in imbib. Artifacts capture non-paper items like "
                "notes, webpages, datasets, presentations, and code."
            ),
            input_model=CreateArtifactInput,
            fn=tools.create_artifact,
        ),
        "imbib_search_artifacts": ToolSpec(
            description="Search research artifacts in imbib by title, notes, or metadata.",
            input_model=SearchArtifactsInput,
            fn=tools.search_artifacts,
        ),
        "imprint_list_documents": ToolSpec(
            description="List open documents in imprint.",
            input_model=NoInput,
            fn=tools.list_documents,
        ),
        "imprint_get_document": ToolSpec(
            description="Get the content of a document by ID.",
            input_model=GetDocumentInput,
            fn=tools.get_document,
        ),
        "implore_list_figures": ToolSpec(
            description="List figures in implore.",
            input_model=NoInput,
            fn=tools.list_figures,
        ),
        "impart_list_conversations": ToolSpec(
            description="List research conversations in impart.",
            input_model=ListConversationsInput,
            fn=tools.list_conversations,
        ),
    }
