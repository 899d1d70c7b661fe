from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from counsel_orchestrator.tools.bridge import SiblingBridge, SiblingBridgeError
from counsel_orchestrator.tools.registry import ToolRegistry, ToolSpec, build_registry
from counsel_orchestrator.tools.schemas import NoInput

BASE_URLS = {
    "imbib": "http://127.0.0.1:23120",
    "imprint": "http://127.0.0.1:23121",
    "impart": "http://127.0.0.1:23122",
    "implore": "http://127.0.0.1:23124",
}


class SiblingRecorder:
    def __init__(self, status_code: int = 200, body: str = '{"ok": true}') -> None:
        self.status_code = status_code
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text=self.body)


def _registry(recorder: SiblingRecorder, *, tool_timeout_s: float = 5.0) -> ToolRegistry:
    bridge = SiblingBridge(
        base_urls=BASE_URLS,
        client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
    )
    return ToolRegistry(build_registry(bridge), tool_timeout_s=tool_timeout_s)


def test_registry_exposes_all_sibling_tools_with_schemas() -> None:
    registry = _registry(SiblingRecorder())

    assert registry.names() == [
        "imbib_add_papers",
        "imbib_create_artifact",
        "imbib_export_bibtex",
        "imbib_get_paper",
        "imbib_search_artifacts",
        "imbib_search_library",
        "imbib_search_sources",
        "impart_list_conversations",
        "implore_list_figures",
        "imprint_get_document",
        "imprint_list_documents",
    ]
    definitions = {definition.name: definition for definition in registry.all_tools()}
    schema = definitions["imbib_search_library"].input_schema
    assert schema["required"] == ["query"]
    assert set(schema["properties"]) == {"query", "limit"}
    assert definitions["imbib_create_artifact"].input_schema["required"] == ["type", "title"]


@pytest.mark.asyncio
async def test_search_library_dispatches_get_with_defaults() -> None:
    recorder = SiblingRecorder(body='[{"citeKey": "Smith2020"}]')
    registry = _registry(recorder)

    outcome = await registry.execute("imbib_search_library", {"query": "dark matter"})

    assert outcome.is_error is False
    assert outcome.text == '[{"citeKey": "Smith2020"}]'
    request = recorder.requests[0]
    assert request.method == "GET"
    assert request.url.host == "127.0.0.1"
    assert request.url.port == 23120
    assert request.url.path == "/api/search"
    assert dict(request.url.params) == {"query": "dark matter", "limit": "20"}


@pytest.mark.asyncio
async def test_add_papers_posts_json_body() -> None:
    recorder = SiblingRecorder()
    registry = _registry(recorder)

    await registry.execute("imbib_add_papers", {"identifiers": ["10.1000/xyz", "2401.00001"]})

    request = recorder.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/api/papers/add"
    assert json.loads(request.content) == {"identifiers": ["10.1000/xyz", "2401.00001"]}


@pytest.mark.asyncio
async def test_export_bibtex_joins_keys_and_routes_other_apps() -> None:
    recorder = SiblingRecorder()
    registry = _registry(recorder)

    await registry.execute("imbib_export_bibtex", {"citeKeys": ["A2020", "B2021"]})
    await registry.execute("imprint_get_document", {"id": "doc-1"})
    await registry.execute("implore_list_figures", {})
    await registry.execute("impart_list_conversations", {"limit": 5})

    assert recorder.requests[0].url.params["keys"] == "A2020,B2021"
    assert (recorder.requests[1].url.port, recorder.requests[1].url.path) == (
        23121,
        "/api/documents/doc-1",
    )
    assert (recorder.requests[2].url.port, recorder.requests[2].url.path) == (23124, "/api/figures")
    assert recorder.requests[3].url.path == "/api/research/conversations"
    assert recorder.requests[3].url.params["limit"] == "5"


@pytest.mark.asyncio
async def test_create_artifact_omits_unset_optional_fields() -> None:
    recorder = SiblingRecorder()
    registry = _registry(recorder)

    await registry.execute("imbib_create_artifact", {"type": "note", "title": "Idea", "tags": ["halo"]})

    assert json.loads(recorder.requests[0].content) == {
        "type": "note",
        "title": "Idea",
        "tags": ["halo"],
    }


@pytest.mark.asyncio
async def test_unknown_tool_and_invalid_input_are_error_outcomes() -> None:
    recorder = SiblingRecorder()
    registry = _registry(recorder)

    unknown = await registry.execute("imbib_delete_everything", {})
    invalid = await registry.execute("imbib_get_paper", {"citeKey": "", "extra": 1})

    assert unknown.is_error and unknown.text == "Unknown tool: imbib_delete_everything"
    assert invalid.is_error and "invalid input for imbib_get_paper" in invalid.text
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_sibling_http_error_becomes_error_outcome() -> None:
    registry = _registry(SiblingRecorder(status_code=503, body="maintenance"))

    outcome = await registry.execute("imprint_list_documents", {})

    assert outcome.is_error
    assert "failed with status 503" in outcome.text
    assert "maintenance" in outcome.text


@pytest.mark.asyncio
async def test_unreachable_sibling_becomes_error_outcome() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    bridge = SiblingBridge(
        base_urls=BASE_URLS,
        client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)),
    )
    outcome = await ToolRegistry(build_registry(bridge)).execute("implore_list_figures", {})

    assert outcome.is_error
    assert "implore is not reachable" in outcome.text


@pytest.mark.asyncio
async def test_slow_tool_times_out() -> None:
    async def slow(_: NoInput) -> str:
        await asyncio.sleep(1)
        return "late"

    registry = ToolRegistry(
        {"slow_tool": ToolSpec(description="slow", input_model=NoInput, fn=slow)},
        tool_timeout_s=0.01,
    )

    outcome = await registry.execute("slow_tool", {})

    assert outcome.is_error
    assert "timed out" in outcome.text


@pytest.mark.asyncio
async def test_bridge_rejects_unconfigured_app() -> None:
    bridge = SiblingBridge(base_urls={}, client=httpx.AsyncClient(transport=httpx.MockTransport(SiblingRecorder())))
    with pytest.raises(SiblingBridgeError, match="No base URL configured for app 'imbib'"):
        await bridge.get("/api/search", app="imbib")
