"""Strict Pydantic schemas for tool inputs."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class StrictModel(BaseModel):
    """Base model for strict schema validation."""

    model_config = ConfigDict(extra="forbid")


class SearchLibraryInput(StrictModel):
    query: str = Field(description="Search query for papers")
    limit: int = Field(default=20, ge=1, le=200, description="Max results (default 20)")


class SearchSourcesInput(StrictModel):
    query: str = Field(description="Search query")
    sources: str = Field(
        default="arxiv,ads,crossref",
        description="Comma-separated sources: arxiv,ads,crossref",
    )
    limit: int = Field(default=10, ge=1, le=100, description="Max results per source")


class AddPapersInput(StrictModel):
    identifiers: list[str] = Field(
        min_length=1,
        description="Array of DOIs, arXiv IDs, or BibTeX strings",
    )
    library: str | None = Field(default=None, description="Target library name (optional)")


class GetPaperInput(StrictModel):
    citeKey: str = Field(min_length=1, description="BibTeX cite key")


class ExportBibtexInput(StrictModel):
    citeKeys: list[str] = Field(min_length=1, description="Cite keys to export")


ArtifactType = Literal[
    "presentation",
    "poster",
    "dataset",
    "webpage",
    "note",
    "media",
    "code",
    "general",
]


class CreateArtifactInput(StrictModel):
    type: ArtifactType = Field(description="Artifact type")
    title: str = Field(min_length=1, description="Artifact title")
    source_url: str | None = Field(default=None, description="Source URL (optional)")
    notes: str | None = Field(default=None, description="Notes or content (optional)")
    tags: list[str] | None = Field(default=None, description="Tags (optional)")


class SearchArtifactsInput(StrictModel):
    query: str = Field(description="Search query")
    type: str | None = Field(default=None, description="Filter by artifact type (optional)")
    limit: int = Field(default=20, ge=1, le=200, description="Max results (default 20)")


class NoInput(StrictModel):
    pass


class GetDocumentInput(StrictModel):
    id: str = Field(min_length=1, description="Document UUID")


class ListConversationsInput(StrictModel):
    limit: int = Field(default=20, ge=1, le=200, description="Max results")
