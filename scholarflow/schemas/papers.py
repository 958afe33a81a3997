from __future__ import annotations

from pydantic import BaseModel, Field


class PaperMetadata(BaseModel):
    """Bibliographic metadata for one paper as reported by a single source."""

    source: str
    paper_id: str
    title: str | None = None
    authors: list[str] = Field(default_factory=list)
    year: int | None = None
    doi: str | None = None
    venue: str | None = None
    abstract: str | None = None
    citation_count: int | None = None
    reference_count: int | None = None


class RelatedPaper(BaseModel):
    source: str
    title: str | None = None
    doi: str | None = None
    paper_id: str | None = None
    year: int | None = None
    relation: str = "related"


__all__ = ["PaperMetadata", "RelatedPaper"]
