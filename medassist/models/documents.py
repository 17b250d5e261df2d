from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

import numpy as np
from pydantic import BaseModel, Field


@dataclass(frozen=True)
class SectionDraft:
    """A chunk of normalized Markdown, not yet persisted."""

    content: str
    heading: str | None = None
    part: int = 1

    @property
    def is_heading_led(self) -> bool:
        return self.heading is not None and self.part == 1


@dataclass
class Section:
    """A persisted chunk of a document; the unit of embedding and retrieval."""

    id: int
    document_id: str
    position: int
    content: str
    heading: str | None = None
    part: int = 1
    embedding: np.ndarray | None = None

    @property
    def is_heading_led(self) -> bool:
        return self.heading is not None and self.part == 1

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


@dataclass(frozen=True)
class SectionMatch:
    section_id: int
    document_id: str
    content: str
    similarity: float


class Document(BaseModel):
    id: str
    name: str
    storage_path: str
    owner_id: str
    created_at: datetime


class SectionOut(BaseModel):
    id: int
    position: int
    content: str
    heading: str | None = None
    part: int = 1
    heading_led: bool = False
    has_embedding: bool = False

    @classmethod
    def from_section(cls, section: Section) -> "SectionOut":
        return cls(
            id=section.id,
            position=section.position,
            content=section.content,
            heading=section.heading,
            part=section.part,
            heading_led=section.is_heading_led,
            has_embedding=section.has_embedding,
        )


class EmbedReport(BaseModel):
    """Outcome of one embedding pass over sections with a null embedding."""

    document_id: str | None = None
    candidates: int = 0
    embedded: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class DocumentUploadResponse(BaseModel):
    document: Document
    section_count: int
    embedding: Literal["scheduled", "not_needed"] = "scheduled"


class DocumentSectionsResponse(BaseModel):
    document: Document
    sections: list[SectionOut]
