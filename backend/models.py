"""Shared backend models for Vaultlink."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _timestamp() -> float:
    return time.time()


@dataclass
class EmbeddingVector:
    """Fixed-length vector plus its declared dimensionality."""

    values: List[float]
    dimensions: int = -1

    def __post_init__(self):
        self.values = [float(v) for v in self.values]
        if self.dimensions < 0:
            self.dimensions = len(self.values)

    def to_dict(self) -> Dict[str, Any]:
        return {"values": self.values, "dimensions": self.dimensions}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "EmbeddingVector":
        values = payload.get("values") or []
        return cls(values=values, dimensions=int(payload.get("dimensions", len(values))))


@dataclass
class Chunk:
    """A contiguous slice of one document's text."""

    path: str
    chunk_index: int
    text: str
    tokens: int
    start_char: int = 0
    end_char: int = 0
    embedding: Optional[EmbeddingVector] = None
    last_modified: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "chunk_index": self.chunk_index,
            "text": self.text,
            "tokens": self.tokens,
            "start_char": self.start_char,
            "end_char": self.end_char,
            "embedding": self.embedding.to_dict() if self.embedding else None,
            "last_modified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Chunk":
        embedding = payload.get("embedding")
        return cls(
            path=str(payload["path"]),
            chunk_index=int(payload["chunk_index"]),
            text=str(payload["text"]),
            tokens=int(payload.get("tokens", 0)),
            start_char=int(payload.get("start_char", 0)),
            end_char=int(payload.get("end_char", 0)),
            embedding=EmbeddingVector.from_dict(embedding) if embedding else None,
            last_modified=float(payload.get("last_modified", 0.0)),
        )


@dataclass
class Document:
    """A note in the vault as seen by the indexer."""

    path: str
    title: str
    content: str = ""
    modified_at: float = field(default_factory=_timestamp)


@dataclass(frozen=True)
class NoteTitleEntry:
    title: str
    normalized: str


@dataclass
class SearchHit:
    path: str
    title: str
    text: str
    score: float


@dataclass
class LinkCandidate:
    """A proposed rewrite of ``text[start:end]`` during one linking pass."""

    start: int
    end: int
    replacement: str


@dataclass
class LinkResult:
    text: str
    match_count: int = 0


@dataclass
class IndexStats:
    total_chunks: int
    total_documents: int
    is_built: bool
    provider_name: str


# API payloads

class BuildIndexRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    force_rebuild: bool = Field(default=False, alias="force_rebuild")


class ContextRequest(BaseModel):
    text: str


class ContextResponsePayload(BaseModel):
    passages: List[str] = Field(default_factory=list)


class UpdateFileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_id: str = Field(alias="document_id")
    content: str
    modified_at: float = Field(default_factory=_timestamp, alias="modified_at")


class RemoveFileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_id: str = Field(alias="document_id")


class IndexStatsPayload(BaseModel):
    total_chunks: int
    total_documents: int
    is_built: bool
    provider_name: str


class LinkTextRequest(BaseModel):
    text: str


class LinkTextResponsePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    match_count: int = Field(default=0, alias="match_count")


class ResolveLinksRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    auto_link_first_match: bool = Field(default=False, alias="auto_link_first_match")


class FolderSuggestionPayload(BaseModel):
    folder: Optional[str] = None


class StylePayload(BaseModel):
    style: str = ""


class RenameFileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    old_document_id: str = Field(alias="old_document_id")
    new_document_id: str = Field(alias="new_document_id")
    content: str
    modified_at: float = Field(default_factory=_timestamp, alias="modified_at")
