"""Core docsync data models."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np


def topic_text(heading_hierarchy: List[str], content: str) -> str:
    breadcrumbs = " > ".join(title for title in heading_hierarchy if title)
    if not breadcrumbs:
        return content
    return f"[Topic: {breadcrumbs}]\n{content}"


@dataclass(slots=True, frozen=True)
class HeadingHint:
    """A heading found by an extractor, addressed by line number in the plain text."""

    line: int
    level: int
    title: str


@dataclass(slots=True, frozen=True)
class StructuralHints:
    """Optional structure an extractor can hand to the chunker."""

    headings: Tuple[HeadingHint, ...] = ()

    def by_line(self) -> dict[int, HeadingHint]:
        return {hint.line: hint for hint in self.headings}

    def __bool__(self) -> bool:
        return bool(self.headings)


@dataclass(slots=True)
class ChunkDraft:
    """Chunk text produced by the chunker, before identity and embedding."""

    content: str
    heading_hierarchy: List[str]
    position: int
    total: int = 0

    @property
    def section(self) -> str:
        return self.heading_hierarchy[-1] if self.heading_hierarchy else "Introduction"

    @property
    def embedding_text(self) -> str:
        """Text sent to the embedding provider, prefixed with its topic breadcrumbs."""
        return topic_text(self.heading_hierarchy, self.content)


@dataclass(slots=True)
class Chunk:
    """Unit of retrieval stored in both sub-indices."""

    chunk_id: str
    content: str
    section: str
    heading_hierarchy: List[str]
    chunk_index: int
    total_chunks: int
    source_url: str
    content_hash: str
    file_id: str
    embedding: Optional[np.ndarray] = None
    x: Optional[float] = None
    y: Optional[float] = None

    @property
    def heading_path(self) -> str:
        return " > ".join(self.heading_hierarchy)

    @property
    def embedding_text(self) -> str:
        return topic_text(self.heading_hierarchy, self.content)

    def heading_hierarchy_json(self) -> str:
        return json.dumps(self.heading_hierarchy, ensure_ascii=False)

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "content": self.content,
            "section": self.section,
            "heading_hierarchy": self.heading_path,
            "source_url": self.source_url,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "x": self.x,
            "y": self.y,
        }


@dataclass(slots=True)
class FileRecord:
    """Sync bookkeeping for one tracked source file."""

    identifier: str
    mtime: float
    content_hash: str
    chunk_ids: List[str] = field(default_factory=list)
    source_url: str = ""
    display_path: str = ""


class SyncPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PROCESSING = "processing"
    ERROR = "error"


@dataclass(slots=True)
class FileFailure:
    """A file that could not be indexed during a run."""

    identifier: str
    kind: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"identifier": self.identifier, "kind": self.kind, "message": self.message}


@dataclass(slots=True)
class SyncState:
    """Per-profile progress of the current or last sync run."""

    profile_id: str
    phase: SyncPhase = SyncPhase.IDLE
    files_seen: int = 0
    files_processed: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    files_removed: int = 0
    last_run_at: Optional[float] = None
    last_error: Optional[str] = None
    failures: List[FileFailure] = field(default_factory=list)

    def reset_counts(self) -> None:
        self.files_seen = 0
        self.files_processed = 0
        self.files_skipped = 0
        self.files_failed = 0
        self.files_removed = 0
        self.last_error = None
        self.failures = []

    def record_failure(self, failure: FileFailure) -> None:
        self.files_failed += 1
        self.failures.append(failure)

    def to_dict(self) -> dict:
        return {
            "profile_id": self.profile_id,
            "phase": self.phase.value,
            "files_seen": self.files_seen,
            "files_processed": self.files_processed,
            "files_skipped": self.files_skipped,
            "files_failed": self.files_failed,
            "files_removed": self.files_removed,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
            "failures": [failure.to_dict() for failure in self.failures],
        }


@dataclass(slots=True)
class QueryResult:
    """One fused search hit."""

    chunk: Chunk
    score: float
    keyword_rank: Optional[int]
    vector_rank: Optional[int]
    snippet: str

    @property
    def match_type(self) -> str:
        if self.keyword_rank is not None and self.vector_rank is not None:
            return "hybrid"
        if self.keyword_rank is not None:
            return "keyword"
        return "semantic"

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk.chunk_id,
            "score": self.score,
            "keyword_rank": self.keyword_rank,
            "vector_rank": self.vector_rank,
            "match_type": self.match_type,
            "snippet": self.snippet,
            "content": self.chunk.content,
            "section": self.chunk.section,
            "heading_hierarchy": self.chunk.heading_path,
            "source_url": self.chunk.source_url,
            "chunk_index": self.chunk.chunk_index,
            "total_chunks": self.chunk.total_chunks,
        }
