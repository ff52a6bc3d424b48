"""Heading-aware chunking of extracted text.

Chunks are bounded by a token budget and prefer heading boundaries over
hard cut-offs. The output is a pure function of ``(text, hints)`` so chunk
positions, and the chunk ids derived from them, stay stable across syncs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from docsync.models import ChunkDraft, StructuralHints
from docsync.utils.text import count_tokens, tokenize

_PARAGRAPH_RE = re.compile(r"\n\s*\n")


@dataclass(slots=True)
class ChunkerConfig:
    min_tokens: int = 150
    max_tokens: int = 1000
    overlap_ratio: float = 0.1

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if not 0 <= self.overlap_ratio < 1:
            raise ValueError("overlap_ratio must be in [0, 1)")
        if self.min_tokens > self.max_tokens:
            raise ValueError("min_tokens cannot exceed max_tokens")


@dataclass
class _Buffer:
    text: str = ""
    headings: List[Tuple[int, str]] = field(default_factory=list)

    def clear(self) -> None:
        self.text = ""
        self.headings = []

    @property
    def deepest_level(self) -> int:
        return max((level for level, _ in self.headings), default=0)


class Chunker:
    """Splits text into :class:`ChunkDraft` objects."""

    def __init__(self, config: ChunkerConfig | None = None) -> None:
        self.config = config or ChunkerConfig()

    def chunk(self, text: str, hints: Optional[StructuralHints] = None) -> List[ChunkDraft]:
        if not text or not text.strip():
            return []

        drafts: List[ChunkDraft] = []
        if hints:
            self._chunk_by_headings(text, hints, drafts)
        else:
            self._chunk_by_paragraphs(text, drafts)

        total = len(drafts)
        for draft in drafts:
            draft.total = total
        return drafts

    def _chunk_by_headings(
        self, text: str, hints: StructuralHints, drafts: List[ChunkDraft]
    ) -> None:
        headings = hints.by_line()
        hierarchy: List[str] = []
        buffer = _Buffer()

        for number, line in enumerate(text.split("\n")):
            hint = headings.get(number)
            if hint is None:
                buffer.text += line + "\n"
                if count_tokens(buffer.text) >= self.config.max_tokens:
                    self._flush(buffer, hierarchy, drafts)
                continue

            current = count_tokens(buffer.text.strip())
            # small sibling or child sections are merged into the open buffer
            merge = (
                current > 0
                and current < self.config.min_tokens
                and bool(buffer.headings)
                and hint.level >= buffer.deepest_level
            )
            if current > 0 and not merge:
                self._flush(buffer, hierarchy, drafts)

            level = max(hint.level, 1)
            hierarchy = hierarchy[: level - 1]
            hierarchy.extend([""] * (level - 1 - len(hierarchy)))
            hierarchy.append(hint.title)
            buffer.headings.append((level, hint.title))
            buffer.text += line + "\n"

        self._flush(buffer, hierarchy, drafts, force=True)

    def _chunk_by_paragraphs(self, text: str, drafts: List[ChunkDraft]) -> None:
        buffer = _Buffer()
        for paragraph in _PARAGRAPH_RE.split(text):
            if not paragraph.strip():
                continue
            candidate = buffer.text + paragraph
            if buffer.text and count_tokens(candidate.strip()) > self.config.max_tokens:
                self._flush(buffer, [], drafts)
            buffer.text += paragraph + "\n\n"
        self._flush(buffer, [], drafts, force=True)

    def _topic_hierarchy(self, buffer: _Buffer, hierarchy: List[str]) -> List[str]:
        if not buffer.headings:
            return hierarchy
        deepest = buffer.deepest_level
        siblings = [title for level, title in buffer.headings if level == deepest]
        if len(siblings) > 1 and deepest > 1:
            # merged siblings are described by their common parent
            return hierarchy[: deepest - 1]
        return hierarchy

    def _flush(
        self,
        buffer: _Buffer,
        hierarchy: List[str],
        drafts: List[ChunkDraft],
        *,
        force: bool = False,
    ) -> None:
        trimmed = buffer.text.strip()
        if not trimmed:
            buffer.clear()
            return

        tokens = tokenize(trimmed)
        if len(tokens) < self.config.min_tokens and not force:
            return

        topic = [title for title in self._topic_hierarchy(buffer, hierarchy) if title]
        if len(tokens) > self.config.max_tokens:
            for window in self._windows(tokens):
                drafts.append(ChunkDraft(content=window, heading_hierarchy=list(topic), position=len(drafts)))
        else:
            drafts.append(ChunkDraft(content=trimmed, heading_hierarchy=topic, position=len(drafts)))
        buffer.clear()

    def _windows(self, tokens: List[str]) -> List[str]:
        size = self.config.max_tokens
        overlap = int(size * self.config.overlap_ratio)
        step = max(size - overlap, 1)
        windows = []
        for start in range(0, len(tokens), step):
            window = "".join(tokens[start : start + size]).strip()
            if window:
                windows.append(window)
            if start + size >= len(tokens):
                break
        return windows
