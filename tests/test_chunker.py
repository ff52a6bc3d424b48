"""Tests for the heading-aware chunker."""

from __future__ import annotations

import pytest

from docsync.ingestion.chunker import Chunker, ChunkerConfig
from docsync.ingestion.extractors import markdown_hints
from docsync.models import StructuralHints
from docsync.utils.text import count_tokens


def _chunk_markdown(text: str, config: ChunkerConfig | None = None):
    return Chunker(config).chunk(text, markdown_hints(text))


class TestChunkerConfig:
    """Validation of chunking bounds."""

    def test_defaults(self) -> None:
        config = ChunkerConfig()
        assert (config.min_tokens, config.max_tokens, config.overlap_ratio) == (150, 1000, 0.1)

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_tokens": 0}, {"overlap_ratio": 1.0}, {"overlap_ratio": -0.1}, {"min_tokens": 50, "max_tokens": 10}],
    )
    def test_invalid_values(self, kwargs) -> None:
        with pytest.raises(ValueError):
            ChunkerConfig(**kwargs)


class TestEdgeCases:
    """Empty and tiny inputs."""

    def test_empty_text_yields_no_chunks(self) -> None:
        assert Chunker().chunk("") == []
        assert Chunker().chunk("   \n\t ") == []

    def test_short_text_yields_one_chunk(self) -> None:
        drafts = Chunker().chunk("Just a short note.")

        assert len(drafts) == 1
        assert drafts[0].content == "Just a short note."
        assert drafts[0].position == 0
        assert drafts[0].total == 1
        assert drafts[0].section == "Introduction"
        assert drafts[0].heading_hierarchy == []

    def test_short_text_with_heading_yields_one_chunk(self) -> None:
        drafts = _chunk_markdown("# Notes\nshort body")

        assert len(drafts) == 1
        assert drafts[0].heading_hierarchy == ["Notes"]


class TestHeadingChunking:
    """Structural boundaries are preferred."""

    TEXT = (
        "# Guide\nintro words here and more\n"
        "## Setup\nsetup text one two three four\n"
        "## Usage\nusage text alpha beta gamma"
    )

    def test_sections_become_chunks(self) -> None:
        drafts = _chunk_markdown(self.TEXT, ChunkerConfig(min_tokens=3, max_tokens=50))

        assert [draft.section for draft in drafts] == ["Guide", "Setup", "Usage"]
        assert drafts[1].heading_hierarchy == ["Guide", "Setup"]
        assert drafts[1].content == "## Setup\nsetup text one two three four"
        assert [draft.position for draft in drafts] == [0, 1, 2]
        assert all(draft.total == 3 for draft in drafts)

    def test_small_sibling_sections_are_merged(self) -> None:
        drafts = _chunk_markdown(self.TEXT)

        assert len(drafts) == 1
        # merged siblings are labelled with their common parent
        assert drafts[0].heading_hierarchy == ["Guide"]
        assert "setup text" in drafts[0].content
        assert "usage text" in drafts[0].content

    def test_embedding_text_carries_topic(self) -> None:
        drafts = _chunk_markdown(self.TEXT, ChunkerConfig(min_tokens=3, max_tokens=50))

        assert drafts[2].embedding_text.startswith("[Topic: Guide > Usage]\n")

    def test_long_section_is_windowed(self) -> None:
        body = " ".join(f"word{i}" for i in range(60))
        drafts = _chunk_markdown(f"# Long\n{body}", ChunkerConfig(min_tokens=1, max_tokens=40))

        assert len(drafts) > 1
        assert all(count_tokens(draft.content) <= 40 for draft in drafts)
        assert all(draft.heading_hierarchy == ["Long"] for draft in drafts)


class TestParagraphChunking:
    """Fallback without structural hints."""

    def test_overlapping_windows(self) -> None:
        paragraph = " ".join(f"w{i}" for i in range(30))
        drafts = Chunker(ChunkerConfig(min_tokens=1, max_tokens=20, overlap_ratio=0.1)).chunk(paragraph)

        assert len(drafts) == 4
        assert [draft.position for draft in drafts] == [0, 1, 2, 3]
        assert drafts[0].content.startswith("w0 ")
        # consecutive windows share their boundary tokens
        assert drafts[1].content.split()[0] == drafts[0].content.split()[-1]

    def test_paragraphs_split_at_budget(self) -> None:
        first = "one two three four five"
        second = "six seven eight nine ten eleven twelve thirteen"
        drafts = Chunker(ChunkerConfig(min_tokens=1, max_tokens=20)).chunk(f"{first}\n\n{second}")

        assert [draft.content for draft in drafts] == [first, second]

    def test_paragraphs_kept_together_when_they_fit(self) -> None:
        drafts = Chunker().chunk("first paragraph\n\nsecond paragraph")

        assert len(drafts) == 1
        assert "first paragraph" in drafts[0].content
        assert "second paragraph" in drafts[0].content


class TestDeterminism:
    """Identical input gives identical drafts."""

    def test_rechunking_is_stable(self) -> None:
        text = TestHeadingChunking.TEXT * 20
        hints = markdown_hints(text)
        chunker = Chunker(ChunkerConfig(min_tokens=10, max_tokens=60))

        first = chunker.chunk(text, hints)
        second = chunker.chunk(text, hints)

        assert [(d.content, d.position, d.heading_hierarchy) for d in first] == [
            (d.content, d.position, d.heading_hierarchy) for d in second
        ]

    def test_empty_hints_use_paragraph_path(self) -> None:
        text = "alpha\n\nbeta"
        assert Chunker().chunk(text, StructuralHints()) == Chunker().chunk(text)
