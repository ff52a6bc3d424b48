"""Tests for text utility functions."""

from __future__ import annotations

from docsync.utils.text import (
    build_keyword_query,
    count_tokens,
    html_to_markdown_text,
    make_snippet,
    normalize_whitespace,
    tokenize,
)


class TestTokenize:
    """Words and whitespace runs."""

    def test_tokens_rebuild_input(self) -> None:
        text = "Hello  world\n\nagain "
        assert "".join(tokenize(text)) == text

    def test_whitespace_runs_are_single_tokens(self) -> None:
        assert tokenize("a  b\n\nc") == ["a", "  ", "b", "\n\n", "c"]

    def test_count_tokens(self) -> None:
        assert count_tokens("one two three") == 5
        assert count_tokens("") == 0


class TestNormalizeWhitespace:
    """Test normalize_whitespace function."""

    def test_normalize_simple(self) -> None:
        lines = ["  Line 1  ", "  Line 2  ", "  Line 3  "]
        assert normalize_whitespace(lines) == "Line 1\nLine 2\nLine 3"

    def test_normalize_empty_lines(self) -> None:
        """Should skip empty lines."""
        lines = ["Line 1", "", "  ", "Line 2", "\n", "Line 3"]
        assert normalize_whitespace(lines) == "Line 1\nLine 2\nLine 3"

    def test_normalize_all_empty(self) -> None:
        assert normalize_whitespace(["", "  ", "\n", "\t"]) == ""


class TestHtmlToMarkdownText:
    def test_headings_and_entities(self) -> None:
        text = html_to_markdown_text("<h2>Price&nbsp;list</h2><p>Tea &lt;hot&gt;</p>")

        assert text.splitlines()[0] == "## Price list"
        assert "Tea <hot>" in text

    def test_blank_runs_are_collapsed(self) -> None:
        text = html_to_markdown_text("<p>a</p><p></p><p></p><p>b</p>")
        assert "\n\n\n" not in text


class TestBuildKeywordQuery:
    """FTS5 query construction."""

    def test_terms_are_prefix_matched_and_anded(self) -> None:
        query, count = build_keyword_query("quarterly report")

        assert query == '"quarterly"* AND "report"*'
        assert count == 2

    def test_punctuation_is_dropped(self) -> None:
        query, count = build_keyword_query('INV-2024 "quoted" (x)')

        assert query == '"INV"* AND "2024"* AND "quoted"* AND "x"*'
        assert count == 4

    def test_empty(self) -> None:
        assert build_keyword_query("  ?!  ") == ("", 0)


class TestMakeSnippet:
    def test_short_text_is_flattened(self) -> None:
        assert make_snippet("a\n  b") == "a b"

    def test_long_text_is_cut_on_word_boundary(self) -> None:
        snippet = make_snippet("word " * 100, max_chars=22)

        assert snippet.endswith("...")
        assert snippet[:-3].split() == ["word"] * 4
