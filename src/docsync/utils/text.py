"""Text helpers shared by extraction, chunking and keyword search."""

from __future__ import annotations

import html
import re
from typing import Iterable, List

_TOKEN_RE = re.compile(r"(\s+)")
_QUERY_STRIP_RE = re.compile(r"[^\w\s]", re.UNICODE)
_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_HEADING_TAG_RE = re.compile(r"<h([1-6])[^>]*>(.*?)</h\1>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAG_RE = re.compile(r"</?(p|div|br|li|tr|section|article)[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())


def tokenize(text: str) -> List[str]:
    """Split text into words and the whitespace runs between them.

    Joining the tokens reproduces the input exactly.
    """
    return [token for token in _TOKEN_RE.split(text) if token]


def count_tokens(text: str) -> int:
    """Token count as produced by :func:`tokenize` (words and whitespace runs)."""
    return len(tokenize(text))


def html_to_markdown_text(markup: str) -> str:
    """Reduce HTML to plain text, keeping ``<hN>`` tags as Markdown headings."""
    text = _SCRIPT_RE.sub("", markup)
    text = _HEADING_TAG_RE.sub(
        lambda m: "\n" + "#" * int(m.group(1)) + " " + _TAG_RE.sub("", m.group(2)).strip() + "\n",
        text,
    )
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines()]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def build_keyword_query(text: str) -> tuple[str, int]:
    """Turn free text into an FTS5 query of AND-ed prefix terms.

    Returns the query and the number of terms; an empty query means
    there is nothing to match on.
    """
    words = _QUERY_STRIP_RE.sub(" ", text).replace("_", " ").split()
    if not words:
        return "", 0
    return " AND ".join(f'"{word}"*' for word in words), len(words)


def make_snippet(text: str, max_chars: int = 200) -> str:
    """Leading text of a chunk, cut at a word boundary."""
    flat = " ".join(text.split())
    if len(flat) <= max_chars:
        return flat
    cut = flat[:max_chars].rsplit(" ", 1)[0]
    return cut + "..."
