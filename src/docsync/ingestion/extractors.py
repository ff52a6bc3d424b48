"""Format converters that turn raw file bytes into plain text.

Each extractor returns the plain text plus optional heading hints that the
chunker uses to keep sections together. PDF support uses PyMuPDF (fitz).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import PurePath
from typing import Dict, Iterable, List, Protocol, Tuple

import fitz  # PyMuPDF

from docsync.errors import ExtractionFailed, ExtractionUnavailable
from docsync.models import HeadingHint, StructuralHints
from docsync.utils.text import html_to_markdown_text, normalize_whitespace

LOGGER = logging.getLogger(__name__)

_MARKDOWN_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_ANCHOR_LINK_RE = re.compile(r"\[.*?\]\(#[^)]*\)")


@dataclass(slots=True)
class ExtractedText:
    text: str
    hints: StructuralHints


class Extractor(Protocol):
    """Capability turning one file's bytes into text."""

    formats: Tuple[str, ...]

    def extract(self, identifier: str, data: bytes) -> ExtractedText: ...


def decode_text(data: bytes) -> str:
    """Decode bytes as UTF-8 (BOM tolerated), falling back to latin-1."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def markdown_hints(text: str) -> StructuralHints:
    """Collect ``#`` headings as hints, ignoring fenced code blocks."""
    headings: List[HeadingHint] = []
    in_fence = False
    for number, line in enumerate(text.split("\n")):
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _MARKDOWN_HEADING_RE.match(line)
        if match:
            title = _ANCHOR_LINK_RE.sub("", match.group(2)).strip()
            headings.append(HeadingHint(line=number, level=len(match.group(1)), title=title))
    return StructuralHints(tuple(headings))


class PlainTextExtractor:
    """Plain text formats without structure."""

    formats = (".txt", ".csv", ".json", ".log", ".rst", ".xml", ".yaml", ".yml")

    def extract(self, identifier: str, data: bytes) -> ExtractedText:
        text = decode_text(data).replace("\r\n", "\n")
        return ExtractedText(text=text, hints=StructuralHints())


class MarkdownExtractor:
    formats = (".md", ".markdown", ".mdx")

    def extract(self, identifier: str, data: bytes) -> ExtractedText:
        text = decode_text(data).replace("\r\n", "\n")
        return ExtractedText(text=text, hints=markdown_hints(text))


class HtmlExtractor:
    """Strips markup; ``<h1>``..``<h6>`` survive as headings."""

    formats = (".html", ".htm")

    def extract(self, identifier: str, data: bytes) -> ExtractedText:
        text = html_to_markdown_text(decode_text(data))
        return ExtractedText(text=text, hints=markdown_hints(text))


class PdfExtractor:
    """Reads PDFs page by page with PyMuPDF.

    The document title becomes the level-1 heading; outline entries are
    mapped onto the first matching line of the extracted text.
    """

    formats = (".pdf",)

    def extract(self, identifier: str, data: bytes) -> ExtractedText:
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as exc:
            raise ExtractionFailed(f"Failed to open PDF {identifier}: {exc}") from exc

        try:
            metadata = doc.metadata or {}
            title = metadata.get("title") or PurePath(identifier).stem
            pages = []
            for index in range(len(doc)):
                try:
                    page_text = doc[index].get_text() or ""
                except Exception as exc:  # pragma: no cover - damaged page
                    LOGGER.warning("Failed to read page %s in %s: %s", index, identifier, exc)
                    continue
                normalized = normalize_whitespace(page_text.splitlines())
                if normalized:
                    pages.append(normalized)
            try:
                outline = doc.get_toc() or []
            except Exception:  # pragma: no cover - broken outline
                outline = []
        finally:
            doc.close()

        lines = [f"# {title}", ""] + "\n\n".join(pages).split("\n")
        headings = [HeadingHint(line=0, level=1, title=title)]
        headings.extend(self._outline_hints(outline, lines))
        return ExtractedText(
            text="\n".join(lines),
            hints=StructuralHints(tuple(sorted(headings, key=lambda h: h.line))),
        )

    @staticmethod
    def _outline_hints(outline: Iterable[list], lines: List[str]) -> List[HeadingHint]:
        hints: List[HeadingHint] = []
        used = {0}
        start = 1
        for entry in outline:
            level, entry_title = int(entry[0]), str(entry[1]).strip()
            if not entry_title:
                continue
            for number in range(start, len(lines)):
                if number not in used and lines[number].strip() == entry_title:
                    # outline levels sit below the document title
                    hints.append(HeadingHint(line=number, level=min(level + 1, 6), title=entry_title))
                    used.add(number)
                    start = number + 1
                    break
        return hints


class ExtractorRegistry:
    """Dispatches extraction by declared format (file extension)."""

    def __init__(self, extractors: Iterable[Extractor] | None = None) -> None:
        self._by_format: Dict[str, Extractor] = {}
        for extractor in extractors if extractors is not None else default_extractors():
            self.register(extractor)

    def register(self, extractor: Extractor) -> None:
        for fmt in extractor.formats:
            self._by_format[fmt.lower()] = extractor

    def supports(self, declared_format: str) -> bool:
        return declared_format.lower() in self._by_format

    def extract(self, identifier: str, data: bytes, declared_format: str) -> ExtractedText:
        """Return text and hints, or raise ExtractionUnavailable / ExtractionFailed."""
        extractor = self._by_format.get(declared_format.lower())
        if extractor is None:
            raise ExtractionUnavailable(declared_format)
        try:
            return extractor.extract(identifier, data)
        except (ExtractionFailed, ExtractionUnavailable):
            raise
        except Exception as exc:
            raise ExtractionFailed(f"{type(exc).__name__}: {exc}") from exc


def default_extractors() -> List[Extractor]:
    return [PlainTextExtractor(), MarkdownExtractor(), HtmlExtractor(), PdfExtractor()]
