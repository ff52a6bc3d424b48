"""Tests for file utility functions."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from docsync.utils.files import (
    fingerprint,
    has_accepted_extension,
    is_hidden,
    iter_source_files,
    normalize_extensions,
)


class TestIterSourceFiles:
    """Test iter_source_files function."""

    def test_filters_by_extension(self, tmp_path: Path) -> None:
        (tmp_path / "doc1.md").write_text("one")
        (tmp_path / "doc2.pdf").write_text("two")
        (tmp_path / "image.png").write_text("png")

        paths = list(iter_source_files(tmp_path, {".md", ".pdf"}))

        assert [p.name for p in paths] == ["doc1.md", "doc2.pdf"]

    def test_nested_directories(self, tmp_path: Path) -> None:
        subdir = tmp_path / "subdir"
        subdir.mkdir()
        (tmp_path / "root.md").write_text("root")
        (subdir / "nested.md").write_text("nested")

        assert {p.name for p in iter_source_files(tmp_path, {".md"})} == {"root.md", "nested.md"}

    def test_non_recursive(self, tmp_path: Path) -> None:
        subdir = tmp_path / "subdir"
        subdir.mkdir()
        (tmp_path / "root.md").write_text("root")
        (subdir / "nested.md").write_text("nested")

        paths = list(iter_source_files(tmp_path, {".md"}, recursive=False))

        assert [p.name for p in paths] == ["root.md"]

    def test_hidden_entries_are_skipped(self, tmp_path: Path) -> None:
        hidden_dir = tmp_path / ".git"
        hidden_dir.mkdir()
        (hidden_dir / "config.md").write_text("x")
        (tmp_path / ".draft.md").write_text("x")
        (tmp_path / "visible.md").write_text("x")

        assert [p.name for p in iter_source_files(tmp_path, {".md"})] == ["visible.md"]

    def test_empty_extension_set_accepts_everything(self, tmp_path: Path) -> None:
        (tmp_path / "a.bin").write_text("x")
        assert len(list(iter_source_files(tmp_path, set()))) == 1

    def test_missing_root(self, tmp_path: Path) -> None:
        with pytest.raises(NotADirectoryError):
            list(iter_source_files(tmp_path / "missing", {".md"}))


class TestExtensions:
    def test_normalize_extensions(self) -> None:
        assert normalize_extensions(["MD", ".Pdf", " txt ", ""]) == frozenset({".md", ".pdf", ".txt"})

    def test_has_accepted_extension_is_case_insensitive(self) -> None:
        assert has_accepted_extension("Report.PDF", {".pdf"})
        assert not has_accepted_extension("notes.txt", {".pdf"})

    def test_is_hidden(self, tmp_path: Path) -> None:
        assert is_hidden(tmp_path / ".cache" / "a.md", tmp_path)
        assert not is_hidden(tmp_path / "docs" / "a.md", tmp_path)


class TestFingerprint:
    """Test fingerprint function."""

    def test_matches_sha256(self) -> None:
        data = b"test content"
        assert fingerprint(data) == hashlib.sha256(data).hexdigest()

    def test_different_content_differs(self) -> None:
        assert fingerprint(b"a") != fingerprint(b"b")

    def test_empty_bytes(self) -> None:
        assert fingerprint(b"") == hashlib.sha256(b"").hexdigest()
