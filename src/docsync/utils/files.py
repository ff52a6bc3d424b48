"""Utility helpers for working with files."""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Collection, Iterator

LOGGER = logging.getLogger(__name__)


def fingerprint(data: bytes) -> str:
    """Return the SHA256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def normalize_extensions(extensions: Collection[str]) -> frozenset[str]:
    """Lower-case extensions and make sure each starts with a dot."""
    normalized = set()
    for ext in extensions:
        ext = ext.strip().lower()
        if not ext:
            continue
        normalized.add(ext if ext.startswith(".") else f".{ext}")
    return frozenset(normalized)


def has_accepted_extension(path: Path | str, extensions: Collection[str]) -> bool:
    """An empty extension set accepts everything."""
    if not extensions:
        return True
    return Path(path).suffix.lower() in extensions


def is_hidden(path: Path, root: Path) -> bool:
    """True when any component below ``root`` is a dotfile or dot-directory."""
    try:
        parts = path.relative_to(root).parts
    except ValueError:
        parts = path.parts
    return any(part.startswith(".") for part in parts)


def iter_source_files(
    root: Path, extensions: Collection[str], *, recursive: bool = True
) -> Iterator[Path]:
    """Yield accepted files under ``root`` in a stable order, skipping dotfiles."""
    if not root.is_dir():
        raise NotADirectoryError(str(root))

    def _walk_error(exc: OSError) -> None:
        LOGGER.warning("Error reading directory %s: %s", exc.filename, exc)

    for dirpath, dirnames, filenames in os.walk(root, onerror=_walk_error):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith(".")) if recursive else []
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            path = Path(dirpath) / name
            if path.is_file() and has_accepted_extension(path, extensions):
                yield path
