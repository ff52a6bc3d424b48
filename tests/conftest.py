"""Shared fixtures: a deterministic embedding provider and store helpers."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Callable, List, Sequence

import numpy as np
import pytest

from docsync.embedding.encoder import EmbeddingProvider, EmbeddingSettings
from docsync.index.storage import DualIndexStore
from docsync.models import Chunk
from docsync.utils.files import fingerprint


class FakeEmbeddingProvider(EmbeddingProvider):
    """Hash-seeded unit vectors; identical text always gives the same vector."""

    def __init__(self, dim: int = 8, *, name: str = "fake") -> None:
        self.settings = EmbeddingSettings(
            provider="local",
            model_name=f"{name}-{dim}",
            dimension=dim,
            batch_size=4,
            timeout=5.0,
            max_retries=0,
            retry_backoff=0.0,
        )
        self.calls: List[List[str]] = []
        self.closed = False

    def dimension(self) -> int:
        return self.settings.dimension

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        batch = list(texts)
        self.calls.append(batch)
        rows = []
        for text in batch:
            seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
            vector = np.random.default_rng(seed).normal(size=self.dimension()).astype("float32")
            rows.append(vector / np.linalg.norm(vector))
        if not rows:
            return np.zeros((0, self.dimension()), dtype="float32")
        return np.vstack(rows)

    @property
    def embedded_texts(self) -> List[str]:
        return [text for batch in self.calls for text in batch]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def store(tmp_path: Path, fake_provider: FakeEmbeddingProvider):
    db = DualIndexStore(
        tmp_path / "index.db",
        dimension=fake_provider.dimension(),
        provider_id=fake_provider.provider_id,
    )
    yield db
    db.close()


@pytest.fixture
def make_chunk(fake_provider: FakeEmbeddingProvider) -> Callable[..., Chunk]:
    def _make(
        chunk_id: str,
        content: str,
        *,
        file_id: str = "/docs/a.md",
        section: str = "Introduction",
        heading_hierarchy: List[str] | None = None,
        chunk_index: int = 0,
        total_chunks: int = 1,
        with_embedding: bool = True,
    ) -> Chunk:
        chunk = Chunk(
            chunk_id=chunk_id,
            content=content,
            section=section,
            heading_hierarchy=list(heading_hierarchy or []),
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            source_url=f"file://{file_id}",
            content_hash=fingerprint(content.encode("utf-8")),
            file_id=file_id,
        )
        if with_embedding:
            chunk.embedding = fake_provider.embed([content])[0]
        return chunk

    return _make
