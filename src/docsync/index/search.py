"""Hybrid search: keyword and vector rankings fused with Reciprocal Rank Fusion."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from docsync.embedding.encoder import EmbeddingProvider
from docsync.errors import DimensionMismatch, ProviderError
from docsync.index.storage import DualIndexStore
from docsync.models import QueryResult
from docsync.utils.text import make_snippet

LOGGER = logging.getLogger(__name__)

RRF_K = 60
DEFAULT_OVERSAMPLE = 4


@dataclass(slots=True)
class FusedHit:
    chunk_id: str
    score: float
    keyword_rank: Optional[int]
    vector_rank: Optional[int]


@dataclass(slots=True)
class SearchOutcome:
    results: List[QueryResult] = field(default_factory=list)
    vector_available: bool = True


def fuse_rankings(
    keyword_ids: Sequence[str], vector_ids: Sequence[str], *, k: int = RRF_K
) -> List[FusedHit]:
    """Reciprocal Rank Fusion of two ranked id lists.

    Ranks are 1-based; a list an id is absent from contributes nothing.
    Equal scores are ordered by ascending chunk id.
    """
    hits: Dict[str, FusedHit] = {}
    for rank, chunk_id in enumerate(keyword_ids, start=1):
        if chunk_id in hits:
            continue
        hits[chunk_id] = FusedHit(chunk_id, 1.0 / (k + rank), rank, None)
    for rank, chunk_id in enumerate(vector_ids, start=1):
        hit = hits.get(chunk_id)
        if hit is None:
            hits[chunk_id] = FusedHit(chunk_id, 1.0 / (k + rank), None, rank)
        elif hit.vector_rank is None:
            hit.score += 1.0 / (k + rank)
            hit.vector_rank = rank
    return sorted(hits.values(), key=lambda hit: (-hit.score, hit.chunk_id))


class HybridSearcher:
    """Runs both sub-indices for a query and fuses their rankings."""

    def __init__(
        self,
        store: DualIndexStore,
        provider: EmbeddingProvider | None,
        *,
        oversample: int = DEFAULT_OVERSAMPLE,
    ) -> None:
        self.store = store
        self.provider = provider
        self.oversample = max(1, oversample)

    def _vector_candidates(self, query: str, limit: int) -> Tuple[List[str], bool]:
        if self.provider is None:
            return [], False
        if not self.store.vectors_ready():
            LOGGER.info("Vector index is being rebuilt; using keyword results only")
            return [], False
        try:
            embedding = self.provider.embed_query(query)
            hits = self.store.vector_search(embedding, limit=limit)
        except DimensionMismatch as exc:
            LOGGER.warning("Vector search disabled: %s", exc)
            return [], False
        except ProviderError as exc:
            LOGGER.warning("Embedding provider unavailable for query: %s", exc)
            return [], False
        return [chunk_id for chunk_id, _ in hits], True

    def run(self, query: str, *, top_k: int = 10) -> SearchOutcome:
        if top_k <= 0:
            raise ValueError("top_k must be positive")
        query = query.strip()
        if not query:
            return SearchOutcome()

        limit = top_k * self.oversample
        keyword_hits = self.store.keyword_search(query, limit=limit)
        snippets = dict(keyword_hits)
        vector_ids, vector_available = self._vector_candidates(query, limit)

        fused = fuse_rankings([chunk_id for chunk_id, _ in keyword_hits], vector_ids)[:top_k]
        chunks = self.store.get_chunks([hit.chunk_id for hit in fused])

        results: List[QueryResult] = []
        for hit in fused:
            chunk = chunks.get(hit.chunk_id)
            if chunk is None:
                # deleted between ranking and lookup
                continue
            snippet = snippets.get(hit.chunk_id) or make_snippet(chunk.content)
            results.append(
                QueryResult(
                    chunk=chunk,
                    score=hit.score,
                    keyword_rank=hit.keyword_rank,
                    vector_rank=hit.vector_rank,
                    snippet=snippet,
                )
            )
        LOGGER.debug(
            "Query %r: %d keyword, %d vector, %d fused",
            query,
            len(keyword_hits),
            len(vector_ids),
            len(results),
        )
        return SearchOutcome(results=results, vector_available=vector_available)

    def search(self, query: str, *, top_k: int = 10) -> List[QueryResult]:
        return self.run(query, top_k=top_k).results
