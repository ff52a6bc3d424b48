"""2D layout of chunk embeddings for the map view.

Coordinates come from a PCA of the centred embedding matrix, scaled per axis
into ``[-1, 1]``. Projection is a batch recompute after a sync changed the
vector set, never a per-chunk update.
"""

from __future__ import annotations

import logging
from typing import Dict, Sequence, Tuple

import numpy as np

from docsync.index.storage import DualIndexStore

LOGGER = logging.getLogger(__name__)


def normalize_coords(points: np.ndarray) -> np.ndarray:
    """Scale each column into ``[-1, 1]``; a flat axis maps to -1."""
    if points.size == 0:
        return points.reshape(0, 2)
    mins = points.min(axis=0)
    spans = points.max(axis=0) - mins
    spans[spans == 0] = 1.0
    return (points - mins) / spans * 2.0 - 1.0


def fallback_layout(count: int) -> np.ndarray:
    """Fixed diagonal layout for fewer than three points."""
    return np.array([[0.2 * index, -0.2 * index] for index in range(count)], dtype="float64").reshape(
        count, 2
    )


def project(chunk_ids: Sequence[str], embeddings: np.ndarray) -> Dict[str, Tuple[float, float]]:
    """Map each chunk id to ``(x, y)``."""
    if len(chunk_ids) != len(embeddings):
        raise ValueError("chunk_ids and embeddings must have the same length")
    count = len(chunk_ids)
    if count == 0:
        return {}
    if count < 3:
        coords = fallback_layout(count)
    else:
        matrix = np.asarray(embeddings, dtype="float64")
        centred = matrix - matrix.mean(axis=0, keepdims=True)
        # rows of vt are principal axes, largest variance first
        _, _, vt = np.linalg.svd(centred, full_matrices=False)
        components = vt[:2]
        if components.shape[0] < 2:
            components = np.vstack([components, np.zeros_like(components[:1])])
        raw = centred @ components.T
        # SVD signs are arbitrary; fix them so layouts are reproducible
        for axis in range(2):
            column = raw[:, axis]
            pivot = int(np.argmax(np.abs(column)))
            if column[pivot] < 0:
                raw[:, axis] = -column
        coords = normalize_coords(raw)
    return {chunk_id: (float(x), float(y)) for chunk_id, (x, y) in zip(chunk_ids, coords)}


class CoordinateProjector:
    """Recomputes and persists the coordinate table of one store."""

    def __init__(self, store: DualIndexStore) -> None:
        self.store = store

    def refresh(self) -> int:
        chunk_ids, embeddings = self.store.all_embeddings()
        if not chunk_ids:
            self.store.clear_coords()
            LOGGER.info("No embeddings available; cleared map coordinates")
            return 0
        coords = project(chunk_ids, embeddings)
        self.store.replace_coords(coords)
        LOGGER.info("Projected %d chunks to 2D", len(coords))
        return len(coords)
