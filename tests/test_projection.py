"""Tests for the 2D map projection."""

from __future__ import annotations

import numpy as np
import pytest

from docsync.index.projection import CoordinateProjector, fallback_layout, normalize_coords, project


class TestNormalizeCoords:
    def test_columns_span_unit_range(self) -> None:
        coords = normalize_coords(np.array([[0.0, 10.0], [5.0, 20.0], [10.0, 30.0]]))

        np.testing.assert_allclose(coords[:, 0], [-1.0, 0.0, 1.0])
        np.testing.assert_allclose(coords[:, 1], [-1.0, 0.0, 1.0])

    def test_flat_axis(self) -> None:
        coords = normalize_coords(np.array([[1.0, 2.0], [3.0, 2.0]]))
        np.testing.assert_allclose(coords[:, 1], [-1.0, -1.0])


class TestProject:
    """Layout of embedding sets."""

    def test_empty(self) -> None:
        assert project([], np.zeros((0, 4))) == {}

    def test_length_mismatch(self) -> None:
        with pytest.raises(ValueError):
            project(["a"], np.zeros((2, 4)))

    def test_fewer_than_three_points_use_fallback(self) -> None:
        coords = project(["a", "b"], np.random.default_rng(0).normal(size=(2, 4)))

        assert coords == {"a": (0.0, -0.0), "b": (0.2, -0.2)}
        np.testing.assert_allclose(fallback_layout(1), [[0.0, 0.0]])

    def test_coordinates_are_bounded_and_reproducible(self) -> None:
        embeddings = np.random.default_rng(1).normal(size=(12, 8))
        ids = [f"c{i}" for i in range(12)]

        first = project(ids, embeddings)
        second = project(ids, embeddings)

        assert first == second
        values = np.array(list(first.values()))
        assert values.min() >= -1.0 and values.max() <= 1.0
        assert values[:, 0].min() == pytest.approx(-1.0)
        assert values[:, 0].max() == pytest.approx(1.0)

    def test_similar_vectors_land_close(self) -> None:
        base = np.eye(4)
        embeddings = np.vstack([base[0], base[0] * 0.99 + 0.01, base[1], base[2], base[3]])
        coords = project(["a", "a2", "b", "c", "d"], embeddings)

        near = np.hypot(coords["a"][0] - coords["a2"][0], coords["a"][1] - coords["a2"][1])
        far = np.hypot(coords["a"][0] - coords["c"][0], coords["a"][1] - coords["c"][1])
        assert near < far


class TestCoordinateProjector:
    """Persisting coordinates in the store."""

    def test_refresh_writes_coords(self, store, make_chunk) -> None:
        store.bulk_upsert([make_chunk(f"c{i}", f"text number {i}") for i in range(4)])

        assert CoordinateProjector(store).refresh() == 4
        chunks = store.get_chunks(["c0", "c3"])
        assert chunks["c0"].x is not None
        assert -1.0 <= chunks["c3"].y <= 1.0

    def test_refresh_without_embeddings_clears(self, store, make_chunk) -> None:
        store.upsert(make_chunk("c0", "text"))
        CoordinateProjector(store).refresh()
        store.delete("c0")

        assert CoordinateProjector(store).refresh() == 0
        assert store.map_points(10) == []
