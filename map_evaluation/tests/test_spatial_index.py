"""
Tests for the ground-truth spatial index.
"""

import numpy as np
import pytest

from map_evaluation.core.spatial_index import GroundTruthIndex, max_neighbors_for_voxel


def test_empty_index_returns_no_neighbors():
    """Test that an empty index answers queries without raising."""
    index = GroundTruthIndex(np.zeros((0, 3)))

    assert index.is_empty
    indices, squared = index.query_k_nearest(np.zeros(3), 5)
    assert len(indices) == 0 and len(squared) == 0

    _, distances, found = index.query_nearest(np.zeros((3, 3)))
    assert not found.any()
    assert np.isinf(distances).all()


def test_k_nearest_sorted_and_capped_by_size():
    """Test ascending order and fewer results than k for small clouds."""
    points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 2.0, 0.0]])
    index = GroundTruthIndex(points)

    indices, squared = index.query_k_nearest(np.array([0.1, 0.0, 0.0]), 10)

    assert list(indices) == [0, 1, 2]
    assert np.all(np.diff(squared) >= 0)
    assert squared[0] == pytest.approx(0.01)


def test_batch_query_pads_missing_neighbors():
    """Test inf padding when k exceeds the number of points."""
    index = GroundTruthIndex(np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]]))

    indices, squared = index.query_k_nearest_batch(np.zeros((2, 3)), 4)

    assert indices.shape == (2, 4)
    assert np.isfinite(squared[:, :2]).all()
    assert np.isinf(squared[:, 2:]).all()


def test_zero_neighbors_requested():
    """Test k = 0 returns no neighbors."""
    index = GroundTruthIndex(np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]]))

    indices, squared = index.query_k_nearest(np.zeros(3), 0)
    assert len(indices) == 0 and len(squared) == 0

    indices, squared = index.query_k_nearest_batch(np.zeros((2, 3)), 0)
    assert indices.shape == (2, 0) and squared.shape == (2, 0)


def test_index_keeps_its_own_copy():
    """Test that later changes to the source array do not affect the index."""
    points = np.array([[0.0, 0.0, 0.0], [1.0, 1.0, 1.0]])
    index = GroundTruthIndex(points)
    points[:] = 100.0

    _, distances, found = index.query_nearest(np.zeros((1, 3)))

    assert found[0]
    assert distances[0] == 0.0


def test_max_neighbors_for_voxel():
    """Test the neighbor-count heuristic and its lower bound."""
    assert max_neighbors_for_voxel(0.1) == 250
    assert max_neighbors_for_voxel(0.05) == 62
    assert max_neighbors_for_voxel(0.001) == 1
