"""
Ground Truth Spatial Index
==========================

k-nearest-neighbor queries over the ground-truth point set, backed by
scipy's cKDTree. The index keeps its own copy of the coordinates; when the
ground truth changes a new index must be built.
"""

import logging
from typing import Optional, Tuple

import numpy as np
from scipy.spatial import cKDTree

# Neighbors per cubic meter scaled by voxel_size^2, bounds the k of per-voxel queries.
MAX_NEIGHBORS_FACTOR = 25000


def max_neighbors_for_voxel(voxel_size: float, factor: int = MAX_NEIGHBORS_FACTOR) -> int:
    """Expected neighbor count within about one voxel of a query point."""
    return max(1, int(factor / (1.0 / voxel_size) ** 2))


class GroundTruthIndex:
    """KD-tree over a snapshot of the ground-truth cloud."""

    def __init__(self, points: np.ndarray, logger: Optional[logging.Logger] = None):
        """
        Build the index.

        Args:
            points: (N, 3) ground-truth coordinates; copied
            logger: Optional logger instance
        """
        self.logger = logger or logging.getLogger(__name__)
        self.points = np.array(points, dtype=np.float64, copy=True).reshape(-1, 3)
        self._tree: Optional[cKDTree] = cKDTree(self.points) if len(self.points) else None
        self.logger.debug(f"Built KD-tree over {len(self.points)} ground truth points")

    def __len__(self) -> int:
        return len(self.points)

    @property
    def is_empty(self) -> bool:
        return self._tree is None

    def query_k_nearest(self, point: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Up to k nearest ground-truth points of one query point.

        Returns:
            indices: (m,) point indices, m <= k, ascending by distance
            squared_distances: (m,) squared distances
        """
        indices, squared = self.query_k_nearest_batch(np.asarray(point).reshape(1, 3), k)
        valid = np.isfinite(squared[0])
        return indices[0][valid], squared[0][valid]

    def query_k_nearest_batch(self, points: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        k nearest neighbors of many query points.

        Returns:
            indices: (N, k) point indices, len(self) where missing
            squared_distances: (N, k) squared distances, inf where missing
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        k = max(0, int(k))
        if self._tree is None or len(points) == 0 or k == 0:
            return (np.full((len(points), k), len(self.points), dtype=np.int64),
                    np.full((len(points), k), np.inf))
        distances, indices = self._tree.query(points, k=k)
        distances = np.asarray(distances, dtype=np.float64).reshape(len(points), k)
        indices = np.asarray(indices, dtype=np.int64).reshape(len(points), k)
        return indices, distances ** 2

    def query_nearest(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Nearest ground-truth point of many query points.

        Returns:
            indices: (N,) nearest indices (0 where not found)
            distances: (N,) Euclidean distances (inf where not found)
            found: (N,) False when the index is empty
        """
        indices, squared = self.query_k_nearest_batch(points, 1)
        found = np.isfinite(squared[:, 0])
        return np.where(found, indices[:, 0], 0), np.sqrt(squared[:, 0]), found
