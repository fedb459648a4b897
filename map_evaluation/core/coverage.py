"""
Coverage Point Cloud
====================

Voxelizes the ground truth into a fixed grid of 5 cm cells and keeps one
representative point per cell that the map has observed:
- occupied cells use the centroid of their ground-truth points
- empty cells inside the bounding box use a synthetic point derived from
  the cell index

The resulting cloud shows which parts of the scene the map covers.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np
from tqdm import tqdm

from .map_query import MapDistanceQuery

COVERAGE_CELL_SIZE = 0.05


def empty_cell_centroid(cell_indices: np.ndarray, cell_size: float) -> np.ndarray:
    """
    Representative point of cells without ground-truth points.

    The cell corner ``ijk * cell_size`` shifted by half a cell along the
    normalized index vector; a zero index vector gets no shift.

    Args:
        cell_indices: (N, 3) integer cell indices

    Returns:
        (N, 3) points
    """
    ijk = np.asarray(cell_indices, dtype=np.float64).reshape(-1, 3)
    norms = np.linalg.norm(ijk, axis=1, keepdims=True)
    direction = np.divide(ijk, norms, out=np.zeros_like(ijk), where=norms > 0)
    return ijk * cell_size + direction * cell_size / 2.0


@dataclass
class CoverageResult:
    """Observed representative points and coverage ratios."""
    cloud: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    total_cells: int = 0
    occupied_cells: int = 0
    observed_cells: int = 0
    observed_occupied_cells: int = 0
    completed: bool = True

    @property
    def coverage_ratio(self) -> float:
        return self.observed_cells / self.total_cells if self.total_cells else 0.0

    @property
    def surface_coverage_ratio(self) -> float:
        return self.observed_occupied_cells / self.occupied_cells if self.occupied_cells else 0.0


class CoverageGrid:
    """Voxel grid over a point set with a dense leaf layout."""

    def __init__(self,
                 cell_size: float,
                 min_box: np.ndarray,
                 max_box: np.ndarray,
                 centroids: np.ndarray,
                 layout: np.ndarray):
        self.cell_size = float(cell_size)
        self.min_box = min_box
        self.max_box = max_box
        self.centroids = centroids
        self.layout = layout

    @classmethod
    def from_points(cls, points: np.ndarray, cell_size: float = COVERAGE_CELL_SIZE) -> 'CoverageGrid':
        """
        Voxelize points.

        Args:
            points: (N, 3) ground-truth points
            cell_size: Edge length of a cell in meters

        Returns:
            CoverageGrid; an empty point set yields a grid without cells
        """
        if cell_size <= 0:
            raise ValueError(f"cell_size must be > 0 (got {cell_size})")
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            return cls(cell_size, np.zeros(3, dtype=np.int64), np.full(3, -1, dtype=np.int64),
                       np.zeros((0, 3)), np.full((0, 0, 0), -1, dtype=np.int32))

        leaves = np.floor(points / cell_size).astype(np.int64)
        min_box = leaves.min(axis=0)
        max_box = leaves.max(axis=0)

        keys, inverse = np.unique(leaves, axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        counts = np.bincount(inverse, minlength=len(keys)).astype(np.float64)
        centroids = np.stack([np.bincount(inverse, weights=points[:, axis], minlength=len(keys))
                              for axis in range(3)], axis=1) / counts[:, None]

        layout = np.full(tuple(max_box - min_box + 1), -1, dtype=np.int32)
        local = keys - min_box
        layout[local[:, 0], local[:, 1], local[:, 2]] = np.arange(len(keys), dtype=np.int32)
        return cls(cell_size, min_box, max_box, centroids, layout)

    @property
    def dimensions(self) -> np.ndarray:
        return np.maximum(self.max_box - self.min_box + 1, 0)

    @property
    def total_cells(self) -> int:
        return int(np.prod(self.dimensions))

    @property
    def occupied_cells(self) -> int:
        return len(self.centroids)

    def centroid_index_at(self, ijk) -> int:
        """Index into centroids of the cell ijk, -1 for empty or out-of-box cells."""
        local = np.asarray(ijk, dtype=np.int64) - self.min_box
        if np.any(local < 0) or np.any(local >= self.dimensions):
            return -1
        return int(self.layout[local[0], local[1], local[2]])

    def representative_points(self, i: int):
        """
        Representative points of the slab of cells with x index i.

        Returns:
            points: (M, 3) one point per cell of the slab
            occupied: (M,) True where the cell holds ground truth
        """
        j, k = np.meshgrid(np.arange(self.min_box[1], self.max_box[1] + 1),
                           np.arange(self.min_box[2], self.max_box[2] + 1), indexing='ij')
        ijk = np.stack([np.full(j.size, i, dtype=np.int64), j.reshape(-1), k.reshape(-1)], axis=1)
        local = ijk - self.min_box
        indices = self.layout[local[:, 0], local[:, 1], local[:, 2]]
        occupied = indices >= 0

        points = empty_cell_centroid(ijk, self.cell_size)
        points[occupied] = self.centroids[indices[occupied]]
        return points, occupied


class CoverageBuilder:
    """Collects the grid cells observed by a map."""

    def __init__(self,
                 map_query: MapDistanceQuery,
                 logger: Optional[logging.Logger] = None,
                 show_progress: bool = True):
        self.map_query = map_query
        self.logger = logger or logging.getLogger(__name__)
        self.show_progress = show_progress

    def build(self,
              grid: CoverageGrid,
              should_continue: Optional[Callable[[], bool]] = None) -> CoverageResult:
        """
        Test every cell of the grid's box against the map.

        Args:
            grid: Voxelized ground truth
            should_continue: Cooperative cancellation check, consulted per x slab

        Returns:
            CoverageResult with the observed representative points
        """
        result = CoverageResult(total_cells=grid.total_cells, occupied_cells=grid.occupied_cells)
        if grid.total_cells == 0:
            self.logger.warning("Coverage grid is empty, no coverage cloud computed")
            return result

        self.logger.info(f"Computing coverage over {grid.total_cells} cells "
                         f"({grid.occupied_cells} occupied)...")
        clouds = []
        with tqdm(total=int(grid.dimensions[0]), desc="Coverage", unit="slab",
                  disable=not self.show_progress) as bar:
            for i in range(int(grid.min_box[0]), int(grid.max_box[0]) + 1):
                if should_continue is not None and not should_continue():
                    self.logger.warning("Coverage computation interrupted")
                    result.completed = False
                    break
                points, occupied = grid.representative_points(i)
                observed = self.map_query.is_observed(points)
                clouds.append(points[observed])
                result.observed_cells += int(np.count_nonzero(observed))
                result.observed_occupied_cells += int(np.count_nonzero(observed & occupied))
                bar.update(1)

        if clouds:
            result.cloud = np.concatenate(clouds, axis=0)
        self.logger.info(f"Coverage: {result.observed_cells}/{result.total_cells} cells observed "
                         f"({result.coverage_ratio:.1%}), surface coverage "
                         f"{result.surface_coverage_ratio:.1%}")
        return result
