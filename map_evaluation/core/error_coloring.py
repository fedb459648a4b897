"""
Error Coloring
==============

Colors a map by its local reconstruction error for visual inspection:
grey -> no nearby ground truth, green -> zero error, red -> maximum error.

Two modes:
- per mesh vertex: distance from the vertex to the nearest ground-truth point
- per TSDF voxel: mean or max |d| of the map distance field at the
  ground-truth points within one voxel size of the voxel center
"""

import logging
from typing import Callable, List, Optional, Tuple

import numpy as np
from tqdm import tqdm

from .spatial_index import GroundTruthIndex, MAX_NEIGHBORS_FACTOR, max_neighbors_for_voxel
from .submaps import ChangeState, Submap, SubmapCollection
from .tsdf_layer import TsdfInterpolator
from ..utils.config import EvaluationRequest

UNKNOWN_COLOR = np.array([128, 128, 128], dtype=np.uint8)

# Upper bound for the squared distance used when no neighbor can be interpolated.
_MIN_DIST_SQR_CAP = 1000.0


def error_fraction(errors: np.ndarray, maximum_distance: float) -> np.ndarray:
    """Errors clamped to [0, maximum_distance] and normalized to [0, 1]."""
    errors = np.asarray(errors, dtype=np.float64)
    return np.clip(errors, 0.0, maximum_distance) / maximum_distance


def colors_for(fractions: np.ndarray) -> np.ndarray:
    """
    Map error fractions in [0, 1] to RGB.

    Returns:
        (N, 3) uint8 colors
    """
    f = np.asarray(fractions, dtype=np.float64).reshape(-1)
    r = np.minimum((f - 0.5) * 2.0 + 1.0, 1.0) * 255.0
    g = np.where(f <= 0.5, 190.0 + 130.0 * f, (1.0 - f) * 2.0 * 255.0)
    b = np.zeros_like(f)
    return np.clip(np.stack([r, g, b], axis=1), 0, 255).astype(np.uint8)


def color_for(fraction: float) -> Tuple[int, int, int]:
    r, g, b = colors_for(np.array([fraction]))[0]
    return int(r), int(g), int(b)


def colored_map_suffix(request: EvaluationRequest) -> str:
    """File name suffix of the colored map for the request's coloring mode."""
    if request.color_by_mesh_distance:
        return "_evaluated"
    return "_evaluated_" + ("max" if request.color_by_max_error else "mean")


class ErrorColorizer:
    """Writes error colors into submap voxels or mesh vertices."""

    def __init__(self,
                 index: GroundTruthIndex,
                 logger: Optional[logging.Logger] = None,
                 show_progress: bool = True,
                 max_neighbors_factor: int = MAX_NEIGHBORS_FACTOR):
        self.index = index
        self.logger = logger or logging.getLogger(__name__)
        self.show_progress = show_progress
        self.max_neighbors_factor = max_neighbors_factor
        self.fallback_voxels = 0

    def remove_inactive_submaps(self,
                                submaps: SubmapCollection,
                                request: EvaluationRequest) -> List[int]:
        """Drop free-space and non-persistent submaps unless the map is a single TSDF."""
        if request.is_single_tsdf:
            return []
        removed = [submap.id for submap in submaps
                   if submap.is_free_space() or submap.change_state != ChangeState.PERSISTENT]
        for submap_id in removed:
            submaps.remove_submap(submap_id)
        if removed:
            self.logger.info(f"Removed {len(removed)} inactive submaps before coloring")
        return removed

    def colorize(self,
                 submaps: SubmapCollection,
                 request: EvaluationRequest,
                 should_continue: Optional[Callable[[], bool]] = None) -> bool:
        """
        Color the map in the mode selected by the request.

        Returns:
            True if every block was processed
        """
        self.remove_inactive_submaps(submaps, request)
        if request.color_by_mesh_distance:
            return self.color_by_mesh_distance(submaps, request, should_continue)
        return self.color_by_voxel_error(submaps, request, should_continue)

    def color_by_mesh_distance(self,
                               submaps: SubmapCollection,
                               request: EvaluationRequest,
                               should_continue: Optional[Callable[[], bool]] = None) -> bool:
        self.logger.info("Coloring mesh vertices by distance to ground truth...")
        with tqdm(total=submaps.num_mesh_blocks(), desc="Coloring vertices", unit="block",
                  disable=not self.show_progress) as bar:
            for submap in submaps:
                for block_index in submap.mesh_layer.allocated_mesh_indices():
                    if should_continue is not None and not should_continue():
                        self.logger.warning("Vertex coloring interrupted")
                        return False
                    mesh = submap.mesh_layer.get_mesh(block_index)
                    _, distances, found = self.index.query_nearest(mesh.vertices)
                    colors = np.tile(UNKNOWN_COLOR, (mesh.num_vertices, 1))
                    colors[found] = colors_for(error_fraction(distances[found], request.maximum_distance))
                    mesh.colors = colors
                    # Vertex colors are final; regenerating the mesh would overwrite them.
                    mesh.updated = False
                    bar.update(1)
        return True

    def color_by_voxel_error(self,
                             submaps: SubmapCollection,
                             request: EvaluationRequest,
                             should_continue: Optional[Callable[[], bool]] = None) -> bool:
        mode = "max" if request.color_by_max_error else "mean"
        self.logger.info(f"Coloring voxels by {mode} reconstruction error...")
        self.fallback_voxels = 0

        with tqdm(total=submaps.num_tsdf_blocks(), desc="Coloring voxels", unit="block",
                  disable=not self.show_progress) as bar:
            for submap in submaps:
                if not self._color_submap_voxels(submap, request, should_continue, bar):
                    self.logger.warning("Voxel coloring interrupted")
                    return False
                submap.mesh_needs_update = True
                submap.update_mesh()

        if self.fallback_voxels:
            self.logger.debug(f"{self.fallback_voxels} voxels had neighbors but no interpolable "
                              f"distance and were colored by nearest-neighbor distance")
        return True

    def _color_submap_voxels(self,
                             submap: Submap,
                             request: EvaluationRequest,
                             should_continue: Optional[Callable[[], bool]],
                             bar: tqdm) -> bool:
        layer = submap.tsdf_layer
        interpolator = TsdfInterpolator(layer)
        k = max_neighbors_for_voxel(layer.voxel_size, self.max_neighbors_factor)

        for block_index in layer.allocated_block_indices():
            if should_continue is not None and not should_continue():
                return False
            block = layer.get_block(block_index)

            # Voxels beyond the truncation distance can never be surface.
            candidates = np.flatnonzero(np.abs(block.distances.reshape(-1)) <= submap.truncation_distance)
            if len(candidates):
                local = block.local_indices()[candidates]
                centers = block.voxel_centers()[candidates]
                colors = self._voxel_colors(centers, interpolator, layer.voxel_size, k, request)
                block.colors[local[:, 0], local[:, 1], local[:, 2]] = colors
            bar.update(1)
        return True

    def _voxel_colors(self,
                      centers: np.ndarray,
                      interpolator: TsdfInterpolator,
                      voxel_size: float,
                      k: int,
                      request: EvaluationRequest) -> np.ndarray:
        n = len(centers)
        indices, squared = self.index.query_k_nearest_batch(centers, k)
        has_neighbors = np.isfinite(squared).any(axis=1)

        # Interpolate the map once per distinct ground-truth point within one voxel.
        rows, cols = np.nonzero(squared <= voxel_size * voxel_size)
        total_error = np.zeros(n)
        max_error = np.zeros(n)
        counted = np.zeros(n, dtype=np.int64)
        if len(rows):
            unique_points, inverse = np.unique(indices[rows, cols], return_inverse=True)
            inverse = inverse.reshape(-1)
            observed, distances = interpolator.get_distances(self.index.points[unique_points])
            valid = observed[inverse]
            errors = np.abs(distances[inverse])[valid]
            np.add.at(total_error, rows[valid], errors)
            np.maximum.at(max_error, rows[valid], errors)
            np.add.at(counted, rows[valid], 1)

        # No interpolable neighbor: fall back to the nearest-neighbor distance (linear units).
        fallback = counted == 0
        min_dist_sqr = np.minimum(_MIN_DIST_SQR_CAP, squared.min(axis=1))
        fallback_error = np.sqrt(min_dist_sqr)
        self.fallback_voxels += int(np.count_nonzero(fallback & has_neighbors))

        if request.color_by_max_error:
            value = np.where(fallback, fallback_error, max_error)
        else:
            value = np.where(fallback, fallback_error, total_error / np.maximum(counted, 1))

        colors = colors_for(error_fraction(value, request.maximum_distance))
        colors[~has_neighbors] = UNKNOWN_COLOR
        return colors
