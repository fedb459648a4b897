"""
Mesh Error Pass
===============

Map -> ground truth distances: every vertex of every active submap mesh is
matched to its nearest ground-truth point. Free-space submaps and submaps
that are absent or unobserved are skipped, unless the map is a single TSDF.
"""

import logging
from typing import Callable, Optional

from tqdm import tqdm

from .error_statistics import ErrorStatistics, EvaluationSummary
from .spatial_index import GroundTruthIndex
from .submaps import Submap, SubmapCollection
from ..utils.config import EvaluationRequest


def is_excluded_from_mesh_error(submap: Submap, request: EvaluationRequest) -> bool:
    if request.is_single_tsdf:
        return False
    return submap.is_free_space() or submap.is_inactive()


class MeshErrorEvaluator:
    """Computes the map-vertex-to-ground-truth error summary."""

    def __init__(self,
                 index: GroundTruthIndex,
                 logger: Optional[logging.Logger] = None,
                 show_progress: bool = True):
        self.index = index
        self.logger = logger or logging.getLogger(__name__)
        self.show_progress = show_progress
        self.statistics = ErrorStatistics()

    def evaluate(self,
                 submaps: SubmapCollection,
                 request: EvaluationRequest,
                 should_continue: Optional[Callable[[], bool]] = None) -> EvaluationSummary:
        """
        Run the pass over all mesh blocks.

        Args:
            submaps: Map to evaluate
            request: Evaluation request (inlier threshold, single TSDF flag)
            should_continue: Cooperative cancellation check, consulted per block

        Returns:
            EvaluationSummary with mean/stddev/rmse/inliers/outliers
        """
        self.statistics = ErrorStatistics()
        completed = True

        self.logger.info(f"Computing mesh error over {len(submaps)} submaps...")

        with tqdm(total=submaps.num_mesh_blocks(), desc="Mesh error", unit="block",
                  disable=not self.show_progress) as bar:
            for submap in submaps:
                if is_excluded_from_mesh_error(submap, request):
                    self.logger.debug(f"Skipping {submap} in mesh error")
                    bar.update(len(submap.mesh_layer))
                    continue

                for block_index in submap.mesh_layer.allocated_mesh_indices():
                    if should_continue is not None and not should_continue():
                        completed = False
                        break
                    mesh = submap.mesh_layer.get_mesh(block_index)
                    if mesh.num_vertices:
                        # Vertices without any neighbor are skipped, not counted.
                        _, distances, found = self.index.query_nearest(mesh.vertices)
                        self.statistics.add_classified(distances[found], request.inlier_distance)
                    bar.update(1)

                if not completed:
                    self.logger.warning("Mesh error pass interrupted")
                    break

        summary = self.statistics.summary(total_points=len(self.statistics), completed=completed)
        self.logger.info(f"Mesh error: mean={summary.mean:.6f}m, std={summary.stddev:.6f}m, "
                         f"rmse={summary.rmse:.6f}m, inliers={summary.inliers}, "
                         f"outliers={summary.outliers}")
        return summary
