"""
Reconstruction Error Pass
=========================

Ground truth -> map distances: every ground-truth point is looked up in the
map's interpolated distance field and classified as
- unknown: the map cannot interpolate there
- truncated: |d| > maximum_distance, contributes maximum_distance (or nothing
  when truncated points are ignored)
- regular: contributes |d|
Inliers are counted on the raw |d| independently of truncation.
"""

import logging
from typing import Callable, Optional, Tuple

import numpy as np
from tqdm import tqdm

from .error_statistics import ErrorStatistics, EvaluationSummary
from .map_query import MapDistanceQuery
from ..utils.config import EvaluationRequest


def distance_query_flags(request: EvaluationRequest) -> Tuple[bool, bool]:
    """(consider_change_state, include_free_space) for the request's map kind."""
    if request.is_single_tsdf:
        return False, True
    return True, False


class ReconstructionErrorEvaluator:
    """Computes the ground-truth-to-map error summary."""

    def __init__(self,
                 map_query: MapDistanceQuery,
                 logger: Optional[logging.Logger] = None,
                 show_progress: bool = True):
        self.map_query = map_query
        self.logger = logger or logging.getLogger(__name__)
        self.show_progress = show_progress
        self.statistics = ErrorStatistics()

    def evaluate(self,
                 points: np.ndarray,
                 request: EvaluationRequest,
                 should_continue: Optional[Callable[[], bool]] = None) -> EvaluationSummary:
        """
        Run the pass over all ground-truth points.

        Args:
            points: (N, 3) ground-truth points
            request: Evaluation request (thresholds and truncation policy)
            should_continue: Cooperative cancellation check, consulted per chunk

        Returns:
            EvaluationSummary; completed is False if the pass was interrupted
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        consider_change_state, include_free_space = distance_query_flags(request)
        self.statistics = ErrorStatistics()

        total_points = 0
        unknown_points = 0
        truncated_points = 0
        inliers = 0
        completed = True

        self.logger.info(f"Computing reconstruction error over {len(points)} ground truth points...")

        # Roughly 1% of the cloud per unit of work.
        chunk_size = max(1, len(points) // 100)
        with tqdm(total=len(points), desc="Reconstruction error", unit="pt",
                  disable=not self.show_progress) as bar:
            for start in range(0, len(points), chunk_size):
                if should_continue is not None and not should_continue():
                    self.logger.warning("Reconstruction error pass interrupted")
                    completed = False
                    break

                chunk = points[start:start + chunk_size]
                observed, distances = self.map_query.get_distances(
                    chunk, consider_change_state, include_free_space)

                abs_distances = np.abs(distances[observed])
                truncated = abs_distances > request.maximum_distance

                total_points += len(chunk)
                unknown_points += int(np.count_nonzero(~observed))
                truncated_points += int(np.count_nonzero(truncated))
                inliers += int(np.count_nonzero(abs_distances <= request.inlier_distance))

                if request.ignore_truncated_points:
                    self.statistics.add(abs_distances[~truncated])
                else:
                    self.statistics.add(np.where(truncated, request.maximum_distance, abs_distances))
                bar.update(len(chunk))

        summary = self.statistics.summary(
            total_points=total_points,
            unknown_points=unknown_points,
            truncated_points=truncated_points,
            inliers=inliers,
            outliers=0,
            completed=completed,
        )

        self.logger.info(f"Reconstruction error: mean={summary.mean:.6f}m, std={summary.stddev:.6f}m, "
                         f"rmse={summary.rmse:.6f}m, total={total_points}, unknown={unknown_points}, "
                         f"truncated={truncated_points}, inliers={inliers}")
        return summary
