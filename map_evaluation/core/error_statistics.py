"""
Error statistics shared by the reconstruction and mesh passes.

Samples are retained until the summary is computed: the standard deviation
needs the mean first, RMSE needs the raw squares.
"""

from dataclasses import dataclass, asdict
from typing import Dict, Any, List

import numpy as np

RECONSTRUCTION_COLUMNS = [
    'MeanError', 'StdError', 'RMSE', 'TotalPoints', 'UnknownPoints', 'TruncatedPoints', 'Inliers',
]
MESH_COLUMNS = ['MeshMeanError', 'MeshStdError', 'MeshRMSE', 'MeshInliers', 'MeshOutliers']
COMPLETED_COLUMN = 'Completed'


@dataclass
class EvaluationSummary:
    """Result of one evaluation pass."""
    mean: float = 0.0
    stddev: float = 0.0
    rmse: float = 0.0
    total_points: int = 0
    unknown_points: int = 0
    truncated_points: int = 0
    inliers: int = 0
    outliers: int = 0
    num_samples: int = 0
    completed: bool = True

    def reconstruction_values(self) -> List[Any]:
        return [self.mean, self.stddev, self.rmse, self.total_points,
                self.unknown_points, self.truncated_points, self.inliers]

    def mesh_values(self) -> List[Any]:
        return [self.mean, self.stddev, self.rmse, self.inliers, self.outliers]

    @staticmethod
    def csv_header(kind: str) -> List[str]:
        """Column names of the 'reconstruction' or 'mesh' group."""
        if kind == 'reconstruction':
            return list(RECONSTRUCTION_COLUMNS)
        if kind == 'mesh':
            return list(MESH_COLUMNS)
        raise ValueError(f"Unknown column group: {kind}")

    def csv_values(self, kind: str) -> List[Any]:
        if kind == 'reconstruction':
            return self.reconstruction_values()
        if kind == 'mesh':
            return self.mesh_values()
        raise ValueError(f"Unknown column group: {kind}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ErrorStatistics:
    """Accumulates absolute error samples and inlier/outlier counts."""

    def __init__(self):
        self._chunks: List[np.ndarray] = []
        self.inliers = 0
        self.outliers = 0

    def __len__(self) -> int:
        return sum(len(chunk) for chunk in self._chunks)

    def add(self, errors: np.ndarray):
        errors = np.asarray(errors, dtype=np.float64).reshape(-1)
        if len(errors):
            self._chunks.append(errors.copy())

    def add_classified(self, errors: np.ndarray, inlier_distance: float):
        """Add samples and count each as inlier (<= inlier_distance) or outlier."""
        errors = np.asarray(errors, dtype=np.float64).reshape(-1)
        n_inliers = int(np.count_nonzero(errors <= inlier_distance))
        self.inliers += n_inliers
        self.outliers += len(errors) - n_inliers
        self.add(errors)

    def values(self) -> np.ndarray:
        if not self._chunks:
            return np.zeros(0)
        return np.concatenate(self._chunks)

    def mean(self) -> float:
        values = self.values()
        return float(values.mean()) if len(values) else 0.0

    def rmse(self) -> float:
        values = self.values()
        return float(np.sqrt(np.mean(values ** 2))) if len(values) else 0.0

    def stddev(self) -> float:
        """Sample standard deviation, 0 unless more than 2 samples."""
        values = self.values()
        if len(values) <= 2:
            return 0.0
        return float(np.sqrt(np.sum((values - values.mean()) ** 2) / (len(values) - 1)))

    def summary(self, **counters) -> EvaluationSummary:
        """
        Build a summary from the retained samples.

        Args:
            **counters: Additional EvaluationSummary fields (total_points, ...)
        """
        fields = dict(inliers=self.inliers, outliers=self.outliers)
        fields.update(counters)
        return EvaluationSummary(
            mean=self.mean(),
            stddev=self.stddev(),
            rmse=self.rmse(),
            num_samples=len(self),
            **fields,
        )
