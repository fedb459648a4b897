"""
Map Distance Queries
====================

Uniform "distance at point" and "is observed" access over both map kinds:
- SubmapCollectionQuery: multi-volume map, readings combined across submaps
- TsdfLayerQuery: one dense TSDF layer

Evaluators depend only on MapDistanceQuery. Queries hold a non-owning
reference to a map owned by the orchestrator for the duration of a run.
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple

import numpy as np

from .submaps import SubmapCollection
from .tsdf_layer import TsdfInterpolator, TsdfLayer


class MapDistanceQuery(ABC):
    """Capability interface for distance queries into a volumetric map."""

    @abstractmethod
    def get_distances(self,
                      points: np.ndarray,
                      consider_change_state: bool = True,
                      include_free_space: bool = False) -> Tuple[np.ndarray, np.ndarray]:
        """
        Interpolated signed distance at many points.

        Args:
            points: (N, 3) query points
            consider_change_state: Skip absent/unobserved volumes and readings
                the classification layer marks as foreign
            include_free_space: Let free-space volumes answer

        Returns:
            observed: (N,) bool
            distances: (N,) signed distances (0 where unobserved)
        """

    @abstractmethod
    def bounds(self) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Axis-aligned bounds of the allocated (observable) region."""

    def get_distance(self,
                     point: np.ndarray,
                     consider_change_state: bool = True,
                     include_free_space: bool = False) -> Tuple[bool, float]:
        observed, distances = self.get_distances(
            np.asarray(point, dtype=np.float64).reshape(1, 3),
            consider_change_state, include_free_space)
        return bool(observed[0]), float(distances[0])

    def is_observed(self, points: np.ndarray) -> np.ndarray:
        """True where any volume can interpolate a distance."""
        observed, _ = self.get_distances(points, consider_change_state=False,
                                         include_free_space=True)
        return observed


class TsdfLayerQuery(MapDistanceQuery):
    """Queries answered by one dense TSDF layer; flags have no effect."""

    def __init__(self, layer: TsdfLayer):
        self.layer = layer
        self._interpolator = TsdfInterpolator(layer)

    def get_distances(self, points, consider_change_state=True, include_free_space=False):
        return self._interpolator.get_distances(points)

    def bounds(self):
        return self.layer.bounds()


class SubmapCollectionQuery(MapDistanceQuery):
    """
    Queries over a submap collection. Every eligible submap whose bounds
    contain a point is interpolated; the reading closest to a surface wins.
    """

    def __init__(self, submaps: SubmapCollection):
        self.submaps = submaps

    def get_distances(self, points, consider_change_state=True, include_free_space=False):
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        n = len(points)
        observed = np.zeros(n, dtype=bool)
        distances = np.zeros(n, dtype=np.float64)
        best = np.full(n, np.inf)

        for submap in self.submaps:
            if submap.is_free_space() and not include_free_space:
                continue
            if consider_change_state and submap.is_inactive():
                continue
            sel = np.flatnonzero(submap.contains(points))
            if len(sel) == 0:
                continue

            candidates = points[sel]
            valid, values = TsdfInterpolator(submap.tsdf_layer).get_distances(candidates)
            if consider_change_state and submap.has_class_layer():
                valid &= ~submap.class_layer.rejects(candidates)

            better = valid & (np.abs(values) < best[sel])
            idx = sel[better]
            distances[idx] = values[better]
            best[idx] = np.abs(values[better])
            observed[idx] = True
        return observed, distances

    def bounds(self):
        lowers, uppers = [], []
        for submap in self.submaps:
            bounds = submap.tsdf_layer.bounds()
            if bounds is not None:
                lowers.append(bounds[0])
                uppers.append(bounds[1])
        if not lowers:
            return None
        return np.min(lowers, axis=0), np.max(uppers, axis=0)


def create_map_query(submaps: Optional[SubmapCollection] = None,
                     tsdf_layer: Optional[TsdfLayer] = None) -> MapDistanceQuery:
    """Build the query variant for whichever map representation is loaded."""
    if tsdf_layer is not None:
        return TsdfLayerQuery(tsdf_layer)
    if submaps is not None:
        return SubmapCollectionQuery(submaps)
    raise ValueError("No map to query: provide submaps or a TSDF layer")
