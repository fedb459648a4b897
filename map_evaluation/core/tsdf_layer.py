"""
Block-Sparse TSDF Layer
=======================

Signed-distance volume stored as a sparse set of cubic voxel blocks:
- Block allocation and lookup by block index
- Vectorized voxel lookup by global voxel index
- Trilinear distance interpolation over the 8 surrounding voxel centers

A voxel with global index ``v`` is centered at ``(v + 0.5) * voxel_size``;
block ``b`` holds global voxels ``b * voxels_per_side ... + voxels_per_side``.
Voxel arrays inside a block are indexed ``[x, y, z]``.
"""

import itertools
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

BlockIndex = Tuple[int, int, int]

# Voxels with less integrated weight are treated as unobserved.
WEIGHT_EPSILON = 1e-6

_CORNER_OFFSETS = np.array(list(itertools.product((0, 1), repeat=3)), dtype=np.int64)


def group_by_block(block_indices: np.ndarray) -> Iterator[Tuple[BlockIndex, np.ndarray]]:
    """
    Group rows of a block index array.

    Args:
        block_indices: (N, 3) integer block indices

    Yields:
        (block_index, row_selection) for every distinct block index
    """
    block_indices = np.asarray(block_indices, dtype=np.int64).reshape(-1, 3)
    if len(block_indices) == 0:
        return
    keys, inverse = np.unique(block_indices, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    order = np.argsort(inverse, kind='stable')
    bounds = np.searchsorted(inverse[order], np.arange(len(keys) + 1))
    for u, key in enumerate(keys):
        yield (int(key[0]), int(key[1]), int(key[2])), order[bounds[u]:bounds[u + 1]]


class TsdfBlock:
    """Cube of voxels_per_side^3 TSDF voxels (distance, weight, color)."""

    def __init__(self, index: BlockIndex, voxel_size: float, voxels_per_side: int):
        self.index: BlockIndex = tuple(int(i) for i in index)
        self.voxel_size = float(voxel_size)
        self.voxels_per_side = int(voxels_per_side)

        shape = (self.voxels_per_side,) * 3
        self.distances = np.zeros(shape, dtype=np.float32)
        self.weights = np.zeros(shape, dtype=np.float32)
        self.colors = np.zeros(shape + (3,), dtype=np.uint8)

    @property
    def block_size(self) -> float:
        return self.voxel_size * self.voxels_per_side

    @property
    def origin(self) -> np.ndarray:
        return np.asarray(self.index, dtype=np.float64) * self.block_size

    @property
    def num_voxels(self) -> int:
        return self.voxels_per_side ** 3

    def local_indices(self) -> np.ndarray:
        """(vps^3, 3) local voxel indices in C order of the voxel arrays."""
        vps = self.voxels_per_side
        return np.indices((vps, vps, vps)).reshape(3, -1).T

    def voxel_centers(self) -> np.ndarray:
        """(vps^3, 3) voxel center coordinates, same order as local_indices()."""
        return self.origin + (self.local_indices() + 0.5) * self.voxel_size

    def global_voxel_indices(self) -> np.ndarray:
        return np.asarray(self.index, dtype=np.int64) * self.voxels_per_side + self.local_indices()


class TsdfLayer:
    """Sparse collection of TsdfBlocks sharing voxel size and block resolution."""

    def __init__(self, voxel_size: float, voxels_per_side: int = 16):
        if voxel_size <= 0:
            raise ValueError(f"voxel_size must be > 0 (got {voxel_size})")
        if voxels_per_side <= 0:
            raise ValueError(f"voxels_per_side must be > 0 (got {voxels_per_side})")
        self.voxel_size = float(voxel_size)
        self.voxels_per_side = int(voxels_per_side)
        self.blocks: Dict[BlockIndex, TsdfBlock] = {}

    @property
    def block_size(self) -> float:
        return self.voxel_size * self.voxels_per_side

    def __len__(self) -> int:
        return len(self.blocks)

    def allocate_block(self, index: BlockIndex) -> TsdfBlock:
        """Return the block at index, creating it if needed."""
        index = tuple(int(i) for i in index)
        block = self.blocks.get(index)
        if block is None:
            block = TsdfBlock(index, self.voxel_size, self.voxels_per_side)
            self.blocks[index] = block
        return block

    def get_block(self, index: BlockIndex) -> Optional[TsdfBlock]:
        return self.blocks.get(tuple(int(i) for i in index))

    def has_block(self, index: BlockIndex) -> bool:
        return tuple(int(i) for i in index) in self.blocks

    def remove_block(self, index: BlockIndex):
        self.blocks.pop(tuple(int(i) for i in index), None)

    def allocated_block_indices(self) -> List[BlockIndex]:
        return list(self.blocks.keys())

    def voxel_indices_from_points(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return np.floor(points / self.voxel_size).astype(np.int64)

    def block_indices_from_points(self, points: np.ndarray) -> np.ndarray:
        return np.floor_divide(self.voxel_indices_from_points(points), self.voxels_per_side)

    def voxel_centers_from_indices(self, voxel_indices: np.ndarray) -> np.ndarray:
        return (np.asarray(voxel_indices, dtype=np.float64) + 0.5) * self.voxel_size

    def bounds(self) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Axis-aligned (min, max) corners of all allocated blocks, None if empty."""
        if not self.blocks:
            return None
        indices = np.array(list(self.blocks.keys()), dtype=np.float64)
        return indices.min(axis=0) * self.block_size, (indices.max(axis=0) + 1) * self.block_size

    def lookup_field(self,
                     voxel_indices: np.ndarray,
                     field: str) -> Tuple[np.ndarray, np.ndarray]:
        """
        Gather one per-voxel field for many global voxel indices.

        Args:
            voxel_indices: (N, 3) global voxel indices
            field: 'distances', 'weights' or 'colors'

        Returns:
            allocated: (N,) True where the owning block exists
            values: field values, zero where unallocated
        """
        voxel_indices = np.asarray(voxel_indices, dtype=np.int64).reshape(-1, 3)
        n = len(voxel_indices)
        allocated = np.zeros(n, dtype=bool)
        trailing = (3,) if field == 'colors' else ()
        dtype = np.uint8 if field == 'colors' else np.float64
        values = np.zeros((n,) + trailing, dtype=dtype)
        if n == 0 or not self.blocks:
            return allocated, values

        vps = self.voxels_per_side
        block_indices = np.floor_divide(voxel_indices, vps)
        local = voxel_indices - block_indices * vps
        for key, sel in group_by_block(block_indices):
            block = self.blocks.get(key)
            if block is None:
                continue
            idx = local[sel]
            values[sel] = getattr(block, field)[idx[:, 0], idx[:, 1], idx[:, 2]]
            allocated[sel] = True
        return allocated, values

    def lookup_voxels(self, voxel_indices: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Distances of many voxels.

        Returns:
            observed: (N,) True where the voxel is allocated and has weight
            distances: (N,) stored distances (0 where unobserved)
        """
        allocated, distances = self.lookup_field(voxel_indices, 'distances')
        _, weights = self.lookup_field(voxel_indices, 'weights')
        observed = allocated & (weights >= WEIGHT_EPSILON)
        return observed, np.where(observed, distances, 0.0)

    def get_voxel_distances(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Distance of the voxel containing each point, without interpolation."""
        return self.lookup_voxels(self.voxel_indices_from_points(points))


class TsdfInterpolator:
    """Trilinear distance interpolation on a TsdfLayer."""

    def __init__(self, layer: TsdfLayer):
        self.layer = layer

    def get_distances(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Interpolate the signed distance at many points.

        A point is observed only if all 8 voxels around it are allocated and
        observed; interpolating into unknown space is not allowed.

        Args:
            points: (N, 3) query points

        Returns:
            observed: (N,) bool
            distances: (N,) interpolated distances (0 where unobserved)
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        n = len(points)
        if n == 0 or not self.layer.blocks:
            return np.zeros(n, dtype=bool), np.zeros(n, dtype=np.float64)

        scaled = points / self.layer.voxel_size - 0.5
        base = np.floor(scaled).astype(np.int64)
        frac = scaled - base

        corners = base[:, None, :] + _CORNER_OFFSETS[None, :, :]
        found, values = self.layer.lookup_voxels(corners.reshape(-1, 3))
        found = found.reshape(n, 8)
        values = values.reshape(n, 8)

        weights = np.where(_CORNER_OFFSETS[None, :, :] == 1,
                           frac[:, None, :], 1.0 - frac[:, None, :]).prod(axis=2)
        observed = found.all(axis=1)
        distances = np.where(observed, (weights * values).sum(axis=1), 0.0)
        return observed, distances

    def get_distance(self, point: np.ndarray) -> Tuple[bool, float]:
        observed, distances = self.get_distances(np.asarray(point).reshape(1, 3))
        return bool(observed[0]), float(distances[0])
