"""
Classification Voxel Layers
===========================

Per-voxel semantic evidence stored next to a submap's TSDF layer. Several voxel
encodings exist; each layer has one ``ClassVoxelKind`` and every kind has its
own field layout and its own decoding function to a belonging id.

Kinds:
- binary_count / moving_binary_count: counts of observations that belonged to
  this submap vs. to other submaps; belonging id 1 (belongs) or 0 (foreign)
- panoptic_weight: running best panoptic id per voxel
- fixed_count: per-class counts over a fixed class set (column == class id)
- variable_count: per-id counts over the layer's id table

Unobserved id-based voxels decode to -1.
"""

from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .tsdf_layer import BlockIndex, group_by_block


class ClassVoxelKind(str, Enum):
    BINARY_COUNT = 'binary_count'
    MOVING_BINARY_COUNT = 'moving_binary_count'
    PANOPTIC_WEIGHT = 'panoptic_weight'
    FIXED_COUNT = 'fixed_count'
    VARIABLE_COUNT = 'variable_count'


BINARY_KINDS = (ClassVoxelKind.BINARY_COUNT, ClassVoxelKind.MOVING_BINARY_COUNT)


def _field_layout(kind: ClassVoxelKind, num_classes: int) -> Dict[str, Tuple[tuple, type, int]]:
    """Field name -> (trailing shape, dtype, initial value) for a voxel kind."""
    if kind == ClassVoxelKind.BINARY_COUNT:
        return {'belongs_count': ((), np.uint32, 0), 'foreign_count': ((), np.uint32, 0)}
    if kind == ClassVoxelKind.MOVING_BINARY_COUNT:
        return {'belongs_count': ((), np.uint8, 0), 'foreign_count': ((), np.uint8, 0)}
    if kind == ClassVoxelKind.PANOPTIC_WEIGHT:
        return {'current_index': ((), np.int32, -1), 'current_weight': ((), np.float32, 0)}
    if kind in (ClassVoxelKind.FIXED_COUNT, ClassVoxelKind.VARIABLE_COUNT):
        return {'counts': ((num_classes,), np.uint32, 0)}
    raise ValueError(f"Unknown class voxel kind: {kind}")


class ClassBlock:
    """Classification voxels of one block, stored as named numpy fields."""

    def __init__(self,
                 index: BlockIndex,
                 kind: ClassVoxelKind,
                 voxels_per_side: int,
                 num_classes: int = 0):
        self.index: BlockIndex = tuple(int(i) for i in index)
        self.kind = ClassVoxelKind(kind)
        self.voxels_per_side = int(voxels_per_side)
        self.fields: Dict[str, np.ndarray] = {}
        for name, (trailing, dtype, initial) in _field_layout(self.kind, num_classes).items():
            shape = (self.voxels_per_side,) * 3 + trailing
            self.fields[name] = np.full(shape, initial, dtype=dtype)

    def __getitem__(self, name: str) -> np.ndarray:
        return self.fields[name]


def _decode_binary_count(block: ClassBlock, local: np.ndarray, layer: 'ClassLayer') -> np.ndarray:
    belongs = block['belongs_count'][local[:, 0], local[:, 1], local[:, 2]].astype(np.int64)
    foreign = block['foreign_count'][local[:, 0], local[:, 1], local[:, 2]].astype(np.int64)
    return (belongs > foreign).astype(np.int64)


def _decode_panoptic_weight(block: ClassBlock, local: np.ndarray, layer: 'ClassLayer') -> np.ndarray:
    return block['current_index'][local[:, 0], local[:, 1], local[:, 2]].astype(np.int64)


def _decode_fixed_count(block: ClassBlock, local: np.ndarray, layer: 'ClassLayer') -> np.ndarray:
    counts = block['counts'][local[:, 0], local[:, 1], local[:, 2]]
    if counts.shape[1] == 0:
        return np.full(len(local), -1, dtype=np.int64)
    ids = np.argmax(counts, axis=1).astype(np.int64)
    return np.where(counts.max(axis=1) > 0, ids, -1)


def _decode_variable_count(block: ClassBlock, local: np.ndarray, layer: 'ClassLayer') -> np.ndarray:
    counts = block['counts'][local[:, 0], local[:, 1], local[:, 2]]
    if counts.shape[1] == 0:
        return np.full(len(local), -1, dtype=np.int64)
    table = np.asarray(layer.class_ids, dtype=np.int64)
    ids = table[np.argmax(counts, axis=1)]
    return np.where(counts.max(axis=1) > 0, ids, -1)


_DECODERS: Dict[ClassVoxelKind, Callable[[ClassBlock, np.ndarray, 'ClassLayer'], np.ndarray]] = {
    ClassVoxelKind.BINARY_COUNT: _decode_binary_count,
    ClassVoxelKind.MOVING_BINARY_COUNT: _decode_binary_count,
    ClassVoxelKind.PANOPTIC_WEIGHT: _decode_panoptic_weight,
    ClassVoxelKind.FIXED_COUNT: _decode_fixed_count,
    ClassVoxelKind.VARIABLE_COUNT: _decode_variable_count,
}


class ClassLayer:
    """Sparse classification layer with a single voxel kind."""

    def __init__(self,
                 kind: ClassVoxelKind,
                 voxel_size: float,
                 voxels_per_side: int,
                 num_classes: int = 0,
                 class_ids: Optional[Sequence[int]] = None):
        self.kind = ClassVoxelKind(kind)
        self.voxel_size = float(voxel_size)
        self.voxels_per_side = int(voxels_per_side)
        if self.kind == ClassVoxelKind.VARIABLE_COUNT:
            self.class_ids: List[int] = list(class_ids or [])
            self.num_classes = len(self.class_ids)
        else:
            self.class_ids = list(class_ids or [])
            self.num_classes = int(num_classes)
        self.blocks: Dict[BlockIndex, ClassBlock] = {}

    def __len__(self) -> int:
        return len(self.blocks)

    def allocate_block(self, index: BlockIndex) -> ClassBlock:
        index = tuple(int(i) for i in index)
        block = self.blocks.get(index)
        if block is None:
            block = ClassBlock(index, self.kind, self.voxels_per_side, self.num_classes)
            self.blocks[index] = block
        return block

    def get_block(self, index: BlockIndex) -> Optional[ClassBlock]:
        return self.blocks.get(tuple(int(i) for i in index))

    def has_block(self, index: BlockIndex) -> bool:
        return tuple(int(i) for i in index) in self.blocks

    def allocated_block_indices(self) -> List[BlockIndex]:
        return list(self.blocks.keys())

    def belonging_ids(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Decode the belonging id of the class voxel containing each point.

        Returns:
            found: (N,) True where a class block exists at the point
            ids: (N,) decoded ids (0 where not found)
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        n = len(points)
        found = np.zeros(n, dtype=bool)
        ids = np.zeros(n, dtype=np.int64)
        if n == 0 or not self.blocks:
            return found, ids

        voxel_indices = np.floor(points / self.voxel_size).astype(np.int64)
        block_indices = np.floor_divide(voxel_indices, self.voxels_per_side)
        local = voxel_indices - block_indices * self.voxels_per_side
        decode = _DECODERS[self.kind]
        for key, sel in group_by_block(block_indices):
            block = self.blocks.get(key)
            if block is None:
                continue
            ids[sel] = decode(block, local[sel], self)
            found[sel] = True
        return found, ids

    def rejects(self, points: np.ndarray) -> np.ndarray:
        """
        True where the class voxel states that the point is foreign to the
        submap. Only binary encodings carry submap membership.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if self.kind not in BINARY_KINDS:
            return np.zeros(len(points), dtype=bool)
        found, ids = self.belonging_ids(points)
        return found & (ids == 0)


def decode_vertex_labels(class_layer: ClassLayer,
                         vertices: np.ndarray,
                         submap_label: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Labels for exported mesh vertices.

    Binary encodings keep only vertices whose voxel belongs to the submap and
    give them ``submap_label``; id encodings use the decoded id. Vertices
    without a class block get label 0.

    Args:
        class_layer: The submap's classification layer
        vertices: (N, 3) vertex positions
        submap_label: class_id * 1000 (+ instance_id for instance submaps)

    Returns:
        keep: (N,) bool mask of vertices to export
        labels: (N,) int64 labels
    """
    found, ids = class_layer.belonging_ids(vertices)
    labels = np.zeros(len(found), dtype=np.int64)
    if class_layer.kind in BINARY_KINDS:
        keep = ~found | (ids != 0)
        labels[found] = submap_label
    else:
        keep = np.ones(len(found), dtype=bool)
        labels[found] = ids[found]
    return keep, labels
