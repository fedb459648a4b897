"""
Submaps and Submap Collections
==============================

A submap is an independently bounded volume of one object or background
region: a TSDF layer, its mesh layer, an optional classification layer, a
panoptic label and a temporal change state.
"""

from enum import Enum
from typing import Dict, Iterator, List, Optional

import numpy as np

from .classification import ClassLayer
from .mesh_layer import MeshLayer
from .tsdf_layer import TsdfLayer


class PanopticLabel(str, Enum):
    UNKNOWN = 'unknown'
    BACKGROUND = 'background'
    INSTANCE = 'instance'
    FREE_SPACE = 'free_space'


class ChangeState(str, Enum):
    NEW = 'new'
    PERSISTENT = 'persistent'
    ABSENT = 'absent'
    UNOBSERVED = 'unobserved'


INACTIVE_CHANGE_STATES = (ChangeState.ABSENT, ChangeState.UNOBSERVED)


class Submap:
    """One bounded volume of the map."""

    def __init__(self,
                 submap_id: int,
                 tsdf_layer: TsdfLayer,
                 label: PanopticLabel = PanopticLabel.BACKGROUND,
                 change_state: ChangeState = ChangeState.PERSISTENT,
                 class_id: int = -1,
                 instance_id: int = -1,
                 name: str = "",
                 truncation_distance: Optional[float] = None,
                 mesh_layer: Optional[MeshLayer] = None,
                 class_layer: Optional[ClassLayer] = None):
        self.id = int(submap_id)
        self.tsdf_layer = tsdf_layer
        self.label = PanopticLabel(label)
        self.change_state = ChangeState(change_state)
        self.class_id = int(class_id)
        self.instance_id = int(instance_id)
        self.name = name
        # Default truncation is two voxels.
        self.truncation_distance = float(truncation_distance) if truncation_distance is not None \
            else 2.0 * tsdf_layer.voxel_size
        self.mesh_layer = mesh_layer if mesh_layer is not None else MeshLayer(tsdf_layer.block_size)
        self.class_layer = class_layer
        self.mesh_needs_update = False

    def __repr__(self) -> str:
        return (f"Submap(id={self.id}, label={self.label.value}, "
                f"change_state={self.change_state.value}, blocks={len(self.tsdf_layer)})")

    @property
    def voxel_size(self) -> float:
        return self.tsdf_layer.voxel_size

    def has_class_layer(self) -> bool:
        return self.class_layer is not None

    def is_free_space(self) -> bool:
        return self.label == PanopticLabel.FREE_SPACE

    def is_inactive(self) -> bool:
        return self.change_state in INACTIVE_CHANGE_STATES

    def export_label(self) -> int:
        """class_id * 1000, plus the instance id for instance submaps."""
        label = self.class_id * 1000
        if self.label == PanopticLabel.INSTANCE:
            label += self.instance_id
        return label

    def contains(self, points: np.ndarray) -> np.ndarray:
        """True for points inside the bounds of the allocated blocks."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        bounds = self.tsdf_layer.bounds()
        if bounds is None:
            return np.zeros(len(points), dtype=bool)
        lower, upper = bounds
        return np.all((points >= lower) & (points <= upper), axis=1)

    def update_mesh(self):
        """
        Refresh mesh vertex colors from the voxel colors of the TSDF layer.
        Geometry is left untouched.
        """
        for mesh in self.mesh_layer.meshes.values():
            if mesh.num_vertices == 0:
                continue
            voxel_indices = self.tsdf_layer.voxel_indices_from_points(mesh.vertices)
            found, colors = self.tsdf_layer.lookup_field(voxel_indices, 'colors')
            mesh.colors[found] = colors[found]
            mesh.updated = True
        self.mesh_needs_update = False


class SubmapCollection:
    """Ordered collection of submaps keyed by id."""

    def __init__(self, submaps: Optional[List[Submap]] = None):
        self._submaps: Dict[int, Submap] = {}
        for submap in submaps or []:
            self.add_submap(submap)

    def __iter__(self) -> Iterator[Submap]:
        return iter(list(self._submaps.values()))

    def __len__(self) -> int:
        return len(self._submaps)

    def __contains__(self, submap_id: int) -> bool:
        return submap_id in self._submaps

    def add_submap(self, submap: Submap) -> Submap:
        if submap.id in self._submaps:
            raise ValueError(f"Submap id {submap.id} already exists")
        self._submaps[submap.id] = submap
        return submap

    def get_submap(self, submap_id: int) -> Submap:
        return self._submaps[submap_id]

    def remove_submap(self, submap_id: int):
        self._submaps.pop(submap_id, None)

    def submap_ids(self) -> List[int]:
        return list(self._submaps.keys())

    def num_mesh_blocks(self) -> int:
        return sum(len(submap.mesh_layer) for submap in self)

    def num_tsdf_blocks(self) -> int:
        return sum(len(submap.tsdf_layer) for submap in self)
