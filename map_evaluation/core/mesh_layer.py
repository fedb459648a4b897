"""
Per-block surface meshes stored alongside a TSDF layer.

Mesh blocks share the block grid of the TSDF layer they were extracted from.
Extraction itself happens upstream; meshes are loaded with the map.
"""

from typing import Dict, List, Optional, Tuple

import numpy as np

from .tsdf_layer import BlockIndex


class MeshBlock:
    """Triangle mesh of one block: vertices, local triangle indices, colors."""

    def __init__(self,
                 index: BlockIndex,
                 vertices: Optional[np.ndarray] = None,
                 triangles: Optional[np.ndarray] = None,
                 colors: Optional[np.ndarray] = None):
        self.index: BlockIndex = tuple(int(i) for i in index)
        self.vertices = np.zeros((0, 3)) if vertices is None else \
            np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
        self.triangles = np.zeros((0, 3), dtype=np.int64) if triangles is None else \
            np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
        if colors is None:
            self.colors = np.zeros((len(self.vertices), 3), dtype=np.uint8)
        else:
            self.colors = np.asarray(colors, dtype=np.uint8).reshape(-1, 3)
        # Set when vertices or colors changed and consumers should refresh.
        self.updated = False

    @property
    def num_vertices(self) -> int:
        return len(self.vertices)


class MeshLayer:
    """Collection of MeshBlocks indexed like the TSDF blocks."""

    def __init__(self, block_size: float):
        self.block_size = float(block_size)
        self.meshes: Dict[BlockIndex, MeshBlock] = {}

    def __len__(self) -> int:
        return len(self.meshes)

    def set_mesh(self,
                 index: BlockIndex,
                 vertices: np.ndarray,
                 triangles: Optional[np.ndarray] = None,
                 colors: Optional[np.ndarray] = None) -> MeshBlock:
        mesh = MeshBlock(index, vertices, triangles, colors)
        self.meshes[mesh.index] = mesh
        return mesh

    def get_mesh(self, index: BlockIndex) -> Optional[MeshBlock]:
        return self.meshes.get(tuple(int(i) for i in index))

    def allocated_mesh_indices(self) -> List[BlockIndex]:
        return list(self.meshes.keys())

    def num_vertices(self) -> int:
        return sum(mesh.num_vertices for mesh in self.meshes.values())

    def combined(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Concatenate all blocks into (vertices, triangles, colors)."""
        vertices, triangles, colors = [np.zeros((0, 3))], [np.zeros((0, 3), dtype=np.int64)], \
            [np.zeros((0, 3), dtype=np.uint8)]
        offset = 0
        for mesh in self.meshes.values():
            vertices.append(mesh.vertices)
            triangles.append(mesh.triangles + offset)
            colors.append(mesh.colors)
            offset += mesh.num_vertices
        return np.concatenate(vertices), np.concatenate(triangles), np.concatenate(colors)
