"""
Map and Ground Truth I/O
========================

Map files are compressed numpy archives holding a JSON header and flat
arrays (no pickled objects):
- .panmap: a submap collection (metadata, TSDF, mesh and class layers)
- .vxblx: a single TSDF layer

Ground-truth clouds are PLY files, read with plyfile so that malformed
files fail loudly, and written with Open3D.
"""

import json
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import open3d as o3d
from plyfile import PlyData, PlyParseError

from ..core.classification import ClassBlock, ClassLayer
from ..core.mesh_layer import MeshLayer
from ..core.submaps import Submap, SubmapCollection
from ..core.tsdf_layer import TsdfLayer
from .errors import LoadFailure, OutputWriteFailure, UnsupportedFormatError

logger = logging.getLogger(__name__)

PANMAP_EXTENSION = '.panmap'
VXBLX_EXTENSION = '.vxblx'
FORMAT_VERSION = 1


@dataclass
class LoadedMap:
    """A loaded map and where its derived artifacts go."""
    path: Path
    submaps: Optional[SubmapCollection] = None
    tsdf_layer: Optional[TsdfLayer] = None

    @property
    def directory(self) -> Path:
        return self.path.parent

    @property
    def name(self) -> str:
        return self.path.stem

    @property
    def is_layer(self) -> bool:
        return self.tsdf_layer is not None


# ---------------------------------------------------------------------------
# Layer (de)serialization
# ---------------------------------------------------------------------------

def _tsdf_arrays(layer: TsdfLayer, prefix: str) -> Dict[str, np.ndarray]:
    indices = layer.allocated_block_indices()
    shape = (len(indices),) + (layer.voxels_per_side,) * 3
    distances = np.zeros(shape, dtype=np.float32)
    weights = np.zeros(shape, dtype=np.float32)
    colors = np.zeros(shape + (3,), dtype=np.uint8)
    for i, index in enumerate(indices):
        block = layer.get_block(index)
        distances[i] = block.distances
        weights[i] = block.weights
        colors[i] = block.colors
    return {
        f'{prefix}tsdf_block_indices': np.asarray(indices, dtype=np.int64).reshape(-1, 3),
        f'{prefix}tsdf_distances': distances,
        f'{prefix}tsdf_weights': weights,
        f'{prefix}tsdf_colors': colors,
    }


def _tsdf_from_arrays(data, prefix: str, voxel_size: float, voxels_per_side: int) -> TsdfLayer:
    layer = TsdfLayer(voxel_size, voxels_per_side)
    distances = data[f'{prefix}tsdf_distances']
    weights = data[f'{prefix}tsdf_weights']
    colors = data[f'{prefix}tsdf_colors']
    for i, index in enumerate(data[f'{prefix}tsdf_block_indices']):
        block = layer.allocate_block(tuple(index))
        block.distances[...] = distances[i]
        block.weights[...] = weights[i]
        block.colors[...] = colors[i]
    return layer


def _mesh_arrays(mesh_layer: MeshLayer, prefix: str) -> Dict[str, np.ndarray]:
    meshes = list(mesh_layer.meshes.values())
    return {
        f'{prefix}mesh_block_indices': np.asarray([m.index for m in meshes], dtype=np.int64).reshape(-1, 3),
        f'{prefix}mesh_vertex_counts': np.asarray([m.num_vertices for m in meshes], dtype=np.int64),
        f'{prefix}mesh_triangle_counts': np.asarray([len(m.triangles) for m in meshes], dtype=np.int64),
        f'{prefix}mesh_vertices': np.concatenate([np.zeros((0, 3))] + [m.vertices for m in meshes]),
        f'{prefix}mesh_triangles': np.concatenate([np.zeros((0, 3), dtype=np.int64)] +
                                                  [m.triangles for m in meshes]),
        f'{prefix}mesh_colors': np.concatenate([np.zeros((0, 3), dtype=np.uint8)] +
                                               [m.colors for m in meshes]),
    }


def _mesh_from_arrays(data, prefix: str, block_size: float) -> MeshLayer:
    mesh_layer = MeshLayer(block_size)
    vertices = data[f'{prefix}mesh_vertices']
    triangles = data[f'{prefix}mesh_triangles']
    colors = data[f'{prefix}mesh_colors']
    v_ends = np.cumsum(data[f'{prefix}mesh_vertex_counts'])
    t_ends = np.cumsum(data[f'{prefix}mesh_triangle_counts'])
    v_start = t_start = 0
    for index, v_end, t_end in zip(data[f'{prefix}mesh_block_indices'], v_ends, t_ends):
        mesh_layer.set_mesh(tuple(index), vertices[v_start:v_end], triangles[t_start:t_end],
                            colors[v_start:v_end])
        v_start, t_start = v_end, t_end
    return mesh_layer


def _class_arrays(class_layer: ClassLayer, prefix: str) -> Dict[str, np.ndarray]:
    indices = class_layer.allocated_block_indices()
    arrays = {f'{prefix}class_block_indices': np.asarray(indices, dtype=np.int64).reshape(-1, 3)}
    template = ClassBlock((0, 0, 0), class_layer.kind, class_layer.voxels_per_side, class_layer.num_classes)
    for name, empty in template.fields.items():
        if indices:
            arrays[f'{prefix}class_{name}'] = np.stack([class_layer.get_block(index)[name] for index in indices])
        else:
            arrays[f'{prefix}class_{name}'] = np.zeros((0,) + empty.shape, dtype=empty.dtype)
    return arrays


def _class_from_arrays(data, prefix: str, meta: Dict[str, Any],
                       voxel_size: float, voxels_per_side: int) -> ClassLayer:
    class_layer = ClassLayer(meta['kind'], voxel_size, voxels_per_side,
                             meta.get('num_classes', 0), meta.get('class_ids'))
    indices = data[f'{prefix}class_block_indices']
    stored = {}
    for i, index in enumerate(indices):
        block = class_layer.allocate_block(tuple(index))
        for name in block.fields:
            if name not in stored:
                stored[name] = data[f'{prefix}class_{name}']
            block.fields[name][...] = stored[name][i]
    return class_layer


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------

def _write_archive(path: Path, header: Dict[str, Any], arrays: Dict[str, np.ndarray]):
    arrays = dict(arrays)
    arrays['header'] = np.array(json.dumps(header))
    try:
        # A file handle keeps numpy from appending '.npz'.
        with open(path, 'wb') as f:
            np.savez_compressed(f, **arrays)
    except OSError as e:
        raise OutputWriteFailure(f"Could not write map '{path}': {e}") from e


def _read_archive(path: Path, expected_format: str):
    if not path.is_file():
        raise LoadFailure(f"Map file not found: {path}")
    try:
        data = np.load(path, allow_pickle=False)
        header = json.loads(str(data['header']))
    except (OSError, ValueError, KeyError, zipfile.BadZipFile) as e:
        raise LoadFailure(f"Could not read map '{path}': {e}") from e
    if header.get('format') != expected_format:
        data.close()
        raise LoadFailure(f"'{path}' is not a {expected_format} file (found {header.get('format')})")
    return header, data


def save_tsdf_layer(layer: TsdfLayer, path: Union[str, Path]):
    """Write one TSDF layer as .vxblx."""
    path = Path(path)
    header = {
        'format': 'vxblx',
        'version': FORMAT_VERSION,
        'voxel_size': layer.voxel_size,
        'voxels_per_side': layer.voxels_per_side,
    }
    _write_archive(path, header, _tsdf_arrays(layer, ''))
    logger.debug(f"Saved TSDF layer with {len(layer)} blocks to {path}")


def load_tsdf_layer(path: Union[str, Path]) -> TsdfLayer:
    path = Path(path)
    header, data = _read_archive(path, 'vxblx')
    try:
        with data:
            layer = _tsdf_from_arrays(data, '', header['voxel_size'], header['voxels_per_side'])
    except (KeyError, ValueError) as e:
        raise LoadFailure(f"Corrupt TSDF layer '{path}': {e}") from e
    logger.debug(f"Loaded TSDF layer with {len(layer)} blocks from {path}")
    return layer


def save_submap_collection(submaps: SubmapCollection, path: Union[str, Path]):
    """Write a submap collection as .panmap."""
    path = Path(path)
    metadata, arrays = [], {}
    for i, submap in enumerate(submaps):
        prefix = f's{i}_'
        class_meta = None
        if submap.has_class_layer():
            class_meta = {
                'kind': submap.class_layer.kind.value,
                'num_classes': submap.class_layer.num_classes,
                'class_ids': submap.class_layer.class_ids,
            }
            arrays.update(_class_arrays(submap.class_layer, prefix))
        metadata.append({
            'id': submap.id,
            'name': submap.name,
            'label': submap.label.value,
            'change_state': submap.change_state.value,
            'class_id': submap.class_id,
            'instance_id': submap.instance_id,
            'truncation_distance': submap.truncation_distance,
            'voxel_size': submap.voxel_size,
            'voxels_per_side': submap.tsdf_layer.voxels_per_side,
            'class_layer': class_meta,
        })
        arrays.update(_tsdf_arrays(submap.tsdf_layer, prefix))
        arrays.update(_mesh_arrays(submap.mesh_layer, prefix))

    header = {'format': 'panmap', 'version': FORMAT_VERSION, 'submaps': metadata}
    _write_archive(path, header, arrays)
    logger.debug(f"Saved {len(submaps)} submaps to {path}")


def load_submap_collection(path: Union[str, Path]) -> SubmapCollection:
    path = Path(path)
    header, data = _read_archive(path, 'panmap')
    submaps = SubmapCollection()
    try:
        with data:
            for i, meta in enumerate(header['submaps']):
                prefix = f's{i}_'
                layer = _tsdf_from_arrays(data, prefix, meta['voxel_size'], meta['voxels_per_side'])
                class_layer = None
                if meta.get('class_layer'):
                    class_layer = _class_from_arrays(data, prefix, meta['class_layer'],
                                                     meta['voxel_size'], meta['voxels_per_side'])
                submaps.add_submap(Submap(
                    meta['id'], layer,
                    label=meta['label'],
                    change_state=meta['change_state'],
                    class_id=meta.get('class_id', -1),
                    instance_id=meta.get('instance_id', -1),
                    name=meta.get('name', ''),
                    truncation_distance=meta.get('truncation_distance'),
                    mesh_layer=_mesh_from_arrays(data, prefix, layer.block_size),
                    class_layer=class_layer,
                ))
    except (KeyError, ValueError) as e:
        raise LoadFailure(f"Corrupt panoptic map '{path}': {e}") from e
    logger.debug(f"Loaded {len(submaps)} submaps from {path}")
    return submaps


def load_map(path: Union[str, Path]) -> LoadedMap:
    """
    Load a map, dispatching on the file extension.

    Raises:
        UnsupportedFormatError: For extensions other than .panmap and .vxblx
        LoadFailure: If the file is missing or corrupt
    """
    path = Path(path)
    if path.suffix == PANMAP_EXTENSION:
        return LoadedMap(path=path, submaps=load_submap_collection(path))
    if path.suffix == VXBLX_EXTENSION:
        return LoadedMap(path=path, tsdf_layer=load_tsdf_layer(path))
    raise UnsupportedFormatError(f"Cannot load file of unknown extension '{path}'")


def load_ground_truth(path: Union[str, Path]) -> np.ndarray:
    """
    Load the ground-truth point cloud from a PLY file.

    Returns:
        (N, 3) float64 points; may be empty

    Raises:
        LoadFailure: If the path is empty, the file does not exist or it is
            not a readable PLY with x, y, z vertex properties
    """
    if not path:
        raise LoadFailure("No ground truth point cloud file given")
    path = Path(path)
    if not path.is_file():
        raise LoadFailure(f"Could not load ground truth point cloud from '{path}'")

    try:
        vertex = PlyData.read(str(path))['vertex']
        points = np.stack([vertex['x'], vertex['y'], vertex['z']], axis=1).astype(np.float64)
    except (PlyParseError, OSError, KeyError, ValueError) as e:
        raise LoadFailure(f"Could not parse ground truth point cloud '{path}': {e}") from e

    points = points.reshape(-1, 3)
    if len(points) == 0:
        logger.warning(f"Ground truth point cloud '{path}' contains no points")
    else:
        logger.info(f"Loaded {len(points)} ground truth points from {path}")
    return points


def save_ground_truth(points: np.ndarray, path: Union[str, Path]):
    """Write points as a PLY cloud readable by load_ground_truth."""
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64).reshape(-1, 3))
    if not o3d.io.write_point_cloud(str(path), pcd):
        raise OutputWriteFailure(f"Could not write point cloud '{path}'")
