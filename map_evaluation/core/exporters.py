"""
Map Exporters
=============

File artifacts derived from an evaluated map, written next to the map file:
- <name>.mesh.ply: all submap meshes merged into one connected mesh
- <name>.pointcloud.ply: mesh vertices with color and panoptic label
- <name>.coverage.ply: ground-truth cells observed by the map

Labeled clouds use plyfile so the integer label property survives; meshes
and plain clouds go through Open3D.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

import numpy as np
import open3d as o3d
import pandas as pd
from plyfile import PlyData, PlyElement

from .classification import decode_vertex_labels
from .coverage import CoverageResult
from .submaps import SubmapCollection
from ..utils.errors import LoadFailure, OutputWriteFailure

# Labels above this are considered corrupt and not exported.
MAX_EXPORT_LABEL = 50000

# Vertices closer than this are welded when merging meshes.
WELD_DISTANCE = 1e-6


def merge_submap_meshes(submaps: SubmapCollection) -> o3d.geometry.TriangleMesh:
    """Merge the meshes of all submaps and weld coincident vertices."""
    vertices, triangles, colors = [], [], []
    offset = 0
    for submap in submaps:
        v, t, c = submap.mesh_layer.combined()
        vertices.append(v)
        triangles.append(t + offset)
        colors.append(c)
        offset += len(v)

    mesh = o3d.geometry.TriangleMesh()
    if offset == 0:
        return mesh
    mesh.vertices = o3d.utility.Vector3dVector(np.concatenate(vertices))
    mesh.triangles = o3d.utility.Vector3iVector(np.concatenate(triangles).astype(np.int32))
    mesh.vertex_colors = o3d.utility.Vector3dVector(np.concatenate(colors).astype(np.float64) / 255.0)
    mesh.merge_close_vertices(WELD_DISTANCE)
    mesh.remove_duplicated_triangles()
    return mesh


def collect_labeled_points(submaps: SubmapCollection) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Gather labeled mesh vertices of all submaps with a classification layer.

    Returns:
        points: (N, 3) vertex positions
        colors: (N, 3) uint8 vertex colors
        labels: (N,) int64 labels, out-of-range labels already dropped
    """
    points, colors, labels = [np.zeros((0, 3))], [np.zeros((0, 3), dtype=np.uint8)], \
        [np.zeros(0, dtype=np.int64)]
    for submap in submaps:
        if not submap.has_class_layer():
            continue
        submap_label = submap.export_label()
        for block_index in submap.mesh_layer.allocated_mesh_indices():
            mesh = submap.mesh_layer.get_mesh(block_index)
            if mesh.num_vertices == 0:
                continue
            if submap.class_layer.has_block(block_index):
                keep, block_labels = decode_vertex_labels(submap.class_layer, mesh.vertices, submap_label)
            else:
                keep = np.ones(mesh.num_vertices, dtype=bool)
                block_labels = np.zeros(mesh.num_vertices, dtype=np.int64)

            keep &= (block_labels >= 0) & (block_labels <= MAX_EXPORT_LABEL)
            points.append(mesh.vertices[keep])
            colors.append(mesh.colors[keep])
            labels.append(block_labels[keep])
    return np.concatenate(points), np.concatenate(colors), np.concatenate(labels)


def load_label_map(csv_path: Path) -> Dict[int, int]:
    """
    Read an instance -> class table.

    Args:
        csv_path: CSV with at least the columns InstanceID and ClassID

    Returns:
        Dictionary instance id -> class id; rows with -1 entries are skipped
    """
    try:
        df = pd.read_csv(csv_path, usecols=['InstanceID', 'ClassID'])
    except (OSError, ValueError) as e:
        raise LoadFailure(f"Could not read label map '{csv_path}': {e}") from e
    df = df.dropna()
    df = df[(df['InstanceID'] != -1) & (df['ClassID'] != -1)]
    return {int(inst): int(cls) for inst, cls in zip(df['InstanceID'], df['ClassID'])}


def remap_labels(labels: np.ndarray, label_map: Dict[int, int]) -> np.ndarray:
    """Mapped instance ids become class * 1000 + instance, all others label * 1000."""
    labels = np.asarray(labels, dtype=np.int64)
    remapped = labels * 1000
    for instance_id, class_id in label_map.items():
        remapped[labels == instance_id] = class_id * 1000 + instance_id
    return remapped


def write_labeled_pointcloud(path: Path,
                             points: np.ndarray,
                             colors: np.ndarray,
                             labels: np.ndarray):
    """Write a binary PLY with x, y, z, red, green, blue, label."""
    vertex = np.zeros(len(points), dtype=[('x', 'f4'), ('y', 'f4'), ('z', 'f4'),
                                          ('red', 'u1'), ('green', 'u1'), ('blue', 'u1'),
                                          ('label', 'u4')])
    if len(points):
        vertex['x'], vertex['y'], vertex['z'] = np.asarray(points, dtype=np.float32).T
        vertex['red'], vertex['green'], vertex['blue'] = np.asarray(colors, dtype=np.uint8).T
        vertex['label'] = np.asarray(labels, dtype=np.uint32)
    try:
        PlyData([PlyElement.describe(vertex, 'vertex')]).write(str(path))
    except OSError as e:
        raise OutputWriteFailure(f"Could not write labeled point cloud '{path}': {e}") from e


def load_labeled_pointcloud(path: Path) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Load a PLY written by write_labeled_pointcloud."""
    try:
        ply = PlyData.read(str(path))
    except OSError as e:
        raise LoadFailure(f"Could not read labeled point cloud '{path}': {e}") from e
    v = ply['vertex']
    points = np.column_stack([v['x'], v['y'], v['z']]).astype(np.float64)
    colors = np.column_stack([v['red'], v['green'], v['blue']]).astype(np.uint8)
    labels = np.asarray(v['label']).astype(np.int64)
    return points, colors, labels


class MapExporter:
    """Writes the export artifacts of one map."""

    def __init__(self,
                 output_dir: Path,
                 map_name: str,
                 logger: Optional[logging.Logger] = None):
        self.output_dir = Path(output_dir)
        self.map_name = map_name
        self.logger = logger or logging.getLogger(__name__)

    @property
    def mesh_path(self) -> Path:
        return self.output_dir / f"{self.map_name}.mesh.ply"

    @property
    def labeled_pointcloud_path(self) -> Path:
        return self.output_dir / f"{self.map_name}.pointcloud.ply"

    @property
    def coverage_path(self) -> Path:
        return self.output_dir / f"{self.map_name}.coverage.ply"

    @property
    def label_map_path(self) -> Path:
        return self.output_dir / f"{self.map_name}.csv"

    def export_mesh(self, submaps: SubmapCollection) -> Optional[Path]:
        """
        Merge all submap meshes and save them as PLY.

        Returns:
            Output path, or None if the map has no mesh

        Raises:
            OutputWriteFailure: If Open3D fails to write the file
        """
        mesh = merge_submap_meshes(submaps)
        if not mesh.has_vertices():
            self.logger.warning("Map has no mesh vertices, mesh export skipped")
            return None
        if not o3d.io.write_triangle_mesh(str(self.mesh_path), mesh):
            raise OutputWriteFailure(f"Could not write mesh '{self.mesh_path}'")
        self.logger.info(f"Exported mesh ({len(mesh.vertices)} vertices, "
                         f"{len(mesh.triangles)} triangles) to {self.mesh_path}")
        return self.mesh_path

    def export_labeled_pointcloud(self, submaps: SubmapCollection, is_single_tsdf: bool = False) -> Path:
        """
        Save labeled mesh vertices as PLY.

        For single-TSDF maps, labels are remapped with the instance -> class
        table <name>.csv when it exists next to the map.
        """
        points, colors, labels = collect_labeled_points(submaps)

        if is_single_tsdf and self.label_map_path.is_file():
            label_map = load_label_map(self.label_map_path)
            labels = remap_labels(labels, label_map)
            self.logger.info(f"Remapped labels with {len(label_map)} entries from {self.label_map_path}")

        write_labeled_pointcloud(self.labeled_pointcloud_path, points, colors, labels)
        self.logger.info(f"Exported {len(points)} labeled points to {self.labeled_pointcloud_path}")
        return self.labeled_pointcloud_path

    def export_coverage_pointcloud(self, coverage: CoverageResult) -> Optional[Path]:
        if not coverage.completed:
            self.logger.warning("Coverage pass was interrupted, partial coverage cloud not written")
            return None
        if len(coverage.cloud) == 0:
            self.logger.warning("Coverage cloud is empty, coverage export skipped")
            return None
        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(coverage.cloud)
        if not o3d.io.write_point_cloud(str(self.coverage_path), pcd, write_ascii=False):
            raise OutputWriteFailure(f"Could not write coverage cloud '{self.coverage_path}'")
        self.logger.info(f"Exported {len(coverage.cloud)} coverage points to {self.coverage_path}")
        return self.coverage_path
