"""
Visualization Module
====================

Snapshots of the evaluated map and error plots:
- SubmapVisualizer.publish: colored mesh (or voxel cloud) snapshot as PLY,
  optionally shown in an Open3D window
- save_error_histogram: distribution of per-point errors
"""

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np
import open3d as o3d
import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt

from .exporters import merge_submap_meshes
from .submaps import SubmapCollection
from .tsdf_layer import TsdfLayer, WEIGHT_EPSILON
from ..utils.errors import OutputWriteFailure


def voxel_surface_cloud(layer: TsdfLayer) -> o3d.geometry.PointCloud:
    """Observed voxels within one voxel of the surface, colored by voxel color."""
    points, colors = [np.zeros((0, 3))], [np.zeros((0, 3))]
    for block in layer.blocks.values():
        near = (np.abs(block.distances) <= layer.voxel_size) & (block.weights >= WEIGHT_EPSILON)
        mask = near.reshape(-1)
        points.append(block.voxel_centers()[mask])
        colors.append(block.colors.reshape(-1, 3)[mask] / 255.0)
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(np.concatenate(points))
    pcd.colors = o3d.utility.Vector3dVector(np.concatenate(colors))
    return pcd


class SubmapVisualizer:
    """Publishes the current state of an evaluated map."""

    def __init__(self,
                 output_dir: Path,
                 interactive: bool = False,
                 logger: Optional[logging.Logger] = None):
        self.output_dir = Path(output_dir)
        self.interactive = interactive
        self.logger = logger or logging.getLogger(__name__)

    def publish(self, map_data: Union[SubmapCollection, TsdfLayer], name: str) -> Optional[Path]:
        """
        Save a snapshot of the map and optionally display it.

        Args:
            map_data: Submap collection (merged mesh) or TSDF layer (voxel cloud)
            name: Snapshot base name

        Returns:
            Path of the written snapshot, None if there was nothing to show
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)

        if isinstance(map_data, TsdfLayer):
            geometry = voxel_surface_cloud(map_data)
            if not geometry.has_points():
                self.logger.warning("No surface voxels to visualize")
                return None
            path = self.output_dir / f"{name}_voxels.ply"
            written = o3d.io.write_point_cloud(str(path), geometry)
        else:
            geometry = merge_submap_meshes(map_data)
            if not geometry.has_vertices():
                self.logger.warning("No mesh to visualize")
                return None
            geometry.compute_vertex_normals()
            path = self.output_dir / f"{name}_mesh.ply"
            written = o3d.io.write_triangle_mesh(str(path), geometry)
            for submap in map_data:
                for mesh in submap.mesh_layer.meshes.values():
                    mesh.updated = False

        if not written:
            raise OutputWriteFailure(f"Could not write visualization snapshot '{path}'")
        self.logger.info(f"Visualization snapshot saved to {path}")

        if self.interactive:
            o3d.visualization.draw_geometries([geometry], window_name=name)
        return path


def save_error_histogram(errors: np.ndarray,
                         output_path: Path,
                         maximum_distance: Optional[float] = None,
                         title: str = "Reconstruction Error Distribution",
                         logger: Optional[logging.Logger] = None) -> Path:
    """Plot a histogram of absolute errors in millimeters."""
    logger = logger or logging.getLogger(__name__)
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    errors_mm = np.asarray(errors, dtype=np.float64) * 1000

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.hist(errors_mm, bins=50, edgecolor='black', alpha=0.7)
    if maximum_distance is not None:
        ax.axvline(maximum_distance * 1000, color='red', linestyle='--',
                   label=f'Maximum distance ({maximum_distance * 1000:.0f} mm)')
        ax.legend()
    ax.set_xlabel('Error (mm)')
    ax.set_ylabel('Frequency')
    ax.set_title(title)
    ax.grid(True, alpha=0.3)

    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"Histogram saved to {output_path}")
    return output_path
