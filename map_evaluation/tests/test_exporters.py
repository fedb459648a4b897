"""
Tests for mesh, labeled point cloud and coverage exports.
"""

import numpy as np
import open3d as o3d
import pandas as pd

from map_evaluation.core.classification import ClassLayer, ClassVoxelKind
from map_evaluation.core.coverage import CoverageResult
from map_evaluation.core.exporters import (
    MapExporter, collect_labeled_points, load_label_map, load_labeled_pointcloud,
    remap_labels, write_labeled_pointcloud,
)
from map_evaluation.core.submaps import PanopticLabel, SubmapCollection
from map_evaluation.tests.synthetic import build_plane_submap


def binary_class_layer(foreign_x_voxels=()):
    """Class layer claiming block (0, 0, 0) except for the given x voxel slabs."""
    layer = ClassLayer(ClassVoxelKind.BINARY_COUNT, 0.1, 8)
    block = layer.allocate_block((0, 0, 0))
    block['belongs_count'][...] = 2
    for x in foreign_x_voxels:
        block['belongs_count'][x] = 0
        block['foreign_count'][x] = 1
    return layer


def test_remap_labels():
    """Test mapped instances become class * 1000 + instance, others label * 1000."""
    np.testing.assert_array_equal(remap_labels(np.array([5, 7]), {5: 3}), [3005, 7000])


def test_load_label_map_skips_invalid_rows(tmp_path):
    """Test the CSV reader ignores extra columns and -1 entries."""
    csv_path = tmp_path / "labels.csv"
    pd.DataFrame({'InstanceID': [1, 2, -1], 'ClassID': [4, -1, 6], 'Name': ['a', 'b', 'c']}) \
        .to_csv(csv_path, index=False)

    assert load_label_map(csv_path) == {1: 4}


def test_labeled_pointcloud_file_roundtrip(tmp_path):
    """Test the PLY layout with a label property."""
    points = np.array([[0.0, 1.0, 2.0], [3.0, 4.0, 5.0]])
    colors = np.array([[1, 2, 3], [4, 5, 6]], dtype=np.uint8)
    labels = np.array([0, 42001])
    path = tmp_path / "cloud.ply"

    write_labeled_pointcloud(path, points, colors, labels)
    loaded_points, loaded_colors, loaded_labels = load_labeled_pointcloud(path)

    np.testing.assert_allclose(loaded_points, points)
    np.testing.assert_array_equal(loaded_colors, colors)
    np.testing.assert_array_equal(loaded_labels, labels)


def test_collect_labeled_points():
    """Test label assignment, foreign vertex removal and the label cap."""
    submaps = SubmapCollection([
        # Vertices at x = 0.1 fall into voxel slab 1, which is foreign.
        build_plane_submap(0, class_id=3, instance_id=7, label=PanopticLabel.INSTANCE,
                           class_layer=binary_class_layer(foreign_x_voxels=(1,))),
        build_plane_submap(1, class_id=60, class_layer=binary_class_layer()),
        build_plane_submap(2),
    ])

    points, colors, labels = collect_labeled_points(submaps)

    assert len(points) == 6
    assert (labels == 3007).all()
    assert (points[:, 0] > 0.2).all()
    assert colors.shape == (6, 3)


def test_export_labeled_pointcloud_remaps_single_tsdf(tmp_path):
    """Test the label map next to the map is applied for single-TSDF maps."""
    submaps = SubmapCollection([build_plane_submap(0, class_id=2, class_layer=binary_class_layer())])
    pd.DataFrame({'InstanceID': [2000], 'ClassID': [9]}).to_csv(tmp_path / "scene.csv", index=False)
    exporter = MapExporter(tmp_path, "scene")

    path = exporter.export_labeled_pointcloud(submaps, is_single_tsdf=True)

    _, _, labels = load_labeled_pointcloud(path)
    assert path.name == "scene.pointcloud.ply"
    assert (labels == 9 * 1000 + 2000).all()


def test_export_mesh_welds_shared_vertices(tmp_path):
    """Test two identical submap meshes merge into one."""
    submaps = SubmapCollection([build_plane_submap(0), build_plane_submap(1)])

    path = MapExporter(tmp_path, "scene").export_mesh(submaps)

    mesh = o3d.io.read_triangle_mesh(str(path))
    assert path.name == "scene.mesh.ply"
    assert len(mesh.vertices) == 9


def test_export_mesh_skips_empty_map(tmp_path):
    """Test no file is written for a map without meshes."""
    assert MapExporter(tmp_path, "scene").export_mesh(SubmapCollection()) is None


def test_export_coverage_pointcloud(tmp_path):
    """Test the coverage cloud export and the empty case."""
    exporter = MapExporter(tmp_path, "scene")

    path = exporter.export_coverage_pointcloud(CoverageResult(cloud=np.array([[0.0, 0.0, 0.0],
                                                                              [1.0, 0.0, 0.0]])))

    assert path.name == "scene.coverage.ply"
    assert len(o3d.io.read_point_cloud(str(path)).points) == 2
    assert exporter.export_coverage_pointcloud(CoverageResult()) is None
