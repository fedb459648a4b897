"""
Tests for map and ground-truth file I/O.
"""

import json

import numpy as np
import pytest
from plyfile import PlyData, PlyElement

from map_evaluation.core.classification import ClassLayer, ClassVoxelKind
from map_evaluation.core.submaps import ChangeState, PanopticLabel, SubmapCollection
from map_evaluation.tests.synthetic import build_plane_submap
from map_evaluation.utils.errors import LoadFailure, UnsupportedFormatError
from map_evaluation.utils.map_io import (
    load_ground_truth, load_map, save_ground_truth, save_submap_collection, save_tsdf_layer,
)


def test_panmap_roundtrip(tmp_path):
    """Test submap metadata and all layers survive save and load."""
    class_layer = ClassLayer(ClassVoxelKind.VARIABLE_COUNT, 0.1, 8, class_ids=[4, 8])
    class_layer.allocate_block((0, 0, 0))['counts'][1, 2, 3] = [3, 1]
    submaps = SubmapCollection([
        build_plane_submap(0),
        build_plane_submap(5, offset=0.2, label=PanopticLabel.INSTANCE, change_state=ChangeState.ABSENT,
                           class_id=2, instance_id=11, class_layer=class_layer),
    ])
    path = tmp_path / "scene.panmap"

    save_submap_collection(submaps, path)
    loaded = load_map(path)

    assert path.exists()
    assert not loaded.is_layer
    assert loaded.name == "scene"
    assert loaded.directory == tmp_path
    assert loaded.submaps.submap_ids() == [0, 5]

    submap = loaded.submaps.get_submap(5)
    assert submap.label == PanopticLabel.INSTANCE
    assert submap.change_state == ChangeState.ABSENT
    assert submap.export_label() == 2011
    np.testing.assert_array_equal(submap.tsdf_layer.get_block((0, 0, 0)).distances,
                                  submaps.get_submap(5).tsdf_layer.get_block((0, 0, 0)).distances)
    np.testing.assert_allclose(submap.mesh_layer.combined()[0], submaps.get_submap(5).mesh_layer.combined()[0])
    assert submap.class_layer.class_ids == [4, 8]
    assert submap.class_layer.get_block((0, 0, 0))['counts'][1, 2, 3].tolist() == [3, 1]
    assert not loaded.submaps.get_submap(0).has_class_layer()


def test_vxblx_roundtrip(tmp_path, plane_layer):
    """Test a single layer loads as a layer map."""
    path = tmp_path / "scene.vxblx"

    save_tsdf_layer(plane_layer, path)
    loaded = load_map(path)

    assert loaded.is_layer
    assert loaded.tsdf_layer.voxel_size == pytest.approx(0.1)
    assert len(loaded.tsdf_layer) == len(plane_layer)


def test_unknown_extension(tmp_path):
    """Test unsupported map formats are rejected."""
    path = tmp_path / "scene.bin"
    path.write_bytes(b"")

    with pytest.raises(UnsupportedFormatError):
        load_map(path)


def test_missing_and_corrupt_maps(tmp_path):
    """Test load failures for missing and unreadable files."""
    with pytest.raises(LoadFailure):
        load_map(tmp_path / "missing.panmap")

    corrupt = tmp_path / "corrupt.panmap"
    corrupt.write_bytes(b"not a map")
    with pytest.raises(LoadFailure):
        load_map(corrupt)


def test_wrong_format_header(tmp_path, plane_layer):
    """Test a layer file renamed to .panmap is rejected."""
    path = tmp_path / "layer.panmap"
    save_tsdf_layer(plane_layer, path)

    with pytest.raises(LoadFailure):
        load_map(path)


def test_ground_truth_io(tmp_path, square_points):
    """Test ground-truth loading and the missing file case."""
    path = tmp_path / "gt.ply"
    save_ground_truth(square_points, path)

    np.testing.assert_allclose(load_ground_truth(path), square_points)
    with pytest.raises(LoadFailure):
        load_ground_truth(tmp_path / "missing.ply")
    with pytest.raises(LoadFailure):
        load_ground_truth("")


def test_layer_with_missing_arrays(tmp_path):
    """Test a .vxblx archive with a valid header but no layer data."""
    path = tmp_path / "truncated.vxblx"
    with open(path, 'wb') as f:
        np.savez_compressed(f, header=np.array(json.dumps({'format': 'vxblx', 'version': 1})))

    with pytest.raises(LoadFailure):
        load_map(path)


def test_corrupt_ground_truth(tmp_path):
    """Test unparseable and vertex-less PLY files are load failures."""
    garbage = tmp_path / "garbage.ply"
    garbage.write_bytes(b"\x89not a ply file\x00\xff" * 16)
    with pytest.raises(LoadFailure):
        load_ground_truth(garbage)

    faces_only = tmp_path / "faces.ply"
    PlyData([PlyElement.describe(np.zeros(0, dtype=[('a', 'i4')]), 'face')]).write(str(faces_only))
    with pytest.raises(LoadFailure):
        load_ground_truth(faces_only)


def test_empty_ground_truth(tmp_path):
    """Test a valid PLY without vertices loads as an empty cloud."""
    path = tmp_path / "empty.ply"
    vertices = np.zeros(0, dtype=[('x', 'f4'), ('y', 'f4'), ('z', 'f4')])
    PlyData([PlyElement.describe(vertices, 'vertex')]).write(str(path))

    points = load_ground_truth(path)
    assert points.shape == (0, 3)
