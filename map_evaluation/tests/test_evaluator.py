"""
End-to-end tests for single-map evaluation.
"""

import json

import numpy as np
import pandas as pd
import pytest

from map_evaluation.core.error_statistics import MESH_COLUMNS
from map_evaluation.core.submaps import SubmapCollection
from map_evaluation.evaluator import MapEvaluator, mesh_error_enabled
from map_evaluation.tests.synthetic import build_plane_layer, build_plane_submap
from map_evaluation.utils.config import EvaluationConfig, EvaluationRequest
from map_evaluation.utils.map_io import (
    LoadedMap, load_map, save_ground_truth, save_submap_collection, save_tsdf_layer,
)


@pytest.fixture
def scene(tmp_path, square_points):
    """Plane map saved in both formats plus the ground truth."""
    save_submap_collection(SubmapCollection([build_plane_submap(0)]), tmp_path / "scene.panmap")
    save_tsdf_layer(build_plane_layer(), tmp_path / "layer.vxblx")
    save_ground_truth(square_points, tmp_path / "gt.ply")
    return tmp_path


def make_request(scene, map_name="scene.panmap", **overrides):
    options = dict(map_file=str(scene / map_name),
                   ground_truth_pointcloud_file=str(scene / "gt.ply"),
                   visualize=False, verbosity=0)
    options.update(overrides)
    return EvaluationRequest(**options)


def no_histogram_config():
    return EvaluationConfig({'visualization': {'save_histogram': False}})


def test_evaluate_panoptic_map(scene):
    """Test the results row of a perfect panoptic map."""
    assert MapEvaluator(no_histogram_config()).evaluate(make_request(scene))

    results = pd.read_csv(scene / "scene_evaluation_data.csv")
    row = results.iloc[0]
    assert len(results) == 1
    assert row['TotalPoints'] == 4
    assert row['UnknownPoints'] == 0
    assert row['TruncatedPoints'] == 0
    assert row['MeanError'] == pytest.approx(0.0, abs=1e-6)
    assert row['Inliers'] == 4
    assert set(MESH_COLUMNS) <= set(results.columns)
    assert bool(row['Completed'])


def test_evaluate_layer_map_has_no_mesh_columns(scene):
    """Test a bare TSDF layer only gets the reconstruction columns."""
    assert MapEvaluator(no_histogram_config()).evaluate(make_request(scene, "layer.vxblx",
                                                                     output_suffix="eval"))

    results = pd.read_csv(scene / "layer_eval.csv")
    assert results.iloc[0]['TotalPoints'] == 4
    assert not set(MESH_COLUMNS) & set(results.columns)


def test_mesh_error_enabled(scene):
    """Test the mesh pass selection per map kind."""
    panmap = load_map(scene / "scene.panmap")
    layer = LoadedMap(path=scene / "layer.vxblx", tsdf_layer=build_plane_layer())

    assert mesh_error_enabled(EvaluationRequest(), panmap)
    assert not mesh_error_enabled(EvaluationRequest(is_single_tsdf=True), panmap)
    assert mesh_error_enabled(EvaluationRequest(is_single_tsdf=True, compute_mesh_error=True), panmap)
    assert not mesh_error_enabled(EvaluationRequest(compute_mesh_error=True), layer)


@pytest.mark.parametrize("overrides", [
    dict(ground_truth_pointcloud_file="missing.ply"),
    dict(ground_truth_pointcloud_file=""),
    dict(maximum_distance=-1.0),
])
def test_failures_return_false(scene, overrides):
    """Test that load and validation failures are reported, not raised."""
    assert not MapEvaluator(no_histogram_config()).evaluate(make_request(scene, **overrides))


def test_unsupported_map_extension(scene):
    """Test unknown map formats fail the evaluation."""
    (scene / "scene.txt").write_text("")

    assert not MapEvaluator(no_histogram_config()).evaluate(make_request(scene, "scene.txt"))


def test_exports_and_coloring(scene):
    """Test every export and the colored map are written."""
    request = make_request(scene, export_mesh=True, export_labeled_pointcloud=True,
                           export_coverage_pointcloud=True, compute_coloring=True,
                           color_by_mesh_distance=False)

    assert MapEvaluator(no_histogram_config()).evaluate(request)

    assert (scene / "scene.mesh.ply").exists()
    assert (scene / "scene.pointcloud.ply").exists()
    assert (scene / "scene.coverage.ply").exists()
    colored = load_map(scene / "scene_evaluated_mean.panmap")
    assert colored.submaps.submap_ids() == [0]


def test_visualization_and_histogram(scene):
    """Test the snapshot and error histogram outputs."""
    assert MapEvaluator().evaluate(make_request(scene, visualize=True))

    assert (scene / "visualization" / "scene_mesh.ply").exists()
    assert (scene / "visualization" / "scene_error_histogram.png").exists()


def test_interrupted_evaluation_marks_row_incomplete(scene):
    """Test a cancelled run still writes a row flagged as incomplete."""
    evaluator = MapEvaluator(no_histogram_config(), should_continue=lambda: False)

    assert not evaluator.evaluate(make_request(scene))
    assert evaluator.interrupted_steps == ['reconstruction', 'mesh']

    row = pd.read_csv(scene / "scene_evaluation_data.csv").iloc[0]
    assert not bool(row['Completed'])
    assert row['TotalPoints'] == 0


def test_corrupt_ground_truth_fails(scene):
    """Test an unparseable ground-truth file fails the run without writing results."""
    (scene / "gt.ply").write_bytes(b"\x00\x13garbage, not a point cloud\xff" * 8)

    assert not MapEvaluator(no_histogram_config()).evaluate(make_request(scene))
    assert not (scene / "scene_evaluation_data.csv").exists()


def test_corrupt_layer_fails(scene):
    """Test a .vxblx archive with missing arrays fails the run."""
    with open(scene / "layer.vxblx", 'wb') as f:
        np.savez_compressed(f, header=np.array(json.dumps(
            {'format': 'vxblx', 'version': 1, 'voxel_size': 0.1, 'voxels_per_side': 8})))

    assert not MapEvaluator(no_histogram_config()).evaluate(make_request(scene, "layer.vxblx"))


def test_interrupted_coverage_is_not_exported(scene):
    """Test a cancelled coverage pass leaves no coverage cloud behind."""
    calls = iter([True])
    evaluator = MapEvaluator(no_histogram_config(), should_continue=lambda: next(calls, False))
    request = make_request(scene, evaluate=False, export_coverage_pointcloud=True)

    assert not evaluator.evaluate(request)
    assert evaluator.interrupted_steps == ['coverage']
    assert not (scene / "scene.coverage.ply").exists()
