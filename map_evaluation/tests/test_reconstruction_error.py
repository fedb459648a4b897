"""
Tests for the ground truth to map error pass.
"""

import dataclasses

import numpy as np
import pytest

from map_evaluation.core.map_query import SubmapCollectionQuery, TsdfLayerQuery
from map_evaluation.core.reconstruction_error import (
    ReconstructionErrorEvaluator, distance_query_flags,
)
from map_evaluation.core.submaps import PanopticLabel, SubmapCollection
from map_evaluation.tests.synthetic import build_plane_submap


def evaluate(layer, points, request):
    evaluator = ReconstructionErrorEvaluator(TsdfLayerQuery(layer), show_progress=False)
    return evaluator.evaluate(points, request)


def test_points_on_surface(plane_layer, square_points, request_defaults):
    """Test a perfect reconstruction of four points."""
    summary = evaluate(plane_layer, square_points, request_defaults)

    assert summary.total_points == 4
    assert summary.unknown_points == 0
    assert summary.truncated_points == 0
    assert summary.mean == pytest.approx(0.0, abs=1e-6)
    assert summary.inliers == 4
    assert summary.completed


def test_truncated_points_contribute_maximum_distance(plane_layer, square_points, request_defaults):
    """Test that points beyond maximum_distance count as maximum_distance."""
    points = square_points + [0.0, 0.0, 0.3]

    summary = evaluate(plane_layer, points, request_defaults)

    assert summary.truncated_points == 4
    assert summary.mean == pytest.approx(request_defaults.maximum_distance)
    assert summary.inliers == 0


def test_ignored_truncated_points_are_counted_not_sampled(plane_layer, square_points, request_defaults):
    """Test the ignore_truncated_points policy."""
    points = np.vstack([square_points, square_points[:1] + [0.0, 0.0, 0.3]])
    request = dataclasses.replace(request_defaults, ignore_truncated_points=True)

    summary = evaluate(plane_layer, points, request)

    assert summary.total_points == 5
    assert summary.truncated_points == 1
    assert summary.num_samples == 4
    assert summary.mean == pytest.approx(0.0, abs=1e-6)


def test_unknown_points(plane_layer, square_points, request_defaults):
    """Test points the map cannot interpolate."""
    points = np.vstack([square_points, [[5.0, 5.0, 5.0]]])

    summary = evaluate(plane_layer, points, request_defaults)

    assert summary.total_points == 5
    assert summary.unknown_points == 1
    assert summary.num_samples == 4


def test_inliers_monotonic_in_threshold(plane_layer, request_defaults):
    """Test that a larger inlier distance never yields fewer inliers."""
    points = np.array([[0.0, 0.0, z] for z in (0.01, 0.04, 0.08, 0.12, 0.18)])
    counts = []
    for inlier_distance in (0.02, 0.05, 0.1, 0.15):
        request = dataclasses.replace(request_defaults, inlier_distance=inlier_distance)
        counts.append(evaluate(plane_layer, points, request).inliers)

    assert counts == sorted(counts)
    assert counts[-1] == 4


def test_empty_ground_truth(plane_layer, request_defaults):
    """Test an empty cloud yields an all-zero summary."""
    summary = evaluate(plane_layer, np.zeros((0, 3)), request_defaults)

    assert summary.total_points == 0
    assert summary.mean == 0.0
    assert summary.rmse == 0.0


def test_interrupted_pass_is_incomplete(plane_layer, square_points, request_defaults):
    """Test cooperative cancellation."""
    evaluator = ReconstructionErrorEvaluator(TsdfLayerQuery(plane_layer), show_progress=False)

    summary = evaluator.evaluate(square_points, request_defaults, should_continue=lambda: False)

    assert not summary.completed
    assert summary.total_points == 0


def test_query_flags_follow_map_kind(square_points, request_defaults):
    """Test single-TSDF maps let free-space submaps answer."""
    submaps = SubmapCollection([build_plane_submap(0, label=PanopticLabel.FREE_SPACE)])
    evaluator = ReconstructionErrorEvaluator(SubmapCollectionQuery(submaps), show_progress=False)

    multi = evaluator.evaluate(square_points, request_defaults)
    single = evaluator.evaluate(square_points, dataclasses.replace(request_defaults, is_single_tsdf=True))

    assert distance_query_flags(request_defaults) == (True, False)
    assert multi.unknown_points == 4
    assert single.unknown_points == 0
