"""Shared fixtures for the map evaluation tests."""

import numpy as np
import pytest

from map_evaluation.core.submaps import SubmapCollection
from map_evaluation.utils.config import EvaluationRequest
from map_evaluation.tests.synthetic import build_plane_layer, build_plane_submap


@pytest.fixture
def plane_layer():
    return build_plane_layer()


@pytest.fixture
def plane_submaps():
    return SubmapCollection([build_plane_submap(0)])


@pytest.fixture
def square_points():
    """Four ground-truth points on the plane z = 0."""
    return np.array([[-0.25, -0.25, 0.0],
                     [0.25, -0.25, 0.0],
                     [-0.25, 0.25, 0.0],
                     [0.25, 0.25, 0.0]])


@pytest.fixture
def plane_grid_points():
    """Ground-truth grid with 5 cm spacing on the plane z = 0."""
    xs, ys = np.meshgrid(np.linspace(-0.6, 0.6, 25), np.linspace(-0.6, 0.6, 25), indexing='ij')
    return np.stack([xs.ravel(), ys.ravel(), np.zeros(xs.size)], axis=1)


@pytest.fixture
def request_defaults():
    return EvaluationRequest(visualize=False, verbosity=0)
