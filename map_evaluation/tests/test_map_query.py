"""
Tests for distance queries over submap collections and single layers.
"""

import numpy as np
import pytest

from map_evaluation.core.classification import ClassLayer, ClassVoxelKind
from map_evaluation.core.map_query import (
    SubmapCollectionQuery, TsdfLayerQuery, create_map_query,
)
from map_evaluation.core.submaps import ChangeState, PanopticLabel, SubmapCollection
from map_evaluation.core.tsdf_layer import TsdfLayer
from map_evaluation.tests.synthetic import build_plane_submap

POINT = np.array([0.1, 0.1, 0.2])


def test_closest_surface_reading_wins():
    """Test that the reading with the smallest |d| is returned."""
    submaps = SubmapCollection([build_plane_submap(0, offset=0.0), build_plane_submap(1, offset=0.3)])

    observed, distance = SubmapCollectionQuery(submaps).get_distance(POINT)

    assert observed
    assert distance == pytest.approx(-0.1, abs=1e-6)


def test_inactive_submaps_respect_change_state():
    """Test absent submaps are skipped only when change state is considered."""
    submaps = SubmapCollection([
        build_plane_submap(0, offset=0.0),
        build_plane_submap(1, offset=0.3, change_state=ChangeState.ABSENT),
    ])
    query = SubmapCollectionQuery(submaps)

    assert query.get_distance(POINT, consider_change_state=True)[1] == pytest.approx(0.2, abs=1e-6)
    assert query.get_distance(POINT, consider_change_state=False)[1] == pytest.approx(-0.1, abs=1e-6)


def test_free_space_submaps_need_opt_in():
    """Test free-space submaps only answer when included."""
    submaps = SubmapCollection([build_plane_submap(0, label=PanopticLabel.FREE_SPACE)])
    query = SubmapCollectionQuery(submaps)

    assert not query.get_distance(POINT)[0]
    assert query.get_distance(POINT, include_free_space=True)[0]


def test_binary_class_layer_rejects_foreign_readings():
    """Test classification-tagged rejection of foreign voxels."""
    class_layer = ClassLayer(ClassVoxelKind.BINARY_COUNT, 0.1, 8)
    class_layer.allocate_block((0, 0, 0))['foreign_count'][...] = 1
    submaps = SubmapCollection([build_plane_submap(0, class_layer=class_layer)])
    query = SubmapCollectionQuery(submaps)

    assert not query.get_distance(POINT, consider_change_state=True)[0]
    assert query.get_distance(POINT, consider_change_state=False)[0]


def test_is_observed_considers_every_submap():
    """Test the observed predicate ignores change state and includes free space."""
    submaps = SubmapCollection([
        build_plane_submap(0, label=PanopticLabel.FREE_SPACE, change_state=ChangeState.UNOBSERVED),
    ])

    observed = SubmapCollectionQuery(submaps).is_observed(np.array([POINT, [5.0, 5.0, 5.0]]))

    np.testing.assert_array_equal(observed, [True, False])


def test_layer_query_and_factory(plane_layer):
    """Test the single-layer variant and query construction."""
    query = create_map_query(tsdf_layer=plane_layer)

    assert isinstance(query, TsdfLayerQuery)
    assert query.get_distance(POINT)[1] == pytest.approx(0.2, abs=1e-6)
    assert isinstance(create_map_query(submaps=SubmapCollection()), SubmapCollectionQuery)
    with pytest.raises(ValueError):
        create_map_query()


def test_collection_bounds():
    """Test bounds over all submaps and for an empty collection."""
    assert SubmapCollectionQuery(SubmapCollection()).bounds() is None
    assert TsdfLayerQuery(TsdfLayer(0.1)).bounds() is None

    lower, upper = SubmapCollectionQuery(SubmapCollection([build_plane_submap(0)])).bounds()
    np.testing.assert_allclose(upper - lower, [1.6, 1.6, 1.6])
