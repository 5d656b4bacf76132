"""
Unit tests for nearest neighbor search, matching error and caching.
"""

import numpy as np
import pytest

from data_structures import Model, Transform
from errors import EmptyTargetError
from nearest_neighbor import (BruteForceNearestNeighbor, KdTreeNearestNeighbor,
                              create_nearest_neighbor)


def lattice_model(size=4):
    points = np.array([[x, y, z] for x in range(size) for y in range(size) for z in range(size)], dtype=float)
    return Model(points, name="lattice")


@pytest.fixture(params=["brute_force", "kdtree"])
def nn(request):
    return create_nearest_neighbor(request.param)


class TestFindNearest:
    """Tests shared by every nearest neighbor implementation"""

    def test_exact_hit(self, nn, hundred_points):
        """Test that a target point is its own nearest neighbor"""
        index, distance = nn.find_nearest(hundred_points.positions[17], hundred_points)
        assert index == 17
        assert distance == 0.0

    def test_tie_resolves_to_lowest_index(self, nn):
        """Test that equidistant candidates resolve to the lowest index"""
        target = Model([[1.0, 0.0, 0.0], [-1.0, 0.0, 0.0], [0.0, 5.0, 0.0]])
        index, distance = nn.find_nearest([0.0, 0.0, 0.0], target)
        assert index == 0
        assert distance == pytest.approx(1.0)

    def test_empty_target_raises(self, nn):
        """Test that querying an empty model raises EmptyTargetError"""
        with pytest.raises(EmptyTargetError):
            nn.find_nearest([0.0, 0.0, 0.0], Model(np.zeros((0, 3))))

    def test_compute_error_of_shifted_copy(self, nn, hundred_points):
        """Test the RMS error of a copy shifted by a tiny offset"""
        shifted = hundred_points.copy()
        shifted.apply_transform(Transform(np.eye(3), [1e-4, 0.0, 0.0]))
        assert nn.compute_error(shifted, hundred_points) == pytest.approx(1e-4, rel=1e-6)

    def test_compute_error_of_empty_source(self, nn, hundred_points):
        """Test that an empty source has zero error"""
        assert nn.compute_error(Model(np.zeros((0, 3))), hundred_points) == 0.0

    def test_batch_matches_single_queries(self, nn, hundred_points):
        """Test that batch queries return the same answers as single queries"""
        rng = np.random.default_rng(1)
        queries = rng.uniform(-1.0, 1.0, size=(20, 3))
        indices, distances = nn.find_nearest_batch(queries, hundred_points)
        for query, index, distance in zip(queries, indices, distances):
            single_index, single_distance = nn.find_nearest(query, hundred_points)
            assert single_index == index
            assert single_distance == pytest.approx(distance)


class TestImplementationsAgree:
    """Tests that the KD-tree returns exactly what the linear scan returns"""

    def test_random_queries(self, anisotropic_cloud):
        """Test agreement on random queries"""
        rng = np.random.default_rng(5)
        queries = rng.normal(size=(200, 3)) * 3.0
        brute_idx, brute_dist = BruteForceNearestNeighbor().find_nearest_batch(queries, anisotropic_cloud)
        tree_idx, tree_dist = KdTreeNearestNeighbor().find_nearest_batch(queries, anisotropic_cloud)
        np.testing.assert_array_equal(tree_idx, brute_idx)
        np.testing.assert_array_equal(tree_dist, brute_dist)

    def test_lattice_ties(self):
        """Test agreement where queries have several equidistant lattice points"""
        target = lattice_model()
        offsets = np.array([[0.5, 0.0, 0.0], [0.5, 0.5, 0.0], [0.5, 0.5, 0.5]])
        base = np.array([[x, y, z] for x in range(3) for y in range(3) for z in range(3)], dtype=float)
        queries = (base[:, np.newaxis, :] + offsets[np.newaxis, :, :]).reshape(-1, 3)
        brute_idx, brute_dist = BruteForceNearestNeighbor().find_nearest_batch(queries, target)
        tree_idx, tree_dist = KdTreeNearestNeighbor().find_nearest_batch(queries, target)
        np.testing.assert_array_equal(tree_idx, brute_idx)
        np.testing.assert_array_equal(tree_dist, brute_dist)

    def test_unknown_method(self):
        """Test that an unknown implementation name is rejected"""
        with pytest.raises(ValueError):
            create_nearest_neighbor("octree")


class TestCaching:
    """Tests for query memoization and index invalidation"""

    def test_repeated_query_hits_cache(self, hundred_points):
        """Test that a repeated query is served from the cache"""
        nn = KdTreeNearestNeighbor()
        nn.find_nearest([0.1, 0.2, 0.3], hundred_points)
        nn.find_nearest([0.1, 0.2, 0.3], hundred_points)
        assert nn.cache_misses == 1
        assert nn.cache_hits == 1

    def test_changed_destination_is_seen(self, nn):
        """Test that moving a destination point changes the answer without clearing"""
        target = Model([[1.0, 0.0, 0.0], [5.0, 0.0, 0.0]])
        assert nn.find_nearest([4.0, 0.0, 0.0], target)[0] == 1
        target.set_vertex(0, [4.0, 0.1, 0.0])
        index, distance = nn.find_nearest([4.0, 0.0, 0.0], target)
        assert index == 0
        assert distance == pytest.approx(0.1)

    def test_old_destination_versions_are_evicted(self, nn):
        """Test that memoized answers for an outdated destination version are dropped"""
        target = Model([[1.0, 0.0, 0.0], [5.0, 0.0, 0.0]])
        nn.find_nearest([4.0, 0.0, 0.0], target)
        nn.find_nearest_batch(np.array([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0]]), target)
        target.set_vertex(1, [6.0, 0.0, 0.0])
        nn.find_nearest([4.0, 0.0, 0.0], target)
        assert list(nn._query_cache) == [(target.uid, target.version)]
        assert len(nn._query_cache[(target.uid, target.version)]) == 1

    def test_clear_cache_drops_queries(self, hundred_points):
        """Test that clear_cache empties the memoized queries and the index"""
        nn = KdTreeNearestNeighbor()
        nn.find_nearest_batch(np.asarray(hundred_points.positions[:10]), hundred_points)
        nn.clear_cache()
        assert len(nn._query_cache) == 0
        assert len(nn._index_cache) == 0
        index, _ = nn.find_nearest(hundred_points.positions[3], hundred_points)
        assert index == 3

    def test_clear_cache_can_keep_index(self, hundred_points):
        """Test that keep_index retains the spatial index"""
        nn = KdTreeNearestNeighbor()
        nn.find_nearest([0.0, 0.0, 0.0], hundred_points)
        nn.clear_cache(keep_index=True)
        assert len(nn._query_cache) == 0
        assert hundred_points.uid in nn._index_cache

    def test_uncached_queries(self, hundred_points):
        """Test that cache_queries=False never memoizes"""
        nn = BruteForceNearestNeighbor(cache_queries=False)
        nn.find_nearest_batch(np.asarray(hundred_points.positions), hundred_points)
        assert len(nn._query_cache) == 0
