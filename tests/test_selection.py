"""
Unit tests for active point selection.
"""

import numpy as np
import pytest

from data_structures import Model, SelectionMask
from errors import InvalidSelectionError
from selection import select_indices


class TestSelectIndices:
    """Tests for select_indices on a 100 point model"""

    def test_all_selects_everything(self, hundred_points):
        """Test that ALL keeps every index in order"""
        np.testing.assert_array_equal(select_indices(hundred_points), np.arange(100))

    def test_every_second(self, hundred_points):
        """Test that EVERY_SECOND keeps the 50 even indices"""
        selected = select_indices(hundred_points, SelectionMask.EVERY_SECOND)
        assert len(selected) == 50
        np.testing.assert_array_equal(selected, np.arange(0, 100, 2))

    def test_filters_intersect(self, hundred_points):
        """Test that EVERY_SECOND and EVERY_THIRD together keep multiples of 6"""
        selected = select_indices(hundred_points, SelectionMask.EVERY_SECOND | SelectionMask.EVERY_THIRD)
        np.testing.assert_array_equal(selected, np.arange(0, 100, 6))

    def test_every_fifth(self, hundred_points):
        """Test that EVERY_FIFTH keeps 20 indices"""
        assert len(select_indices(hundred_points, SelectionMask.EVERY_FIFTH)) == 20

    def test_no_edges_drops_edge_points(self):
        """Test that NO_EDGES removes flagged points"""
        flags = np.zeros(10, dtype=bool)
        flags[[0, 3, 9]] = True
        model = Model(np.zeros((10, 3)), edge_flags=flags)
        selected = select_indices(model, SelectionMask.NO_EDGES)
        np.testing.assert_array_equal(selected, [1, 2, 4, 5, 6, 7, 8])

    def test_no_edges_without_annotations_degrades(self, hundred_points):
        """Test that NO_EDGES on an unannotated model selects all points and warns"""
        selected = select_indices(hundred_points, SelectionMask.NO_EDGES)
        assert len(selected) == 100

    def test_no_edges_strict_raises(self, hundred_points):
        """Test that strict mode rejects NO_EDGES on an unannotated model"""
        with pytest.raises(InvalidSelectionError):
            select_indices(hundred_points, SelectionMask.NO_EDGES, strict=True)

    def test_random_is_reproducible(self, hundred_points):
        """Test that the same seed yields the same random subset"""
        first = select_indices(hundred_points, SelectionMask.RANDOM, rng=np.random.default_rng(11))
        second = select_indices(hundred_points, SelectionMask.RANDOM, rng=np.random.default_rng(11))
        np.testing.assert_array_equal(first, second)
        assert 0 < len(first) < 100

    def test_random_redraws_each_call(self, hundred_points):
        """Test that consecutive calls with one generator draw new subsets"""
        rng = np.random.default_rng(11)
        first = select_indices(hundred_points, SelectionMask.RANDOM, rng=rng)
        second = select_indices(hundred_points, SelectionMask.RANDOM, rng=rng)
        assert not np.array_equal(first, second)

    def test_random_combined_with_modulus(self, hundred_points):
        """Test that RANDOM only thins out indices kept by the other filters"""
        selected = select_indices(hundred_points, SelectionMask.RANDOM | SelectionMask.EVERY_FOURTH,
                                  rng=np.random.default_rng(3))
        assert np.all(selected % 4 == 0)

    def test_empty_model(self):
        """Test that an empty model selects nothing"""
        assert len(select_indices(Model(np.zeros((0, 3))), SelectionMask.EVERY_SECOND)) == 0
