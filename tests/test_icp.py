"""
Unit tests for point-to-point ICP and PCA pre-alignment.
"""

import numpy as np
import pytest

from data_structures import Model, RegistrationContext, SelectionMask, Transform
from errors import EmptyTargetError, InvalidSelectionError, UnderdeterminedTransformError
from icp import RigidPointICP
from nearest_neighbor import BruteForceNearestNeighbor, KdTreeNearestNeighbor
from pca_alignment import PCAAlignment


def perturbed_copy(model, angle, axis=(1.0, 2.0, 0.5), translation=(0.05, -0.02, 0.03)):
    moved = model.copy(name=f"{model.name}_moved")
    moved.apply_transform(Transform.from_axis_angle(axis, angle, translation=translation, center=model.centroid()))
    return moved


class TestRigidPointICP:
    """Tests for RigidPointICP.step and run"""

    def test_cube_scenario(self, cube_model, rotated_cube):
        """Test that a 30 degree rotated and shifted cube is registered within 10 steps"""
        dest, expected = rotated_cube
        source = cube_model
        context = RegistrationContext()
        icp = RigidPointICP(BruteForceNearestNeighbor())
        for _ in range(10):
            icp.step(source, dest, context)

        assert context.last_error < 1e-3
        np.testing.assert_allclose(context.cumulative_transform.rotation, expected.rotation, atol=1e-2)
        np.testing.assert_allclose(context.cumulative_transform.translation, expected.translation, atol=1e-2)
        assert context.iteration == 10

    def test_error_never_increases(self, anisotropic_cloud):
        """Test that the noise-free error sequence is non-increasing"""
        source = perturbed_copy(anisotropic_cloud, np.radians(10.0))
        nn = KdTreeNearestNeighbor()
        initial_error = nn.compute_error(source, anisotropic_cloud)
        context = RegistrationContext()
        RigidPointICP(nn).run(source, anisotropic_cloud, 15, context)

        errors = [initial_error] + context.history
        assert np.all(np.diff(errors) <= 1e-12)
        assert errors[-1] < initial_error

    def test_step_moves_source_in_place(self, cube_model, rotated_cube):
        """Test that step applies its transform to the source model"""
        dest, _ = rotated_cube
        version = cube_model.version
        result = RigidPointICP(KdTreeNearestNeighbor()).step(cube_model, dest)
        assert cube_model.version > version
        assert result.iteration == 1
        assert result.n_active == 8
        assert result.method == "rigid_point_icp"

    def test_default_context_tracks_selection(self, hundred_points):
        """Test the selection mask accessors on the default context"""
        icp = RigidPointICP(KdTreeNearestNeighbor())
        assert icp.selection_mask() == SelectionMask.ALL
        icp.set_selection_mask(SelectionMask.EVERY_SECOND)
        result = icp.step(hundred_points.copy(), hundred_points)
        assert icp.selection_mask() == SelectionMask.EVERY_SECOND
        assert result.n_active == 50

    def test_underdetermined_step_reports_iteration(self, hundred_points):
        """Test that a failing step carries iteration and active point count"""
        mask = (SelectionMask.EVERY_SECOND | SelectionMask.EVERY_THIRD
                | SelectionMask.EVERY_FOURTH | SelectionMask.EVERY_FIFTH)
        context = RegistrationContext(selection_mask=mask)
        icp = RigidPointICP(KdTreeNearestNeighbor())
        with pytest.raises(UnderdeterminedTransformError) as exc_info:
            icp.step(hundred_points.copy(), hundred_points, context)
        assert exc_info.value.iteration == 1
        assert exc_info.value.n_active == 2
        assert "iteration=1" in str(exc_info.value)
        assert context.iteration == 0

    def test_empty_destination(self, hundred_points):
        """Test that an empty destination raises EmptyTargetError from step"""
        icp = RigidPointICP(BruteForceNearestNeighbor())
        with pytest.raises(EmptyTargetError) as exc_info:
            icp.step(hundred_points, Model(np.zeros((0, 3))))
        assert exc_info.value.n_active == 100

    def test_random_selection_reproducible(self, anisotropic_cloud):
        """Test that RANDOM selection with a seed gives identical runs"""
        matrices = []
        for _ in range(2):
            source = perturbed_copy(anisotropic_cloud, np.radians(5.0))
            context = RegistrationContext(selection_mask=SelectionMask.RANDOM, seed=123)
            RigidPointICP(KdTreeNearestNeighbor()).run(source, anisotropic_cloud, 5, context)
            matrices.append(context.cumulative_transform.as_matrix())
        np.testing.assert_array_equal(matrices[0], matrices[1])

    def test_run_stops_on_tolerance(self, cube_model, rotated_cube):
        """Test that run stops early once the error stops improving"""
        dest, _ = rotated_cube
        results = RigidPointICP(KdTreeNearestNeighbor()).run(cube_model, dest, 20, tolerance=1e-9)
        assert len(results) < 20


    def test_strict_selection_failure_reports_iteration(self, hundred_points):
        """Test that a strict NO_EDGES failure carries the iteration that failed"""
        context = RegistrationContext(selection_mask=SelectionMask.NO_EDGES, strict_selection=True)
        icp = RigidPointICP(KdTreeNearestNeighbor())
        with pytest.raises(InvalidSelectionError) as exc_info:
            icp.step(hundred_points.copy(), hundred_points, context)
        assert exc_info.value.iteration == 1
        assert exc_info.value.n_active is None
        assert "iteration=1" in str(exc_info.value)
        assert context.iteration == 0


class TestPCAAlignment:
    """Tests for principal-axis pre-alignment"""

    def test_aligns_half_turn(self, anisotropic_cloud):
        """Test that a copy rotated by 180 degrees is aligned back"""
        source = anisotropic_cloud.copy(name="flipped")
        source.apply_transform(Transform.from_axis_angle([0, 0, 1], np.pi, translation=[1.0, 2.0, 3.0],
                                                         center=anisotropic_cloud.centroid()))
        result = PCAAlignment().step(source, anisotropic_cloud)
        assert result.error < 1e-3 * anisotropic_cloud.scale()
        np.testing.assert_allclose(source.positions, anisotropic_cloud.positions, atol=1e-6)

    def test_candidate_counts(self, anisotropic_cloud):
        """Test the number of proper candidate rotations"""
        pca = PCAAlignment()
        _, axes, _ = pca.principal_frame(anisotropic_cloud)
        assert len(pca.candidate_rotations(axes, axes)) == 4
        assert len(PCAAlignment(axis_permutations=True).candidate_rotations(axes, axes)) == 24
        for candidate in pca.candidate_rotations(axes, axes):
            assert np.linalg.det(candidate['rotation']) == pytest.approx(1.0)

    def test_destination_frame_retained_and_reset(self, anisotropic_cloud):
        """Test that the destination frame is kept until reset"""
        pca = PCAAlignment()
        pca.step(anisotropic_cloud.copy(), anisotropic_cloud)
        assert pca._dest_frame[0] == anisotropic_cloud.uid
        assert len(pca.last_candidates) == 4
        pca.reset()
        assert pca._dest_frame is None
        assert pca.last_candidates == []

    def test_records_into_context(self, anisotropic_cloud):
        """Test that a given context accumulates the PCA transform"""
        source = perturbed_copy(anisotropic_cloud, np.radians(20.0))
        context = RegistrationContext()
        result = PCAAlignment().step(source, anisotropic_cloud, context)
        assert context.history == [result.error]
        assert result.method == "pca"

    def test_too_few_points(self, anisotropic_cloud):
        """Test that fewer than three points are underdetermined"""
        with pytest.raises(UnderdeterminedTransformError):
            PCAAlignment().step(Model(np.zeros((2, 3))), anisotropic_cloud)

    def test_aligns_turn_about_oblique_axis(self, anisotropic_cloud):
        """Test that a copy rotated about an axis off the principal axes is aligned back"""
        source = anisotropic_cloud.copy(name="oblique")
        source.apply_transform(Transform.from_axis_angle([0.3, -0.7, 0.5], 2.0, translation=[-0.5, 1.5, 0.2],
                                                         center=anisotropic_cloud.centroid()))
        result = PCAAlignment().step(source, anisotropic_cloud)
        assert result.error < 1e-3 * anisotropic_cloud.scale()
        np.testing.assert_allclose(source.positions, anisotropic_cloud.positions, atol=1e-6)
