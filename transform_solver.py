#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Rigid transform solver module
Least-squares rotation and translation between paired point sets (orthogonal Procrustes)
"""

import numpy as np
from data_structures import CorrespondenceSet, Transform
from errors import TransformSolverError, UnderdeterminedTransformError
from logging_utils import get_logger

MIN_CORRESPONDENCES = 3


class RigidTransformSolver:
    """Orthogonal Procrustes solver (SVD of the cross-covariance matrix)"""

    def __init__(self, collinearity_tolerance: float = 1e-3):
        """
        Parameters:
            collinearity_tolerance: minimum width-to-length ratio of the source
                and destination point sets (second over first singular value of
                the centered points). Thinner sets leave the rotation about
                their long axis to noise and are rejected as collinear.
        """
        self.collinearity_tolerance = collinearity_tolerance
        self.logger = get_logger("transform_solver")

    def _check_spread(self, centered: np.ndarray, label: str):
        spread = np.linalg.svd(centered, compute_uv=False)
        if spread[0] <= np.finfo(np.float64).tiny:
            raise UnderdeterminedTransformError(f"All {label} correspondence points coincide")
        if spread[1] < self.collinearity_tolerance * spread[0]:
            raise UnderdeterminedTransformError(
                f"The {label} correspondence points are nearly collinear "
                f"(width/length {spread[1] / spread[0]:.2e} < {self.collinearity_tolerance:g})"
            )

    def solve(self, source_points: np.ndarray, dest_points: np.ndarray) -> Transform:
        """
        Rotation R and translation t minimizing sum |R @ src_i + t - dst_i|^2.

        Raises:
            UnderdeterminedTransformError: fewer than 3 pairs, or pairs that are
                coincident or nearly collinear
            TransformSolverError: non-finite input or SVD failure
        """
        source_points = np.asarray(source_points, dtype=np.float64).reshape(-1, 3)
        dest_points = np.asarray(dest_points, dtype=np.float64).reshape(-1, 3)

        if len(source_points) != len(dest_points):
            raise ValueError(
                f"Point sets differ in size: {len(source_points)} source vs {len(dest_points)} destination"
            )

        n_pairs = len(source_points)
        if n_pairs < MIN_CORRESPONDENCES:
            raise UnderdeterminedTransformError(
                f"Need at least {MIN_CORRESPONDENCES} correspondences, got {n_pairs}"
            )

        if not (np.all(np.isfinite(source_points)) and np.all(np.isfinite(dest_points))):
            raise TransformSolverError("Correspondences contain non-finite coordinates")

        centroid_src = source_points.mean(axis=0)
        centroid_dst = dest_points.mean(axis=0)
        src_centered = source_points - centroid_src
        dst_centered = dest_points - centroid_dst

        # H = sum_i (src_i - c_src)(dst_i - c_dst)^T
        H = src_centered.T @ dst_centered

        try:
            self._check_spread(src_centered, "source")
            self._check_spread(dst_centered, "destination")
            U, S, Vt = np.linalg.svd(H)
        except np.linalg.LinAlgError as e:
            raise TransformSolverError(f"SVD of cross-covariance did not converge: {e}") from e

        if S[0] <= np.finfo(np.float64).tiny:
            raise UnderdeterminedTransformError(
                f"Correspondences are degenerate (singular values {S[0]:.3e}, {S[1]:.3e}, {S[2]:.3e})"
            )

        R = Vt.T @ U.T
        if np.linalg.det(R) < 0:
            # Reflection: flip the last column of V
            Vt[-1, :] *= -1
            R = Vt.T @ U.T

        t = centroid_dst - R @ centroid_src

        self.logger.debug(
            f"Solved rigid transform from {n_pairs:,} pairs: "
            f"rotation {np.degrees(Transform(R, t).rotation_angle()):.4f} deg, "
            f"translation [{t[0]:.4f}, {t[1]:.4f}, {t[2]:.4f}]"
        )
        return Transform(R, t)

    def solve_correspondences(self, source_positions: np.ndarray, dest_positions: np.ndarray,
                              correspondences: CorrespondenceSet) -> Transform:
        """Solve over the pairs of a correspondence set"""
        source_positions = np.asarray(source_positions, dtype=np.float64)
        dest_positions = np.asarray(dest_positions, dtype=np.float64)
        return self.solve(source_positions[correspondences.source_indices],
                          dest_positions[correspondences.dest_indices])
