#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
PCA alignment module
One-shot principal-axis pre-alignment that seeds ICP
"""

import itertools
import time
import numpy as np
from typing import Dict, List, Optional, Tuple
from sklearn.decomposition import PCA
from data_structures import Model, RegistrationContext, StepResult, Transform
from errors import UnderdeterminedTransformError
from logging_utils import get_logger
from nearest_neighbor import KdTreeNearestNeighbor, NearestNeighbor

# Variance ratio above which two principal axes are reported as ambiguous
AXIS_AMBIGUITY_RATIO = 0.95


class PCAAlignment:
    """
    Principal-axis pre-alignment.

    Source and destination each get a frame from their principal axes
    (descending variance). Axis signs (and optionally axis order) are
    ambiguous, so every right-handed combination is tried and the rotation
    with the lowest nearest-point error wins. The translation moves the
    rotated source centroid onto the destination centroid.
    """

    method = "pca"

    def __init__(self, nearest_neighbor: NearestNeighbor = None,
                 axis_permutations: bool = False):
        """
        Parameters:
            nearest_neighbor: used to score candidates (default: uncached KD-tree)
            axis_permutations: also try every axis order, not only sign flips
        """
        self.logger = get_logger("pca_alignment")
        self.nn = nearest_neighbor if nearest_neighbor is not None else KdTreeNearestNeighbor(cache_queries=False)
        self.axis_permutations = axis_permutations
        self._dest_frame: Optional[Tuple[int, int, np.ndarray, np.ndarray, np.ndarray]] = None
        self.last_candidates: List[Dict] = []

    def reset(self):
        """Forget the retained destination frame and candidate scores"""
        self._dest_frame = None
        self.last_candidates = []
        self.logger.debug("PCA alignment state reset")

    def principal_frame(self, model: Model) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Centroid, axes (columns, descending variance) and variances of a model"""
        if len(model) < 3:
            raise UnderdeterminedTransformError(
                f"PCA needs at least 3 points, model '{model.name}' has {len(model)}"
            )
        pca = PCA(n_components=3)
        pca.fit(np.asarray(model.positions, dtype=np.float64))
        variances = pca.explained_variance_
        if variances[0] <= 0.0:
            raise UnderdeterminedTransformError(f"Model '{model.name}' has no spatial extent")

        ratios = variances[1:] / variances[:-1]
        if np.any(ratios > AXIS_AMBIGUITY_RATIO):
            self.logger.warning(
                f"Principal axes of '{model.name}' are nearly degenerate "
                f"(variances {variances[0]:.4g}, {variances[1]:.4g}, {variances[2]:.4g})"
            )
        return pca.mean_.copy(), pca.components_.T.copy(), variances.copy()

    def _destination_frame(self, dest: Model) -> Tuple[np.ndarray, np.ndarray]:
        if self._dest_frame is not None:
            uid, version, centroid, axes, _ = self._dest_frame
            if uid == dest.uid and version == dest.version:
                return centroid, axes
        centroid, axes, variances = self.principal_frame(dest)
        self._dest_frame = (dest.uid, dest.version, centroid, axes, variances)
        return centroid, axes

    def candidate_rotations(self, source_axes: np.ndarray, dest_axes: np.ndarray) -> List[Dict]:
        """Proper rotations mapping the source frame onto the destination frame"""
        orders = list(itertools.permutations(range(3))) if self.axis_permutations else [(0, 1, 2)]
        candidates = []
        for order in orders:
            permuted = source_axes[:, list(order)]
            for signs in itertools.product((1.0, -1.0), repeat=3):
                rotation = dest_axes @ np.diag(signs) @ permuted.T
                if np.linalg.det(rotation) > 0:
                    candidates.append({'order': order, 'signs': signs, 'rotation': rotation})
        return candidates

    def step(self, source: Model, dest: Model,
             context: Optional[RegistrationContext] = None) -> StepResult:
        """Align ``source`` to ``dest`` by principal axes (in place)"""
        start_time = time.time()
        self.logger.info(f"PCA pre-alignment: '{source.name}' ({len(source):,} pts) -> '{dest.name}' ({len(dest):,} pts)")

        dest_centroid, dest_axes = self._destination_frame(dest)
        source_centroid, source_axes, _ = self.principal_frame(source)
        source_points = np.asarray(source.positions, dtype=np.float64)

        error_before = self.nn.compute_error(source, dest)
        candidates = self.candidate_rotations(source_axes, dest_axes)

        best = None
        for candidate in candidates:
            rotation = candidate['rotation']
            translation = dest_centroid - rotation @ source_centroid
            transformed = source_points @ rotation.T + translation
            candidate['translation'] = translation
            candidate['error'] = self.nn.compute_error_points(transformed, dest)
            self.logger.debug(
                f"Candidate order={candidate['order']} signs={candidate['signs']}: error {candidate['error']:.6f}"
            )
            if best is None or candidate['error'] < best['error']:
                best = candidate

        self.last_candidates = candidates
        transform = Transform(best['rotation'], best['translation'])
        source.apply_transform(transform)

        iteration = context.iteration if context is not None else 0
        result = StepResult(
            transform=transform,
            error=best['error'],
            n_active=len(source),
            iteration=iteration,
            method=self.method,
            runtime=time.time() - start_time
        )
        if context is not None:
            context.record(result)

        self.logger.info(
            f"PCA pre-alignment done: {len(candidates)} candidates, "
            f"error {error_before:.6f} -> {best['error']:.6f}"
        )
        self.logger.debug(
            f"Chosen signs {best['signs']}, rotation {np.degrees(transform.rotation_angle()):.3f} deg"
        )
        return result
