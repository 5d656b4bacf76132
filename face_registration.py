#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Registration session module
Main class that ties model loading, PCA pre-alignment and ICP refinement together
"""

import os
import time
import numpy as np
from typing import Dict, List, Optional
from config import SessionConfig
from data_structures import Model, RegistrationContext, SelectionMask, StepResult, Transform
from icp import Aligner, RigidPointICP
from logging_utils import get_logger
from model_loader import ModelLoader
from nearest_neighbor import create_nearest_neighbor
from pca_alignment import PCAAlignment
import perturbation


class RegistrationSession:
    """Source/destination pair with the actions of an interactive registration session"""

    def __init__(self, source: Model, dest: Model,
                 nearest_neighbor: str = "kdtree",
                 selection_mask: SelectionMask = SelectionMask.ALL,
                 random_probability: float = 0.5,
                 seed: int = None,
                 source_path: str = None, dest_path: str = None):
        self.logger = get_logger("session")
        self.source = source
        self.dest = dest
        self.source_path = source_path
        self.dest_path = dest_path
        self.seed = seed

        self.nn = create_nearest_neighbor(nearest_neighbor)
        self.context = RegistrationContext(
            selection_mask=selection_mask,
            seed=seed,
            random_probability=random_probability
        )
        self.icp = RigidPointICP(self.nn, context=self.context)
        self.pca = PCAAlignment(self.nn)
        self.loader = ModelLoader()
        self.perturbation_rng = np.random.default_rng(None if seed is None else seed + 1)
        self.results: List[StepResult] = []

        self.logger.info(f"Registration session: '{source.name}' ({len(source):,} pts) -> "
                         f"'{dest.name}' ({len(dest):,} pts)")
        self.logger.info(f"Nearest neighbor: {self.nn.method}, selection: {selection_mask.describe()}")

    @classmethod
    def from_files(cls, source_path: str, dest_path: str, **kwargs) -> "RegistrationSession":
        loader = ModelLoader()
        source = loader.load(source_path)
        dest = loader.load(dest_path)
        return cls(source, dest, source_path=source_path, dest_path=dest_path, **kwargs)

    @classmethod
    def from_config(cls, config: SessionConfig) -> "RegistrationSession":
        session = cls.from_files(
            config.src, config.dest,
            nearest_neighbor=config.nearest_neighbor,
            selection_mask=SelectionMask.parse(config.selection),
            random_probability=config.random_probability,
            seed=config.seed
        )
        if config.start_random_translation:
            session.translate_source_random(config.max_random_translation)
        if config.start_random_rotation:
            session.rotate_source_random(config.max_random_rotation)
        return session

    # Registration actions

    def _step(self, aligner: Aligner) -> StepResult:
        result = aligner.step(self.source, self.dest, self.context)
        self.results.append(result)
        return result

    def icp_step(self) -> StepResult:
        """Calculate the next ICP step"""
        return self._step(self.icp)

    def pca_align(self) -> StepResult:
        """Run the principal-axis pre-alignment"""
        result = self._step(self.pca)
        self.nn.clear_cache(keep_index=True)
        return result

    def run(self, n_steps: int, pca_first: bool = False, tolerance: float = None) -> Dict:
        """Optional PCA pre-alignment followed by n_steps ICP iterations"""
        self.logger.info("=" * 60)
        self.logger.info(f"Running registration: {n_steps} ICP steps{' after PCA pre-alignment' if pca_first else ''}")
        self.logger.info("=" * 60)

        start_time = time.time()
        initial_error = self.matching_error()
        if pca_first:
            self.pca_align()
        results = self.icp.run(self.source, self.dest, n_steps, self.context, tolerance=tolerance)
        self.results.extend(results)
        final_error = self.matching_error()

        summary = {
            'initial_error': initial_error,
            'final_error': final_error,
            'iterations': self.context.iteration,
            'transformation': self.context.cumulative_transform.as_matrix(),
            'error_history': list(self.context.history),
            'runtime': time.time() - start_time
        }
        self.logger.info(f"Matching error: {initial_error:.6f} -> {final_error:.6f} "
                         f"after {summary['iterations']} ICP steps ({summary['runtime']:.2f}s)")
        return summary

    def matching_error(self) -> float:
        error = self.nn.compute_error(self.source, self.dest)
        self.logger.info(f"Matching error: {error:.12f}")
        return error

    def reload(self):
        """Reload both models from disk and start a fresh run"""
        if self.source_path is None or self.dest_path is None:
            raise ValueError("Session was not created from files, nothing to reload")
        self.logger.info("Reloading models...")
        self.source = self.loader.load(self.source_path)
        self.dest = self.loader.load(self.dest_path)
        self.pca.reset()
        self.nn.clear_cache()
        self.context.reset()
        self.results = []

    # Point selection

    def use_all_points(self):
        self.icp.set_selection_mask(SelectionMask.ALL)

    def toggle_filter(self, flag: SelectionMask) -> bool:
        """Toggle one selection filter; returns whether it is now set"""
        mask = self.icp.selection_mask()
        enabled = flag not in mask
        new_mask = mask | flag if enabled else mask & ~flag
        self.logger.info(f"{'Adding' if enabled else 'Removing'} filter \"{flag.name}\"")
        self.icp.set_selection_mask(new_mask)
        return enabled

    # Source perturbation

    def rotate_source_random(self, max_angle: float) -> Transform:
        self.logger.info("Applying random rotation to source model")
        return perturbation.rotate_random(self.source, max_angle, self.perturbation_rng)

    def translate_source_random(self, max_distance: float) -> Transform:
        self.logger.info("Applying random translation to source model")
        return perturbation.translate_random(self.source, max_distance, self.perturbation_rng)

    def add_noise_to_source(self, level: float = 1.0) -> float:
        self.logger.info("Adding random noise to source model")
        return perturbation.add_noise(self.source, level, self.perturbation_rng)

    def add_hole_to_source(self, radius_fraction: float = 0.1) -> int:
        self.logger.info("Adding a random hole to source model")
        return perturbation.add_hole(self.source, self.perturbation_rng, radius_fraction)

    # Output

    def save_transformation(self, filepath: str) -> Optional[str]:
        """Save the accumulated transformation as text and .npy"""
        matrix = self.context.cumulative_transform.as_matrix()
        self.logger.info(f"Saving transformation matrix to: {os.path.basename(filepath)}")

        output_dir = os.path.dirname(filepath)
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)

        np.save(os.path.splitext(filepath)[0] + '.npy', matrix)
        with open(filepath, 'w') as f:
            f.write("# Rigid registration - accumulated source transformation\n")
            f.write(f"# Generated time: {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
            f.write(f"# Source: {self.source.name}, destination: {self.dest.name}\n")
            f.write(f"# ICP steps: {self.context.iteration}, selection: {self.context.selection_mask.describe()}\n")
            if self.context.last_error is not None:
                f.write(f"# Last matching error: {self.context.last_error:.12f}\n")
            f.write("# Application: transformed_point = T @ [x, y, z, 1]^T\n")
            f.write("\n")
            for i in range(4):
                f.write(" ".join(f"{matrix[i, j]:14.10f}" for j in range(4)) + "\n")
        return filepath

    def save_source(self, filepath: str) -> str:
        return self.loader.save(self.source, filepath)
