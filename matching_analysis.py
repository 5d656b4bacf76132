#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Matching analysis module
Responsible for repeated randomized registration trials and their error statistics
"""

import os
import time
import numpy as np
import pandas as pd
import psutil
from tqdm import tqdm
from typing import Dict, Optional
from data_structures import Model, RegistrationContext, SelectionMask
from icp import RigidPointICP
from logging_utils import get_logger
from nearest_neighbor import create_nearest_neighbor
from pca_alignment import PCAAlignment
import perturbation


class AverageMatchingError:
    """
    Average matching error over randomized trials.

    Every trial copies both models, optionally damages the source (noise,
    holes), records the correct partner of every source vertex, moves the
    source by a random rigid motion and registers it back (optionally PCA
    first). Per ICP iteration it collects the algorithm error (nearest-point
    RMS), the real error (RMS to the correct partners) and the fraction of
    vertices matched to their correct partner.
    """

    def __init__(self, rand_cycles: int = 100, icp_cycles: int = 30,
                 max_rotation: float = np.pi / 4, max_translation: float = 0.3,
                 pca_first: bool = False,
                 pair_selection: SelectionMask = SelectionMask.ALL,
                 noise_level: float = 0.0, holes: int = 0,
                 nearest_neighbor: str = "kdtree",
                 random_probability: float = 0.5,
                 seed: int = None, show_progress: bool = True):
        self.logger = get_logger("matching_analysis")
        self.rand_cycles = rand_cycles
        self.icp_cycles = icp_cycles
        self.max_rotation = max_rotation
        self.max_translation = max_translation
        self.pca_first = pca_first
        self.pair_selection = pair_selection
        self.noise_level = noise_level
        self.holes = holes
        self.nearest_neighbor = nearest_neighbor
        self.random_probability = random_probability
        self.seed = seed
        self.show_progress = show_progress

        self.iteration_results: Optional[pd.DataFrame] = None
        self.trial_results: Optional[pd.DataFrame] = None
        self.summary: Dict = {}

    @classmethod
    def from_config(cls, config, **kwargs) -> "AverageMatchingError":
        return cls(
            rand_cycles=config.rand_cycles,
            icp_cycles=config.icp_cycles,
            max_rotation=config.stats_max_rotation,
            max_translation=config.stats_max_translation,
            pca_first=config.stats_pca_first,
            pair_selection=SelectionMask.parse(config.pair_selection),
            noise_level=config.noise_level,
            holes=config.holes,
            nearest_neighbor=config.nearest_neighbor,
            random_probability=config.random_probability,
            seed=config.seed,
            **kwargs
        )

    def _get_memory_usage_mb(self) -> float:
        return psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024

    @staticmethod
    def correct_pairs(source: Model, dest: Model, nn) -> np.ndarray:
        """Nearest destination index of every source vertex in the unmoved pose"""
        indices, _ = nn.find_nearest_batch(source.positions, dest)
        return indices

    @staticmethod
    def real_error(source: Model, dest: Model, pairs: np.ndarray) -> float:
        """RMS distance between source vertices and their correct partners"""
        if len(source) == 0:
            return 0.0
        diff = np.asarray(source.positions) - np.asarray(dest.positions)[pairs]
        return float(np.sqrt(np.mean(np.sum(diff * diff, axis=1))))

    @staticmethod
    def match_fraction(source: Model, dest: Model, pairs: np.ndarray, nn) -> float:
        """Fraction of source vertices whose nearest neighbor is their correct partner"""
        if len(source) == 0:
            return 0.0
        indices, _ = nn.find_nearest_batch(source.positions, dest)
        return float(np.mean(indices == pairs))

    def run_trial(self, source: Model, dest: Model, trial: int, rng: np.random.Generator) -> Dict:
        """One randomized registration of a copy of ``source`` onto a copy of ``dest``"""
        src = source.copy(name=f"{source.name}_trial{trial}")
        dst = dest.copy(name=f"{dest.name}_trial{trial}")
        nn = create_nearest_neighbor(self.nearest_neighbor)

        if self.noise_level > 0:
            perturbation.add_noise(src, self.noise_level, rng)
        for _ in range(self.holes):
            perturbation.add_hole(src, rng)

        pairs = self.correct_pairs(src, dst, nn)

        perturbation.translate_random(src, self.max_translation, rng)
        perturbation.rotate_random(src, self.max_rotation, rng)
        nn.clear_cache(keep_index=True)

        trial_seed = int(rng.integers(2**31 - 1))
        context = RegistrationContext(
            selection_mask=self.pair_selection,
            seed=trial_seed,
            random_probability=self.random_probability
        )
        icp = RigidPointICP(nn, context=context)

        trial_info = {'trial': trial, 'n_source': len(src), 'n_dest': len(dst)}
        if self.pca_first:
            trial_info['algo_error_before_pca'] = nn.compute_error(src, dst)
            trial_info['real_error_before_pca'] = self.real_error(src, dst, pairs)
            PCAAlignment(nn).step(src, dst)
            nn.clear_cache(keep_index=True)
            trial_info['algo_error_after_pca'] = nn.compute_error(src, dst)
            trial_info['real_error_after_pca'] = self.real_error(src, dst, pairs)

        rows = [{
            'trial': trial,
            'iteration': 0,
            'algo_error': nn.compute_error(src, dst),
            'real_error': self.real_error(src, dst, pairs),
            'match_fraction': self.match_fraction(src, dst, pairs, nn),
        }]
        for _ in range(self.icp_cycles):
            result = icp.step(src, dst, context)
            rows.append({
                'trial': trial,
                'iteration': result.iteration,
                'algo_error': result.error,
                'real_error': self.real_error(src, dst, pairs),
                'match_fraction': self.match_fraction(src, dst, pairs, nn),
            })

        trial_info['final_algo_error'] = rows[-1]['algo_error']
        trial_info['final_real_error'] = rows[-1]['real_error']
        trial_info['final_match_fraction'] = rows[-1]['match_fraction']
        return {'info': trial_info, 'rows': rows}

    def run(self, source: Model, dest: Model) -> Dict:
        """Run all trials and aggregate the per-iteration averages"""
        self.logger.info("=" * 80)
        self.logger.info("Average matching error analysis")
        self.logger.info("=" * 80)
        self.logger.info(f"Source: '{source.name}' ({len(source):,} pts), dest: '{dest.name}' ({len(dest):,} pts)")
        self.logger.info(f"Trials: {self.rand_cycles}, ICP steps per trial: {self.icp_cycles}")
        self.logger.info(f"Max rotation: {np.degrees(self.max_rotation):.1f} deg, max translation: {self.max_translation}")
        self.logger.info(f"Pair selection: {self.pair_selection.describe()}, PCA first: {self.pca_first}, "
                         f"noise level: {self.noise_level}, holes: {self.holes}")

        start_time = time.time()
        initial_memory_mb = self._get_memory_usage_mb()
        peak_memory_mb = initial_memory_mb
        rng = np.random.default_rng(self.seed)

        trial_infos = []
        iteration_rows = []
        for trial in tqdm(range(self.rand_cycles), desc="Registration trials", disable=not self.show_progress):
            outcome = self.run_trial(source, dest, trial, rng)
            trial_infos.append(outcome['info'])
            iteration_rows.extend(outcome['rows'])
            peak_memory_mb = max(peak_memory_mb, self._get_memory_usage_mb())
            self.logger.debug(
                f"Trial {trial}: algo error {outcome['info']['final_algo_error']:.6f}, "
                f"real error {outcome['info']['final_real_error']:.6f}"
            )

        self.trial_results = pd.DataFrame(trial_infos)
        all_iterations = pd.DataFrame(iteration_rows, columns=[
            'trial', 'iteration', 'algo_error', 'real_error', 'match_fraction'])
        self.iteration_results = (
            all_iterations.groupby('iteration', as_index=False)[['algo_error', 'real_error', 'match_fraction']]
            .mean()
            .rename(columns={
                'algo_error': 'average_algo_error',
                'real_error': 'average_real_error',
                'match_fraction': 'average_match_fraction',
            })
        )

        self.summary = {
            'trials': self.rand_cycles,
            'icp_cycles': self.icp_cycles,
            'src_vertices': len(source),
            'dest_vertices': len(dest),
            'pair_selection': self.pair_selection.describe(),
            'runtime': time.time() - start_time,
            'peak_memory_mb': peak_memory_mb,
        }
        if self.pca_first and len(self.trial_results) > 0:
            for column in ('algo_error_before_pca', 'algo_error_after_pca',
                           'real_error_before_pca', 'real_error_after_pca'):
                self.summary[f'average_{column}'] = float(self.trial_results[column].mean())

        self.print_results()
        return {
            'summary': self.summary,
            'iterations': self.iteration_results,
            'trials': self.trial_results,
        }

    def print_results(self):
        if self.iteration_results is None:
            self.logger.warning("No results yet, run the analysis first")
            return

        self.logger.info("Average matching results per ICP iteration:")
        for row in self.iteration_results.itertuples(index=False):
            self.logger.info(f"  {int(row.iteration):3d}: algo {row.average_algo_error:.8f}, "
                             f"real {row.average_real_error:.8f}, matches {row.average_match_fraction:.4f}")
        if 'average_algo_error_before_pca' in self.summary:
            self.logger.info(f"Algo error before / after PCA: {self.summary['average_algo_error_before_pca']:.8f} / "
                             f"{self.summary['average_algo_error_after_pca']:.8f}")
            self.logger.info(f"Real error before / after PCA: {self.summary['average_real_error_before_pca']:.8f} / "
                             f"{self.summary['average_real_error_after_pca']:.8f}")
        self.logger.info(f"Execution time: {self.summary['runtime']:.2f} s, "
                         f"peak memory: {self.summary['peak_memory_mb']:.1f} MB")

    def write_results(self, output_dir: str, prefix: str = "average_matching") -> Dict[str, str]:
        """Write per-iteration averages and per-trial results as CSV"""
        if self.iteration_results is None:
            raise RuntimeError("No results to write, run the analysis first")

        os.makedirs(output_dir, exist_ok=True)
        paths = {
            'iterations': os.path.join(output_dir, f"{prefix}_iterations.csv"),
            'trials': os.path.join(output_dir, f"{prefix}_trials.csv"),
        }
        self.iteration_results.to_csv(paths['iterations'], index=False)
        self.trial_results.to_csv(paths['trials'], index=False)
        self.logger.info(f"Results written to: {output_dir}")
        return paths
