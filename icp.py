#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Iterative closest point module
Point-to-point rigid ICP, one iteration per step call
"""

import time
import numpy as np
from typing import Optional, Protocol
from data_structures import (CorrespondenceSet, Model, RegistrationContext,
                             SelectionMask, StepResult)
from errors import RegistrationStepError
from logging_utils import get_logger
from nearest_neighbor import NearestNeighbor
from selection import select_indices
from transform_solver import RigidTransformSolver


class Aligner(Protocol):
    """Anything that moves ``source`` towards ``dest`` one step at a time"""

    def step(self, source: Model, dest: Model,
             context: Optional[RegistrationContext] = None) -> StepResult:
        ...


class RigidPointICP:
    """
    Rigid body point-to-point ICP.

    Each ``step`` selects the active source points, pairs every one with its
    nearest destination point, solves the rigid transform over those pairs and
    applies it to the whole source model. There is no converged state: the
    caller watches ``StepResult.error`` (or ``context.history``) and decides
    when to stop.
    """

    method = "rigid_point_icp"

    def __init__(self, nearest_neighbor: NearestNeighbor,
                 solver: RigidTransformSolver = None,
                 context: RegistrationContext = None,
                 track_error: bool = True):
        """
        Parameters:
            nearest_neighbor: correspondence search used for every step
            solver: rigid transform solver (default RigidTransformSolver())
            context: default run context, used when step() gets none
            track_error: compute the full-model RMS error after each step
        """
        self.logger = get_logger("icp")
        self.nn = nearest_neighbor
        self.solver = solver if solver is not None else RigidTransformSolver()
        self.context = context if context is not None else RegistrationContext()
        self.track_error = track_error

    def set_selection_mask(self, mask: SelectionMask):
        self.context.selection_mask = mask
        self.logger.info(f"Point selection: {mask.describe()}")

    def selection_mask(self) -> SelectionMask:
        return self.context.selection_mask

    def find_correspondences(self, source: Model, dest: Model,
                             active: np.ndarray) -> CorrespondenceSet:
        """Nearest destination point for each active source index"""
        source_points = np.asarray(source.positions)[active]
        dest_indices, distances = self.nn.find_nearest_batch(source_points, dest)
        return CorrespondenceSet(
            source_indices=active,
            dest_indices=dest_indices,
            squared_distances=distances ** 2
        )

    def step(self, source: Model, dest: Model,
             context: Optional[RegistrationContext] = None) -> StepResult:
        """Run one ICP iteration, moving ``source`` in place"""
        context = context if context is not None else self.context
        iteration = context.iteration + 1
        start_time = time.time()

        n_active = None
        try:
            active = select_indices(
                source, context.selection_mask, rng=context.rng,
                random_probability=context.random_probability,
                strict=context.strict_selection
            )
            n_active = len(active)
            correspondences = self.find_correspondences(source, dest, active)
            transform = self.solver.solve_correspondences(source.positions, dest.positions, correspondences)
        except RegistrationStepError as e:
            e.with_step_info(iteration, n_active)
            self.logger.error(f"ICP step failed: {e}")
            raise

        source.apply_transform(transform)
        # Source moved: memoized queries of its old positions are useless now
        self.nn.clear_cache(keep_index=True)

        error = self.nn.compute_error(source, dest) if self.track_error else None
        result = StepResult(
            transform=transform,
            error=error,
            n_active=n_active,
            iteration=iteration,
            method=self.method,
            runtime=time.time() - start_time
        )
        context.record(result)

        if error is not None:
            self.logger.info(
                f"ICP step {iteration}: {n_active:,} active points, "
                f"pair RMS {correspondences.rms:.6f} -> model error {error:.6f}"
            )
        else:
            self.logger.info(f"ICP step {iteration}: {n_active:,} active points, pair RMS {correspondences.rms:.6f}")
        self.logger.debug(
            f"Step rotation {np.degrees(transform.rotation_angle()):.5f} deg, "
            f"translation norm {np.linalg.norm(transform.translation):.6f}, "
            f"runtime {result.runtime:.3f}s"
        )
        return result

    def run(self, source: Model, dest: Model, n_steps: int,
            context: Optional[RegistrationContext] = None, tolerance: float = None) -> list:
        """
        Convenience loop over ``step``.

        Stops early when ``tolerance`` is given and the error improved by less
        than it between two steps.
        """
        context = context if context is not None else self.context
        results = []
        for _ in range(n_steps):
            previous_error = context.last_error
            result = self.step(source, dest, context)
            results.append(result)
            if (tolerance is not None and previous_error is not None and result.error is not None
                    and previous_error - result.error < tolerance):
                self.logger.info(f"Error change below {tolerance:g} after step {result.iteration}, stopping")
                break
        return results
