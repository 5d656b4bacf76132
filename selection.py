#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Point selection module
Chooses the active source indices of one registration step
"""

import numpy as np
from data_structures import Model, SelectionMask, MODULUS_FILTERS
from errors import InvalidSelectionError
from logging_utils import get_logger

DEFAULT_RANDOM_PROBABILITY = 0.5

logger = get_logger("selection")


def select_indices(model: Model, mask: SelectionMask = SelectionMask.ALL,
                   rng: np.random.Generator = None,
                   random_probability: float = DEFAULT_RANDOM_PROBABILITY,
                   strict: bool = False) -> np.ndarray:
    """
    Active point indices of ``model`` under ``mask``, in ascending order.

    Every set filter must accept an index for it to survive:
    EVERY_SECOND..EVERY_FIFTH keep indices divisible by 2..5, NO_EDGES drops
    edge points and RANDOM keeps each index with ``random_probability``,
    drawn fresh from ``rng`` on each call.

    NO_EDGES on a model without edge annotations is skipped with a warning,
    unless ``strict`` is set, in which case InvalidSelectionError is raised.
    """
    n_points = len(model)
    keep = np.ones(n_points, dtype=bool)
    if mask == SelectionMask.ALL or n_points == 0:
        return np.flatnonzero(keep)

    index = np.arange(n_points)
    for flag, divisor in MODULUS_FILTERS.items():
        if flag in mask:
            keep &= (index % divisor) == 0

    if SelectionMask.NO_EDGES in mask:
        if model.has_edges:
            keep &= ~model.edge_flags
        elif strict:
            raise InvalidSelectionError(
                f"NO_EDGES requested but model '{model.name}' has no edge annotations"
            )
        else:
            logger.warning(f"Model '{model.name}' has no edge annotations, ignoring NO_EDGES filter")

    if SelectionMask.RANDOM in mask:
        if rng is None:
            rng = np.random.default_rng()
        keep &= rng.random(n_points) < random_probability

    selected = np.flatnonzero(keep)
    logger.debug(f"Selection {mask.describe()}: {len(selected):,}/{n_points:,} points active")
    return selected
