#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Perturbation module
Random rigid motions, noise and holes applied to models between registration trials
"""

import numpy as np
from data_structures import Model, Transform
from logging_utils import get_logger

logger = get_logger("perturbation")


def _generator(rng) -> np.random.Generator:
    if rng is None:
        return np.random.default_rng()
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


def random_rotation(max_angle: float, rng=None, center=None) -> Transform:
    """Rotation about a uniformly random axis by an angle in [-max_angle, max_angle] (radians)"""
    rng = _generator(rng)
    axis = rng.normal(size=3)
    axis /= np.linalg.norm(axis)
    angle = rng.uniform(-max_angle, max_angle)
    return Transform.from_axis_angle(axis, angle, center=center)


def random_translation(max_distance: float, rng=None) -> Transform:
    """Translation in a random direction by up to max_distance"""
    rng = _generator(rng)
    direction = rng.normal(size=3)
    direction /= np.linalg.norm(direction)
    distance = rng.uniform(0.0, max_distance)
    return Transform(np.eye(3), direction * distance)


def rotate_random(model: Model, max_angle: float, rng=None) -> Transform:
    """Rotate a model about its centroid by a random rotation (in place)"""
    transform = random_rotation(max_angle, rng, center=model.centroid())
    model.apply_transform(transform)
    logger.debug(f"Rotated '{model.name}' by {np.degrees(transform.rotation_angle()):.3f} deg")
    return transform


def translate_random(model: Model, max_distance: float, rng=None) -> Transform:
    """Translate a model by a random offset (in place)"""
    transform = random_translation(max_distance, rng)
    model.apply_transform(transform)
    logger.debug(f"Translated '{model.name}' by {np.linalg.norm(transform.translation):.4f}")
    return transform


def mean_point_spacing(model: Model) -> float:
    """Mean distance from each point to its closest other point"""
    from sklearn.neighbors import NearestNeighbors

    if len(model) < 2:
        return 0.0
    nn = NearestNeighbors(n_neighbors=2, algorithm='kd_tree').fit(model.positions)
    distances, _ = nn.kneighbors(model.positions)
    return float(np.mean(distances[:, 1]))


def add_noise(model: Model, level: float, rng=None) -> float:
    """
    Displace every point along its normal by Gaussian noise (in place).

    The standard deviation is ``level`` times the mean point spacing. Points
    without a normal are displaced in a random direction instead. Returns the
    standard deviation used.
    """
    rng = _generator(rng)
    if len(model) == 0 or level <= 0:
        return 0.0

    sigma = level * mean_point_spacing(model)
    normals = np.array(model.normals, dtype=np.float64)
    lengths = np.linalg.norm(normals, axis=1)

    directions = np.zeros_like(normals)
    has_normal = lengths > 1e-12
    directions[has_normal] = normals[has_normal] / lengths[has_normal, np.newaxis]
    if not np.all(has_normal):
        random_dirs = rng.normal(size=(int(np.count_nonzero(~has_normal)), 3))
        random_dirs /= np.linalg.norm(random_dirs, axis=1, keepdims=True)
        directions[~has_normal] = random_dirs

    offsets = rng.normal(0.0, sigma, size=len(model))
    model.set_positions(model.positions + directions * offsets[:, np.newaxis])
    logger.debug(f"Added noise to '{model.name}': sigma={sigma:.5f}")
    return sigma


def add_hole(model: Model, rng=None, radius_fraction: float = 0.1) -> int:
    """
    Remove all points within a radius of a random point (in place).

    The radius is ``radius_fraction`` of the model's bounding box diagonal.
    Returns the number of removed points.
    """
    rng = _generator(rng)
    if len(model) == 0:
        return 0

    center = model.positions[rng.integers(len(model))]
    radius = radius_fraction * model.scale()
    distances = np.linalg.norm(model.positions - center, axis=1)
    n_removed = model.remove_points(distances <= radius)
    logger.debug(f"Punched hole into '{model.name}': radius={radius:.4f}, {n_removed:,} points removed")
    return n_removed
