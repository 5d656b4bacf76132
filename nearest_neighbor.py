#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Nearest neighbor module
Closest-point search against a model, matching error and result caching
"""

import time
import numpy as np
from typing import Dict, Tuple
from sklearn.neighbors import KDTree
from data_structures import Model
from errors import EmptyTargetError
from logging_utils import get_logger


def squared_distances(candidates: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Squared Euclidean distances, summed in a fixed x, y, z order"""
    diff = candidates - query
    return diff[..., 0] * diff[..., 0] + diff[..., 1] * diff[..., 1] + diff[..., 2] * diff[..., 2]


class NearestNeighbor:
    """
    Closest-point search base class.

    Subclasses implement ``_query``. Results of ``find_nearest`` are memoized
    per target (uid, version) and query point. Every model mutation bumps the
    version, so a changed destination never serves stale correspondences, and
    the memo of a superseded version is dropped the first time the new version
    is queried. ``clear_cache`` still drops everything explicitly.
    """

    method = "base"

    def __init__(self, cache_queries: bool = True):
        self.logger = get_logger("nearest_neighbor")
        self.cache_queries = cache_queries
        self._query_cache: Dict[Tuple[int, int], Dict[bytes, Tuple[int, float]]] = {}
        self.cache_hits = 0
        self.cache_misses = 0

    def _query(self, points: np.ndarray, target: Model) -> Tuple[np.ndarray, np.ndarray]:
        """Return (indices, squared distances) of the nearest target point per query"""
        raise NotImplementedError

    def _require_points(self, target: Model):
        if len(target) == 0:
            raise EmptyTargetError(f"Nearest neighbor query against empty model '{target.name}'")

    def _target_cache(self, target: Model) -> Dict[bytes, Tuple[int, float]]:
        """Memo of the target's current version; older versions of it are evicted"""
        key = (target.uid, target.version)
        cache = self._query_cache.get(key)
        if cache is None:
            stale = [k for k in self._query_cache if k[0] == target.uid]
            for k in stale:
                del self._query_cache[k]
            if stale:
                self.logger.debug(f"Evicted cached queries of {len(stale)} old version(s) of '{target.name}'")
            cache = self._query_cache[key] = {}
        return cache

    def find_nearest(self, point, target: Model) -> Tuple[int, float]:
        """Index of the target point closest to ``point`` and its distance"""
        point = np.asarray(point, dtype=np.float64).reshape(3)
        self._require_points(target)

        if self.cache_queries:
            cache = self._target_cache(target)
            cached = cache.get(point.tobytes())
            if cached is not None:
                self.cache_hits += 1
                return cached

        indices, sq_distances = self._query(point[np.newaxis, :], target)
        result = (int(indices[0]), float(np.sqrt(sq_distances[0])))
        if self.cache_queries:
            self.cache_misses += 1
            cache[point.tobytes()] = result
        return result

    def find_nearest_batch(self, points: np.ndarray, target: Model) -> Tuple[np.ndarray, np.ndarray]:
        """Vectorised ``find_nearest`` over an (N, 3) array; shares the same cache"""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        self._require_points(target)

        n_points = len(points)
        indices = np.empty(n_points, dtype=np.int64)
        distances = np.empty(n_points, dtype=np.float64)
        if n_points == 0:
            return indices, distances

        if not self.cache_queries:
            found, sq_distances = self._query(points, target)
            return found.astype(np.int64), np.sqrt(sq_distances)

        cache = self._target_cache(target)
        keys = [row.tobytes() for row in points]
        missing = []
        for i, key in enumerate(keys):
            cached = cache.get(key)
            if cached is None:
                missing.append(i)
            else:
                indices[i], distances[i] = cached

        self.cache_hits += n_points - len(missing)
        self.cache_misses += len(missing)

        if missing:
            missing = np.asarray(missing, dtype=np.int64)
            found, sq_distances = self._query(points[missing], target)
            found_distances = np.sqrt(sq_distances)
            indices[missing] = found
            distances[missing] = found_distances
            for i, j, d in zip(missing, found, found_distances):
                cache[keys[i]] = (int(j), float(d))

        return indices, distances

    def compute_error(self, model_a: Model, model_b: Model) -> float:
        """RMS nearest distance of every point of model_a against model_b"""
        if len(model_a) == 0:
            return 0.0
        self._require_points(model_b)
        _, sq_distances = self._query(np.asarray(model_a.positions, dtype=np.float64), model_b)
        return float(np.sqrt(np.mean(sq_distances)))

    def compute_error_points(self, points: np.ndarray, model_b: Model) -> float:
        """RMS nearest distance of raw positions against model_b"""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            return 0.0
        self._require_points(model_b)
        _, sq_distances = self._query(points, model_b)
        return float(np.sqrt(np.mean(sq_distances)))

    def clear_cache(self, keep_index: bool = False):
        """Drop memoized queries (and spatial indices unless keep_index)"""
        n_cached = sum(len(cache) for cache in self._query_cache.values())
        if n_cached:
            self.logger.debug(f"Clearing {n_cached:,} cached queries")
        self._query_cache.clear()


class BruteForceNearestNeighbor(NearestNeighbor):
    """Linear scan over all target points, O(n) per query"""

    method = "brute_force"

    def __init__(self, cache_queries: bool = True, chunk_elements: int = 4_000_000):
        super().__init__(cache_queries=cache_queries)
        self.chunk_elements = chunk_elements

    def _query(self, points: np.ndarray, target: Model) -> Tuple[np.ndarray, np.ndarray]:
        target_points = np.asarray(target.positions, dtype=np.float64)
        n_target = len(target_points)

        indices = np.empty(len(points), dtype=np.int64)
        sq_best = np.empty(len(points), dtype=np.float64)

        # Bound the (queries x targets) distance matrix per chunk
        chunk_size = max(1, self.chunk_elements // max(1, n_target))
        for start in range(0, len(points), chunk_size):
            end = min(start + chunk_size, len(points))
            sq = squared_distances(target_points[np.newaxis, :, :], points[start:end, np.newaxis, :])
            # argmin returns the first minimum, i.e. the lowest index on ties
            best = np.argmin(sq, axis=1)
            indices[start:end] = best
            sq_best[start:end] = sq[np.arange(end - start), best]

        return indices, sq_best


class KdTreeNearestNeighbor(NearestNeighbor):
    """
    KD-tree accelerated search, O(log n) per query on average.

    The tree proposes the nearest point; queries that have several candidates
    within a hair of that distance are re-ranked with ``squared_distances`` and
    the lowest index wins, so results match ``BruteForceNearestNeighbor``
    exactly, ties included.
    """

    method = "kdtree"

    def __init__(self, cache_queries: bool = True, leaf_size: int = 40,
                 tie_tolerance: float = 1e-9):
        super().__init__(cache_queries=cache_queries)
        self.leaf_size = leaf_size
        self.tie_tolerance = tie_tolerance
        self._index_cache: Dict[int, Tuple[int, KDTree, np.ndarray]] = {}

    def _get_index(self, target: Model) -> Tuple[KDTree, np.ndarray]:
        cached = self._index_cache.get(target.uid)
        if cached is not None and cached[0] == target.version:
            return cached[1], cached[2]

        start_time = time.time()
        target_points = np.array(target.positions, dtype=np.float64)
        tree = KDTree(target_points, leaf_size=self.leaf_size)
        self._index_cache[target.uid] = (target.version, tree, target_points)
        self.logger.debug(
            f"Built KD-tree for '{target.name}' (uid={target.uid}, version={target.version}, "
            f"{len(target_points):,} points) in {time.time() - start_time:.3f}s"
        )
        return tree, target_points

    def _query(self, points: np.ndarray, target: Model) -> Tuple[np.ndarray, np.ndarray]:
        tree, target_points = self._get_index(target)

        _, nearest = tree.query(points, k=1)
        indices = nearest[:, 0].astype(np.int64)
        sq_best = squared_distances(target_points[indices], points)

        # Candidates at (almost) the same distance as the tree's answer
        best_distance = np.sqrt(sq_best)
        radius = best_distance * (1.0 + self.tie_tolerance) + 1e-12
        counts = tree.query_radius(points, r=radius, count_only=True)
        ambiguous = np.flatnonzero(counts > 1)

        if len(ambiguous) > 0:
            candidate_lists = tree.query_radius(points[ambiguous], r=radius[ambiguous])
            for row, candidates in zip(ambiguous, candidate_lists):
                candidates = np.sort(candidates)
                sq = squared_distances(target_points[candidates], points[row])
                best = int(np.argmin(sq))
                indices[row] = candidates[best]
                sq_best[row] = sq[best]

        return indices, sq_best

    def clear_cache(self, keep_index: bool = False):
        super().clear_cache(keep_index=keep_index)
        if not keep_index:
            self._index_cache.clear()


NEAREST_NEIGHBOR_METHODS = {
    BruteForceNearestNeighbor.method: BruteForceNearestNeighbor,
    KdTreeNearestNeighbor.method: KdTreeNearestNeighbor,
}


def create_nearest_neighbor(method: str = "kdtree", **kwargs) -> NearestNeighbor:
    """Create a nearest neighbor implementation by name ('kdtree' or 'brute_force')"""
    try:
        nn_class = NEAREST_NEIGHBOR_METHODS[method]
    except KeyError:
        raise ValueError(
            f"Unknown nearest neighbor method '{method}', "
            f"expected one of {sorted(NEAREST_NEIGHBOR_METHODS)}"
        ) from None
    return nn_class(**kwargs)
