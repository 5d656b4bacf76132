#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Data structures module
Defines the point model, rigid transforms, selection flags and per-run state
"""

import enum
import itertools
import numpy as np
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional
from scipy.spatial.transform import Rotation

_model_ids = itertools.count(1)


class Vertex(NamedTuple):
    """Single model point"""
    position: np.ndarray
    normal: np.ndarray
    is_edge: bool


def _read_only(array: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if array is None:
        return None
    view = array.view()
    view.flags.writeable = False
    return view


class Model:
    """
    Ordered point store with position, normal and edge flag per point.

    Arrays are only exposed as read-only views; every mutation goes through a
    method that bumps ``version``, which is what nearest neighbor caches and
    spatial indices compare against.
    """

    def __init__(self, positions: np.ndarray, normals: np.ndarray = None,
                 edge_flags: np.ndarray = None, triangles: np.ndarray = None,
                 name: str = ""):
        positions = np.array(positions, dtype=np.float64).reshape(-1, 3)
        n_points = len(positions)

        if normals is None:
            normals = np.zeros((n_points, 3), dtype=np.float64)
        else:
            normals = np.array(normals, dtype=np.float64).reshape(-1, 3)
            if len(normals) != n_points:
                raise ValueError(f"Expected {n_points} normals, got {len(normals)}")

        if edge_flags is not None:
            edge_flags = np.array(edge_flags, dtype=bool).reshape(-1)
            if len(edge_flags) != n_points:
                raise ValueError(f"Expected {n_points} edge flags, got {len(edge_flags)}")

        if triangles is not None:
            triangles = np.array(triangles, dtype=np.int64).reshape(-1, 3)

        self._positions = positions
        self._normals = normals
        self._edge_flags = edge_flags
        self._triangles = triangles
        self.name = name
        self.uid = next(_model_ids)
        self.version = 0

    def __len__(self):
        return len(self._positions)

    def __repr__(self):
        return f"Model(name={self.name!r}, points={len(self)}, version={self.version})"

    @property
    def n_points(self) -> int:
        return len(self._positions)

    @property
    def positions(self) -> np.ndarray:
        return _read_only(self._positions)

    @property
    def normals(self) -> np.ndarray:
        return _read_only(self._normals)

    @property
    def edge_flags(self) -> Optional[np.ndarray]:
        return _read_only(self._edge_flags)

    @property
    def triangles(self) -> Optional[np.ndarray]:
        return _read_only(self._triangles)

    @property
    def has_edges(self) -> bool:
        return self._edge_flags is not None

    def _check_index(self, index: int):
        if not 0 <= index < len(self._positions):
            raise IndexError(f"Point index {index} out of range for {len(self._positions)} points")

    def _touch(self):
        self.version += 1

    def get_vertex(self, index: int) -> Vertex:
        self._check_index(index)
        is_edge = bool(self._edge_flags[index]) if self._edge_flags is not None else False
        return Vertex(self._positions[index].copy(), self._normals[index].copy(), is_edge)

    def set_vertex(self, index: int, position, normal=None, is_edge: bool = None):
        """Overwrite one point; omitted attributes keep their value"""
        self._check_index(index)
        self._positions[index] = np.asarray(position, dtype=np.float64)
        if normal is not None:
            self._normals[index] = np.asarray(normal, dtype=np.float64)
        if is_edge is not None:
            if self._edge_flags is None:
                self._edge_flags = np.zeros(len(self._positions), dtype=bool)
            self._edge_flags[index] = bool(is_edge)
        self._touch()

    def set_positions(self, positions: np.ndarray):
        positions = np.array(positions, dtype=np.float64).reshape(-1, 3)
        if len(positions) != len(self._positions):
            raise ValueError(f"Expected {len(self._positions)} positions, got {len(positions)}")
        self._positions = positions
        self._touch()

    def set_normals(self, normals: np.ndarray):
        normals = np.array(normals, dtype=np.float64).reshape(-1, 3)
        if len(normals) != len(self._positions):
            raise ValueError(f"Expected {len(self._positions)} normals, got {len(normals)}")
        self._normals = normals
        self._touch()

    def set_edge_flags(self, edge_flags: Optional[np.ndarray]):
        if edge_flags is not None:
            edge_flags = np.array(edge_flags, dtype=bool).reshape(-1)
            if len(edge_flags) != len(self._positions):
                raise ValueError(f"Expected {len(self._positions)} edge flags, got {len(edge_flags)}")
        self._edge_flags = edge_flags
        self._touch()

    def apply_transform(self, transform):
        """Rotate and translate all positions, rotate all normals (in place)"""
        if not isinstance(transform, Transform):
            transform = Transform.from_matrix(transform)
        self._positions = transform.apply_to_points(self._positions)
        self._normals = transform.apply_to_normals(self._normals)
        self._touch()

    def remove_points(self, mask: np.ndarray) -> int:
        """Remove points where mask is True, dropping triangles that used them"""
        mask = np.asarray(mask, dtype=bool).reshape(-1)
        if len(mask) != len(self._positions):
            raise ValueError(f"Expected mask of length {len(self._positions)}, got {len(mask)}")
        n_removed = int(np.count_nonzero(mask))
        if n_removed == 0:
            return 0

        keep = ~mask
        if self._triangles is not None:
            new_index = np.cumsum(keep) - 1
            valid = keep[self._triangles].all(axis=1)
            self._triangles = new_index[self._triangles[valid]]

        self._positions = self._positions[keep]
        self._normals = self._normals[keep]
        if self._edge_flags is not None:
            self._edge_flags = self._edge_flags[keep]
        self._touch()
        return n_removed

    def copy(self, name: str = None) -> "Model":
        """Independent deep copy with its own uid"""
        return Model(
            self._positions, self._normals,
            edge_flags=self._edge_flags,
            triangles=self._triangles,
            name=self.name if name is None else name
        )

    def centroid(self) -> np.ndarray:
        return self._positions.mean(axis=0)

    def scale(self) -> float:
        """Bounding box diagonal, used as the model's length scale"""
        if len(self._positions) == 0:
            return 0.0
        return float(np.linalg.norm(self._positions.max(axis=0) - self._positions.min(axis=0)))


@dataclass(frozen=True, eq=False)
class Transform:
    """Rigid transform: proper rotation followed by translation"""
    rotation: np.ndarray
    translation: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'rotation', np.array(self.rotation, dtype=np.float64).reshape(3, 3))
        object.__setattr__(self, 'translation', np.array(self.translation, dtype=np.float64).reshape(3))

    @classmethod
    def identity(cls) -> "Transform":
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> "Transform":
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape != (4, 4):
            raise ValueError(f"Expected a 4x4 homogeneous matrix, got shape {matrix.shape}")
        return cls(matrix[:3, :3], matrix[:3, 3])

    @classmethod
    def from_axis_angle(cls, axis, angle: float, translation=None, center=None) -> "Transform":
        """Rotation by angle (radians) about axis, optionally about a center point"""
        axis = np.asarray(axis, dtype=np.float64)
        axis = axis / np.linalg.norm(axis)
        rotation = Rotation.from_rotvec(axis * angle).as_matrix()
        offset = np.zeros(3) if translation is None else np.asarray(translation, dtype=np.float64)
        if center is not None:
            center = np.asarray(center, dtype=np.float64)
            offset = offset + center - rotation @ center
        return cls(rotation, offset)

    def as_matrix(self) -> np.ndarray:
        matrix = np.eye(4)
        matrix[:3, :3] = self.rotation
        matrix[:3, 3] = self.translation
        return matrix

    def inverse(self) -> "Transform":
        rotation_t = self.rotation.T
        return Transform(rotation_t, -rotation_t @ self.translation)

    def compose(self, other: "Transform") -> "Transform":
        """Transform that applies ``other`` first and then ``self``"""
        return Transform(self.rotation @ other.rotation,
                         self.rotation @ other.translation + self.translation)

    def apply_to_points(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64)
        return points @ self.rotation.T + self.translation

    def apply_to_normals(self, normals: np.ndarray) -> np.ndarray:
        normals = np.asarray(normals, dtype=np.float64)
        return normals @ self.rotation.T

    def rotation_angle(self) -> float:
        """Rotation angle in radians, from trace(R) = 1 + 2cos(theta)"""
        cos_angle = (np.trace(self.rotation) - 1.0) / 2.0
        return float(np.arccos(np.clip(cos_angle, -1.0, 1.0)))

    def is_proper(self, tolerance: float = 1e-9) -> bool:
        orthogonal = np.allclose(self.rotation.T @ self.rotation, np.eye(3), atol=tolerance)
        return orthogonal and abs(np.linalg.det(self.rotation) - 1.0) <= tolerance


class SelectionMask(enum.Flag):
    """Point selection filters; combined filters intersect"""
    ALL = 0
    EVERY_SECOND = enum.auto()
    EVERY_THIRD = enum.auto()
    EVERY_FOURTH = enum.auto()
    EVERY_FIFTH = enum.auto()
    NO_EDGES = enum.auto()
    RANDOM = enum.auto()

    def filters(self) -> List["SelectionMask"]:
        """Single filters set in this mask, in declaration order"""
        return [member for member in SelectionMask
                if member is not SelectionMask.ALL and member in self]

    def describe(self) -> str:
        names = [member.name for member in self.filters()]
        return "|".join(names) if names else "ALL"

    @classmethod
    def parse(cls, text: str) -> "SelectionMask":
        """Parse names joined by '|', ',' or '+' (e.g. "EVERY_SECOND|NO_EDGES")"""
        mask = cls.ALL
        for token in text.replace(',', '|').replace('+', '|').split('|'):
            token = token.strip().upper().replace('-', '_')
            if not token:
                continue
            if token not in cls.__members__:
                raise ValueError(f"Unknown selection filter: {token}")
            mask |= cls[token]
        return mask


# Modulus filters and their divisors
MODULUS_FILTERS = {
    SelectionMask.EVERY_SECOND: 2,
    SelectionMask.EVERY_THIRD: 3,
    SelectionMask.EVERY_FOURTH: 4,
    SelectionMask.EVERY_FIFTH: 5,
}


@dataclass
class CorrespondenceSet:
    """Source index -> nearest destination index pairs of one step"""
    source_indices: np.ndarray
    dest_indices: np.ndarray
    squared_distances: np.ndarray

    def __len__(self):
        return len(self.source_indices)

    @property
    def rms(self) -> float:
        if len(self.squared_distances) == 0:
            return 0.0
        return float(np.sqrt(np.mean(self.squared_distances)))


@dataclass
class StepResult:
    """Outcome of one alignment step"""
    transform: Transform
    error: Optional[float]
    n_active: int
    iteration: int
    method: str
    runtime: float = 0.0


@dataclass
class RegistrationContext:
    """
    Per-run registration state.

    Holds what used to live in mutable aligner fields: selection mask,
    iteration counter, last error, the random generator of the RANDOM filter,
    the transform accumulated over all steps and the error history. Independent
    trials each get their own context.
    """
    selection_mask: SelectionMask = SelectionMask.ALL
    seed: Optional[int] = None
    random_probability: float = 0.5
    strict_selection: bool = False
    iteration: int = 0
    n_active: int = 0
    last_error: Optional[float] = None
    cumulative_transform: Transform = field(default_factory=Transform.identity)
    history: List[float] = field(default_factory=list)
    rng: np.random.Generator = field(init=False, repr=False)

    def __post_init__(self):
        if not 0.0 < self.random_probability <= 1.0:
            raise ValueError(f"random_probability must be in (0, 1], got {self.random_probability}")
        self.rng = np.random.default_rng(self.seed)

    @property
    def state(self) -> str:
        return "idle" if self.iteration == 0 else "stepping"

    def record(self, result: StepResult):
        self.iteration = result.iteration
        self.n_active = result.n_active
        self.cumulative_transform = result.transform.compose(self.cumulative_transform)
        if result.error is not None:
            self.last_error = result.error
            self.history.append(result.error)

    def reset(self):
        """Back to idle; the random generator is reseeded"""
        self.iteration = 0
        self.n_active = 0
        self.last_error = None
        self.cumulative_transform = Transform.identity()
        self.history = []
        self.rng = np.random.default_rng(self.seed)
