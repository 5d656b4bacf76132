import numpy as np
import pytest

from data_structures import Model, Transform


@pytest.fixture
def cube_model():
    """Unit cube corners centered at the origin, normals pointing outwards"""
    corners = np.array([[x, y, z] for x in (-0.5, 0.5) for y in (-0.5, 0.5) for z in (-0.5, 0.5)])
    normals = corners / np.linalg.norm(corners, axis=1, keepdims=True)
    return Model(corners, normals, name="cube")


@pytest.fixture
def rotated_cube(cube_model):
    """Cube rotated 30 degrees about z and shifted by (0.1, 0, 0)"""
    transform = Transform.from_axis_angle([0, 0, 1], np.radians(30.0), translation=[0.1, 0.0, 0.0])
    moved = cube_model.copy(name="cube_moved")
    moved.apply_transform(transform)
    return moved, transform


@pytest.fixture
def anisotropic_cloud():
    """Point cloud with clearly distinct principal variances"""
    rng = np.random.default_rng(42)
    points = rng.normal(size=(300, 3)) * np.array([3.0, 1.5, 0.5])
    return Model(points, name="anisotropic")


@pytest.fixture
def hundred_points():
    rng = np.random.default_rng(7)
    return Model(rng.uniform(-1.0, 1.0, size=(100, 3)), name="hundred")


@pytest.fixture
def fan_triangles():
    """Square of four triangles around a center vertex (vertex 4)"""
    positions = np.array([
        [0.0, 0.0, 0.0],
        [1.0, 0.0, 0.0],
        [1.0, 1.0, 0.0],
        [0.0, 1.0, 0.0],
        [0.5, 0.5, 0.0],
    ])
    triangles = np.array([[4, 0, 1], [4, 1, 2], [4, 2, 3], [4, 3, 0]])
    return positions, triangles
