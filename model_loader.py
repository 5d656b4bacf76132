#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Model loading module
Reads meshes and point clouds into models, marks boundary vertices, writes results back
"""

import os
import time
import numpy as np
import open3d as o3d
from data_structures import Model
from errors import ModelLoadError
from logging_utils import get_logger


class ModelLoader:
    """Model loader"""

    def __init__(self, estimate_normals: bool = True, normal_neighbors: int = 30):
        self.estimate_normals = estimate_normals
        self.normal_neighbors = normal_neighbors
        self.logger = get_logger("model_loader")

    @staticmethod
    def boundary_vertices(triangles: np.ndarray, n_points: int) -> np.ndarray:
        """Flag vertices lying on an edge that belongs to exactly one triangle"""
        flags = np.zeros(n_points, dtype=bool)
        triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
        if len(triangles) == 0:
            return flags

        edges = np.concatenate([triangles[:, [0, 1]], triangles[:, [1, 2]], triangles[:, [2, 0]]])
        edges.sort(axis=1)
        unique_edges, counts = np.unique(edges, axis=0, return_counts=True)
        flags[unique_edges[counts == 1].ravel()] = True
        return flags

    @staticmethod
    def from_arrays(positions: np.ndarray, normals: np.ndarray = None, edge_flags: np.ndarray = None,
                    triangles: np.ndarray = None, name: str = "") -> Model:
        """Build a model from arrays; edge flags are derived from triangles when not given"""
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        if edge_flags is None and triangles is not None:
            edge_flags = ModelLoader.boundary_vertices(triangles, len(positions))
        return Model(positions, normals, edge_flags=edge_flags, triangles=triangles, name=name)

    def load(self, filepath: str, name: str = None) -> Model:
        """Read a triangle mesh (PLY/OBJ/STL/OFF), falling back to a point cloud"""
        self.logger.info(f"Loading model: {os.path.basename(filepath)}")

        if not os.path.exists(filepath):
            self.logger.error(f"File does not exist - {filepath}")
            raise ModelLoadError(f"File does not exist: {filepath}")

        start_time = time.time()
        name = name if name is not None else os.path.splitext(os.path.basename(filepath))[0]

        mesh = o3d.io.read_triangle_mesh(filepath)
        if mesh.has_triangles():
            if not mesh.has_vertex_normals():
                mesh.compute_vertex_normals()
            positions = np.asarray(mesh.vertices, dtype=np.float64)
            triangles = np.asarray(mesh.triangles, dtype=np.int64)
            normals = np.asarray(mesh.vertex_normals, dtype=np.float64)
            edge_flags = self.boundary_vertices(triangles, len(positions))
            model = Model(positions, normals, edge_flags=edge_flags, triangles=triangles, name=name)

            self.logger.info(f"Mesh loaded: {len(positions):,} vertices, {len(triangles):,} triangles")
            self.logger.debug(f"Boundary vertices: {int(np.count_nonzero(edge_flags)):,}")
        else:
            pcd = o3d.io.read_point_cloud(filepath)
            if not pcd.has_points():
                self.logger.error(f"No points found in {filepath}")
                raise ModelLoadError(f"No points found in {filepath}")

            if not pcd.has_normals() and self.estimate_normals:
                pcd.estimate_normals(search_param=o3d.geometry.KDTreeSearchParamKNN(knn=self.normal_neighbors))
            positions = np.asarray(pcd.points, dtype=np.float64)
            normals = np.asarray(pcd.normals, dtype=np.float64) if pcd.has_normals() else None
            model = Model(positions, normals, name=name)

            self.logger.info(f"Point cloud loaded: {len(positions):,} points (no edge annotations)")

        bounds_min = model.positions.min(axis=0)
        bounds_max = model.positions.max(axis=0)
        self.logger.debug(f"Bounds: min=[{bounds_min[0]:.3f}, {bounds_min[1]:.3f}, {bounds_min[2]:.3f}], "
                          f"max=[{bounds_max[0]:.3f}, {bounds_max[1]:.3f}, {bounds_max[2]:.3f}]")
        self.logger.debug(f"Read time: {time.time() - start_time:.3f}s")
        return model

    def save(self, model: Model, filepath: str) -> str:
        """Write a model as mesh (when it has triangles) or point cloud"""
        self.logger.info(f"Saving model '{model.name}' to: {os.path.basename(filepath)}")
        output_dir = os.path.dirname(filepath)
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)

        if model.triangles is not None and len(model.triangles) > 0:
            mesh = o3d.geometry.TriangleMesh()
            mesh.vertices = o3d.utility.Vector3dVector(np.asarray(model.positions, dtype=np.float64))
            mesh.triangles = o3d.utility.Vector3iVector(np.asarray(model.triangles, dtype=np.int32))
            mesh.vertex_normals = o3d.utility.Vector3dVector(np.asarray(model.normals, dtype=np.float64))
            success = o3d.io.write_triangle_mesh(filepath, mesh)
        else:
            pcd = o3d.geometry.PointCloud()
            pcd.points = o3d.utility.Vector3dVector(np.asarray(model.positions, dtype=np.float64))
            pcd.normals = o3d.utility.Vector3dVector(np.asarray(model.normals, dtype=np.float64))
            success = o3d.io.write_point_cloud(filepath, pcd)

        if not success:
            self.logger.error(f"Failed to write model to {filepath}")
            raise OSError(f"Failed to write model to {filepath}")
        return filepath
