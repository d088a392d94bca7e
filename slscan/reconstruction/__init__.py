"""Triangulation and dense point cloud reconstruction."""

from .triangulation import Triangulator, approximate_ray_intersection, triangulate_stereo
from .point_cloud import Pointcloud, ReconstructionStats, compute_normals, OPEN3D_AVAILABLE
from .reconstructor import (
    Reconstructor, reconstruct_model, reconstruct_model_simple, make_projector_view
)

__all__ = [
    "Triangulator",
    "approximate_ray_intersection",
    "triangulate_stereo",
    "Pointcloud",
    "ReconstructionStats",
    "compute_normals",
    "OPEN3D_AVAILABLE",
    "Reconstructor",
    "reconstruct_model",
    "reconstruct_model_simple",
    "make_projector_view"
]
