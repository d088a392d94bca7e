"""
Organized point cloud produced by reconstruction.

Points, colors and normals are co-indexed grids. Cells that hold no point
are NaN in ``points`` (and ``normals``); consumers must skip them.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np

from slscan.exceptions import DependencyError

logger = logging.getLogger(__name__)

try:
    import open3d as o3d
    OPEN3D_AVAILABLE = True
except ImportError:
    o3d = None
    OPEN3D_AVAILABLE = False


def compute_normals(points: np.ndarray) -> np.ndarray:
    """
    Per-cell normals from the four orthogonal neighbours.

    The normal of an interior cell is ``(down - up) x (right - left)``,
    normalized. Border cells and cells with an invalid neighbour stay NaN.

    Args:
        points: (R, C, 3) float grid, NaN where empty

    Returns:
        (R, C, 3) float32 normals
    """
    normals = np.full(points.shape, np.nan, dtype=np.float32)
    if points.shape[0] < 3 or points.shape[1] < 3:
        return normals

    p = points.astype(np.float64)
    left = p[1:-1, :-2]
    right = p[1:-1, 2:]
    up = p[:-2, 1:-1]
    down = p[2:, 1:-1]

    valid = ~(np.isnan(left[..., 0]) | np.isnan(right[..., 0])
              | np.isnan(up[..., 0]) | np.isnan(down[..., 0]))

    n1 = right - left
    n2 = down - up
    normal = np.cross(n2, n1)
    norm = np.linalg.norm(normal, axis=2)
    valid &= norm > 0.0

    interior = normals[1:-1, 1:-1]
    interior[valid] = normal[valid] / norm[valid][:, None]
    return normals


@dataclass(frozen=True)
class ReconstructionStats:
    """Counters reported by a reconstruction sweep."""
    good: int = 0
    bad: int = 0
    invalid: int = 0
    repeated: int = 0

    def __str__(self) -> str:
        return (f"{self.good} good ({self.bad} skipped, {self.invalid} invalid), "
                f"repeated points: {self.repeated} (ignored)")


@dataclass(frozen=True, eq=False)
class Pointcloud:
    """
    Reconstructed grid of 3D points.

    Attributes:
        points: (R, C, 3) float32, NaN where empty
        colors: (R, C, 3) uint8 RGB, white where no color was sampled
        normals: (R, C, 3) float32 or None until computed
        stats: Counters of the sweep that produced the cloud
    """
    points: np.ndarray
    colors: np.ndarray
    normals: Optional[np.ndarray] = None
    stats: ReconstructionStats = field(default_factory=ReconstructionStats)

    def __post_init__(self):
        # read-only views, the caller's arrays keep their flags
        for name in ('points', 'colors', 'normals'):
            array = getattr(self, name)
            if array is not None:
                view = array.view()
                view.flags.writeable = False
                object.__setattr__(self, name, view)

    @classmethod
    def empty(cls, rows: int, cols: int) -> 'Pointcloud':
        """All-NaN cloud with white colors."""
        return cls(np.full((rows, cols, 3), np.nan, np.float32),
                   np.full((rows, cols, 3), 255, np.uint8))

    @property
    def shape(self) -> Tuple[int, int]:
        return self.points.shape[0], self.points.shape[1]

    def valid_mask(self) -> np.ndarray:
        return ~np.isnan(self.points).any(axis=2)

    def __len__(self) -> int:
        return int(np.count_nonzero(self.valid_mask()))

    def with_normals(self) -> 'Pointcloud':
        """Return a copy with normals computed."""
        return Pointcloud(self.points, self.colors, compute_normals(self.points), self.stats)

    def export(self) -> Tuple[np.ndarray, np.ndarray, Optional[np.ndarray]]:
        """
        Flat arrays of the valid cells for a point cloud writer.

        Returns:
            (points (N, 3), colors (N, 3), normals (N, 3) or None)
        """
        mask = self.valid_mask()
        normals = self.normals[mask] if self.normals is not None else None
        return self.points[mask], self.colors[mask], normals

    def save_npz(self, filepath: Union[str, Path]) -> Path:
        """
        Save grids and flat valid-cell arrays to a numpy archive.
        """
        points, colors, normals = self.export()
        arrays = {
            'grid_points': self.points,
            'grid_colors': self.colors,
            'points': points,
            'colors': colors,
        }
        if self.normals is not None:
            arrays['grid_normals'] = self.normals
            arrays['normals'] = normals
        with open(filepath, 'wb') as f:
            np.savez_compressed(f, **arrays)
        logger.info(f"Saved {len(points)} points to {filepath}")
        return Path(filepath)

    def to_open3d(self):
        """
        Convert the valid cells to an ``open3d.geometry.PointCloud``.

        Raises:
            DependencyError: If Open3D is not installed
        """
        if not OPEN3D_AVAILABLE:
            raise DependencyError('open3d', 'point cloud conversion')
        points, colors, normals = self.export()
        cloud = o3d.geometry.PointCloud()
        cloud.points = o3d.utility.Vector3dVector(points.astype(np.float64))
        cloud.colors = o3d.utility.Vector3dVector(colors.astype(np.float64) / 255.0)
        if normals is not None:
            # Cells with points may still lack a normal
            cloud.normals = o3d.utility.Vector3dVector(np.nan_to_num(normals).astype(np.float64))
        return cloud
