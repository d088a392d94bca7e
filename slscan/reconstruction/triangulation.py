"""
Camera-projector ray triangulation.

The camera sits at the world origin. A projector pixel defines a ray leaving
the projector center; both rays are expressed in camera coordinates and the
3D point is the midpoint of their closest approach. The distance between the
two closest points is returned as a quality measure.
"""

import logging
from typing import Tuple

import numpy as np
import cv2

from slscan.calibration.calibration_data import CalibrationData
from slscan.core.constants import DEGENERATE_RAY_EPS
from slscan.exceptions import DegenerateRaysError

logger = logging.getLogger(__name__)


def approximate_ray_intersection(v1: np.ndarray, q1: np.ndarray,
                                 v2: np.ndarray, q2: np.ndarray,
                                 strict: bool = False) -> Tuple[np.ndarray, float]:
    """
    Closest approach midpoint of the lines ``q1 + l1 * v1`` and ``q2 + l2 * v2``.

    Args:
        v1, q1: Direction and origin of the first ray
        v2, q2: Direction and origin of the second ray
        strict: Raise on parallel rays instead of returning NaN

    Returns:
        (point, distance). Parallel rays give a NaN point and infinite distance.

    Raises:
        DegenerateRaysError: If ``strict`` and the rays are parallel
    """
    v1 = np.asarray(v1, np.float64).ravel()
    v2 = np.asarray(v2, np.float64).ravel()
    q1 = np.asarray(q1, np.float64).ravel()
    q2 = np.asarray(q2, np.float64).ravel()

    v1tv1 = v1 @ v1
    v2tv2 = v2 @ v2
    v1tv2 = v1 @ v2
    det = v1tv1 * v2tv2 - v1tv2 * v1tv2
    if abs(det) <= DEGENERATE_RAY_EPS * v1tv1 * v2tv2:
        if strict:
            raise DegenerateRaysError("Rays are parallel", details={'det': det})
        return np.full(3, np.nan), float('inf')

    q2_q1 = q2 - q1
    Q1 = v1 @ q2_q1
    Q2 = -(v2 @ q2_q1)

    lambda1 = (v2tv2 * Q1 + v1tv2 * Q2) / det
    lambda2 = (v1tv2 * Q1 + v1tv1 * Q2) / det

    p1 = lambda1 * v1 + q1
    p2 = lambda2 * v2 + q2
    return 0.5 * (p1 + p2), float(np.linalg.norm(p2 - p1))


def approximate_ray_intersections(v1: np.ndarray, q1: np.ndarray,
                                  v2: np.ndarray, q2: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Row-wise :func:`approximate_ray_intersection` for (N, 3) arrays.

    ``q1`` or ``q2`` may be a single (3,) origin shared by all rays.

    Returns:
        (points (N, 3), distances (N,)); parallel rays give NaN and inf
    """
    v1tv1 = np.einsum('ij,ij->i', v1, v1)
    v2tv2 = np.einsum('ij,ij->i', v2, v2)
    v1tv2 = np.einsum('ij,ij->i', v1, v2)
    det = v1tv1 * v2tv2 - v1tv2 * v1tv2
    degenerate = np.abs(det) <= DEGENERATE_RAY_EPS * v1tv1 * v2tv2
    det = np.where(degenerate, 1.0, det)

    q2_q1 = q2 - q1
    Q1 = np.einsum('ij,ij->i', v1, np.broadcast_to(q2_q1, v1.shape))
    Q2 = -np.einsum('ij,ij->i', v2, np.broadcast_to(q2_q1, v2.shape))

    lambda1 = (v2tv2 * Q1 + v1tv2 * Q2) / det
    lambda2 = (v1tv2 * Q1 + v1tv1 * Q2) / det

    p1 = lambda1[:, None] * v1 + q1
    p2 = lambda2[:, None] * v2 + q2
    points = 0.5 * (p1 + p2)
    distances = np.linalg.norm(p2 - p1, axis=1)

    points[degenerate] = np.nan
    distances[degenerate] = np.inf
    return points, distances


def undistort_pixels(pixels: np.ndarray, K: np.ndarray, kc: np.ndarray) -> np.ndarray:
    """
    Normalized (z=1) rays for pixel coordinates.

    Returns:
        (N, 3) float64 array
    """
    pixels = np.asarray(pixels, np.float64).reshape(-1, 1, 2)
    normalized = cv2.undistortPoints(pixels, np.asarray(K, np.float64), np.asarray(kc, np.float64))
    rays = np.ones((len(pixels), 3), np.float64)
    rays[:, :2] = normalized.reshape(-1, 2)
    return rays


def triangulate_stereo(K1: np.ndarray, kc1: np.ndarray,
                       K2: np.ndarray, kc2: np.ndarray,
                       Rt: np.ndarray, T: np.ndarray,
                       p1: Tuple[float, float], p2: Tuple[float, float]) -> Tuple[np.ndarray, float]:
    """
    Triangulate one camera pixel against one projector pixel.

    Args:
        K1, kc1: Camera intrinsics and distortion
        K2, kc2: Projector intrinsics and distortion
        Rt: Transposed rotation from camera to projector frame
        T: Translation from camera to projector frame
        p1: Camera pixel (x, y)
        p2: Projector pixel (x, y)

    Returns:
        (point in camera coordinates, ray distance)
    """
    points, distances = triangulate_stereo_batch(K1, kc1, K2, kc2, Rt, T,
                                                 np.array([p1], np.float64), np.array([p2], np.float64))
    return points[0], float(distances[0])


def triangulate_stereo_batch(K1: np.ndarray, kc1: np.ndarray,
                             K2: np.ndarray, kc2: np.ndarray,
                             Rt: np.ndarray, T: np.ndarray,
                             cam_pixels: np.ndarray, proj_pixels: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Triangulate matching rows of camera and projector pixels.

    Returns:
        (points (N, 3), distances (N,))
    """
    if len(cam_pixels) == 0:
        return np.empty((0, 3)), np.empty(0)

    Rt = np.asarray(Rt, np.float64).reshape(3, 3)
    T = np.asarray(T, np.float64).reshape(3)

    u1 = undistort_pixels(cam_pixels, K1, kc1)
    u2 = undistort_pixels(proj_pixels, K2, kc2)

    # projector center and rays in camera coordinates
    w1 = u1
    w2 = (u2 - T) @ Rt.T
    v1 = u1
    v2 = u2 @ Rt.T

    return approximate_ray_intersections(v1, w1, v2, w2)


class Triangulator:
    """
    Triangulates camera/projector correspondences with a fixed calibration.
    """

    def __init__(self, calibration: CalibrationData):
        """
        Args:
            calibration: Valid calibration data

        Raises:
            CalibrationInvalidError: If the calibration is incomplete
        """
        self.calibration = calibration.require_valid()
        self.Rt = calibration.R.T.copy()

    def triangulate(self, cam_pixel: Tuple[float, float],
                    proj_pixel: Tuple[float, float]) -> Tuple[np.ndarray, float]:
        c = self.calibration
        return triangulate_stereo(c.cam_K, c.cam_kc, c.proj_K, c.proj_kc, self.Rt, c.T, cam_pixel, proj_pixel)

    def triangulate_batch(self, cam_pixels: np.ndarray,
                          proj_pixels: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        c = self.calibration
        return triangulate_stereo_batch(c.cam_K, c.cam_kc, c.proj_K, c.proj_kc,
                                        self.Rt, c.T, cam_pixels, proj_pixels)

    def projector_center(self) -> np.ndarray:
        """Projector optical center in camera coordinates."""
        return -(self.Rt @ np.asarray(self.calibration.T, np.float64).reshape(3))

    def project_to_projector(self, points: np.ndarray) -> np.ndarray:
        """Project camera-frame points into projector pixels."""
        c = self.calibration
        rvec, _ = cv2.Rodrigues(np.ascontiguousarray(c.R))
        projected, _ = cv2.projectPoints(np.asarray(points, np.float64).reshape(-1, 1, 3),
                                         rvec, np.asarray(c.T, np.float64), c.proj_K, c.proj_kc)
        return projected.reshape(-1, 2)
