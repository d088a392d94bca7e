"""
Chessboard detection and camera-to-projector corner transfer.

The projector cannot see the chessboard, so each detected corner is mapped
into projector pixels through a local homography fitted to the decoded
pattern values in a square window around it.
"""

import logging
import math
from pathlib import Path
from typing import Optional, Tuple, Sequence, Union

import numpy as np
import cv2

from slscan.core.constants import (
    DEFAULT_CHESSBOARD_SIZE, DEFAULT_CHESSBOARD_SPACING, DETECTION_MAX_WIDTH,
    SUBPIX_WINDOW, WORLD_CORNERS_FILENAME
)
from slscan.core.events import ProgressMonitor, checkpoint
from slscan.exceptions import HomographyError
from slscan.patterns.pattern_decoder import DecodeResult

logger = logging.getLogger(__name__)

SUBPIX_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.1)
MIN_HOMOGRAPHY_POINTS = 4


def generate_world_corners(chessboard_size: Tuple[int, int] = DEFAULT_CHESSBOARD_SIZE,
                           spacing: Tuple[float, float] = DEFAULT_CHESSBOARD_SPACING) -> np.ndarray:
    """
    Generate 3D world coordinates for chessboard corners.

    Corners are row-major on the z=0 plane, matching the order returned by
    ``cv2.findChessboardCorners``.

    Args:
        chessboard_size: Interior corners (columns, rows)
        spacing: Corner spacing (width, height)

    Returns:
        float32 array of shape (columns * rows, 3)
    """
    cols, rows = chessboard_size
    world = np.zeros((rows * cols, 3), np.float32)
    world[:, :2] = np.mgrid[0:cols, 0:rows].T.reshape(-1, 2)
    world[:, 0] *= spacing[0]
    world[:, 1] *= spacing[1]
    return world


def detection_scale(width: int, max_width: int = DETECTION_MAX_WIDTH) -> int:
    """Integer downscale factor used for corner detection on wide images."""
    if width > max_width:
        return int(math.ceil(width / float(max_width)))
    return 1


def detect_chessboard_corners(gray: np.ndarray,
                              chessboard_size: Tuple[int, int] = DEFAULT_CHESSBOARD_SIZE,
                              max_width: int = DETECTION_MAX_WIDTH) -> Optional[np.ndarray]:
    """
    Find and refine chessboard corners in a gray image.

    Detection runs on a downscaled copy when the image is wider than
    ``max_width``; the corners are then scaled back and refined to sub-pixel
    accuracy on the full resolution image.

    Args:
        gray: Single channel uint8 image
        chessboard_size: Interior corners (columns, rows)
        max_width: Widest image searched without downscaling

    Returns:
        float32 array of shape (N, 2) in row-major corner order, or None
    """
    scale = detection_scale(gray.shape[1], max_width)
    if scale > 1:
        small = cv2.resize(gray, (gray.shape[1] // scale, gray.shape[0] // scale))
    else:
        small = gray

    found, corners = cv2.findChessboardCorners(
        small,
        tuple(chessboard_size),
        cv2.CALIB_CB_ADAPTIVE_THRESH + cv2.CALIB_CB_NORMALIZE_IMAGE
    )
    if not found or corners is None:
        return None

    corners = corners.astype(np.float32) * scale
    corners = cv2.cornerSubPix(gray, corners, SUBPIX_WINDOW, (-1, -1), SUBPIX_CRITERIA)
    return corners.reshape(-1, 2)


def projector_corner(corner: Sequence[float],
                     decoded: DecodeResult,
                     window: int,
                     threshold: int,
                     set_name: str = "",
                     corner_index: int = 0) -> np.ndarray:
    """
    Map one camera corner into projector pixels with a local homography.

    Args:
        corner: Camera (x, y) of the corner
        decoded: Decoded pattern of the set
        window: Side of the square sampling window in pixels
        threshold: Minimum intensity spread for a sample
        set_name: Set name used in error reports
        corner_index: Corner index used in error reports

    Returns:
        Projector (x, y) as float64 array

    Raises:
        HomographyError: If the window leaves the image, holds too few
            samples or no homography is found
    """
    x, y = float(corner[0]), float(corner[1])
    half = window // 2
    rows, cols = decoded.pattern.shape[:2]
    if not (x > half and y > half and x + half < cols and y + half < rows):
        raise HomographyError(set_name, corner_index, f"window around ({x:.1f}, {y:.1f}) leaves the image")

    r0, r1 = int(y - half), int(math.ceil(y + half))
    c0, c1 = int(x - half), int(math.ceil(x + half))

    pattern = decoded.pattern[r0:r1, c0:c1]
    min_max = decoded.min_max[r0:r1, c0:c1].astype(np.int16)
    mask = ~np.isnan(pattern).any(axis=2) & ((min_max[..., 1] - min_max[..., 0]) >= threshold)
    hs, ws = np.nonzero(mask)
    if len(hs) < MIN_HOMOGRAPHY_POINTS:
        raise HomographyError(set_name, corner_index, f"only {len(hs)} valid samples in window")

    img_points = np.stack([ws + c0, hs + r0], axis=1).astype(np.float32)
    proj_points = pattern[mask].astype(np.float32)

    H, _ = cv2.findHomography(img_points, proj_points, cv2.RANSAC)
    if H is None:
        raise HomographyError(set_name, corner_index, "homography fit failed")

    Q = H @ np.array([x, y, 1.0])
    if not np.isfinite(Q).all() or abs(Q[2]) < np.finfo(float).eps:
        raise HomographyError(set_name, corner_index, "corner projects to infinity")
    return Q[:2] / Q[2]


def compute_projector_corners(corners: np.ndarray,
                              decoded: DecodeResult,
                              window: int,
                              threshold: int,
                              set_name: str = "",
                              monitor: Optional[ProgressMonitor] = None) -> np.ndarray:
    """
    Map every camera corner of a set into projector pixels.

    Returns:
        float32 array of shape (N, 2), same order as ``corners``
    """
    projected = np.empty((len(corners), 2), np.float32)
    for i, corner in enumerate(corners):
        checkpoint(monitor, "Calibration")
        projected[i] = projector_corner(corner, decoded, window, threshold, set_name, i)
    logger.debug(f"Set '{set_name}': {len(corners)} projector corners computed")
    return projected


def write_world_corners(path: Union[str, Path], world: np.ndarray) -> None:
    """Write world corners as ``x y z`` lines."""
    np.savetxt(path, world, fmt='%f')


def write_corner_files(output_dir: Union[str, Path], index: int,
                       camera_corners: np.ndarray, projector_corners: np.ndarray) -> Tuple[Path, Path]:
    """
    Write ``cam_NN.txt`` and ``proj_NN.txt`` with one ``x y`` line per corner.

    Returns:
        Paths of the camera and projector files
    """
    output_dir = Path(output_dir)
    cam_path = output_dir / f"cam_{index:02d}.txt"
    proj_path = output_dir / f"proj_{index:02d}.txt"
    np.savetxt(cam_path, camera_corners, fmt='%f')
    np.savetxt(proj_path, projector_corners, fmt='%f')
    return cam_path, proj_path


def world_corners_path(output_dir: Union[str, Path]) -> Path:
    return Path(output_dir) / WORLD_CORNERS_FILENAME
