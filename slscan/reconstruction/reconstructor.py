"""
Dense reconstruction from decoded patterns.

Patch-center mode (default) groups the camera pixels that decode into the same
projector cell and triangulates the centroid of each group against the
projector pixel, one point per projector cell. Simple mode triangulates every
camera pixel on its own, one point per camera pixel.

Projectors that are not wider than tall get their rows halved in the output
grid to keep the point grid close to square pixels.
"""

import logging
from typing import Tuple, Optional

import numpy as np
import cv2

from slscan.calibration.calibration_data import CalibrationData
from slscan.config import ScanConfig
from slscan.core.constants import ROW_BLOCK, TRIANGULATION_CHUNK, DEFAULT_SHADOW_THRESHOLD, DEFAULT_MAX_RESIDUAL
from slscan.core.events import ProgressMonitor, checkpoint
from slscan.exceptions import InputError, ImageSizeError, ConfigurationError, report_failure
from slscan.patterns.pattern_decoder import DecodeResult
from slscan.reconstruction.point_cloud import Pointcloud, ReconstructionStats
from slscan.reconstruction.triangulation import Triangulator

logger = logging.getLogger(__name__)


def projector_grid(projector_size: Tuple[int, int]) -> Tuple[int, int, int, int]:
    """
    Output grid layout for a projector resolution.

    Returns:
        (scale_x, scale_y, columns, rows)
    """
    width, height = projector_size
    scale_x = 1
    scale_y = 1 if width > height else 2
    return scale_x, scale_y, width // scale_x, height // scale_y


def _check_inputs(pattern: np.ndarray, min_max: np.ndarray,
                  color_image: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if pattern is None or pattern.ndim != 3 or pattern.shape[2] != 2:
        raise InputError("Invalid pattern image")
    if min_max is None or min_max.shape != pattern.shape or min_max.dtype != np.uint8:
        raise InputError("Invalid min/max image")
    if color_image is None:
        return None
    if color_image.ndim == 2:
        color_image = cv2.cvtColor(color_image, cv2.COLOR_GRAY2BGR)
    if color_image.ndim != 3 or color_image.shape[2] != 3 or color_image.dtype != np.uint8:
        raise InputError("Color image must be 8-bit BGR")
    if color_image.shape[:2] != pattern.shape[:2]:
        raise ImageSizeError("Color image", pattern.shape[:2], color_image.shape[:2])
    return color_image


def collect_candidates(pattern: np.ndarray, min_max: np.ndarray,
                       projector_size: Tuple[int, int], threshold: int,
                       monitor: Optional[ProgressMonitor] = None) -> Tuple[np.ndarray, np.ndarray, np.ndarray, int]:
    """
    Camera pixels with a usable projector correspondence, in row-major order.

    A pixel is usable when both coordinates are decoded, lie inside the
    projector and its intensity spread reaches ``threshold``.

    Returns:
        (rows, cols, projector (N, 2) float64, number of rejected pixels)
    """
    width, height = projector_size
    rows_out, cols_out, proj_out = [], [], []
    rejected = 0
    total = pattern.shape[0]

    for start in range(0, total, ROW_BLOCK):
        checkpoint(monitor, "Reconstruction")
        stop = min(start + ROW_BLOCK, total)
        block = pattern[start:stop]
        spread = min_max[start:stop, :, 1].astype(np.int16) - min_max[start:stop, :, 0].astype(np.int16)
        col = block[..., 0]
        row = block[..., 1]
        with np.errstate(invalid='ignore'):
            usable = ((col >= 0) & (col < width) & (row >= 0) & (row < height)
                      & (spread >= threshold))
        hs, ws = np.nonzero(usable)
        rows_out.append(hs + start)
        cols_out.append(ws)
        proj_out.append(block[hs, ws].astype(np.float64))
        rejected += usable.size - len(hs)
        if monitor is not None:
            monitor.progress(stop, total)

    return (np.concatenate(rows_out), np.concatenate(cols_out),
            np.concatenate(proj_out).reshape(-1, 2), rejected)


def _sample_colors(color_image: Optional[np.ndarray], rows: np.ndarray, cols: np.ndarray) -> Optional[np.ndarray]:
    if color_image is None:
        return None
    return color_image[rows, cols][:, ::-1]  # BGR to RGB


class Reconstructor:
    """
    Turns decoded patterns into point clouds with a fixed calibration.

    Example:
        reconstructor = Reconstructor(calibration, config)
        cloud = reconstructor.reconstruct(decode_result, color_image)
        points, colors, normals = cloud.export()
    """

    def __init__(self, calibration: CalibrationData,
                 config: Optional[ScanConfig] = None,
                 monitor: Optional[ProgressMonitor] = None):
        """
        Args:
            calibration: Valid calibration data
            config: Threshold, residual and mode settings
            monitor: Optional progress sink and cancellation token

        Raises:
            CalibrationInvalidError: If the calibration is incomplete
        """
        self.triangulator = Triangulator(calibration)
        self.config = config or ScanConfig()
        self.monitor = monitor

    def _triangulate(self, cam: np.ndarray, proj: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        points = np.empty((len(cam), 3), np.float64)
        distances = np.empty(len(cam), np.float64)
        for start in range(0, len(cam), TRIANGULATION_CHUNK):
            checkpoint(self.monitor, "Reconstruction")
            stop = start + TRIANGULATION_CHUNK
            points[start:stop], distances[start:stop] = self.triangulator.triangulate_batch(
                cam[start:stop], proj[start:stop])
        return points, distances

    def reconstruct(self, decoded: DecodeResult,
                    color_image: Optional[np.ndarray] = None,
                    mode: Optional[str] = None) -> Pointcloud:
        """
        Reconstruct with the configured mode, threshold and maximum residual.

        Args:
            decoded: Decoded pattern of the scan
            color_image: Optional BGR image of the scene, camera sized
            mode: "patch_center" or "simple", defaults to the configured mode
        """
        mode = mode or self.config.reconstruction_mode
        args = (decoded.pattern, decoded.min_max, color_image, decoded.projector_size,
                self.config.shadow_threshold, self.config.max_triangulation_residual)
        if mode == "patch_center":
            cloud = self.reconstruct_patch_center(*args)
        elif mode == "simple":
            cloud = self.reconstruct_simple(*args)
        else:
            raise ConfigurationError('reconstruction_mode', f"unknown mode '{mode}'")
        if self.config.compute_normals:
            cloud = cloud.with_normals()
        return cloud

    def reconstruct_patch_center(self, pattern: np.ndarray, min_max: np.ndarray,
                                 color_image: Optional[np.ndarray],
                                 projector_size: Tuple[int, int],
                                 threshold: int = DEFAULT_SHADOW_THRESHOLD,
                                 max_dist: float = DEFAULT_MAX_RESIDUAL) -> Pointcloud:
        """
        One point per projector cell from the centroid of its camera pixels.

        The projector coordinate used for a cell is the one of the last camera
        pixel, in row-major order, that fell into it.
        """
        color_image = _check_inputs(pattern, min_max, color_image)
        scale_x, scale_y, out_cols, out_rows = projector_grid(projector_size)
        logger.info(f"Reconstruction [patch center]: {out_cols}x{out_rows} grid")

        hs, ws, proj, rejected = collect_candidates(pattern, min_max, projector_size, threshold, self.monitor)

        px = proj[:, 0] / scale_x
        py = proj[:, 1] / scale_y
        cell_row = py.astype(np.int64)
        cell_col = px.astype(np.int64)
        inside = (cell_row < out_rows) & (cell_col < out_cols)
        rejected += int(np.count_nonzero(~inside))
        hs, ws, px, py = hs[inside], ws[inside], px[inside], py[inside]
        index = cell_row[inside] * out_cols + cell_col[inside]

        order = np.argsort(index, kind='stable')
        cells, first, counts = np.unique(index[order], return_index=True, return_counts=True)
        last = order[first + counts - 1]

        cam = np.empty((len(cells), 2), np.float64)
        if len(cells):
            cam[:, 0] = np.add.reduceat(ws[order].astype(np.float64), first) / counts
            cam[:, 1] = np.add.reduceat(hs[order].astype(np.float64), first) / counts
        proj_points = np.stack([px[last] * scale_x, py[last] * scale_y], axis=1)

        points, distances = self._triangulate(cam, proj_points)
        good = distances < max_dist

        out_points = np.full((out_rows, out_cols, 3), np.nan, np.float32)
        out_colors = np.full((out_rows, out_cols, 3), 255, np.uint8)
        r = cells[good] // out_cols
        c = cells[good] % out_cols
        out_points[r, c] = points[good]
        colors = _sample_colors(color_image, cam[good, 1].astype(np.int64), cam[good, 0].astype(np.int64))
        if colors is not None:
            out_colors[r, c] = colors

        stats = ReconstructionStats(
            good=int(np.count_nonzero(good)),
            bad=int(len(cells) - np.count_nonzero(good)),
            invalid=int(rejected),
            repeated=int(np.sum(counts - 1)) if len(cells) else 0
        )
        logger.info(f"Reconstructed points [patch center]: {stats}")
        return Pointcloud(out_points, out_colors, stats=stats)

    def reconstruct_simple(self, pattern: np.ndarray, min_max: np.ndarray,
                           color_image: Optional[np.ndarray],
                           projector_size: Tuple[int, int],
                           threshold: int = DEFAULT_SHADOW_THRESHOLD,
                           max_dist: float = DEFAULT_MAX_RESIDUAL) -> Pointcloud:
        """One point per camera pixel, triangulated without aggregation."""
        color_image = _check_inputs(pattern, min_max, color_image)
        rows, cols = pattern.shape[:2]
        logger.info(f"Reconstruction [simple]: {cols}x{rows} grid")

        hs, ws, proj, rejected = collect_candidates(pattern, min_max, projector_size, threshold, self.monitor)
        cam = np.stack([ws, hs], axis=1).astype(np.float64)
        points, distances = self._triangulate(cam, proj)
        good = distances < max_dist

        out_points = np.full((rows, cols, 3), np.nan, np.float32)
        out_colors = np.full((rows, cols, 3), 255, np.uint8)
        out_points[hs[good], ws[good]] = points[good]
        colors = _sample_colors(color_image, hs[good], ws[good])
        if colors is not None:
            out_colors[hs[good], ws[good]] = colors

        # each camera pixel owns its cell, so nothing is ever repeated
        stats = ReconstructionStats(
            good=int(np.count_nonzero(good)),
            bad=int(len(good) - np.count_nonzero(good)),
            invalid=int(rejected)
        )
        logger.info(f"Reconstructed points [simple]: {stats}")
        return Pointcloud(out_points, out_colors, stats=stats)


@report_failure(default=None)
def reconstruct_model(calibration: CalibrationData, pattern: np.ndarray, min_max: np.ndarray,
                      color_image: Optional[np.ndarray], projector_size: Tuple[int, int],
                      threshold: int = DEFAULT_SHADOW_THRESHOLD, max_dist: float = DEFAULT_MAX_RESIDUAL,
                      monitor: Optional[ProgressMonitor] = None) -> Optional[Pointcloud]:
    """Patch-center reconstruction, returning None on failure or cancellation."""
    reconstructor = Reconstructor(calibration, monitor=monitor)
    return reconstructor.reconstruct_patch_center(pattern, min_max, color_image, projector_size, threshold, max_dist)


@report_failure(default=None)
def reconstruct_model_simple(calibration: CalibrationData, pattern: np.ndarray, min_max: np.ndarray,
                             color_image: Optional[np.ndarray], projector_size: Tuple[int, int],
                             threshold: int = DEFAULT_SHADOW_THRESHOLD, max_dist: float = DEFAULT_MAX_RESIDUAL,
                             monitor: Optional[ProgressMonitor] = None) -> Optional[Pointcloud]:
    """Per-pixel reconstruction, returning None on failure or cancellation."""
    reconstructor = Reconstructor(calibration, monitor=monitor)
    return reconstructor.reconstruct_simple(pattern, min_max, color_image, projector_size, threshold, max_dist)


@report_failure(default=None)
def make_projector_view(pattern: np.ndarray, min_max: np.ndarray, color_image: np.ndarray,
                        projector_size: Tuple[int, int],
                        threshold: int = DEFAULT_SHADOW_THRESHOLD) -> Optional[np.ndarray]:
    """
    Projector sized BGR image painted with the camera color of the pixels that
    decode into each cell; cells nobody decodes into stay white.
    """
    color_image = _check_inputs(pattern, min_max, color_image)
    if color_image is None:
        raise InputError("Projector view requires a color image")
    scale_x, scale_y, out_cols, out_rows = projector_grid(projector_size)
    view = np.full((out_rows, out_cols, 3), 255, np.uint8)

    hs, ws, proj, _ = collect_candidates(pattern, min_max, projector_size, threshold)
    cell_row = (proj[:, 1] / scale_y).astype(np.int64)
    cell_col = (proj[:, 0] / scale_x).astype(np.int64)
    inside = (cell_row < out_rows) & (cell_col < out_cols)
    # later pixels overwrite earlier ones, as a row-major sweep would
    view[cell_row[inside], cell_col[inside]] = color_image[hs[inside], ws[inside]]
    return view
