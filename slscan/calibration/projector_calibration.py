"""
Projector-Camera Calibration for Structured Light Systems

Calibrates the projector as an "inverse camera": chessboard corners found in
the camera images are transferred into projector pixels through the decoded
Gray code patterns, then camera intrinsics, projector intrinsics and their
relative pose are estimated jointly.
"""

import enum
import functools
import logging
from collections import OrderedDict
from pathlib import Path
from typing import List, Tuple, Optional, Dict, Mapping, Sequence, Union

import numpy as np
import cv2

from slscan.calibration.calibration_data import CalibrationData
from slscan.calibration.calibration_utils import (
    generate_world_corners, detect_chessboard_corners, compute_projector_corners,
    write_world_corners, write_corner_files, world_corners_path
)
from slscan.config import ScanConfig
from slscan.core.constants import MIN_CALIBRATION_SETS
from slscan.core.events import ProgressMonitor, checkpoint
from slscan.exceptions import (
    SlscanError, InputError, ImageSizeError, DegradedSetError,
    InsufficientDataError, CalibrationError, report_failure
)
from slscan.patterns.pattern_decoder import DecodeResult, ImageSource, load_gray_image

logger = logging.getLogger(__name__)

CALIBRATION_CRITERIA = (cv2.TERM_CRITERIA_COUNT + cv2.TERM_CRITERIA_EPS, 50, np.finfo(np.float64).eps)
CALIBRATION_FLAGS = cv2.CALIB_FIX_K3


class CalibrationState(enum.Enum):
    """Progress of a calibration run."""
    IDLE = "idle"
    CORNERS_EXTRACTED = "corners_extracted"
    PROJECTOR_CORRESPONDENCE_BUILT = "projector_correspondence_built"
    CALIBRATED = "calibrated"
    FAILED = "failed"


def _stage(func):
    """Mark the calibrator failed when a stage raises."""
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except SlscanError:
            self.state = CalibrationState.FAILED
            raise
    return wrapper


def calibrate_from_correspondences(world: np.ndarray,
                                   camera_corners: Sequence[np.ndarray],
                                   projector_corners: Sequence[np.ndarray],
                                   camera_size: Tuple[int, int],
                                   projector_size: Tuple[int, int]) -> CalibrationData:
    """
    Jointly calibrate camera, projector and their relative pose.

    Args:
        world: (N, 3) chessboard corner coordinates
        camera_corners: Per set (N, 2) camera pixels
        projector_corners: Per set (N, 2) projector pixels
        camera_size: (width, height) of the camera images
        projector_size: (width, height) of the projector

    Returns:
        Populated CalibrationData

    Raises:
        InsufficientDataError: With fewer than three sets
        CalibrationError: If OpenCV rejects the data
    """
    if len(camera_corners) != len(projector_corners):
        raise InputError("Camera and projector corner lists differ in length")
    if len(camera_corners) < MIN_CALIBRATION_SETS:
        raise InsufficientDataError("calibration sets", MIN_CALIBRATION_SETS, len(camera_corners))

    object_points = [np.asarray(world, np.float32)] * len(camera_corners)
    cam_points = [np.asarray(c, np.float32).reshape(-1, 1, 2) for c in camera_corners]
    proj_points = [np.asarray(p, np.float32).reshape(-1, 1, 2) for p in projector_corners]

    try:
        logger.info(" * Calibrate camera")
        cam_error, cam_K, cam_kc, _, _ = cv2.calibrateCamera(
            object_points, cam_points, tuple(camera_size), None, None,
            flags=CALIBRATION_FLAGS, criteria=CALIBRATION_CRITERIA
        )

        logger.info(" * Calibrate projector")
        proj_error, proj_K, proj_kc, _, _ = cv2.calibrateCamera(
            object_points, proj_points, tuple(projector_size), None, None,
            flags=CALIBRATION_FLAGS, criteria=CALIBRATION_CRITERIA
        )

        logger.info(" * Calibrate stereo")
        stereo_error, _, _, _, _, R, T, _, _ = cv2.stereoCalibrate(
            object_points, cam_points, proj_points,
            cam_K, cam_kc, proj_K, proj_kc,
            tuple(camera_size),
            flags=cv2.CALIB_FIX_INTRINSIC,
            criteria=CALIBRATION_CRITERIA
        )
    except cv2.error as e:
        raise CalibrationError(f"OpenCV calibration failed: {e}")

    calibration = CalibrationData(
        cam_K=cam_K, cam_kc=cam_kc,
        proj_K=proj_K, proj_kc=proj_kc,
        R=R, T=T,
        cam_error=cam_error, proj_error=proj_error, stereo_error=stereo_error
    )
    logger.info(f"Calibration errors: camera {cam_error:.4f}, projector {proj_error:.4f}, "
                f"stereo {stereo_error:.4f}; baseline {np.linalg.norm(T):.2f}")
    return calibration


class ProjectorCameraCalibrator:
    """
    Runs a calibration through its stages.

    The stages move the calibrator through ``IDLE -> CORNERS_EXTRACTED ->
    PROJECTOR_CORRESPONDENCE_BUILT -> CALIBRATED``; any fatal error leaves it
    in ``FAILED``. Each public stage returns True on success and False on
    failure, errors are logged.

    Example:
        calibrator = ProjectorCameraCalibrator(config, (1024, 768))
        calibrator.extract_chessboard_corners([(name, first_image), ...])
        calibrator.build_projector_correspondences({name: decode_result, ...})
        calibrator.calibrate()
        calibrator.calibration.save("calibration.yml")
    """

    def __init__(self,
                 config: ScanConfig,
                 projector_size: Tuple[int, int],
                 monitor: Optional[ProgressMonitor] = None):
        """
        Initialize projector calibrator.

        Args:
            config: Chessboard, window and threshold settings
            projector_size: Projector resolution (width, height)
            monitor: Optional progress sink and cancellation token
        """
        self.config = config
        self.projector_size = (int(projector_size[0]), int(projector_size[1]))
        self.monitor = monitor

        self.world_corners = generate_world_corners(config.chessboard_size, config.chessboard_spacing)
        self.reset()

    def reset(self) -> None:
        """Drop all results and return to IDLE."""
        self.state = CalibrationState.IDLE
        self.camera_size: Optional[Tuple[int, int]] = None
        self.set_order: List[str] = []
        self.camera_corners: Dict[str, np.ndarray] = OrderedDict()
        self.projector_corners: Dict[str, np.ndarray] = OrderedDict()
        self.failed_sets: Dict[str, str] = OrderedDict()
        self.calibration: Optional[CalibrationData] = None

    def _message(self, text: str) -> None:
        logger.info(text)
        if self.monitor is not None:
            self.monitor.message(text)

    def _degrade(self, error: DegradedSetError) -> None:
        self.failed_sets[error.details['set']] = error.details['reason']
        logger.warning(error.message)
        if self.monitor is not None:
            self.monitor.message(f" * {error.details['set']}: {error.details['reason']}")

    @property
    def active_sets(self) -> List[str]:
        """Sets with both camera and projector corners, in input order."""
        return [name for name in self.set_order
                if name in self.camera_corners and name in self.projector_corners]

    # ------------------------------------------------------------- stages

    @report_failure(default=False)
    @_stage
    def extract_chessboard_corners(self, references: Sequence[Tuple[str, ImageSource]]) -> bool:
        """
        Detect chessboard corners in the reference image of every set.

        Sets whose image cannot be read or whose chessboard is not found are
        recorded in ``failed_sets`` and skipped. A reference image whose size
        differs from the first one is fatal.

        Args:
            references: (set name, reference image or file) pairs

        Returns:
            True only if every set found its corners
        """
        self.reset()
        self.set_order = [name for name, _ in references]
        self._message("Extracting corners:")
        if self.monitor is not None:
            self.monitor.start("Extract corners", len(references))

        for i, (name, source) in enumerate(references):
            checkpoint(self.monitor, "Extract corners")
            try:
                gray = load_gray_image(source)
            except InputError as e:
                self._degrade(DegradedSetError(name, e.message))
                continue

            size = (gray.shape[1], gray.shape[0])
            if self.camera_size is None:
                self.camera_size = size
            elif size != self.camera_size:
                raise ImageSizeError(f"Reference image of set '{name}'", self.camera_size, size)

            corners = detect_chessboard_corners(gray, self.config.chessboard_size,
                                                self.config.detection_max_width)
            if corners is None:
                self._degrade(DegradedSetError(name, "chessboard not found"))
            else:
                self.camera_corners[name] = corners
                self._message(f" * {name}: found {len(corners)} corners")

            if self.monitor is not None:
                self.monitor.progress(i + 1, len(references))

        self.state = CalibrationState.CORNERS_EXTRACTED
        if self.monitor is not None:
            self.monitor.finish()
        return len(self.camera_corners) == len(references)

    @report_failure(default=False)
    @_stage
    def build_projector_correspondences(self, decoded: Mapping[str, DecodeResult]) -> bool:
        """
        Transfer the corners of every set into projector pixels.

        Args:
            decoded: Decode result for each set with corners

        Returns:
            True on success
        """
        if self.state != CalibrationState.CORNERS_EXTRACTED:
            raise CalibrationError(f"Corners must be extracted first (state {self.state.value})")

        self._message("Decoding and computing homographies...")
        if self.monitor is not None:
            self.monitor.start("Compute homographies", len(self.camera_corners))

        for i, (name, corners) in enumerate(self.camera_corners.items()):
            checkpoint(self.monitor, "Calibration")
            result = decoded.get(name)
            if result is None:
                raise InputError(f"Set '{name}' has no decoded pattern")
            if result.camera_size != self.camera_size:
                raise ImageSizeError(f"Pattern image of set '{name}'", self.camera_size, result.camera_size)

            self.projector_corners[name] = compute_projector_corners(
                corners, result,
                self.config.homography_window, self.config.shadow_threshold,
                set_name=name, monitor=self.monitor
            )
            self._message(f" * {name}: finished")
            if self.monitor is not None:
                self.monitor.progress(i + 1, len(self.camera_corners))

        self.state = CalibrationState.PROJECTOR_CORRESPONDENCE_BUILT
        if self.monitor is not None:
            self.monitor.finish()
        return True

    @report_failure(default=False)
    @_stage
    def calibrate(self) -> bool:
        """
        Run the joint calibration on all sets with correspondences.

        Returns:
            True on success, the result is in ``calibration``
        """
        if self.state != CalibrationState.PROJECTOR_CORRESPONDENCE_BUILT:
            raise CalibrationError(f"Projector correspondences must be built first (state {self.state.value})")

        active = self.active_sets
        if len(active) < MIN_CALIBRATION_SETS:
            self._message(f"ERROR: use at least {MIN_CALIBRATION_SETS} sets")
        self.calibration = calibrate_from_correspondences(
            self.world_corners,
            [self.camera_corners[name] for name in active],
            [self.projector_corners[name] for name in active],
            self.camera_size,
            self.projector_size
        )
        self.state = CalibrationState.CALIBRATED
        self._message("\n **** Calibration results ****\n" + self.calibration.describe())
        return True

    def run(self, references: Sequence[Tuple[str, ImageSource]],
            decoded: Mapping[str, DecodeResult]) -> Optional[CalibrationData]:
        """
        Run every stage, tolerating sets without a detectable chessboard.

        Returns:
            CalibrationData, or None if any stage failed
        """
        all_found = self.extract_chessboard_corners(references)
        if self.state == CalibrationState.FAILED:
            return None
        if not all_found:
            logger.warning(f"{len(self.failed_sets)} set(s) excluded: {list(self.failed_sets)}")
        if not self.build_projector_correspondences(decoded):
            return None
        if not self.calibrate():
            return None
        return self.calibration

    # ------------------------------------------------------------- export

    @report_failure(default=False)
    def export_corners(self, output_dir: Union[str, Path]) -> bool:
        """
        Write ``model.txt`` plus ``cam_NN.txt``/``proj_NN.txt`` for each set.

        NN is the position of the set in the reference list.
        """
        if self.state not in (CalibrationState.PROJECTOR_CORRESPONDENCE_BUILT, CalibrationState.CALIBRATED):
            raise CalibrationError("No correspondences to export")
        output_dir = Path(output_dir)
        try:
            write_world_corners(world_corners_path(output_dir), self.world_corners)
            for index, name in enumerate(self.set_order):
                if name in self.camera_corners and name in self.projector_corners:
                    write_corner_files(output_dir, index,
                                       self.camera_corners[name], self.projector_corners[name])
        except OSError as e:
            raise CalibrationError(f"Cannot write corner files to {output_dir}: {e}")
        logger.info(f"Saved corner files in {output_dir}")
        return True

    def is_calibrated(self) -> bool:
        """Check if full system calibration is complete."""
        return (self.state == CalibrationState.CALIBRATED
                and self.calibration is not None and self.calibration.is_valid())
