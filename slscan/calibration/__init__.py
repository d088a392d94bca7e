"""Camera-projector stereo calibration."""

from .calibration_data import CalibrationData, load_calibration, save_calibration
from .projector_calibration import (
    ProjectorCameraCalibrator, CalibrationState, calibrate_from_correspondences
)
from .calibration_utils import generate_world_corners, detect_chessboard_corners, projector_corner

__all__ = [
    "CalibrationData",
    "load_calibration",
    "save_calibration",
    "ProjectorCameraCalibrator",
    "CalibrationState",
    "calibrate_from_correspondences",
    "generate_world_corners",
    "detect_chessboard_corners",
    "projector_corner"
]
