"""
Camera-projector calibration parameters and their persistence.

``R`` and ``T`` map points from the camera frame into the projector frame,
``X_proj = R @ X_cam + T``, as returned by ``cv2.stereoCalibrate``.

Supported formats:
    - ``.yml``, ``.yaml``, ``.xml``, ``.json`` through ``cv2.FileStorage``
    - ``.npz`` numpy archive (bitwise round trip)
    - ``.m`` MATLAB script in the stereo calibration toolbox naming
      convention, export only
"""

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Union, Dict

import numpy as np
import cv2

from slscan.core.constants import FILESTORAGE_FORMATS
from slscan.exceptions import CalibrationError, CalibrationInvalidError, report_failure

logger = logging.getLogger(__name__)

MATRIX_KEYS = ('cam_K', 'cam_kc', 'proj_K', 'proj_kc', 'R', 'T')
ERROR_KEYS = ('cam_error', 'proj_error', 'stereo_error')


@dataclass(frozen=True, eq=False)
class CalibrationData:
    """
    Intrinsics of both devices, their relative pose and reprojection errors.

    Instances are values: every operation that changes a field returns a new
    instance.
    """
    cam_K: Optional[np.ndarray] = None
    cam_kc: Optional[np.ndarray] = None
    proj_K: Optional[np.ndarray] = None
    proj_kc: Optional[np.ndarray] = None
    R: Optional[np.ndarray] = None
    T: Optional[np.ndarray] = None
    cam_error: float = 0.0
    proj_error: float = 0.0
    stereo_error: float = 0.0

    def __post_init__(self):
        for key in MATRIX_KEYS:
            value = getattr(self, key)
            if value is not None:
                value = np.array(value, dtype=np.float64)
                value.flags.writeable = False
                object.__setattr__(self, key, value)
        for key in ERROR_KEYS:
            object.__setattr__(self, key, float(getattr(self, key)))

    def is_valid(self) -> bool:
        """True when every matrix is present and non-empty."""
        return all(getattr(self, key) is not None and getattr(self, key).size > 0
                   for key in MATRIX_KEYS)

    def require_valid(self) -> 'CalibrationData':
        """Return self or raise :class:`CalibrationInvalidError`."""
        if not self.is_valid():
            missing = [key for key in MATRIX_KEYS
                       if getattr(self, key) is None or getattr(self, key).size == 0]
            raise CalibrationInvalidError(f"missing {', '.join(missing)}")
        return self

    def with_changes(self, **changes) -> 'CalibrationData':
        return replace(self, **changes)

    def matrices(self) -> Dict[str, np.ndarray]:
        return {key: getattr(self, key) for key in MATRIX_KEYS if getattr(self, key) is not None}

    def describe(self) -> str:
        """Human readable summary of all parameters."""
        with np.printoptions(precision=6, suppress=True):
            lines = [
                "Camera Calib:",
                f" - reprojection error: {self.cam_error}",
                f" - K:\n{self.cam_K}",
                f" - kc: {self.cam_kc}",
                "",
                "Projector Calib:",
                f" - reprojection error: {self.proj_error}",
                f" - K:\n{self.proj_K}",
                f" - kc: {self.proj_kc}",
                "",
                "Stereo Calib:",
                f" - reprojection error: {self.stereo_error}",
                f" - R:\n{self.R}",
                f" - T:\n{self.T}",
            ]
        return "\n".join(lines)

    # ------------------------------------------------------------------ save

    def save(self, filepath: Union[str, Path]) -> Path:
        """
        Save calibration to a file, the format is chosen by the extension.

        Raises:
            CalibrationInvalidError: If the calibration is incomplete
            CalibrationError: On unsupported format or write failure
        """
        self.require_valid()
        filepath = Path(filepath)
        suffix = filepath.suffix.lower()
        try:
            if suffix in FILESTORAGE_FORMATS:
                self._save_filestorage(filepath)
            elif suffix == '.npz':
                self._save_npz(filepath)
            elif suffix == '.m':
                self._save_matlab(filepath)
            else:
                raise CalibrationError(f"Unsupported calibration format '{suffix}'")
        except (OSError, cv2.error) as e:
            raise CalibrationError(f"Cannot write calibration to {filepath}: {e}")
        logger.info(f"Calibration saved to {filepath}")
        return filepath

    def _save_filestorage(self, filepath: Path) -> None:
        fs = cv2.FileStorage(str(filepath), cv2.FILE_STORAGE_WRITE)
        if not fs.isOpened():
            raise CalibrationError(f"Cannot open {filepath} for writing")
        try:
            for key in MATRIX_KEYS:
                fs.write(key, np.ascontiguousarray(getattr(self, key)))
            for key in ERROR_KEYS:
                fs.write(key, getattr(self, key))
        finally:
            fs.release()

    def _save_npz(self, filepath: Path) -> None:
        arrays = dict(self.matrices())
        for key in ERROR_KEYS:
            arrays[key] = np.float64(getattr(self, key))
        with open(filepath, 'wb') as f:
            np.savez(f, **arrays)

    def _save_matlab(self, filepath: Path) -> None:
        rvec, _ = cv2.Rodrigues(np.ascontiguousarray(self.R))
        rvec = rvec.ravel()
        T = self.T.ravel()

        def intrinsics(K, kc, side):
            kc = np.zeros(5) if kc is None else np.pad(kc.ravel()[:5], (0, max(0, 5 - kc.size)))
            return (
                f"fc_{side} = [ {K[0, 0]:f} {K[1, 1]:f} ]; % Focal Length\n"
                f"cc_{side} = [ {K[0, 2]:f} {K[1, 2]:f} ]; % Principal point\n"
                f"alpha_c_{side} = [ {K[0, 1]:f} ]; % Skew\n"
                f"kc_{side} = [ {' '.join(f'{v:f}' for v in kc)} ]; % Distortion\n"
            )

        with open(filepath, 'w') as f:
            f.write("% Projector-Camera Stereo calibration parameters:\n\n")
            f.write("% Intrinsic parameters of camera:\n")
            f.write(intrinsics(self.cam_K, self.cam_kc, 'left'))
            f.write("\n% Intrinsic parameters of projector:\n")
            f.write(intrinsics(self.proj_K, self.proj_kc, 'right'))
            f.write("\n% Extrinsic parameters (position of projector wrt camera):\n")
            f.write(f"om = [ {rvec[0]:f} {rvec[1]:f} {rvec[2]:f} ]; % Rotation vector\n")
            f.write(f"T = [ {T[0]:f} {T[1]:f} {T[2]:f} ]; % Translation vector\n")

    # ------------------------------------------------------------------ load

    @classmethod
    def load(cls, filepath: Union[str, Path]) -> 'CalibrationData':
        """
        Load calibration from a FileStorage document or a numpy archive.

        Missing entries are left empty; check :meth:`is_valid` before use.

        Raises:
            CalibrationError: If the file cannot be read or the format is unsupported
        """
        filepath = Path(filepath)
        suffix = filepath.suffix.lower()
        if not filepath.is_file():
            raise CalibrationError(f"Calibration file not found: {filepath}")
        if suffix in FILESTORAGE_FORMATS:
            data = cls._load_filestorage(filepath)
        elif suffix == '.npz':
            data = cls._load_npz(filepath)
        else:
            raise CalibrationError(f"Unsupported calibration format '{suffix}'")
        logger.info(f"Calibration loaded from {filepath}")
        return data

    @classmethod
    def _load_filestorage(cls, filepath: Path) -> 'CalibrationData':
        try:
            fs = cv2.FileStorage(str(filepath), cv2.FILE_STORAGE_READ)
        except cv2.error as e:
            raise CalibrationError(f"Cannot parse {filepath}: {e}")
        if not fs.isOpened():
            raise CalibrationError(f"Cannot open {filepath}")
        try:
            values = {}
            for key in MATRIX_KEYS:
                node = fs.getNode(key)
                values[key] = None if node.empty() else node.mat()
            for key in ERROR_KEYS:
                node = fs.getNode(key)
                values[key] = 0.0 if node.empty() else node.real()
        finally:
            fs.release()
        return cls(**values)

    @classmethod
    def _load_npz(cls, filepath: Path) -> 'CalibrationData':
        try:
            with np.load(filepath, allow_pickle=False) as archive:
                values = {key: archive[key] for key in MATRIX_KEYS if key in archive.files}
                for key in ERROR_KEYS:
                    if key in archive.files:
                        values[key] = float(archive[key])
        except (OSError, ValueError) as e:
            raise CalibrationError(f"Cannot read {filepath}: {e}")
        return cls(**values)


@report_failure(default=None)
def load_calibration(filepath: Union[str, Path]) -> Optional[CalibrationData]:
    """Load calibration data, returning None on failure."""
    return CalibrationData.load(filepath)


@report_failure(default=False)
def save_calibration(calibration: CalibrationData, filepath: Union[str, Path]) -> bool:
    """Save calibration data, returning False on failure."""
    calibration.save(filepath)
    return True
