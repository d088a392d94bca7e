"""
Scan pipeline: decode, calibrate and reconstruct the sets of a scan root.

ScanPipeline ties the stages together the way a scanning session uses them:
load a root directory, calibrate once from the chessboard sets, then
reconstruct any object set with the stored calibration.
"""

import logging
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

from slscan.calibration.calibration_data import CalibrationData
from slscan.calibration.projector_calibration import ProjectorCameraCalibrator, CalibrationState
from slscan.config import ScanConfig
from slscan.core.constants import CALIBRATION_FILENAME, CALIBRATION_MATLAB_FILENAME
from slscan.core.events import ProgressMonitor, checkpoint
from slscan.exceptions import (
    InputError, ImageSizeError, CalibrationError, CalibrationInvalidError, report_failure
)
from slscan.image_sets import ImageSet, discover_image_sets
from slscan.patterns.direct_light import direct_light_indices, compute_direct_light
from slscan.patterns.pattern_decoder import PatternDecoder, DecodeResult
from slscan.reconstruction.point_cloud import Pointcloud
from slscan.reconstruction.reconstructor import Reconstructor, make_projector_view
from slscan.visualization import threshold_pattern, colorize_pattern

logger = logging.getLogger(__name__)


class ScanPipeline:
    """
    Orchestrates the stages over the image sets of one scan root.

    Every public operation returns a result or a failure marker (None/False)
    and logs the reason; none of them raise slscan errors.

    Example:
        pipeline = ScanPipeline(ScanConfig(shadow_threshold=40))
        pipeline.load_root("scans/calibration")
        if pipeline.calibrate() is not None:
            cloud = pipeline.reconstruct("object_01")
    """

    def __init__(self, config: Optional[ScanConfig] = None,
                 monitor: Optional[ProgressMonitor] = None):
        self.config = (config or ScanConfig()).validate()
        self.monitor = monitor
        self.root: Optional[Path] = None
        self.image_sets: List[ImageSet] = []
        self.decoded: Dict[str, DecodeResult] = OrderedDict()
        self.calibration: Optional[CalibrationData] = None

    def _message(self, text: str) -> None:
        logger.info(text)
        if self.monitor is not None:
            self.monitor.message(text)

    # ------------------------------------------------------------- sets

    def load_root(self, root: Union[str, Path]) -> List[ImageSet]:
        """
        Discover the image sets of ``root`` and drop previous decode results.

        Raises:
            InputError: If ``root`` is not a directory
        """
        self.root = Path(root)
        self.image_sets = discover_image_sets(self.root)
        self.decoded.clear()
        return self.image_sets

    def get_set(self, name: str) -> ImageSet:
        for image_set in self.image_sets:
            if image_set.name == name:
                return image_set
        raise InputError(f"Unknown image set '{name}'")

    @property
    def enabled_sets(self) -> List[ImageSet]:
        return [s for s in self.image_sets if s.enabled]

    # ------------------------------------------------------------- decode

    def _decode(self, image_set: ImageSet) -> DecodeResult:
        config = self.config
        direct_light = None
        if config.robust_decode:
            indices = direct_light_indices(len(image_set))
            self._message(f"Estimate direct and global light components of '{image_set.name}'...")
            direct_light = compute_direct_light([image_set.load_gray(i) for i in indices], config.robust_b)

        checkpoint(self.monitor, "Decode")
        decoder = PatternDecoder(image_set.projector_size,
                                 gray=config.gray_decode,
                                 robust=config.robust_decode,
                                 direct_light=direct_light,
                                 m=config.robust_m,
                                 monitor=self.monitor)
        result = decoder.decode(image_set.files)
        self.decoded[image_set.name] = result
        self._message(f" * {image_set.name}: decoded")
        return result

    @report_failure(default=None)
    def decode_set(self, name: str) -> Optional[DecodeResult]:
        """Decode one set, replacing any cached result."""
        return self._decode(self.get_set(name))

    def _decode_all(self) -> Dict[str, DecodeResult]:
        sets = self.enabled_sets
        if not sets:
            raise InputError("No image sets selected")
        if self.monitor is not None:
            self.monitor.start("Decode", len(sets))

        camera_size = None
        projector_size = sets[0].projector_size
        for i, image_set in enumerate(sets):
            if image_set.projector_size != projector_size:
                raise InputError(
                    f"Projector resolution does not match: set {image_set.name} "
                    f"[expected {projector_size[0]}x{projector_size[1]}, "
                    f"got {image_set.projector_size[0]}x{image_set.projector_size[1]}]"
                )
            result = self._decode(image_set)
            if camera_size is None:
                camera_size = result.camera_size
            elif result.camera_size != camera_size:
                raise ImageSizeError(f"Pattern image of set '{image_set.name}'", camera_size, result.camera_size)
            if self.monitor is not None:
                self.monitor.progress(i + 1, len(sets))

        for image_set in self.image_sets:
            if not image_set.enabled:
                self._message(f" * {image_set.name}: skipped [not selected]")
        if self.monitor is not None:
            self.monitor.finish()
        return {s.name: self.decoded[s.name] for s in sets}

    @report_failure(default=False)
    def decode_all(self) -> bool:
        """
        Decode every enabled set.

        All sets must share the camera resolution and the projector
        resolution; the first mismatch aborts.
        """
        self._decode_all()
        self._message("Decode finished")
        return True

    def _projector_size(self) -> Tuple[int, int]:
        sizes = {s.projector_size for s in self.enabled_sets}
        if len(sizes) != 1:
            raise InputError(f"Enabled sets disagree on projector resolution: {sorted(sizes)}")
        return sizes.pop()

    # ------------------------------------------------------------- calibrate

    @report_failure(default=None)
    def calibrate(self, output_dir: Optional[Union[str, Path]] = None) -> Optional[CalibrationData]:
        """
        Calibrate camera and projector from the enabled chessboard sets.

        Only sets whose chessboard is found are decoded. On success the
        calibration is written to ``calibration.yml`` and ``calibration.m``
        together with the corner files.

        Args:
            output_dir: Where results are written, defaults to the scan root

        Returns:
            CalibrationData, or None on failure (nothing is written)
        """
        sets = self.enabled_sets
        if not sets:
            raise InputError("No image sets selected")
        self.calibration = None

        calibrator = ProjectorCameraCalibrator(self.config, self._projector_size(), self.monitor)
        calibrator.extract_chessboard_corners([(s.name, s.files[0]) for s in sets])
        if calibrator.state == CalibrationState.FAILED:
            raise CalibrationError("Chessboard corner extraction failed")

        decoded = {}
        for name in calibrator.camera_corners:
            decoded[name] = self._decode(self.get_set(name))

        if not calibrator.build_projector_correspondences(decoded) or not calibrator.calibrate():
            raise CalibrationError("Calibration failed")

        output_dir = Path(output_dir) if output_dir is not None else self.root
        if output_dir is not None:
            self._write_calibration(calibrator, output_dir)

        self.calibration = calibrator.calibration
        self._message("Calibration finished")
        return self.calibration

    def _write_calibration(self, calibrator: ProjectorCameraCalibrator, output_dir: Path) -> None:
        """Write calibration and corner files; nothing is left behind on failure."""
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CalibrationError(f"Cannot create output directory {output_dir}: {e}")

        written = []
        try:
            for filename in (CALIBRATION_FILENAME, CALIBRATION_MATLAB_FILENAME):
                written.append(calibrator.calibration.save(output_dir / filename))
            if not calibrator.export_corners(output_dir):
                raise CalibrationError(f"Cannot write corner files to {output_dir}")
        except CalibrationError:
            for path in written:
                path.unlink(missing_ok=True)
            raise

    @report_failure(default=False)
    def load_calibration(self, filepath: Union[str, Path]) -> bool:
        calibration = CalibrationData.load(filepath).require_valid()
        self.calibration = calibration
        logger.info(calibration.describe())
        return True

    @report_failure(default=False)
    def save_calibration(self, filepath: Union[str, Path]) -> bool:
        if self.calibration is None:
            raise CalibrationInvalidError("no calibration")
        self.calibration.save(filepath)
        return True

    # ------------------------------------------------------------- reconstruct

    @report_failure(default=None)
    def reconstruct(self, name: str, mode: Optional[str] = None) -> Optional[Pointcloud]:
        """
        Decode a set and reconstruct it with the current calibration.

        The first image of the set provides the point colors.

        Args:
            name: Image set name
            mode: "patch_center" or "simple", defaults to the configured mode
        """
        if self.calibration is None:
            raise CalibrationInvalidError("no calibration loaded")
        self.calibration.require_valid()

        image_set = self.get_set(name)
        decoded = self._decode(image_set)
        color_image = image_set.load_color(0)

        reconstructor = Reconstructor(self.calibration, self.config, self.monitor)
        cloud = reconstructor.reconstruct(decoded, color_image, mode)
        self._message(f"Reconstruction of '{name}' finished: {cloud.stats}")
        return cloud

    # ------------------------------------------------------------- diagnostics

    def _cached_decode(self, name: str) -> Tuple[ImageSet, DecodeResult]:
        image_set = self.get_set(name)
        result = self.decoded.get(name)
        if result is None:
            result = self._decode(image_set)
        return image_set, result

    @report_failure(default=None)
    def pattern_images(self, name: str) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """
        Colorized column and row maps of a set after shadow thresholding.

        Returns:
            (column image, row image) BGR
        """
        image_set, result = self._cached_decode(name)
        pattern = threshold_pattern(result.pattern, result.min_max, self.config.shadow_threshold)
        width, height = image_set.projector_size
        return colorize_pattern(pattern, 0, width), colorize_pattern(pattern, 1, height)

    @report_failure(default=None)
    def projector_view(self, name: str) -> Optional[np.ndarray]:
        """The scene of a set as seen from the projector."""
        image_set, result = self._cached_decode(name)
        return make_projector_view(result.pattern, result.min_max, image_set.load_color(0),
                                   image_set.projector_size, self.config.shadow_threshold)
