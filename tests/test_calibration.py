"""Tests for chessboard detection, corner transfer and joint calibration."""

import tempfile
import unittest
from pathlib import Path

import numpy as np

from slscan.calibration.calibration_utils import (
    generate_world_corners, detection_scale, detect_chessboard_corners, projector_corner,
    compute_projector_corners
)
from slscan.calibration.projector_calibration import (
    ProjectorCameraCalibrator, CalibrationState, calibrate_from_correspondences
)
from slscan.config import ScanConfig
from slscan.core.events import ProgressMonitor
from slscan.exceptions import HomographyError, InsufficientDataError
from slscan.patterns.pattern_decoder import DecodeResult

from tests.synthetic_rig import (
    CHESSBOARD_SIZE, CHESSBOARD_SPACING, CAMERA_SIZE, PROJECTOR_SIZE,
    calibration_rig, chessboard_views, board_homographies, BOARD_POSES, full_envelope
)


def apply_homography(H, points):
    p = np.column_stack([points, np.ones(len(points))]) @ H.T
    return p[:, :2] / p[:, 2:3]


class TestCalibrationUtils(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.rig = calibration_rig()
        cls.views = chessboard_views(cls.rig)

    def test_world_corners(self):
        world = generate_world_corners((3, 2), (10.0, 20.0))
        self.assertEqual(world.dtype, np.float32)
        self.assertEqual(world.tolist(), [[0, 0, 0], [10, 0, 0], [20, 0, 0],
                                          [0, 20, 0], [10, 20, 0], [20, 20, 0]])

    def test_detection_scale(self):
        self.assertEqual(detection_scale(640), 1)
        self.assertEqual(detection_scale(1024), 1)
        self.assertEqual(detection_scale(1500), 2)
        self.assertEqual(detection_scale(4000), 4)

    def test_detect_corners(self):
        _, image, _ = self.views[0]
        corners = detect_chessboard_corners(image, CHESSBOARD_SIZE)
        self.assertEqual(corners.shape, (CHESSBOARD_SIZE[0] * CHESSBOARD_SIZE[1], 2))

        H_cam, _ = board_homographies(self.rig, BOARD_POSES[0])
        world = generate_world_corners(CHESSBOARD_SIZE, CHESSBOARD_SPACING)
        expected = apply_homography(H_cam, world[:, :2])
        offsets = corners[:, None, :] - expected[None, :, :]
        nearest = np.linalg.norm(offsets, axis=2).argmin(axis=1)
        residuals = offsets[np.arange(len(corners)), nearest]
        self.assertLess(np.linalg.norm(residuals, axis=1).max(), 0.5)
        # rendering and detection share the pixel center convention
        self.assertLess(np.abs(residuals.mean(axis=0)).max(), 0.1)

    def test_detect_corners_downscaled(self):
        _, image, _ = self.views[0]
        corners = detect_chessboard_corners(image, CHESSBOARD_SIZE, max_width=400)
        reference = detect_chessboard_corners(image, CHESSBOARD_SIZE)
        self.assertIsNotNone(corners)
        distances = np.linalg.norm(corners[:, None, :] - reference[None, :, :], axis=2).min(axis=1)
        self.assertLess(distances.max(), 0.5)

    def test_no_chessboard(self):
        blank = np.full((CAMERA_SIZE[1], CAMERA_SIZE[0]), 128, np.uint8)
        self.assertIsNone(detect_chessboard_corners(blank, CHESSBOARD_SIZE))

    def test_projector_corner_follows_homography(self):
        _, _, decoded = self.views[1]
        H_cam, H_proj = board_homographies(self.rig, BOARD_POSES[1])
        corner = np.array([301.3, 222.7])
        expected = apply_homography(H_proj @ np.linalg.inv(H_cam), corner[None])[0]
        np.testing.assert_allclose(projector_corner(corner, decoded, 60, 25), expected, atol=1e-2)

        corners = np.array([[301.3, 222.7], [350.0, 250.0]])
        projected = compute_projector_corners(corners, decoded, 60, 25)
        self.assertEqual(projected.shape, (2, 2))
        np.testing.assert_allclose(projected[0], expected, atol=1e-2)

    def test_projector_corner_failures(self):
        _, _, decoded = self.views[0]
        with self.assertRaises(HomographyError):
            projector_corner((20.0, 200.0), decoded, 60, 25)
        with self.assertRaises(HomographyError):
            projector_corner((320.0, 460.0), decoded, 60, 25)

        shadow = DecodeResult(np.array(decoded.pattern), full_envelope((CAMERA_SIZE[1], CAMERA_SIZE[0]), 100, 110),
                              PROJECTOR_SIZE, 10)
        with self.assertRaises(HomographyError) as ctx:
            projector_corner((320.0, 240.0), shadow, 60, 25, set_name="shadow", corner_index=3)
        self.assertIn("shadow", ctx.exception.message)

    def test_too_few_sets(self):
        world = generate_world_corners(CHESSBOARD_SIZE, CHESSBOARD_SPACING)
        corners = [np.zeros((len(world), 2), np.float32)] * 2
        with self.assertRaises(InsufficientDataError):
            calibrate_from_correspondences(world, corners, corners, CAMERA_SIZE, PROJECTOR_SIZE)


class TestProjectorCameraCalibrator(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.rig = calibration_rig()
        cls.views = chessboard_views(cls.rig)
        cls.config = ScanConfig(chessboard_size=CHESSBOARD_SIZE, chessboard_spacing=CHESSBOARD_SPACING)

    def references(self, views=None):
        return [(name, image) for name, image, _ in (views or self.views)]

    def decoded(self, views=None):
        return {name: result for name, _, result in (views or self.views)}

    def test_full_calibration(self):
        calibrator = ProjectorCameraCalibrator(self.config, PROJECTOR_SIZE)
        calibration = calibrator.run(self.references(), self.decoded())

        self.assertIsNotNone(calibration)
        self.assertTrue(calibration.is_valid())
        self.assertTrue(calibrator.is_calibrated())
        self.assertEqual(calibrator.state, CalibrationState.CALIBRATED)
        for error in (calibration.cam_error, calibration.proj_error, calibration.stereo_error):
            self.assertTrue(np.isfinite(error))
            self.assertGreaterEqual(error, 0.0)
            self.assertLess(error, 1.0)

        self.assertAlmostEqual(calibration.cam_K[0, 0] / self.rig.cam_K[0, 0], 1.0, delta=0.05)
        self.assertAlmostEqual(calibration.proj_K[0, 0] / self.rig.proj_K[0, 0], 1.0, delta=0.05)
        self.assertAlmostEqual(np.linalg.norm(calibration.T) / np.linalg.norm(self.rig.T), 1.0, delta=0.05)

    def test_stages_in_order(self):
        calibrator = ProjectorCameraCalibrator(self.config, PROJECTOR_SIZE)
        self.assertEqual(calibrator.state, CalibrationState.IDLE)
        self.assertFalse(calibrator.calibrate())
        self.assertEqual(calibrator.state, CalibrationState.FAILED)

        self.assertTrue(calibrator.extract_chessboard_corners(self.references()))
        self.assertEqual(calibrator.state, CalibrationState.CORNERS_EXTRACTED)
        self.assertEqual(calibrator.camera_size, CAMERA_SIZE)
        self.assertTrue(calibrator.build_projector_correspondences(self.decoded()))
        self.assertEqual(calibrator.state, CalibrationState.PROJECTOR_CORRESPONDENCE_BUILT)
        self.assertEqual(len(calibrator.active_sets), len(self.views))

    def test_degraded_set_is_excluded(self):
        blank = np.full((CAMERA_SIZE[1], CAMERA_SIZE[0]), 128, np.uint8)
        references = self.references() + [("blank", blank)]
        calibrator = ProjectorCameraCalibrator(self.config, PROJECTOR_SIZE)
        with self.assertLogs('slscan.calibration.projector_calibration', level='WARNING'):
            calibration = calibrator.run(references, self.decoded())
        self.assertIsNotNone(calibration)
        self.assertIn("blank", calibrator.failed_sets)
        self.assertNotIn("blank", calibrator.active_sets)

    def test_fewer_than_three_sets_fails(self):
        calibrator = ProjectorCameraCalibrator(self.config, PROJECTOR_SIZE)
        self.assertIsNone(calibrator.run(self.references(self.views[:2]), self.decoded(self.views[:2])))
        self.assertEqual(calibrator.state, CalibrationState.FAILED)
        self.assertIsNone(calibrator.calibration)
        self.assertFalse(calibrator.is_calibrated())

    def test_reference_size_mismatch_is_fatal(self):
        references = self.references()
        references[2] = (references[2][0], references[2][1][:-10])
        calibrator = ProjectorCameraCalibrator(self.config, PROJECTOR_SIZE)
        self.assertFalse(calibrator.extract_chessboard_corners(references))
        self.assertEqual(calibrator.state, CalibrationState.FAILED)

    def test_missing_decode_fails(self):
        calibrator = ProjectorCameraCalibrator(self.config, PROJECTOR_SIZE)
        decoded = self.decoded()
        decoded.pop(self.views[0][0])
        self.assertIsNone(calibrator.run(self.references(), decoded))

    def test_cancellation(self):
        monitor = ProgressMonitor()
        monitor.token.cancel()
        calibrator = ProjectorCameraCalibrator(self.config, PROJECTOR_SIZE, monitor=monitor)
        self.assertFalse(calibrator.extract_chessboard_corners(self.references()))
        self.assertEqual(calibrator.state, CalibrationState.FAILED)

    def test_export_corners(self):
        calibrator = ProjectorCameraCalibrator(self.config, PROJECTOR_SIZE)
        self.assertFalse(calibrator.export_corners("."))
        calibrator.run(self.references(), self.decoded())
        with tempfile.TemporaryDirectory() as tmp:
            self.assertTrue(calibrator.export_corners(tmp))
            model = np.loadtxt(Path(tmp) / "model.txt")
            self.assertEqual(model.shape, (CHESSBOARD_SIZE[0] * CHESSBOARD_SIZE[1], 3))
            for i in range(len(self.views)):
                cam = np.loadtxt(Path(tmp) / f"cam_{i:02d}.txt")
                proj = np.loadtxt(Path(tmp) / f"proj_{i:02d}.txt")
                self.assertEqual(cam.shape, proj.shape)


if __name__ == '__main__':
    unittest.main()
