"""Tests for the scan pipeline and the command line interface."""

import tempfile
import unittest
from pathlib import Path
from unittest import mock

import numpy as np
import cv2

from slscan.calibration.calibration_data import CalibrationData
from slscan.cli import main
from slscan.config import ScanConfig
from slscan.calibration.projector_calibration import CalibrationState
from slscan.core.constants import PROJECTOR_INFO_FILENAME, CALIBRATION_FILENAME, CALIBRATION_MATLAB_FILENAME
from slscan.core.events import EventType, ProgressMonitor
from slscan.patterns.gray_code import write_projector_info
from slscan.exceptions import CalibrationError
from slscan.pipeline import ScanPipeline
from slscan.reconstruction.point_cloud import Pointcloud

from tests.synthetic_rig import gray_code_captures, expected_coordinates, rig_calibration, LIT

PROJECTOR_SIZE = (24, 20)
BITS = 5


def write_capture_set(directory: Path, projector_size=PROJECTOR_SIZE, scale: int = 2):
    directory.mkdir(parents=True)
    for i, image in enumerate(gray_code_captures(PROJECTOR_SIZE, BITS, scale)):
        cv2.imwrite(str(directory / f"cap_{i:02d}.png"), image)
    write_projector_info(directory / PROJECTOR_INFO_FILENAME, *projector_size)


class TestScanPipeline(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        write_capture_set(self.root / "object")
        self.expected = expected_coordinates(PROJECTOR_SIZE)

    def tearDown(self):
        self.tmp.cleanup()

    def pipeline(self, **changes) -> ScanPipeline:
        pipeline = ScanPipeline(ScanConfig().with_changes(**changes))
        pipeline.load_root(self.root)
        return pipeline

    def test_load_root(self):
        pipeline = self.pipeline()
        self.assertEqual([s.name for s in pipeline.image_sets], ["object"])
        self.assertEqual(pipeline.get_set("object").projector_size, PROJECTOR_SIZE)
        self.assertIsNone(pipeline.decode_set("missing"))

    def test_decode_set(self):
        for robust in (True, False):
            with self.subTest(robust=robust):
                pipeline = self.pipeline(robust_decode=robust)
                result = pipeline.decode_set("object")
                self.assertIsNotNone(result)
                self.assertTrue(np.array_equal(result.pattern, self.expected))
                self.assertIs(pipeline.decoded["object"], result)

    def test_decode_all_and_disabled_sets(self):
        write_capture_set(self.root / "wide", projector_size=(26, 20))
        pipeline = self.pipeline()
        self.assertFalse(pipeline.decode_all())

        pipeline.get_set("wide").enabled = False
        self.assertTrue(pipeline.decode_all())
        self.assertEqual(list(pipeline.decoded), ["object"])

    def test_decode_all_camera_size_mismatch(self):
        write_capture_set(self.root / "small", scale=1)
        self.assertFalse(self.pipeline().decode_all())

    def test_progress_events(self):
        monitor = ProgressMonitor()
        messages = []
        monitor.on(EventType.MESSAGE, messages.append)
        pipeline = ScanPipeline(monitor=monitor)
        pipeline.load_root(self.root)
        self.assertTrue(pipeline.decode_all())
        self.assertIn(" * object: decoded", messages)

        monitor.token.cancel()
        self.assertFalse(pipeline.decode_all())

    def test_pattern_images(self):
        pipeline = self.pipeline()
        images = pipeline.pattern_images("object")
        self.assertIsNotNone(images)
        columns, rows = images
        self.assertEqual(columns.shape, (40, 48, 3))
        self.assertEqual(rows.shape, (40, 48, 3))
        self.assertEqual(tuple(columns[0, 0]), (0, 0, 0))

        pipeline = self.pipeline(shadow_threshold=255)
        columns, _ = pipeline.pattern_images("object")
        self.assertTrue(np.all(columns == 128))

    def test_projector_view(self):
        view = self.pipeline().projector_view("object")
        self.assertEqual(view.shape, (PROJECTOR_SIZE[1], PROJECTOR_SIZE[0], 3))
        self.assertTrue(np.all(view == LIT))

    def test_reconstruct_requires_calibration(self):
        self.assertIsNone(self.pipeline().reconstruct("object"))

    def test_reconstruct(self):
        pipeline = self.pipeline()
        pipeline.calibration = rig_calibration()

        cloud = pipeline.reconstruct("object", "simple")
        self.assertIsInstance(cloud, Pointcloud)
        self.assertEqual(cloud.shape, (40, 48))
        self.assertIsNotNone(cloud.normals)
        stats = cloud.stats
        self.assertEqual(stats.good + stats.bad + stats.invalid, 40 * 48)
        self.assertEqual(stats.repeated, 0)
        self.assertTrue(np.all(cloud.colors[cloud.valid_mask()] == LIT))

        cloud = pipeline.reconstruct("object")
        self.assertEqual(cloud.shape, (PROJECTOR_SIZE[1], PROJECTOR_SIZE[0]))
        self.assertEqual(cloud.stats.good + cloud.stats.bad, PROJECTOR_SIZE[0] * PROJECTOR_SIZE[1])
        self.assertEqual(cloud.stats.repeated, 40 * 48 - PROJECTOR_SIZE[0] * PROJECTOR_SIZE[1])

        self.assertIsNone(pipeline.reconstruct("object", "mesh"))

    def test_calibrate_without_chessboards(self):
        write_capture_set(self.root / "second")
        write_capture_set(self.root / "third")
        pipeline = self.pipeline(chessboard_size=(7, 5))
        with tempfile.TemporaryDirectory() as out:
            self.assertIsNone(pipeline.calibrate(out))
            self.assertFalse((Path(out) / CALIBRATION_FILENAME).exists())
        self.assertIsNone(pipeline.calibration)

    def test_calibration_output_failures(self):
        pipeline = self.pipeline()
        calibrator = mock.MagicMock()
        calibrator.calibration = rig_calibration()

        blocker = self.root / "blocker"
        blocker.write_text("not a directory")
        with self.assertRaises(CalibrationError):
            pipeline._write_calibration(calibrator, blocker / "out")

        out = self.root / "out"
        calibrator.export_corners.return_value = False
        with self.assertRaises(CalibrationError):
            pipeline._write_calibration(calibrator, out)
        self.assertFalse((out / CALIBRATION_FILENAME).exists())
        self.assertFalse((out / CALIBRATION_MATLAB_FILENAME).exists())

        calibrator.export_corners.return_value = True
        pipeline._write_calibration(calibrator, out)
        self.assertTrue((out / CALIBRATION_FILENAME).exists())
        self.assertTrue((out / CALIBRATION_MATLAB_FILENAME).exists())

    def test_calibrate_reports_write_failure(self):
        write_capture_set(self.root / "second")
        write_capture_set(self.root / "third")
        pipeline = self.pipeline()
        with mock.patch('slscan.pipeline.ProjectorCameraCalibrator') as calibrator_class:
            calibrator = calibrator_class.return_value
            calibrator.state = CalibrationState.CORNERS_EXTRACTED
            calibrator.camera_corners = {}
            calibrator.calibration = rig_calibration()
            with mock.patch.object(ScanPipeline, '_write_calibration',
                                   side_effect=CalibrationError("disk full")):
                self.assertIsNone(pipeline.calibrate(self.root / "out"))
        self.assertIsNone(pipeline.calibration)

    def test_calibration_io(self):
        pipeline = self.pipeline()
        path = self.root / CALIBRATION_FILENAME
        self.assertFalse(pipeline.save_calibration(path))
        self.assertFalse(pipeline.load_calibration(self.root / "missing.yml"))

        pipeline.calibration = rig_calibration()
        self.assertTrue(pipeline.save_calibration(path))
        other = self.pipeline()
        self.assertTrue(other.load_calibration(path))
        np.testing.assert_allclose(other.calibration.cam_K, pipeline.calibration.cam_K)


@mock.patch('slscan.cli.setup_logging')
class TestCommandLine(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_patterns_decode_reconstruct(self, setup_logging):
        scan = self.root / "scan"
        self.assertEqual(main(["patterns", str(scan / "flat"), "--width", "24", "--height", "20",
                               "--count", "5"]), 0)
        setup_logging.assert_called_once_with(level="INFO", log_file=None)
        self.assertEqual(len(list((scan / "flat").glob("pattern_*.png"))), 22)
        self.assertEqual((scan / "flat" / PROJECTOR_INFO_FILENAME).read_text().split()[:2], ["24", "20"])

        out = self.root / "decoded"
        self.assertEqual(main(["decode", str(scan), "--out", str(out)]), 0)
        with np.load(out / "flat" / "pattern.npz") as data:
            pattern = data["pattern"]
            self.assertEqual(tuple(data["projector_size"]), PROJECTOR_SIZE)
        self.assertTrue(np.array_equal(pattern, expected_coordinates(PROJECTOR_SIZE, scale=1)))
        self.assertTrue((out / "flat" / "columns.png").exists())
        self.assertTrue((out / "flat" / "rows.png").exists())

        calibration = self.root / "calibration.yml"
        rig_calibration().save(calibration)
        cloud = self.root / "flat.npz"
        self.assertEqual(main(["reconstruct", str(scan), "--set", "flat", "--calibration", str(calibration),
                               "--out", str(cloud), "--mode", "simple"]), 0)
        with np.load(cloud) as data:
            self.assertEqual(data["grid_points"].shape, (20, 24, 3))

    def test_failures_return_nonzero(self, setup_logging):
        self.assertEqual(main(["decode", str(self.root / "missing"), "--out", str(self.root / "out")]), 1)
        self.assertEqual(main(["reconstruct", str(self.root), "--set", "flat",
                               "--calibration", str(self.root / "missing.yml"), "--out", "x.npz"]), 1)

        config = self.root / "bad.json"
        config.write_text('{"shadow_threshold": 999}')
        self.assertEqual(main(["calibrate", str(self.root), "--config", str(config)]), 1)

    def test_log_options(self, setup_logging):
        log_file = str(self.root / "slscan.log")
        main(["--log-level", "DEBUG", "--log-file", log_file, "calibrate", str(self.root)])
        setup_logging.assert_called_once_with(level="DEBUG", log_file=log_file)

    def test_debug_session(self, setup_logging):
        with mock.patch('slscan.cli.debug_mode') as debug_mode:
            main(["--debug-session", "scan_01", "--debug-dir", str(self.root), "calibrate", str(self.root)])
        debug_mode.assert_called_once_with("scan_01", str(self.root))
        setup_logging.assert_not_called()


if __name__ == '__main__':
    unittest.main()
