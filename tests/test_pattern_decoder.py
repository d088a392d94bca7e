"""Tests for Gray code pattern decoding."""

import tempfile
import unittest
from pathlib import Path

import numpy as np
import cv2

from slscan.core.events import EventType, ProgressMonitor
from slscan.exceptions import InputError, ImageLoadError, ImageSizeError, OperationCancelled
from slscan.patterns.direct_light import direct_light_indices, compute_direct_light
from slscan.patterns.gray_code import binary_to_gray, pattern_offset
from slscan.patterns.pattern_decoder import PatternDecoder, DecodeResult, robust_bits, decode_pattern

from tests.synthetic_rig import gray_code_captures, expected_coordinates, LIT, DARK

PROJECTOR_SIZE = (24, 20)
BITS = 5


class TestRobustBits(unittest.TestCase):

    def test_rules(self):
        value1 = np.array([10, 60, 30, 90, 10])
        value2 = np.array([60, 10, 30, 10, 90])
        ld = np.array([20, 20, 20, 80, 3])
        lg = np.array([50, 50, 50, 40, 0])
        bits, uncertain = robust_bits(value1, value2, ld, lg, m=5)
        self.assertEqual(list(bits), [False, True, False, True, False])
        self.assertEqual(list(uncertain), [False, False, True, False, True])


class TestPatternDecoder(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.captures = gray_code_captures(PROJECTOR_SIZE, BITS)
        cls.expected = expected_coordinates(PROJECTOR_SIZE)
        indices = direct_light_indices(len(cls.captures))
        cls.direct_light = compute_direct_light([cls.captures[i] for i in indices])

    def test_bits_for_count(self):
        self.assertEqual(PatternDecoder.bits_for_count(22), 5)
        self.assertEqual(PatternDecoder.bits_for_count(42), 10)
        for count in (0, 4, 21, 24):
            with self.assertRaises(InputError):
                PatternDecoder.bits_for_count(count)

    def test_simple_decode_recovers_coordinates(self):
        result = PatternDecoder(PROJECTOR_SIZE, robust=False).decode(self.captures)
        self.assertIsInstance(result, DecodeResult)
        self.assertEqual(result.pattern.dtype, np.float32)
        self.assertEqual(result.camera_size, (48, 40))
        self.assertEqual(result.bits, BITS)
        self.assertFalse(np.isnan(result.pattern).any())
        self.assertTrue(np.array_equal(result.pattern, self.expected))

    def test_robust_decode_recovers_coordinates(self):
        decoder = PatternDecoder(PROJECTOR_SIZE, direct_light=self.direct_light)
        result = decoder.decode(self.captures)
        self.assertTrue(np.array_equal(result.pattern, self.expected))

    def test_envelope(self):
        result = PatternDecoder(PROJECTOR_SIZE, robust=False).decode(self.captures)
        self.assertEqual(result.min_max.dtype, np.uint8)
        self.assertTrue(np.all(result.min_max[..., 0] == DARK))
        self.assertTrue(np.all(result.min_max[..., 1] == LIT))
        self.assertTrue(result.valid_mask(LIT - DARK).all())
        self.assertFalse(result.valid_mask(LIT - DARK + 1).any())

    def test_envelope_ignores_white_black_pair(self):
        captures = list(self.captures)
        captures[0] = np.full_like(captures[0], 255)
        captures[1] = np.zeros_like(captures[1])
        result = PatternDecoder(PROJECTOR_SIZE, robust=False).decode(captures)
        self.assertTrue(np.all(result.min_max[..., 1] == LIT))

    def test_low_direct_light_is_invalid(self):
        direct_light = self.direct_light.copy()
        direct_light[3, 7] = (2, 0)
        result = PatternDecoder(PROJECTOR_SIZE, direct_light=direct_light, m=5).decode(self.captures)
        self.assertTrue(np.isnan(result.pattern[3, 7]).all())
        self.assertEqual(int(np.isnan(result.pattern).any(axis=2).sum()), 1)
        self.assertFalse(result.valid_mask()[3, 7])

    def test_binary_mode_keeps_raw_codes(self):
        result = PatternDecoder(PROJECTOR_SIZE, gray=False, robust=False).decode(self.captures)
        offset = pattern_offset(BITS, PROJECTOR_SIZE[0])
        columns = binary_to_gray(np.arange(PROJECTOR_SIZE[0]), offset)
        self.assertTrue(np.array_equal(result.pattern[0, ::2, 0], columns.astype(np.float32)))

    def test_result_is_read_only(self):
        result = PatternDecoder(PROJECTOR_SIZE, robust=False).decode(self.captures)
        with self.assertRaises(ValueError):
            result.pattern[0, 0, 0] = 1.0

    def test_result_leaves_caller_arrays_writable(self):
        pattern = np.zeros((2, 3, 2), np.float32)
        min_max = np.zeros((2, 3, 2), np.uint8)
        result = DecodeResult(pattern, min_max, PROJECTOR_SIZE, BITS)
        pattern[0, 0, 0] = 5.0
        self.assertEqual(result.pattern[0, 0, 0], 5.0)
        with self.assertRaises(ValueError):
            result.min_max[0, 0, 0] = 1

    def test_wrong_image_count(self):
        with self.assertRaises(InputError):
            PatternDecoder(PROJECTOR_SIZE, robust=False).decode(self.captures[:-1])

    def test_robust_requires_direct_light(self):
        with self.assertRaises(InputError):
            PatternDecoder(PROJECTOR_SIZE).decode(self.captures)

    def test_first_pair_size_mismatch_is_fatal(self):
        captures = list(self.captures)
        captures[3] = captures[3][:-2]
        with self.assertRaises(ImageSizeError):
            PatternDecoder(PROJECTOR_SIZE, robust=False).decode(captures)

    def test_later_pair_size_mismatch_is_skipped(self):
        captures = list(self.captures)
        # least significant column bit
        captures[11] = captures[11][:-2]
        with self.assertLogs('slscan.patterns.pattern_decoder', level='WARNING'):
            result = PatternDecoder(PROJECTOR_SIZE, robust=False).decode(captures)
        self.assertFalse(np.isnan(result.pattern).any())
        self.assertTrue(np.array_equal(result.pattern[..., 1], self.expected[..., 1]))
        self.assertLessEqual(np.abs(result.pattern[..., 0] - self.expected[..., 0]).max(), 1)

    def test_decode_from_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            files = []
            for i, image in enumerate(self.captures):
                filename = Path(tmp) / f"cap_{i:02d}.png"
                cv2.imwrite(str(filename), image)
                files.append(filename)
            result = PatternDecoder(PROJECTOR_SIZE, robust=False).decode(files)
            self.assertTrue(np.array_equal(result.pattern, self.expected))

            files[4] = Path(tmp) / "missing.png"
            with self.assertRaises(ImageLoadError):
                PatternDecoder(PROJECTOR_SIZE, robust=False).decode(files)

    def test_progress_and_cancellation(self):
        monitor = ProgressMonitor()
        values = []
        monitor.on(EventType.PROGRESS, lambda value, total: values.append((value, total)))
        PatternDecoder(PROJECTOR_SIZE, robust=False, monitor=monitor).decode(self.captures)
        self.assertEqual(len(values), 2 * BITS)
        self.assertEqual(values[-1], (2 * BITS, 2 * BITS))

        monitor.token.cancel()
        with self.assertRaises(OperationCancelled):
            PatternDecoder(PROJECTOR_SIZE, robust=False, monitor=monitor).decode(self.captures)

    def test_decode_pattern_reports_failure(self):
        self.assertIsNone(decode_pattern(self.captures[:-1], PROJECTOR_SIZE, robust=False))
        monitor = ProgressMonitor()
        monitor.token.cancel()
        self.assertIsNone(decode_pattern(self.captures, PROJECTOR_SIZE,
                                         direct_light=self.direct_light, monitor=monitor))
        result = decode_pattern(self.captures, PROJECTOR_SIZE, direct_light=self.direct_light)
        self.assertTrue(np.array_equal(result.pattern, self.expected))


if __name__ == '__main__':
    unittest.main()
