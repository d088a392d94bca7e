"""Tests for ray intersection and camera-projector triangulation."""

import unittest

import numpy as np

from slscan.calibration.calibration_data import CalibrationData
from slscan.exceptions import DegenerateRaysError, CalibrationInvalidError
from slscan.reconstruction.triangulation import (
    approximate_ray_intersection, approximate_ray_intersections, undistort_pixels,
    triangulate_stereo, Triangulator
)

from tests.synthetic_rig import rig_calibration, project


class TestRayIntersection(unittest.TestCase):

    def test_intersecting_rays(self):
        point, distance = approximate_ray_intersection([1, 0, 0], [0, 0, 0], [0, 1, 0], [2, -3, 0])
        np.testing.assert_allclose(point, [2, 0, 0], atol=1e-12)
        self.assertAlmostEqual(distance, 0.0)

    def test_skew_rays(self):
        point, distance = approximate_ray_intersection([1, 0, 0], [0, 0, 0], [0, 1, 0], [0, 0, 5])
        np.testing.assert_allclose(point, [0, 0, 2.5])
        self.assertAlmostEqual(distance, 5.0)

    def test_parallel_rays(self):
        point, distance = approximate_ray_intersection([0, 0, 1], [0, 0, 0], [0, 0, 2], [3, 0, 0])
        self.assertTrue(np.isnan(point).all())
        self.assertEqual(distance, float('inf'))
        with self.assertRaises(DegenerateRaysError):
            approximate_ray_intersection([0, 0, 1], [0, 0, 0], [0, 0, 2], [3, 0, 0], strict=True)

    def test_batch_matches_scalar(self):
        rng = np.random.default_rng(7)
        v1 = rng.normal(size=(20, 3))
        v2 = rng.normal(size=(20, 3))
        q2 = rng.normal(size=(20, 3))
        q1 = np.zeros(3)
        v2[5] = v1[5] * 3.0
        points, distances = approximate_ray_intersections(v1, q1, v2, q2)
        for i in range(20):
            point, distance = approximate_ray_intersection(v1[i], q1, v2[i], q2[i])
            if i == 5:
                self.assertTrue(np.isnan(points[i]).all())
                self.assertEqual(distances[i], np.inf)
            else:
                np.testing.assert_allclose(points[i], point, rtol=1e-9, atol=1e-9)
                self.assertAlmostEqual(distances[i], distance)


class TestTriangulator(unittest.TestCase):

    def setUp(self):
        self.calibration = rig_calibration()
        self.triangulator = Triangulator(self.calibration)

    def _pixels(self, point):
        c = self.calibration
        cam = project(c.cam_K, point)
        proj = project(c.proj_K, c.R @ point + c.T.reshape(3))
        return cam, proj

    def test_undistort_without_distortion(self):
        rays = undistort_pixels(np.array([[80.0, 60.0], [280.0, 60.0]]), self.calibration.cam_K, np.zeros(5))
        np.testing.assert_allclose(rays, [[0, 0, 1], [1, 0, 1]], atol=1e-9)

    def test_exact_correspondence(self):
        point = np.array([20.0, -15.0, 600.0])
        cam, proj = self._pixels(point)
        result, distance = self.triangulator.triangulate(cam, proj)
        np.testing.assert_allclose(result, point, atol=1e-6)
        self.assertLess(distance, 1e-6)

    def test_free_function(self):
        point = np.array([-40.0, 10.0, 450.0])
        cam, proj = self._pixels(point)
        c = self.calibration
        result, distance = triangulate_stereo(c.cam_K, c.cam_kc, c.proj_K, c.proj_kc, c.R.T, c.T, cam, proj)
        np.testing.assert_allclose(result, point, atol=1e-6)
        self.assertLess(distance, 1e-6)

    def test_batch(self):
        points = np.array([[0.0, 0.0, 500.0], [30.0, 20.0, 700.0], [-25.0, 5.0, 400.0]])
        cam, proj = zip(*(self._pixels(p) for p in points))
        result, distances = self.triangulator.triangulate_batch(np.array(cam), np.array(proj))
        np.testing.assert_allclose(result, points, atol=1e-6)
        self.assertTrue(np.all(distances < 1e-6))

    def test_empty_batch(self):
        result, distances = self.triangulator.triangulate_batch(np.empty((0, 2)), np.empty((0, 2)))
        self.assertEqual(result.shape, (0, 3))
        self.assertEqual(distances.shape, (0,))

    def test_mismatched_correspondence_has_residual(self):
        cam, proj = self._pixels(np.array([0.0, 0.0, 600.0]))
        _, distance = self.triangulator.triangulate(cam, proj + np.array([0.0, 5.0]))
        self.assertGreater(distance, 1.0)

    def test_projector_geometry(self):
        center = self.triangulator.projector_center()
        np.testing.assert_allclose(self.calibration.R @ center + self.calibration.T.reshape(3), 0, atol=1e-9)

        point = np.array([10.0, 5.0, 550.0])
        _, proj = self._pixels(point)
        np.testing.assert_allclose(self.triangulator.project_to_projector(point[None])[0], proj, atol=1e-6)

    def test_requires_valid_calibration(self):
        with self.assertRaises(CalibrationInvalidError):
            Triangulator(CalibrationData())


if __name__ == '__main__':
    unittest.main()
