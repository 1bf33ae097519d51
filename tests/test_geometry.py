"""
Tests for geometry helpers.
"""

import os
import sys
import unittest

import cv2
import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from ardevice_pose.geometry import (  # type: ignore
    CameraIntrinsics,
    angle_from_axis,
    back_project,
    back_project_pixel,
    compose_pose,
    invert_pose,
    is_valid_rotation,
    matrix_to_rvec_tvec,
    project,
    quaternion_to_rotation_matrix,
    rotation_matrix_to_quaternion,
    rvec_tvec_to_matrix,
)


class TestIntrinsics(unittest.TestCase):
    """Camera intrinsics construction."""

    def test_from_matrix(self):
        """Parameters are read from a 3x3 camera matrix."""
        intrinsics = CameraIntrinsics.from_matrix([[500, 0, 310], [0, 510, 230], [0, 0, 1]], 640, 480)
        self.assertEqual((intrinsics.fx, intrinsics.fy, intrinsics.cx, intrinsics.cy), (500, 510, 310, 230))
        self.assertEqual(intrinsics.width, 640)

    def test_from_projection(self):
        """A 12-value projection matrix yields the same parameters."""
        projection = [525.0, 0.0, 319.5, 0.0, 0.0, 525.0, 239.5, 0.0, 0.0, 0.0, 1.0, 0.0]
        intrinsics = CameraIntrinsics.from_projection(projection)
        np.testing.assert_allclose(
            intrinsics.camera_matrix,
            [[525.0, 0.0, 319.5], [0.0, 525.0, 239.5], [0.0, 0.0, 1.0]],
        )


class TestProjection(unittest.TestCase):
    """Back-projection of depth pixels."""

    def setUp(self):
        self.intrinsics = CameraIntrinsics(600.0, 600.0, 320.0, 240.0)

    def test_principal_point_lies_on_axis(self):
        """The principal point back-projects onto the optical axis."""
        point = back_project_pixel(320.0, 240.0, 1500, self.intrinsics)
        np.testing.assert_allclose(point, [0.0, 0.0, 1.5])

    def test_back_project_known_point(self):
        """Millimetre depth becomes metres and offsets scale with depth."""
        point = back_project_pixel(920.0, 240.0 - 300.0, 2000, self.intrinsics)
        np.testing.assert_allclose(point, [2.0, -1.0, 2.0])

    def test_project_inverts_back_project(self):
        """Projecting back-projected points gives back the pixels."""
        pixels = np.array([[10.5, 20.25], [320.0, 240.0], [600.0, 470.0]])
        points = back_project(pixels, [800, 1200, 4000], self.intrinsics)
        np.testing.assert_allclose(project(points, self.intrinsics), pixels, atol=1e-9)

    def test_length_mismatch(self):
        """Pixels and depths must pair up."""
        with self.assertRaises(ValueError):
            back_project(np.zeros((3, 2)), [1000, 1000], self.intrinsics)


class TestTransforms(unittest.TestCase):
    """Rigid transforms and rotations."""

    def setUp(self):
        self.rvec = np.array([[0.2], [-0.4], [0.1]])
        self.tvec = np.array([[0.3], [0.1], [1.2]])

    def test_invert_pose(self):
        """A pose times its inverse is the identity."""
        transform = rvec_tvec_to_matrix(self.rvec, self.tvec)
        np.testing.assert_allclose(transform @ invert_pose(transform), np.eye(4), atol=1e-12)

    def test_rvec_tvec_round_trip(self):
        """Matrix and Rodrigues representations agree."""
        rvec, tvec = matrix_to_rvec_tvec(rvec_tvec_to_matrix(self.rvec, self.tvec))
        np.testing.assert_allclose(rvec, self.rvec, atol=1e-12)
        np.testing.assert_allclose(tvec, self.tvec, atol=1e-12)

    def test_quaternion_round_trip(self):
        """Quaternions are unit length with non-negative w and convert back."""
        rotation, _ = cv2.Rodrigues(self.rvec)
        quaternion = rotation_matrix_to_quaternion(rotation)
        self.assertAlmostEqual(float(np.linalg.norm(quaternion)), 1.0)
        self.assertGreaterEqual(quaternion[3], 0.0)
        np.testing.assert_allclose(quaternion_to_rotation_matrix(quaternion), rotation, atol=1e-12)

    def test_half_turn_quaternion(self):
        """A rotation of pi around z maps to (0, 0, 1, 0)."""
        rotation = np.diag([-1.0, -1.0, 1.0])
        np.testing.assert_allclose(rotation_matrix_to_quaternion(rotation), [0.0, 0.0, 1.0, 0.0], atol=1e-12)

    def test_is_valid_rotation(self):
        rotation, _ = cv2.Rodrigues(self.rvec)
        self.assertTrue(is_valid_rotation(rotation))
        self.assertFalse(is_valid_rotation(2.0 * rotation))
        self.assertFalse(is_valid_rotation(np.diag([1.0, 1.0, -1.0])))

    def test_angle_from_axis(self):
        """Tilting the optical axis by 30 degrees is measured as 30 degrees."""
        rotation, _ = cv2.Rodrigues(np.array([[np.radians(30.0)], [0.0], [0.0]]))
        self.assertAlmostEqual(angle_from_axis(rotation), 30.0, places=6)
        # Rolling around the optical axis does not tilt it
        roll, _ = cv2.Rodrigues(np.array([[0.0], [0.0], [1.0]]))
        self.assertAlmostEqual(angle_from_axis(roll), 0.0, places=4)
        self.assertAlmostEqual(angle_from_axis(compose_pose(np.eye(3), np.zeros(3))[:3, :3]), 0.0)


if __name__ == "__main__":
    unittest.main()
