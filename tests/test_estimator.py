"""
Tests for the camera pose estimator pipeline.
"""

import os
import sys
import unittest

import cv2
import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from ardevice_pose.estimator import CameraPoseEstimator, EstimatorConfig  # type: ignore
from ardevice_pose.frames import FixedFrame, MobileFrame  # type: ignore
from ardevice_pose.geometry import compose_pose  # type: ignore
from ardevice_pose.memory import InMemoryFeatureMemory  # type: ignore
from ardevice_pose.pose import Outcome  # type: ignore
from ardevice_pose.tracking.feature import OrbExtractor  # type: ignore

from synthetic_scene import (  # type: ignore
    FIXED_INTRINSICS,
    SQUARE_DEPTHS,
    SQUARE_PIXELS,
    alternating_noise,
    grid_scene,
    make_scene,
    scene_with_outliers,
    square_scene,
)


def make_estimator(config=None, **kwargs) -> CameraPoseEstimator:
    return CameraPoseEstimator("phone", "kinect", config or {}, **kwargs)


class TestEstimatorConfig(unittest.TestCase):
    """Configuration parsing."""

    def test_defaults(self):
        config = EstimatorConfig()
        self.assertEqual(config.pnp_iterations, 1000)
        self.assertEqual(config.matching_threshold, 25.0)
        self.assertEqual(config.minimum_matches_number, 4)
        self.assertFalse(config.enable_features_memory)
        self.assertEqual(config.contradiction_policy, "discard")

    def test_camel_case_aliases(self):
        config = EstimatorConfig.from_dict(
            {"pnpReprojectionError": 3.0, "maxPoseHeight": 2.5, "showImages": True, "unknown": 1}
        )
        self.assertEqual(config.pnp_reprojection_error, 3.0)
        self.assertEqual(config.max_pose_height, 2.5)
        self.assertTrue(config.show_images)

    def test_config_read_once(self):
        """Editing the source dictionary later does not reach a running estimator."""
        source = {"matching_threshold": 30}
        estimator = make_estimator(source)
        source["matching_threshold"] = 5
        self.assertEqual(estimator.config.matching_threshold, 30)
        self.assertEqual(estimator.match_filter.matching_threshold, 30)

    def test_invalid_world_transform(self):
        with self.assertRaises(ValueError):
            make_estimator(fixed_to_world=np.eye(3))


class TestEstimatorAcceptance(unittest.TestCase):
    """Accepted estimates on synthetic scenes."""

    def test_square_scene(self):
        """Four exact correspondences recover the mobile pose."""
        scene = square_scene()
        estimator = make_estimator()

        outcome = estimator.update(scene.mobile, scene.fixed, timestamp=42.0)

        self.assertEqual(outcome, Outcome.ACCEPTED)
        self.assertTrue(estimator.has_estimate)
        estimate = estimator.last_pose_estimate
        np.testing.assert_allclose(estimate.position, scene.expected_pose[:3, 3], atol=1e-3)
        np.testing.assert_allclose(estimate.rotation_matrix, scene.expected_pose[:3, :3], atol=1e-3)
        self.assertEqual(estimate.inliers, 4)
        self.assertEqual(estimator.last_estimate_matches_number, 4)
        self.assertLess(estimator.last_estimate_reprojection_error, 1e-2)
        self.assertEqual(estimate.timestamp, 42.0)
        self.assertEqual(estimate.frame_id, "world")
        self.assertEqual(estimator.last_outcome, Outcome.ACCEPTED)

    def test_square_scene_shared_intrinsics(self):
        """Both cameras share the 600 px focal length."""
        scene = square_scene(mobile_intrinsics=FIXED_INTRINSICS)
        estimator = make_estimator()

        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.ACCEPTED)
        np.testing.assert_allclose(estimator.last_pose_estimate.as_matrix(), scene.expected_pose, atol=1e-3)

    def test_world_transform_applied(self):
        """The estimate is expressed in the world frame."""
        scene = grid_scene()
        fixed_to_world = compose_pose(np.eye(3), [1.0, 2.0, 0.5])
        estimator = make_estimator(fixed_to_world=fixed_to_world)

        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.ACCEPTED)
        np.testing.assert_allclose(
            estimator.last_pose_estimate.as_matrix(), fixed_to_world @ scene.expected_pose, atol=1e-4
        )

    def test_deterministic(self):
        """Identical inputs and configuration give identical estimates."""
        results = []
        for _ in range(2):
            scene = scene_with_outliers()
            estimator = make_estimator()
            outcome = estimator.update(scene.mobile, scene.fixed)
            results.append((outcome, estimator.last_pose_estimate))

        self.assertEqual(results[0][0], Outcome.ACCEPTED)
        self.assertEqual(results[0][0], results[1][0])
        np.testing.assert_allclose(results[0][1].as_matrix(), results[1][1].as_matrix(), atol=1e-12)
        self.assertEqual(results[0][1].inliers, 12)

    def test_warm_start_matches_cold_start(self):
        estimator = make_estimator()
        self.assertEqual(estimator.update(*self._frames(grid_scene())), Outcome.ACCEPTED)
        cold = estimator.last_pose_estimate
        self.assertEqual(estimator.update(*self._frames(grid_scene())), Outcome.ACCEPTED)
        warm = estimator.last_pose_estimate
        np.testing.assert_allclose(warm.as_matrix(), cold.as_matrix(), atol=1e-6)

    def test_from_fixed_image(self):
        """Fixed features are extracted from the image when none are supplied."""
        rng = np.random.default_rng(3)
        image = cv2.GaussianBlur(rng.integers(0, 256, size=(480, 640), dtype=np.uint8), (5, 5), 0)
        cv2.putText(image, "FIXED", (120, 260), cv2.FONT_HERSHEY_SIMPLEX, 3, 255, 6)

        keypoints, descriptors = OrbExtractor().extract(image)
        mobile = MobileFrame(keypoints, descriptors, FIXED_INTRINSICS, (640, 480))
        fixed = FixedFrame(np.full((480, 640), 2000, dtype=np.uint16), FIXED_INTRINSICS, image=image)

        estimator = make_estimator()
        self.assertEqual(estimator.update(mobile, fixed), Outcome.ACCEPTED)
        np.testing.assert_allclose(estimator.last_pose_estimate.as_matrix(), np.eye(4), atol=1e-3)

    def test_debug_images(self):
        scene = square_scene()
        estimator = make_estimator({"showImages": True})

        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.ACCEPTED)

        self.assertEqual(set(estimator.debug_images), {"matches", "reprojection"})
        self.assertEqual(estimator.debug_images["matches"].shape, (480, 1280, 3))
        self.assertEqual(estimator.debug_images["reprojection"].shape, (480, 640, 3))

    @staticmethod
    def _frames(scene):
        return scene.mobile, scene.fixed


class TestEstimatorRejection(unittest.TestCase):
    """Rejection outcomes never touch the last accepted estimate."""

    def test_not_enough_matches(self):
        scene = make_scene(SQUARE_PIXELS[:3], SQUARE_DEPTHS[:3])
        estimator = make_estimator()
        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.NOT_ENOUGH_MATCHES)
        self.assertFalse(estimator.has_estimate)
        self.assertIsNone(estimator.last_pose_estimate)

    def test_no_depth(self):
        """Matches without any depth nearby are dropped."""
        scene = square_scene()
        scene.fixed.depth[:] = 0
        self.assertEqual(make_estimator().update(scene.mobile, scene.fixed), Outcome.NOT_ENOUGH_MATCHES)

    def test_minimum_matches_number(self):
        scene = grid_scene()
        estimator = make_estimator({"minimumMatchesNumber": 20})
        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.NOT_ENOUGH_MATCHES)

    def test_empty_mobile_features(self):
        scene = square_scene()
        mobile = MobileFrame([], np.empty((0, 32), dtype=np.uint8), scene.mobile.intrinsics, (640, 480))
        self.assertEqual(make_estimator().update(mobile, scene.fixed), Outcome.NOT_ENOUGH_MATCHES)

    def test_not_enough_inliers(self):
        """Outliers count as matches but not as inliers."""
        scene = scene_with_outliers()
        estimator = make_estimator({"minimum_matches_number": 15, "pnp_iterations": 500})
        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.NOT_ENOUGH_INLIERS)

    def test_reprojection_error_too_high(self):
        scene = grid_scene(mobile_noise=alternating_noise(12))
        estimator = make_estimator(
            {"pnp_reprojection_error": 10.0, "reprojection_error_discard_threshold": 0.3}
        )
        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.REPROJECTION_ERROR_TOO_HIGH)

    def test_height_above_max(self):
        scene = square_scene()
        estimator = make_estimator(
            {"max_pose_height": 1.0}, fixed_to_world=compose_pose(np.eye(3), [0.0, 0.0, 2.0])
        )
        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.HEIGHT_ABOVE_MAX)

    def test_height_below_min(self):
        scene = square_scene()
        estimator = make_estimator({"min_pose_height": 0.5})
        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.HEIGHT_BELOW_MIN)

    def test_orientation_mismatch(self):
        """The mobile optical axis is tilted by about 3.3 degrees."""
        scene = square_scene()
        estimator = make_estimator({"phoneOrientationDifferenceThreshold_deg": 1.0})
        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.ORIENTATION_MISMATCH)

    def test_rejection_keeps_last_estimate(self):
        estimator = make_estimator()
        scene = square_scene()
        self.assertEqual(estimator.update(scene.mobile, scene.fixed, timestamp=1.0), Outcome.ACCEPTED)
        accepted = estimator.last_pose_estimate

        bad = make_scene(SQUARE_PIXELS[:3], SQUARE_DEPTHS[:3])
        self.assertEqual(estimator.update(bad.mobile, bad.fixed, timestamp=2.0), Outcome.NOT_ENOUGH_MATCHES)

        self.assertEqual(estimator.last_outcome, Outcome.NOT_ENOUGH_MATCHES)
        self.assertEqual(estimator.last_pose_estimate.timestamp, 1.0)
        np.testing.assert_array_equal(estimator.last_pose_estimate.position, accepted.position)

    def test_invalid_input(self):
        scene = square_scene()
        fixed = FixedFrame(scene.fixed.depth.astype(np.float32), FIXED_INTRINSICS, keypoints=scene.fixed.keypoints,
                           descriptors=scene.fixed.descriptors)
        self.assertEqual(make_estimator().update(scene.mobile, fixed), Outcome.INVALID_INPUT)

    def test_invalid_input_missing_mobile_keypoints(self):
        scene = square_scene()
        mobile = MobileFrame(None, scene.mobile.descriptors, scene.mobile.intrinsics, scene.mobile.image_size)
        self.assertEqual(make_estimator().update(mobile, scene.fixed), Outcome.INVALID_INPUT)

    def test_invalid_input_missing_image_size(self):
        scene = square_scene()
        for image_size in (None, (640,), 640):
            mobile = MobileFrame(scene.mobile.keypoints, scene.mobile.descriptors, scene.mobile.intrinsics, image_size)
            self.assertEqual(make_estimator().update(mobile, scene.fixed), Outcome.INVALID_INPUT)

    def test_invalid_input_fixed_descriptors_without_keypoints(self):
        scene = square_scene()
        fixed = FixedFrame(
            scene.fixed.depth,
            FIXED_INTRINSICS,
            image=np.zeros(scene.fixed.depth.shape, dtype=np.uint8),
            descriptors=scene.fixed.descriptors,
        )
        self.assertEqual(make_estimator().update(scene.mobile, fixed), Outcome.INVALID_INPUT)

    def test_incompatible_descriptors(self):
        scene = square_scene()
        scene.mobile.descriptors = scene.mobile.descriptors[:, :16]
        self.assertEqual(make_estimator().update(scene.mobile, scene.fixed), Outcome.MATCHING_ERROR)


class TestEstimatorFeatureMemory(unittest.TestCase):
    """Inliers are remembered and matched on later frames."""

    def test_memory_disabled_by_default(self):
        self.assertIsNone(make_estimator().feature_memory)

    def test_inliers_saved_and_reused(self):
        memory = InMemoryFeatureMemory()
        estimator = make_estimator({"enableFeaturesMemory": True}, feature_memory=memory)
        scene = square_scene()

        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.ACCEPTED)
        self.assertEqual(len(memory), 4)

        camera_position = scene.expected_pose[:3, 3]
        for feature in memory.get_features():
            self.assertEqual(feature.depth_mm, 2000)
            i = SQUARE_PIXELS.index(feature.keypoint.pixel)
            np.testing.assert_array_equal(feature.descriptor, scene.fixed.descriptors[i])
            expected = scene.points_3d[i] - camera_position
            np.testing.assert_allclose(feature.observer_direction, expected, atol=1e-3)
            self.assertAlmostEqual(feature.observer_distance, float(np.linalg.norm(expected)), places=3)

        # The fixed camera now finds nothing by itself
        fixed = FixedFrame(
            scene.fixed.depth,
            FIXED_INTRINSICS,
            keypoints=[],
            descriptors=np.empty((0, 32), dtype=np.uint8),
        )
        self.assertEqual(estimator.update(scene.mobile, fixed), Outcome.ACCEPTED)
        np.testing.assert_allclose(
            estimator.last_pose_estimate.position, scene.expected_pose[:3, 3], atol=1e-3
        )
        self.assertEqual(len(memory), 4)

    def test_occluded_features_culled_before_matching(self):
        """A depth change at the remembered pixels removes them from the memory."""
        memory = InMemoryFeatureMemory(depth_tolerance_mm=100)
        estimator = make_estimator({"enableFeaturesMemory": True}, feature_memory=memory)
        scene = square_scene()
        self.assertEqual(estimator.update(scene.mobile, scene.fixed), Outcome.ACCEPTED)
        self.assertEqual(len(memory), 4)

        depth = scene.fixed.depth.copy()
        for x, y in SQUARE_PIXELS:
            depth[y, x] = 1500
        fixed = FixedFrame(
            depth,
            FIXED_INTRINSICS,
            keypoints=[],
            descriptors=np.empty((0, 32), dtype=np.uint8),
        )

        self.assertEqual(estimator.update(scene.mobile, fixed), Outcome.NOT_ENOUGH_MATCHES)
        self.assertEqual(len(memory), 0)

    def test_memory_created_when_enabled(self):
        estimator = make_estimator({"enable_features_memory": True})
        self.assertIsInstance(estimator.feature_memory, InMemoryFeatureMemory)


if __name__ == "__main__":
    unittest.main()
