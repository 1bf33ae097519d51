"""
Pose estimator for one AR device seen by one fixed RGB-D camera.

Each update matches the device features against the fixed camera features
(optionally augmented with remembered ones), lifts the matches to 3D with
the fixed camera depth, solves PnP and accepts the pose only if it passes
every plausibility gate. Only the last accepted estimate is carried over.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .debug import blank_image, draw_matches_image, draw_reprojection_image
from .depth import DepthResolver, reconstruct
from .exceptions import (
    InsufficientCorrespondences,
    InsufficientFeatures,
    RegistrationError,
    SolverDivergence,
)
from .frames import FixedFrame, MobileFrame, prepare_fixed_image, prepare_mobile_image
from .memory import FeatureMemory, InMemoryFeatureMemory, StoredFeature
from .pose import (
    Outcome,
    PnPSolution,
    PnPSolver,
    PoseEstimate,
    Validator,
    compute_reprojection_error,
)
from .tracking.feature import Keypoint, OrbExtractor
from .tracking.matching import FeatureMatcher, Match, MatchFilter

LOGGER = logging.getLogger(__name__)


@dataclass
class EstimatorConfig:
    """Configuration of a pose estimator, read once at construction."""

    # PnP RANSAC
    pnp_reprojection_error: float = 5.0
    pnp_confidence: float = 0.99
    pnp_iterations: int = 1000

    # Matching
    matching_threshold: float = 25.0
    keypoint_min_dist_threshold: float = 5.0
    contradiction_policy: str = "discard"
    descriptor_norm: str = "hamming"

    # Fixed camera ORB
    orb_max_points: int = 500
    orb_scale_factor: float = 1.2
    orb_levels_number: int = 8

    # Acceptance gates
    reprojection_error_discard_threshold: float = 5.0
    phone_orientation_difference_threshold_deg: float = 45.0
    minimum_matches_number: int = 4
    max_pose_height: float = 3.0
    min_pose_height: float = -1.0

    # Depth repair
    depth_search_radius: float = 100.0
    depth_ring_width: float = 10.0

    enable_features_memory: bool = False
    show_images: bool = False
    random_seed: Optional[int] = 0

    ALIASES = {
        "pnpReprojectionError": "pnp_reprojection_error",
        "pnpConfidence": "pnp_confidence",
        "pnpIterations": "pnp_iterations",
        "matchingThreshold": "matching_threshold",
        "reprojectionErrorDiscardThreshold": "reprojection_error_discard_threshold",
        "orbMaxPoints": "orb_max_points",
        "orbScaleFactor": "orb_scale_factor",
        "orbLevelsNumber": "orb_levels_number",
        "phoneOrientationDifferenceThreshold_deg": "phone_orientation_difference_threshold_deg",
        "minimumMatchesNumber": "minimum_matches_number",
        "enableFeaturesMemory": "enable_features_memory",
        "maxPoseHeight": "max_pose_height",
        "minPoseHeight": "min_pose_height",
        "showImages": "show_images",
        "keypointMinDistThreshold": "keypoint_min_dist_threshold",
    }

    @classmethod
    def from_dict(cls, config: Optional[Dict]) -> EstimatorConfig:
        """Build a configuration from snake_case or camelCase keys, ignoring unknown ones."""
        values = {}
        for key, value in dict(config or {}).items():
            name = cls.ALIASES.get(key, key)
            if name in cls.__dataclass_fields__:
                values[name] = value
            else:
                LOGGER.debug("Ignoring unknown estimator option '%s'", key)
        return cls(**values)


class _StageFailed(Exception):
    def __init__(self, outcome: Outcome, stage: str, error: Exception):
        super().__init__(f"{stage}: {error}")
        self.outcome = outcome


class CameraPoseEstimator:
    """
    Estimates the pose of one AR device with respect to one fixed camera.

    Args:
        device_id: Identifier of the AR device
        fixed_sensor_name: Name of the fixed camera
        config: ``EstimatorConfig`` or option dictionary, copied at construction
        fixed_to_world: 4x4 pose of the fixed camera optical frame in the world frame
        feature_memory: Shared feature memory; an in-memory one is created when
            the memory is enabled and none is given
        world_frame_id: Frame identifier attached to accepted estimates
    """

    def __init__(
        self,
        device_id: str,
        fixed_sensor_name: str = "",
        config=None,
        fixed_to_world: Optional[np.ndarray] = None,
        feature_memory: Optional[FeatureMemory] = None,
        world_frame_id: str = "world",
    ):
        if isinstance(config, EstimatorConfig):
            self.config = dataclasses.replace(config)
        else:
            self.config = EstimatorConfig.from_dict(config)

        if fixed_to_world is None:
            fixed_to_world = np.eye(4)
        self.fixed_to_world = np.array(fixed_to_world, dtype=np.float64)
        if self.fixed_to_world.shape != (4, 4):
            raise ValueError(f"fixed_to_world must be a 4x4 matrix, got {self.fixed_to_world.shape}")

        self.device_id = device_id
        self.fixed_sensor_name = fixed_sensor_name
        self.world_frame_id = world_frame_id

        cfg = self.config
        if cfg.enable_features_memory and feature_memory is None:
            feature_memory = InMemoryFeatureMemory()
        self.feature_memory = feature_memory

        self.extractor = OrbExtractor(cfg.orb_max_points, cfg.orb_scale_factor, cfg.orb_levels_number)
        self.matcher = FeatureMatcher(cfg.descriptor_norm)
        self.match_filter = MatchFilter(
            cfg.matching_threshold,
            cfg.keypoint_min_dist_threshold,
            cfg.contradiction_policy,
        )
        self.depth_resolver = DepthResolver(cfg.depth_search_radius, cfg.depth_ring_width)
        self.solver = PnPSolver(
            cfg.pnp_reprojection_error,
            cfg.pnp_confidence,
            cfg.pnp_iterations,
            cfg.random_seed,
        )
        self.validator = Validator(
            cfg.minimum_matches_number,
            cfg.reprojection_error_discard_threshold,
            cfg.min_pose_height,
            cfg.max_pose_height,
            cfg.phone_orientation_difference_threshold_deg,
        )

        self._last_estimate: Optional[PoseEstimate] = None
        self._last_solution: Optional[PnPSolution] = None
        self._last_outcome: Optional[Outcome] = None
        self.debug_images: Dict[str, np.ndarray] = {}

        LOGGER.info(
            "Pose estimator for device %s on camera %s: %s",
            device_id,
            fixed_sensor_name,
            cfg,
        )

    # ------------------------------------------------------------------ #
    # Query API
    # ------------------------------------------------------------------ #
    @property
    def last_pose_estimate(self) -> Optional[PoseEstimate]:
        return self._last_estimate.copy() if self._last_estimate is not None else None

    @property
    def has_estimate(self) -> bool:
        return self._last_estimate is not None

    @property
    def last_estimate_matches_number(self) -> int:
        return self._last_estimate.matches if self._last_estimate is not None else 0

    @property
    def last_estimate_reprojection_error(self) -> Optional[float]:
        return self._last_estimate.reprojection_error if self._last_estimate is not None else None

    @property
    def last_outcome(self) -> Optional[Outcome]:
        return self._last_outcome

    # ------------------------------------------------------------------ #
    # Update
    # ------------------------------------------------------------------ #
    def update(self, mobile: MobileFrame, fixed: FixedFrame, timestamp: float = 0.0) -> Outcome:
        """
        Estimate the device pose for one synchronized frame pair.

        The fixed depth map is repaired in place. The last accepted estimate
        changes only when the returned outcome is ``Outcome.ACCEPTED``.

        Returns:
            0 on acceptance, 1-6 for a rejection, negative on failure
        """
        start = time.perf_counter()
        self.debug_images = {}
        try:
            outcome = self._update(mobile, fixed, timestamp)
        except _StageFailed as e:
            LOGGER.error("Device %s: %s", self.device_id, e)
            outcome = e.outcome
        except (InsufficientFeatures, InsufficientCorrespondences) as e:
            LOGGER.warning("Device %s: %s", self.device_id, e)
            outcome = Outcome.NOT_ENOUGH_MATCHES
        except SolverDivergence as e:
            LOGGER.warning("Device %s: %s", self.device_id, e)
            outcome = Outcome.NOT_ENOUGH_INLIERS

        self._last_outcome = outcome
        LOGGER.debug("Update finished with outcome %s in %.3fms", outcome.name, (time.perf_counter() - start) * 1000)
        return outcome

    @contextmanager
    def _stage(self, name: str, failure: Outcome) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        except RegistrationError:
            raise
        except (ValueError, IndexError, cv2.error) as e:
            raise _StageFailed(failure, name, e) from e
        LOGGER.debug("-- %s %.3fms", name, (time.perf_counter() - start) * 1000)

    def _update(self, mobile: MobileFrame, fixed: FixedFrame, timestamp: float) -> Outcome:
        cfg = self.config

        with self._stage("input validation", Outcome.INVALID_INPUT):
            mobile.validate()
            fixed.validate()
            mobile_image = None
            if cfg.show_images:
                if mobile.image is not None:
                    mobile_image = prepare_mobile_image(mobile.image, mobile.image_size)
                else:
                    mobile_image = blank_image(mobile.image_size)

        with self._stage("fixed features", Outcome.FEATURE_EXTRACTION_ERROR):
            fixed_gray = prepare_fixed_image(fixed.image) if fixed.image is not None else None
            if fixed.has_features:
                fixed_keypoints = list(fixed.keypoints)
                fixed_descriptors = np.asarray(fixed.descriptors)
            else:
                fixed_keypoints, fixed_descriptors = self.extractor.extract(fixed_gray)

            if cfg.enable_features_memory and self.feature_memory is not None:
                self.feature_memory.remove_non_background_features(fixed.depth)
                fixed_keypoints, fixed_descriptors = self._fold_in_memory(
                    fixed_keypoints, fixed_descriptors
                )

        with self._stage("matching", Outcome.MATCHING_ERROR):
            matches = self.matcher.match(mobile.descriptors, fixed_descriptors)
            good_matches = self.match_filter.apply(matches, mobile.keypoints, fixed_keypoints)

        with self._stage("3D reconstruction", Outcome.RECONSTRUCTION_ERROR):
            good_matches = self.depth_resolver.resolve(good_matches, fixed_keypoints, fixed.depth)
            points_3d, image_points = reconstruct(
                good_matches, fixed_keypoints, mobile.keypoints, fixed.depth, fixed.intrinsics
            )

        if cfg.show_images:
            fixed_debug = fixed_gray if fixed_gray is not None else blank_image(fixed.depth.shape[::-1])
            self.debug_images["matches"] = draw_matches_image(
                mobile_image, mobile.keypoints, fixed_debug, fixed_keypoints, good_matches
            )

        outcome = self.validator.check_matches(len(good_matches))
        if outcome != Outcome.ACCEPTED:
            return outcome

        initial_guess = None
        if self._last_solution is not None:
            initial_guess = (self._last_solution.rvec, self._last_solution.tvec)

        with self._stage("PnP", Outcome.SOLVER_ERROR):
            solution = self.solver.solve(points_3d, image_points, mobile.intrinsics, initial_guess)
            reprojection_error, reprojected = compute_reprojection_error(
                points_3d, image_points, solution, mobile.intrinsics
            )
        LOGGER.debug(
            "Device %s: %d inliers of %d, reprojection error %.3f",
            self.device_id,
            solution.inlier_count,
            len(good_matches),
            reprojection_error,
        )

        if cfg.show_images:
            self.debug_images["reprojection"] = draw_reprojection_image(
                mobile_image, solution.inliers, image_points, reprojected
            )

        pose_fixed = solution.camera_pose()
        pose_world = self.fixed_to_world @ pose_fixed
        outcome = self.validator.validate(
            len(good_matches),
            solution.inlier_count,
            reprojection_error,
            pose_fixed,
            pose_world,
        )
        if outcome != Outcome.ACCEPTED:
            return outcome

        estimate = PoseEstimate.from_matrix(
            pose_world,
            frame_id=self.world_frame_id,
            timestamp=timestamp,
            inliers=solution.inlier_count,
            matches=len(good_matches),
            reprojection_error=reprojection_error,
        )

        if cfg.enable_features_memory and self.feature_memory is not None:
            self._save_inliers_to_memory(
                solution.inliers,
                points_3d,
                pose_fixed,
                good_matches,
                fixed_keypoints,
                fixed_descriptors,
                fixed.depth,
            )

        self._last_estimate = estimate
        self._last_solution = solution
        LOGGER.info(
            "Device %s pose from %s accepted: position=%s quaternion=%s",
            self.device_id,
            fixed.frame_id or self.fixed_sensor_name,
            np.round(estimate.position, 4),
            np.round(estimate.quaternion, 4),
        )
        return Outcome.ACCEPTED

    # ------------------------------------------------------------------ #
    # Feature memory
    # ------------------------------------------------------------------ #
    def _fold_in_memory(
        self, keypoints: List[Keypoint], descriptors: np.ndarray
    ) -> Tuple[List[Keypoint], np.ndarray]:
        """Append remembered features after the fixed camera ones."""
        features = self.feature_memory.get_features()
        LOGGER.debug("Got %d features from memory", len(features))
        if not features:
            return keypoints, descriptors

        remembered = np.vstack([f.descriptor.reshape(1, -1) for f in features])
        if remembered.shape[1] != descriptors.shape[1]:
            raise ValueError(
                f"Remembered descriptors are {remembered.shape[1]} wide, fixed ones {descriptors.shape[1]}"
            )
        combined = np.vstack([descriptors, remembered]).astype(remembered.dtype)
        return keypoints + [f.keypoint for f in features], combined

    def _save_inliers_to_memory(
        self,
        inliers: np.ndarray,
        points_3d: np.ndarray,
        pose_fixed: np.ndarray,
        matches: Sequence[Match],
        fixed_keypoints: Sequence[Keypoint],
        fixed_descriptors: np.ndarray,
        depth_map: np.ndarray,
    ):
        camera_position = pose_fixed[:3, 3]
        for i in inliers:
            match = matches[i]
            keypoint = fixed_keypoints[match.train_idx]
            x, y = keypoint.pixel
            direction = points_3d[i] - camera_position
            self.feature_memory.save_feature(
                StoredFeature(
                    keypoint=keypoint,
                    descriptor=fixed_descriptors[match.train_idx],
                    observer_distance=float(np.linalg.norm(direction)),
                    observer_direction=direction,
                    depth_mm=int(depth_map[y, x]),
                )
            )
        LOGGER.debug("Saved %d inliers to feature memory", len(inliers))
