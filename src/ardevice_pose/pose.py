"""
Mobile camera pose estimation from fixed-camera 3D points.

Provides the PnP RANSAC solver (optionally warm-started with the previous
accepted pose), reprojection error computation and the sequential
plausibility gates an estimate has to pass before it is accepted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple

import cv2
import numpy as np

from .exceptions import InsufficientCorrespondences, SolverDivergence
from .geometry import (
    CameraIntrinsics,
    angle_from_axis,
    compose_pose,
    decompose_pose,
    invert_pose,
    rotation_matrix_to_quaternion,
    rvec_tvec_to_matrix,
)

LOGGER = logging.getLogger(__name__)

MIN_CORRESPONDENCES = 4


class Outcome(IntEnum):
    """Result code of an estimator update."""

    ACCEPTED = 0
    NOT_ENOUGH_MATCHES = 1
    NOT_ENOUGH_INLIERS = 2
    REPROJECTION_ERROR_TOO_HIGH = 3
    HEIGHT_ABOVE_MAX = 4
    HEIGHT_BELOW_MIN = 5
    ORIENTATION_MISMATCH = 6

    INVALID_INPUT = -1
    FEATURE_EXTRACTION_ERROR = -2
    MATCHING_ERROR = -3
    RECONSTRUCTION_ERROR = -4
    SOLVER_ERROR = -5

    @property
    def is_rejection(self) -> bool:
        return self > 0

    @property
    def is_error(self) -> bool:
        return self < 0


@dataclass
class PoseEstimate:
    """Pose of the mobile camera with the diagnostics of the update that produced it."""

    position: np.ndarray
    rotation_matrix: np.ndarray
    frame_id: str = ""
    timestamp: Optional[float] = None
    inliers: int = 0
    matches: int = 0
    reprojection_error: Optional[float] = None

    @property
    def quaternion(self) -> np.ndarray:
        """Orientation as (x, y, z, w)."""
        return rotation_matrix_to_quaternion(self.rotation_matrix)

    @property
    def height(self) -> float:
        return float(self.position[2])

    def as_matrix(self) -> np.ndarray:
        """Return the 4x4 transformation matrix."""
        return compose_pose(self.rotation_matrix, self.position)

    @classmethod
    def from_matrix(cls, transform: np.ndarray, **kwargs) -> PoseEstimate:
        rotation, translation = decompose_pose(transform)
        return cls(position=translation, rotation_matrix=rotation, **kwargs)

    def copy(self) -> PoseEstimate:
        """Create a copy of this estimate."""
        return PoseEstimate(
            position=self.position.copy(),
            rotation_matrix=self.rotation_matrix.copy(),
            frame_id=self.frame_id,
            timestamp=self.timestamp,
            inliers=self.inliers,
            matches=self.matches,
            reprojection_error=self.reprojection_error,
        )


@dataclass
class PnPSolution:
    """Raw solvePnPRansac output: fixed-camera frame to mobile camera frame."""

    rvec: np.ndarray
    tvec: np.ndarray
    inliers: np.ndarray

    @property
    def inlier_count(self) -> int:
        return int(len(self.inliers))

    def camera_pose(self) -> np.ndarray:
        """4x4 pose of the mobile camera expressed in the fixed camera frame."""
        return invert_pose(rvec_tvec_to_matrix(self.rvec, self.tvec))


class PnPSolver:
    """
    RANSAC Perspective-n-Point solver.

    Args:
        reprojection_error: Inlier threshold in pixels
        confidence: Probability used for the RANSAC early stop
        iterations: Maximum number of RANSAC iterations
        random_seed: Seed for the OpenCV RNG, applied before each solve
    """

    def __init__(
        self,
        reprojection_error: float = 5.0,
        confidence: float = 0.99,
        iterations: int = 1000,
        random_seed: Optional[int] = None,
    ):
        self.reprojection_error = float(reprojection_error)
        self.confidence = float(confidence)
        self.iterations = int(iterations)
        self.random_seed = random_seed

    def solve(
        self,
        points_3d: np.ndarray,
        image_points: np.ndarray,
        intrinsics: CameraIntrinsics,
        initial_guess: Optional[Tuple[np.ndarray, np.ndarray]] = None,
    ) -> PnPSolution:
        """
        Estimate the transform from the fixed camera frame to the mobile camera.

        Args:
            points_3d: Nx3 points in the fixed camera frame
            image_points: Nx2 matching pixels in the mobile image
            intrinsics: Mobile camera intrinsics
            initial_guess: Optional (rvec, tvec) of a previous solution

        Raises:
            InsufficientCorrespondences: Fewer than four correspondences
            SolverDivergence: No valid pose was found
        """
        object_points = np.ascontiguousarray(points_3d, dtype=np.float64).reshape(-1, 3)
        pixels = np.ascontiguousarray(image_points, dtype=np.float64).reshape(-1, 2)
        if len(object_points) != len(pixels):
            raise ValueError(f"Got {len(object_points)} 3D points but {len(pixels)} image points")
        if len(object_points) < MIN_CORRESPONDENCES:
            raise InsufficientCorrespondences(
                f"PnP needs at least {MIN_CORRESPONDENCES} correspondences, got {len(object_points)}"
            )

        use_guess = initial_guess is not None
        if use_guess:
            rvec = np.array(initial_guess[0], dtype=np.float64).reshape(3, 1)
            tvec = np.array(initial_guess[1], dtype=np.float64).reshape(3, 1)
        else:
            rvec = np.zeros((3, 1), dtype=np.float64)
            tvec = np.zeros((3, 1), dtype=np.float64)

        if self.random_seed is not None:
            cv2.setRNGSeed(int(self.random_seed))

        LOGGER.debug(
            "Running solvePnPRansac with iterations=%d reprojectionError=%.2f confidence=%.3f guess=%s",
            self.iterations,
            self.reprojection_error,
            self.confidence,
            use_guess,
        )
        ok, rvec, tvec, inliers = cv2.solvePnPRansac(
            object_points,
            pixels,
            intrinsics.camera_matrix,
            None,
            rvec,
            tvec,
            useExtrinsicGuess=use_guess,
            iterationsCount=self.iterations,
            reprojectionError=self.reprojection_error,
            confidence=self.confidence,
        )

        if not ok or inliers is None or len(inliers) == 0:
            raise SolverDivergence("solvePnPRansac found no consistent pose")
        if not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))):
            raise SolverDivergence("solvePnPRansac returned a non-finite pose")

        inliers = np.asarray(inliers, dtype=np.int64).reshape(-1)
        LOGGER.debug(
            "solvePnPRansac used %d inliers: tvec=%s rvec=%s",
            len(inliers),
            tvec.ravel(),
            rvec.ravel(),
        )
        return PnPSolution(rvec=rvec.reshape(3, 1), tvec=tvec.reshape(3, 1), inliers=inliers)


def compute_reprojection_error(
    points_3d: np.ndarray,
    image_points: np.ndarray,
    solution: PnPSolution,
    intrinsics: CameraIntrinsics,
) -> Tuple[float, np.ndarray]:
    """
    Mean pixel error of the solution over its inliers only.

    Returns:
        Tuple of (mean error over inliers, Nx2 reprojection of every point)
    """
    projected, _ = cv2.projectPoints(
        np.asarray(points_3d, dtype=np.float64).reshape(-1, 3),
        solution.rvec,
        solution.tvec,
        intrinsics.camera_matrix,
        None,
    )
    projected = projected.reshape(-1, 2)
    if solution.inlier_count == 0:
        return float("inf"), projected

    pixels = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
    errors = np.linalg.norm(projected[solution.inliers] - pixels[solution.inliers], axis=1)
    return float(errors.mean()), projected


class Validator:
    """
    Sequential acceptance gates; the first failing gate decides the outcome.

    Args:
        minimum_matches_number: Required correspondences and inliers (never below 4)
        reprojection_error_discard_threshold: Maximum mean inlier error in pixels
        min_pose_height: Minimum world z of the estimate
        max_pose_height: Maximum world z of the estimate
        orientation_threshold_deg: Maximum angle between the mobile and fixed optical axes
    """

    def __init__(
        self,
        minimum_matches_number: int = MIN_CORRESPONDENCES,
        reprojection_error_discard_threshold: float = 5.0,
        min_pose_height: float = -1.0,
        max_pose_height: float = 3.0,
        orientation_threshold_deg: float = 45.0,
    ):
        self.required = max(MIN_CORRESPONDENCES, int(minimum_matches_number))
        self.reprojection_error_discard_threshold = reprojection_error_discard_threshold
        self.min_pose_height = min_pose_height
        self.max_pose_height = max_pose_height
        self.orientation_threshold_deg = orientation_threshold_deg

    def check_matches(self, correspondence_count: int) -> Outcome:
        if correspondence_count < self.required:
            LOGGER.warning(
                "Not enough good matches to determine position (%d < %d)",
                correspondence_count,
                self.required,
            )
            return Outcome.NOT_ENOUGH_MATCHES
        return Outcome.ACCEPTED

    def check_inliers(self, inlier_count: int) -> Outcome:
        if inlier_count < self.required:
            LOGGER.warning("Not enough match inliers (%d < %d), skipping frame", inlier_count, self.required)
            return Outcome.NOT_ENOUGH_INLIERS
        return Outcome.ACCEPTED

    def check_reprojection(self, reprojection_error: float) -> Outcome:
        if not reprojection_error <= self.reprojection_error_discard_threshold:
            LOGGER.warning(
                "Reprojection error %.3f beyond threshold %.3f, discarding estimate",
                reprojection_error,
                self.reprojection_error_discard_threshold,
            )
            return Outcome.REPROJECTION_ERROR_TOO_HIGH
        return Outcome.ACCEPTED

    def check_height(self, pose_world: np.ndarray) -> Outcome:
        height = float(pose_world[2, 3])
        if height > self.max_pose_height:
            LOGGER.warning("Pose height %.3f above max %.3f, discarding", height, self.max_pose_height)
            return Outcome.HEIGHT_ABOVE_MAX
        if height < self.min_pose_height:
            LOGGER.warning("Pose height %.3f below min %.3f, discarding", height, self.min_pose_height)
            return Outcome.HEIGHT_BELOW_MIN
        return Outcome.ACCEPTED

    def check_orientation(self, pose_fixed: np.ndarray) -> Outcome:
        angle = angle_from_axis(pose_fixed[:3, :3])
        LOGGER.debug("Angle between mobile and fixed optical axes = %.2f deg", angle)
        if angle > self.orientation_threshold_deg:
            LOGGER.warning(
                "Orientation difference between phone and camera too high (%.2f > %.2f deg), discarding",
                angle,
                self.orientation_threshold_deg,
            )
            return Outcome.ORIENTATION_MISMATCH
        return Outcome.ACCEPTED

    def validate(
        self,
        correspondence_count: int,
        inlier_count: int,
        reprojection_error: float,
        pose_fixed: np.ndarray,
        pose_world: np.ndarray,
    ) -> Outcome:
        """
        Run every gate in order.

        Args:
            correspondence_count: Number of 3D-2D correspondences handed to the solver
            inlier_count: Number of solver inliers
            reprojection_error: Mean reprojection error over the inliers
            pose_fixed: 4x4 mobile camera pose in the fixed camera frame
            pose_world: 4x4 mobile camera pose in the world frame
        """
        checks = (
            lambda: self.check_matches(correspondence_count),
            lambda: self.check_inliers(inlier_count),
            lambda: self.check_reprojection(reprojection_error),
            lambda: self.check_height(pose_world),
            lambda: self.check_orientation(pose_fixed),
        )
        for check in checks:
            outcome = check()
            if outcome != Outcome.ACCEPTED:
                return outcome
        return Outcome.ACCEPTED
