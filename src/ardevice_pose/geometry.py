"""
Geometry helpers for the registration pipeline.

Pinhole back-projection of depth pixels, rigid transform (de)composition,
quaternion conversion and the optical-axis angle used by the orientation gate.
All functions are pure; poses are handled as 4x4 homogeneous matrices.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

MILLIMETERS_PER_METER = 1000.0


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics of one camera for one frame."""

    fx: float
    fy: float
    cx: float
    cy: float
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def camera_matrix(self) -> np.ndarray:
        """Return the 3x3 camera matrix."""
        return np.array(
            [
                [self.fx, 0.0, self.cx],
                [0.0, self.fy, self.cy],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        )

    @classmethod
    def from_matrix(
        cls,
        matrix: Sequence,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> CameraIntrinsics:
        """Build intrinsics from a 3x3 camera matrix."""
        k = np.asarray(matrix, dtype=np.float64).reshape(3, 3)
        return cls(
            fx=float(k[0, 0]),
            fy=float(k[1, 1]),
            cx=float(k[0, 2]),
            cy=float(k[1, 2]),
            width=width,
            height=height,
        )

    @classmethod
    def from_projection(
        cls,
        projection: Sequence,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> CameraIntrinsics:
        """Build intrinsics from a 3x4 projection matrix (row-major, 12 values)."""
        p = np.asarray(projection, dtype=np.float64).reshape(3, 4)
        return cls.from_matrix(p[:, :3], width=width, height=height)


# ---------------------------------------------------------------------- #
# Projection
# ---------------------------------------------------------------------- #
def back_project(
    pixels: np.ndarray,
    depths_mm: np.ndarray,
    intrinsics: CameraIntrinsics,
) -> np.ndarray:
    """Lift pixels with depth (millimetres) to 3D points in metres.

    Args:
        pixels: Nx2 array of (x, y) pixel coordinates
        depths_mm: N depth values in millimetres
        intrinsics: Camera intrinsics

    Returns:
        Nx3 float64 array of points in the camera optical frame
    """
    pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
    z = np.asarray(depths_mm, dtype=np.float64).reshape(-1) / MILLIMETERS_PER_METER
    if len(z) != len(pixels):
        raise ValueError(f"Got {len(pixels)} pixels but {len(z)} depth values")

    x = (pixels[:, 0] - intrinsics.cx) * z / intrinsics.fx
    y = (pixels[:, 1] - intrinsics.cy) * z / intrinsics.fy
    return np.column_stack((x, y, z))


def back_project_pixel(x: float, y: float, depth_mm: float, intrinsics: CameraIntrinsics) -> np.ndarray:
    """Single-pixel version of :func:`back_project`."""
    return back_project(np.array([[x, y]]), np.array([depth_mm]), intrinsics)[0]


def project(points: np.ndarray, intrinsics: CameraIntrinsics) -> np.ndarray:
    """Project points given in the camera optical frame to pixels."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    u = intrinsics.fx * points[:, 0] / points[:, 2] + intrinsics.cx
    v = intrinsics.fy * points[:, 1] / points[:, 2] + intrinsics.cy
    return np.column_stack((u, v))


# ---------------------------------------------------------------------- #
# Rigid transforms
# ---------------------------------------------------------------------- #
def compose_pose(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    """Build a 4x4 transform from a rotation matrix and a translation."""
    transform = np.eye(4, dtype=np.float64)
    transform[:3, :3] = np.asarray(rotation, dtype=np.float64).reshape(3, 3)
    transform[:3, 3] = np.asarray(translation, dtype=np.float64).reshape(3)
    return transform


def decompose_pose(transform: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Split a 4x4 transform into (rotation matrix, translation)."""
    transform = np.asarray(transform, dtype=np.float64)
    return transform[:3, :3].copy(), transform[:3, 3].copy()


def invert_pose(transform: np.ndarray) -> np.ndarray:
    """Invert a rigid 4x4 transform without a general matrix inverse."""
    rotation, translation = decompose_pose(transform)
    return compose_pose(rotation.T, -rotation.T @ translation)


def rvec_tvec_to_matrix(rvec: np.ndarray, tvec: np.ndarray) -> np.ndarray:
    """Convert an OpenCV (rvec, tvec) pair into a 4x4 transform."""
    rotation, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    return compose_pose(rotation, tvec)


def matrix_to_rvec_tvec(transform: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Convert a 4x4 transform into an OpenCV (rvec, tvec) pair of 3x1 arrays."""
    rotation, translation = decompose_pose(transform)
    rvec, _ = cv2.Rodrigues(rotation)
    return rvec.reshape(3, 1), translation.reshape(3, 1)


def is_valid_rotation(rotation: np.ndarray, tolerance: float = 1e-6) -> bool:
    """Check orthonormality and a positive determinant."""
    rotation = np.asarray(rotation, dtype=np.float64)
    if rotation.shape != (3, 3) or not np.all(np.isfinite(rotation)):
        return False
    should_be_identity = rotation.T @ rotation
    if not np.allclose(should_be_identity, np.eye(3), atol=tolerance):
        return False
    return abs(np.linalg.det(rotation) - 1.0) < tolerance


# ---------------------------------------------------------------------- #
# Quaternions (x, y, z, w)
# ---------------------------------------------------------------------- #
def rotation_matrix_to_quaternion(rotation: np.ndarray) -> np.ndarray:
    """Convert a rotation matrix into a unit quaternion (x, y, z, w), w >= 0."""
    r = np.asarray(rotation, dtype=np.float64).reshape(3, 3)
    trace = np.trace(r)

    if trace > 0:
        s = np.sqrt(trace + 1.0) * 2.0
        w = 0.25 * s
        x = (r[2, 1] - r[1, 2]) / s
        y = (r[0, 2] - r[2, 0]) / s
        z = (r[1, 0] - r[0, 1]) / s
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        s = np.sqrt(1.0 + r[0, 0] - r[1, 1] - r[2, 2]) * 2.0
        w = (r[2, 1] - r[1, 2]) / s
        x = 0.25 * s
        y = (r[0, 1] + r[1, 0]) / s
        z = (r[0, 2] + r[2, 0]) / s
    elif r[1, 1] > r[2, 2]:
        s = np.sqrt(1.0 + r[1, 1] - r[0, 0] - r[2, 2]) * 2.0
        w = (r[0, 2] - r[2, 0]) / s
        x = (r[0, 1] + r[1, 0]) / s
        y = 0.25 * s
        z = (r[1, 2] + r[2, 1]) / s
    else:
        s = np.sqrt(1.0 + r[2, 2] - r[0, 0] - r[1, 1]) * 2.0
        w = (r[1, 0] - r[0, 1]) / s
        x = (r[0, 2] + r[2, 0]) / s
        y = (r[1, 2] + r[2, 1]) / s
        z = 0.25 * s

    quaternion = np.array([x, y, z, w], dtype=np.float64)
    quaternion /= np.linalg.norm(quaternion)
    if quaternion[3] < 0:
        quaternion = -quaternion
    return quaternion


def quaternion_to_rotation_matrix(quaternion: Sequence[float]) -> np.ndarray:
    """Convert a quaternion (x, y, z, w) into a rotation matrix."""
    x, y, z, w = np.asarray(quaternion, dtype=np.float64) / np.linalg.norm(quaternion)
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ],
        dtype=np.float64,
    )


# ---------------------------------------------------------------------- #
# Orientation
# ---------------------------------------------------------------------- #
def angle_from_axis(rotation: np.ndarray, axis: Sequence[float] = (0.0, 0.0, 1.0)) -> float:
    """Angle in degrees between the rotated local z axis and ``axis``.

    With ``rotation`` being a camera orientation in the fixed optical frame and
    the default axis, this is the angle between the two optical axes.
    """
    reference = np.asarray(axis, dtype=np.float64)
    reference = reference / np.linalg.norm(reference)
    optical_axis = np.asarray(rotation, dtype=np.float64).reshape(3, 3) @ np.array([0.0, 0.0, 1.0])
    cosine = float(np.clip(np.dot(optical_axis, reference) / np.linalg.norm(optical_axis), -1.0, 1.0))
    return float(np.degrees(np.arccos(cosine)))
