"""
Inputs of one estimator update and their image preparation.

A frame pair is the mobile device features (keypoints, descriptors and
intrinsics, optionally with its downscaled camera image) and the fixed
RGB-D camera data (depth map, intrinsics and either an image or
precomputed features). Frame bundles recorded to ``.npz`` files can be
loaded for offline runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .geometry import CameraIntrinsics
from .tracking.feature import Keypoint, keypoints_from_array, to_grayscale

LOGGER = logging.getLogger(__name__)


def _check_features(keypoints: List[Keypoint], descriptors: np.ndarray, side: str):
    if keypoints is None:
        raise ValueError(f"{side} keypoints are missing")
    if descriptors is None:
        raise ValueError(f"{side} descriptors are missing")
    descriptors = np.asarray(descriptors)
    if descriptors.ndim != 2:
        raise ValueError(f"{side} descriptors must be a 2D array, got shape {descriptors.shape}")
    if len(descriptors) != len(keypoints):
        raise ValueError(
            f"{side} has {len(keypoints)} keypoints but {len(descriptors)} descriptors"
        )


def _check_intrinsics(intrinsics: CameraIntrinsics, side: str):
    if not isinstance(intrinsics, CameraIntrinsics):
        raise ValueError(f"{side} intrinsics must be CameraIntrinsics")
    if intrinsics.fx <= 0 or intrinsics.fy <= 0:
        raise ValueError(f"{side} focal lengths must be positive")


@dataclass
class MobileFrame:
    """Features sent by the AR device for one camera frame."""

    keypoints: List[Keypoint]
    descriptors: np.ndarray
    intrinsics: CameraIntrinsics
    image_size: Tuple[int, int]  # (width, height)
    image: Optional[np.ndarray] = None

    def validate(self):
        _check_features(self.keypoints, self.descriptors, "Mobile frame")
        _check_intrinsics(self.intrinsics, "Mobile frame")
        if self.image_size is None or np.shape(self.image_size) != (2,):
            raise ValueError(f"Mobile image size must be (width, height), got {self.image_size}")
        width, height = self.image_size
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid mobile image size {self.image_size}")


@dataclass
class FixedFrame:
    """Fixed camera data for one frame; the depth map is repaired in place."""

    depth: np.ndarray
    intrinsics: CameraIntrinsics
    image: Optional[np.ndarray] = None
    keypoints: Optional[List[Keypoint]] = None
    descriptors: Optional[np.ndarray] = None
    frame_id: str = ""

    @property
    def has_features(self) -> bool:
        """True if features were precomputed and no extraction is needed."""
        return self.keypoints is not None

    def validate(self):
        if not isinstance(self.depth, np.ndarray) or self.depth.ndim != 2:
            raise ValueError("Fixed frame depth must be a 2D array")
        if self.depth.dtype != np.uint16:
            raise ValueError(f"Fixed frame depth must be uint16 millimetres, got {self.depth.dtype}")
        _check_intrinsics(self.intrinsics, "Fixed frame")

        if self.descriptors is not None and self.keypoints is None:
            raise ValueError("Fixed frame descriptors were given without keypoints")
        if self.has_features:
            _check_features(self.keypoints, self.descriptors, "Fixed frame")
        elif self.image is None or self.image.size == 0:
            raise ValueError("Fixed frame needs either an image or precomputed features")

        if self.image is not None and self.image.shape[:2] != self.depth.shape:
            raise ValueError(
                f"Fixed image {self.image.shape[:2]} and depth {self.depth.shape} are not registered"
            )


# ---------------------------------------------------------------------- #
# Image preparation
# ---------------------------------------------------------------------- #
def prepare_fixed_image(image: np.ndarray) -> np.ndarray:
    """Grayscale version of the fixed camera image."""
    return to_grayscale(image)


def prepare_mobile_image(image: np.ndarray, image_size: Tuple[int, int]) -> np.ndarray:
    """
    Bring the mobile debug image to a single channel at full resolution.

    The device sends a monochrome image stored in the red channel of a
    3-channel image, at a reduced resolution.

    Args:
        image: One or three channel image (BGR order)
        image_size: Target (width, height)
    """
    if image is None or image.size == 0:
        raise ValueError("Mobile image cannot be empty.")
    if image.ndim == 3 and image.shape[2] == 3:
        image = image[:, :, 2]
    elif image.ndim == 3 and image.shape[2] == 1:
        image = image[:, :, 0]
    elif image.ndim != 2:
        raise ValueError("Mobile image should have either one or three channels")

    width, height = image_size
    if image.shape[1] != width or image.shape[0] != height:
        image = cv2.resize(image, (int(width), int(height)), interpolation=cv2.INTER_LINEAR)
    return np.ascontiguousarray(image)


# ---------------------------------------------------------------------- #
# Frame bundles
# ---------------------------------------------------------------------- #
def keypoints_from_rows(rows: np.ndarray) -> List[Keypoint]:
    """Build keypoints from an Nx2 (x, y) or Nx7 (all fields) array."""
    rows = np.asarray(rows, dtype=np.float64)
    if rows.size == 0:
        return []
    if rows.ndim != 2 or rows.shape[1] not in (2, 7):
        raise ValueError(f"Keypoint rows must be Nx2 or Nx7, got shape {rows.shape}")
    if rows.shape[1] == 2:
        return keypoints_from_array(rows)
    return [
        Keypoint(
            x=float(r[0]),
            y=float(r[1]),
            size=float(r[2]),
            angle=float(r[3]),
            response=float(r[4]),
            octave=int(r[5]),
            class_id=int(r[6]),
        )
        for r in rows
    ]


def load_bundle(filepath: str) -> Tuple[MobileFrame, FixedFrame, float]:
    """
    Load a recorded frame pair from an ``.npz`` file.

    Required arrays: ``mobile_keypoints``, ``mobile_descriptors``,
    ``mobile_camera_matrix``, ``mobile_image_size`` (width, height),
    ``fixed_depth``, ``fixed_camera_matrix``. Optional: ``mobile_image``,
    ``fixed_image``, ``fixed_keypoints``, ``fixed_descriptors``,
    ``fixed_frame_id``, ``timestamp``.

    Returns:
        Tuple of (mobile frame, fixed frame, timestamp)
    """
    with np.load(filepath, allow_pickle=False) as data:
        missing = [
            key
            for key in (
                "mobile_keypoints",
                "mobile_descriptors",
                "mobile_camera_matrix",
                "mobile_image_size",
                "fixed_depth",
                "fixed_camera_matrix",
            )
            if key not in data.files
        ]
        if missing:
            raise ValueError(f"Frame bundle {filepath} lacks {', '.join(missing)}")

        width, height = (int(v) for v in data["mobile_image_size"].reshape(2))
        mobile = MobileFrame(
            keypoints=keypoints_from_rows(data["mobile_keypoints"]),
            descriptors=data["mobile_descriptors"],
            intrinsics=CameraIntrinsics.from_matrix(data["mobile_camera_matrix"], width, height),
            image_size=(width, height),
            image=data["mobile_image"] if "mobile_image" in data.files else None,
        )

        depth = data["fixed_depth"].copy()
        fixed_keypoints = None
        fixed_descriptors = None
        if "fixed_keypoints" in data.files:
            fixed_keypoints = keypoints_from_rows(data["fixed_keypoints"])
            fixed_descriptors = data["fixed_descriptors"] if "fixed_descriptors" in data.files else None

        fixed = FixedFrame(
            depth=depth,
            intrinsics=CameraIntrinsics.from_matrix(
                data["fixed_camera_matrix"], depth.shape[1], depth.shape[0]
            ),
            image=data["fixed_image"] if "fixed_image" in data.files else None,
            keypoints=fixed_keypoints,
            descriptors=fixed_descriptors,
            frame_id=str(data["fixed_frame_id"]) if "fixed_frame_id" in data.files else "",
        )
        timestamp = float(data["timestamp"]) if "timestamp" in data.files else 0.0

    LOGGER.debug(
        "Loaded bundle %s: %d mobile keypoints, depth %s",
        filepath,
        len(mobile.keypoints),
        depth.shape,
    )
    return mobile, fixed, timestamp
