"""
Keypoint containers and fixed-camera feature extraction.

The mobile device ships precomputed keypoints and binary descriptors; the
fixed camera side extracts ORB features from its grayscale image with the
density configured on the estimator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

LOGGER = logging.getLogger(__name__)

ORB_DESCRIPTOR_SIZE = 32


@dataclass(frozen=True)
class Keypoint:
    """Immutable 2D feature location with the attributes ORB attaches to it."""

    x: float
    y: float
    size: float = 31.0
    angle: float = -1.0
    response: float = 0.0
    octave: int = 0
    class_id: int = -1  # Owning track identifier

    @property
    def pt(self) -> Tuple[float, float]:
        return (self.x, self.y)

    @property
    def pixel(self) -> Tuple[int, int]:
        """Integer (x, y) pixel, rounded like OpenCV does for Mat access."""
        return int(round(self.x)), int(round(self.y))

    @classmethod
    def from_cv2(cls, keypoint: cv2.KeyPoint) -> Keypoint:
        return cls(
            x=float(keypoint.pt[0]),
            y=float(keypoint.pt[1]),
            size=float(keypoint.size),
            angle=float(keypoint.angle),
            response=float(keypoint.response),
            octave=int(keypoint.octave),
            class_id=int(keypoint.class_id),
        )

    def to_cv2(self) -> cv2.KeyPoint:
        return cv2.KeyPoint(
            self.x, self.y, self.size, self.angle, self.response, self.octave, self.class_id
        )


def keypoints_to_array(keypoints: Optional[Sequence[Keypoint]]) -> np.ndarray:
    """Stack keypoint locations into an Nx2 float32 array."""
    if not keypoints:
        return np.empty((0, 2), dtype=np.float32)
    return np.array([kp.pt for kp in keypoints], dtype=np.float32)


def keypoints_from_array(points: np.ndarray) -> List[Keypoint]:
    """Build keypoints from an Nx2 array of locations (other fields default)."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    return [Keypoint(x=float(x), y=float(y)) for x, y in points]


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Return a single-channel view of ``image``, converting BGR input."""
    if image is None or image.size == 0:
        raise ValueError("Image cannot be empty.")
    if image.ndim == 2:
        return image
    if image.ndim == 3 and image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if image.ndim == 3 and image.shape[2] == 1:
        return image[:, :, 0]
    raise ValueError(f"Unsupported image shape {image.shape}")


class OrbExtractor:
    """
    ORB feature extractor for the fixed camera image.

    Args:
        max_points: Maximum number of features to extract
        scale_factor: Pyramid decimation ratio, must be greater than 1
        levels: Number of pyramid levels
    """

    def __init__(self, max_points: int = 500, scale_factor: float = 1.2, levels: int = 8):
        if scale_factor <= 1.0:
            raise ValueError(f"ORB scale factor must be greater than 1, got {scale_factor}")
        self.max_points = max_points
        self.scale_factor = scale_factor
        self.levels = levels

        self.orb = cv2.ORB_create(
            nfeatures=max_points,
            scaleFactor=scale_factor,
            nlevels=levels,
        )

    def extract(self, image: np.ndarray) -> Tuple[List[Keypoint], np.ndarray]:
        """
        Detect keypoints and compute descriptors.

        Args:
            image: Grayscale or BGR image

        Returns:
            Tuple of (keypoints, descriptors). Descriptors are an Nx32 uint8
            array, empty with shape (0, 32) when nothing was found.
        """
        gray = to_grayscale(image)

        cv_keypoints = self.orb.detect(gray, None)
        if not cv_keypoints:
            LOGGER.warning("No keypoints found in fixed camera image")
            return [], np.empty((0, ORB_DESCRIPTOR_SIZE), dtype=np.uint8)

        cv_keypoints, descriptors = self.orb.compute(gray, cv_keypoints)
        if descriptors is None or not cv_keypoints:
            LOGGER.warning("No descriptors computed for fixed camera image")
            return [], np.empty((0, ORB_DESCRIPTOR_SIZE), dtype=np.uint8)

        keypoints = [Keypoint.from_cv2(kp) for kp in cv_keypoints]
        LOGGER.debug("Extracted %d ORB features", len(keypoints))
        return keypoints, descriptors
