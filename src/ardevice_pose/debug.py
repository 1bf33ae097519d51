"""
Debug visualization of an estimator update.

Two images are produced: the filtered matches between the mobile and fixed
images, and the mobile image with every solver inlier circled and joined to
its reprojection.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from .tracking.feature import Keypoint
from .tracking.matching import Match

TEXT_COLOR = (255, 0, 0)
INLIER_RADIUS = 15


def blank_image(size: Tuple[int, int]) -> np.ndarray:
    """Black grayscale image of the given (width, height)."""
    width, height = size
    return np.zeros((int(height), int(width)), dtype=np.uint8)


def _as_bgr(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    return image.copy()


def _put_caption(image: np.ndarray, text: str):
    cv2.putText(
        image,
        text,
        (0, image.shape[0] - 5),
        cv2.FONT_HERSHEY_SIMPLEX,
        2,
        TEXT_COLOR,
        3,
    )


def draw_matches_image(
    mobile_image: np.ndarray,
    mobile_keypoints: Sequence[Keypoint],
    fixed_image: np.ndarray,
    fixed_keypoints: Sequence[Keypoint],
    matches: Sequence[Match],
) -> np.ndarray:
    """Side-by-side match visualization captioned with the match count."""
    dmatches = [cv2.DMatch(m.query_idx, m.train_idx, float(m.distance)) for m in matches]
    image = cv2.drawMatches(
        mobile_image,
        [kp.to_cv2() for kp in mobile_keypoints],
        fixed_image,
        [kp.to_cv2() for kp in fixed_keypoints],
        dmatches,
        None,
        flags=cv2.DrawMatchesFlags_DEFAULT,
    )
    _put_caption(image, str(len(matches)))
    return image


def draw_reprojection_image(
    mobile_image: np.ndarray,
    inliers: Sequence[int],
    image_points: np.ndarray,
    reprojected_points: np.ndarray,
    seed: Optional[int] = 0,
) -> np.ndarray:
    """
    Draw each inlier and the reprojection of its 3D point on the mobile image.

    Args:
        mobile_image: Mobile camera image
        inliers: Indices of the solver inliers
        image_points: Nx2 observed mobile pixels
        reprojected_points: Nx2 pixels predicted by the estimated pose
        seed: Seed of the random inlier colors
    """
    image = _as_bgr(mobile_image)
    rng = np.random.default_rng(seed)

    for i in inliers:
        color = tuple(int(c) for c in rng.integers(0, 256, size=3))
        pix = tuple(int(round(v)) for v in image_points[i])
        reproj = tuple(int(round(v)) for v in reprojected_points[i])
        cv2.circle(image, pix, INLIER_RADIUS, color, 5)
        cv2.line(image, pix, reproj, color, 3)

    _put_caption(image, f"{len(inliers)}/{len(image_points)}")
    return image
