"""
Depth repair and 3D reconstruction of fixed-camera matches.

Depth sensors leave holes (zero readings) on edges and dark or shiny
surfaces, which is exactly where good features tend to be. Matches falling on
a hole take the depth of the closest foreground surface in their
neighbourhood, or are dropped when no reading is close enough.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .geometry import CameraIntrinsics, back_project
from .tracking.feature import Keypoint
from .tracking.matching import Match

LOGGER = logging.getLogger(__name__)


def _check_depth_map(depth_map: np.ndarray):
    if not isinstance(depth_map, np.ndarray) or depth_map.ndim != 2:
        raise ValueError("Depth map must be a 2D numpy array")
    if depth_map.dtype != np.uint16:
        raise ValueError(f"Depth map must be uint16 millimetres, got {depth_map.dtype}")


def _pixel_distances(
    depth_map: np.ndarray, x: int, y: int, radius: float
) -> Tuple[np.ndarray, np.ndarray]:
    """Return the depth patch around (x, y) and the distance of each of its pixels."""
    h, w = depth_map.shape
    r = int(np.ceil(radius))
    x0, x1 = max(0, x - r), min(w, x + r + 1)
    y0, y1 = max(0, y - r), min(h, y + r + 1)
    patch = depth_map[y0:y1, x0:x1]
    ys, xs = np.mgrid[y0:y1, x0:x1]
    return patch, np.hypot(xs - x, ys - y)


def find_nearest_nonzero_distance(depth_map: np.ndarray, x: int, y: int, max_distance: float) -> Optional[float]:
    """Distance from (x, y) to the closest nonzero pixel, None if beyond ``max_distance``."""
    patch, distances = _pixel_distances(depth_map, x, y, max_distance)
    mask = (patch > 0) & (distances <= max_distance)
    if not np.any(mask):
        return None
    return float(distances[mask].min())


def find_lowest_nonzero_in_ring(
    depth_map: np.ndarray, x: int, y: int, min_radius: float, max_radius: float
) -> Optional[int]:
    """Lowest nonzero value among pixels at distance [min_radius, max_radius] from (x, y)."""
    patch, distances = _pixel_distances(depth_map, x, y, max_radius)
    mask = (patch > 0) & (distances >= min_radius) & (distances <= max_radius)
    if not np.any(mask):
        return None
    return int(patch[mask].min())


class DepthResolver:
    """
    Ensures every match has a fixed-camera depth reading.

    Args:
        search_radius: Maximum distance (pixels) at which a nonzero depth is searched
        ring_width: Width (pixels) of the ring beyond the nearest reading in
            which the lowest, i.e. foreground, depth is taken
    """

    def __init__(self, search_radius: float = 100.0, ring_width: float = 10.0):
        self.search_radius = search_radius
        self.ring_width = ring_width

    def repair_pixel(self, depth_map: np.ndarray, x: int, y: int) -> int:
        """
        Repair the depth at (x, y) in place if it is zero.

        Returns:
            The depth at (x, y) after repair, zero if nothing was found
        """
        current = int(depth_map[y, x])
        if current != 0:
            return current

        nearest = find_nearest_nonzero_distance(depth_map, x, y, self.search_radius)
        if nearest is None:
            return 0

        repaired = find_lowest_nonzero_in_ring(depth_map, x, y, nearest, nearest + self.ring_width)
        if repaired is None:
            return 0
        depth_map[y, x] = repaired
        return repaired

    def resolve(
        self,
        matches: Sequence[Match],
        fixed_keypoints: Sequence[Keypoint],
        depth_map: np.ndarray,
    ) -> List[Match]:
        """
        Repair the depth of each match location and drop the hopeless ones.

        Repaired values are written back into ``depth_map``.

        Returns:
            The matches that have a nonzero depth
        """
        _check_depth_map(depth_map)
        h, w = depth_map.shape

        resolved: List[Match] = []
        repaired_count = 0
        for match in matches:
            x, y = fixed_keypoints[match.train_idx].pixel
            if not (0 <= x < w and 0 <= y < h):
                LOGGER.debug("Dropping match at (%d, %d): outside depth map", x, y)
                continue

            was_zero = depth_map[y, x] == 0
            if self.repair_pixel(depth_map, x, y) == 0:
                continue
            if was_zero:
                repaired_count += 1
            resolved.append(match)

        LOGGER.debug(
            "Depth resolver kept %d/%d matches (%d repaired)",
            len(resolved),
            len(matches),
            repaired_count,
        )
        return resolved


def reconstruct(
    matches: Sequence[Match],
    fixed_keypoints: Sequence[Keypoint],
    mobile_keypoints: Sequence[Keypoint],
    depth_map: np.ndarray,
    fixed_intrinsics: CameraIntrinsics,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Lift matches to 3D using the fixed camera depth.

    Returns:
        Tuple of (points_3d, image_points): Nx3 points in the fixed camera
        optical frame (metres) and the Nx2 mobile pixel of each match, in match
        order
    """
    _check_depth_map(depth_map)
    if not matches:
        return np.empty((0, 3), dtype=np.float64), np.empty((0, 2), dtype=np.float64)

    fixed_pixels = np.array([fixed_keypoints[m.train_idx].pt for m in matches], dtype=np.float64)
    depths = np.empty(len(matches), dtype=np.float64)
    for i, m in enumerate(matches):
        x, y = fixed_keypoints[m.train_idx].pixel
        depths[i] = depth_map[y, x]

    if np.any(depths <= 0):
        raise ValueError("Cannot reconstruct matches without depth; resolve depth first")

    points_3d = back_project(fixed_pixels, depths, fixed_intrinsics)
    image_points = np.array([mobile_keypoints[m.query_idx].pt for m in matches], dtype=np.float64)
    return points_3d, image_points
