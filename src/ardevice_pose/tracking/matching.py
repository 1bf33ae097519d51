"""
Descriptor matching between the mobile and fixed camera features.

Matching produces one nearest-neighbour candidate per mobile descriptor; the
filter then applies an absolute distance threshold and resolves groups of
matches that start from (almost) the same mobile keypoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import cv2
import numpy as np

from ..exceptions import InsufficientFeatures
from .feature import Keypoint

LOGGER = logging.getLogger(__name__)

CONTRADICTION_POLICIES = ("discard", "keep_best")


@dataclass(frozen=True)
class Match:
    """Correspondence between a mobile (query) and a fixed (train) keypoint."""

    query_idx: int
    train_idx: int
    distance: float


def create_bf_matcher(norm: str) -> cv2.DescriptorMatcher:
    """Create a brute force matcher for ``"hamming"`` or ``"l2"`` descriptors."""
    if norm == "hamming":
        return cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
    if norm == "l2":
        return cv2.BFMatcher(cv2.NORM_L2, crossCheck=False)
    raise ValueError(f"Unknown descriptor norm '{norm}'")


class FeatureMatcher:
    """Nearest-neighbour matcher, mobile descriptors are the query set."""

    def __init__(self, norm: str = "hamming"):
        self.norm = norm
        self.matcher = create_bf_matcher(norm)

    def match(self, query_descriptors: np.ndarray, train_descriptors: np.ndarray) -> List[Match]:
        """
        Match every query descriptor to its nearest train descriptor.

        Args:
            query_descriptors: Mobile camera descriptors (N1 x D)
            train_descriptors: Fixed camera descriptors, memory included (N2 x D)

        Returns:
            One match per query descriptor

        Raises:
            InsufficientFeatures: If either set is empty
            ValueError: If the two sets cannot be compared
        """
        if query_descriptors is None or len(query_descriptors) == 0:
            raise InsufficientFeatures("No mobile descriptors to match")
        if train_descriptors is None or len(train_descriptors) == 0:
            raise InsufficientFeatures("No fixed camera descriptors to match")

        query = self._prepare(query_descriptors)
        train = self._prepare(train_descriptors)
        if query.shape[1] != train.shape[1]:
            raise ValueError(
                f"Descriptor widths differ: mobile {query.shape[1]}, fixed {train.shape[1]}"
            )

        cv_matches = self.matcher.match(query, train)
        matches = [Match(m.queryIdx, m.trainIdx, float(m.distance)) for m in cv_matches]
        LOGGER.debug("Matched %d query descriptors against %d", len(query), len(train))
        return matches

    def _prepare(self, descriptors: np.ndarray) -> np.ndarray:
        descriptors = np.asarray(descriptors)
        if descriptors.ndim != 2:
            raise ValueError(f"Descriptors must be a 2D array, got shape {descriptors.shape}")
        if self.norm == "hamming":
            if descriptors.dtype != np.uint8:
                raise ValueError(f"Binary descriptors must be uint8, got {descriptors.dtype}")
            return np.ascontiguousarray(descriptors)
        return np.ascontiguousarray(descriptors, dtype=np.float32)


# ---------------------------------------------------------------------- #
# Filtering
# ---------------------------------------------------------------------- #
def check_match_indices(matches: Sequence[Match], query_count: int, train_count: int):
    """Raise ``IndexError`` if a match points outside its keypoint lists."""
    for m in matches:
        if not 0 <= m.query_idx < query_count or not 0 <= m.train_idx < train_count:
            raise IndexError(
                f"Match ({m.query_idx}, {m.train_idx}) out of range for "
                f"{query_count} mobile and {train_count} fixed keypoints"
            )


def filter_by_distance(matches: Sequence[Match], matching_threshold: float) -> List[Match]:
    """Keep matches whose descriptor distance is within the threshold."""
    return [m for m in matches if m.distance <= matching_threshold]


def group_by_origin(
    matches: Sequence[Match],
    mobile_keypoints: Sequence[Keypoint],
    tolerance: float,
) -> List[List[int]]:
    """
    Partition matches into groups sharing the same mobile origin.

    Matches are visited in order; each unassigned match becomes the
    representative of a group holding every later unassigned match whose
    mobile keypoint lies within ``tolerance`` pixels of the representative's.

    Returns:
        Groups of indices into ``matches``, representative first
    """
    if not matches:
        return []

    origins = np.array([mobile_keypoints[m.query_idx].pt for m in matches], dtype=np.float64)
    assigned = np.zeros(len(matches), dtype=bool)
    groups: List[List[int]] = []

    for i in range(len(matches)):
        if assigned[i]:
            continue
        distances = np.linalg.norm(origins[i:] - origins[i], axis=1)
        members = [i + int(k) for k in np.flatnonzero((distances <= tolerance) & ~assigned[i:])]
        assigned[members] = True
        groups.append(members)

    return groups


def resolve_group(
    group: Sequence[Match],
    fixed_keypoints: Sequence[Keypoint],
    tolerance: float,
    policy: str = "discard",
) -> Optional[Match]:
    """
    Reduce a same-origin group to at most one match.

    Groups whose fixed keypoints all lie within ``tolerance`` of the
    representative's are merged into the representative carrying the mean
    distance. Contradicting groups are dropped entirely, or reduced to their
    lowest-distance member with ``policy="keep_best"``.
    """
    if policy not in CONTRADICTION_POLICIES:
        raise ValueError(f"Unknown contradiction policy '{policy}'")
    if not group:
        return None
    representative = group[0]
    if len(group) == 1:
        return representative

    destination = np.array(fixed_keypoints[representative.train_idx].pt, dtype=np.float64)
    destinations = np.array([fixed_keypoints[m.train_idx].pt for m in group], dtype=np.float64)
    same_destination = bool(np.all(np.linalg.norm(destinations - destination, axis=1) <= tolerance))

    if same_destination:
        mean_distance = float(np.mean([m.distance for m in group]))
        return Match(representative.query_idx, representative.train_idx, mean_distance)

    if policy == "keep_best":
        return min(group, key=lambda m: m.distance)
    return None


class MatchFilter:
    """
    Threshold filter followed by ambiguity resolution.

    Args:
        matching_threshold: Maximum descriptor distance of an accepted match
        keypoint_min_dist_threshold: Pixel distance under which two keypoints
            are considered the same point
        contradiction_policy: ``"discard"`` drops contradicting groups,
            ``"keep_best"`` keeps their lowest-distance match
    """

    def __init__(
        self,
        matching_threshold: float,
        keypoint_min_dist_threshold: float = 5.0,
        contradiction_policy: str = "discard",
    ):
        if contradiction_policy not in CONTRADICTION_POLICIES:
            raise ValueError(f"Unknown contradiction policy '{contradiction_policy}'")
        self.matching_threshold = matching_threshold
        self.keypoint_min_dist_threshold = keypoint_min_dist_threshold
        self.contradiction_policy = contradiction_policy

    def apply(
        self,
        matches: Sequence[Match],
        mobile_keypoints: Sequence[Keypoint],
        fixed_keypoints: Sequence[Keypoint],
    ) -> List[Match]:
        """Return the deduplicated subset of ``matches``."""
        check_match_indices(matches, len(mobile_keypoints), len(fixed_keypoints))

        if matches:
            distances = [m.distance for m in matches]
            LOGGER.debug("Best/worst match distance = %.1f/%.1f", min(distances), max(distances))

        good = filter_by_distance(matches, self.matching_threshold)
        groups = group_by_origin(good, mobile_keypoints, self.keypoint_min_dist_threshold)

        result: List[Match] = []
        merged = dropped = 0
        for group in groups:
            members = [good[i] for i in group]
            resolved = resolve_group(
                members,
                fixed_keypoints,
                self.keypoint_min_dist_threshold,
                self.contradiction_policy,
            )
            if resolved is None:
                dropped += len(members)
                continue
            merged += len(members) - 1
            result.append(resolved)

        LOGGER.debug(
            "Match filter: %d candidates, %d under threshold, %d merged away, %d contradicting dropped",
            len(matches),
            len(good),
            merged,
            dropped,
        )
        return result
