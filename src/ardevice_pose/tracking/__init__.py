"""
Tracking subpackage.

Keypoint containers, fixed-camera ORB extraction and mobile-to-fixed
descriptor matching with match filtering/merging.
"""

from .feature import Keypoint, OrbExtractor, keypoints_from_array, keypoints_to_array
from .matching import FeatureMatcher, Match, MatchFilter

__all__ = [
    "FeatureMatcher",
    "Keypoint",
    "Match",
    "MatchFilter",
    "OrbExtractor",
    "keypoints_from_array",
    "keypoints_to_array",
]
