"""
ardevice_pose - AR device pose estimation from a fixed RGB-D camera.

This package provides functionality for:
- Fixed camera ORB extraction and mobile-to-fixed descriptor matching
- Match filtering and same-origin ambiguity resolution
- Depth hole repair and 3D back-projection
- PnP RANSAC pose solving with plausibility gates
- Feature memory across frames
"""

from .estimator import CameraPoseEstimator, EstimatorConfig
from .exceptions import (
    InsufficientCorrespondences,
    InsufficientFeatures,
    RegistrationError,
    SolverDivergence,
)
from .frames import FixedFrame, MobileFrame, load_bundle
from .geometry import CameraIntrinsics
from .memory import FeatureMemory, InMemoryFeatureMemory, StoredFeature
from .pose import Outcome, PnPSolver, PoseEstimate, Validator
from .tracking import FeatureMatcher, Keypoint, Match, MatchFilter, OrbExtractor

__version__ = "0.1.0"

__all__ = [
    # Estimator
    "CameraPoseEstimator",
    "EstimatorConfig",
    "Outcome",
    # Frames
    "CameraIntrinsics",
    "FixedFrame",
    "MobileFrame",
    "load_bundle",
    # Tracking
    "FeatureMatcher",
    "Keypoint",
    "Match",
    "MatchFilter",
    "OrbExtractor",
    # Pose
    "PnPSolver",
    "PoseEstimate",
    "Validator",
    # Memory
    "FeatureMemory",
    "InMemoryFeatureMemory",
    "StoredFeature",
    # Errors
    "InsufficientCorrespondences",
    "InsufficientFeatures",
    "RegistrationError",
    "SolverDivergence",
]
