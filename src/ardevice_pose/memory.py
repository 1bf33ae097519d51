"""
Feature memory for the pose estimator.

Fixed camera features that took part in an accepted estimate are kept and
folded into later matching, which helps in low-texture scenes where the
fixed camera alone yields few usable features. The estimator only talks to
the narrow :class:`FeatureMemory` interface so other backends can be
injected.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np

from .tracking.feature import Keypoint

LOGGER = logging.getLogger(__name__)

MEMORY_FORMAT_VERSION = "1.0"


@dataclass(frozen=True, eq=False)
class StoredFeature:
    """A remembered fixed camera feature and how it was observed."""

    keypoint: Keypoint
    descriptor: np.ndarray
    observer_distance: float  # metres, observing camera to feature
    observer_direction: np.ndarray  # observing camera to feature, fixed camera frame
    depth_mm: int  # depth at the keypoint pixel when saved

    def __post_init__(self):
        descriptor = np.array(self.descriptor).reshape(-1)
        descriptor.setflags(write=False)
        direction = np.array(self.observer_direction, dtype=np.float64).reshape(3)
        direction.setflags(write=False)
        object.__setattr__(self, "descriptor", descriptor)
        object.__setattr__(self, "observer_direction", direction)
        object.__setattr__(self, "observer_distance", float(self.observer_distance))
        object.__setattr__(self, "depth_mm", int(self.depth_mm))

    def to_dict(self) -> Dict:
        kp = self.keypoint
        return {
            "keypoint": {
                "x": kp.x,
                "y": kp.y,
                "size": kp.size,
                "angle": kp.angle,
                "response": kp.response,
                "octave": kp.octave,
                "class_id": kp.class_id,
            },
            "descriptor": self.descriptor.tolist(),
            "descriptor_dtype": str(self.descriptor.dtype),
            "observer_distance": self.observer_distance,
            "observer_direction": self.observer_direction.tolist(),
            "depth_mm": self.depth_mm,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> StoredFeature:
        return cls(
            keypoint=Keypoint(**data["keypoint"]),
            descriptor=np.array(data["descriptor"], dtype=data.get("descriptor_dtype", "uint8")),
            observer_distance=data["observer_distance"],
            observer_direction=data["observer_direction"],
            depth_mm=data["depth_mm"],
        )


class FeatureMemory(ABC):
    """Store of features offered back to the matcher on later frames."""

    @abstractmethod
    def get_features(self) -> List[StoredFeature]:
        """All currently retained features, in no particular order."""

    @abstractmethod
    def save_feature(self, feature: StoredFeature):
        """Add one feature; capacity and duplicate handling belong to the backend."""

    @abstractmethod
    def remove_non_background_features(self, depth_map: np.ndarray) -> int:
        """Drop features whose remembered depth no longer matches the scene.

        Returns:
            Number of features removed
        """


class InMemoryFeatureMemory(FeatureMemory):
    """
    Thread-safe feature memory keyed by fixed camera pixel.

    Features are immutable records, a reader sees each one either entirely
    or not at all. Saving a feature at an already occupied (rounded) pixel
    replaces the previous one. When full, the oldest feature is evicted.

    Args:
        max_features: Maximum number of retained features
        depth_tolerance_mm: Depth change beyond which a remembered feature is
            considered occluded or moved
    """

    def __init__(self, max_features: int = 2000, depth_tolerance_mm: int = 100):
        if max_features <= 0:
            raise ValueError("max_features must be positive")
        self.max_features = max_features
        self.depth_tolerance_mm = depth_tolerance_mm
        self._features: "OrderedDict[Tuple[int, int], StoredFeature]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._features)

    def get_features(self) -> List[StoredFeature]:
        with self._lock:
            return list(self._features.values())

    def save_feature(self, feature: StoredFeature):
        key = feature.keypoint.pixel
        with self._lock:
            if key in self._features:
                del self._features[key]
            self._features[key] = feature
            while len(self._features) > self.max_features:
                self._features.popitem(last=False)

    def remove_non_background_features(self, depth_map: np.ndarray) -> int:
        h, w = depth_map.shape[:2]
        with self._lock:
            to_remove = []
            for key, feature in self._features.items():
                x, y = key
                if not (0 <= x < w and 0 <= y < h):
                    to_remove.append(key)
                    continue
                current = int(depth_map[y, x])
                # Unknown depth says nothing about the feature
                if current == 0:
                    continue
                if abs(current - feature.depth_mm) > self.depth_tolerance_mm:
                    to_remove.append(key)

            for key in to_remove:
                del self._features[key]

        if to_remove:
            LOGGER.debug("Culled %d non-background features from memory", len(to_remove))
        return len(to_remove)

    def clear(self):
        with self._lock:
            self._features.clear()

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #
    def save(self, filepath: str):
        """Save the retained features to a JSON file."""
        features = self.get_features()
        data = {
            "version": MEMORY_FORMAT_VERSION,
            "max_features": self.max_features,
            "depth_tolerance_mm": self.depth_tolerance_mm,
            "features": [f.to_dict() for f in features],
        }
        with open(filepath, "w") as f:
            json.dump(data, f, indent=2)

        LOGGER.info("Feature memory saved to %s (%d features)", filepath, len(features))

    def load(self, filepath: str) -> bool:
        """Replace the retained features with the ones stored in ``filepath``."""
        try:
            with open(filepath, "r") as f:
                data = json.load(f)
            features = [StoredFeature.from_dict(d) for d in data.get("features", [])]
        except (OSError, ValueError, KeyError, TypeError) as e:
            LOGGER.error("Failed to load feature memory: %s", e)
            return False

        self.clear()
        for feature in features:
            self.save_feature(feature)

        LOGGER.info("Feature memory loaded from %s (%d features)", filepath, len(self))
        return True
