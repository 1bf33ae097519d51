"""
Command line entry point for ardevice-pose.

Runs one estimator update on a recorded frame bundle and prints the outcome
and the accepted pose.

Usage:
    ardevice-pose --bundle frame.npz                  # Run with defaults
    ardevice-pose --bundle frame.npz --config c.json  # Custom configuration
    ardevice-pose --bundle frame.npz --verbose        # Enable debug logging
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import sys
from typing import List, Optional

import cv2
import numpy as np

from .estimator import CameraPoseEstimator, EstimatorConfig
from .frames import load_bundle
from .memory import InMemoryFeatureMemory
from .pose import Outcome
from .utils import get_config, setup_logging, validate_config

LOGGER = logging.getLogger(__name__)

EXIT_ACCEPTED = 0
EXIT_REJECTED = 1
EXIT_INPUT_ERROR = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="ardevice-pose - AR device pose estimation from a fixed RGB-D camera",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ardevice-pose --bundle frame.npz
  ardevice-pose --bundle frame.npz --config config.json --device-id phone1
  ardevice-pose --bundle frame.npz --debug-dir out/ --verbose

Exit codes:
  0  pose accepted
  1  pose rejected (not enough matches/inliers, plausibility gates)
  2  invalid input or internal failure
        """,
    )

    parser.add_argument(
        "--bundle", "-b",
        required=True,
        help="Recorded frame pair (.npz)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="JSON configuration file",
    )
    parser.add_argument(
        "--device-id", "-d",
        default=None,
        help="AR device identifier (overrides the configuration)",
    )
    parser.add_argument(
        "--debug-dir",
        default=None,
        help="Write the matches and reprojection images to this directory",
    )
    parser.add_argument(
        "--verbose", "-V",
        action="store_true",
        help="Enable verbose/debug logging",
    )

    return parser.parse_args(argv)


def _build_memory(estimator_config: EstimatorConfig, memory_cfg: dict) -> Optional[InMemoryFeatureMemory]:
    if not estimator_config.enable_features_memory:
        return None
    memory = InMemoryFeatureMemory(memory_cfg["max_features"], memory_cfg["depth_tolerance_mm"])
    path = memory_cfg.get("path")
    if path and os.path.exists(path):
        memory.load(path)
    return memory


def _write_debug_images(estimator: CameraPoseEstimator, directory: str):
    os.makedirs(directory, exist_ok=True)
    for name, image in estimator.debug_images.items():
        path = os.path.join(directory, f"{name}.png")
        cv2.imwrite(path, image)
        LOGGER.info("Wrote %s", path)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    config = get_config(args.config)

    # Set up logging
    if args.verbose:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, str(config["logging"].get("level", "INFO")).upper(), logging.INFO)
    setup_logging(level=log_level)

    if not validate_config(config):
        return EXIT_INPUT_ERROR
    estimator_config = EstimatorConfig.from_dict(config["estimator"])
    if args.debug_dir:
        estimator_config = dataclasses.replace(estimator_config, show_images=True)

    try:
        mobile, fixed, timestamp = load_bundle(args.bundle)
    except (OSError, ValueError, KeyError) as e:
        LOGGER.error("Failed to load frame bundle %s: %s", args.bundle, e)
        return EXIT_INPUT_ERROR

    memory = _build_memory(estimator_config, config["feature_memory"])
    estimator = CameraPoseEstimator(
        device_id=args.device_id or config["device_id"],
        fixed_sensor_name=config["fixed_sensor_name"],
        config=estimator_config,
        fixed_to_world=np.array(config["fixed_to_world"], dtype=np.float64),
        feature_memory=memory,
    )

    outcome = estimator.update(mobile, fixed, timestamp)
    print(f"outcome: {int(outcome)} ({outcome.name})")

    if args.debug_dir:
        _write_debug_images(estimator, args.debug_dir)

    memory_path = config["feature_memory"].get("path")
    if memory is not None and memory_path:
        memory.save(memory_path)

    if outcome == Outcome.ACCEPTED:
        estimate = estimator.last_pose_estimate
        print(f"position: {' '.join(f'{v:.6f}' for v in estimate.position)}")
        print(f"quaternion: {' '.join(f'{v:.6f}' for v in estimate.quaternion)}")
        print(f"inliers: {estimate.inliers}/{estimate.matches}")
        print(f"reprojection_error: {estimate.reprojection_error:.4f}")
        return EXIT_ACCEPTED
    if outcome.is_rejection:
        return EXIT_REJECTED
    return EXIT_INPUT_ERROR


if __name__ == "__main__":
    sys.exit(main())
