"""
Shared helper functions and utilities.

Logging setup and the JSON configuration file used by the command line.
"""

import dataclasses
import json
import logging
import os

from .estimator import EstimatorConfig
from .tracking.matching import CONTRADICTION_POLICIES


def setup_logging(level=logging.INFO):
    """Set up logging configuration.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger = logging.getLogger(__name__)
    logger.info("Logging initialized")


def get_config(config_path=None):
    """Load configuration from file or return defaults.

    Sections present in the file are merged key by key over the defaults.

    Args:
        config_path: Path to configuration file (optional)

    Returns:
        dict: Configuration dictionary
    """
    default_config = {
        'device_id': 'ardevice',
        'fixed_sensor_name': 'fixed_camera',

        # Pose of the fixed camera optical frame in the world frame
        'fixed_to_world': [
            [1.0, 0.0, 0.0, 0.0],
            [0.0, 1.0, 0.0, 0.0],
            [0.0, 0.0, 1.0, 0.0],
            [0.0, 0.0, 0.0, 1.0],
        ],

        'estimator': dataclasses.asdict(EstimatorConfig()),

        'feature_memory': {
            'max_features': 2000,
            'depth_tolerance_mm': 100,
            'path': None,  # JSON file loaded before and saved after a run
        },

        'logging': {
            'level': 'INFO',
        },
    }

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                loaded_config = json.load(f)
            for key, value in loaded_config.items():
                if isinstance(value, dict) and isinstance(default_config.get(key), dict):
                    default_config[key].update(value)
                else:
                    default_config[key] = value
            logging.info(f"Configuration loaded from {config_path}")
        except (OSError, ValueError) as e:
            logging.warning(f"Failed to load config from {config_path}: {e}")

    return default_config


def save_config(config, config_path):
    """Save configuration to file.

    Args:
        config: Configuration dictionary
        config_path: Path to save configuration file

    Returns:
        bool: True if save successful, False otherwise
    """
    try:
        with open(config_path, 'w') as f:
            json.dump(config, f, indent=4)
        logging.info(f"Configuration saved to {config_path}")
        return True
    except (OSError, TypeError) as e:
        logging.error(f"Failed to save config to {config_path}: {e}")
        return False


def validate_config(config):
    """Validate configuration parameters.

    Args:
        config: Configuration dictionary

    Returns:
        bool: True if valid, False otherwise
    """
    required_keys = ['device_id', 'fixed_to_world', 'estimator']

    for key in required_keys:
        if key not in config:
            logging.error(f"Missing required config key: {key}")
            return False

    transform = config['fixed_to_world']
    if len(transform) != 4 or any(len(row) != 4 for row in transform):
        logging.error("fixed_to_world must be a 4x4 matrix")
        return False

    estimator = EstimatorConfig.from_dict(config['estimator'])

    if not 0.0 < estimator.pnp_confidence <= 1.0:
        logging.error("pnp_confidence must be in (0, 1]")
        return False
    if estimator.pnp_iterations <= 0:
        logging.error("pnp_iterations must be positive")
        return False
    if estimator.orb_scale_factor <= 1.0:
        logging.error("orb_scale_factor must be greater than 1")
        return False
    if estimator.min_pose_height > estimator.max_pose_height:
        logging.error("min_pose_height must not exceed max_pose_height")
        return False
    if estimator.contradiction_policy not in CONTRADICTION_POLICIES:
        logging.error(f"Unknown contradiction_policy: {estimator.contradiction_policy}")
        return False
    if estimator.descriptor_norm not in ('hamming', 'l2'):
        logging.error(f"Unknown descriptor_norm: {estimator.descriptor_norm}")
        return False

    logging.info("Configuration validated successfully")
    return True
