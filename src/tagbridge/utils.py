"""
Shared helper functions and utilities.

This module contains logging setup and the configuration layer used across the
project.
"""

import json
import logging
import tomllib
from pathlib import Path


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


def default_config():
    """Return a fresh copy of the default configuration."""
    return {
        # Capture
        'camera': {
            'backend': 'auto',  # 'auto', 'libcamera', 'opencv', 'file'
            'camera_id': 0,
            'width': 1200,
            'height': 800,
            'fps': 30,
            'pixel_format': 'YUV420',  # luma plane is the 8-bit monochrome image
            'exposure_time_us': 5000,
            'buffer_count': 4,
            'flip_horizontal': False,
            'backend_priority': None,
            'init_attempts': 10,
            'video_path': None,
            'loop_video': False,
        },

        # Marker detection
        'detector': {
            'dictionary': 'apriltag_36h11',
            'parameters': {},
        },

        # Pose estimation
        'pose': {
            'marker_size': 0.05,  # meters, side length of the black square
            'calibration_file': None,
            'camera_matrix': None,
            'dist_coeffs': None,
        },

        # Pose smoothing
        'pose_filter': {
            'enable_smoothing': True,
            'smoothing_alpha': 0.3,  # EMA factor (0 = max smooth, 1 = no smooth)
            'enable_outlier_rejection': False,
            'max_translation_jump': 0.5,  # meters
            'max_rotation_jump': 1.0,  # radians
            'stale_after': 1.0,  # seconds before a marker's filter is dropped
        },

        # Capture supervision
        'pipeline': {
            'frame_timeout': 2.0,
            'max_restarts': 0,  # 0 = unlimited
            'restart_delay': 1.0,
            'supervise_interval': 0.5,
        },

        # Host transport
        'publisher': {
            'enabled': True,
            'host': '127.0.0.1',
            'port': 4242,
            'rate_hz': 30.0,
        },

        # Diagnostics
        'diagnostics': {
            'max_frames': 30,
            'save_every': 10,
            'output_dir': 'debug_frames',
            'axis_length': 0.02,
        },
    }


def merge_config(base, override):
    """Recursively merge ``override`` into ``base`` and return ``base``."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merge_config(base[key], value)
        else:
            base[key] = value
    return base


def read_config_file(config_path):
    """Read a JSON or TOML configuration file into a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the suffix is not supported or the content is not a mapping
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    suffix = path.suffix.lower()
    if suffix == '.toml':
        with path.open('rb') as f:
            payload = tomllib.load(f)
    elif suffix == '.json':
        with path.open('r', encoding='utf-8') as f:
            payload = json.load(f)
    else:
        raise ValueError(f"Unsupported configuration format: {path.suffix}")

    if not isinstance(payload, dict):
        raise ValueError(f"Expected a mapping in {config_path}, got {type(payload).__name__}")
    return payload


def get_config(config_path=None):
    """Load configuration from file or return defaults.

    Args:
        config_path: Path to a JSON or TOML configuration file (optional)

    Returns:
        dict: Configuration dictionary
    """
    config = default_config()

    if config_path:
        loaded_config = read_config_file(config_path)
        merge_config(config, loaded_config)
        logging.info(f"Configuration loaded from {config_path}")

    return config


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
    required_sections = ['camera', 'detector', 'pose', 'pose_filter', 'pipeline', 'publisher']

    for key in required_sections:
        if key not in config:
            logging.error(f"Missing required config section: {key}")
            return False

    camera = config['camera']
    if camera.get('width', 0) <= 0 or camera.get('height', 0) <= 0:
        logging.error("Capture dimensions must be positive")
        return False

    if config['pose'].get('marker_size', 0) <= 0:
        logging.error("Marker size must be positive")
        return False

    alpha = config['pose_filter'].get('smoothing_alpha', 0.3)
    if not 0.0 < alpha <= 1.0:
        logging.error("Smoothing alpha must be in (0, 1]")
        return False

    port = config['publisher'].get('port', 0)
    if not 0 < port < 65536:
        logging.error(f"Invalid publisher port: {port}")
        return False

    logging.info("Configuration validated successfully")
    return True


def create_directory(path):
    """Create directory if it doesn't exist.

    Args:
        path: Directory path to create

    Returns:
        bool: True if created or exists, False on error
    """
    try:
        Path(path).mkdir(parents=True, exist_ok=True)
        return True
    except OSError as e:
        logging.error(f"Failed to create directory {path}: {e}")
        return False
