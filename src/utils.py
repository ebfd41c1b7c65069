"""
Shared helper functions and utilities.

This module contains logging setup, configuration handling and server
address helpers used across the project.
"""

import copy
import ipaddress
import json
import logging
import os
import re
from typing import Optional, Tuple
from urllib.parse import urlsplit

DEFAULT_HOST = "192.168.3.42"
DEFAULT_PORT = 5000

_HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$")


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


def get_default_config():
    """Return a fresh copy of the default configuration."""
    return {
        # Depth server
        'server': {
            'host': DEFAULT_HOST,
            'port': DEFAULT_PORT,
            'timeout_s': 60.0,
            'request_width': 640,
            'request_height': 480,
            'jpeg_quality': 80,
        },

        # Dataset replay
        'capture': {
            'frame_delay_s': 0.1,
            'loop': False,
            'loop_delay_s': 1.0,
        },

        # Live camera
        'camera': {
            'camera_id': 0,
            'video_width': 640,
            'video_height': 480,
            'video_fps': 30,
            'camera_backend_priority': None,
            'camera_init_attempts': 10,
            'read_timeout_s': 1.0,
        },

        # Pixel selection
        'selector': {
            'block_size': 32,
            'gradient_sq_threshold': 50,
            'max_points_per_frame': 2000,
            'min_depth': 0.1,
            'max_depth': 9.5,
            'depth_range': 10.0,  # meters at full-scale depth
            'depth_scale': 2.0,
            'point_color': [0, 0, 0],
        },

        # Global map
        'mapping': {
            'max_points': 200000,
            'keyframe_interval': 10,
        },
    }


def get_config(config_path=None):
    """Load configuration from file or return defaults.

    Sections present in the file are merged key by key over the defaults.

    Args:
        config_path: Path to configuration file (optional)

    Returns:
        dict: Configuration dictionary
    """
    config = get_default_config()

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                loaded_config = json.load(f)
        except (OSError, ValueError) as e:
            logging.warning("Failed to load config from %s: %s", config_path, e)
            return config

        for key, value in loaded_config.items():
            if isinstance(value, dict) and isinstance(config.get(key), dict):
                config[key].update(value)
            else:
                config[key] = value
        logging.info("Configuration loaded from %s", config_path)
    elif config_path:
        logging.warning("Config file %s not found, using defaults", config_path)

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
        logging.info("Configuration saved to %s", config_path)
        return True
    except (OSError, TypeError) as e:
        logging.error("Failed to save config to %s: %s", config_path, e)
        return False


def validate_config(config):
    """Validate configuration parameters.

    Args:
        config: Configuration dictionary

    Returns:
        bool: True if valid, False otherwise
    """
    required_sections = ['server', 'capture', 'camera', 'selector', 'mapping']

    for section in required_sections:
        if not isinstance(config.get(section), dict):
            logging.error("Missing required config section: %s", section)
            return False

    server = config['server']
    if not is_valid_host(str(server.get('host', ''))):
        logging.error("Invalid server host: %s", server.get('host'))
        return False
    if not is_valid_port(server.get('port')):
        logging.error("Server port must be between 1 and 65535")
        return False

    camera = config['camera']
    if camera.get('video_width', 0) <= 0 or camera.get('video_height', 0) <= 0:
        logging.error("Video dimensions must be positive")
        return False

    selector = config['selector']
    if selector.get('block_size', 0) < 2:
        logging.error("Selector block_size must be at least 2")
        return False
    if selector.get('max_points_per_frame', 0) <= 0:
        logging.error("Selector max_points_per_frame must be positive")
        return False
    if not 0 <= selector.get('min_depth', 0) <= selector.get('max_depth', 0):
        logging.error("Selector depth range is invalid")
        return False

    mapping = config['mapping']
    if mapping.get('max_points', -1) < 0:
        logging.error("Mapping max_points must be non-negative")
        return False
    if mapping.get('keyframe_interval', 0) <= 0:
        logging.error("Mapping keyframe_interval must be positive")
        return False

    logging.info("Configuration validated successfully")
    return True


def is_valid_port(port) -> bool:
    """Return True for an integer TCP port in 1-65535."""
    if isinstance(port, bool):
        return False
    try:
        value = int(port)
    except (TypeError, ValueError):
        return False
    return 1 <= value <= 65535


def is_valid_host(host: str) -> bool:
    """Return True for a dotted IPv4 address or a DNS hostname."""
    if not host:
        return False
    try:
        ipaddress.IPv4Address(host)
        return True
    except ValueError:
        pass
    # All-numeric names are malformed IPv4, not hostnames
    if re.fullmatch(r"[0-9.]+", host):
        return False
    return bool(_HOSTNAME_RE.match(host))


def parse_server_address(address: str, default_port: int = DEFAULT_PORT) -> Optional[Tuple[str, int]]:
    """Normalize a user-entered server address.

    Accepts ``host``, ``host:port`` or ``http://host:port/``.

    Returns:
        (host, port) or None if the address is invalid
    """
    text = (address or '').strip()
    if not text:
        return None
    if '://' not in text:
        text = 'http://' + text

    try:
        parts = urlsplit(text)
        port = parts.port if parts.port is not None else default_port
    except ValueError:
        return None

    host = parts.hostname or ''
    if not is_valid_host(host) or not is_valid_port(port):
        return None
    return host, port


def merge_config(base, overrides):
    """Return a deep copy of ``base`` with section-level ``overrides`` applied."""
    merged = copy.deepcopy(base)
    for section, values in (overrides or {}).items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged
