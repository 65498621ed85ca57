import copy
import json
import os
from dataclasses import dataclass
from typing import Any, Dict

from .log import get_logger

log = get_logger("config")

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "device": {
        "color_format": "BGRA32",
        "color_resolution": "720P",
        "depth_mode": "NFOV_UNBINNED",
        "camera_fps": 30,
        "synchronized_images_only": True,
        "wired_sync_mode": "STANDALONE",
    },
    "capture": {
        "timeout_ms": 1000,
        "max_consecutive_timeouts": 1,
    },
    "display": {
        "depth_max_mm": 5000,
        "wait_key_ms": 30,
        "point_cloud": True,
    },
    "logging": {
        "level": "INFO",
    },
}


@dataclass(frozen=True)
class DeviceConfig:
    """Fixed device configuration bundle, mapped onto pyk4a.Config at open time."""
    color_format: str = "BGRA32"
    color_resolution: str = "720P"
    depth_mode: str = "NFOV_UNBINNED"
    camera_fps: int = 30
    synchronized_images_only: bool = True
    wired_sync_mode: str = "STANDALONE"

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "DeviceConfig":
        known = {k: v for k, v in d.items() if k in DeviceConfig.__dataclass_fields__}
        cfg = DeviceConfig(**known)
        return DeviceConfig(
            color_format=str(cfg.color_format).upper(),
            color_resolution=str(cfg.color_resolution).upper(),
            depth_mode=str(cfg.depth_mode).upper(),
            camera_fps=int(cfg.camera_fps),
            synchronized_images_only=bool(cfg.synchronized_images_only),
            wired_sync_mode=str(cfg.wired_sync_mode).upper(),
        )


def load_config(config_path="kinect_cloud.json"):
    """
    Loads configuration from a JSON file.
    If the file doesn't exist, returns default configuration.
    """
    defaults = copy.deepcopy(DEFAULTS)

    if not os.path.exists(config_path):
        # Try looking in parent directories or typical locations
        possible_paths = [
            os.path.join("..", config_path),
            os.path.join("..", "..", config_path),
            os.path.join(os.path.dirname(__file__), "..", "..", "..", config_path)
        ]
        for p in possible_paths:
            if os.path.exists(p):
                config_path = p
                break
        else:
            log.info(f"Config file {config_path} not found. Using defaults.")
            return defaults

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            user_config = json.load(f)
    except (OSError, ValueError) as e:
        log.error(f"Error loading config {config_path}: {e}. Using defaults.")
        return defaults

    if not isinstance(user_config, dict):
        log.error(f"Config {config_path} is not a JSON object. Using defaults.")
        return defaults

    # Shallow merge per section
    config = defaults
    for key, value in user_config.items():
        if isinstance(value, dict) and isinstance(config.get(key), dict):
            config[key].update(value)
        else:
            config[key] = value
    log.debug(f"Loaded config from {config_path}: {list(config.keys())}")
    return config
