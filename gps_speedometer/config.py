"""
Configuration management for GPS Speedometer
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = {
    "geolocation": {
        "high_accuracy": True,
        "timeout_ms": 10000,
        "max_fix_age_ms": 1000,
    },
    "smoothing_window": 5,
    "dial_max_speed": 200.0,
    "capture_fps": 30.0,
    "display_fps": 60.0,
    "unit": "mph",
    "resolution": [1280, 720],
    "audio_input": None,
}


class Config:
    """Configuration manager for GPS Speedometer"""

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file or self._find_config_file()
        self.config_data = self._load_config()

    def _find_config_file(self) -> str:
        """Find the config file in various locations"""
        possible_locations = [
            # Current working directory
            "config.json",
            # Project root
            Path(__file__).parent.parent / "config.json",
            # User home directory
            Path.home() / ".gps_speedometer_config.json",
            # System config directory
            "/etc/gps_speedometer/config.json"
        ]

        for location in possible_locations:
            if Path(location).exists():
                return str(location)

        # Return default location if none found
        return str(Path(__file__).parent.parent / "config.json")

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file, layered over the defaults"""
        data = copy.deepcopy(DEFAULT_CONFIG)
        try:
            if Path(self.config_file).exists():
                with open(self.config_file, 'r') as f:
                    loaded = json.load(f)
                geolocation = loaded.pop("geolocation", None)
                if isinstance(geolocation, dict):
                    data["geolocation"].update(geolocation)
                data.update(loaded)
        except (json.JSONDecodeError, FileNotFoundError, PermissionError) as e:
            logger.warning(f"Could not load config file {self.config_file}: {e}")

        return data

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value"""
        return self.config_data.get(key, default)

    def get_unit(self) -> str:
        """Get the display unit from environment or config"""
        # Priority: environment variable > config file > default
        unit = os.getenv("GPS_SPEEDOMETER_UNIT", "")
        if not unit:
            unit = self.config_data.get("unit", "mph")
        return unit.lower()

    def get_audio_input(self) -> Optional[str]:
        """Get the ffmpeg audio input spec (``format:device``) for live cameras"""
        return os.getenv("GPS_SPEEDOMETER_AUDIO_INPUT") or self.config_data.get("audio_input")

    def get_geolocation_settings(self) -> Dict[str, Any]:
        """Get position source subscription settings"""
        return dict(self.config_data.get("geolocation", {}))

    def get_resolution(self) -> Tuple[int, int]:
        """Get the requested camera resolution as (width, height)"""
        width, height = self.config_data.get("resolution", [1280, 720])
        return int(width), int(height)


# Global config instance
config = Config()
