"""Configuration management for fanpilot."""

from fanpilot.config.loader import ConfigurationError, load_config, reload_config
from fanpilot.config.settings import SPEED_LIMITS, FanPilotSettings

__all__ = [
    "ConfigurationError",
    "FanPilotSettings",
    "SPEED_LIMITS",
    "load_config",
    "reload_config",
]
