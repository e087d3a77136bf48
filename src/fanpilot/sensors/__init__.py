"""Temperature sensing for fanpilot."""

from .reader import SANITY_WINDOWS, TemperatureReader, aggregate, is_plausible
from .sources import (
    IpmiSensorSource,
    SensorReadError,
    SensorsSource,
    SmartSource,
    TemperatureSource,
    ThermalZoneSource,
)

__all__ = [
    # Reader
    "TemperatureReader",
    "SANITY_WINDOWS",
    "aggregate",
    "is_plausible",
    # Sources
    "TemperatureSource",
    "SensorReadError",
    "ThermalZoneSource",
    "SensorsSource",
    "IpmiSensorSource",
    "SmartSource",
]
