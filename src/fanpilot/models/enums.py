"""Shared enumerations for the fanpilot models."""

from enum import Enum


class DomainKind(str, Enum):
    """Kind of thermal domain, selects the plausibility window for readings."""

    CPU = "cpu"
    DISK = "disk"


class Aggregation(str, Enum):
    """How several raw readings for one domain are reduced to one value."""

    MIN = "min"
    AVG = "avg"
    MAX = "max"


class SourceKind(str, Enum):
    """Temperature source, in default priority order."""

    THERMAL_ZONE = "thermal_zone"
    SENSORS = "sensors"
    IPMI = "ipmi"
    SMART = "smart"


class ActuatorKind(str, Enum):
    """Remote management controller family."""

    ILO4 = "ilo4"
    IPMI = "ipmi"


class ControlPhase(str, Enum):
    """Lifecycle phase of the control loop."""

    INITIALIZING = "initializing"
    BASELINE = "baseline"
    MONITORING = "monitoring"
    EMERGENCY_OVERRIDE = "emergency_override"
    SHUTTING_DOWN = "shutting_down"


class FanMode(str, Enum):
    """Supermicro IPMI fan modes (value is the raw mode byte)."""

    STANDARD = "0x00"
    FULL = "0x01"
    OPTIMAL = "0x02"
    PUE = "0x03"
    HEAVY_IO = "0x04"
