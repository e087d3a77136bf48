"""Data models for fanpilot."""

from .command import ActuatorCommand
from .domain import Domain, SteppedCurve
from .enums import ActuatorKind, Aggregation, ControlPhase, DomainKind, FanMode, SourceKind
from .sample import TemperatureSample
from .state import ControlState

__all__ = [
    "ActuatorCommand",
    "ActuatorKind",
    "Aggregation",
    "ControlPhase",
    "ControlState",
    "Domain",
    "DomainKind",
    "FanMode",
    "SourceKind",
    "SteppedCurve",
    "TemperatureSample",
]
