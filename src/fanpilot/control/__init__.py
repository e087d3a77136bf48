"""Control core: fan curves, safety overrides and the control loop."""

from fanpilot.control.curve import Breakpoint, FanCurve, evaluate, sort_breakpoints, stepped_breakpoints
from fanpilot.control.loop import ControlLoop, CycleReport, InitializationError
from fanpilot.control.safety import SafetyDecision, SafetyOverride, propagation_targets

__all__ = [
    # Curve
    "Breakpoint",
    "FanCurve",
    "evaluate",
    "sort_breakpoints",
    "stepped_breakpoints",
    # Safety
    "SafetyDecision",
    "SafetyOverride",
    "propagation_targets",
    # Loop
    "ControlLoop",
    "CycleReport",
    "InitializationError",
]
