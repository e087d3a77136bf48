"""Piecewise fan curves.

A curve is an ordered table of (threshold, speed) breakpoints sorted by
descending threshold. The speed of the first breakpoint whose threshold is at
or below the current temperature wins; below every threshold the default
speed applies.
"""

from __future__ import annotations

import threading
from typing import Iterable, List, NamedTuple, Sequence, Tuple


class Breakpoint(NamedTuple):
    """One segment of a fan curve."""

    threshold: int
    speed: int


def sort_breakpoints(breakpoints: Iterable[Tuple[int, int]]) -> List[Breakpoint]:
    """Descending by threshold; stable, so the first of equal thresholds stays first."""
    return sorted(
        (Breakpoint(int(t), int(s)) for t, s in breakpoints),
        key=lambda bp: bp.threshold,
        reverse=True,
    )


def evaluate(breakpoints: Sequence[Tuple[int, int]], default_speed: int, temperature: int) -> int:
    """Fan speed for ``temperature``.

    Pure and deterministic. ``breakpoints`` must already be sorted descending
    (see sort_breakpoints). The unavailable sentinel (None) is not a
    temperature and is rejected.
    """
    if temperature is None:
        raise TypeError("evaluate() needs a temperature; substitute a fallback for unavailable readings")
    for threshold, speed in breakpoints:
        if threshold <= temperature:
            return speed
    return default_speed


def stepped_breakpoints(
    low: int,
    high: int,
    min_level: int,
    max_level: int,
    steps: int,
) -> List[Breakpoint]:
    """Breakpoints reproducing a stepped linear mapping between two temperatures.

    Between ``low`` and ``high`` the level rises in ``steps`` equal
    increments: ``min_level + floor((t - low) * steps / (high - low)) *
    (max_level - min_level) // steps``, clamped to ``max_level`` at or above
    ``high``. Use ``min_level`` as the curve's default speed.
    """
    if high <= low:
        raise ValueError(f"high ({high}) must be greater than low ({low})")
    if steps < 1:
        raise ValueError("steps must be at least 1")

    span = high - low
    level_span = max_level - min_level
    by_threshold = {}
    for k in range(1, steps):
        # Smallest integer temperature offset reaching gain k
        offset = -(-k * span // steps)
        by_threshold[low + offset] = min_level + k * level_span // steps
    by_threshold[high] = max_level
    return sort_breakpoints(by_threshold.items())


class FanCurve:
    """Runtime-reconfigurable breakpoint table for one domain.

    Reconfiguration rejects duplicate thresholds and affects only later
    evaluations. Methods are thread-safe; the control loop additionally
    serializes reconfiguration against whole cycles.
    """

    def __init__(self, breakpoints: Iterable[Tuple[int, int]], default_speed: int) -> None:
        points = sort_breakpoints(breakpoints)
        thresholds = [bp.threshold for bp in points]
        if len(set(thresholds)) != len(thresholds):
            raise ValueError(f"Duplicate breakpoint thresholds in {thresholds}")
        self._breakpoints = points
        self.default_speed = default_speed
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"FanCurve({self.breakpoints!r}, default_speed={self.default_speed})"

    @property
    def breakpoints(self) -> List[Breakpoint]:
        with self._lock:
            return list(self._breakpoints)

    def evaluate(self, temperature: int) -> int:
        with self._lock:
            return evaluate(self._breakpoints, self.default_speed, temperature)

    def add(self, threshold: int, speed: int) -> None:
        """Insert a new breakpoint.

        Raises:
            ValueError: A breakpoint with this threshold already exists.
        """
        with self._lock:
            if any(bp.threshold == threshold for bp in self._breakpoints):
                raise ValueError(f"Breakpoint at {threshold}C already exists")
            self._breakpoints = sort_breakpoints([*self._breakpoints, (threshold, speed)])

    def remove(self, threshold: int) -> None:
        """Delete the breakpoint at ``threshold``.

        Raises:
            KeyError: No breakpoint at this threshold.
        """
        with self._lock:
            remaining = [bp for bp in self._breakpoints if bp.threshold != threshold]
            if len(remaining) == len(self._breakpoints):
                raise KeyError(threshold)
            self._breakpoints = remaining

    def set_speed(self, threshold: int, speed: int) -> None:
        """Replace the speed of an existing breakpoint.

        Raises:
            KeyError: No breakpoint at this threshold.
        """
        with self._lock:
            if not any(bp.threshold == threshold for bp in self._breakpoints):
                raise KeyError(threshold)
            self._breakpoints = [
                Breakpoint(bp.threshold, speed) if bp.threshold == threshold else bp
                for bp in self._breakpoints
            ]

    def replace(self, breakpoints: Iterable[Tuple[int, int]], default_speed: int) -> None:
        """Swap in a whole new table (e.g. after a configuration reload)."""
        new_curve = FanCurve(breakpoints, default_speed)
        with self._lock:
            self._breakpoints = new_curve._breakpoints
            self.default_speed = default_speed
