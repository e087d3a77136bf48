"""Per-domain control state kept across cycles."""

import time
from dataclasses import dataclass
from typing import Optional


@dataclass
class ControlState:
    """Mutable cross-cycle state for one domain.

    Owned and mutated only by the control loop. Never persisted: a restart
    starts from these defaults and re-applies the baseline.
    """

    domain: str
    last_known_good: Optional[int] = None
    last_known_good_at: Optional[float] = None  # time.monotonic()
    last_commanded_speed: Optional[int] = None
    last_evaluated_temp: Optional[int] = None
    read_failures: int = 0
    command_failures: int = 0
    cycles: int = 0
    emergency: bool = False

    def record_reading(self, value: int, now: Optional[float] = None) -> None:
        """Store a plausible reading as the new last known good value."""
        self.last_known_good = value
        self.last_known_good_at = time.monotonic() if now is None else now
        self.read_failures = 0

    def record_read_failure(self) -> None:
        self.read_failures += 1

    def forget_last_known_good(self) -> None:
        self.last_known_good = None
        self.last_known_good_at = None

    def last_known_good_age(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds since the last known good reading, or None if there is none."""
        if self.last_known_good_at is None:
            return None
        current = time.monotonic() if now is None else now
        return current - self.last_known_good_at
