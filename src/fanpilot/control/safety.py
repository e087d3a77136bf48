"""Safety override rules layered on top of the fan curve."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence, Set

from fanpilot.models import ControlState, Domain

# Decision reasons
REASON_NORMAL = "normal"
REASON_LAST_KNOWN_GOOD = "last_known_good"
REASON_OVER_TEMPERATURE = "over_temperature"
REASON_CONSECUTIVE_FAILURES = "consecutive_failures"
REASON_SENSING_LOST = "sensing_lost"
REASON_PROPAGATED = "propagated"


@dataclass(frozen=True)
class SafetyDecision:
    """Speed chosen for one domain in one cycle."""

    speed: int
    emergency: bool
    reason: str


class SafetyOverride:
    """Forces emergency speed when the curve cannot be trusted.

    Rules, checked in order:

    1. ``read_failures`` reached ``max_consecutive_errors``: emergency, even
       when a last known good value would still be usable.
    2. No temperature at all (no reading, no fresh last known good value):
       emergency.
    3. Temperature at or above ``max_safe_temp``: emergency.
    4. Otherwise the computed curve speed stands.
    """

    def __init__(
        self,
        max_consecutive_errors: int = 3,
        last_known_good_max_age: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_consecutive_errors < 1:
            raise ValueError("max_consecutive_errors must be at least 1")
        self.max_consecutive_errors = max_consecutive_errors
        self.last_known_good_max_age = last_known_good_max_age
        self._clock = clock

    def substitute_temperature(self, state: ControlState) -> Optional[int]:
        """Last known good temperature if it is fresh enough to stand in."""
        age = state.last_known_good_age(now=self._clock())
        if age is None or age > self.last_known_good_max_age:
            return None
        return state.last_known_good

    def apply(
        self,
        state: ControlState,
        temperature: Optional[int],
        computed_speed: Optional[int],
        max_safe_temp: int,
        emergency_speed: int,
        substituted: bool = False,
    ) -> SafetyDecision:
        """Decide the final speed for a domain.

        Args:
            state: The domain's cross-cycle state (not modified).
            temperature: Reading, or a substituted last known good value, or
                None when neither exists.
            computed_speed: Curve speed for ``temperature`` (ignored when
                ``temperature`` is None).
            max_safe_temp: Emergency threshold in degrees Celsius.
            emergency_speed: Speed forced in an emergency.
            substituted: ``temperature`` is a last known good stand-in.
        """
        if state.read_failures >= self.max_consecutive_errors:
            return SafetyDecision(emergency_speed, True, REASON_CONSECUTIVE_FAILURES)
        if temperature is None or computed_speed is None:
            return SafetyDecision(emergency_speed, True, REASON_SENSING_LOST)
        if temperature >= max_safe_temp:
            return SafetyDecision(emergency_speed, True, REASON_OVER_TEMPERATURE)
        reason = REASON_LAST_KNOWN_GOOD if substituted else REASON_NORMAL
        return SafetyDecision(computed_speed, False, reason)


def propagation_targets(domains: Sequence[Domain], affected: Iterable[str]) -> Set[str]:
    """Names of domains that must follow an emergency in ``affected``.

    A domain follows when it shares an actuator target or a group with an
    affected domain. The affected domains themselves are not included.
    """
    affected_names = set(affected)
    sources = [d for d in domains if d.name in affected_names]
    return {
        domain.name
        for domain in domains
        if domain.name not in affected_names
        and any(domain.shares_actuator_with(source) for source in sources)
    }
