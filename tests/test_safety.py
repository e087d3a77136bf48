"""Tests for safety overrides."""

import pytest

from fanpilot.control.safety import SafetyOverride, propagation_targets
from fanpilot.models import ControlState, Domain

from conftest import FakeClock


@pytest.fixture
def safety(clock: FakeClock) -> SafetyOverride:
    return SafetyOverride(max_consecutive_errors=3, last_known_good_max_age=120.0, clock=clock)


class TestApply:
    """Tests for SafetyOverride.apply()."""

    def test_normal_reading_keeps_curve_speed(self, safety: SafetyOverride) -> None:
        """Below the threshold the computed speed stands."""
        decision = safety.apply(ControlState("CPU1"), 65, 100, max_safe_temp=80, emergency_speed=255)
        assert decision.speed == 100
        assert decision.emergency is False
        assert decision.reason == "normal"

    @pytest.mark.parametrize("temperature", [80, 81, 120])
    def test_over_temperature_forces_emergency(self, safety: SafetyOverride, temperature: int) -> None:
        """At or above max_safe_temp the emergency speed wins."""
        decision = safety.apply(
            ControlState("CPU1"), temperature, 200, max_safe_temp=80, emergency_speed=255
        )
        assert decision.speed == 255
        assert decision.emergency is True
        assert decision.reason == "over_temperature"

    def test_no_temperature_is_sensing_lost(self, safety: SafetyOverride) -> None:
        """Without a reading or usable fallback the fans go to emergency speed."""
        decision = safety.apply(ControlState("CPU1"), None, None, max_safe_temp=80, emergency_speed=100)
        assert decision.speed == 100
        assert decision.emergency is True
        assert decision.reason == "sensing_lost"

    def test_substituted_value_reported(self, safety: SafetyOverride) -> None:
        """A last known good stand-in is flagged in the reason."""
        state = ControlState("CPU1", read_failures=1)
        decision = safety.apply(state, 60, 100, max_safe_temp=80, emergency_speed=255, substituted=True)
        assert decision.speed == 100
        assert decision.emergency is False
        assert decision.reason == "last_known_good"

    def test_consecutive_failures_override_last_known_good(self, safety: SafetyOverride) -> None:
        """Reaching the failure limit forces emergency even with a fallback value."""
        state = ControlState("CPU1", last_known_good=50, read_failures=3)
        decision = safety.apply(state, 50, 75, max_safe_temp=80, emergency_speed=255, substituted=True)
        assert decision.emergency is True
        assert decision.reason == "consecutive_failures"

    def test_below_failure_limit(self, safety: SafetyOverride) -> None:
        """Two failures out of three do not escalate on their own."""
        state = ControlState("CPU1", read_failures=2)
        decision = safety.apply(state, 50, 75, max_safe_temp=80, emergency_speed=255, substituted=True)
        assert decision.emergency is False

    def test_invalid_failure_limit(self) -> None:
        """A zero failure limit is meaningless."""
        with pytest.raises(ValueError):
            SafetyOverride(max_consecutive_errors=0)


class TestSubstituteTemperature:
    """Tests for last known good substitution."""

    def test_no_history(self, safety: SafetyOverride) -> None:
        """Nothing to substitute before the first good reading."""
        assert safety.substitute_temperature(ControlState("CPU1")) is None

    def test_fresh_value_used(self, safety: SafetyOverride, clock: FakeClock) -> None:
        """A value younger than the max age stands in."""
        state = ControlState("CPU1")
        state.record_reading(62, now=clock())
        clock.advance(60)
        assert safety.substitute_temperature(state) == 62

    def test_stale_value_rejected(self, safety: SafetyOverride, clock: FakeClock) -> None:
        """A value older than the max age is not trusted."""
        state = ControlState("CPU1")
        state.record_reading(62, now=clock())
        clock.advance(121)
        assert safety.substitute_temperature(state) is None


class TestPropagationTargets:
    """Tests for emergency propagation between domains."""

    def _domain(self, name: str, targets: list, group: str = None) -> Domain:
        return Domain(name=name, targets=targets, group=group, breakpoints=[(60, 100)], default_speed=50)

    def test_shared_target(self) -> None:
        """Domains driving a common fan follow the emergency."""
        domains = [
            self._domain("CPU1", [0, 1]),
            self._domain("CPU2", [1, 2]),
            self._domain("HD", [5]),
        ]
        assert propagation_targets(domains, ["CPU1"]) == {"CPU2"}

    def test_shared_group(self) -> None:
        """Domains in the same group follow even without common fans."""
        domains = [
            self._domain("CPU1", [0], group="chassis"),
            self._domain("HD", [5], group="chassis"),
            self._domain("PSU", [6]),
        ]
        assert propagation_targets(domains, ["HD"]) == {"CPU1"}

    def test_no_emergency(self) -> None:
        """Nothing propagates without an affected domain."""
        domains = [self._domain("CPU1", [0]), self._domain("CPU2", [0])]
        assert propagation_targets(domains, []) == set()
