"""Vendor command dialects.

A dialect turns an intent ("set fan 3 to 40") into the ActuatorCommand the
controller understands. Dialects build strings only; they never talk to a
transport.
"""

from __future__ import annotations

import re
from typing import List, Optional, Protocol, Sequence

from fanpilot.models import ActuatorCommand, ActuatorKind, FanMode

ILO_PID_PATTERN = re.compile(r"\[([^\]]+)\]")
SDR_FAN_PATTERN = re.compile(r"^(FAN[0-9A-Z]+)\s", re.MULTILINE)


class FanDialect(Protocol):
    """Intent-to-command translation shared by both controller families."""

    kind: ActuatorKind
    max_speed: int

    def set_speed(self, target: int, speed: int) -> ActuatorCommand:
        ...

    def probe(self) -> ActuatorCommand:
        ...


def _check_range(name: str, value: int, upper: int) -> None:
    if not 0 <= value <= upper:
        raise ValueError(f"{name} must be between 0 and {upper}, got {value}")


class Ilo4Dialect:
    """Commands for the fan-enabled iLO4 SSH CLI (speeds 0-255)."""

    kind = ActuatorKind.ILO4
    max_speed = 255

    def set_speed(self, target: int, speed: int) -> ActuatorCommand:
        """Cap fan ``target`` at ``speed`` ('fan p N max S')."""
        _check_range("speed", speed, self.max_speed)
        return ActuatorCommand(
            text=f"fan p {target} max {speed}",
            description=f"set fan {target} max to {speed}",
        )

    def set_min(self, target: int, speed: int) -> ActuatorCommand:
        """Floor fan ``target`` at ``speed`` ('fan p N min S')."""
        _check_range("speed", speed, self.max_speed)
        return ActuatorCommand(
            text=f"fan p {target} min {speed}",
            description=f"set fan {target} min to {speed}",
        )

    def set_pid_low(self, pid: str, low: int) -> ActuatorCommand:
        return ActuatorCommand(
            text=f"fan pid {pid} lo {low}",
            description=f"set pid {pid} lo to {low}",
        )

    def disable_sensor(self, sensor: str) -> ActuatorCommand:
        return ActuatorCommand(
            text=f"fan t {sensor} off",
            description=f"disable sensor {sensor}",
        )

    def pid_listing(self) -> ActuatorCommand:
        return ActuatorCommand(text="fan info g", description="list fan PIDs", expect_output=True)

    def probe(self) -> ActuatorCommand:
        return ActuatorCommand(text="version", description="probe iLO", expect_output=True)

    @staticmethod
    def parse_pids(output: str) -> List[str]:
        """Extract the unique PID ids from 'fan info g' output.

        The iLO prints PID groups as bracketed, space separated lists, e.g.
        ``[01 02 2A]``.
        """
        pids = set()
        for group in ILO_PID_PATTERN.findall(output):
            pids.update(token for token in group.split() if token)
        return sorted(pids)


class SupermicroDialect:
    """Raw IPMI commands for Supermicro X10-X13 boards (duty cycle 0-100)."""

    kind = ActuatorKind.IPMI
    max_speed = 100

    def set_speed(self, target: int, speed: int) -> ActuatorCommand:
        """Set the duty cycle of fan zone ``target``."""
        _check_range("zone", target, 100)
        _check_range("level", speed, self.max_speed)
        return ActuatorCommand(
            text=f"raw 0x30 0x70 0x66 0x01 0x{target:02x} 0x{speed:02x}",
            description=f"set zone {target} level to {speed}%",
        )

    def get_level(self, target: int) -> ActuatorCommand:
        return ActuatorCommand(
            text=f"raw 0x30 0x70 0x66 0x00 0x{target:02x}",
            description=f"read zone {target} level",
            expect_output=True,
        )

    def set_fan_mode(self, mode: FanMode) -> ActuatorCommand:
        return ActuatorCommand(
            text=f"raw 0x30 0x45 0x01 {mode.value}",
            description=f"set fan mode {mode.name}",
        )

    def sensor_thresholds(
        self, fan: str, direction: str, values: Sequence[int]
    ) -> ActuatorCommand:
        """Set 'lower' or 'upper' thresholds of one fan sensor."""
        if direction not in ("lower", "upper"):
            raise ValueError(f"direction must be 'lower' or 'upper', got {direction!r}")
        joined = " ".join(str(v) for v in values)
        return ActuatorCommand(
            text=f"sensor thresh {fan} {direction} {joined}",
            description=f"set {direction} thresholds of {fan}",
        )

    def list_fans(self) -> ActuatorCommand:
        return ActuatorCommand(text="sdr list", description="list sensors", expect_output=True)

    def probe(self) -> ActuatorCommand:
        return ActuatorCommand(text="sdr list", description="probe BMC", expect_output=True)

    @staticmethod
    def parse_fans(output: str) -> List[str]:
        """Fan sensor names (FAN1, FANA, ...) from 'sdr list' output."""
        return SDR_FAN_PATTERN.findall(output)

    @staticmethod
    def parse_level(output: str) -> Optional[int]:
        """Decode the hex level returned by a zone level read."""
        token = output.strip().split()[0] if output.strip() else ""
        try:
            return int(token, 16)
        except ValueError:
            return None


def dialect_for(kind: ActuatorKind) -> FanDialect:
    """Dialect instance for a controller family."""
    if kind == ActuatorKind.ILO4:
        return Ilo4Dialect()
    return SupermicroDialect()
