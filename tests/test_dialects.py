"""Tests for vendor command dialects."""

import pytest

from fanpilot.actuator import Ilo4Dialect, SupermicroDialect, dialect_for
from fanpilot.models import ActuatorKind, FanMode

FAN_INFO_G = """\
GROUPINGS
0: FASTEST Output:  63  [02*07 08*35 09*38 0A*15 0B*18 ]
1: FASTEST Output:  63  [01*07 04*35 05*38 0A*15 0C*18 ]
2: FASTEST Output:  36  [01*07 04*35 05*38 0A*15 ]
"""

SDR_LIST = """\
CPU1 Temp        | 46 degrees C      | ok
FAN1             | 1400 RPM          | ok
FAN2             | 1400 RPM          | ok
FANA             | 1100 RPM          | ok
FAN4             | no reading        | ns
Vcpu1            | 1.81 Volts        | ok
"""


class TestIlo4Dialect:
    """Tests for iLO4 CLI commands."""

    def test_set_speed(self) -> None:
        command = Ilo4Dialect().set_speed(3, 120)
        assert command.text == "fan p 3 max 120"
        assert command.expect_output is False

    def test_set_min(self) -> None:
        assert Ilo4Dialect().set_min(2, 40).text == "fan p 2 min 40"

    def test_set_pid_low(self) -> None:
        assert Ilo4Dialect().set_pid_low("0A", 1600).text == "fan pid 0A lo 1600"

    def test_disable_sensor(self) -> None:
        assert Ilo4Dialect().disable_sensor("07FB00").text == "fan t 07FB00 off"

    def test_probe_expects_output(self) -> None:
        probe = Ilo4Dialect().probe()
        assert probe.text == "version"
        assert probe.expect_output is True

    @pytest.mark.parametrize("speed", [-1, 256])
    def test_speed_out_of_range(self, speed: int) -> None:
        with pytest.raises(ValueError):
            Ilo4Dialect().set_speed(0, speed)

    def test_parse_pids(self) -> None:
        """PID ids come from the bracketed groups, deduplicated and sorted."""
        pids = Ilo4Dialect.parse_pids(FAN_INFO_G)
        assert pids == ["01*07", "02*07", "04*35", "05*38", "08*35", "09*38", "0A*15", "0B*18", "0C*18"]

    def test_parse_pids_empty(self) -> None:
        assert Ilo4Dialect.parse_pids("no groupings") == []


class TestSupermicroDialect:
    """Tests for Supermicro raw IPMI commands."""

    def test_set_speed_hex(self) -> None:
        command = SupermicroDialect().set_speed(1, 100)
        assert command.text == "raw 0x30 0x70 0x66 0x01 0x01 0x64"

    def test_set_speed_range(self) -> None:
        with pytest.raises(ValueError):
            SupermicroDialect().set_speed(0, 101)

    def test_get_level(self) -> None:
        command = SupermicroDialect().get_level(0)
        assert command.text == "raw 0x30 0x70 0x66 0x00 0x00"
        assert command.expect_output is True

    def test_set_fan_mode(self) -> None:
        assert SupermicroDialect().set_fan_mode(FanMode.FULL).text == "raw 0x30 0x45 0x01 0x01"
        assert SupermicroDialect().set_fan_mode(FanMode.HEAVY_IO).text == "raw 0x30 0x45 0x01 0x04"

    def test_sensor_thresholds(self) -> None:
        command = SupermicroDialect().sensor_thresholds("FAN1", "lower", [0, 100, 200])
        assert command.text == "sensor thresh FAN1 lower 0 100 200"

    def test_sensor_thresholds_bad_direction(self) -> None:
        with pytest.raises(ValueError):
            SupermicroDialect().sensor_thresholds("FAN1", "middle", [0, 100, 200])

    def test_parse_fans(self) -> None:
        assert SupermicroDialect.parse_fans(SDR_LIST) == ["FAN1", "FAN2", "FANA", "FAN4"]

    @pytest.mark.parametrize("output,expected", [(" 32\n", 50), ("64", 100), ("", None), ("zz", None)])
    def test_parse_level(self, output: str, expected: object) -> None:
        assert SupermicroDialect.parse_level(output) == expected


class TestDialectFor:
    def test_selects_by_kind(self) -> None:
        assert isinstance(dialect_for(ActuatorKind.ILO4), Ilo4Dialect)
        assert isinstance(dialect_for(ActuatorKind.IPMI), SupermicroDialect)
