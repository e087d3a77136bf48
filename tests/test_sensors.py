"""Tests for temperature sources and the reader fallback chain."""

import json
import subprocess
from pathlib import Path
from typing import List
from unittest.mock import MagicMock, patch

import pytest

from fanpilot.models import Aggregation, Domain, DomainKind, SourceKind
from fanpilot.sensors import (
    IpmiSensorSource,
    SensorReadError,
    SensorsSource,
    SmartSource,
    TemperatureReader,
    ThermalZoneSource,
    aggregate,
    is_plausible,
)
from fanpilot.sensors.sources import run_command

SENSORS_JSON = {
    "coretemp-isa-0000": {
        "Adapter": "ISA adapter",
        "Package id 0": {"temp1_input": 52.0, "temp1_max": 84.0},
        "Core 0": {"temp2_input": 49.0, "temp2_max": 84.0},
    },
    "acpitz-acpi-0": {"temp1": {"temp1_input": 27.8}},
}

IPMI_SDR = """\
CPU1 Temp        | 01h | ok  |  3.1 | 46 degrees C
CPU2 Temp        | 02h | ok  |  3.2 | 51 degrees C
PCH Temp         | 0Ah | ok  |  7.1 | 55 degrees C
Peripheral Temp  | 0Bh | ns  |  7.2 | No Reading
"""

SMART_ATA = """\
ID# ATTRIBUTE_NAME          FLAG     VALUE WORST THRESH TYPE      UPDATED  WHEN_FAILED RAW_VALUE
  9 Power_On_Hours          0x0032   090   090   000    Old_age   Always       -       8812
194 Temperature_Celsius     0x0022   036   049   000    Old_age   Always       -       36 (Min/Max 18/49)
"""

SMART_NVME = """\
SMART/Health Information (NVMe Log 0x02)
Critical Warning:                   0x00
Temperature:                        41 Celsius
"""


def _domain(**overrides) -> Domain:
    data = {"name": "CPU1", "targets": [0], "breakpoints": [(60, 100)], "default_speed": 50}
    data.update(overrides)
    return Domain(**data)


class FixedSource:
    def __init__(self, kind: SourceKind, values: List[float] = None, error: bool = False) -> None:
        self.kind = kind
        self.values = values or []
        self.error = error
        self.calls = 0

    def read(self, domain: Domain) -> List[float]:
        self.calls += 1
        if self.error:
            raise SensorReadError("boom", source=self.kind)
        return list(self.values)


class TestAggregate:
    """Tests for reading aggregation."""

    def test_max(self) -> None:
        assert aggregate([41.5, 52.9, 47.0], Aggregation.MAX) == 52

    def test_min(self) -> None:
        assert aggregate([41.5, 52.9, 47.0], Aggregation.MIN) == 41

    def test_avg_truncates(self) -> None:
        """Mean of 40, 41 and 43 is 41.33, truncated to 41."""
        assert aggregate([40, 41, 43], Aggregation.AVG) == 41

    def test_empty(self) -> None:
        with pytest.raises(ValueError):
            aggregate([], Aggregation.MAX)


class TestPlausibility:
    """Tests for sanity windows."""

    @pytest.mark.parametrize("value,expected", [(0, False), (0.5, True), (149.9, True), (150, False), (-5, False)])
    def test_cpu_window(self, value: float, expected: bool) -> None:
        assert is_plausible(value, DomainKind.CPU) is expected

    def test_disk_window(self) -> None:
        assert is_plausible(99, DomainKind.DISK) is True
        assert is_plausible(100, DomainKind.DISK) is False


class TestTemperatureReader:
    """Tests for the source fallback chain."""

    def test_first_plausible_source_wins(self) -> None:
        """Later sources are not queried once one succeeds."""
        zone = FixedSource(SourceKind.THERMAL_ZONE, [45.0, 47.5])
        sensors = FixedSource(SourceKind.SENSORS, [60.0])
        reader = TemperatureReader({SourceKind.THERMAL_ZONE: zone, SourceKind.SENSORS: sensors})

        sample = reader.read(_domain())

        assert sample.value == 47
        assert sample.source == SourceKind.THERMAL_ZONE
        assert sensors.calls == 0

    def test_failing_source_falls_through(self) -> None:
        """A source error moves on to the next source."""
        reader = TemperatureReader(
            {
                SourceKind.THERMAL_ZONE: FixedSource(SourceKind.THERMAL_ZONE, error=True),
                SourceKind.SENSORS: FixedSource(SourceKind.SENSORS, [52.0]),
            }
        )
        sample = reader.read(_domain())
        assert sample.value == 52
        assert sample.source == SourceKind.SENSORS

    def test_implausible_values_discarded(self) -> None:
        """Values outside the window are dropped before aggregation."""
        reader = TemperatureReader(
            {
                SourceKind.THERMAL_ZONE: FixedSource(SourceKind.THERMAL_ZONE, [0.0, 255.0]),
                SourceKind.SENSORS: FixedSource(SourceKind.SENSORS, [0.0, 48.0, 200.0]),
            }
        )
        sample = reader.read(_domain())
        assert sample.value == 48
        assert sample.raw_values == [48.0]

    def test_total_failure_is_unavailable(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Every source failing yields the sentinel, not an exception."""
        reader = TemperatureReader({SourceKind.THERMAL_ZONE: FixedSource(SourceKind.THERMAL_ZONE, error=True)})

        sample = reader.read(_domain())

        assert sample.available is False
        assert sample.value is None
        captured = capsys.readouterr()
        assert "temperature_unavailable" in captured.out

    def test_configured_source_order(self) -> None:
        """Domain source list overrides the default order."""
        zone = FixedSource(SourceKind.THERMAL_ZONE, [45.0])
        ipmi = FixedSource(SourceKind.IPMI, [51.0])
        reader = TemperatureReader({SourceKind.THERMAL_ZONE: zone, SourceKind.IPMI: ipmi})

        sample = reader.read(_domain(sources=["ipmi", "thermal_zone"]))

        assert sample.value == 51
        assert zone.calls == 0

    def test_read_all(self) -> None:
        """One sample per domain, keyed by name."""
        reader = TemperatureReader({SourceKind.THERMAL_ZONE: FixedSource(SourceKind.THERMAL_ZONE, [45.0])})
        samples = reader.read_all([_domain(name="CPU1"), _domain(name="CPU2")])
        assert set(samples) == {"CPU1", "CPU2"}


class TestThermalZoneSource:
    """Tests for /sys/class/thermal reads."""

    def _zone(self, base: Path, index: int, content: str) -> None:
        zone = base / f"thermal_zone{index}"
        zone.mkdir()
        (zone / "temp").write_text(content)

    def test_reads_all_zones(self, tmp_path: Path) -> None:
        """Millidegrees are converted to degrees."""
        self._zone(tmp_path, 0, "45000\n")
        self._zone(tmp_path, 1, "52500\n")
        assert ThermalZoneSource(str(tmp_path)).read(_domain()) == [45.0, 52.5]

    def test_selected_zones_and_garbage(self, tmp_path: Path) -> None:
        """Only configured zones are read; unreadable ones are skipped."""
        self._zone(tmp_path, 0, "45000\n")
        self._zone(tmp_path, 1, "garbage\n")
        self._zone(tmp_path, 2, "61000\n")
        values = ThermalZoneSource(str(tmp_path)).read(_domain(thermal_zones=[1, 2, 7]))
        assert values == [61.0]


class TestSensorsSource:
    """Tests for lm-sensors JSON parsing."""

    def test_parse_default_cpu_chips(self) -> None:
        """Without a chip, only known CPU chips are used."""
        assert sorted(SensorsSource.parse(SENSORS_JSON)) == [49.0, 52.0]

    def test_parse_selected_chip(self) -> None:
        """With a chip name, every chip in the (filtered) output counts."""
        data = {"acpitz-acpi-0": SENSORS_JSON["acpitz-acpi-0"]}
        assert SensorsSource.parse(data, "acpitz-acpi-0") == [27.8]

    @patch("fanpilot.sensors.sources.subprocess.run")
    def test_read_invokes_sensors_json(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(returncode=0, stdout=json.dumps(SENSORS_JSON), stderr="")
        values = SensorsSource().read(_domain(sensors_chip="coretemp-isa-0000"))
        assert mock_run.call_args[0][0] == ["sensors", "-j", "coretemp-isa-0000"]
        assert sorted(values) == [49.0, 52.0]

    @patch("fanpilot.sensors.sources.subprocess.run")
    def test_read_bad_json(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(returncode=0, stdout="not json", stderr="")
        with pytest.raises(SensorReadError):
            SensorsSource().read(_domain())


class TestIpmiSensorSource:
    """Tests for 'ipmitool sdr type temperature' parsing."""

    def test_parse_matches_pattern(self) -> None:
        assert IpmiSensorSource.parse(IPMI_SDR, r"CPU.*Temp") == [46.0, 51.0]

    def test_parse_other_pattern(self) -> None:
        assert IpmiSensorSource.parse(IPMI_SDR, r"PCH|Peripheral") == [55.0]

    @patch("fanpilot.sensors.sources.subprocess.run")
    def test_read_uses_base_args(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(returncode=0, stdout=IPMI_SDR, stderr="")
        source = IpmiSensorSource(lambda: ["ipmitool", "-I", "open"])
        assert source.read(_domain()) == [46.0, 51.0]
        assert mock_run.call_args[0][0] == ["ipmitool", "-I", "open", "sdr", "type", "temperature"]


class TestSmartSource:
    """Tests for smartctl parsing."""

    def test_parse_ata(self) -> None:
        assert SmartSource.parse(SMART_ATA) == 36.0

    def test_parse_nvme(self) -> None:
        assert SmartSource.parse(SMART_NVME) == 41.0

    def test_parse_nothing(self) -> None:
        assert SmartSource.parse("no attributes here") is None

    @patch("fanpilot.sensors.sources.subprocess.run")
    def test_read_skips_failing_devices(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """A device that cannot be read does not hide the others."""
        (tmp_path / "sda").touch()
        (tmp_path / "sdb").touch()
        mock_run.side_effect = [
            subprocess.TimeoutExpired(cmd="smartctl", timeout=10),
            MagicMock(returncode=0, stdout=SMART_ATA, stderr=""),
        ]
        domain = _domain(name="HD", kind="disk", disk_devices=[str(tmp_path / "sd[a-z]")])

        assert SmartSource().read(domain) == [36.0]


class TestRunCommand:
    """Tests for the sensor subprocess helper."""

    @patch("fanpilot.sensors.sources.subprocess.run", side_effect=FileNotFoundError("sensors"))
    def test_missing_binary(self, mock_run: MagicMock) -> None:
        with pytest.raises(SensorReadError, match="Cannot run"):
            run_command(["sensors", "-j"], timeout=5)

    @patch("fanpilot.sensors.sources.subprocess.run")
    def test_nonzero_exit_with_output_is_accepted(self, mock_run: MagicMock) -> None:
        """smartctl warning bits still carry usable output."""
        mock_run.return_value = MagicMock(returncode=4, stdout=SMART_ATA, stderr="")
        assert run_command(["smartctl", "-A", "/dev/sda"], timeout=5) == SMART_ATA

    @patch("fanpilot.sensors.sources.subprocess.run")
    def test_nonzero_exit_without_output(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="No such device")
        with pytest.raises(SensorReadError, match="No such device"):
            run_command(["smartctl", "-A", "/dev/sdz"], timeout=5)
