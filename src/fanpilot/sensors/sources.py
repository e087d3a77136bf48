"""Temperature sources.

Each source returns the raw readings it can find for a domain; an empty
list means the source had nothing. Plausibility filtering and aggregation
are done by TemperatureReader.
"""

from __future__ import annotations

import glob
import json
import os
import re
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import structlog

from fanpilot.models import Domain, SourceKind

logger = structlog.get_logger(__name__)

# Chips read when no sensors_chip is configured
CPU_CHIP_PREFIXES = ("coretemp", "k10temp", "zenpower")

IPMI_TEMP_PATTERN = re.compile(r"(-?\d+(?:\.\d+)?)\s*degrees C", re.IGNORECASE)
SMART_ATTRIBUTES = ("Temperature_Celsius", "Airflow_Temperature_Cel", "Temperature_Internal")
NVME_TEMP_PATTERN = re.compile(r"^Temperature:\s+(\d+)\s+Celsius", re.MULTILINE)


class SensorReadError(Exception):
    """Raised when a single source fails to produce readings."""

    def __init__(
        self,
        message: str,
        source: Optional[SourceKind] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        self.message = message
        self.source = source
        self.cause = cause
        super().__init__(message)


class TemperatureSource(Protocol):
    """A place temperatures can be read from."""

    kind: SourceKind

    def read(self, domain: Domain) -> List[float]:
        """Raw readings for the domain in degrees Celsius.

        Raises:
            SensorReadError: The source could not be queried.
        """
        ...


def run_command(args: Sequence[str], timeout: float) -> str:
    """Run a sensor command and return stdout.

    Raises:
        SensorReadError: Command missing, timed out, or exited non-zero.
    """
    try:
        result = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise SensorReadError(f"'{args[0]}' timed out after {timeout:g}s", cause=e) from e
    except OSError as e:
        raise SensorReadError(f"Cannot run '{args[0]}': {e}", cause=e) from e

    # smartctl uses exit bits for disk health warnings while still printing data
    if result.returncode != 0 and not result.stdout:
        raise SensorReadError(
            f"'{' '.join(args[:2])}' exited {result.returncode}: {result.stderr.strip()}"
        )
    return result.stdout


class ThermalZoneSource:
    """Kernel thermal zones under /sys/class/thermal (millidegrees)."""

    kind = SourceKind.THERMAL_ZONE

    def __init__(self, base_path: str = "/sys/class/thermal") -> None:
        self.base_path = Path(base_path)

    def read(self, domain: Domain) -> List[float]:
        if domain.thermal_zones is not None:
            paths = [self.base_path / f"thermal_zone{i}" / "temp" for i in domain.thermal_zones]
        else:
            paths = sorted(self.base_path.glob("thermal_zone*/temp"))

        values: List[float] = []
        for path in paths:
            try:
                values.append(int(path.read_text().strip()) / 1000)
            except (OSError, ValueError) as e:
                logger.debug("thermal_zone_unreadable", path=str(path), error=str(e))
        return values


class SensorsSource:
    """lm-sensors JSON output ('sensors -j')."""

    kind = SourceKind.SENSORS

    def __init__(self, command: str = "sensors", timeout: float = 10.0) -> None:
        self.command = command
        self.timeout = timeout

    def read(self, domain: Domain) -> List[float]:
        args = [self.command, "-j"]
        if domain.sensors_chip:
            args.append(domain.sensors_chip)
        output = run_command(args, self.timeout)
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise SensorReadError("Unparseable sensors output", source=self.kind, cause=e) from e
        return self.parse(data, domain.sensors_chip)

    @staticmethod
    def parse(data: Dict[str, object], chip: Optional[str] = None) -> List[float]:
        """Collect every temp*_input value from the selected chips."""
        values: List[float] = []
        for chip_name, features in data.items():
            if not isinstance(features, dict):
                continue
            if chip is None and not chip_name.startswith(CPU_CHIP_PREFIXES):
                continue
            for feature in features.values():
                if not isinstance(feature, dict):
                    continue
                for key, value in feature.items():
                    if key.startswith("temp") and key.endswith("_input") and isinstance(value, (int, float)):
                        values.append(float(value))
        return values


class IpmiSensorSource:
    """BMC temperature sensors via 'ipmitool sdr type temperature'."""

    kind = SourceKind.IPMI

    def __init__(self, base_args: Callable[[], List[str]], timeout: float = 10.0) -> None:
        """Initialize the source.

        Args:
            base_args: Returns the ipmitool prefix (binary, interface, credentials).
            timeout: Command timeout in seconds.
        """
        self.base_args = base_args
        self.timeout = timeout

    def read(self, domain: Domain) -> List[float]:
        output = run_command(self.base_args() + ["sdr", "type", "temperature"], self.timeout)
        return self.parse(output, domain.ipmi_sensor_pattern)

    @staticmethod
    def parse(output: str, pattern: str) -> List[float]:
        """Values of rows whose sensor name matches ``pattern``."""
        name_pattern = re.compile(pattern, re.IGNORECASE)
        values: List[float] = []
        for line in output.splitlines():
            name = line.split("|", 1)[0].strip()
            if not name or not name_pattern.search(name):
                continue
            match = IPMI_TEMP_PATTERN.search(line)
            if match:
                values.append(float(match.group(1)))
        return values


class SmartSource:
    """Disk temperatures from smartctl SMART attributes."""

    kind = SourceKind.SMART

    def __init__(
        self,
        smartctl_path: str = "/usr/sbin/smartctl",
        timeout: float = 10.0,
        use_sudo: bool = False,
    ) -> None:
        self.smartctl_path = smartctl_path
        self.timeout = timeout
        self.use_sudo = use_sudo

    def devices(self, domain: Domain) -> List[str]:
        """Expand configured device paths and glob patterns."""
        found: List[str] = []
        for pattern in domain.disk_devices:
            matches = sorted(glob.glob(pattern)) if glob.has_magic(pattern) else [pattern]
            found.extend(m for m in matches if os.path.exists(m) and m not in found)
        return found

    def read(self, domain: Domain) -> List[float]:
        values: List[float] = []
        for device in self.devices(domain):
            args = [self.smartctl_path, "-A", device]
            if self.use_sudo and os.geteuid() != 0:
                args.insert(0, "sudo")
            try:
                temp = self.parse(run_command(args, self.timeout))
            except SensorReadError as e:
                logger.debug("smart_read_failed", device=device, error=e.message)
                continue
            if temp is not None:
                values.append(temp)
        return values

    @staticmethod
    def parse(output: str) -> Optional[float]:
        """Temperature from 'smartctl -A' output (ATA attribute table or NVMe log)."""
        for line in output.splitlines():
            parts = line.split()
            if len(parts) >= 10 and parts[1] in SMART_ATTRIBUTES:
                try:
                    return float(parts[9])
                except ValueError:
                    continue
        match = NVME_TEMP_PATTERN.search(output)
        if match:
            return float(match.group(1))
        return None
