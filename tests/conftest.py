"""Shared fixtures for fanpilot tests."""

from typing import Any, Callable, Dict, List, Optional

import pytest
import structlog

from fanpilot.config import FanPilotSettings
from fanpilot.models import Domain, SourceKind, TemperatureSample


@pytest.fixture(autouse=True)
def reset_structlog() -> None:
    """Log to the (captured) stdout of each test, whatever a test configured before."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host configuration out of settings built in tests."""
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    monkeypatch.chdir("/")


CPU_BREAKPOINTS = [(90, 255), (80, 200), (70, 150), (60, 100), (50, 75)]


def cpu_domain(name: str = "CPU1", targets: Optional[List[int]] = None, **overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "name": name,
        "kind": "cpu",
        "targets": targets if targets is not None else [0, 1],
        "breakpoints": CPU_BREAKPOINTS,
        "default_speed": 50,
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_settings() -> Callable[..., FanPilotSettings]:
    """Build validated settings for an iLO4 with a single CPU domain by default."""

    def _make(**overrides: Any) -> FanPilotSettings:
        data: Dict[str, Any] = {
            "actuator": "ilo4",
            "host": "ilo.example.net",
            "username": "admin",
            "password": "secret",
            "domains": [cpu_domain()],
            "health_file": "",
        }
        data.update(overrides)
        return FanPilotSettings(**data)

    return _make


class FakeReader:
    """TemperatureReader stand-in returning scripted values per domain.

    Each domain gets a list of values consumed one per read; the last value
    repeats. None means unavailable.
    """

    def __init__(self, values: Dict[str, List[Optional[int]]]) -> None:
        self.values = {name: list(seq) for name, seq in values.items()}
        self.reads: List[str] = []

    def read(self, domain: Domain) -> TemperatureSample:
        self.reads.append(domain.name)
        seq = self.values[domain.name]
        value = seq.pop(0) if len(seq) > 1 else seq[0]
        if value is None:
            return TemperatureSample.unavailable(domain.name)
        return TemperatureSample(domain=domain.name, value=value, source=SourceKind.THERMAL_ZONE)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
