"""Temperature reader with a fallback chain over sources.

Tries the domain's sources in priority order and accepts the first one that
yields a plausible reading. Total failure is reported as an unavailable
sample, never as an exception.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Sequence, Tuple

import structlog

from fanpilot.models import Aggregation, Domain, DomainKind, SourceKind, TemperatureSample

from .sources import SensorReadError, TemperatureSource

logger = structlog.get_logger(__name__)

# Exclusive plausibility windows in degrees Celsius
SANITY_WINDOWS: Dict[DomainKind, Tuple[float, float]] = {
    DomainKind.CPU: (0.0, 150.0),
    DomainKind.DISK: (0.0, 100.0),
}


def is_plausible(value: float, kind: DomainKind) -> bool:
    low, high = SANITY_WINDOWS[kind]
    return low < value < high


def aggregate(values: Sequence[float], method: Aggregation) -> int:
    """Reduce several readings to one integer temperature.

    The mean is truncated toward zero, min and max are truncated after
    selection.
    """
    if not values:
        raise ValueError("Cannot aggregate an empty list of readings")
    if method == Aggregation.MIN:
        return int(min(values))
    if method == Aggregation.MAX:
        return int(max(values))
    return int(sum(values) / len(values))


class TemperatureReader:
    """Reads one aggregated temperature per domain.

    Example:
        >>> reader = TemperatureReader({SourceKind.THERMAL_ZONE: ThermalZoneSource()})
        >>> sample = reader.read(domain)
        >>> sample.value
        47
    """

    def __init__(self, sources: Mapping[SourceKind, TemperatureSource]) -> None:
        """Initialize the reader.

        Args:
            sources: Available source implementations keyed by kind. Domains
                listing a kind that is not present here skip it.
        """
        self.sources = dict(sources)

    def read(self, domain: Domain) -> TemperatureSample:
        """Read the domain's temperature from the first source with plausible values."""
        for kind in domain.source_order:
            source = self.sources.get(kind)
            if source is None:
                continue

            try:
                raw = source.read(domain)
            except SensorReadError as e:
                logger.debug("sensor_source_failed", domain=domain.name, source=kind.value, error=e.message)
                continue

            plausible: List[float] = [v for v in raw if is_plausible(v, domain.kind)]
            if not plausible:
                logger.debug(
                    "sensor_source_no_plausible_values",
                    domain=domain.name,
                    source=kind.value,
                    raw=raw,
                )
                continue

            value = aggregate(plausible, domain.aggregation)
            logger.debug(
                "temperature_read",
                domain=domain.name,
                source=kind.value,
                temperature=value,
                readings=len(plausible),
            )
            return TemperatureSample(
                domain=domain.name,
                value=value,
                source=kind,
                raw_values=plausible,
            )

        logger.warning("temperature_unavailable", domain=domain.name)
        return TemperatureSample.unavailable(domain.name)

    def read_all(self, domains: Sequence[Domain]) -> Dict[str, TemperatureSample]:
        return {domain.name: self.read(domain) for domain in domains}
