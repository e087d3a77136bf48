"""TemperatureSample model for one domain reading."""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import SourceKind


class TemperatureSample(BaseModel):
    """A single aggregated temperature reading for one domain.

    ``value`` is ``None`` when no source produced a plausible reading
    (the "unavailable" sentinel). Samples are produced once per cycle and
    never mutated.
    """

    model_config = ConfigDict(frozen=True)

    domain: str = Field(..., description="Domain name this reading belongs to")
    value: Optional[int] = Field(default=None, description="Degrees Celsius, None if unavailable")
    source: Optional[SourceKind] = Field(default=None, description="Source that produced the value")
    raw_values: List[float] = Field(
        default_factory=list,
        description="Plausible raw readings before aggregation",
    )
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def available(self) -> bool:
        """Whether this sample carries a usable temperature."""
        return self.value is not None

    @classmethod
    def unavailable(cls, domain: str) -> "TemperatureSample":
        """Build the sentinel sample for a domain with no usable reading."""
        return cls(domain=domain, value=None)
