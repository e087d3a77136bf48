"""Domain model: one independently cooled thermal zone."""

from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .enums import Aggregation, DomainKind, SourceKind

DEFAULT_SOURCES: Tuple[SourceKind, ...] = (
    SourceKind.THERMAL_ZONE,
    SourceKind.SENSORS,
    SourceKind.IPMI,
)

DEFAULT_DISK_SOURCES: Tuple[SourceKind, ...] = (SourceKind.SMART,)


class SteppedCurve(BaseModel):
    """Level rising in equal steps from ``min_level`` at ``low`` to ``max_level`` at ``high``.

    The Supermicro zone scheme: fans idle at ``min_level`` below ``low`` and
    run at ``max_level`` from ``high`` up.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    low: int
    high: int
    min_level: int = Field(..., ge=0)
    max_level: int = Field(..., ge=0)
    steps: int = Field(default=4, ge=1)

    @model_validator(mode="after")
    def validate_range(self) -> "SteppedCurve":
        if self.high <= self.low:
            raise ValueError(f"high ({self.high}) must be greater than low ({self.low})")
        if self.max_level < self.min_level:
            raise ValueError(f"max_level ({self.max_level}) is below min_level ({self.min_level})")
        return self


class Domain(BaseModel):
    """A thermal zone cooled independently.

    Built from configuration at startup and immutable for the whole run.
    The fan curve derived from ``breakpoints`` lives in the control loop and
    can be reconfigured there; this model only holds the initial table.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., description="Domain identifier, e.g. 'CPU1' or 'HD'")
    kind: DomainKind = Field(default=DomainKind.CPU)
    targets: List[int] = Field(
        ...,
        min_length=1,
        description="iLO fan indices or Supermicro zone ids driven by this domain",
    )
    group: Optional[str] = Field(
        default=None,
        description="Domains in the same group share emergency overrides",
    )

    # Temperature sources
    sources: Optional[List[SourceKind]] = Field(
        default=None,
        description="Sources in priority order (defaults depend on kind)",
    )
    thermal_zones: Optional[List[int]] = Field(
        default=None,
        description="thermal_zone indices to read (all zones if not set)",
    )
    sensors_chip: Optional[str] = Field(
        default=None,
        description="lm-sensors chip name, e.g. 'coretemp-isa-0000'",
    )
    ipmi_sensor_pattern: str = Field(
        default=r"CPU.*Temp",
        description="Regex matched against 'ipmitool sdr type temperature' rows",
    )
    disk_devices: List[str] = Field(
        default_factory=lambda: ["/dev/sd[a-z]"],
        description="Disk device paths or glob patterns for SMART reads",
    )
    aggregation: Aggregation = Field(default=Aggregation.MAX)

    # Fan curve
    breakpoints: List[Tuple[int, int]] = Field(
        ...,
        description="(temperature threshold, fan speed) pairs",
    )
    stepped: Optional[SteppedCurve] = Field(
        default=None,
        description="Generate breakpoints and default_speed from a stepped ramp",
    )
    default_speed: int = Field(..., ge=0, description="Speed below every threshold")
    min_speed: int = Field(default=0, ge=0)
    max_speed: Optional[int] = Field(
        default=None,
        ge=0,
        description="Upper clamp for curve speeds (defaults to the controller limit)",
    )
    hysteresis: float = Field(
        default=0.0,
        ge=0.0,
        description="Temperature change (C) needed before re-evaluating the curve",
    )

    # Safety overrides (fall back to global settings when unset)
    emergency_speed: Optional[int] = Field(default=None, ge=0)
    max_safe_temp: Optional[int] = Field(default=None, gt=0)
    safe_speed: Optional[int] = Field(
        default=None,
        ge=0,
        description="Speed applied on shutdown (defaults to max_speed)",
    )

    @model_validator(mode="before")
    @classmethod
    def expand_stepped_curve(cls, data: Any) -> Any:
        """Fill breakpoints and default_speed from ``stepped``."""
        if not isinstance(data, dict) or data.get("stepped") is None:
            return data
        if data.get("breakpoints"):
            raise ValueError("Configure either breakpoints or stepped, not both")

        from fanpilot.control.curve import stepped_breakpoints

        try:
            stepped = SteppedCurve.model_validate(data["stepped"])
        except ValidationError as e:
            raise ValueError(f"Invalid stepped curve: {e}") from e
        data = dict(data)
        data["stepped"] = stepped
        data["breakpoints"] = [
            tuple(bp)
            for bp in stepped_breakpoints(
                stepped.low, stepped.high, stepped.min_level, stepped.max_level, stepped.steps
            )
        ]
        data.setdefault("default_speed", stepped.min_level)
        return data

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name is not empty."""
        if not v or not v.strip():
            raise ValueError("Domain name cannot be empty")
        return v.strip()

    @field_validator("breakpoints", mode="before")
    @classmethod
    def normalize_breakpoints(cls, v: Any) -> Any:
        """Accept a {threshold: speed} mapping or a list of pairs/dicts."""
        if isinstance(v, dict):
            return [(int(k), int(s)) for k, s in v.items()]
        if isinstance(v, list):
            pairs = []
            for item in v:
                if isinstance(item, dict):
                    pairs.append((item.get("threshold", item.get("temp")), item.get("speed")))
                else:
                    pairs.append(item)
            return pairs
        return v

    @field_validator("breakpoints")
    @classmethod
    def validate_breakpoints(cls, v: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
        """Sort descending by threshold and reject duplicate thresholds."""
        thresholds = [threshold for threshold, _ in v]
        duplicates = sorted({t for t in thresholds if thresholds.count(t) > 1})
        if duplicates:
            raise ValueError(f"Duplicate breakpoint thresholds: {duplicates}")
        for threshold, speed in v:
            if speed < 0:
                raise ValueError(f"Breakpoint speed for {threshold}C must be >= 0, got {speed}")
        return sorted(v, key=lambda pair: pair[0], reverse=True)

    @model_validator(mode="after")
    def validate_speed_range(self) -> "Domain":
        """min_speed must not exceed max_speed."""
        if self.max_speed is not None and self.min_speed > self.max_speed:
            raise ValueError(
                f"min_speed ({self.min_speed}) exceeds max_speed ({self.max_speed}) "
                f"for domain '{self.name}'"
            )
        return self

    @property
    def source_order(self) -> List[SourceKind]:
        """Configured sources, or the defaults for this domain kind."""
        if self.sources:
            return list(self.sources)
        if self.kind == DomainKind.DISK:
            return list(DEFAULT_DISK_SOURCES)
        return list(DEFAULT_SOURCES)

    def shares_actuator_with(self, other: "Domain") -> bool:
        """True if both domains drive a common target or share a group."""
        if self.group is not None and self.group == other.group:
            return True
        return bool(set(self.targets) & set(other.targets))
