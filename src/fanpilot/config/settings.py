"""Pydantic settings models for fanpilot configuration."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Literal, Optional, Tuple, Type

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from fanpilot.models import ActuatorKind, Domain, FanMode

# Speed ceiling per controller family: iLO4 PWM 0-255, Supermicro duty cycle 0-100
SPEED_LIMITS: Dict[ActuatorKind, int] = {
    ActuatorKind.ILO4: 255,
    ActuatorKind.IPMI: 100,
}


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads values from a YAML file.

    The YAML file path is determined by the CONFIG_PATH environment variable.
    """

    def get_field_value(
        self, field: Any, field_name: str
    ) -> Tuple[Any, str, bool]:
        """Get field value from YAML config."""
        yaml_config = self._load_yaml_config()
        field_value = yaml_config.get(field_name)
        return field_value, field_name, False

    def _load_yaml_config(self) -> Dict[str, Any]:
        """Load YAML configuration file."""
        config_path = os.environ.get("CONFIG_PATH")
        if not config_path:
            return {}

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f)
                return data if isinstance(data, dict) else {}
        except (FileNotFoundError, yaml.YAMLError, PermissionError):
            # Errors will be handled by loader.py
            return {}

    def __call__(self) -> Dict[str, Any]:
        """Return the YAML config values."""
        return self._load_yaml_config()


class FanPilotSettings(BaseSettings):
    """fanpilot configuration settings.

    Configuration is loaded in the following precedence (highest to lowest):
    1. Environment variables (FANPILOT_ prefix)
    2. Docker secrets (_FILE pattern, applied via env)
    3. YAML configuration file (via CONFIG_PATH)
    4. Default values

    Instances are treated as immutable once the control loop is built.
    """

    model_config = SettingsConfigDict(
        env_prefix="FANPILOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Actuator endpoint
    actuator: ActuatorKind = Field(
        default=ActuatorKind.ILO4,
        description="Controller family: ilo4 (SSH) or ipmi (ipmitool)",
    )
    host: Optional[str] = Field(
        default=None,
        description="iLO/BMC hostname or IP (leave unset for local in-band ipmitool)",
    )
    username: Optional[str] = Field(default=None, description="iLO/BMC username")
    password: str = Field(default="", description="iLO/BMC password")
    port: Optional[int] = Field(
        default=None,
        description="SSH port for iLO4 (default 22)",
        ge=1,
        le=65535,
    )
    ssh_key_filename: Optional[str] = Field(
        default=None,
        description="Private key for SSH key authentication instead of a password",
    )
    ssh_host_key_fingerprint: Optional[str] = Field(
        default=None,
        description="Expected iLO host key fingerprint (hex with colons)",
    )
    ipmitool_path: str = Field(default="/usr/bin/ipmitool")
    ipmi_interface: str = Field(default="lanplus")
    use_sudo: bool = Field(
        default=False,
        description="Prefix ipmitool/smartctl with sudo when not running as root",
    )

    # Timeout and retry settings
    poll_interval: int = Field(
        default=30,
        description="Seconds between control cycles",
        gt=0,
    )
    command_timeout: float = Field(
        default=30.0,
        description="Timeout for a single actuator command attempt in seconds",
        gt=0,
    )
    command_retries: int = Field(
        default=3,
        description="Attempts per actuator command on transport failure or timeout",
        ge=1,
    )
    retry_delay: float = Field(
        default=3.0,
        description="Fixed delay between command attempts in seconds",
        ge=0,
    )
    empty_output_retries: int = Field(
        default=2,
        description="Extra attempts when a command unexpectedly returns no output",
        ge=0,
    )
    reconnect_attempts: int = Field(
        default=3,
        description="Attempts to re-establish an expired actuator session",
        ge=1,
    )
    reachability_attempts: int = Field(
        default=30,
        description="Network reachability probes before startup fails",
        ge=1,
    )
    reachability_interval: float = Field(default=2.0, ge=0)
    sensor_timeout: float = Field(
        default=10.0,
        description="Timeout for local sensor commands (sensors, smartctl, ipmitool)",
        gt=0,
    )
    health_check_every: int = Field(
        default=10,
        description="Re-validate the actuator session every N cycles",
        ge=1,
    )
    shutdown_timeout: float = Field(
        default=30.0,
        description="Upper bound for the final safe-speed commands on shutdown",
        gt=0,
    )

    # Safety
    max_safe_temp: int = Field(
        default=80,
        description="Temperature (C) at or above which emergency speed is forced",
        gt=0,
    )
    emergency_speed: Optional[int] = Field(
        default=None,
        description="Fan speed forced in emergencies (defaults to the controller limit)",
        ge=0,
    )
    max_consecutive_errors: int = Field(
        default=3,
        description="Consecutive unavailable readings before emergency speed",
        ge=1,
    )
    last_known_good_max_age: float = Field(
        default=120.0,
        description="Seconds a last known good temperature may bridge sensing gaps",
        ge=0,
    )

    # Baseline
    baseline_strict: bool = Field(
        default=False,
        description="Abort startup if any baseline command fails",
    )
    disabled_sensors: List[str] = Field(
        default_factory=list,
        description="iLO4 sensor ids to turn off (e.g. 07FB00)",
    )
    pid_min_low: Optional[int] = Field(
        default=None,
        description="iLO4 PID 'lo' floor applied to every discovered PID",
        ge=0,
    )
    fan_mode: FanMode = Field(
        default=FanMode.FULL,
        description="Supermicro fan mode set before taking manual control",
    )
    fan_mode_delay: float = Field(default=10.0, ge=0)
    set_thresholds: bool = Field(
        default=False,
        description="Write Supermicro fan sensor thresholds to stop BMC takeover",
    )
    threshold_lower: List[int] = Field(default_factory=lambda: [0, 100, 200])
    threshold_upper: List[int] = Field(default_factory=lambda: [1600, 1700, 1800])

    domains: List[Domain] = Field(
        ...,
        min_length=1,
        description="Thermal domains to control",
    )

    # Logging and health
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format: json (production) or text (development)",
    )
    health_file: Optional[str] = Field(
        default="/tmp/fanpilot-health",
        description="Health status file path (empty to disable)",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings sources to set precedence.

        Order (first = highest priority):
        1. init_settings (constructor arguments - rarely used)
        2. env_settings (environment variables with FANPILOT_ prefix)
        3. dotenv_settings (.env file)
        4. yaml_settings (CONFIG_PATH YAML file)
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "WARN", "ERROR", "CRITICAL"}
        normalized = v.upper()
        if normalized == "WARN":
            normalized = "WARNING"
        if normalized not in valid_levels:
            raise ValueError(
                f"Invalid log level '{v}'. Must be one of: DEBUG, INFO, WARNING, ERROR"
            )
        return normalized

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: Optional[str]) -> Optional[str]:
        """Strip host and treat blank as unset."""
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("threshold_lower", "threshold_upper")
    @classmethod
    def validate_threshold_triplet(cls, v: List[int]) -> List[int]:
        """Sensor thresholds are always three ascending values."""
        if len(v) != 3:
            raise ValueError(f"Expected three threshold values, got {len(v)}")
        if v != sorted(v):
            raise ValueError(f"Threshold values must be ascending, got {v}")
        return v

    @model_validator(mode="after")
    def validate_endpoint(self) -> "FanPilotSettings":
        """iLO4 always needs a host and username; remote IPMI needs a username."""
        if self.actuator == ActuatorKind.ILO4:
            if not self.host:
                raise ValueError("host is required when actuator is ilo4")
            if not self.username:
                raise ValueError("username is required when actuator is ilo4")
            if not self.password and not self.ssh_key_filename:
                raise ValueError("password or ssh_key_filename is required for ilo4")
        elif self.host and not self.username:
            raise ValueError("username is required for remote ipmi access")
        return self

    @model_validator(mode="after")
    def validate_domains(self) -> "FanPilotSettings":
        """Domain names are unique and every speed fits the controller range."""
        names = [d.name for d in self.domains]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate domain names: {duplicates}")

        limit = self.speed_limit
        if self.emergency_speed is not None and self.emergency_speed > limit:
            raise ValueError(
                f"emergency_speed {self.emergency_speed} exceeds {self.actuator.value} limit {limit}"
            )
        for domain in self.domains:
            speeds = [domain.default_speed, domain.min_speed]
            speeds.extend(speed for _, speed in domain.breakpoints)
            speeds.extend(
                s
                for s in (domain.max_speed, domain.emergency_speed, domain.safe_speed)
                if s is not None
            )
            too_high = [s for s in speeds if s > limit]
            if too_high:
                raise ValueError(
                    f"Domain '{domain.name}' has speeds above the "
                    f"{self.actuator.value} limit {limit}: {too_high}"
                )
        return self

    @property
    def speed_limit(self) -> int:
        """Highest speed value the configured controller accepts."""
        return SPEED_LIMITS[self.actuator]

    def get_domain(self, name: str) -> Optional[Domain]:
        """Look up a configured domain by name."""
        for domain in self.domains:
            if domain.name == name:
                return domain
        return None

    def max_speed_for(self, domain: Domain) -> int:
        return domain.max_speed if domain.max_speed is not None else self.speed_limit

    def emergency_speed_for(self, domain: Domain) -> int:
        if domain.emergency_speed is not None:
            return domain.emergency_speed
        if self.emergency_speed is not None:
            return self.emergency_speed
        return self.speed_limit

    def max_safe_temp_for(self, domain: Domain) -> int:
        return domain.max_safe_temp if domain.max_safe_temp is not None else self.max_safe_temp

    def safe_speed_for(self, domain: Domain) -> int:
        """Speed applied on shutdown: the domain's safe_speed, else its max_speed."""
        if domain.safe_speed is not None:
            return domain.safe_speed
        return self.max_speed_for(domain)
