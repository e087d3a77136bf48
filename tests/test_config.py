"""Tests for settings validation and configuration loading."""

import os
from pathlib import Path
from typing import Callable

import pytest
from pydantic import ValidationError

from fanpilot.config import ConfigurationError, FanPilotSettings, load_config, loader, reload_config
from fanpilot.models import ActuatorKind, Domain

from conftest import cpu_domain

YAML_CONFIG = """\
actuator: ilo4
host: 10.0.0.5
username: admin
password: secret
poll_interval: 20
domains:
  - name: CPU1
    targets: [0, 1, 2]
    breakpoints: {90: 255, 70: 150}
    default_speed: 60
  - name: HD
    kind: disk
    targets: [3]
    breakpoints: [[45, 200], [40, 120]]
    default_speed: 40
"""


@pytest.fixture(autouse=True)
def restore_environ(monkeypatch: pytest.MonkeyPatch) -> None:
    """load_config writes CONFIG_PATH and resolved secrets into os.environ."""
    saved = dict(os.environ)
    monkeypatch.setattr(loader, "_config_path", None)
    yield
    os.environ.clear()
    os.environ.update(saved)


@pytest.fixture
def config_file(tmp_path: Path) -> Callable[[str], str]:
    def _write(content: str) -> str:
        path = tmp_path / "config.yaml"
        path.write_text(content)
        return str(path)

    return _write


class TestSettingsValidation:
    """Tests for FanPilotSettings validators."""

    def test_ilo4_requires_host(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        with pytest.raises(ValidationError, match="host is required"):
            make_settings(host="   ")

    def test_ilo4_requires_credentials(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        with pytest.raises(ValidationError, match="password or ssh_key_filename"):
            make_settings(password="")

    def test_key_file_instead_of_password(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        settings = make_settings(password="", ssh_key_filename="/root/.ssh/id_ilo")
        assert settings.ssh_key_filename == "/root/.ssh/id_ilo"

    def test_local_ipmi_needs_no_credentials(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        settings = make_settings(
            actuator="ipmi",
            host=None,
            username=None,
            password="",
            domains=[cpu_domain(targets=[0], breakpoints=[(70, 100)], default_speed=30)],
        )
        assert settings.actuator == ActuatorKind.IPMI
        assert settings.speed_limit == 100

    def test_remote_ipmi_requires_username(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        with pytest.raises(ValidationError, match="username is required"):
            make_settings(
                actuator="ipmi",
                username=None,
                domains=[cpu_domain(breakpoints=[(70, 100)], default_speed=30)],
            )

    def test_speed_above_ipmi_limit(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        """iLO-sized curves do not fit a Supermicro duty cycle."""
        with pytest.raises(ValidationError, match="above the ipmi limit 100"):
            make_settings(actuator="ipmi", host=None, username=None)

    def test_emergency_speed_above_limit(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        with pytest.raises(ValidationError, match="emergency_speed 300"):
            make_settings(emergency_speed=300)

    def test_duplicate_domain_names(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        with pytest.raises(ValidationError, match="Duplicate domain names"):
            make_settings(domains=[cpu_domain(), cpu_domain(targets=[4])])

    def test_domains_required(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        with pytest.raises(ValidationError):
            make_settings(domains=[])

    @pytest.mark.parametrize("level,expected", [("debug", "DEBUG"), ("warn", "WARNING"), ("Error", "ERROR")])
    def test_log_level_normalized(
        self, make_settings: Callable[..., FanPilotSettings], level: str, expected: str
    ) -> None:
        assert make_settings(log_level=level).log_level == expected

    def test_invalid_log_level(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        with pytest.raises(ValidationError, match="Invalid log level"):
            make_settings(log_level="LOUD")

    @pytest.mark.parametrize("values", [[0, 100], [200, 100, 0]])
    def test_threshold_triplet(self, make_settings: Callable[..., FanPilotSettings], values: list) -> None:
        with pytest.raises(ValidationError):
            make_settings(threshold_lower=values)


class TestSpeedHelpers:
    """Tests for per-domain fallbacks to global settings."""

    def test_emergency_speed_precedence(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        """Domain value, then global value, then the controller limit."""
        settings = make_settings(
            emergency_speed=240,
            domains=[cpu_domain("CPU1", emergency_speed=220), cpu_domain("CPU2", [2])],
        )
        assert settings.emergency_speed_for(settings.get_domain("CPU1")) == 220
        assert settings.emergency_speed_for(settings.get_domain("CPU2")) == 240

        default = make_settings()
        assert default.emergency_speed_for(default.domains[0]) == 255

    def test_safe_speed_falls_back_to_max_speed(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        settings = make_settings(
            domains=[cpu_domain("CPU1", max_speed=200), cpu_domain("CPU2", [2], safe_speed=180), cpu_domain("CPU3", [3])]
        )
        assert settings.safe_speed_for(settings.get_domain("CPU1")) == 200
        assert settings.safe_speed_for(settings.get_domain("CPU2")) == 180
        assert settings.safe_speed_for(settings.get_domain("CPU3")) == 255

    def test_max_safe_temp_override(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        settings = make_settings(domains=[cpu_domain(max_safe_temp=70)])
        assert settings.max_safe_temp_for(settings.domains[0]) == 70

    def test_get_unknown_domain(self, make_settings: Callable[..., FanPilotSettings]) -> None:
        assert make_settings().get_domain("GPU") is None


class TestLoadConfig:
    """Tests for load_config precedence and error reporting."""

    def test_yaml_file(self, config_file: Callable[[str], str]) -> None:
        settings = load_config(config_file(YAML_CONFIG))

        assert settings.host == "10.0.0.5"
        assert settings.poll_interval == 20
        cpu, hd = settings.domains
        assert isinstance(cpu, Domain)
        assert cpu.breakpoints == [(90, 255), (70, 150)]
        assert hd.breakpoints == [(45, 200), (40, 120)]

    def test_environment_overrides_yaml(
        self, config_file: Callable[[str], str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("FANPILOT_POLL_INTERVAL", "15")
        monkeypatch.setenv("FANPILOT_HOST", "ilo-2.example.net")

        settings = load_config(config_file(YAML_CONFIG))

        assert settings.poll_interval == 15
        assert settings.host == "ilo-2.example.net"

    def test_password_from_secret_file(
        self, config_file: Callable[[str], str], monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        """FANPILOT_PASSWORD_FILE is read and stripped."""
        secret = tmp_path / "ilo_password"
        secret.write_text("s3cret\n")
        monkeypatch.setenv("FANPILOT_PASSWORD_FILE", str(secret))

        settings = load_config(config_file(YAML_CONFIG.replace("password: secret\n", "")))

        assert settings.password == "s3cret"

    def test_missing_secret_file_is_logged(
        self,
        config_file: Callable[[str], str],
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("FANPILOT_PASSWORD_FILE", "/nonexistent/secret")

        load_config(config_file(YAML_CONFIG))

        assert "secret_file_not_found" in capsys.readouterr().out

    def test_validation_error_exits(
        self, config_file: Callable[[str], str], capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Invalid configuration prints readable errors and exits with 1."""
        path = config_file("actuator: ilo4\nhost: 10.0.0.5\nusername: admin\npassword: x\n")

        with pytest.raises(SystemExit) as exc_info:
            load_config(path)

        assert exc_info.value.code == 1
        assert "'domains' is required" in capsys.readouterr().err

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, config_file: Callable[[str], str]) -> None:
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(config_file("domains: [unclosed\n"))

    def test_yaml_must_be_a_mapping(self, config_file: Callable[[str], str]) -> None:
        with pytest.raises(ConfigurationError, match="must contain a mapping"):
            load_config(config_file("- CPU1\n- HD\n"))

    def test_nested_error_location(
        self, config_file: Callable[[str], str], capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Errors inside a domain name its position in the list."""
        with pytest.raises(SystemExit):
            load_config(config_file(YAML_CONFIG.replace("targets: [3]", "targets: []")))

        assert "'domains[1].targets'" in capsys.readouterr().err

    def test_reload_rereads_the_same_file(self, config_file: Callable[[str], str]) -> None:
        """SIGHUP picks up an edited curve from the file given at startup."""
        path = config_file(YAML_CONFIG)
        load_config(path)
        Path(path).write_text(YAML_CONFIG.replace("{90: 255, 70: 150}", "{85: 255, 65: 120}"))

        settings = reload_config()

        assert settings.domains[0].breakpoints == [(85, 255), (65, 120)]

    def test_stepped_zone_curve(self, config_file: Callable[[str], str]) -> None:
        """A Supermicro zone can use the stepped ramp instead of a table."""
        settings = load_config(
            config_file(
                "actuator: ipmi\n"
                "domains:\n"
                "  - name: CPU\n"
                "    targets: [0]\n"
                "    stepped: {low: 30, high: 70, min_level: 10, max_level: 100, steps: 4}\n"
            )
        )

        cpu = settings.domains[0]
        assert cpu.breakpoints[0] == (70, 100)
        assert cpu.default_speed == 10
