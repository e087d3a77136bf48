"""Load fanpilot settings from YAML, environment variables and secret files.

Precedence, highest first: ``FANPILOT_*`` environment variables, secrets
named by ``FANPILOT_*_FILE`` variables, the YAML file, then defaults.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import structlog
import yaml
from pydantic import ValidationError

from fanpilot.config.settings import FanPilotSettings

ENV_PREFIX = "FANPILOT_"
SECRET_SUFFIX = "_FILE"

log = structlog.get_logger(__name__)

# Remembered by load_config so SIGHUP re-reads the same file
_config_path: Optional[str] = None


class ConfigurationError(Exception):
    """The configuration file or a secret file cannot be read."""


def read_secret_files(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Values of ``FANPILOT_<NAME>_FILE`` secrets, keyed by ``FANPILOT_<NAME>``.

    Example:
        FANPILOT_PASSWORD_FILE=/run/secrets/ilo_password
        -> {"FANPILOT_PASSWORD": "<file contents>"}

    A missing file is logged and skipped so that validation reports the
    missing value itself.

    Raises:
        ConfigurationError: A secret file exists but cannot be read.
    """
    environ = os.environ if environ is None else environ
    secrets: Dict[str, str] = {}
    for key, filename in environ.items():
        if not (key.startswith(ENV_PREFIX) and key.endswith(SECRET_SUFFIX)):
            continue
        path = Path(filename)
        if not path.exists():
            log.warning("secret_file_not_found", env_var=key, path=filename)
            continue
        try:
            secrets[key[: -len(SECRET_SUFFIX)]] = path.read_text().strip()
        except OSError as e:
            raise ConfigurationError(f"Cannot read secret file '{filename}' named by {key}: {e}") from e
    return secrets


def check_yaml_file(path: str) -> None:
    """Fail early with a readable message for a file pydantic would skip.

    Raises:
        ConfigurationError: Missing, unreadable, malformed, or not a mapping.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(
            f"Configuration file not found: {path}\n"
            "Point --config or CONFIG_PATH at the YAML file that lists your domains."
        ) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping, got {type(data).__name__}")


def _location(loc: Any) -> str:
    """('domains', 0, 'breakpoints') -> 'domains[0].breakpoints'."""
    text = ""
    for part in loc:
        if isinstance(part, int):
            text += f"[{part}]"
        else:
            text += f".{part}" if text else str(part)
    return text


def describe_errors(errors: List[Dict[str, Any]]) -> List[str]:
    """One readable line per pydantic error."""
    messages: List[str] = []
    for error in errors:
        where = _location(error.get("loc", ()))
        msg = error.get("msg", "Invalid value")
        value = error.get("input")

        if not where:
            messages.append(f"Configuration error: {msg}")
        elif error.get("type") == "missing":
            if where == "domains" or "." in where or "[" in where:
                hint = "Add it to the config file."
            else:
                hint = f"Set {ENV_PREFIX}{where.upper()} or add '{where}:' to the config file."
            messages.append(f"Configuration error: '{where}' is required. {hint}")
        elif value is not None and not isinstance(value, (dict, list)):
            messages.append(f"Configuration error: '{where}' {msg}, got: {value}")
        else:
            messages.append(f"Configuration error: '{where}' {msg}")
    return messages


def load_config(config_path: Optional[str] = None) -> FanPilotSettings:
    """Load and validate configuration.

    Args:
        config_path: YAML file; overrides CONFIG_PATH when given.

    Raises:
        ConfigurationError: The YAML file or a secret file cannot be read.
        SystemExit: Validation failed (code 1, errors printed to stderr).
    """
    global _config_path

    if config_path:
        os.environ["CONFIG_PATH"] = config_path
    path = os.environ.get("CONFIG_PATH")
    if path:
        check_yaml_file(path)

    for key, value in read_secret_files().items():
        os.environ.setdefault(key, value)

    try:
        settings = FanPilotSettings()
    except ValidationError as e:
        for message in describe_errors(e.errors()):
            print(message, file=sys.stderr)
        sys.exit(1)

    _config_path = path
    log.debug("config_loaded", path=path, domains=[d.name for d in settings.domains])
    return settings


def reload_config() -> FanPilotSettings:
    """Load the file last passed to load_config again (used on SIGHUP)."""
    return load_config(_config_path)
