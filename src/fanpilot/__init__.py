"""
fanpilot - Temperature-driven fan control for HP iLO4 and Supermicro BMCs.

This package reads CPU and disk temperatures, maps them to fan speeds through
configurable fan curves, and pushes the resulting commands to a remote
management controller (iLO4 over SSH, or a Supermicro BMC through ipmitool).

Features:
- Configuration via YAML with environment variable overrides
- Docker secrets support for sensitive credentials
- Structured logging (JSON for production, text for development)
- Robust actuator command handling with retry, timeout and session recovery
- Emergency fan speeds on overheating or lost sensing
"""

__version__ = "0.3.0"
__all__ = ["__version__"]
