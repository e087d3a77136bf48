"""File-based health check for container and systemd monitoring.

The status file contains JSON with the current health state and timestamp,
rewritten after every control cycle.

Docker HEALTHCHECK example:
    HEALTHCHECK --interval=60s --timeout=3s --retries=3 \\
        CMD python -c "import json; h=json.loads(open('/tmp/fanpilot-health').read()); exit(0 if h['status'] in ('healthy', 'degraded') else 1)"

Example usage:
    from fanpilot.health import update_health_status, HealthStatus

    update_health_status(HealthStatus.STARTING)
    update_health_status(HealthStatus.HEALTHY, {"cycle": 12})
    update_health_status(HealthStatus.EMERGENCY, {"domains": ["CPU1"]})
    clear_health_status()
"""

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

HEALTH_FILE = Path("/tmp/fanpilot-health")


class HealthStatus(Enum):
    """Health status values for the control service.

    Values:
        STARTING: Initializing or applying the baseline
        HEALTHY: Every domain read and commanded normally
        DEGRADED: Running, but a reading or command failed this cycle
        EMERGENCY: At least one domain is forced to emergency speed
        UNHEALTHY: The cycle failed or the actuator session is lost
    """

    STARTING = "starting"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    EMERGENCY = "emergency"
    UNHEALTHY = "unhealthy"


def _resolve(path: Optional[Union[str, Path]]) -> Path:
    return Path(path) if path else HEALTH_FILE


def update_health_status(
    status: HealthStatus,
    details: Optional[Dict[str, Any]] = None,
    path: Optional[Union[str, Path]] = None,
) -> None:
    """Write health status to file.

    Args:
        status: Current health status of the service.
        details: Optional dictionary with additional status information.
        path: Health file location (defaults to /tmp/fanpilot-health).
    """
    health_data = {
        "status": status.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details or {},
    }
    _resolve(path).write_text(json.dumps(health_data, default=str))


def get_health_status(path: Optional[Union[str, Path]] = None) -> Optional[Dict[str, Any]]:
    """Read current health status from file.

    Returns:
        Dictionary with health status data, or None if the file is missing
        or unreadable.
    """
    health_file = _resolve(path)
    if not health_file.exists():
        return None
    try:
        return json.loads(health_file.read_text())
    except (json.JSONDecodeError, OSError):
        return None


def clear_health_status(path: Optional[Union[str, Path]] = None) -> None:
    """Remove health file on shutdown."""
    _resolve(path).unlink(missing_ok=True)
