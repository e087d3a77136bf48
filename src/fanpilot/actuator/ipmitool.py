"""ipmitool transport for Supermicro BMCs.

Every command is a separate ipmitool invocation, either in-band (local
/dev/ipmi0) or over LAN with the lanplus interface. ipmitool has no
persistent session, so "session alive" means the BMC answers a probe.
"""

from __future__ import annotations

import os
import re
import shlex
import subprocess
from typing import List, Optional

import structlog

from .exceptions import (
    ActuatorError,
    ActuatorTimeout,
    AuthenticationFailed,
    CommandRejected,
    SessionExpired,
    TransportUnavailable,
)

logger = structlog.get_logger(__name__)

AUTH_FAILURE_PATTERN = re.compile(
    r"RAKP|unauthorized name|invalid (?:user ?name|password)|password verification",
    re.IGNORECASE,
)
SESSION_FAILURE_PATTERN = re.compile(
    r"session (?:timeout|expired|invalid)|invalid session|no session slot",
    re.IGNORECASE,
)
CONNECT_FAILURE_PATTERN = re.compile(
    r"unable to establish|could not open device|no response|connection refused",
    re.IGNORECASE,
)

PROBE_COMMAND = "mc info"


class IpmiToolTransport:
    """Runs ipmitool commands locally or against a remote BMC."""

    def __init__(
        self,
        ipmitool_path: str = "/usr/bin/ipmitool",
        host: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        interface: str = "lanplus",
        use_sudo: bool = False,
        probe_timeout: float = 10.0,
    ) -> None:
        """Initialize the transport.

        Args:
            ipmitool_path: Path to the ipmitool binary.
            host: BMC address. If None, ipmitool talks to the local BMC.
            username: BMC user for remote access.
            password: BMC password for remote access.
            interface: ipmitool interface for remote access.
            use_sudo: Prefix commands with sudo when not running as root.
            probe_timeout: Timeout for liveness probes and pings.
        """
        self.ipmitool_path = ipmitool_path
        self.host = host
        self.username = username
        self.password = password
        self.interface = interface
        self.use_sudo = use_sudo
        self.probe_timeout = probe_timeout

    @property
    def endpoint(self) -> str:
        return self.host or "local-bmc"

    def base_args(self) -> List[str]:
        """ipmitool invocation prefix including remote credentials."""
        args: List[str] = []
        if self.use_sudo and os.geteuid() != 0:
            args.append("sudo")
        args.append(self.ipmitool_path)
        if self.host:
            args.extend(["-I", self.interface, "-H", self.host])
            if self.username:
                args.extend(["-U", self.username])
            if self.password:
                args.extend(["-P", self.password])
        return args

    def execute(self, command: str, timeout: float) -> str:
        """Run ``ipmitool <command>`` and return stdout.

        Raises:
            ActuatorTimeout: ipmitool did not exit within ``timeout``.
            AuthenticationFailed: The BMC refused the credentials.
            SessionExpired: The BMC dropped or rejected the IPMI session.
            TransportUnavailable: The BMC could not be reached or ipmitool is missing.
            CommandRejected: Any other non-zero exit.
        """
        args = self.base_args() + shlex.split(command)
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ActuatorTimeout(timeout=timeout, command=command) from e
        except FileNotFoundError as e:
            raise TransportUnavailable(
                message=f"ipmitool not found at {self.ipmitool_path}",
                hint="Install ipmitool or set FANPILOT_IPMITOOL_PATH.",
                command=command,
            ) from e
        except OSError as e:
            raise TransportUnavailable(message=f"Failed to run ipmitool: {e}", command=command) from e

        if result.returncode == 0:
            logger.debug("ipmitool_command_completed", endpoint=self.endpoint, command=command)
            return result.stdout

        error_output = (result.stderr or result.stdout).strip()
        if AUTH_FAILURE_PATTERN.search(error_output):
            raise AuthenticationFailed(
                message=f"BMC {self.endpoint} refused credentials: {error_output}",
                command=command,
            )
        if SESSION_FAILURE_PATTERN.search(error_output):
            raise SessionExpired(f"IPMI session failure: {error_output}", command=command)
        if CONNECT_FAILURE_PATTERN.search(error_output):
            raise TransportUnavailable(
                message=f"Cannot reach BMC {self.endpoint}: {error_output}",
                command=command,
            )
        raise CommandRejected(
            message=f"ipmitool exited {result.returncode}: {error_output}",
            output=error_output,
            command=command,
        )

    def is_reachable(self) -> bool:
        """One ICMP echo to the BMC; the local BMC is always reachable."""
        if not self.host:
            return True
        try:
            result = subprocess.run(
                ["ping", "-c", "1", "-W", str(max(1, int(self.probe_timeout))), self.host],
                capture_output=True,
                timeout=self.probe_timeout + 1,
                check=False,
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.debug("bmc_ping_failed", host=self.host, error=str(e))
            return False
        return result.returncode == 0

    def is_session_alive(self) -> bool:
        try:
            self.execute(PROBE_COMMAND, timeout=self.probe_timeout)
            return True
        except ActuatorError as e:
            logger.debug("bmc_probe_failed", endpoint=self.endpoint, error=str(e))
            return False

    def reconnect(self) -> None:
        """Open a fresh IPMI session by probing; raises if the BMC stays unavailable."""
        self.execute(PROBE_COMMAND, timeout=self.probe_timeout)
        logger.info("ipmi_session_reestablished", endpoint=self.endpoint)

    def close(self) -> None:
        # Each invocation owns its own session
        pass

    def abort(self) -> None:
        # Each invocation is already bounded by its own timeout
        pass
