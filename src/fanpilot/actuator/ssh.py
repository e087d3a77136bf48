"""SSH transport for HP iLO4 fan commands.

Keeps one persistent paramiko session to the iLO and runs each fan command
as a separate exec request on it. Output is classified into success,
explicit rejection and session expiry.
"""

from __future__ import annotations

import re
import socket
import threading
from typing import Optional

import paramiko
from paramiko import MissingHostKeyPolicy, PKey
import structlog

from .exceptions import (
    ActuatorTimeout,
    AuthenticationFailed,
    CommandRejected,
    SessionExpired,
    TransportUnavailable,
)

logger = structlog.get_logger(__name__)

# Phrases the iLO CLI prints when the SMASH session is gone
SESSION_EXPIRED_PATTERN = re.compile(
    r"session (?:has )?(?:timed out|expired)|not logged in|session is not active",
    re.IGNORECASE,
)

# Explicit failures reported in the iLO status block
REJECTED_PATTERN = re.compile(
    r"status=[1-9]|COMMAND PROCESSING FAILED|COMMAND ERROR|invalid (?:command|option|argument)",
    re.IGNORECASE,
)

# iLO4 only offers RSA host keys signed with SHA-1
LEGACY_PUBKEY_ALGORITHMS = {"pubkeys": ["rsa-sha2-512", "rsa-sha2-256"]}


class WarningHostKeyPolicy(MissingHostKeyPolicy):
    """Host key policy that logs a warning but allows connections.

    iLO host keys change on every firmware reset, so strict known_hosts
    checking is impractical for a home lab. The first connection is logged
    with the fingerprint so it can be pinned later.
    """

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: PKey,
    ) -> None:
        """Log warning when host key is not in known_hosts."""
        logger.warning(
            "ssh_host_key_not_verified",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=key.get_fingerprint().hex(":"),
            hint="Set FANPILOT_SSH_HOST_KEY_FINGERPRINT for strict validation",
        )


class FingerprintVerifyPolicy(MissingHostKeyPolicy):
    """Host key policy that rejects keys not matching an expected fingerprint."""

    def __init__(self, expected_fingerprint: str) -> None:
        super().__init__()
        self.expected = expected_fingerprint.lower().replace(":", "")

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: PKey,
    ) -> None:
        """Verify host key fingerprint matches expected value."""
        actual = key.get_fingerprint().hex()
        if actual != self.expected:
            raise paramiko.SSHException(
                f"Host key fingerprint mismatch for {hostname}: "
                f"expected {self.expected}, got {actual}"
            )
        logger.info(
            "ssh_host_key_verified",
            hostname=hostname,
            key_type=key.get_name(),
        )


class SSHTransport:
    """Runs iLO CLI commands over a persistent SSH session.

    Example:
        >>> transport = SSHTransport(host="10.0.0.5", username="fan", password="secret")
        >>> transport.execute("fan p 3 max 40", timeout=30)
        'status=0\\nstatus_tag=COMMAND COMPLETED\\n'
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: Optional[str] = None,
        port: int = 22,
        key_filename: Optional[str] = None,
        connect_timeout: float = 30.0,
        host_key_fingerprint: Optional[str] = None,
    ) -> None:
        """Initialize the transport. No connection is made until first use.

        Args:
            host: iLO hostname or IP address.
            username: iLO username.
            password: iLO password (omit for key authentication).
            port: SSH port.
            key_filename: Private key file for key authentication.
            connect_timeout: TCP/SSH handshake timeout in seconds.
            host_key_fingerprint: Expected host key fingerprint (hex with colons).
                If provided, connection fails if fingerprint doesn't match.
        """
        self.host = host
        self.username = username
        self.password = password
        self.port = port
        self.key_filename = key_filename
        self.connect_timeout = connect_timeout
        self.host_key_fingerprint = host_key_fingerprint
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    def execute(self, command: str, timeout: float) -> str:
        """Run one iLO CLI command and return its output.

        Raises:
            SessionExpired: The SSH session dropped or the iLO reports an expired session.
            CommandRejected: The iLO reported an explicit error.
            ActuatorTimeout: No complete answer within ``timeout`` seconds.
            TransportUnavailable: Connection could not be (re)opened.
            AuthenticationFailed: Credentials were refused.
        """
        with self._lock:
            client = self._ensure_connected()
            try:
                stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
                channel = stdout.channel
                channel.settimeout(timeout)

                output = stdout.read().decode("utf-8", errors="replace")
                error_output = stderr.read().decode("utf-8", errors="replace")
                exit_status = channel.recv_exit_status()
            except (socket.timeout, TimeoutError) as e:
                # A half-read channel cannot be reused safely
                self._drop_client()
                raise ActuatorTimeout(timeout=timeout, command=command) from e
            except paramiko.SSHException as e:
                self._drop_client()
                raise SessionExpired(f"SSH session lost: {e}", command=command) from e
            except (EOFError, OSError) as e:
                self._drop_client()
                raise SessionExpired(f"SSH channel closed: {e}", command=command) from e

        combined = f"{output}\n{error_output}"
        if SESSION_EXPIRED_PATTERN.search(combined):
            self._drop_client()
            raise SessionExpired("iLO session expired", command=command)
        if exit_status != 0 or REJECTED_PATTERN.search(combined):
            raise CommandRejected(
                message=f"iLO rejected command (exit {exit_status}): {combined.strip()}",
                output=combined,
                command=command,
            )

        logger.debug("ssh_command_completed", host=self.host, command=command)
        return output

    def is_reachable(self) -> bool:
        """TCP probe of the SSH port."""
        try:
            with socket.create_connection((self.host, self.port), timeout=self.connect_timeout):
                return True
        except OSError as e:
            logger.debug("ssh_port_unreachable", host=self.host, port=self.port, error=str(e))
            return False

    def is_session_alive(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def reconnect(self) -> None:
        with self._lock:
            self._drop_client()
            self._ensure_connected()
        logger.info("ssh_session_reestablished", host=self.host)

    def close(self) -> None:
        with self._lock:
            self._drop_client()

    def abort(self) -> None:
        # Closing the paramiko transport wakes a blocked channel read; the
        # reading thread then drops the client under its own lock
        client = self._client
        if client is not None:
            client.close()
            logger.info("ssh_session_aborted", host=self.host)

    def _ensure_connected(self) -> paramiko.SSHClient:
        if self._client is not None and self.is_session_alive():
            return self._client
        self._drop_client()
        self._client = self._connect()
        return self._client

    def _drop_client(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.debug("ssh_close_failed", host=self.host, error=str(e))
            self._client = None

    def _connect(self) -> paramiko.SSHClient:
        """Establish SSH connection to the iLO.

        Raises:
            AuthenticationFailed: Credentials were refused.
            TransportUnavailable: Connection failed.
        """
        client = paramiko.SSHClient()

        if self.host_key_fingerprint:
            client.set_missing_host_key_policy(
                FingerprintVerifyPolicy(self.host_key_fingerprint)
            )
        else:
            client.set_missing_host_key_policy(WarningHostKeyPolicy())

        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                key_filename=self.key_filename,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
                disabled_algorithms=LEGACY_PUBKEY_ALGORITHMS,
            )
            transport = client.get_transport()
            if transport is not None:
                transport.set_keepalive(10)
            logger.debug("ssh_connected", host=self.host, port=self.port)
            return client
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthenticationFailed(
                message=f"SSH authentication to {self.host} failed"
            ) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransportUnavailable(
                message=f"SSH connection to {self.endpoint} failed: {e}"
            ) from e
