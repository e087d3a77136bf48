"""Actuator client: serialized, retried command execution against one endpoint."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

import structlog
from tenacity import RetryError

from fanpilot.models import ActuatorCommand

from .exceptions import (
    ActuatorAborted,
    ActuatorError,
    EmptyOutput,
    ExhaustedRetries,
    SessionExpired,
    SessionRecoveryFailed,
)
from .retry import RetryPolicy
from .transport import Transport

logger = structlog.get_logger(__name__)


class ActuatorClient:
    """Executes fan commands against one management controller.

    Commands are issued one at a time in submission order through a single
    lock, so domains sharing the controller queue on one logical session.
    Each command is retried per the RetryPolicy; an expired session is
    re-established (with its own bounded budget) before the next attempt.

    Example:
        >>> with ActuatorClient(SSHTransport(...), RetryPolicy()) as client:
        ...     client.execute(Ilo4Dialect().set_speed(3, 40))
    """

    def __init__(
        self,
        transport: Transport,
        policy: Optional[RetryPolicy] = None,
        command_timeout: float = 30.0,
        probe: Optional[ActuatorCommand] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            transport: Transport bound to the controller endpoint.
            policy: Retry policy (defaults to 3 attempts, 3 s apart).
            command_timeout: Timeout for each individual attempt in seconds.
            probe: Cheap command used by test_connection().
            sleep: Sleep function between attempts (injectable for tests).
        """
        self.transport = transport
        self.policy = policy or RetryPolicy()
        self.command_timeout = command_timeout
        self.probe = probe
        self._sleep = sleep
        self._lock = threading.Lock()
        self._aborted = threading.Event()
        self.reconnects = 0

    def __enter__(self) -> "ActuatorClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def endpoint(self) -> str:
        return self.transport.endpoint

    def execute(self, command: ActuatorCommand) -> str:
        """Run a command with retry, timeout and session recovery.

        Returns:
            Raw command output.

        Raises:
            CommandRejected: The controller explicitly refused the command.
            AuthenticationFailed: Credentials were refused.
            SessionRecoveryFailed: An expired session could not be restored.
            ExhaustedRetries: Every attempt failed within the retry budget.
        """
        with self._lock:
            return self._execute_locked(command)

    def _execute_locked(self, command: ActuatorCommand) -> str:
        log = logger.bind(endpoint=self.endpoint, command=command.text)
        needs_reconnect = False

        try:
            for attempt in self.policy.retrying(sleep=self._sleep):
                with attempt:
                    self._check_aborted(command.text)
                    if needs_reconnect:
                        self._reestablish_locked()
                        needs_reconnect = False
                    try:
                        output = self.transport.execute(command.text, timeout=self.command_timeout)
                    except SessionExpired:
                        needs_reconnect = True
                        raise
                    if command.expect_output and not output.strip():
                        raise EmptyOutput(command.text)
                    log.debug(
                        "actuator_command_succeeded",
                        attempt=attempt.retry_state.attempt_number,
                    )
                    return output
        except RetryError as e:
            last_error = e.last_attempt.exception()
            log.error(
                "actuator_command_exhausted",
                attempts=e.last_attempt.attempt_number,
                error=str(last_error),
            )
            raise ExhaustedRetries(
                command=command.text,
                attempts=e.last_attempt.attempt_number,
                last_error=last_error,
            ) from last_error

        # tenacity always yields at least one attempt
        raise ExhaustedRetries(command=command.text, attempts=0)

    def test_connection(self) -> bool:
        """Probe the controller; True if it answered."""
        if self.probe is None:
            return self.transport.is_session_alive()
        try:
            self.execute(self.probe)
            return True
        except ActuatorError as e:
            logger.warning(
                "actuator_probe_failed",
                endpoint=self.endpoint,
                error_type=type(e).__name__,
                error=e.message,
            )
            return False

    def is_reachable(self) -> bool:
        return self.transport.is_reachable()

    def reestablish_session(self) -> None:
        """Recreate the session, waiting for any in-flight command first.

        Raises:
            SessionRecoveryFailed: The session could not be restored.
        """
        with self._lock:
            self._reestablish_locked()

    def _reestablish_locked(self) -> None:
        logger.info("actuator_session_reestablishing", endpoint=self.endpoint)
        try:
            for attempt in self.policy.reconnecting(sleep=self._sleep):
                with attempt:
                    self._check_aborted()
                    self.transport.reconnect()
        except RetryError as e:
            last_error = e.last_attempt.exception()
            raise SessionRecoveryFailed(
                message=f"Could not re-establish session with {self.endpoint}: {last_error}",
            ) from last_error
        except ActuatorError as e:
            raise SessionRecoveryFailed(
                message=f"Could not re-establish session with {self.endpoint}: {e.message}",
                exit_code=e.exit_code,
            ) from e
        self.reconnects += 1
        logger.info("actuator_session_reestablished", endpoint=self.endpoint, reconnects=self.reconnects)

    def close(self) -> None:
        with self._lock:
            self.transport.close()

    def abort(self) -> None:
        """Fail the in-flight command and every later one, without waiting.

        Does not take the client lock, so it can unblock a command running
        on another thread. The transport decides how a blocked call is cut.
        """
        self._aborted.set()
        logger.warning("actuator_aborted", endpoint=self.endpoint)
        self.transport.abort()

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def _check_aborted(self, command: Optional[str] = None) -> None:
        if self._aborted.is_set():
            raise ActuatorAborted(message=f"{self.endpoint} client aborted", command=command)
