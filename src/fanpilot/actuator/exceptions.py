"""Custom exceptions for actuator operations.

All exceptions inherit from ActuatorError for consistent error handling.
Each exception includes helpful messages for non-expert users.
"""

from typing import Optional


class ActuatorError(Exception):
    """Base exception for all actuator errors.

    Attributes:
        message: Human-readable error message.
        hint: Optional troubleshooting hint for non-experts.
        exit_code: Suggested exit code for CLI applications.
        command: Command text that failed, if any.
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        hint: Optional[str] = None,
        exit_code: Optional[int] = None,
        command: Optional[str] = None,
    ) -> None:
        self.message = message
        self.hint = hint
        self.command = command
        if exit_code is not None:
            self.exit_code = exit_code
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the exception message with optional hint."""
        if self.hint:
            return f"{self.message}\n\nHint: {self.hint}"
        return self.message


class ActuatorTransient(ActuatorError):
    """A failure that is expected to clear on retry (network blip, timeout)."""


class TransportUnavailable(ActuatorTransient):
    """Cannot reach the management controller.

    This typically occurs when:
    - The iLO/BMC is rebooting or its network port is down
    - Incorrect hostname/IP address
    - A firewall blocks SSH (iLO4) or UDP 623 (IPMI)
    """

    exit_code: int = 2

    def __init__(
        self,
        message: str = "Cannot connect to the management controller",
        hint: Optional[str] = None,
        command: Optional[str] = None,
    ) -> None:
        if hint is None:
            hint = (
                "Is the iLO/BMC reachable from this host? Check the address, "
                "cabling and that SSH (iLO4) or IPMI over LAN is enabled."
            )
        super().__init__(message=message, hint=hint, exit_code=2, command=command)


class ActuatorTimeout(ActuatorTransient):
    """A single command attempt did not finish within its timeout."""

    exit_code: int = 2

    def __init__(
        self,
        message: str = "Actuator command timed out",
        timeout: Optional[float] = None,
        command: Optional[str] = None,
    ) -> None:
        self.timeout = timeout
        if timeout is not None:
            message = f"{message} after {timeout:g}s"
        super().__init__(message=message, command=command)


class EmptyOutput(ActuatorError):
    """A command that always prints something returned nothing.

    Some iLO firmware occasionally closes the exec channel before the CLI
    answers; the command may or may not have been applied.
    """

    def __init__(self, command: str) -> None:
        super().__init__(message=f"Empty output from '{command}'", command=command)


class SessionExpired(ActuatorError):
    """The remote session was dropped or timed out and must be re-established."""


class SessionRecoveryFailed(ActuatorError):
    """Re-establishing an expired session failed within its own retry budget."""

    exit_code: int = 2


class ActuatorAborted(ActuatorError):
    """The client was aborted, usually because shutdown ran out of time.

    Never retried: every later command on the same client fails at once.
    """


class AuthenticationFailed(ActuatorError):
    """Authentication with the management controller failed.

    This typically occurs when:
    - Incorrect username or password
    - The account lacks administrator/operator privileges
    - The key file is not authorized on the iLO
    """

    exit_code: int = 3

    def __init__(
        self,
        message: str = "Authentication failed",
        hint: Optional[str] = None,
        command: Optional[str] = None,
    ) -> None:
        if hint is None:
            hint = (
                "Check the configured username and password. iLO4 fan commands "
                "need an account with configuration privileges."
            )
        super().__init__(message=message, hint=hint, exit_code=3, command=command)


class CommandRejected(ActuatorError):
    """The controller answered with an explicit error. Not retried."""

    def __init__(
        self,
        message: str,
        output: str = "",
        command: Optional[str] = None,
    ) -> None:
        self.output = output
        super().__init__(message=message, command=command)


class ExhaustedRetries(ActuatorError):
    """A command failed on every attempt of its retry budget.

    Fatal to the current cycle's command, never to the process.
    """

    def __init__(
        self,
        command: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        reason = f": {last_error}" if last_error is not None else ""
        super().__init__(
            message=f"Command '{command}' failed after {attempts} attempts{reason}",
            command=command,
        )
