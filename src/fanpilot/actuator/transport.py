"""Transport interface for executing commands on a management controller."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Transport(Protocol):
    """Executes one command string against the remote controller.

    Implementations translate every failure into an ActuatorError subclass:
    TransportUnavailable, ActuatorTimeout, SessionExpired,
    AuthenticationFailed or CommandRejected. Retrying is the caller's job.
    """

    @property
    def endpoint(self) -> str:
        """Human-readable endpoint for logs (e.g. 'ilo.example:22')."""
        ...

    def execute(self, command: str, timeout: float) -> str:
        """Run a command and return its raw output.

        Raises:
            ActuatorError: Any transport, session or remote failure.
        """
        ...

    def is_reachable(self) -> bool:
        """Cheap network-level probe, used while waiting for startup."""
        ...

    def is_session_alive(self) -> bool:
        """Whether the current session can still carry commands."""
        ...

    def reconnect(self) -> None:
        """Drop the current session and open a new one.

        Raises:
            ActuatorError: The new session could not be opened.
        """
        ...

    def close(self) -> None:
        """Release the session. Safe to call more than once."""
        ...

    def abort(self) -> None:
        """Cut an in-flight command from another thread without waiting for it."""
        ...
