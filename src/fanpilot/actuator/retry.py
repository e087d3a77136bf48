"""Retry policy for actuator commands.

One policy object drives every command path. It uses tenacity with a fixed
delay and keeps two separate budgets: transport failures (connection errors,
timeouts, session expiry) count against ``max_attempts``, while empty output
from a command that should print something counts against
``empty_output_retries``.

Example usage:
    policy = RetryPolicy(max_attempts=3, delay=3.0)
    for attempt in policy.retrying():
        with attempt:
            transport.execute("fan p 0 max 40", timeout=30)
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .exceptions import (
    ActuatorAborted,
    ActuatorError,
    ActuatorTransient,
    AuthenticationFailed,
    EmptyOutput,
    SessionExpired,
)

logger = structlog.get_logger(__name__)

RETRYABLE_ERRORS = (ActuatorTransient, SessionExpired, EmptyOutput)


class _AttemptBudget:
    """Stop condition tracking both budgets for one command execution."""

    def __init__(self, policy: "RetryPolicy") -> None:
        self.policy = policy
        self.failures = 0
        self.empty_outputs = 0

    def __call__(self, retry_state: RetryCallState) -> bool:
        if (
            self.policy.deadline is not None
            and retry_state.seconds_since_start >= self.policy.deadline
        ):
            return True

        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, EmptyOutput):
            self.empty_outputs += 1
            return self.empty_outputs > self.policy.empty_output_retries

        self.failures += 1
        return self.failures >= self.policy.max_attempts


def _log_before_sleep(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "actuator_command_retrying",
        attempt=retry_state.attempt_number,
        error_type=type(error).__name__,
        error=getattr(error, "message", str(error)),
        wait=retry_state.next_action.sleep if retry_state.next_action else None,
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry parameters for one actuator endpoint.

    Worst case for a command that always times out is
    ``max_attempts * timeout + (max_attempts - 1) * delay``; no delay
    follows the final attempt.
    """

    max_attempts: int = 3
    delay: float = 3.0
    empty_output_retries: int = 2
    reconnect_attempts: int = 3
    deadline: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.reconnect_attempts < 1:
            raise ValueError("reconnect_attempts must be at least 1")
        if self.empty_output_retries < 0:
            raise ValueError("empty_output_retries must not be negative")

    def retrying(self, sleep: Callable[[float], None] = time.sleep) -> Retrying:
        """Fresh tenacity controller for one command execution.

        Non-retryable errors (CommandRejected, AuthenticationFailed,
        SessionRecoveryFailed) propagate unchanged. Exhausting a budget
        raises tenacity.RetryError.
        """
        return Retrying(
            stop=_AttemptBudget(self),
            wait=wait_fixed(self.delay),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=_log_before_sleep,
            sleep=sleep,
            reraise=False,
        )

    def reconnecting(self, sleep: Callable[[float], None] = time.sleep) -> Retrying:
        """Tenacity controller bounding session re-establishment."""
        return Retrying(
            stop=stop_after_attempt(self.reconnect_attempts),
            wait=wait_fixed(self.delay),
            retry=(
                retry_if_exception_type(ActuatorError)
                & retry_if_not_exception_type((AuthenticationFailed, ActuatorAborted))
            ),
            sleep=sleep,
            reraise=False,
        )
