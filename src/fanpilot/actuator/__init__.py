"""Actuator layer: command dialects, transports and the resilient client.

- ActuatorClient: serialized command execution with retry and session recovery
- RetryPolicy: tenacity-based retry budgets shared by every command path
- SSHTransport: persistent paramiko session to an HP iLO4
- IpmiToolTransport: ipmitool invocations against a Supermicro BMC
- Ilo4Dialect / SupermicroDialect: intent-to-command translation
"""

from fanpilot.actuator.client import ActuatorClient
from fanpilot.actuator.dialects import FanDialect, Ilo4Dialect, SupermicroDialect, dialect_for
from fanpilot.actuator.exceptions import (
    ActuatorAborted,
    ActuatorError,
    ActuatorTimeout,
    ActuatorTransient,
    AuthenticationFailed,
    CommandRejected,
    EmptyOutput,
    ExhaustedRetries,
    SessionExpired,
    SessionRecoveryFailed,
    TransportUnavailable,
)
from fanpilot.actuator.ipmitool import IpmiToolTransport
from fanpilot.actuator.retry import RetryPolicy
from fanpilot.actuator.ssh import SSHTransport
from fanpilot.actuator.transport import Transport

__all__ = [
    # Client
    "ActuatorClient",
    "RetryPolicy",
    # Transports
    "IpmiToolTransport",
    "SSHTransport",
    "Transport",
    # Dialects
    "FanDialect",
    "Ilo4Dialect",
    "SupermicroDialect",
    "dialect_for",
    # Exceptions
    "ActuatorAborted",
    "ActuatorError",
    "ActuatorTimeout",
    "ActuatorTransient",
    "AuthenticationFailed",
    "CommandRejected",
    "EmptyOutput",
    "ExhaustedRetries",
    "SessionExpired",
    "SessionRecoveryFailed",
    "TransportUnavailable",
]
