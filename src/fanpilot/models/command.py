"""ActuatorCommand value object."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ActuatorCommand:
    """One imperative instruction for the remote controller.

    Built per invocation by a vendor dialect and never retained. Every
    command is idempotent: re-sending it after a retry is always safe.
    """

    text: str
    """Command string passed to the transport (iLO CLI line or ipmitool arguments)."""

    description: str = ""
    """Human-readable intent for logs, e.g. 'set fan 3 to 40'."""

    expect_output: bool = False
    """If True, empty output is ambiguous and retried within the empty-output budget."""

    def __str__(self) -> str:
        return self.description or self.text
