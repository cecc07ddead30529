"""Exception hierarchy shared across mdbctl workflows."""
from __future__ import annotations

from collections.abc import Sequence


class MdbctlError(RuntimeError):
    """Base class for operator-facing failures."""


class MissingArgumentError(MdbctlError):
    """Raised when a command is invoked without a required argument."""

    def __init__(self, argument: str, command: str) -> None:
        """Record the missing *argument* for *command*."""
        super().__init__(f"Missing required argument <{argument}> for '{command}'.")
        self.argument = argument
        self.command = command


class UnknownCommandError(MdbctlError):
    """Raised when a command name does not match any known workflow."""


class InvalidNameError(MdbctlError):
    """Raised when a user/database name is not a safe identifier."""


class ExternalCommandError(MdbctlError):
    """Raised when a shelled-out tool exits non-zero or cannot be executed."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int | None,
        message: str,
    ) -> None:
        """Capture the failing *command* and its exit status."""
        label = command[0] if command else "<empty>"
        if returncode is None:
            text = f"{label} could not be executed: {message}"
        else:
            text = f"{label} failed (exit {returncode}): {message}"
        super().__init__(text)
        self.command = list(command)
        self.returncode = returncode


__all__ = [
    "ExternalCommandError",
    "InvalidNameError",
    "MdbctlError",
    "MissingArgumentError",
    "UnknownCommandError",
]
