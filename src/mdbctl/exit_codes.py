"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes returned by every command.

    Operators and the certbot deploy hook only distinguish success from
    failure, so every error path collapses onto ``FAILURE``.
    """

    OK = 0
    FAILURE = 1
