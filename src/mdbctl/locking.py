"""Waiting for the package manager's lock before installing packages."""
from __future__ import annotations

import fcntl
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .errors import MdbctlError


class LockTimeoutError(MdbctlError):
    """Raised when the lock is still held after the configured timeout."""


class LockWaitCancelled(MdbctlError):
    """Raised when the caller cancels the wait."""


def is_lock_held(path: Path) -> bool:
    """Return ``True`` when another process holds an fcntl lock on *path*.

    dpkg and apt take a POSIX record lock on their lock files; the files
    themselves always exist, so presence alone says nothing.
    """
    try:
        fd = os.open(path, os.O_RDWR)
    except FileNotFoundError:
        return False
    try:
        try:
            fcntl.lockf(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            return True
        fcntl.lockf(fd, fcntl.LOCK_UN)
        return False
    finally:
        os.close(fd)


@dataclass(slots=True)
class LockWaiter:
    """Poll a lock file with exponential backoff until it is released."""

    path: Path
    timeout: float = 600.0
    initial_delay: float = 0.5
    max_delay: float = 10.0
    is_held: Callable[[Path], bool] = field(default=is_lock_held)
    sleep: Callable[[float], None] = field(default=time.sleep)
    clock: Callable[[], float] = field(default=time.monotonic)

    def wait(
        self,
        *,
        cancel: Callable[[], bool] | None = None,
        on_wait: Callable[[float], None] | None = None,
    ) -> float:
        """Block until the lock is free and return the seconds spent waiting.

        *cancel* is consulted before every sleep; returning ``True`` aborts
        with :class:`LockWaitCancelled`. *on_wait* receives the upcoming delay
        so callers can report progress.
        """
        started = self.clock()
        delay = self.initial_delay
        while self.is_held(self.path):
            elapsed = self.clock() - started
            if elapsed >= self.timeout:
                raise LockTimeoutError(
                    f"{self.path} is still locked after {elapsed:.0f}s; "
                    "another package operation is running."
                )
            if cancel is not None and cancel():
                raise LockWaitCancelled(f"Cancelled while waiting for {self.path}.")
            pause = min(delay, self.max_delay, self.timeout - elapsed)
            if on_wait is not None:
                on_wait(pause)
            self.sleep(pause)
            delay = min(delay * 2, self.max_delay)
        return self.clock() - started


__all__ = ["LockTimeoutError", "LockWaitCancelled", "LockWaiter", "is_lock_held"]
