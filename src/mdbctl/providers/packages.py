"""Package installation through apt."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from ..errors import ExternalCommandError
from ..locking import LockWaiter


class PackageInstallError(ExternalCommandError):
    """Raised when apt fails to install the requested packages."""


@dataclass(frozen=True, slots=True)
class PackageInstallResult:
    """Metadata describing a completed installation."""

    packages: tuple[str, ...]
    commands: tuple[tuple[str, ...], ...]
    lock_wait_seconds: float


class PackageInstaller:
    """Install Debian packages idempotently via ``apt-get``."""

    def __init__(
        self,
        *,
        lock_waiter: LockWaiter,
        apt_bin: str = "apt-get",
        refresh_index: bool = True,
    ) -> None:
        """Initialise the installer with the apt binary and lock waiter."""
        self.lock_waiter = lock_waiter
        self.apt_bin = apt_bin
        self.refresh_index = refresh_index

    def install(
        self,
        packages: Sequence[str],
        *,
        on_wait: Callable[[float], None] | None = None,
    ) -> PackageInstallResult:
        """Install *packages*; already-installed packages are left untouched."""
        names = tuple(name.strip() for name in packages if name.strip())
        if not names:
            return PackageInstallResult(packages=(), commands=(), lock_wait_seconds=0.0)

        env = os.environ.copy()
        env["DEBIAN_FRONTEND"] = "noninteractive"

        commands: list[tuple[str, ...]] = []
        if self.refresh_index:
            commands.append((self.apt_bin, "update"))
        commands.append((self.apt_bin, "install", "-y", "--no-install-recommends", *names))

        waited = 0.0
        for command in commands:
            waited += self.lock_waiter.wait(on_wait=on_wait)
            result = self._run_install_command(command, env=env)
            if result.returncode != 0:
                message = (result.stderr or "").strip() or (result.stdout or "").strip()
                raise PackageInstallError(command, result.returncode, message or "no output")

        return PackageInstallResult(
            packages=names,
            commands=tuple(commands),
            lock_wait_seconds=waited,
        )

    def _run_install_command(
        self,
        cmd: Sequence[str],
        *,
        env: Mapping[str, str],
    ) -> subprocess.CompletedProcess[str]:
        """Execute an apt command (isolated for testing)."""
        try:
            return subprocess.run(  # noqa: S603
                list(cmd),
                check=False,
                capture_output=True,
                text=True,
                env=dict(env),
            )
        except FileNotFoundError as exc:
            raise PackageInstallError(cmd, None, str(exc)) from exc


__all__ = ["PackageInstallError", "PackageInstallResult", "PackageInstaller"]
