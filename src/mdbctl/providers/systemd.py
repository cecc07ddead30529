"""Systemd provider for controlling the database service unit."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ExternalCommandError


class SystemdError(ExternalCommandError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Start, stop and reconfigure the MariaDB systemd unit."""

    unit: str = "mariadb"
    systemctl_bin: str = "systemctl"

    def start(self) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start", self.unit)

    def stop(self) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", self.unit)

    def restart(self) -> subprocess.CompletedProcess[str]:
        """Restart the unit."""
        return self._systemctl("restart", self.unit)

    def is_active(self) -> bool:
        """Return ``True`` when systemd reports the unit as active."""
        result = self._systemctl("is-active", self.unit, check=False)
        return result.returncode == 0

    def set_environment(self, name: str, value: str) -> subprocess.CompletedProcess[str]:
        """Set a manager environment variable consumed by the unit's ExecStart."""
        return self._systemctl("set-environment", f"{name}={value}")

    def unset_environment(self, name: str) -> subprocess.CompletedProcess[str]:
        """Remove a manager environment variable."""
        return self._systemctl("unset-environment", name)

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        argument: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if argument is not None:
            args.append(argument)
        return self._run_command(args, check=check)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(args, None, str(exc)) from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(args, result.returncode, message)
        return result


__all__ = ["SystemdError", "SystemdProvider"]
