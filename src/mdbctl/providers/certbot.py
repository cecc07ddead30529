"""Certbot provider for issuing certificates non-interactively."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ExternalCommandError


class CertbotError(ExternalCommandError):
    """Raised when certbot cannot issue or renew a certificate."""


@dataclass(slots=True)
class CertbotProvider:
    """Invoke certbot in fully automated standalone mode."""

    certbot_bin: str = "certbot"
    email: str | None = None

    def build_command(self, domain: str) -> list[str]:
        """Return the issuance command for *domain*."""
        command = [
            self.certbot_bin,
            "certonly",
            "--standalone",
            "--non-interactive",
            "--agree-tos",
            "--keep-until-expiring",
            "-d",
            domain,
        ]
        if self.email:
            command.extend(["--email", self.email])
        else:
            command.append("--register-unsafely-without-email")
        return command

    def obtain(self, domain: str) -> subprocess.CompletedProcess[str]:
        """Obtain (or keep, when not yet due) the certificate for *domain*."""
        return self._run_command(self.build_command(domain))

    def _run_command(self, command: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(command),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CertbotError(command, None, str(exc)) from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise CertbotError(command, result.returncode, message)
        return result


__all__ = ["CertbotError", "CertbotProvider"]
