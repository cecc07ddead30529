"""First-run configuration: packages, certificate and admin password reset."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .certificates import CertificateManager, SyncResult
from .config import AppConfig
from .credentials import generate_secret, remove_credentials_file, write_credentials_file
from .errors import MdbctlError
from .logging import OperationScope
from .providers.mariadb import MariaDBClient, account, quote_string
from .providers.packages import PackageInstaller
from .providers.systemd import SystemdProvider
from .templates import TemplateEngine

BYPASS_ENV_VAR = "MYSQLD_OPTS"


class BypassModeError(MdbctlError):
    """Raised when a step fails while the server may be running without grant checks."""


@dataclass(frozen=True, slots=True)
class BootstrapResult:
    """Summary of a completed bootstrap."""

    packages: tuple[str, ...]
    certificate: SyncResult
    credentials_file: Path
    stale_credentials_removed: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "packages": list(self.packages),
            "certificate": self.certificate.value,
            "credentials_file": str(self.credentials_file),
            "stale_credentials_removed": self.stale_credentials_removed,
        }


@dataclass(slots=True)
class BootstrapSequence:
    """Run the ordered configure sequence.

    There is no rollback. If a step fails between stopping the service and
    restarting it normally, MariaDB may be left stopped or still running with
    ``--skip-grant-tables``; the error says so and the operator must recover
    by hand.
    """

    config: AppConfig
    installer: PackageInstaller
    systemd: SystemdProvider
    certificates: CertificateManager
    templates: TemplateEngine
    bypass_client: MariaDBClient
    secret_factory: Callable[[], str] = field(default=generate_secret)

    def run(self, op: OperationScope) -> BootstrapResult:
        """Execute every step in order; the first failure aborts the run."""
        installed = self._install_packages(op)

        credentials = self.config.database.credentials_file
        removed = remove_credentials_file(credentials)
        op.add_step(
            "credentials.remove_stale",
            status="success" if removed else "noop",
            detail=str(credentials),
        )
        if removed:
            op.info(f"Removed stale credential file {credentials}.")

        certificate = self.certificates.acquire(op)

        secret = self.secret_factory()
        self._reset_admin_password(op, secret)

        write_credentials_file(self.templates, credentials, secret)
        op.add_step("credentials.write", status="success", detail=str(credentials))
        op.info(f"Stored the {self.config.database.admin_user} password in {credentials}.")

        return BootstrapResult(
            packages=installed,
            certificate=certificate,
            credentials_file=credentials,
            stale_credentials_removed=removed,
        )

    def _install_packages(self, op: OperationScope) -> tuple[str, ...]:
        names = self.config.packages.names
        op.info(f"Ensuring packages are installed: {', '.join(names)}.")

        def _report_wait(delay: float) -> None:
            op.info(f"Package manager is busy; retrying in {delay:.1f}s.")

        result = self.installer.install(names, on_wait=_report_wait)
        op.add_step("packages.install", status="success", detail=" ".join(result.packages))
        return result.packages

    def _reset_admin_password(self, op: OperationScope, secret: str) -> None:
        unit = self.systemd.unit
        step = "systemd.stop"
        try:
            self.systemd.stop()
            op.add_step(step, status="success", detail=unit)

            step = "systemd.bypass_start"
            op.warn(f"Starting {unit} without grant checks and without networking.")
            self.systemd.set_environment(BYPASS_ENV_VAR, self.config.systemd.bypass_options)
            self.systemd.start()
            op.add_step(step, status="success", detail=self.config.systemd.bypass_options)

            step = "mariadb.alter_admin"
            admin = account(self.config.database.admin_user, "localhost")
            self.bypass_client.execute(
                "FLUSH PRIVILEGES;\n"
                f"ALTER USER {admin} IDENTIFIED BY {quote_string(secret)};\n"
            )
            op.add_step(step, status="success", detail=self.config.database.admin_user)

            step = "systemd.normal_start"
            self.systemd.stop()
            self.systemd.unset_environment(BYPASS_ENV_VAR)
            self.systemd.start()
            op.add_step(step, status="success", detail=unit)
        except MdbctlError as exc:
            op.add_step(step, status="error", detail=str(exc))
            raise BypassModeError(
                f"{step} failed: {exc}. {unit} may be stopped or still running with "
                f"{BYPASS_ENV_VAR}='{self.config.systemd.bypass_options}' (no password "
                f"checks). Run 'systemctl unset-environment {BYPASS_ENV_VAR}' and "
                f"'systemctl restart {unit}' before doing anything else."
            ) from exc
        op.info(f"{unit} restarted with grant checks enabled.")


__all__ = ["BYPASS_ENV_VAR", "BootstrapResult", "BootstrapSequence", "BypassModeError"]
