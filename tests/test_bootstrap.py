"""Tests for the first-run configure sequence."""
from __future__ import annotations

import stat
from collections.abc import Callable, Sequence
from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from mdbctl.bootstrap import BYPASS_ENV_VAR, BootstrapSequence, BypassModeError
from mdbctl.certificates import CertificateManager, SyncResult
from mdbctl.config import AppConfig, load_config
from mdbctl.credentials import CREDENTIALS_MODE
from mdbctl.hostname import DnsMismatchError
from mdbctl.locking import LockWaiter
from mdbctl.logging import OperationScope, StructuredLogger
from mdbctl.providers.certbot import CertbotProvider
from mdbctl.providers.mariadb import MariaDBClient
from mdbctl.providers.packages import PackageInstaller, PackageInstallResult
from mdbctl.providers.systemd import SystemdError, SystemdProvider
from mdbctl.templates import TemplateEngine

SECRET = "S" * 43


class Journal(list[str]):
    """Shared, ordered record of every side effect."""


class RecordingInstaller(PackageInstaller):
    """Installer that records instead of running apt."""

    def __init__(self, journal: Journal) -> None:
        """Attach to *journal*."""
        super().__init__(lock_waiter=LockWaiter(Path("/nonexistent")))
        self.journal = journal

    def install(  # type: ignore[override]
        self,
        packages: Sequence[str],
        *,
        on_wait: Callable[[float], None] | None = None,
    ) -> PackageInstallResult:
        """Record the package list."""
        if on_wait is not None:
            on_wait(2.0)
        self.journal.append("install:" + ",".join(packages))
        return PackageInstallResult(packages=tuple(packages), commands=(), lock_wait_seconds=2.0)


class RecordingSystemd(SystemdProvider):
    """Systemd stand-in that can fail on a chosen call."""

    def __init__(self, journal: Journal, *, fail_on: str | None = None) -> None:
        """Attach to *journal*."""
        super().__init__(unit="mariadb")
        self.journal = journal
        self.fail_on = fail_on

    def _record(self, entry: str) -> None:
        self.journal.append(entry)
        if entry == self.fail_on:
            raise SystemdError(["systemctl"], 1, f"{entry} refused")

    def start(self):  # type: ignore[override]
        """Record a start."""
        self._record("start")

    def stop(self):  # type: ignore[override]
        """Record a stop."""
        self._record("stop")

    def set_environment(self, name: str, value: str):  # type: ignore[override]
        """Record the bypass environment."""
        self._record(f"setenv:{name}={value}")

    def unset_environment(self, name: str):  # type: ignore[override]
        """Record clearing the bypass environment."""
        self._record(f"unsetenv:{name}")


class RecordingClient(MariaDBClient):
    """Client stand-in recording SQL batches."""

    def __init__(self, journal: Journal) -> None:
        """Attach to *journal*."""
        super().__init__(mysql_bin="mysql")
        self.journal = journal
        self.batches: list[str] = []

    def execute(self, sql: str):  # type: ignore[override]
        """Record the batch."""
        self.journal.append("sql")
        self.batches.append(sql)


class RecordingCertificates(CertificateManager):
    """Certificate manager stand-in."""

    def __init__(
        self,
        config: AppConfig,
        journal: Journal,
        *,
        failure: Exception | None = None,
    ) -> None:
        """Attach to *journal*; raise *failure* from acquire when given."""
        super().__init__(
            config=config,
            certbot=CertbotProvider(),
            systemd=SystemdProvider(),
            templates=TemplateEngine.with_overrides(None),
            hook_command="/usr/local/bin/mdbctl",
        )
        self.journal = journal
        self.failure = failure

    def acquire(self, op: OperationScope) -> SyncResult:  # type: ignore[override]
        """Record the acquisition."""
        self.journal.append("certificates")
        if self.failure is not None:
            raise self.failure
        return SyncResult.UPDATED


def _config(tmp_path: Path) -> AppConfig:
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={"database": {"credentials_file": str(tmp_path / "root" / ".my.cnf")}},
    )


def _sequence(
    tmp_path: Path,
    journal: Journal,
    *,
    fail_on: str | None = None,
    acquire_error: Exception | None = None,
) -> tuple[BootstrapSequence, RecordingClient]:
    config = _config(tmp_path)
    client = RecordingClient(journal)
    sequence = BootstrapSequence(
        config=config,
        installer=RecordingInstaller(journal),
        systemd=RecordingSystemd(journal, fail_on=fail_on),
        certificates=RecordingCertificates(config, journal, failure=acquire_error),
        templates=TemplateEngine.with_overrides(None),
        bypass_client=client,
        secret_factory=lambda: SECRET,
    )
    return sequence, client


def _scope(tmp_path: Path) -> tuple[OperationScope, StringIO]:
    buffer = StringIO()
    logger = StructuredLogger(
        tmp_path / "logs",
        console=Console(file=buffer, width=200),
        error_console=Console(file=StringIO()),
    )
    return OperationScope(logger=logger, command="configure"), buffer


def test_runs_steps_in_order_and_stores_secret(tmp_path: Path) -> None:
    """Packages, certificate, bypass reset and credential file happen in order."""
    journal = Journal()
    sequence, client = _sequence(tmp_path, journal)
    op, output = _scope(tmp_path)

    result = sequence.run(op)

    bypass = "--skip-grant-tables --skip-networking"
    assert journal == [
        "install:mariadb-server,mariadb-client,certbot,dnsutils",
        "certificates",
        "stop",
        f"setenv:{BYPASS_ENV_VAR}={bypass}",
        "start",
        "sql",
        "stop",
        f"unsetenv:{BYPASS_ENV_VAR}",
        "start",
    ]
    (batch,) = client.batches
    assert batch.startswith("FLUSH PRIVILEGES;\n")
    assert f"ALTER USER 'root'@'localhost' IDENTIFIED BY '{SECRET}';" in batch

    credentials = result.credentials_file
    assert credentials.read_text(encoding="utf-8") == f"[client]\npassword={SECRET}\n"
    assert stat.S_IMODE(credentials.stat().st_mode) == CREDENTIALS_MODE
    assert result.certificate is SyncResult.UPDATED
    assert result.stale_credentials_removed is False
    assert SECRET not in output.getvalue()
    assert SECRET not in (tmp_path / "logs" / "mdbctl.log").read_text(encoding="utf-8")
    assert "retrying in 2.0s" in output.getvalue()


def test_stale_credentials_are_removed_first(tmp_path: Path) -> None:
    """A leftover credential file is deleted before the reset."""
    journal = Journal()
    sequence, _ = _sequence(tmp_path, journal)
    stale = sequence.config.database.credentials_file
    stale.parent.mkdir(parents=True)
    stale.write_text("[client]\npassword=old\n", encoding="utf-8")
    op, _ = _scope(tmp_path)

    result = sequence.run(op)

    assert result.stale_credentials_removed is True
    assert "old" not in stale.read_text(encoding="utf-8")
    step_names = [step.name for step in op.steps]
    assert step_names.index("credentials.remove_stale") < step_names.index("mariadb.alter_admin")


@pytest.mark.parametrize(
    ("fail_on", "step"),
    [
        ("stop", "systemd.stop"),
        (f"unsetenv:{BYPASS_ENV_VAR}", "systemd.normal_start"),
    ],
)
def test_failure_during_reset_names_bypass_risk(
    tmp_path: Path,
    fail_on: str,
    step: str,
) -> None:
    """A failing reset step raises BypassModeError and writes no credentials."""
    journal = Journal()
    sequence, _ = _sequence(tmp_path, journal, fail_on=fail_on)
    op, _ = _scope(tmp_path)

    with pytest.raises(BypassModeError) as excinfo:
        sequence.run(op)

    message = str(excinfo.value)
    assert message.startswith(f"{step} failed")
    assert "systemctl unset-environment MYSQLD_OPTS" in message
    assert not sequence.config.database.credentials_file.exists()
    assert op.steps[-1].name == step
    assert op.steps[-1].status == "error"


def test_certificate_failure_aborts_before_bypass(tmp_path: Path) -> None:
    """A failed acquisition leaves MariaDB running and writes no credentials."""
    journal = Journal()
    failure = DnsMismatchError("db.example.test resolves to 198.51.100.7")
    sequence, client = _sequence(tmp_path, journal, acquire_error=failure)
    op, _ = _scope(tmp_path)

    with pytest.raises(DnsMismatchError) as excinfo:
        sequence.run(op)

    assert excinfo.value is failure
    assert journal == ["install:mariadb-server,mariadb-client,certbot,dnsutils", "certificates"]
    assert client.batches == []
    assert not sequence.config.database.credentials_file.exists()
    assert "systemd.stop" not in [step.name for step in op.steps]
