"""Certificate acquisition, idempotent sync and renewal for MariaDB."""
from __future__ import annotations

import filecmp
import os
import shutil
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .config import AppConfig, TLSConfig
from .errors import MdbctlError
from .hostname import (
    HostIdentity,
    local_ipv4_addresses,
    resolve_a_records,
    resolve_fqdn,
    verify_hostname,
)
from .logging import OperationScope
from .providers.certbot import CertbotProvider
from .providers.systemd import SystemdProvider
from .renewal import install_renewal_hook
from .server_config import ServerConfig
from .templates import TemplateEngine

DESTINATION_MODE = 0o600
SSL_KEYS = ("ssl_cert", "ssl_key", "ssl_ca")


class CertificateSourceMissingError(MdbctlError):
    """Raised when certbot produced no material at the expected location."""


class CertificateInstallError(MdbctlError):
    """Raised when certificate material cannot be written to its destination."""


class SyncResult(Enum):
    """Outcome of :func:`sync_certificates`."""

    UNCHANGED = "unchanged"
    UPDATED = "updated"
    SOURCE_MISSING = "source-missing"


@dataclass(frozen=True)
class TLSMaterial:
    """Concrete TLS assets: certificate, private key and trust chain."""

    certificate: Path
    key: Path
    chain: Path

    def files(self) -> tuple[Path, Path, Path]:
        """Return the three paths in a fixed order."""
        return (self.certificate, self.key, self.chain)


@dataclass(frozen=True)
class CertificateEnvironment:
    """Resolved certificate locations for one domain."""

    domain: str
    source_dir: Path
    source: TLSMaterial
    destination: TLSMaterial


def resolve_environment(tls: TLSConfig, domain: str) -> CertificateEnvironment:
    """Return the source (certbot) and destination (MariaDB) triples for *domain*."""
    source_dir = tls.live_dir / domain
    return CertificateEnvironment(
        domain=domain,
        source_dir=source_dir,
        source=TLSMaterial(
            certificate=source_dir / "cert.pem",
            key=source_dir / "privkey.pem",
            chain=source_dir / "chain.pem",
        ),
        destination=TLSMaterial(
            certificate=tls.destination_dir / "server-cert.pem",
            key=tls.destination_dir / "server-key.pem",
            chain=tls.destination_dir / "ca.pem",
        ),
    )


def sync_certificates(
    source: TLSMaterial,
    destination: TLSMaterial,
    *,
    owner: str | None = None,
    group: str | None = None,
) -> SyncResult:
    """Mirror *source* into *destination* when they differ.

    Nothing is written when all three destination files already match the
    source byte for byte. Otherwise all three are copied, so a new key never
    sits next to an old certificate. Destination files end up ``0600`` and,
    when *owner* is given, owned by the database service account.
    """
    if not all(path.is_file() for path in source.files()):
        return SyncResult.SOURCE_MISSING

    pairs = list(zip(source.files(), destination.files(), strict=True))
    if all(dest.is_file() and filecmp.cmp(src, dest, shallow=False) for src, dest in pairs):
        return SyncResult.UNCHANGED

    for src, dest in pairs:
        _install_file(src, dest, owner=owner, group=group)
    return SyncResult.UPDATED


def _install_file(src: Path, dest: Path, *, owner: str | None, group: str | None) -> None:
    """Copy *src* over *dest* atomically; unknown accounts and I/O errors are reported."""
    try:
        _replace_file(src, dest, owner=owner, group=group)
    except (OSError, LookupError) as exc:
        raise CertificateInstallError(f"Could not install {dest}: {exc}") from exc


def _replace_file(src: Path, dest: Path, *, owner: str | None, group: str | None) -> None:
    if not dest.parent.exists():
        dest.parent.mkdir(parents=True, mode=0o750)
        if owner is not None:
            shutil.chown(dest.parent, owner, group)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", dir=dest.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        shutil.copyfile(src, tmp_path)
        tmp_path.chmod(DESTINATION_MODE)
        if owner is not None:
            shutil.chown(tmp_path, owner, group)
        os.replace(tmp_path, dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def configure_server_ssl(
    path: Path,
    section: str,
    destination: TLSMaterial,
) -> bool:
    """Point ``ssl_cert``/``ssl_key``/``ssl_ca`` at *destination*.

    Returns ``True`` when the option file changed.
    """
    config = ServerConfig.load(path)
    wanted = dict(zip(SSL_KEYS, (str(p) for p in destination.files()), strict=True))
    if all(config.get(section, key) == value for key, value in wanted.items()):
        return False
    # Insert in reverse so the file reads ssl_cert, ssl_key, ssl_ca.
    for key in reversed(SSL_KEYS):
        config.set(section, key, wanted[key])
    config.save(path)
    return True


# ---------------------------------------------------------------------------
# Inspection


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


@dataclass(frozen=True)
class CertificateReport:
    """Summary of an installed certificate."""

    subject: str
    not_valid_after: datetime
    days_remaining: int
    key_matches: bool
    expiring: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "subject": self.subject,
            "not_valid_after": self.not_valid_after.isoformat(),
            "days_remaining": self.days_remaining,
            "key_matches": self.key_matches,
            "expiring": self.expiring,
        }


def inspect_certificate(
    material: TLSMaterial,
    *,
    warn_expiry_days: int = 30,
    now: datetime | None = None,
) -> CertificateReport:
    """Parse *material* and report expiry and certificate/key agreement."""
    now = now or datetime.now(UTC)
    certificate = _load_certificate(material.certificate)
    private_key = _load_private_key(material.key)
    not_after = certificate.not_valid_after_utc
    days_remaining = (not_after - now).days
    return CertificateReport(
        subject=certificate.subject.rfc4514_string(),
        not_valid_after=not_after,
        days_remaining=days_remaining,
        key_matches=_public_keys_match(certificate, private_key),
        expiring=days_remaining <= warn_expiry_days,
    )


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    try:
        key_public = private_key.public_key()
    except AttributeError:  # pragma: no cover - key types without public halves
        return False
    encoding = serialization.Encoding.DER
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    cert_bytes = cert.public_key().public_bytes(encoding=encoding, format=fmt)
    key_bytes = key_public.public_bytes(encoding=encoding, format=fmt)
    return cert_bytes == key_bytes


# ---------------------------------------------------------------------------
# Workflows


@dataclass(slots=True)
class CertificateManager:
    """Acquire certificates with certbot and keep MariaDB's copy in sync."""

    config: AppConfig
    certbot: CertbotProvider
    systemd: SystemdProvider
    templates: TemplateEngine
    hook_command: str
    resolver: Callable[[str], Sequence[str]] = field(default=resolve_a_records)
    interfaces: Callable[[], Sequence[str]] = field(default=local_ipv4_addresses)
    fqdn: Callable[[], str] = field(default=resolve_fqdn)

    def acquire(self, op: OperationScope) -> SyncResult:
        """Run the full acquisition: pre-flight, certbot, sync, configure, hook."""
        identity: HostIdentity = verify_hostname(
            self.fqdn(),
            resolver=self.resolver,
            interfaces=self.interfaces,
        )
        op.add_step("hostname.verify", status="success", detail=identity.fqdn)
        op.info(f"Host name {identity.fqdn} resolves to this host ({identity.matched}).")

        environment = resolve_environment(self.config.tls, identity.fqdn)
        op.info(f"Requesting certificate for {environment.domain}.")
        self.certbot.obtain(environment.domain)
        op.add_step("certbot.obtain", status="success", detail=environment.domain)

        result = self._sync(op, environment)
        if result is SyncResult.SOURCE_MISSING:
            raise CertificateSourceMissingError(
                f"certbot reported success but {environment.source_dir} is incomplete."
            )

        settings = self.config.server_config
        changed = configure_server_ssl(settings.path, settings.section, environment.destination)
        op.add_step(
            "server_config.ssl",
            status="success" if changed else "noop",
            detail=str(settings.path),
        )

        hook_path = install_renewal_hook(
            self.templates,
            self.config.tls.hook_dir / self.config.tls.hook_name,
            command=self.hook_command,
            config_file=self.config.config_file if self.config.config_file.exists() else None,
        )
        op.add_step("renewal_hook.install", status="success", detail=str(hook_path))

        if result is SyncResult.UPDATED:
            self._restart(op)
        return result

    def renew(self, op: OperationScope) -> SyncResult:
        """Copy renewed material into place and restart MariaDB when it changed."""
        domain = self.fqdn().strip().rstrip(".").lower()
        environment = resolve_environment(self.config.tls, domain)
        if not environment.source_dir.exists():
            op.info(f"No certificate at {environment.source_dir}; nothing to renew.")
            op.add_step("certificates.sync", status="skipped", detail="source missing")
            return SyncResult.SOURCE_MISSING
        result = self._sync(op, environment)
        if result is SyncResult.SOURCE_MISSING:
            raise CertificateSourceMissingError(
                f"Certificate material in {environment.source_dir} is incomplete."
            )
        if result is SyncResult.UPDATED:
            self._restart(op)
        return result

    def _sync(self, op: OperationScope, environment: CertificateEnvironment) -> SyncResult:
        result = sync_certificates(
            environment.source,
            environment.destination,
            owner=self.config.service.user,
            group=self.config.service.group,
        )
        op.add_step("certificates.sync", status=result.value, detail=str(environment.source_dir))
        if result is SyncResult.UNCHANGED:
            op.info("MariaDB certificates are already up to date.")
        elif result is SyncResult.UPDATED:
            op.info(f"Copied certificates to {self.config.tls.destination_dir}.")
            self._report_expiry(op, environment.destination)
        return result

    def _report_expiry(self, op: OperationScope, material: TLSMaterial) -> None:
        try:
            report = inspect_certificate(
                material,
                warn_expiry_days=self.config.tls.warn_expiry_days,
            )
        except (OSError, ValueError, TypeError) as exc:
            op.warn(f"Could not inspect installed certificate: {exc}")
            return
        line = (
            f"Certificate {report.subject} valid until "
            f"{report.not_valid_after:%Y-%m-%d} ({report.days_remaining} day(s) remaining)."
        )
        if report.expiring:
            op.warn(line)
        else:
            op.info(line)
        if not report.key_matches:
            op.warn("Installed certificate does not match the installed private key.")

    def _restart(self, op: OperationScope) -> None:
        op.info(f"Restarting {self.systemd.unit} to load the new certificate.")
        self.systemd.restart()
        op.add_step("systemd.restart", status="success", detail=self.systemd.unit)


__all__ = [
    "CertificateEnvironment",
    "CertificateInstallError",
    "CertificateManager",
    "CertificateReport",
    "CertificateSourceMissingError",
    "SSL_KEYS",
    "SyncResult",
    "TLSMaterial",
    "configure_server_ssl",
    "inspect_certificate",
    "resolve_environment",
    "sync_certificates",
]
