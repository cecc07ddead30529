"""Provider interfaces for mdbctl."""
from __future__ import annotations

from .certbot import CertbotError, CertbotProvider
from .mariadb import MariaDBClient, MariaDBError
from .packages import PackageInstaller, PackageInstallError, PackageInstallResult
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "CertbotError",
    "CertbotProvider",
    "MariaDBClient",
    "MariaDBError",
    "PackageInstallError",
    "PackageInstallResult",
    "PackageInstaller",
    "SystemdError",
    "SystemdProvider",
]
