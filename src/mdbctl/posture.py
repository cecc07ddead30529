"""Security posture toggles: remote bind address and mandatory TLS."""
from __future__ import annotations

from dataclasses import dataclass

from .config import ServerConfigSettings
from .logging import OperationScope
from .providers.systemd import SystemdProvider
from .server_config import ServerConfig

FORCE_TLS_KEY = "require_secure_transport"
BIND_ADDRESS_KEY = "bind-address"
SKIP_NETWORKING_KEY = "skip-networking"
ENABLED_TOKEN = "ON"
DISABLED_TOKEN = "OFF"

_LOOPBACK_NAMES = {"localhost", "::1"}


@dataclass(frozen=True)
class PostureState:
    """Security-relevant settings as currently written in the option file."""

    force_tls: bool
    bind_address: str | None
    networking_disabled: bool
    remote_access: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "force_tls": self.force_tls,
            "bind_address": self.bind_address,
            "networking_disabled": self.networking_disabled,
            "remote_access": self.remote_access,
        }


def force_tls_enabled(config: ServerConfig, section: str) -> bool:
    """Return ``True`` when non-TLS connections are rejected."""
    value = config.get(section, FORCE_TLS_KEY)
    return value is not None and value.strip().upper() == ENABLED_TOKEN


def remote_access_enabled(config: ServerConfig, settings: ServerConfigSettings) -> bool:
    """Return ``True`` when the server listens beyond the loopback interface."""
    if config.has(settings.section, SKIP_NETWORKING_KEY):
        return False
    bind = config.get(settings.section, BIND_ADDRESS_KEY)
    if bind is None:
        # mysqld listens on every interface when bind-address is unset.
        return True
    bind = bind.strip()
    return bind != settings.loopback_address and bind not in _LOOPBACK_NAMES and not (
        bind.startswith("127.")
    )


def read_posture(config: ServerConfig, settings: ServerConfigSettings) -> PostureState:
    """Summarise the posture recorded in *config*."""
    return PostureState(
        force_tls=force_tls_enabled(config, settings.section),
        bind_address=config.get(settings.section, BIND_ADDRESS_KEY),
        networking_disabled=config.has(settings.section, SKIP_NETWORKING_KEY),
        remote_access=remote_access_enabled(config, settings),
    )


def toggle_force_tls(config: ServerConfig, section: str) -> bool:
    """Flip ``require_secure_transport`` and return the new state."""
    enable = not force_tls_enabled(config, section)
    config.set(section, FORCE_TLS_KEY, ENABLED_TOKEN if enable else DISABLED_TOKEN)
    return enable


def toggle_remote_access(config: ServerConfig, settings: ServerConfigSettings) -> bool:
    """Flip between loopback-only and all-interface binding; return the new state.

    ``skip-networking`` is removed in both directions: with it present the
    server would accept neither remote nor local TCP connections.
    """
    enable = not remote_access_enabled(config, settings)
    address = settings.remote_address if enable else settings.loopback_address
    config.unset(settings.section, SKIP_NETWORKING_KEY)
    config.set(settings.section, BIND_ADDRESS_KEY, address)
    return enable


@dataclass(slots=True)
class PostureManager:
    """Apply a toggle to the option file, restart MariaDB and report."""

    settings: ServerConfigSettings
    systemd: SystemdProvider

    def current(self) -> PostureState:
        """Return the posture currently written on disk."""
        return read_posture(ServerConfig.load(self.settings.path), self.settings)

    def toggle_force_tls(self, op: OperationScope) -> PostureState:
        """Toggle mandatory TLS."""
        config = ServerConfig.load(self.settings.path)
        before = force_tls_enabled(config, self.settings.section)
        toggle_force_tls(config, self.settings.section)
        return self._apply(op, config, FORCE_TLS_KEY, "on" if before else "off")

    def toggle_remote_access(self, op: OperationScope) -> PostureState:
        """Toggle remote (all-interface) binding."""
        config = ServerConfig.load(self.settings.path)
        before = remote_access_enabled(config, self.settings)
        toggle_remote_access(config, self.settings)
        return self._apply(op, config, BIND_ADDRESS_KEY, "remote" if before else "local")

    def _apply(
        self,
        op: OperationScope,
        config: ServerConfig,
        key: str,
        before: str,
    ) -> PostureState:
        config.save(self.settings.path)
        op.add_step(f"server_config.{key}", status="success", detail=f"was {before}")
        op.info(f"Updated {key} in {self.settings.path}; restarting {self.systemd.unit}.")
        self.systemd.restart()
        op.add_step("systemd.restart", status="success", detail=self.systemd.unit)
        return self.current()


__all__ = [
    "BIND_ADDRESS_KEY",
    "DISABLED_TOKEN",
    "ENABLED_TOKEN",
    "FORCE_TLS_KEY",
    "PostureManager",
    "PostureState",
    "SKIP_NETWORKING_KEY",
    "force_tls_enabled",
    "read_posture",
    "remote_access_enabled",
    "toggle_force_tls",
    "toggle_remote_access",
]
