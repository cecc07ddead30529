"""Configuration loader for mdbctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/mdbctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MDBCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MDBCTL_TLS__EMAIL=dba@example.org
    export MDBCTL_SERVER_CONFIG__PATH=/etc/my.cnf.d/server.cnf

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import MdbctlError

ENV_PREFIX = "MDBCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(MdbctlError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServiceConfig:
    """Database service identity (systemd unit and runtime account)."""

    name: str = "mariadb"
    user: str = "mysql"
    group: str = "mysql"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "user": self.user, "group": self.group}


@dataclass(frozen=True)
class ServerConfigSettings:
    """Location of the server option file and the bind addresses to toggle."""

    path: Path = Path("/etc/mysql/mariadb.conf.d/50-server.cnf")
    section: str = "mysqld"
    loopback_address: str = "127.0.0.1"
    remote_address: str = "0.0.0.0"  # noqa: S104 - toggled on operator request

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "section": self.section,
            "loopback_address": self.loopback_address,
            "remote_address": self.remote_address,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """Administrative client settings."""

    mysql_bin: str = "mysql"
    credentials_file: Path = Path("/root/.my.cnf")
    admin_user: str = "root"
    user_host: str = "%"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mysql_bin": self.mysql_bin,
            "credentials_file": str(self.credentials_file),
            "admin_user": self.admin_user,
            "user_host": self.user_host,
        }


@dataclass(frozen=True)
class PackagesConfig:
    """Package manager settings."""

    names: tuple[str, ...] = ("mariadb-server", "mariadb-client", "certbot", "dnsutils")
    apt_bin: str = "apt-get"
    lock_file: Path = Path("/var/lib/dpkg/lock-frontend")
    lock_timeout: float = 600.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "names": list(self.names),
            "apt_bin": self.apt_bin,
            "lock_file": str(self.lock_file),
            "lock_timeout": self.lock_timeout,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate acquisition, sync and renewal hook settings."""

    certbot_bin: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    destination_dir: Path = Path("/etc/mysql/ssl")
    hook_dir: Path = Path("/etc/letsencrypt/renewal-hooks/deploy")
    hook_name: str = "mdbctl-mariadb.sh"
    email: str | None = None
    warn_expiry_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "certbot_bin": self.certbot_bin,
            "live_dir": str(self.live_dir),
            "destination_dir": str(self.destination_dir),
            "hook_dir": str(self.hook_dir),
            "hook_name": self.hook_name,
            "email": self.email,
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"
    bypass_options: str = "--skip-grant-tables --skip-networking"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "systemctl_bin": self.systemctl_bin,
            "bypass_options": self.bypass_options,
        }


@dataclass(frozen=True)
class UpdateConfig:
    """Self-update source and target."""

    url: str | None = None
    target: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "url": self.url,
            "target": str(self.target) if self.target is not None else None,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for mdbctl."""

    config_file: Path
    logs_dir: Path
    templates_dir: Path
    require_root: bool
    service: ServiceConfig
    server_config: ServerConfigSettings
    database: DatabaseConfig
    packages: PackagesConfig
    tls: TLSConfig
    systemd: SystemdConfig
    update: UpdateConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "require_root": self.require_root,
            "service": self.service.to_dict(),
            "server_config": self.server_config.to_dict(),
            "database": self.database.to_dict(),
            "packages": self.packages.to_dict(),
            "tls": self.tls.to_dict(),
            "systemd": self.systemd.to_dict(),
            "update": self.update.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/mdbctl/config.yml",
    "logs_dir": "/var/log/mdbctl",
    "templates_dir": "/etc/mdbctl/templates",
    "require_root": True,
    "service": {
        "name": "mariadb",
        "user": "mysql",
        "group": "mysql",
    },
    "server_config": {
        "path": "/etc/mysql/mariadb.conf.d/50-server.cnf",
        "section": "mysqld",
        "loopback_address": "127.0.0.1",
        "remote_address": "0.0.0.0",  # noqa: S104
    },
    "database": {
        "mysql_bin": "mysql",
        "credentials_file": "/root/.my.cnf",
        "admin_user": "root",
        "user_host": "%",
    },
    "packages": {
        "names": ["mariadb-server", "mariadb-client", "certbot", "dnsutils"],
        "apt_bin": "apt-get",
        "lock_file": "/var/lib/dpkg/lock-frontend",
        "lock_timeout": 600.0,
    },
    "tls": {
        "certbot_bin": "certbot",
        "live_dir": "/etc/letsencrypt/live",
        "destination_dir": "/etc/mysql/ssl",
        "hook_dir": "/etc/letsencrypt/renewal-hooks/deploy",
        "hook_name": "mdbctl-mariadb.sh",
        "email": None,
        "warn_expiry_days": 30,
    },
    "systemd": {
        "systemctl_bin": "systemctl",
        "bypass_options": "--skip-grant-tables --skip-networking",
    },
    "update": {
        "url": None,
        "target": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    key: set(cast(Mapping[str, object], value).keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    packages = _as_dict(raw.get("packages"), "packages")
    names = packages.get("names")
    if names is not None:
        for index, name in enumerate(_as_sequence(names, "packages.names")):
            if not isinstance(name, str) or not name.strip():
                raise ConfigError(f"packages.names[{index}] must be a non-empty string.")

    server = _as_dict(raw.get("server_config"), "server_config")
    section_name = server.get("section")
    if section_name is not None and not str(section_name).strip():
        raise ConfigError("server_config.section must be a non-empty string.")

    tls = _as_dict(raw.get("tls"), "tls")
    hook_name = tls.get("hook_name")
    if hook_name is not None and "/" in str(hook_name):
        raise ConfigError("tls.hook_name must be a file name, not a path.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    service_mapping = _as_dict(raw.get("service"), "service")
    service = ServiceConfig(
        name=_expect_str(service_mapping.get("name", "mariadb"), "service.name"),
        user=_expect_str(service_mapping.get("user", "mysql"), "service.user"),
        group=_expect_str(service_mapping.get("group", "mysql"), "service.group"),
    )

    server_mapping = _as_dict(raw.get("server_config"), "server_config")
    server_config = ServerConfigSettings(
        path=_to_path(server_mapping.get("path")),
        section=str(server_mapping.get("section", "mysqld")).strip(),
        loopback_address=str(server_mapping.get("loopback_address", "127.0.0.1")),
        remote_address=str(server_mapping.get("remote_address", "0.0.0.0")),  # noqa: S104
    )

    database_mapping = _as_dict(raw.get("database"), "database")
    database = DatabaseConfig(
        mysql_bin=str(database_mapping.get("mysql_bin", "mysql")),
        credentials_file=_to_path(database_mapping.get("credentials_file")),
        admin_user=str(database_mapping.get("admin_user", "root")),
        user_host=str(database_mapping.get("user_host", "%")),
    )

    packages_mapping = _as_dict(raw.get("packages"), "packages")
    packages = PackagesConfig(
        names=tuple(
            str(name).strip()
            for name in _as_sequence(packages_mapping.get("names", ()), "packages.names")
        ),
        apt_bin=str(packages_mapping.get("apt_bin", "apt-get")),
        lock_file=_to_path(packages_mapping.get("lock_file")),
        lock_timeout=_expect_positive_float(
            packages_mapping.get("lock_timeout"),
            "packages.lock_timeout",
            default=600.0,
        ),
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    warn_expiry_days = _expect_int(
        tls_mapping.get("warn_expiry_days"),
        "tls.warn_expiry_days",
        default=30,
    )
    if warn_expiry_days < 0:
        raise ConfigError("tls.warn_expiry_days must be non-negative.")
    email_value = tls_mapping.get("email")
    tls = TLSConfig(
        certbot_bin=str(tls_mapping.get("certbot_bin", "certbot")),
        live_dir=_to_path(tls_mapping.get("live_dir")),
        destination_dir=_to_path(tls_mapping.get("destination_dir")),
        hook_dir=_to_path(tls_mapping.get("hook_dir")),
        hook_name=str(tls_mapping.get("hook_name", "mdbctl-mariadb.sh")),
        email=str(email_value).strip() if email_value else None,
        warn_expiry_days=warn_expiry_days,
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        bypass_options=str(
            systemd_mapping.get("bypass_options", "--skip-grant-tables --skip-networking")
        ),
    )

    update_mapping = _as_dict(raw.get("update"), "update")
    url_value = update_mapping.get("url")
    target_value = update_mapping.get("target")
    update = UpdateConfig(
        url=str(url_value).strip() if url_value else None,
        target=_to_path(target_value) if target_value else None,
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        require_root=_expect_bool(raw.get("require_root"), "require_root", default=True),
        service=service,
        server_config=server_config,
        database=database,
        packages=packages,
        tls=tls,
        systemd=systemd,
        update=update,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DatabaseConfig",
    "PackagesConfig",
    "ServerConfigSettings",
    "ServiceConfig",
    "SystemdConfig",
    "TLSConfig",
    "UpdateConfig",
    "load_config",
]
