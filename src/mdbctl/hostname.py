"""Pre-flight checks that the host name can be issued a certificate."""
from __future__ import annotations

import ipaddress
import socket
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .errors import ExternalCommandError, MdbctlError

LOCAL_HOSTNAMES = frozenset({"localhost", "localhost.localdomain"})


class HostnameInvalidError(MdbctlError):
    """Raised when the host only knows itself as ``localhost``."""


class DnsUnresolvableError(MdbctlError):
    """Raised when the host name has no usable DNS A record."""


class DnsMismatchError(MdbctlError):
    """Raised when the A record points at an address this host does not own."""


@dataclass(frozen=True, slots=True)
class HostIdentity:
    """Outcome of a successful pre-flight check."""

    fqdn: str
    resolved: tuple[str, ...]
    local: tuple[str, ...]
    matched: str


def _is_loopback(address: str) -> bool:
    try:
        return ipaddress.ip_address(address).is_loopback
    except ValueError:
        return False


def resolve_fqdn() -> str:
    """Return the fully-qualified host name."""
    return socket.getfqdn()


def resolve_a_records(name: str, dig_bin: str = "dig") -> tuple[str, ...]:
    """Return the IPv4 addresses public DNS holds for *name*, excluding loopback.

    DNS is queried with ``dig`` rather than the system resolver: Debian maps
    the host name to ``127.0.1.1`` in ``/etc/hosts`` and NSS answers from that
    file without ever asking DNS.
    """
    command = [dig_bin, "+short", "A", name]
    try:
        result = subprocess.run(  # noqa: S603
            command,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ExternalCommandError(command, None, str(exc)) from exc
    if result.returncode != 0:
        raise ExternalCommandError(command, result.returncode, result.stderr.strip() or "no output")
    return parse_dig_output(result.stdout)


def parse_dig_output(output: str) -> tuple[str, ...]:
    """Extract IPv4 addresses from ``dig +short`` output; CNAME lines are skipped."""
    addresses: list[str] = []
    for line in output.splitlines():
        candidate = line.strip()
        try:
            address = ipaddress.IPv4Address(candidate)
        except ValueError:
            continue
        if not address.is_loopback and candidate not in addresses:
            addresses.append(candidate)
    return tuple(addresses)


def local_ipv4_addresses(ip_bin: str = "ip") -> tuple[str, ...]:
    """Return the IPv4 addresses assigned to non-loopback interfaces."""
    command = [ip_bin, "-4", "-o", "addr", "show"]
    try:
        result = subprocess.run(  # noqa: S603
            command,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ExternalCommandError(command, None, str(exc)) from exc
    if result.returncode != 0:
        raise ExternalCommandError(command, result.returncode, result.stderr.strip() or "no output")
    return parse_ip_addr_output(result.stdout)


def parse_ip_addr_output(output: str) -> tuple[str, ...]:
    """Extract non-loopback addresses from ``ip -4 -o addr show`` output."""
    addresses: list[str] = []
    for line in output.splitlines():
        fields = line.split()
        if "inet" not in fields:
            continue
        index = fields.index("inet")
        if index + 1 >= len(fields):
            continue
        address = fields[index + 1].split("/", 1)[0]
        if not _is_loopback(address) and address not in addresses:
            addresses.append(address)
    return tuple(addresses)


def verify_hostname(
    fqdn: str | None = None,
    *,
    resolver: Callable[[str], Sequence[str]] = resolve_a_records,
    interfaces: Callable[[], Sequence[str]] = local_ipv4_addresses,
) -> HostIdentity:
    """Check that *fqdn* (default: this host's FQDN) resolves to this host.

    Raises :class:`HostnameInvalidError`, :class:`DnsUnresolvableError` or
    :class:`DnsMismatchError`.
    """
    name = (fqdn if fqdn is not None else resolve_fqdn()).strip().rstrip(".").lower()
    if not name or name in LOCAL_HOSTNAMES:
        raise HostnameInvalidError(
            f"Host name '{name or '<empty>'}' is not a public FQDN; "
            "set one with hostnamectl before requesting a certificate."
        )

    resolved = tuple(resolver(name))
    if not resolved:
        raise DnsUnresolvableError(f"No DNS A record found for {name}.")

    local = tuple(interfaces())
    for address in resolved:
        if address in local:
            return HostIdentity(fqdn=name, resolved=resolved, local=local, matched=address)

    raise DnsMismatchError(
        f"{name} resolves to {', '.join(resolved)}, which is not assigned to this host "
        f"(local addresses: {', '.join(local) or 'none'})."
    )


__all__ = [
    "DnsMismatchError",
    "DnsUnresolvableError",
    "HostIdentity",
    "HostnameInvalidError",
    "LOCAL_HOSTNAMES",
    "local_ipv4_addresses",
    "parse_dig_output",
    "parse_ip_addr_output",
    "resolve_a_records",
    "resolve_fqdn",
    "verify_hostname",
]
