"""Replace the running zipapp with the published copy."""
from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from . import __version__
from .errors import MdbctlError

DOWNLOAD_TIMEOUT = 60.0


class DownloadFailedError(MdbctlError):
    """Raised when the published copy cannot be fetched."""


class EmptyPayloadError(MdbctlError):
    """Raised when the download succeeded but returned no bytes."""


class UpdateResult(Enum):
    """Outcome of :func:`self_update`."""

    UNCHANGED = "unchanged"
    UPDATED = "updated"


@dataclass(frozen=True, slots=True)
class UpdateOutcome:
    """Details of a self-update run."""

    result: UpdateResult
    target: Path
    backup: Path | None
    size: int


def fetch(url: str, *, timeout: float = DOWNLOAD_TIMEOUT) -> bytes:
    """Download *url* and return the body."""
    request = Request(url, headers={"User-Agent": f"mdbctl/{__version__}"})  # noqa: S310
    try:
        with urlopen(request, timeout=timeout) as response:  # noqa: S310
            return response.read()
    except HTTPError as exc:
        raise DownloadFailedError(
            f"Download of {url} failed: HTTP {exc.code} {exc.reason}"
        ) from exc
    except URLError as exc:
        raise DownloadFailedError(f"Download of {url} failed: {exc.reason}") from exc
    except OSError as exc:
        raise DownloadFailedError(f"Download of {url} failed: {exc}") from exc


def backup_path(target: Path) -> Path:
    """Return the ``<name>.bak`` sibling of *target*."""
    return target.with_name(f"{target.name}.bak")


def self_update(
    url: str,
    target: Path,
    *,
    downloader: Callable[[str], bytes] = fetch,
) -> UpdateOutcome:
    """Install the copy published at *url* over *target* when they differ.

    The download is validated before anything on disk is touched. The running
    copy is preserved as ``<name>.bak`` and the replacement keeps its mode.
    """
    payload = downloader(url)
    if not payload:
        raise EmptyPayloadError(f"Download of {url} returned an empty payload.")

    current = target.read_bytes()
    if current == payload:
        return UpdateOutcome(
            result=UpdateResult.UNCHANGED,
            target=target,
            backup=None,
            size=len(payload),
        )

    mode = target.stat().st_mode & 0o7777
    backup = backup_path(target)
    shutil.copy2(target, backup)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
        tmp_path.chmod(mode)
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return UpdateOutcome(
        result=UpdateResult.UPDATED,
        target=target,
        backup=backup,
        size=len(payload),
    )


__all__ = [
    "DownloadFailedError",
    "EmptyPayloadError",
    "UpdateOutcome",
    "UpdateResult",
    "backup_path",
    "fetch",
    "self_update",
]
