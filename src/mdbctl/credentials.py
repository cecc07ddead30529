"""Secret generation and the administrative credential file."""
from __future__ import annotations

import secrets
from pathlib import Path

from .templates import TemplateEngine

MIN_SECRET_LENGTH = 32
CREDENTIALS_TEMPLATE = "client-credentials.cnf.j2"
CREDENTIALS_MODE = 0o400


def generate_secret(nbytes: int = 32) -> str:
    """Return a random secret drawn from the URL-safe base64 alphabet.

    The alphabet (``A-Z a-z 0-9 - _``) needs no quoting inside a single-quoted
    SQL literal, an option file or a shell word, and base64 ``=`` padding is
    never included.
    """
    secret = secrets.token_urlsafe(nbytes).replace("=", "")
    if len(secret) < MIN_SECRET_LENGTH:
        raise ValueError(f"Secrets must be at least {MIN_SECRET_LENGTH} characters long.")
    return secret


def write_credentials_file(templates: TemplateEngine, path: Path, secret: str) -> None:
    """Persist *secret* as the admin client password, readable by the owner only."""
    templates.render_to_path(
        CREDENTIALS_TEMPLATE,
        path,
        {"password": secret},
        mode=CREDENTIALS_MODE,
    )


def remove_credentials_file(path: Path) -> bool:
    """Delete a stale credential file; return whether one existed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


__all__ = [
    "CREDENTIALS_MODE",
    "MIN_SECRET_LENGTH",
    "generate_secret",
    "remove_credentials_file",
    "write_credentials_file",
]
