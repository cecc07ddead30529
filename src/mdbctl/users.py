"""User and database lifecycle on top of the ``mysql`` client."""
from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field

from .credentials import generate_secret
from .errors import InvalidNameError
from .providers.mariadb import MariaDBClient, account, quote_identifier, quote_string

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,32}$")
FORCE_TOKEN = "force"


def validate_name(name: str) -> str:
    """Return *name* when it is a safe MariaDB identifier, else raise."""
    if not NAME_PATTERN.fullmatch(name):
        raise InvalidNameError(
            f"Invalid name '{name}': use 1-32 characters from A-Z, a-z, 0-9 and '_'."
        )
    return name


def confirmed(answer: str | None) -> bool:
    """Return ``True`` only for a ``y`` answer (any case)."""
    return (answer or "").strip().lower() == "y"


@dataclass(frozen=True)
class UserRecord:
    """One row of ``mysql.user``."""

    user: str
    host: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"user": self.user, "host": self.host}


@dataclass(slots=True)
class UserManager:
    """Create, rotate and drop a user together with its same-named database."""

    client: MariaDBClient
    host: str = "%"
    secret_factory: Callable[[], str] = field(default=generate_secret)

    def create(self, name: str) -> str:
        """Create database and user *name*; return the generated secret."""
        validate_name(name)
        secret = self.secret_factory()
        db = quote_identifier(name)
        who = account(name, self.host)
        self.client.execute(
            f"CREATE DATABASE {db};\n"
            f"CREATE USER {who} IDENTIFIED BY {quote_string(secret)};\n"
            f"GRANT ALL PRIVILEGES ON {db}.* TO {who};\n"
            "FLUSH PRIVILEGES;\n"
        )
        return secret

    def reset(self, name: str) -> str:
        """Assign a fresh secret to *name* and return it."""
        validate_name(name)
        secret = self.secret_factory()
        self.client.execute(
            f"ALTER USER {account(name, self.host)} IDENTIFIED BY {quote_string(secret)};\n"
            "FLUSH PRIVILEGES;\n"
        )
        return secret

    def drop(self, name: str) -> None:
        """Drop database *name* and the matching user."""
        validate_name(name)
        self.client.execute(
            f"DROP DATABASE IF EXISTS {quote_identifier(name)};\n"
            f"DROP USER IF EXISTS {account(name, self.host)};\n"
            "FLUSH PRIVILEGES;\n"
        )

    def list_users(self) -> list[UserRecord]:
        """Return every account known to the server."""
        rows = self.client.query("SELECT User, Host FROM mysql.user ORDER BY User, Host;\n")
        records = []
        for row in rows:
            user = row[0] if row else ""
            host = row[1] if len(row) > 1 else ""
            records.append(UserRecord(user=user, host=host))
        return records

    def grants(self, name: str) -> list[str]:
        """Return the ``SHOW GRANTS`` lines for *name*."""
        validate_name(name)
        rows = self.client.query(f"SHOW GRANTS FOR {account(name, self.host)};\n")
        return [row[0] for row in rows if row]


__all__ = [
    "FORCE_TOKEN",
    "NAME_PATTERN",
    "UserManager",
    "UserRecord",
    "confirmed",
    "validate_name",
]
