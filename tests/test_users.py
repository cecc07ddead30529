"""Tests for user/database lifecycle management."""
from __future__ import annotations

import re
import subprocess

import pytest

from mdbctl.errors import InvalidNameError
from mdbctl.providers.mariadb import MariaDBClient, MariaDBError
from mdbctl.users import UserManager, confirmed, validate_name


class FakeServer(MariaDBClient):
    """Interpret the handful of statements UserManager emits."""

    def __init__(self) -> None:
        """Start with only the administrative account."""
        super().__init__(mysql_bin="mysql")
        self.databases: set[str] = set()
        self.users: dict[tuple[str, str], str] = {("root", "localhost"): "admin"}
        self.grants: dict[tuple[str, str], list[str]] = {}
        self.statements: list[str] = []

    def _run_command(self, command, sql):  # type: ignore[override]
        out: list[str] = []
        for statement in filter(None, (part.strip() for part in sql.split(";"))):
            self.statements.append(statement)
            out.extend(self._apply(command, statement))
        return subprocess.CompletedProcess(command, 0, stdout="\n".join(out), stderr="")

    def _apply(self, command: list[str], statement: str) -> list[str]:
        if match := re.fullmatch(r"CREATE DATABASE `(\w+)`", statement):
            self._fail_if(match[1] in self.databases, command, "database exists")
            self.databases.add(match[1])
        elif match := re.fullmatch(r"CREATE USER '(\w+)'@'(.+?)' IDENTIFIED BY '(.+)'", statement):
            key = (match[1], match[2])
            self._fail_if(key in self.users, command, "Operation CREATE USER failed")
            self.users[key] = match[3]
        elif match := re.fullmatch(
            r"GRANT ALL PRIVILEGES ON `(\w+)`\.\* TO '(\w+)'@'(.+?)'", statement
        ):
            self.grants.setdefault((match[2], match[3]), []).append(
                f"GRANT ALL PRIVILEGES ON `{match[1]}`.* TO `{match[2]}`@`{match[3]}`"
            )
        elif match := re.fullmatch(r"ALTER USER '(\w+)'@'(.+?)' IDENTIFIED BY '(.+)'", statement):
            key = (match[1], match[2])
            self._fail_if(key not in self.users, command, "Operation ALTER USER failed")
            self.users[key] = match[3]
        elif match := re.fullmatch(r"DROP DATABASE IF EXISTS `(\w+)`", statement):
            self.databases.discard(match[1])
        elif match := re.fullmatch(r"DROP USER IF EXISTS '(\w+)'@'(.+?)'", statement):
            self.users.pop((match[1], match[2]), None)
            self.grants.pop((match[1], match[2]), None)
        elif statement.startswith("SELECT User, Host FROM mysql.user"):
            return [f"{user}\t{host}" for user, host in sorted(self.users)]
        elif match := re.fullmatch(r"SHOW GRANTS FOR '(\w+)'@'(.+?)'", statement):
            key = (match[1], match[2])
            self._fail_if(key not in self.users, command, "There is no such grant")
            usage = f"GRANT USAGE ON *.* TO `{key[0]}`@`{key[1]}`"
            return [usage, *self.grants.get(key, [])]
        elif statement != "FLUSH PRIVILEGES":
            raise AssertionError(f"unexpected SQL: {statement}")
        return []

    @staticmethod
    def _fail_if(condition: bool, command: list[str], message: str) -> None:
        if condition:
            raise MariaDBError(command, 1, f"ERROR 1396 (HY000): {message}")


@pytest.fixture
def server() -> FakeServer:
    """Return an empty fake server."""
    return FakeServer()


@pytest.fixture
def manager(server: FakeServer) -> UserManager:
    """Return a manager with deterministic secrets."""
    counter = iter(range(1000))
    return UserManager(
        client=server,
        host="%",
        secret_factory=lambda: f"secret{next(counter):027d}",
    )


@pytest.mark.parametrize("name", ["app", "App_01", "x" * 32, "_"])
def test_validate_name_accepts_safe_identifiers(name: str) -> None:
    """Letters, digits and underscores up to 32 characters are accepted."""
    assert validate_name(name) == name


@pytest.mark.parametrize("name", ["", "x" * 33, "app-db", "app db", "a'b", "a`b", "ünï"])
def test_validate_name_rejects_unsafe_identifiers(name: str) -> None:
    """Anything outside the safe alphabet is rejected."""
    with pytest.raises(InvalidNameError):
        validate_name(name)


@pytest.mark.parametrize(
    ("answer", "expected"),
    [
        ("y", True),
        ("Y", True),
        (" y\n", True),
        ("yes", False),
        ("n", False),
        ("", False),
        (None, False),
    ],
)
def test_confirmed_accepts_only_y(answer: str | None, expected: bool) -> None:
    """Only ``y`` (any case) confirms."""
    assert confirmed(answer) is expected


def test_create_then_grants_scoped_to_own_database(
    manager: UserManager,
    server: FakeServer,
) -> None:
    """Creating a user grants privileges on its own database only."""
    secret = manager.create("app")

    assert secret == "secret" + "0" * 27
    assert "app" in server.databases
    assert server.users[("app", "%")] == secret
    assert server.statements[-1] == "FLUSH PRIVILEGES"
    grants = manager.grants("app")
    assert grants[0] == "GRANT USAGE ON *.* TO `app`@`%`"
    assert grants[1:] == ["GRANT ALL PRIVILEGES ON `app`.* TO `app`@`%`"]


def test_reset_changes_secret(manager: UserManager, server: FakeServer) -> None:
    """Reset installs a fresh secret and flushes privileges."""
    first = manager.create("app")

    second = manager.reset("app")

    assert second != first
    assert server.users[("app", "%")] == second
    assert server.statements[-2:] == [
        f"ALTER USER 'app'@'%' IDENTIFIED BY '{second}'",
        "FLUSH PRIVILEGES",
    ]


def test_reset_unknown_user_propagates_engine_error(manager: UserManager) -> None:
    """The engine's error for an unknown user reaches the caller."""
    with pytest.raises(MariaDBError, match="ALTER USER failed"):
        manager.reset("ghost")


def test_drop_then_list_omits_user(manager: UserManager, server: FakeServer) -> None:
    """Dropping removes both the database and the account."""
    manager.create("app")
    manager.create("other")

    manager.drop("app")

    assert server.statements[-1] == "FLUSH PRIVILEGES"
    users = [record.user for record in manager.list_users()]
    assert "app" not in users
    assert "other" in users
    assert "app" not in server.databases


def test_list_users_parses_rows(manager: UserManager) -> None:
    """Rows from ``mysql.user`` become records."""
    manager.create("app")

    records = manager.list_users()

    assert [record.to_dict() for record in records] == [
        {"user": "app", "host": "%"},
        {"user": "root", "host": "localhost"},
    ]


def test_invalid_name_never_reaches_server(manager: UserManager, server: FakeServer) -> None:
    """Validation happens before any SQL is sent."""
    with pytest.raises(InvalidNameError):
        manager.create("app; DROP DATABASE mysql")

    assert server.statements == []
