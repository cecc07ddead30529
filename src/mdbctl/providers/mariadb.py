"""Provider wrapping the ``mysql`` administrative client."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ExternalCommandError


class MariaDBError(ExternalCommandError):
    """Raised when the ``mysql`` client reports a failure."""


def quote_identifier(name: str) -> str:
    """Return *name* quoted as a MariaDB identifier."""
    return "`" + name.replace("`", "``") + "`"


def quote_string(value: str) -> str:
    """Return *value* as a single-quoted SQL string literal."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def account(user: str, host: str) -> str:
    """Return the ``'user'@'host'`` account notation."""
    return f"{quote_string(user)}@{quote_string(host)}"


@dataclass(slots=True)
class MariaDBClient:
    """Run SQL through the ``mysql`` command line client.

    Statements are written to the client's stdin so that secrets embedded in
    ``IDENTIFIED BY`` clauses never show up in the process table. When the
    credentials file exists it is passed with ``--defaults-extra-file``.
    """

    mysql_bin: str = "mysql"
    credentials_file: Path | None = None

    def execute(self, sql: str) -> subprocess.CompletedProcess[str]:
        """Execute *sql* (one or more ``;``-terminated statements)."""
        return self._run(sql, batch=False)

    def query(self, sql: str) -> list[tuple[str, ...]]:
        """Execute *sql* and return the result rows as tuples of strings."""
        result = self._run(sql, batch=True)
        rows: list[tuple[str, ...]] = []
        for line in (result.stdout or "").splitlines():
            if not line:
                continue
            rows.append(tuple(line.split("\t")))
        return rows

    def base_command(self) -> list[str]:
        """Return the client invocation without SQL."""
        command = [self.mysql_bin]
        if self.credentials_file is not None and self.credentials_file.exists():
            command.append(f"--defaults-extra-file={self.credentials_file}")
        return command

    def _run(self, sql: str, *, batch: bool) -> subprocess.CompletedProcess[str]:
        command = self.base_command()
        if batch:
            command.extend(["--batch", "--skip-column-names"])
        return self._run_command(command, sql)

    def _run_command(
        self,
        command: Sequence[str],
        sql: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(command),
                input=sql,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise MariaDBError(command, None, str(exc)) from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise MariaDBError(command, result.returncode, message)
        return result


__all__ = ["MariaDBClient", "MariaDBError", "account", "quote_identifier", "quote_string"]
