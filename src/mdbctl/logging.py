"""Structured operation logging for mdbctl commands.

Every CLI invocation runs inside an :class:`OperationScope`. The scope writes
two artefacts under the configured log directory:

``operations.jsonl``
    One JSON record per operation with the command, arguments, recorded
    steps and the final result.

``mdbctl.log``
    Append-only audit trail of every operator-facing line, tagged ``[INFO]``,
    ``[WARN]`` or ``[ERROR]``.

Logging never aborts a command: when the directory cannot be created or a
write fails, the logger disables itself and the workflow carries on.
"""
from __future__ import annotations

import json
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape

OPERATIONS_LOG = "operations.jsonl"
AUDIT_LOG = "mdbctl.log"

_LEVEL_STYLE = {
    "INFO": None,
    "WARN": "yellow",
    "ERROR": "red",
}


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationStep:
    """Single recorded step within an operation."""

    name: str
    status: str
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "status": self.status}
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


@dataclass(slots=True)
class OperationScope:
    """Collects steps and the final result for a single CLI operation."""

    logger: StructuredLogger
    command: str
    args: dict[str, object] = field(default_factory=dict)
    target: dict[str, object] = field(default_factory=dict)
    steps: list[OperationStep] = field(default_factory=list)
    result: dict[str, object] | None = None

    # -- operator-facing lines ---------------------------------------------
    def info(self, message: str) -> None:
        """Print *message* and append it to the audit log."""
        self.logger.emit("INFO", message)

    def warn(self, message: str) -> None:
        """Print a warning line and append it to the audit log."""
        self.logger.emit("WARN", message)

    def fail(self, message: str) -> None:
        """Print an error line to stderr and append it to the audit log."""
        self.logger.emit("ERROR", message)

    # -- structured record -------------------------------------------------
    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Record a named step (``success``, ``noop``, ``skipped`` or ``error``)."""
        self.steps.append(OperationStep(name=name, status=status, detail=detail))

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=(),
            rc=0,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            rc=0,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] = (),
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=0,
            warnings=warnings,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str],
        errors: Sequence[str],
        rc: int,
        context: Mapping[str, object] | None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
            "warnings": list(warnings),
            "errors": list(errors),
            "context": _sanitize(dict(context or {})),
        }


class StructuredLogger:
    """Write operation records and the tagged audit log."""

    def __init__(
        self,
        logs_dir: Path,
        *,
        console: Console | None = None,
        error_console: Console | None = None,
    ) -> None:
        """Prepare *logs_dir*; disable logging when it cannot be created."""
        self._logs_dir = logs_dir
        self._operations_log_path = logs_dir / OPERATIONS_LOG
        self._audit_log_path = logs_dir / AUDIT_LOG
        self._console = console or Console()
        self._error_console = error_console or Console(stderr=True)
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
        else:
            self._enabled = True

    @property
    def audit_log_path(self) -> Path:
        """Return the path of the tagged audit log."""
        return self._audit_log_path

    def emit(self, level: str, message: str) -> None:
        """Print *message* on the console for *level* and append it to the audit log."""
        style = _LEVEL_STYLE.get(level)
        text = escape(message)
        rendered = f"[{style}]{text}[/{style}]" if style else text
        if level == "ERROR":
            self._error_console.print(rendered)
        else:
            self._console.print(rendered)
        self._append(self._audit_log_path, f"[{level}] {message}\n")

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a block as a logged operation."""
        scope = OperationScope(
            logger=self,
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        started_at = datetime.now(tz=UTC)
        started = time.monotonic()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                exit_code = getattr(exc, "exit_code", None)
                if exit_code == 0:
                    scope.success("Completed.")
                else:
                    message = str(exc) or type(exc).__name__
                    scope.error(message, rc=exit_code if isinstance(exit_code, int) else 1)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            duration_ms = int((time.monotonic() - started) * 1000)
            self._write_record(scope, started_at, duration_ms)

    def _write_record(
        self,
        scope: OperationScope,
        started_at: datetime,
        duration_ms: int,
    ) -> None:
        record = {
            "timestamp": started_at.isoformat(timespec="seconds").replace("+00:00", "Z"),
            "command": scope.command,
            "args": _sanitize(scope.args),
            "target": _sanitize(scope.target),
            "steps": [step.to_dict() for step in scope.steps],
            "duration_ms": duration_ms,
            "result": scope.result,
        }
        self._append(self._operations_log_path, json.dumps(record, sort_keys=True) + "\n")

    def _append(self, path: Path, line: str) -> None:
        if not self._enabled:
            return
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "OperationStep", "StructuredLogger"]
