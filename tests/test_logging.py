"""Tests for the structured logging subsystem."""
from __future__ import annotations

import json
from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from mdbctl.logging import StructuredLogger


def _logger(tmp_path: Path) -> tuple[StructuredLogger, StringIO, StringIO]:
    out = StringIO()
    err = StringIO()
    logger = StructuredLogger(
        tmp_path / "logs",
        console=Console(file=out, width=200),
        error_console=Console(file=err, width=200),
    )
    return logger, out, err


def _records(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_operation_writes_record_and_audit_lines(tmp_path: Path) -> None:
    """Operator lines are tagged in the audit log and the result lands in JSONL."""
    logger, out, err = _logger(tmp_path)

    with logger.operation("renew-ssl", args={"dry": False}, target={"kind": "certificate"}) as op:
        op.info("Copied certificates.")
        op.warn("Certificate expires soon.")
        op.add_step("certificates.sync", status="updated", detail="/etc/letsencrypt/live/x")
        op.success("done", changed=1)

    audit = (tmp_path / "logs" / "mdbctl.log").read_text(encoding="utf-8").splitlines()
    assert audit == ["[INFO] Copied certificates.", "[WARN] Certificate expires soon."]
    assert "Copied certificates." in out.getvalue()
    assert err.getvalue() == ""

    (record,) = _records(tmp_path)
    assert record["command"] == "renew-ssl"
    assert record["target"] == {"kind": "certificate"}
    assert record["steps"] == [
        {"name": "certificates.sync", "status": "updated", "detail": "/etc/letsencrypt/live/x"}
    ]
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["changed"] == 1
    assert result["rc"] == 0


def test_fail_goes_to_error_console(tmp_path: Path) -> None:
    """Error lines are printed to stderr and tagged ``[ERROR]``."""
    logger, out, err = _logger(tmp_path)

    with logger.operation("users create") as op:
        op.fail("Invalid name '[x]'.")
        op.error("Invalid name '[x]'.")

    assert "Invalid name '[x]'." in err.getvalue()
    assert out.getvalue() == ""
    audit = (tmp_path / "logs" / "mdbctl.log").read_text(encoding="utf-8")
    assert audit == "[ERROR] Invalid name '[x]'.\n"
    (record,) = _records(tmp_path)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["errors"] == ["Invalid name '[x]'."]  # type: ignore[index]


def test_exception_without_result_records_error(tmp_path: Path) -> None:
    """An escaping exception is recorded as an error before propagating."""
    logger, _, _ = _logger(tmp_path)

    with pytest.raises(ValueError, match="boom"):
        with logger.operation("toggle-remote"):
            raise ValueError("boom")

    (record,) = _records(tmp_path)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["message"] == "boom"  # type: ignore[index]
    assert record["result"]["rc"] == 1  # type: ignore[index]


def test_operation_without_explicit_result_defaults_to_success(tmp_path: Path) -> None:
    """Scopes that never set a result are recorded as successful."""
    logger, _, _ = _logger(tmp_path)

    with logger.operation("status"):
        pass

    (record,) = _records(tmp_path)
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_context_is_sanitised(tmp_path: Path) -> None:
    """Paths and tuples in the context become JSON-friendly values."""
    logger, _, _ = _logger(tmp_path)

    with logger.operation("configure") as op:
        op.success("ok", context={"path": Path("/etc/mysql"), "packages": ("a", "b")})

    (record,) = _records(tmp_path)
    assert record["result"]["context"] == {  # type: ignore[index]
        "path": "/etc/mysql",
        "packages": ["a", "b"],
    }


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir, console=Console(file=StringIO()))
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.info("still printed")
        op.success("done", changed=0)

    assert not log_dir.exists()


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger, _, _ = _logger(tmp_path)
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("demo-2") as op:
        op.success("done", changed=0)
