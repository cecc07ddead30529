"""Tests for the Jinja2 template engine wrapper."""
from __future__ import annotations

import stat
from pathlib import Path

import pytest
from jinja2 import UndefinedError

from mdbctl.templates import TemplateEngine


def test_builtin_renewal_hook_renders() -> None:
    """The packaged hook template invokes ``renew-ssl``."""
    engine = TemplateEngine.with_overrides(None)

    text = engine.render_to_string(
        "renewal-hook.sh.j2",
        {"command": "/usr/local/bin/mdbctl", "config_file": None},
    )

    assert text.startswith("#!/bin/sh\n")
    assert text.rstrip().endswith("exec /usr/local/bin/mdbctl renew-ssl")
    assert text.endswith("\n")


def test_missing_variable_raises() -> None:
    """StrictUndefined refuses to render with missing context."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(UndefinedError):
        engine.render_to_string("client-credentials.cnf.j2", {})


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Templates in the override directory shadow the packaged ones."""
    override = tmp_path / "templates"
    override.mkdir()
    (override / "client-credentials.cnf.j2").write_text(
        "[client]\nuser=admin\npassword={{ password }}\n",
        encoding="utf-8",
    )
    engine = TemplateEngine.with_overrides(override)

    text = engine.render_to_string("client-credentials.cnf.j2", {"password": "s3cret"})

    assert text == "[client]\nuser=admin\npassword=s3cret\n"


def test_missing_override_directory_falls_back(tmp_path: Path) -> None:
    """A non-existent override directory is ignored."""
    engine = TemplateEngine.with_overrides(tmp_path / "absent")

    text = engine.render_to_string("client-credentials.cnf.j2", {"password": "pw"})

    assert text == "[client]\npassword=pw\n"


def test_render_to_path_sets_mode_and_reports_changes(tmp_path: Path) -> None:
    """Rendering writes atomically with the requested mode and skips no-op writes."""
    engine = TemplateEngine.with_overrides(None)
    target = tmp_path / "nested" / "my.cnf"

    assert engine.render_to_path(
        "client-credentials.cnf.j2", target, {"password": "one"}, mode=0o400
    )
    assert stat.S_IMODE(target.stat().st_mode) == 0o400
    assert target.read_text(encoding="utf-8") == "[client]\npassword=one\n"

    assert not engine.render_to_path(
        "client-credentials.cnf.j2", target, {"password": "one"}, mode=0o400
    )

    assert engine.render_to_path(
        "client-credentials.cnf.j2", target, {"password": "two"}, mode=0o400
    )
    assert target.read_text(encoding="utf-8") == "[client]\npassword=two\n"
    assert list(target.parent.iterdir()) == [target]
