"""Certbot deploy hook that re-runs ``mdbctl renew-ssl`` after renewals."""
from __future__ import annotations

import shlex
import shutil
import sys
from pathlib import Path

from .templates import TemplateEngine

HOOK_TEMPLATE = "renewal-hook.sh.j2"
HOOK_MODE = 0o755


def resolve_hook_command(program: str = "mdbctl") -> str:
    """Return an absolute, shell-quoted command that invokes this tool."""
    found = shutil.which(program)
    if found:
        return shlex.quote(found)
    return shlex.quote(str(Path(sys.argv[0]).resolve()))


def install_renewal_hook(
    templates: TemplateEngine,
    path: Path,
    *,
    command: str,
    config_file: Path | None = None,
) -> Path:
    """Write the deploy hook to *path*; the content is static, so just overwrite."""
    templates.render_to_path(
        HOOK_TEMPLATE,
        path,
        {
            "command": command,
            "config_file": shlex.quote(str(config_file)) if config_file else None,
        },
        mode=HOOK_MODE,
    )
    return path


__all__ = ["HOOK_MODE", "install_renewal_hook", "resolve_hook_command"]
