"""Typer-powered command line interface for ``mdbctl``.

Every command runs inside a :class:`~mdbctl.logging.OperationScope` so that
operator-facing lines land in the audit log and each invocation leaves one
structured record in ``operations.jsonl``. Failures surface as exit code 1.
"""
from __future__ import annotations

import os
import sys
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table
from typer.core import TyperGroup

from . import __version__
from .bootstrap import BootstrapSequence
from .certificates import (
    CertificateManager,
    SSL_KEYS,
    SyncResult,
    TLSMaterial,
    inspect_certificate,
)
from .config import AppConfig, ConfigError, load_config
from .errors import MdbctlError, MissingArgumentError, UnknownCommandError
from .exit_codes import ExitCode
from .locking import LockWaiter
from .logging import OperationScope, StructuredLogger
from .posture import PostureManager, PostureState
from .providers import (
    CertbotProvider,
    MariaDBClient,
    PackageInstaller,
    SystemdError,
    SystemdProvider,
)
from .renewal import install_renewal_hook, resolve_hook_command
from .selfupdate import UpdateResult, self_update
from .server_config import ServerConfig
from .templates import TemplateEngine
from .users import FORCE_TOKEN, UserManager, confirmed

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to mdbctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the report as JSON instead of a table.",
)

# Status used by the argument parser for malformed invocations.
USAGE_ERROR_STATUS = 2


class MdbctlGroup(TyperGroup):
    """Command group whose usage errors exit with status 1."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        """Run the CLI, folding the usage-error status into ``FAILURE``."""
        try:
            return super().main(*args, **kwargs)
        except SystemExit as exc:
            if exc.code == USAGE_ERROR_STATUS:
                raise SystemExit(int(ExitCode.FAILURE)) from None
            raise


app = typer.Typer(
    cls=MdbctlGroup,
    add_completion=False,
    help=textwrap.dedent(
        """
        MariaDB single-host administration.

        Installs and configures MariaDB, keeps its TLS certificate in sync with
        certbot, manages application users and toggles the server's network
        exposure.
        """
    ).strip(),
)
users_app = typer.Typer(
    cls=MdbctlGroup,
    help="Create, rotate, drop and inspect application users.",
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    systemd: SystemdProvider
    certbot: CertbotProvider
    client: MariaDBClient
    installer: PackageInstaller
    certificates: CertificateManager
    posture: PostureManager
    users: UserManager


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    config = load_config(config_file=config_file)
    logger = StructuredLogger(config.logs_dir, console=console, error_console=err_console)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    systemd = SystemdProvider(
        unit=config.service.name,
        systemctl_bin=config.systemd.systemctl_bin,
    )
    certbot = CertbotProvider(certbot_bin=config.tls.certbot_bin, email=config.tls.email)
    client = MariaDBClient(
        mysql_bin=config.database.mysql_bin,
        credentials_file=config.database.credentials_file,
    )
    installer = PackageInstaller(
        lock_waiter=LockWaiter(config.packages.lock_file, timeout=config.packages.lock_timeout),
        apt_bin=config.packages.apt_bin,
    )
    certificates = CertificateManager(
        config=config,
        certbot=certbot,
        systemd=systemd,
        templates=templates,
        hook_command=resolve_hook_command(),
    )
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        templates=templates,
        systemd=systemd,
        certbot=certbot,
        client=client,
        installer=installer,
        certificates=certificates,
        posture=PostureManager(settings=config.server_config, systemd=systemd),
        users=UserManager(client=client, host=config.database.user_host),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _usage_error(ctx: typer.Context) -> NoReturn:
    err_console.print(ctx.get_usage(), markup=False, highlight=False)
    err_console.print(f"Try '{ctx.command_path} --help' for help.", markup=False, highlight=False)
    raise typer.Exit(code=ExitCode.FAILURE)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the mdbctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"mdbctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        _usage_error(ctx)

    try:
        runtime = _ensure_runtime(ctx, config_file)
    except ConfigError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    if runtime.config.require_root and os.geteuid() != 0:
        err_console.print("[red]mdbctl must be run as root.[/red]")
        raise typer.Exit(code=ExitCode.FAILURE)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    op.fail(message)
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _describe_posture(state: PostureState) -> str:
    remote = "enabled" if state.remote_access else "disabled"
    tls = "required" if state.force_tls else "optional"
    bind = state.bind_address or "(unset)"
    return f"Remote access {remote} (bind-address = {bind}); TLS {tls}."


# ---------------------------------------------------------------------------
# Bootstrap


def configure(ctx: typer.Context) -> None:
    """Install packages, obtain a certificate and reset the admin password."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    sequence = BootstrapSequence(
        config=config,
        installer=runtime.installer,
        systemd=runtime.systemd,
        certificates=runtime.certificates,
        templates=runtime.templates,
        bypass_client=MariaDBClient(mysql_bin=config.database.mysql_bin),
    )
    with runtime.logger.operation(
        "configure",
        target={"kind": "server", "unit": config.service.name},
    ) as op:
        try:
            result = sequence.run(op)
        except MdbctlError as exc:
            _command_error(op, str(exc))
        op.info("MariaDB is configured.")
        op.success(
            "Bootstrap complete.",
            changed=1,
            context=result.to_dict(),
        )


app.command("configure")(configure)
app.command("bootstrap", hidden=True)(configure)


# ---------------------------------------------------------------------------
# Certificates


def renew_ssl(ctx: typer.Context) -> None:
    """Copy renewed certificates into MariaDB and restart it when they changed."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("renew-ssl", target={"kind": "certificate"}) as op:
        try:
            result = runtime.certificates.renew(op)
        except MdbctlError as exc:
            _command_error(op, str(exc))
        op.success(
            f"Certificate sync finished: {result.value}.",
            changed=1 if result is SyncResult.UPDATED else 0,
            context={"result": result.value},
        )


app.command("renew-ssl")(renew_ssl)
app.command("renew-certificates", hidden=True)(renew_ssl)


@app.command("install-renewal-hook")
def install_hook(ctx: typer.Context) -> None:
    """Install the certbot deploy hook that runs ``mdbctl renew-ssl``."""
    runtime = _get_runtime(ctx)
    tls = runtime.config.tls
    path = tls.hook_dir / tls.hook_name
    with runtime.logger.operation(
        "install-renewal-hook",
        target={"kind": "renewal-hook", "path": str(path)},
    ) as op:
        config_file = runtime.config.config_file
        try:
            install_renewal_hook(
                runtime.templates,
                path,
                command=runtime.certificates.hook_command,
                config_file=config_file if config_file.exists() else None,
            )
        except OSError as exc:
            _command_error(op, f"Failed to write {path}: {exc}")
        op.add_step("renewal_hook.install", status="success", detail=str(path))
        op.info(f"Installed renewal hook {path}.")
        op.success("Renewal hook installed.", changed=1, context={"path": str(path)})


# ---------------------------------------------------------------------------
# Posture toggles


def toggle_remote(ctx: typer.Context) -> None:
    """Switch between loopback-only and all-interface binding."""
    runtime = _get_runtime(ctx)
    settings = runtime.config.server_config
    with runtime.logger.operation(
        "toggle-remote",
        target={"kind": "server-config", "path": str(settings.path)},
    ) as op:
        try:
            state = runtime.posture.toggle_remote_access(op)
        except (MdbctlError, OSError) as exc:
            _command_error(op, str(exc))
        op.info(_describe_posture(state))
        op.success(
            "Remote access enabled." if state.remote_access else "Remote access disabled.",
            changed=1,
            context=state.to_dict(),
        )


app.command("toggle-remote")(toggle_remote)
app.command("toggle-remote-access", hidden=True)(toggle_remote)


def toggle_force_ssl(ctx: typer.Context) -> None:
    """Toggle whether MariaDB rejects connections without TLS."""
    runtime = _get_runtime(ctx)
    settings = runtime.config.server_config
    with runtime.logger.operation(
        "toggle-force-ssl",
        target={"kind": "server-config", "path": str(settings.path)},
    ) as op:
        try:
            state = runtime.posture.toggle_force_tls(op)
        except (MdbctlError, OSError) as exc:
            _command_error(op, str(exc))
        op.info(_describe_posture(state))
        op.success(
            "TLS is now required." if state.force_tls else "TLS is now optional.",
            changed=1,
            context=state.to_dict(),
        )


app.command("toggle-force-ssl")(toggle_force_ssl)
app.command("toggle-force-tls", hidden=True)(toggle_force_ssl)


# ---------------------------------------------------------------------------
# Self-update


def update(ctx: typer.Context) -> None:
    """Replace this program with the published copy when it differs."""
    runtime = _get_runtime(ctx)
    settings = runtime.config.update
    target = settings.target or Path(sys.argv[0]).resolve()
    with runtime.logger.operation(
        "update",
        args={"url": settings.url},
        target={"kind": "program", "path": str(target)},
    ) as op:
        if not settings.url:
            _command_error(
                op,
                "No update URL configured; set update.url in the config file "
                "or MDBCTL_UPDATE__URL.",
            )
        try:
            outcome = self_update(settings.url, target)
        except (MdbctlError, OSError) as exc:
            _command_error(op, str(exc))
        if outcome.result is UpdateResult.UNCHANGED:
            op.add_step("update.compare", status="noop", detail=str(target))
            op.info(f"{target} is already up to date.")
            op.success("Already up to date.", changed=0)
            return
        op.add_step("update.backup", status="success", detail=str(outcome.backup))
        op.add_step("update.replace", status="success", detail=str(target))
        op.info(f"Updated {target} (previous copy saved as {outcome.backup}).")
        op.info("Re-run mdbctl to use the new version.")
        op.success(
            "Program updated.",
            changed=1,
            context={"backup": str(outcome.backup), "size": outcome.size},
        )


app.command("update")(update)
app.command("self-update", hidden=True)(update)


# ---------------------------------------------------------------------------
# Status


@app.command("status")
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report service state, network exposure and the installed certificate."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "server", "unit": config.service.name},
    ) as op:
        warnings: list[str] = []
        try:
            active: bool | None = runtime.systemd.is_active()
        except SystemdError as exc:
            active = None
            warnings.append(str(exc))

        settings = config.server_config
        try:
            server = ServerConfig.load(settings.path)
            posture = runtime.posture.current()
        except (MdbctlError, OSError, ValueError) as exc:
            _command_error(op, str(exc))
        ssl = {key: server.get(settings.section, key) for key in SSL_KEYS}
        certificate: dict[str, object] | None = None
        cert_path, key_path, ca_path = (ssl[key] for key in SSL_KEYS)
        if cert_path and key_path and Path(cert_path).is_file():
            material = TLSMaterial(
                certificate=Path(cert_path),
                key=Path(key_path),
                chain=Path(ca_path or cert_path),
            )
            try:
                report = inspect_certificate(
                    material,
                    warn_expiry_days=config.tls.warn_expiry_days,
                )
            except (OSError, ValueError, TypeError) as exc:
                warnings.append(f"Could not inspect {material.certificate}: {exc}")
            else:
                certificate = report.to_dict()
                if report.expiring:
                    warnings.append(
                        f"Certificate expires in {report.days_remaining} day(s)."
                    )
                if not report.key_matches:
                    warnings.append("Certificate does not match the configured key.")

        payload: dict[str, object] = {
            "service": {"unit": config.service.name, "active": active},
            "posture": posture.to_dict(),
            "ssl": ssl,
            "certificate": certificate,
        }

        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Setting", style="bold")
            table.add_column("Value")
            state = {True: "active", False: "inactive", None: "unknown"}[active]
            table.add_row("Service", f"{config.service.name} ({state})")
            table.add_row("bind-address", posture.bind_address or "(unset)")
            table.add_row("Remote access", "enabled" if posture.remote_access else "disabled")
            table.add_row("skip-networking", "yes" if posture.networking_disabled else "no")
            table.add_row("TLS required", "yes" if posture.force_tls else "no")
            table.add_row("ssl_cert", cert_path or "(unset)")
            if certificate is not None:
                table.add_row("Certificate", str(certificate["subject"]))
                table.add_row(
                    "Expires",
                    f"{certificate['not_valid_after']} ({certificate['days_remaining']} days)",
                )
            console.print(table)
            for warning in warnings:
                op.warn(warning)

        if warnings:
            op.warning("Status reported with warnings.", warnings=warnings, context=payload)
        else:
            op.success("Status reported.", context=payload)


# ---------------------------------------------------------------------------
# Users


def _require_name(name: str | None, command: str) -> str:
    if not name:
        raise MissingArgumentError("name", f"users {command}")
    return name


@users_app.callback(invoke_without_command=True)
def _users_root(ctx: typer.Context) -> None:
    """Create, rotate, drop and inspect application users."""
    if ctx.invoked_subcommand is None:
        _usage_error(ctx)


@users_app.command("create")
def users_create(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="User and database name."),
) -> None:
    """Create a user with a same-named database and print its password once."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "users create",
        args={"name": name},
        target={"kind": "user", "name": name},
    ) as op:
        try:
            user = _require_name(name, "create")
            secret = runtime.users.create(user)
        except MdbctlError as exc:
            _command_error(op, str(exc))
        op.add_step("mariadb.create_user", status="success", detail=user)
        op.info(f"Created database and user '{user}' (host '{runtime.users.host}').")
        console.print(f"Password for {user}: {secret}", markup=False, highlight=False)
        op.info("The password is shown only once; store it now.")
        op.success(f"User '{user}' created.", changed=1)


@users_app.command("reset")
def users_reset(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="User whose password to rotate."),
) -> None:
    """Assign a new random password to an existing user."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "users reset",
        args={"name": name},
        target={"kind": "user", "name": name},
    ) as op:
        try:
            user = _require_name(name, "reset")
            secret = runtime.users.reset(user)
        except MdbctlError as exc:
            _command_error(op, str(exc))
        op.add_step("mariadb.alter_user", status="success", detail=user)
        op.info(f"Password for '{user}' was reset.")
        console.print(f"Password for {user}: {secret}", markup=False, highlight=False)
        op.success(f"User '{user}' password reset.", changed=1)


@users_app.command("drop")
def users_drop(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="User and database to drop."),
    token: str | None = typer.Argument(None, hidden=True),
    force: bool = typer.Option(False, "--force", "-f", help="Skip the confirmation prompt."),
) -> None:
    """Drop a user and its database after confirmation."""
    runtime = _get_runtime(ctx)
    forced = force or (token is not None and token.lower() == FORCE_TOKEN)
    with runtime.logger.operation(
        "users drop",
        args={"name": name, "force": forced},
        target={"kind": "user", "name": name},
    ) as op:
        try:
            user = _require_name(name, "drop")
            if token is not None and token.lower() != FORCE_TOKEN:
                raise UnknownCommandError(
                    f"Unexpected argument '{token}' for 'users drop'; expected '{FORCE_TOKEN}'."
                )
            if not forced:
                answer = typer.prompt(
                    f"Drop database and user '{user}'? [y/N]",
                    default="N",
                    show_default=False,
                )
                if not confirmed(answer):
                    op.add_step("users.confirm", status="skipped", detail="declined")
                    op.info("Nothing dropped.")
                    op.warning("Drop cancelled by operator.", warnings=["user-cancelled"])
                    return
            runtime.users.drop(user)
        except MdbctlError as exc:
            _command_error(op, str(exc))
        op.add_step("mariadb.drop_user", status="success", detail=user)
        op.info(f"Dropped database and user '{user}'.")
        op.success(f"User '{user}' dropped.", changed=1)


@users_app.command("list")
def users_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List accounts known to the server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "users list",
        args={"json": json_output},
        target={"kind": "users"},
    ) as op:
        try:
            records = runtime.users.list_users()
        except MdbctlError as exc:
            _command_error(op, str(exc))
        if json_output:
            console.print_json(data={"users": [record.to_dict() for record in records]})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("User", style="bold")
            table.add_column("Host")
            if not records:
                table.add_row("(none)", "")
            for record in records:
                table.add_row(record.user, record.host)
            console.print(table)
        op.success("Reported users.", context={"count": len(records)})


@users_app.command("grants")
def users_grants(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="User whose grants to show."),
) -> None:
    """Show the privileges granted to a user."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "users grants",
        args={"name": name},
        target={"kind": "user", "name": name},
    ) as op:
        try:
            user = _require_name(name, "grants")
            grants = runtime.users.grants(user)
        except MdbctlError as exc:
            _command_error(op, str(exc))
        for line in grants:
            console.print(line, markup=False, highlight=False)
        op.success(f"Reported grants for '{user}'.", context={"grants": grants})


@users_app.command("help")
def users_help(ctx: typer.Context) -> None:
    """Show usage for the users commands."""
    parent = ctx.parent if ctx.parent is not None else ctx
    console.print(parent.get_help(), markup=False, highlight=False)


app.add_typer(users_app, name="users")


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
