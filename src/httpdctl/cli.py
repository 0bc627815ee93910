"""Typer-powered command line interface for ``httpdctl``.

Every command runs inside a :class:`~httpdctl.logging.StructuredLogger`
operation so that the outcome lands in ``operations.jsonl`` whatever the
console shows.
"""
from __future__ import annotations

import json
import logging
import signal
import textwrap
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupError
from .capacity import plan_capacity
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .fsapply import ApplyError, MissingAccountError
from .inference import infer_features
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .orchestrator import Reconciler
from .providers import (
    InitScriptError,
    PackageError,
    ProcessProbeError,
    SelinuxError,
    SystemdError,
)
from .reconcilers.servers import candidate_packages
from .render import RenderError
from .render.builder import ArtifactBuilder
from .services import ServiceError
from .state import StateError, StateRegistryError
from .strategies import UnsupportedOsError
from .templates import TemplateEngine, TemplateRenderError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to httpdctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

DEFAULT_INSTANCE = "default"

VALIDATION_ERRORS: tuple[type[Exception], ...] = (
    StateError,
    RenderError,
    TemplateRenderError,
    UnsupportedOsError,
)
ENVIRONMENT_ERRORS: tuple[type[Exception], ...] = (MissingAccountError, LockTimeoutError)
PROVIDER_ERRORS: tuple[type[Exception], ...] = (
    ApplyError,
    BackupError,
    InitScriptError,
    PackageError,
    ProcessProbeError,
    SelinuxError,
    ServiceError,
    StateRegistryError,
    SystemdError,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Apache httpd fleet reconciler.

        Converges the Apache instances, site trees and site configuration of
        this host to the desired-state document, and exposes administrative
        site start/stop and capacity inspection.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    reconciler: Reconciler


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    reconciler = Reconciler.from_config(config)
    runtime = RuntimeContext(
        config=config,
        locks=reconciler.locks,
        logger=StructuredLogger(config.logs_dir),
        templates=reconciler.templates,
        reconciler=reconciler,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the httpdctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"httpdctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _provider_error(op: OperationScope, message: str) -> NoReturn:
    _command_error(op, message, rc=ExitCode.PROVIDER)


def _fail(op: OperationScope, exc: Exception) -> NoReturn:
    """Map a domain exception onto the CLI exit-code contract."""
    if isinstance(exc, ENVIRONMENT_ERRORS):
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
    if isinstance(exc, PROVIDER_ERRORS):
        _provider_error(op, str(exc))
    _command_error(op, str(exc), rc=ExitCode.VALIDATION)


HANDLED_ERRORS = VALIDATION_ERRORS + ENVIRONMENT_ERRORS + PROVIDER_ERRORS


def _instance_name(raw: str) -> str | None:
    return None if raw == DEFAULT_INSTANCE else raw


# ----------------------------------------------------------------------
# Convergence
# ----------------------------------------------------------------------
@app.command()
def rebuild(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report what would change without touching the host.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Run one convergence pass against the desired state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rebuild",
        args={"dry_run": dry_run, "json": json_output},
        target={"kind": "host"},
    ) as op:
        try:
            result = runtime.reconciler.rebuild(dry_run=dry_run)
        except HANDLED_ERRORS as exc:
            logging.getLogger(__name__).error("Convergence pass failed: %s", exc)
            _fail(op, exc)
        for step in result.steps:
            op.add_step(str(step["name"]), detail=step.get("detail"))

        if json_output:
            console.print_json(data=result.to_dict())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Outcome", style="bold")
            table.add_column("Paths")
            for label, values in (
                ("changed", result.changed),
                ("removed", result.deleted),
                ("reloaded", result.reloaded),
                ("installed", result.installed),
                ("warnings", result.warnings),
            ):
                table.add_row(label, "\n".join(values) if values else "(none)")
            console.print(table)

        summary = f"{len(result.changed)} changed, {len(result.reloaded)} reloaded"
        if dry_run:
            console.print(f"[yellow]Dry run[/yellow]: {summary}")
        if result.warnings:
            op.warning(
                f"Convergence finished with warnings: {summary}",
                warnings=result.warnings,
                changed=len(result.changed),
                backups=result.backups,
            )
            return
        op.success(
            f"Convergence finished: {summary}",
            changed=len(result.changed),
            backups=result.backups,
            context={"dry_run": dry_run},
        )


@app.command()
def watch(ctx: typer.Context) -> None:
    """Rebuild whenever the desired-state document changes."""
    runtime = _get_runtime(ctx)
    stop_event = threading.Event()

    def _stop(_signum: int, _frame: object) -> None:
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    with runtime.logger.operation(
        "watch",
        args={"interval": runtime.config.watch_interval},
        target={"kind": "host", "path": str(runtime.config.desired_state_file)},
    ) as op:
        console.print(f"Watching {runtime.config.desired_state_file}")
        try:
            runtime.reconciler.watch(stop_event)
        except KeyboardInterrupt:
            stop_event.set()
        last = runtime.reconciler.last_result
        op.success(
            "Watch loop stopped.",
            changed=0,
            context={"last_ok": None if last is None else last.ok},
        )


# ----------------------------------------------------------------------
# Sites
# ----------------------------------------------------------------------
def _site_action(ctx: typer.Context, name: str, action: str) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"{action}-site",
        args={"site": name},
        target={"kind": "site", "name": name},
    ) as op:
        try:
            if action == "start":
                reason = runtime.reconciler.start_site(name)
            else:
                reason = runtime.reconciler.stop_site(name)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        if reason:
            _command_error(op, reason)
        past = "Started" if action == "start" else "Stopped"
        console.print(f"[green]{past} site {name}.[/green]")
        op.success(f"{past} site {name}.", changed=1)


@app.command("start-site")
def start_site(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site to start."),
) -> None:
    """Start the application container behind a site."""
    _site_action(ctx, name, "start")


@app.command("stop-site")
def stop_site(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site to stop."),
) -> None:
    """Stop the application container behind a site."""
    _site_action(ctx, name, "stop")


# ----------------------------------------------------------------------
# Instances
# ----------------------------------------------------------------------
@app.command()
def concurrency(
    ctx: typer.Context,
    instance: str = typer.Argument(DEFAULT_INSTANCE, help="Instance name, or 'default'."),
) -> None:
    """Report the concurrency an instance currently uses."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "concurrency",
        args={"instance": instance},
        target={"kind": "instance", "name": instance},
    ) as op:
        try:
            value = runtime.reconciler.concurrency(_instance_name(instance))
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        console.print(str(value))
        op.success("Reported instance concurrency.", changed=0, context={"concurrency": value})


@app.command()
def plan(
    ctx: typer.Context,
    instance: str = typer.Argument(DEFAULT_INSTANCE, help="Instance name, or 'default'."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the capacity plan and inferred modules of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"instance": instance, "json": json_output},
        target={"kind": "instance", "name": instance},
    ) as op:
        try:
            found, state, strategy = runtime.reconciler.instance(_instance_name(instance))
            capacity = plan_capacity(
                found.max_concurrency,
                state.host.cpu_count,
                default_prefork=strategy.default_prefork,
                mod_php=found.has_mod_php,
            )
            features = infer_features(state, strategy, found)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        data = {"instance": found.label, "capacity": capacity.to_dict(), "features": features.to_dict()}
        if json_output:
            console.print_json(data=data)
            op.success("Rendered capacity plan as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in capacity.to_dict().items():
            table.add_row(key, str(value))
        enabled = sorted(name for name, loaded in features.modules.items() if loaded)
        table.add_row("modules", ", ".join(enabled) or "(none)")
        table.add_row("cgi", str(features.has_cgi))
        table.add_row("mod_php", str(features.has_mod_php))
        console.print(table)
        op.success("Rendered capacity plan.", changed=0)


@app.command()
def render(
    ctx: typer.Context,
    instance: str = typer.Argument(DEFAULT_INSTANCE, help="Instance name, or 'default'."),
    site: str | None = typer.Option(
        None,
        "--site",
        help="Render the shared include and virtual hosts of this site instead.",
    ),
) -> None:
    """Print a rendered configuration artifact without touching disk."""
    runtime = _get_runtime(ctx)
    target = {"kind": "site", "name": site} if site else {"kind": "instance", "name": instance}
    with runtime.logger.operation("render", args={"instance": instance, "site": site}, target=target) as op:
        try:
            state, strategy = runtime.reconciler.load_state()
            installed = runtime.reconciler.packages.installed_packages(candidate_packages(strategy))
            builder = ArtifactBuilder.for_state(state, strategy, installed, runtime.templates)
            if site is None:
                found, _state, _strategy = runtime.reconciler.instance(_instance_name(instance))
                console.out(builder.instance(found).conf.decode("utf-8"), end="", highlight=False)
            else:
                found_site = state.site(site)
                if found_site is None:
                    _command_error(op, f"Unknown site: {site}")
                console.out(f"# {strategy.shared_file_name(found_site.name)}", highlight=False)
                console.out(builder.shared(found_site).text, end="", highlight=False)
                for vhost in found_site.virtual_hosts:
                    disabled = found_site.disabled or vhost.disabled
                    console.out(f"# {strategy.bind_file_name(found_site, vhost)}", highlight=False)
                    console.out(builder.bind(found_site, vhost, disabled=disabled).text, end="", highlight=False)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        op.success("Rendered configuration.", changed=0)


# ----------------------------------------------------------------------
# Configuration and state
# ----------------------------------------------------------------------
config_app = typer.Typer(help="Inspect the effective configuration.")
state_app = typer.Typer(help="Inspect the desired-state document.")
instances_app = typer.Typer(help="Start, stop or restart Apache instances.")

app.add_typer(config_app, name="config")
app.add_typer(state_app, name="state")
app.add_typer(instances_app, name="instances")

INSTANCE_ACTION_ARGUMENT = typer.Argument(
    None,
    help="Instance name, or 'default'. Every instance with binds when omitted.",
)


def _instance_action(ctx: typer.Context, action: str, instance: str | None) -> None:
    runtime = _get_runtime(ctx)
    target = {"kind": "instance", "name": instance or "*"}
    with runtime.logger.operation(f"instances {action}", args={"instance": instance}, target=target) as op:
        try:
            units = runtime.reconciler.control_instances(
                action,
                None if instance is None else _instance_name(instance),
                every=instance is None,
            )
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        for unit in units:
            console.print(f"{action}: {unit}")
        op.success(f"Ran {action} on {len(units)} instance(s).", changed=len(units), context={"units": units})


@instances_app.command("start")
def instances_start(ctx: typer.Context, instance: str | None = INSTANCE_ACTION_ARGUMENT) -> None:
    """Start Apache instances."""
    _instance_action(ctx, "start", instance)


@instances_app.command("stop")
def instances_stop(ctx: typer.Context, instance: str | None = INSTANCE_ACTION_ARGUMENT) -> None:
    """Stop Apache instances."""
    _instance_action(ctx, "stop", instance)


@instances_app.command("restart")
def instances_restart(ctx: typer.Context, instance: str | None = INSTANCE_ACTION_ARGUMENT) -> None:
    """Restart Apache instances."""
    _instance_action(ctx, "restart", instance)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@state_app.command("validate")
def state_validate(ctx: typer.Context) -> None:
    """Parse and validate the desired-state document."""
    runtime = _get_runtime(ctx)
    path = runtime.config.desired_state_file
    with runtime.logger.operation(
        "state validate",
        args={"path": str(path)},
        target={"kind": "state", "path": str(path)},
    ) as op:
        try:
            state, strategy = runtime.reconciler.load_state()
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        summary = (
            f"{len(state.instances)} instance(s), {len(state.sites)} site(s) "
            f"on {state.host.hostname} ({strategy.version.value})"
        )
        console.print(f"[green]Desired state is valid:[/green] {summary}")
        op.success("Desired state is valid.", changed=0, context={"summary": summary})


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
