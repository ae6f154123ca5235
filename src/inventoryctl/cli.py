"""Typer-powered command line interface for ``inventoryctl``.

``inventoryctl converge`` is the main entry point: it loads the configuration,
resolves and validates the declared instances, and converges the host. The
remaining commands inspect configuration and resolved instances without
touching the host.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .converge.settings import render_config
from .engine import ConvergenceEngine, ConvergenceReport
from .errors import ConvergenceError, ValidationError
from .exit_codes import ExitCode
from .host import SystemHost
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers.systemd import SystemdProvider
from .registry import RegistryState, build_registry
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to inventoryctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine readable JSON instead of tables.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Converge inventory application instances on this host.

        Each declared instance gets a dedicated user and group, a data
        directory, a rendered configuration file, a running service unit and,
        unless disabled, a git deployment channel.
        """
    ).strip(),
)
instances_app = typer.Typer(help="Inspect declared inventory instances.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(instances_app, name="instance")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    host: SystemHost
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    systemd_provider: SystemdProvider


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
    except (ConfigError, ValidationError) as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    host = SystemHost()
    runtime = RuntimeContext(
        config=config,
        host=host,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        systemd_provider=SystemdProvider(host=host, systemctl_bin=config.service.systemctl_bin),
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
        help="Show the inventoryctl version and exit.",
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
        console.print(f"inventoryctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _load_registry(runtime: RuntimeContext, op: OperationScope) -> RegistryState:
    try:
        registry = build_registry(runtime.config)
    except ValidationError as exc:
        for problem in exc.problems:
            console.print(f"[red]- {escape(problem)}[/red]")
        _command_error(op, f"Validation failed: {exc}", errors=exc.problems)
    op.add_step("registry.validate", detail={"instances": registry.names})
    return registry


def _format_git(report_git: str) -> str:
    styles = {
        "converged": "[green]converged[/green]",
        "skipped": "[dim]skipped[/dim]",
        "failed": "[red]failed[/red]",
        "not-run": "[yellow]not-run[/yellow]",
    }
    return styles.get(report_git, report_git)


def _render_report(report: ConvergenceReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Instance", style="bold")
    table.add_column("Status")
    table.add_column("Git")
    table.add_column("Changes", justify="right")
    table.add_column("Detail")

    if not report.instances:
        table.add_row("(none)", "", "", "0", "")
    for entry in report.instances:
        status = "[green]converged[/green]" if not entry.failed else "[red]failed[/red]"
        detail = ""
        if entry.failed:
            detail = escape(f"{entry.failed_component}/{entry.failed_step}: {entry.error}")
        elif entry.git == "failed":
            detail = escape(f"git/{entry.git_failed_step}: {entry.git_error}")
        table.add_row(entry.name, status, _format_git(entry.git), str(len(entry.changes)), detail)

    console.print(table)
    prefix = "Planned" if report.dry_run else "Applied"
    for change in report.shared_changes:
        console.print(f"  {prefix}: {escape(change)}")
    for entry in report.instances:
        for change in entry.changes:
            console.print(f"  {prefix} {entry.name}: {escape(change)}")
        for warning in entry.warnings:
            console.print(f"  [yellow]Warning[/yellow] {entry.name}: {escape(warning)}")


@app.command()
def converge(
    ctx: typer.Context,
    only: list[str] | None = typer.Option(
        None,
        "--only",
        help="Converge only the named instance (repeatable).",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report the actions that would be taken without applying changes.",
    ),
    json_output: bool = JSON_OPTION,
    workers: int | None = typer.Option(
        None,
        "--workers",
        min=1,
        help="Number of instances converged in parallel.",
    ),
) -> None:
    """Converge every declared instance (or the --only selection)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "converge",
        args={"only": list(only or []), "dry_run": dry_run, "workers": workers},
        target={"kind": "instances", "scope": "host"},
    ) as op:
        registry = _load_registry(runtime, op)
        if only:
            try:
                registry = registry.select(only)
            except ValidationError as exc:
                _command_error(op, str(exc))

        engine = ConvergenceEngine(
            runtime.config,
            host=runtime.host,
            templates=runtime.templates,
            locks=runtime.locks,
            systemd=runtime.systemd_provider,
            max_workers=workers,
        )
        try:
            report = engine.converge(registry, dry_run=dry_run, op=op)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except ConvergenceError as exc:
            _command_error(op, exc.describe(), rc=ExitCode.PROVIDER)

        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_report(report)

        context = {"failed": report.failed, "git_failed": report.git_failed}
        if report.failed:
            message = f"{len(report.failed)} instance(s) failed to converge."
            if not json_output:
                console.print(f"[red]{escape(message)}[/red]")
            op.error(message, errors=report.failed, rc=report.exit_code, changed=report.changed)
            raise typer.Exit(code=report.exit_code)
        if report.git_failed:
            message = "Converged with git deployment failures."
            op.warning(
                message,
                warnings=[f"git failed for {name}" for name in report.git_failed],
                changed=report.changed,
                context=context,
            )
        else:
            message = "Dry run complete." if dry_run else "All instances converged."
            op.success(message, changed=report.changed, context=context)
        if not json_output:
            console.print(f"[green]{message}[/green]")


@app.command()
def validate(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Validate the declared instance set without touching the host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "validate",
        args={"json": json_output},
        target={"kind": "instances"},
    ) as op:
        try:
            registry = build_registry(runtime.config)
        except ValidationError as exc:
            if json_output:
                console.print_json(data={"valid": False, "problems": exc.problems})
                op.error("Validation failed.", errors=exc.problems, rc=ExitCode.VALIDATION)
                raise typer.Exit(code=ExitCode.VALIDATION) from exc
            for problem in exc.problems:
                console.print(f"[red]- {escape(problem)}[/red]")
            _command_error(op, "Validation failed.", errors=exc.problems)

        if json_output:
            console.print_json(data={"valid": True, "instances": registry.names})
        else:
            console.print(f"[green]{len(registry.instances)} instance(s) valid.[/green]")
        op.success("Validation passed.", changed=0)


@instances_app.command("list")
def instance_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List declared instances with their resolved settings."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        registry = _load_registry(runtime, op)
        entries = [instance.to_dict() for instance in registry.instances]
        if json_output:
            console.print_json(data={"instances": entries})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Data dir")
        table.add_column("API")
        table.add_column("Account")
        table.add_column("Git")

        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            git_value = entry["git_bare_repo"] if entry["manage_git"] else "disabled"
            table.add_row(
                str(entry["name"]),
                str(entry["data_dir"]),
                f"{entry['api_host']}:{entry['api_port']}",
                f"{entry['user']}:{entry['group']}",
                str(git_value),
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("render-config")
def instance_render_config(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to render."),
) -> None:
    """Print the configuration file that converge would write for NAME."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance render-config",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        registry = _load_registry(runtime, op)
        instance = registry.get(name)
        if instance is None:
            _command_error(op, f"Instance '{name}' is not declared.")
        try:
            content = render_config(instance, runtime.templates)
        except ConvergenceError as exc:
            _command_error(op, exc.describe(), rc=ExitCode.PROVIDER)
        typer.echo(content, nl=False)
        op.success("Rendered instance configuration.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
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
            if isinstance(value, Mapping):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, escape(rendered))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
