"""Typer-powered command line interface for ``dockhand``.

``dockhand apply`` reconciles the host against a manifest: it probes the
current state, plans the missing steps, executes them in order and prints a
report. The remaining commands inspect services and configuration.
"""
from __future__ import annotations

import json
import logging
import os
import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .manifest import Manifest, load_manifest
from .orchestrator import ServiceOrchestrator, ServiceState
from .providers import DockerError
from .reconcile import (
    ActionResult,
    ActionStatus,
    ReconcileEngine,
    Report,
    build_orchestrator,
    create_engine,
    render_plan,
    serialize_report,
)
from .templates import TemplateError

console = Console()

EngineFactory = Callable[..., ReconcileEngine]
OrchestratorFactory = Callable[[AppConfig, Manifest], ServiceOrchestrator]

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to dockhand's YAML config file.",
)

MANIFEST_OPTION = typer.Option(
    None,
    "--manifest",
    "-m",
    dir_okay=False,
    help="Manifest to reconcile (defaults to the configured or packaged manifest).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

_STATUS_STYLES: Mapping[ActionStatus, str] = {
    ActionStatus.SUCCEEDED: "green",
    ActionStatus.SKIPPED: "cyan",
    ActionStatus.FAILED: "red",
    ActionStatus.INTERRUPTED: "red",
    ActionStatus.NOT_ATTEMPTED: "yellow",
}

_STATE_STYLES: Mapping[ServiceState, str] = {
    ServiceState.RUNNING: "green",
    ServiceState.STOPPED: "yellow",
    ServiceState.ABSENT: "dim",
    ServiceState.UNKNOWN: "red",
}

_EXIT_MESSAGES: Mapping[ExitCode, str] = {
    ExitCode.OK: "Host matches the manifest.",
    ExitCode.PROBE: "Some host facts could not be probed.",
    ExitCode.ACTION: "One or more actions failed.",
    ExitCode.INTERRUPTED: "Run interrupted before completion.",
}


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Declarative host provisioning and docker-compose service bootstrap.

        dockhand installs OS packages and the Docker runtime, writes one
        compose definition per service and keeps the declared services running.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    engine_factory: EngineFactory = create_engine
    orchestrator_factory: OrchestratorFactory = build_orchestrator
    env: Mapping[str, str] | None = None


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose)],
        force=True,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the dockhand version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print diagnostic logging to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    if version:
        console.print(f"dockhand {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

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
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _load_manifest(
    op: OperationScope,
    runtime: RuntimeContext,
    manifest_path: Path | None,
) -> Manifest:
    source = manifest_path or runtime.config.manifest_file
    try:
        manifest = load_manifest(source, env=runtime.env if runtime.env is not None else os.environ)
    except ConfigError as exc:
        _command_error(op, f"Invalid manifest: {exc}", rc=ExitCode.VALIDATION)
    op.add_step(
        "manifest.load",
        detail=str(source) if source is not None else "packaged default",
    )
    return manifest


def _record_result(op: OperationScope) -> Callable[[ActionResult], None]:
    def _record(result: ActionResult) -> None:
        op.add_step(
            f"{result.action.kind.value}:{result.key}",
            status=result.status.value,
            detail=result.error,
        )

    return _record


def _render_report(report: Report) -> None:
    if report.dry_run:
        console.print("[bold]Planned actions[/bold] [yellow](dry run)[/yellow]")
        for line in render_plan(report.plan):
            console.print(f"  {escape(line)}", highlight=False)
    elif report.results:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Status")
        table.add_column("Action", style="bold")
        table.add_column("Detail")
        for result in report.results:
            style = _STATUS_STYLES.get(result.status, "white")
            table.add_row(
                f"[{style}]{result.status.value}[/{style}]",
                escape(result.action.describe()),
                escape(result.error or ""),
            )
        console.print(table)
    else:
        console.print("[green]Nothing to do; host already matches the manifest.[/green]")

    for error in report.probe_errors:
        console.print(f"[red]probe error[/red] {escape(str(error))}", highlight=False)
    for warning in report.warnings:
        console.print(f"[yellow]warning[/yellow] {escape(warning)}", highlight=False)

    totals = ", ".join(
        f"{report.counts.get(status, 0)} {status.value}" for status in ActionStatus
    )
    console.print(f"Summary: {totals}")


@app.command()
def apply(
    ctx: typer.Context,
    manifest: Path | None = MANIFEST_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Probe and plan only; print the plan without changing the host.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Reconcile the host against the manifest."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "apply",
        args={"manifest": manifest, "dry_run": dry_run, "json": json_output},
        target={"kind": "host", "scope": "reconcile"},
    ) as op:
        loaded = _load_manifest(op, runtime, manifest)
        engine = runtime.engine_factory(runtime.config, loaded, on_result=_record_result(op))
        try:
            report = engine.run(loaded, dry_run=dry_run)
        except TemplateError as exc:
            _command_error(op, f"Failed to render compose definition: {exc}")
        except KeyboardInterrupt:
            _command_error(op, "Interrupted.", rc=ExitCode.INTERRUPTED)

        payload = serialize_report(report)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_report(report)

        changed = report.counts.get(ActionStatus.SUCCEEDED, 0)
        log_context = {"report": payload}
        message = _EXIT_MESSAGES[report.exit_code]
        if dry_run and report.exit_code is ExitCode.OK:
            op.success(
                "Dry run complete.",
                changed=0,
                context={"planned": len(report.plan), "report": payload},
            )
            return
        if report.exit_code is ExitCode.OK:
            if report.warnings:
                op.warning(message, warnings=list(report.warnings), changed=changed, context=log_context)
            else:
                op.success(message, changed=changed, context=log_context)
            return

        errors = [f"{result.key}: {result.error}" for result in report.results if result.is_failure]
        errors.extend(str(error) for error in report.probe_errors)
        if not json_output:
            console.print(f"[red]{escape(message)}[/red]")
        op.error(
            message,
            rc=int(report.exit_code),
            errors=errors or None,
            warnings=list(report.warnings) or None,
            context=log_context,
        )
        raise typer.Exit(code=int(report.exit_code))


def _service_urls(manifest: Manifest, name: str, host: str) -> str:
    spec = manifest.service(name)
    return " ".join(f"http://{host}:{port.host}" for port in sorted(spec.ports))


@app.command()
def status(
    ctx: typer.Context,
    manifest: Path | None = MANIFEST_OPTION,
    host: str = typer.Option(
        "localhost",
        "--host",
        help="Host name used when rendering service URLs.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the state, ports and URLs of every declared service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"manifest": manifest, "json": json_output},
        target={"kind": "services"},
    ) as op:
        loaded = _load_manifest(op, runtime, manifest)
        orchestrator = runtime.orchestrator_factory(runtime.config, loaded)
        try:
            rows = orchestrator.list_services()
        except DockerError as exc:
            _command_error(op, f"Unable to list containers: {exc}", rc=ExitCode.PROBE)

        if json_output:
            data = [
                {
                    "name": row.name,
                    "container": row.container,
                    "state": row.state.value,
                    "status": row.status,
                    "ports": row.ports,
                    "urls": _service_urls(loaded, row.name, host).split(),
                }
                for row in rows
            ]
            console.print_json(data={"services": data})
            op.success("Reported service status as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Service", style="bold")
        table.add_column("Container")
        table.add_column("State")
        table.add_column("Status")
        table.add_column("Ports")
        table.add_column("URL")
        for row in rows:
            style = _STATE_STYLES.get(row.state, "white")
            table.add_row(
                row.name,
                row.container,
                f"[{style}]{row.state.value}[/{style}]",
                row.status,
                row.ports,
                _service_urls(loaded, row.name, host),
            )
        console.print(table)
        op.success("Reported service status.", changed=0)


@app.command()
def stop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Service to stop."),
    manifest: Path | None = MANIFEST_OPTION,
) -> None:
    """Stop a declared service; stopping a stopped service is a no-op."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"name": name, "manifest": manifest},
        target={"kind": "service", "name": name},
    ) as op:
        loaded = _load_manifest(op, runtime, manifest)
        try:
            loaded.service(name)
        except KeyError:
            _command_error(op, f"Service '{name}' is not declared in the manifest.")
        orchestrator = runtime.orchestrator_factory(runtime.config, loaded)
        try:
            handle = orchestrator.stop_service(name)
        except DockerError as exc:
            _command_error(op, f"Failed to stop '{name}': {exc}", rc=ExitCode.ACTION)

        if handle.changed:
            console.print(f"[green]Stopped '{name}' ({handle.container}).[/green]")
            op.success("Service stopped.", changed=1, context={"state": handle.state.value})
        else:
            console.print(f"'{name}' is already {handle.state.value}.")
            op.success("Service already stopped.", changed=0, context={"state": handle.state.value})


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
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


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
