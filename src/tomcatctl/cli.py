"""Typer-powered command line interface for ``tomcatctl``.

Every command loads the desired state from the registry, takes the locks it
needs and records a structured operation log entry. The heavy lifting lives
in :mod:`tomcatctl.fleet`, :mod:`tomcatctl.manager` and
:mod:`tomcatctl.lifecycle`; this module only wires them together and renders
results.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .artifacts import InstanceConfigurationError
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .filesystem import Filesystem, FilesystemError
from .fleet import FleetDriver, FleetResult, RestartOutcome
from .ladder import UnsupportedVersionError
from .lifecycle import InstanceStatus, LifecycleController
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .manager import InstanceManager
from .models import Instance
from .providers import PackageError, ProcessError, ProcessRunner, RpmPackageManager
from .state import StateRegistry, StateRegistryError
from .templates import TemplateEngine
from .versions import get_descriptor

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to tomcatctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit output as JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Tomcat instance reconciliation CLI.

        Converges instance directories, generated configuration and running
        processes to the desired state recorded in the registry.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    packages: RpmPackageManager
    runner: ProcessRunner
    filesystem: Filesystem
    manager: InstanceManager
    lifecycle: LifecycleController
    fleet: FleetDriver


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

    config = load_config(config_file=config_file, overrides=overrides)
    registry = StateRegistry(config.registry_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    filesystem = Filesystem()
    templates = TemplateEngine.with_overrides(config.templates_dir)
    packages = RpmPackageManager(rpm_bin=config.packages.rpm_bin)
    runner = ProcessRunner()
    manager = InstanceManager(
        templates=templates,
        packages=packages,
        filesystem=filesystem,
        opt_root=config.opt_root,
        www_root=config.www_root,
        jdk_profile=config.jdk_profile,
    )
    lifecycle = LifecycleController(
        runner=runner,
        filesystem=filesystem,
        timeout=config.restart.timeout,
    )
    fleet = FleetDriver(
        manager=manager,
        lifecycle=lifecycle,
        instances_root=config.instances_root,
        filesystem=filesystem,
        backup_suffix_format=config.backup_suffix,
        keep_dirs=config.keep_dirs,
        user_daemons_pid=config.user_daemons_pid,
        restart_config=config.restart,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        templates=templates,
        packages=packages,
        runner=runner,
        filesystem=filesystem,
        manager=manager,
        lifecycle=lifecycle,
        fleet=fleet,
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
        help="Show the tomcatctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    try:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"tomcatctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
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


def _exit_code_for(exc: Exception) -> ExitCode:
    if isinstance(
        exc,
        (ConfigError, StateRegistryError, InstanceConfigurationError, UnsupportedVersionError),
    ):
        return ExitCode.VALIDATION
    if isinstance(exc, (PackageError, ProcessError)):
        return ExitCode.PROVIDER
    return ExitCode.ENVIRONMENT


def _load_instances(runtime: RuntimeContext, op: OperationScope) -> list[Instance]:
    try:
        instances = runtime.registry.load_instances(runtime.config.instances_root)
    except StateRegistryError as exc:
        _command_error(op, f"Registry error: {exc}", rc=ExitCode.VALIDATION)
    op.add_step("registry.load", status="success", detail=f"{len(instances)} instance(s)")
    return instances


def _require_instance(runtime: RuntimeContext, name: str, op: OperationScope) -> Instance:
    try:
        return runtime.registry.load_instance(name, runtime.config.instances_root)
    except StateRegistryError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)


def _iso_now() -> str:
    return datetime.now(UTC).isoformat()


def _outcome_style(outcome: RestartOutcome | None) -> str:
    if outcome is None:
        return ""
    if outcome in (RestartOutcome.TIMEOUT, RestartOutcome.FAILED):
        return f"[red]{outcome.value}[/red]"
    if outcome in (RestartOutcome.SKIPPED, RestartOutcome.UNKNOWN):
        return f"[yellow]{outcome.value}[/yellow]"
    return outcome.value


def _render_fleet_result(instances: Sequence[Instance], result: FleetResult) -> None:
    failed = {failure.instance: failure.error for failure in result.failures}
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Instance", style="bold")
    table.add_column("Rebuild")
    table.add_column("Restart needed")
    table.add_column("Process")

    if not instances:
        table.add_row("(none)", "", "", "")
    for instance in instances:
        if instance.name in failed:
            rebuild = "[red]failed[/red]"
        elif instance.name in result.reconciled:
            rebuild = "ok"
        else:
            rebuild = "skipped"
        table.add_row(
            instance.name,
            rebuild,
            "yes" if instance.name in result.restart_set else "no",
            _outcome_style(result.restarts.get(instance.name)),
        )
    console.print(table)

    for path in result.retired:
        console.print(f"[yellow]Moved aside[/yellow]: {path}")
    for name, error in failed.items():
        console.print(f"[red]{name}: {error}[/red]")


def _record_fleet_status(runtime: RuntimeContext, result: FleetResult) -> None:
    now = _iso_now()
    failed = {failure.instance: failure.error for failure in result.failures}
    entries: dict[str, dict[str, object]] = {}
    for name in result.reconciled:
        entries[name] = {"rebuilt_at": now, "dirty": name in result.restart_set}
    for name, error in failed.items():
        entries[name] = {"failed_at": now, "error": error}
    for name, outcome in result.restarts.items():
        entries.setdefault(name, {})["process"] = outcome.value
    if entries:
        runtime.registry.record_status(entries)


# ----------------------------------------------------------------------
# Top-level commands
# ----------------------------------------------------------------------
@app.command()
def rebuild(
    ctx: typer.Context,
    instance_names: list[str] | None = typer.Option(
        None,
        "--instance",
        "-i",
        help="Only rebuild the named instance (repeatable).",
    ),
    no_restart: bool = typer.Option(
        False,
        "--no-restart",
        help="Reconcile directories without touching running processes.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Converge every instance to the desired state and restart as needed."""
    runtime = _get_runtime(ctx)
    only = list(instance_names) if instance_names else None
    with runtime.logger.operation(
        "rebuild",
        args={"instances": only or [], "no_restart": no_restart},
        target={"kind": "fleet", "scope": "instances"},
    ) as op:
        instances = _load_instances(runtime, op)
        names = [item.name for item in instances if only is None or item.name in only]
        try:
            with runtime.locks.mutate_instances(names) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.fleet.rebuild(instances, restart=not no_restart, only=only)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        op.add_step(
            "fleet.rebuild",
            status="success" if result.ok else "warning",
            detail=f"{len(result.reconciled)} reconciled, {len(result.failures)} failed",
        )
        if result.retired:
            op.add_step("fleet.retire", detail=[str(path) for path in result.retired])
        if result.restarts:
            op.add_step("fleet.restart", detail={k: v.value for k, v in result.restarts.items()})
        _record_fleet_status(runtime, result)

        if json_output:
            console.print_json(data=result.to_dict())
        else:
            selected = [item for item in instances if only is None or item.name in only]
            _render_fleet_result(selected, result)

        if not result.ok:
            message = f"{len(result.failures)} instance(s) failed to rebuild."
            op.warning(
                message,
                errors=[f"{failure.instance}: {failure.error}" for failure in result.failures],
                changed=len(result.restart_set),
                context=result.to_dict(),
                rc=int(ExitCode.PARTIAL),
            )
            raise typer.Exit(code=int(ExitCode.PARTIAL))
        op.success(
            "Fleet rebuild complete.",
            changed=len(result.restart_set) + len(result.retired),
            context=result.to_dict(),
        )


@app.command()
def restart(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(
        None,
        help="Instances to restart (all registered instances when omitted).",
    ),
) -> None:
    """Stop and start instances, starting or stopping others to match their state."""
    runtime = _get_runtime(ctx)
    requested = list(names or [])
    with runtime.logger.operation(
        "restart",
        args={"instances": requested},
        target={"kind": "fleet", "scope": "processes"},
    ) as op:
        instances = _load_instances(runtime, op)
        known = {item.name for item in instances}
        unknown = [name for name in requested if name not in known]
        if unknown:
            _command_error(op, f"Unknown instance(s): {', '.join(unknown)}", rc=ExitCode.VALIDATION)
        selected = [item for item in instances if not requested or item.name in requested]
        restart_set = [item.name for item in selected]

        try:
            with runtime.locks.mutate_instances(restart_set) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcomes = runtime.fleet.restart(selected, restart_set)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Instance", style="bold")
        table.add_column("Process")
        if not selected:
            table.add_row("(none)", "")
        for item in selected:
            table.add_row(item.name, _outcome_style(outcomes.get(item.name)))
        console.print(table)

        runtime.registry.record_status(
            {name: {"process": outcome.value} for name, outcome in outcomes.items()}
        )
        failed = [
            name
            for name, outcome in outcomes.items()
            if outcome in (RestartOutcome.TIMEOUT, RestartOutcome.FAILED)
        ]
        if failed:
            message = f"Restart incomplete for: {', '.join(failed)}"
            op.warning(message, changed=len(outcomes) - len(failed), rc=int(ExitCode.PARTIAL))
            raise typer.Exit(code=int(ExitCode.PARTIAL))
        op.success("Restart pass complete.", changed=len(outcomes))


# ----------------------------------------------------------------------
# Sub-applications
# ----------------------------------------------------------------------
instances_app = typer.Typer(help="Inspect and control individual Tomcat instances.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(instances_app, name="instance")
app.add_typer(config_app, name="config")


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


@instances_app.command("list")
def instance_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered instances and their observed process state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        instances = _load_instances(runtime, op)
        entries = [
            {
                "name": item.name,
                "version": item.version,
                "topology": item.topology.value,
                "sites": [site.name for site in item.enabled_sites],
                "manual": item.manual,
                "disabled": item.disabled,
                "status": runtime.lifecycle.status(item).value,
            }
            for item in instances
        ]
        if json_output:
            console.print_json(data={"instances": entries})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Version")
        table.add_column("Topology")
        table.add_column("Sites")
        table.add_column("Flags")
        table.add_column("Status")

        if not entries:
            table.add_row("(none)", "", "", "", "", "")
        for item, entry in zip(instances, entries, strict=True):
            flags = [flag for flag in ("manual", "disabled") if getattr(item, flag)]
            table.add_row(
                item.name,
                item.version,
                item.topology.value,
                " ".join(site.name for site in item.enabled_sites),
                ",".join(flags),
                str(entry["status"]),
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("status")
def instance_status(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the lifecycle state and installed Tomcat package of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance status",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        instance = _require_instance(runtime, name, op)
        state = runtime.lifecycle.status(instance)
        warnings: list[str] = []
        try:
            descriptor = get_descriptor(instance.version)
        except UnsupportedVersionError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        try:
            package_version: str | None = runtime.packages.installed_version(
                descriptor.package_name
            )
        except PackageError as exc:
            package_version = None
            warnings.append(str(exc))
        pid = None
        if state in (InstanceStatus.RUNNING, InstanceStatus.CRASHED):
            pid = runtime.lifecycle.read_pid(instance)

        data: dict[str, object] = {
            "name": instance.name,
            "root": str(instance.root),
            "status": state.value,
            "pid": pid,
            "version": instance.version,
            "package": descriptor.package_name,
            "package_version": package_version,
            "recorded": runtime.registry.read_status().get(instance.name, {}),
        }
        if json_output:
            console.print_json(data=data)
        else:
            table = Table(show_header=False)
            for key, value in data.items():
                if value in (None, "", {}):
                    continue
                table.add_row(key.replace("_", " ").title(), str(value))
            console.print(table)
            for warning in warnings:
                console.print(f"[yellow]{warning}[/yellow]")

        if warnings:
            op.warning("Reported instance status with warnings.", warnings=warnings)
        else:
            op.success("Reported instance status.", changed=0)


def _control_instance(ctx: typer.Context, name: str, action: str) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"instance {action}",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        instance = _require_instance(runtime, name, op)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                if action == "start":
                    acted = runtime.lifecycle.start(instance)
                else:
                    acted = runtime.lifecycle.stop(instance)
        except (LockTimeoutError, ProcessError, FilesystemError, OSError) as exc:
            _command_error(op, f"Instance {action} failed: {exc}", rc=_exit_code_for(exc))

        if acted is None:
            op.add_step(f"lifecycle.{action}", status="skipped", detail="script missing")
            console.print(
                f"[yellow]Instance '{name}' is manual and has no start script; state unknown.[/yellow]"
            )
            op.warning(f"Instance {action} outcome unknown.")
            return
        if not acted:
            detail = "already running" if action == "start" else "not running"
            op.add_step(f"lifecycle.{action}", status="skipped", detail=detail)
            console.print(f"Instance '{name}' is {detail}.")
            op.success(f"Instance {action} not needed.", changed=0)
            return
        op.add_step(f"lifecycle.{action}", status="success")
        past = "started" if action == "start" else "stopped"
        console.print(f"[green]Instance '{name}' {past}.[/green]")
        runtime.registry.record_status({name: {"process": past, "updated_at": _iso_now()}})
        op.success(f"Instance {past}.", changed=1)


@instances_app.command("start")
def instance_start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to start."),
) -> None:
    """Start an instance unless it is already running."""
    _control_instance(ctx, name, "start")


@instances_app.command("stop")
def instance_stop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to stop."),
) -> None:
    """Stop an instance when its PID file is present."""
    _control_instance(ctx, name, "stop")


__all__ = ["app", "RuntimeContext"]
