"""Typer-powered command line for ``sider-db``.

Each verb opens a structured log operation, takes the advisory lock it needs,
and hands the work to :class:`~siderdb.lifecycle.LifecycleOrchestrator`.
Failures surface as exceptions and are turned into a diagnostic on stderr and
an exit status in exactly one place, :func:`_translate_errors`.
"""
from __future__ import annotations

import signal
import textwrap
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, NoReturn

import click
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from typer.core import TyperGroup

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .dispatch import UnmatchedCommand, format_unknown_command, match_command
from .exit_codes import ExitCode
from .lifecycle import (
    SORT_KEYS,
    LifecycleError,
    LifecycleOrchestrator,
    SnapshotNotFoundError,
    StartPlan,
    validate_name,
)
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers import EngineError, EngineSupervisor
from .state import StateRegistry, StateRegistryError
from .storage import FileRegistry, InstanceRecord, StorageError

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to siderdb's YAML config file.",
)


class _VerbGroup(TyperGroup):
    """Root command group that reports unknown verbs itself."""

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        match = match_command(args, tuple(self.list_commands(ctx)))
        if isinstance(match, UnmatchedCommand):
            err_console.print(
                escape(format_unknown_command(match, tuple(self.list_commands(ctx))))
            )
            ctx.exit(ExitCode.LIFECYCLE)
        return super().resolve_command(ctx, args)


app = typer.Typer(
    cls=_VerbGroup,
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage local redis-compatible databases cloned from snapshots.

        Instances are started in the foreground; press Ctrl-C to stop the
        engine gracefully.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: FileRegistry
    supervisor: EngineSupervisor
    orchestrator: LifecycleOrchestrator
    locks: LockManager
    logger: StructuredLogger


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
        err_console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    registry = FileRegistry(
        state=StateRegistry(config.registry_dir),
        instances_dir=config.instances_dir,
        snapshots_dir=config.snapshots_dir,
    )
    try:
        registry.ensure_dirs()
    except StorageError as exc:
        err_console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    supervisor = EngineSupervisor(
        command=config.engine.command,
        extra_args=config.engine.args,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        supervisor=supervisor,
        orchestrator=LifecycleOrchestrator(
            registry,
            supervisor,
            default_port=config.ports.default,
        ),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
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
        help="Show the siderdb version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        click_type=click.FloatRange(min=0.0, min_open=True),
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"sider-db {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.LIFECYCLE)

    _ensure_runtime(ctx, config_file, lock_timeout)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.LIFECYCLE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


@contextmanager
def _translate_errors(runtime: RuntimeContext, op: OperationScope) -> Iterator[None]:
    """Map domain and collaborator failures onto diagnostics and exit codes."""
    try:
        yield
    except SnapshotNotFoundError as exc:
        message = str(exc)
        available = [snapshot.name for snapshot in runtime.registry.list_snapshots()]
        if available:
            message = f"{message} Available snapshots: {', '.join(available)}."
        _command_error(op, message, rc=ExitCode.LIFECYCLE)
    except (LifecycleError, LockTimeoutError) as exc:
        _command_error(op, str(exc), rc=ExitCode.LIFECYCLE)
    except EngineError as exc:
        _command_error(op, f"Engine failed to start: {exc}", rc=ExitCode.ENVIRONMENT)
    except (StorageError, StateRegistryError) as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


@contextmanager
def _instance_lock(runtime: RuntimeContext, name: str, op: OperationScope) -> Iterator[None]:
    validate_name("instance", name)
    with runtime.locks.instance_lock(name) as handle:
        op.set_lock_wait_ms(handle.wait_ms)
        op.add_step("lock.acquire", detail=str(handle.path))
        yield


# Presentation helpers -------------------------------------------------
_RELATIVE_UNITS: tuple[tuple[float, str, str, float], ...] = (
    # (upper bound in seconds, singular phrase, plural unit, unit seconds)
    (45, "a few seconds", "seconds", 1),
    (90, "a minute", "minutes", 60),
    (45 * 60, "", "minutes", 60),
    (90 * 60, "an hour", "hours", 3600),
    (22 * 3600, "", "hours", 3600),
    (36 * 3600, "a day", "days", 86400),
    (26 * 86400, "", "days", 86400),
    (45 * 86400, "a month", "months", 30 * 86400),
    (320 * 86400, "", "months", 30 * 86400),
    (548 * 86400, "a year", "years", 365 * 86400),
)


def _format_relative(value: datetime | None, now: datetime | None = None) -> str:
    """Render *value* relative to *now*, e.g. ``3 minutes ago``."""
    if value is None:
        return "-"
    reference = now or datetime.now(tz=UTC)
    delta = (reference - value).total_seconds()
    seconds = abs(delta)
    phrase = ""
    for bound, singular, plural, unit in _RELATIVE_UNITS:
        if seconds < bound:
            phrase = singular or f"{max(2, round(seconds / unit))} {plural}"
            break
    else:
        phrase = f"{max(2, round(seconds / (365 * 86400)))} years"
    return f"{phrase} ago" if delta >= 0 else f"in {phrase}"


def _render_instances(instances: Sequence[InstanceRecord]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("name", style="bold")
    table.add_column("snapshot")
    table.add_column("port", justify="right")
    table.add_column("created")
    table.add_column("last used")

    if not instances:
        table.add_row("(none)", "", "", "", "")
        return table

    now = datetime.now(tz=UTC)
    for instance in instances:
        table.add_row(
            escape(instance.name),
            escape(instance.snapshot or ""),
            str(instance.port),
            _format_relative(instance.created_at, now),
            _format_relative(instance.last_used_at, now),
        )
    return table


def _describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            return f"terminated by {signal.Signals(-returncode).name}"
        except ValueError:
            return f"terminated by signal {-returncode}"
    return f"exited with status {returncode}"


# Commands -------------------------------------------------------------
@app.command("start")
def start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to start."),
    snapshot: str | None = typer.Argument(
        None,
        help="Clone a new instance from this snapshot before starting it.",
    ),
    port: int | None = typer.Option(
        None,
        "--port",
        "-p",
        min=1,
        max=65535,
        help="Start on other than the instance's stored port.",
    ),
) -> None:
    """Start the named instance in the foreground, cloning it first when a snapshot is given."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "start",
        args={"name": name, "snapshot": snapshot, "port": port},
        target={"kind": "instance", "name": name},
    ) as op:
        with _translate_errors(runtime, op), _instance_lock(runtime, name, op):

            def _announce(plan: StartPlan) -> None:
                if plan.cloned:
                    op.add_step("registry.clone", detail=f"snapshot={snapshot}")
                    console.print(
                        f"[green]Cloned snapshot '{escape(snapshot or '')}' "
                        f"into instance '{escape(name)}'.[/green]"
                    )
                op.add_step("engine.start", detail=f"port={plan.port}")
                console.print(
                    f"Starting '{escape(name)}' on port {plan.port} "
                    "(press Ctrl-C to stop)."
                )

            returncode = runtime.orchestrator.start(name, snapshot, port, on_ready=_announce)

        if returncode != 0:
            _command_error(
                op,
                f"Engine for '{name}' {_describe_exit(returncode)}.",
                rc=ExitCode.PROVIDER,
            )
        op.add_step("engine.exit", detail=f"returncode={returncode}")
        console.print(f"Instance '{escape(name)}' stopped.")
        op.success("Instance ran to completion.", changed=1)


@app.command("remove")
def remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to remove."),
) -> None:
    """Remove the named instance and delete its data."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "remove",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _translate_errors(runtime, op), _instance_lock(runtime, name, op):
            removed = runtime.orchestrator.remove(name)
        op.add_step("registry.remove", detail=str(removed.path))
        console.print(f"[green]Instance '{escape(name)}' removed.[/green]")
        op.success("Instance removed.", changed=1)


@app.command("list")
def list_instances(
    ctx: typer.Context,
    sort: str = typer.Option(
        "name",
        "--sort",
        help=f"Sort key ({', '.join(SORT_KEYS)}).",
    ),
    ascending: bool = typer.Option(
        False,
        "--ascending",
        help="Sort ascending instead of the default descending order.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
) -> None:
    """List all instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"sort": sort, "ascending": ascending, "json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        if sort not in SORT_KEYS:
            _command_error(
                op,
                f"Unknown sort key '{sort}'. Choose from: {', '.join(SORT_KEYS)}.",
                rc=ExitCode.VALIDATION,
            )
        with _translate_errors(runtime, op):
            instances = runtime.orchestrator.list_instances(sort=sort, descending=not ascending)

        if json_output:
            payload: dict[str, Any] = {"instances": [item.to_dict() for item in instances]}
            console.print_json(data=payload)
            op.success("Reported instance list as JSON.", changed=0)
            return

        console.print(_render_instances(instances))
        op.success("Reported instance list.", changed=0)


@app.command("promote")
def promote(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to capture."),
    new_snapshot_name: str = typer.Argument(..., help="Snapshot to create or overwrite."),
) -> None:
    """Promote an instance's current data to a snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "promote",
        args={"name": name, "snapshot": new_snapshot_name},
        target={"kind": "snapshot", "name": new_snapshot_name},
    ) as op:
        with _translate_errors(runtime, op):
            validate_name("snapshot", new_snapshot_name)
            with runtime.locks.snapshot_lock(new_snapshot_name) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                replaced = runtime.registry.get_snapshot(new_snapshot_name) is not None
                record = runtime.orchestrator.promote(name, new_snapshot_name)
        op.add_step(
            "snapshot.publish",
            detail=f"{'replaced' if replaced else 'created'} {record.path}",
        )
        verb = "Replaced" if replaced else "Created"
        console.print(
            f"[green]{verb} snapshot '{escape(new_snapshot_name)}' "
            f"from instance '{escape(name)}'.[/green]"
        )
        op.success(f"{verb} snapshot.", changed=1)


@app.command("reset")
def reset(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to reset."),
) -> None:
    """Reset an instance to its cloned snapshot state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "reset",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _translate_errors(runtime, op), _instance_lock(runtime, name, op):
            instance = runtime.orchestrator.reset(name)
        op.add_step(
            "registry.clone",
            detail=f"snapshot={instance.snapshot} port={instance.port}",
        )
        console.print(
            f"[green]Instance '{escape(name)}' reset from snapshot "
            f"'{escape(instance.snapshot or '')}' (port {instance.port}).[/green]"
        )
        op.success("Instance reset.", changed=2)


def main() -> None:
    """Console script entry point."""
    app(prog_name="sider-db")


__all__ = ["RuntimeContext", "app", "main"]
