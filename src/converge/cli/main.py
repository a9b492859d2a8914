"""Main CLI entry point."""

import getpass
import json
import signal
import socket
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional

import click
from rich.panel import Panel
from rich.table import Table

from converge.cli.output import console, render_plan, render_report, render_state
from converge.config.models import ResourceSpec
from converge.config.parser import Config, ConfigValidationError
from converge.orchestrator.orchestrator import ReconcileOrchestrator
from converge.providers import create_provider
from converge.state.backend import create_backend
from converge.utils.errors import ConvergeError, StateNotFoundError
from converge.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2


@click.group()
@click.option('--config', 'config_path', default='converge.yaml', help='Path to configuration file')
@click.option('--workspace', default='default', help='Target scope; state identity is <project>-<workspace>')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.pass_context
def cli(ctx, config_path, workspace, log_level):
    """Converge declared infrastructure with recorded state."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['workspace'] = workspace

    setup_logging(log_level, Path(config_path).resolve().parent / '.converge' / 'logs')


def load_config(config_path: str) -> Config:
    """Load and validate configuration file."""
    try:
        return Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(EXIT_ERROR)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(EXIT_ERROR)


def load_specs(config: Config) -> List[ResourceSpec]:
    """Load resource declarations."""
    try:
        return config.load_declarations()
    except ConfigValidationError as e:
        console.print("[red]Declaration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(EXIT_ERROR)


def current_holder() -> str:
    """Lock holder description for this process."""
    return f"{getpass.getuser()}@{socket.gethostname()}"


def create_orchestrator(
    config: Config,
    workspace: str,
    parallelism: Optional[int] = None
) -> ReconcileOrchestrator:
    """Create orchestrator with all dependencies."""
    store, lock_manager = create_backend(config)
    return ReconcileOrchestrator(
        store=store,
        lock_manager=lock_manager,
        provider=create_provider(config),
        identity=config.identity(workspace),
        holder=current_holder(),
        max_workers=parallelism or config.project.parallelism,
        action_timeout=config.project.action_timeout,
        errored_state_dir=str(config.base_dir),
    )


def fail(error: ConvergeError) -> None:
    """Print an error for the user and exit."""
    console.print(error.to_user_message(), style="red", markup=False)
    sys.exit(EXIT_ERROR)


@contextmanager
def cancel_on_interrupt(cancel_event: threading.Event):
    """First Ctrl-C stops new actions; a second one aborts."""
    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        console.print(
            "\n[yellow]Interrupt received: waiting for in-flight actions, then saving state. "
            "Press Ctrl-C again to abort.[/yellow]"
        )

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel_event
    finally:
        signal.signal(signal.SIGINT, previous)


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate configuration and declarations."""
    cfg = load_config(ctx.obj['config_path'])
    specs = load_specs(cfg)

    orchestrator = create_orchestrator(cfg, ctx.obj['workspace'])
    try:
        graph = orchestrator.build_graph(specs)
    except ConvergeError as e:
        fail(e)

    table = Table(title="Resources (apply order)", show_header=True, header_style="bold")
    table.add_column("Resource", style="cyan")
    table.add_column("Depends on", style="dim")
    for resource_id in graph.topological_order():
        table.add_row(resource_id, ", ".join(graph.dependencies(resource_id)))
    console.print(table)

    if graph.skipped:
        console.print(f"[dim]Skipped (count 0): {', '.join(graph.skipped)}[/dim]")
    console.print(f"[green]✓[/green] {len(graph)} resources are valid")


@cli.command()
@click.option('--refresh', is_flag=True, help='Read current values from the provider before planning')
@click.option('--no-lock', is_flag=True, help='Read state without taking the lock')
@click.option('--json', 'json_output', is_flag=True, help='Output the plan as JSON')
@click.pass_context
def plan(ctx, refresh, no_lock, json_output):
    """Show what apply would change. Exits 2 when changes are pending."""
    cfg = load_config(ctx.obj['config_path'])
    specs = load_specs(cfg)
    orchestrator = create_orchestrator(cfg, ctx.obj['workspace'])

    try:
        result = orchestrator.plan(specs, refresh=refresh, lock=not no_lock)
    except ConvergeError as e:
        fail(e)

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        render_plan(result)

    sys.exit(EXIT_CHANGES if result.has_changes() else EXIT_OK)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--allow-high-risk', is_flag=True, help='Allow replacing globally unique resources')
@click.option('--parallelism', type=click.IntRange(1, 64), help='Maximum parallel actions')
@click.option('--refresh', is_flag=True, help='Read current values from the provider before planning')
@click.pass_context
def apply(ctx, yes, allow_high_risk, parallelism, refresh):
    """Apply declared resources."""
    cfg = load_config(ctx.obj['config_path'])
    specs = load_specs(cfg)
    orchestrator = create_orchestrator(cfg, ctx.obj['workspace'], parallelism)

    try:
        pending = orchestrator.plan(specs, refresh=refresh)
    except ConvergeError as e:
        fail(e)

    render_plan(pending)
    if not pending.updates_state():
        return

    _run(
        pending,
        yes,
        allow_high_risk,
        "Apply these changes?",
        lambda cancel_event: orchestrator.apply(
            specs,
            allow_high_risk=allow_high_risk,
            cancel_event=cancel_event,
            saved_plan=pending,
        ),
    )


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--allow-high-risk', is_flag=True, help='Allow replacing globally unique resources')
@click.pass_context
def destroy(ctx, yes, allow_high_risk):
    """Delete every resource recorded in state."""
    cfg = load_config(ctx.obj['config_path'])
    orchestrator = create_orchestrator(cfg, ctx.obj['workspace'])

    try:
        pending = orchestrator.plan([])
    except ConvergeError as e:
        fail(e)

    render_plan(pending)
    if not pending.has_changes():
        return

    console.print(Panel.fit(
        f"[bold red]⚠ WARNING: This will destroy {len(pending.changes())} resources[/bold red]\n\n"
        f"State: {pending.identity}",
        title="Destruction Plan",
        border_style="red"
    ))

    _run(
        pending,
        yes,
        allow_high_risk,
        "Are you sure you want to destroy these resources?",
        lambda cancel_event: orchestrator.destroy(
            allow_high_risk=allow_high_risk,
            cancel_event=cancel_event,
            saved_plan=pending,
        ),
    )


def _run(pending, yes, allow_high_risk, prompt, execute) -> None:
    """Confirm, execute with Ctrl-C handling, print the report and exit."""
    if pending.high_risk_actions() and not allow_high_risk:
        console.print("[red]Refusing to apply high-risk changes without --allow-high-risk[/red]")
        sys.exit(EXIT_ERROR)

    if not yes and not click.confirm(prompt, default=False):
        console.print("[yellow]Cancelled[/yellow]")
        return

    try:
        with cancel_on_interrupt(threading.Event()) as cancel_event:
            report = execute(cancel_event)
    except ConvergeError as e:
        fail(e)

    console.print()
    render_report(report)
    sys.exit(report.exit_code())


@cli.command('force-unlock')
@click.argument('lock_id')
@click.option('--force', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def force_unlock(ctx, lock_id, force):
    """Break a lock left behind by a crashed run."""
    cfg = load_config(ctx.obj['config_path'])
    orchestrator = create_orchestrator(cfg, ctx.obj['workspace'])

    if not force:
        console.print(
            "[yellow]Only break a lock if the holder is no longer running; "
            "two concurrent applies can corrupt state.[/yellow]"
        )
        if not click.confirm(f"Force-release lock {lock_id}?", default=False):
            console.print("[yellow]Cancelled[/yellow]")
            return

    try:
        released = orchestrator.force_unlock(lock_id)
    except ConvergeError as e:
        fail(e)

    console.print(
        f"[green]✓[/green] Released lock {released.lock_id} held by {released.holder} "
        f"since {released.created.isoformat()}"
    )


@cli.group()
def state():
    """Inspect recorded state."""


def _load_snapshot(ctx):
    cfg = load_config(ctx.obj['config_path'])
    store, _ = create_backend(cfg)
    identity = cfg.identity(ctx.obj['workspace'])
    try:
        return store, identity, store.load(identity)
    except StateNotFoundError as e:
        console.print(f"[yellow]{e.message}[/yellow]")
        sys.exit(EXIT_OK)
    except ConvergeError as e:
        fail(e)


@state.command('list')
@click.pass_context
def state_list(ctx):
    """List recorded resources."""
    _, _, snapshot = _load_snapshot(ctx)
    render_state(snapshot)


@state.command('show')
@click.argument('resource_id')
@click.pass_context
def state_show(ctx, resource_id):
    """Show one recorded resource as JSON."""
    _, _, snapshot = _load_snapshot(ctx)
    resource = snapshot.get(resource_id)
    if resource is None:
        console.print(f"[red]Error:[/red] {resource_id} is not in state")
        sys.exit(EXIT_ERROR)
    click.echo(json.dumps(resource.model_dump(mode='json'), indent=2))


@state.command('versions')
@click.pass_context
def state_versions(ctx):
    """List stored state versions, oldest first."""
    store, identity, _ = _load_snapshot(ctx)

    table = Table(title=f"Versions of {identity}", show_header=True, header_style="bold")
    table.add_column("Version", style="cyan")
    table.add_column("Timestamp")
    table.add_column("Resources", justify="right")

    try:
        for version_id in store.list_versions(identity):
            snapshot = store.load_version(identity, version_id)
            table.add_row(version_id, snapshot.timestamp.isoformat(), str(len(snapshot.resources)))
    except ConvergeError as e:
        fail(e)

    console.print(table)


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()
