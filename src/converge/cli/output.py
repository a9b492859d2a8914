"""Rich rendering of plans, apply reports and state."""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from converge.orchestrator.executor import ActionOutcome, ApplyReport
from converge.orchestrator.planner import ActionKind, Plan, PlanAction
from converge.orchestrator.references import render_value
from converge.state.models import StateSnapshot

console = Console()

SYMBOLS = {
    ActionKind.CREATE: ("+", "green"),
    ActionKind.UPDATE: ("~", "yellow"),
    ActionKind.DELETE: ("-", "red"),
    ActionKind.NOOP: (" ", "dim"),
}

OUTCOME_STYLES = {
    ActionOutcome.APPLIED: ("✓", "green"),
    ActionOutcome.NOOP: ("=", "dim"),
    ActionOutcome.SKIPPED: ("○", "yellow"),
    ActionOutcome.TIMED_OUT: ("⏱", "red"),
    ActionOutcome.FAILED: ("✗", "red"),
}


def _format_value(value: Any) -> str:
    rendered = render_value(value)
    if isinstance(rendered, str):
        return rendered
    return json.dumps(rendered, default=str)


def _symbol(action: PlanAction):
    if action.replace:
        return "-/+", "magenta"
    return SYMBOLS[action.kind]


def _format_changes(action: PlanAction) -> Text:
    text = Text()

    if action.kind == ActionKind.DELETE:
        text.append(action.reason or "")
        return text

    for i, diff in enumerate(action.diffs):
        if i:
            text.append("\n")
        text.append(f"{diff.name}: ", style="bold")
        if action.kind == ActionKind.UPDATE or action.replace:
            text.append(_format_value(diff.old) if diff.old is not None else "null", style="red")
            text.append(" → ")
        text.append(_format_value(diff.new) if diff.new is not None else "null", style="green")
        if diff.forces_replacement:
            text.append("  # forces replacement", style="magenta")

    if action.replace and not action.diffs and action.reason:
        text.append(action.reason)

    return text


def render_plan(plan: Plan) -> None:
    """Print a plan the way ``terraform plan`` reads: summary, then changes."""
    summary = plan.summary()

    header = Text()
    header.append("Plan: ", style="bold")
    header.append(f"{summary['create']} to add", style="green" if summary['create'] else "dim")
    header.append(", ")
    header.append(f"{summary['update']} to change", style="yellow" if summary['update'] else "dim")
    header.append(", ")
    header.append(f"{summary['replace']} to replace", style="magenta" if summary['replace'] else "dim")
    header.append(", ")
    header.append(f"{summary['delete']} to destroy", style="red" if summary['delete'] else "dim")

    console.print(Panel(
        f"State: {plan.identity} (serial {plan.serial})",
        title="Plan",
        style="bold blue"
    ))

    if not plan.has_changes():
        console.print("[dim]No changes. Infrastructure is up-to-date.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("", width=3)
    table.add_column("Resource", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Changes")

    shown = set()
    for action in plan.changes():
        # A replacement is listed once, on its create
        if action.replace and action.kind == ActionKind.DELETE:
            continue
        if action.resource_id in shown:
            continue
        shown.add(action.resource_id)

        symbol, style = _symbol(action)
        resource = Text(action.resource_id)
        if action.deferred:
            resource.append("\n(known after apply)", style="dim")
        table.add_row(Text(symbol, style=style), resource, action.resource_type, _format_changes(action))

    console.print(table)
    console.print(header)

    if plan.skipped:
        console.print(f"[dim]Skipped (count 0): {', '.join(plan.skipped)}[/dim]")

    high_risk = plan.high_risk_resources()
    if high_risk:
        console.print(Panel.fit(
            Text(
                "These replacements delete globally unique resources; "
                "their names may not be reclaimable:\n" + "\n".join(f"  {rid}" for rid in high_risk)
            ),
            title="⚠ High-risk changes",
            border_style="red"
        ))


def render_report(report: ApplyReport) -> None:
    """Print the per-resource result of an apply."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Resource", style="cyan")
    table.add_column("Action")
    table.add_column("Outcome")
    table.add_column("Detail")

    for result in report.ordered_results():
        if result.outcome == ActionOutcome.NOOP:
            continue
        symbol, style = OUTCOME_STYLES[result.outcome]
        if result.error is not None:
            detail = Text(result.error.message)
        elif result.blocked_by:
            detail = Text(f"blocked by {result.blocked_by}")
        else:
            detail = Text(f"{result.duration:.1f}s", style="dim")
        table.add_row(
            Text(symbol, style=style),
            result.resource_id,
            result.kind.value,
            Text(result.outcome.value, style=style),
            detail,
        )

    if table.row_count:
        console.print(table)

    counts = report.counts()
    body = (
        f"Applied: {counts['applied']}\n"
        f"Unchanged: {counts['noop']}\n"
        f"Failed: {counts['failed']}\n"
        f"Timed out: {counts['timed_out']}\n"
        f"Skipped: {counts['skipped']}\n"
        f"Duration: {report.duration:.2f}s"
    )
    if report.version_id:
        body += f"\nState version: {report.version_id}"

    if report.is_success():
        console.print(Panel.fit(f"[green]✓ Apply complete[/green]\n\n{body}", title="Apply Complete", border_style="green"))
    elif report.cancelled:
        console.print(Panel.fit(f"[yellow]⚠ Apply cancelled[/yellow]\n\n{body}", title="Apply Cancelled", border_style="yellow"))
    else:
        console.print(Panel.fit(f"[red]✗ Apply finished with errors[/red]\n\n{body}", title="Apply Failed", border_style="red"))

    for result in report.failed_results():
        console.print()
        console.print(Text(result.error.to_user_message(), style="red"))


def render_state(snapshot: StateSnapshot) -> None:
    """Print the resources recorded in a snapshot."""
    table = Table(
        title=f"{snapshot.identity} (serial {snapshot.serial})",
        show_header=True,
        header_style="bold"
    )
    table.add_column("Resource", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Provider ID")
    table.add_column("Depends on", style="dim")

    for resource_id, state in snapshot.resources.items():
        table.add_row(resource_id, state.type, state.provider_id, ", ".join(state.dependencies))

    console.print(table)
