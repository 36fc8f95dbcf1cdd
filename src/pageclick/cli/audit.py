"""pageclick audit -- Show the persisted safety audit log."""

from __future__ import annotations

import datetime as dt
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pageclick.config import PageClickConfigError, load_config
from pageclick.engine.safety_policy import JsonlAuditSink

console = Console()

_VERDICT_STYLES = {"auto": "green", "confirm": "yellow", "block": "red"}


def audit(
    dir: Path | None = typer.Option(
        None,
        "--dir",
        "-d",
        help="Path to .pageclick/ directory.",
    ),
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        min=1,
        help="Number of entries to show (newest first).",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print entries as JSON instead of a table.",
    ),
) -> None:
    """Show the most recent policy decisions and their outcomes."""
    try:
        config = load_config(dir)
    except PageClickConfigError as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="[red]Config Error[/red]", border_style="red"))
        raise typer.Exit(code=2)

    sink = JsonlAuditSink(config.resolved_audit_log_path, config.audit_max_entries)
    entries = sink.read()[:limit]

    if json_output:
        console.print_json(json.dumps([e.to_dict() for e in entries]))
        return

    if not entries:
        console.print(f"[dim]No audit entries in {sink.path}[/dim]")
        return

    table = Table(title="PageClick Audit Log", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Action", style="bold")
    table.add_column("Selector")
    table.add_column("Verdict")
    table.add_column("Approved")
    table.add_column("Result")
    table.add_column("Reason", style="dim")

    for entry in entries:
        style = _VERDICT_STYLES.get(entry.verdict, "white")
        table.add_row(
            dt.datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M:%S"),
            entry.action,
            entry.selector,
            f"[{style}]{entry.verdict}[/{style}]",
            "yes" if entry.user_approved else "no",
            entry.result or "-",
            entry.reason,
        )

    console.print()
    console.print(table)
    console.print()
