"""pageclick run -- Run one task in a live browser page.

Resolves config and the provider key, opens a Playwright browser, wires the
agent loop together and streams progress with Rich. Confirm-tier actions,
checkpoints and clarifying questions are asked interactively.
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt

from pageclick.config import PageClickConfig, PageClickConfigError, find_project_dir, load_config
from pageclick.credentials import mask_key, provider_for_model, resolve_api_key

console = Console(stderr=True)
output_console = Console()  # stdout for machine-readable output

logger = logging.getLogger("pageclick.cli.run")

_PHASE_STYLES = {"completed": "green", "error": "red", "idle": "yellow", "checkpoint": "yellow"}


def _print_run_header(goal: str, url: str | None, config: PageClickConfig, api_key_display: str) -> None:
    """Print a styled header before the run starts."""
    info_lines = [
        f"[bold]Goal:[/bold]      {goal}",
        f"[bold]Start URL:[/bold] {url or 'about:blank'}",
        f"[bold]Model:[/bold]     {config.model}",
        f"[bold]Budget:[/bold]    {config.max_loops or 'heuristic'}",
        f"[bold]Headless:[/bold]  {config.headless}",
        f"[bold]API Key:[/bold]   {api_key_display}",
    ]
    console.print()
    console.print(Panel("\n".join(info_lines), title="[bold cyan]PageClick Run[/bold cyan]", border_style="cyan"))
    console.print()


def _print_event(event: Any, payload: dict[str, Any]) -> None:
    """Progress line for an orchestrator event."""
    from pageclick.engine.orchestrator import OrchestratorEvent

    if event is OrchestratorEvent.STEP_RESULT:
        result = payload["result"]
        if result.success:
            console.print(f"  [bold green]✓[/bold green] {result.action} [dim]{result.selector}[/dim]")
        else:
            console.print(f"  [bold red]✗[/bold red] {result.action} [dim]{result.selector}[/dim]")
            error = result.error or ""
            console.print(f"    [dim red]{error if len(error) <= 120 else error[:117] + '...'}[/dim red]")
    elif event is OrchestratorEvent.LOOP_COMPLETE:
        entry = payload["entry"]
        console.print(f"[dim]Iteration {entry.iteration}: {entry.plan.explanation}[/dim]")
    elif event is OrchestratorEvent.BUDGET_EXHAUSTED:
        console.print(f"[yellow]Loop budget of {payload['max_loops']} iterations exhausted.[/yellow]")


def _confirm_step(step: Any, verdict: Any) -> bool:
    what = step.description or f"{step.action} {step.selector}"
    console.print(Panel(f"{what}\n\n[dim]{verdict.reason}[/dim]", title="[yellow]Approval needed[/yellow]"))
    return Confirm.ask("Allow this action?", default=False, console=console)


def _confirm_checkpoint(block: Any) -> bool:
    console.print(Panel(block.message, title=f"[yellow]Checkpoint: {block.reason}[/yellow]"))
    return Confirm.ask("Continue?", default=False, console=console)


def _ask_user(questions: tuple[str, ...]) -> dict[str, str]:
    return {q: Prompt.ask(q, console=console) for q in questions}


def _native_client(config: PageClickConfig) -> Any:
    """In-process companion by default, or a ``pageclick native-host`` child."""
    from pageclick.engine.native_host import InProcessNativeClient, NativeHost, NativeHostClient

    if config.native_host == "subprocess":
        command = config.native_host_command or [
            sys.executable,
            "-m",
            "pageclick.cli.app",
            "native-host",
            "--dir",
            str(config.project_dir),
        ]
        return NativeHostClient(command, timeout=config.native_host_timeout)
    return InProcessNativeClient(NativeHost(config.native_allowed_dirs, config.native_max_read_bytes))


def _build_runner(
    config: PageClickConfig, api_key: str, session: Any, live_page: Any, auto_approve: bool, native: Any
) -> Any:
    """Wire the agent loop to the live browser page."""
    from pageclick.engine.action_executor import ActionExecutor
    from pageclick.engine.agent_runner import AgentRunner
    from pageclick.engine.debug_session import DebugSessionManager
    from pageclick.engine.model_client import HttpModelClient
    from pageclick.engine.orchestrator import TaskOrchestrator
    from pageclick.engine.page_snapshot import PlaywrightSnapshotProvider
    from pageclick.engine.privileged import PrivilegedActionRouter, TabGroupRegistry
    from pageclick.engine.safety_policy import AuditLog, JsonlAuditSink, SafetyPolicy

    router = PrivilegedActionRouter.with_defaults(
        downloads_dir=config.downloads_dir,
        native_client=native,
        tab_groups=TabGroupRegistry(session.tab_urls),
    )
    debug_sessions = DebugSessionManager()
    debug_sessions.attach("main", live_page.url, session.page)

    orchestrator = TaskOrchestrator.from_config(config)
    orchestrator.subscribe(_print_event)

    return AgentRunner(
        model=HttpModelClient(config.model, api_key, config.api_base_url, timeout=config.request_timeout),
        executor=ActionExecutor(live_page, router=router),
        snapshots=PlaywrightSnapshotProvider(live_page),
        model_key=config.model,
        orchestrator=orchestrator,
        policy=SafetyPolicy.from_config(config.policy),
        audit=AuditLog(
            JsonlAuditSink(config.resolved_audit_log_path, config.audit_max_entries),
            max_entries=config.audit_max_entries,
        ),
        debug_sessions=debug_sessions,
        tab_id="main",
        confirm=(lambda step, verdict: True) if auto_approve else _confirm_step,
        on_checkpoint=(lambda block: True) if auto_approve else _confirm_checkpoint,
        ask_user=_ask_user,
        request_timeout=config.request_timeout,
        max_consecutive_model_failures=config.max_consecutive_model_failures,
    )


def run(
    goal: str = typer.Argument(..., help="What PageClick should do, in plain language."),
    url: Optional[str] = typer.Option(
        None,
        "--url",
        "-u",
        help="Page to open before starting.",
    ),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        "-m",
        help="Model key (overrides config).",
    ),
    max_loops: Optional[int] = typer.Option(
        None,
        "--max-loops",
        min=1,
        help="Fixed loop budget (overrides the goal heuristic).",
    ),
    headless: Optional[bool] = typer.Option(
        None,
        "--headless/--no-headless",
        help="Run the browser headless or visible (default from config).",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Approve confirm-tier actions and checkpoints without asking. Blocked actions stay blocked.",
    ),
    output_format: str = typer.Option(
        "text",
        "--output",
        "-o",
        help="Output format: text or json.",
    ),
    dir: Optional[Path] = typer.Option(
        None,
        "--dir",
        "-d",
        help="Path to .pageclick/ directory.",
    ),
) -> None:
    """Run a task in a browser page.

    PageClick observes the page, asks the model for one action at a time,
    checks each action against the safety policy and executes it, until the
    task is done or the loop budget runs out.
    """
    if output_format not in ("text", "json"):
        console.print(
            Panel(
                f"[red]Invalid output format:[/red] {output_format}\n\nValid formats: text, json",
                title="[red]Config Error[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=2)

    project_dir = dir or find_project_dir()
    try:
        config = load_config(project_dir)
    except PageClickConfigError as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="[red]Config Error[/red]", border_style="red"))
        raise typer.Exit(code=2)

    # CLI options override config file values
    if model:
        config.model = model
    if max_loops:
        config.max_loops = max_loops
    if headless is not None:
        config.headless = headless

    try:
        api_key = resolve_api_key(provider_for_model(config.model), project_dir)
    except PageClickConfigError as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="[red]API Key Error[/red]", border_style="red"))
        raise typer.Exit(code=2)

    if output_format == "text":
        _print_run_header(goal, url, config, mask_key(api_key))

    try:
        from pageclick.engine.playwright_page import BrowserSession
    except ImportError as exc:
        console.print(
            Panel(
                f"[red]Failed to import the browser layer:[/red] {exc}\n\n"
                "Try: [bold]pip install pageclick[/bold]\n"
                "Then: [bold]playwright install chromium[/bold]",
                title="[red]Import Error[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=3)

    start_time = time.monotonic()
    native = _native_client(config)
    try:
        with BrowserSession(headless=config.headless) as session:
            live_page = session.start(url)
            runner = _build_runner(config, api_key, session, live_page, auto_approve=yes, native=native)
            previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: runner.abort("Interrupted by user"))
            try:
                state = runner.run(goal)
            finally:
                signal.signal(signal.SIGINT, previous_handler)
    except Exception as exc:
        logger.exception("Unexpected error during run")
        console.print(
            Panel(
                f"[red]Unexpected error:[/red] {exc}\n\nRun with [bold]--verbose[/bold] for full traceback.",
                title="[red]Infrastructure Error[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=3)
    finally:
        native.close()

    duration = time.monotonic() - start_time

    if output_format == "json":
        output_console.print(
            json.dumps(
                {
                    "phase": state.phase,
                    "status": state.status_message,
                    "iterations": state.loop_count,
                    "max_loops": state.max_loops,
                    "duration_seconds": round(duration, 2),
                },
                indent=2,
            )
        )
    else:
        style = _PHASE_STYLES.get(state.phase, "white")
        lines = [
            f"[bold {style}]{state.phase.upper()}[/bold {style}]",
            "",
            f"  {state.status_message or '-'}",
            f"  Iterations: {state.loop_count}/{state.max_loops}",
            f"  Duration:   {duration:.1f}s",
        ]
        console.print()
        console.print(Panel("\n".join(lines), border_style=style))
        console.print()

    # Exit code: 0 = completed, 1 = anything else
    if state.phase != "completed":
        raise typer.Exit(code=1)
