"""pageclick config -- View and manage PageClick configuration.

Subcommands: show, init, set-key.
"""

from __future__ import annotations

import os
from pathlib import Path

import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pageclick.config import PageClickConfigError, find_project_dir, load_config
from pageclick.credentials import PROVIDER_ENV_VARS, _parse_env_file, mask_key, provider_for_model, resolve_api_key
from pageclick.models import MODELS

console = Console()

config_app = typer.Typer(
    name="config",
    help="View and manage PageClick configuration.",
    no_args_is_help=True,
)

DEFAULT_CONFIG = {
    "model": MODELS["default"],
    "headless": False,
    "default_loop_budget": 25,
    "native_allowed_dirs": ["~/Documents", "~/Desktop", "~/Downloads"],
}


def _load_raw_config(project_dir: Path) -> dict:
    """Load the raw YAML config dict."""
    config_path = project_dir / "config.yaml"
    if not config_path.is_file():
        return {}
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError):
        return {}
    return data if isinstance(data, dict) else {}


def _save_raw_config(project_dir: Path, data: dict) -> None:
    """Write the config dict to config.yaml."""
    config_path = project_dir / "config.yaml"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def _identify_key_source(provider: str, project_dir: Path) -> str:
    """Determine where the API key is coming from."""
    key_vars = ("PAGECLICK_API_KEY", PROVIDER_ENV_VARS[provider])
    for var in key_vars:
        if os.environ.get(var):
            return f"env: {var}"
    env_path = Path(".env")
    if env_path.is_file() and any(_parse_env_file(env_path, var) for var in key_vars):
        return ".env file"
    if _load_raw_config(project_dir).get("api_key"):
        return "config.yaml"
    if (Path.home() / ".pageclick" / "config.yaml").is_file():
        return "~/.pageclick/config.yaml"
    return "unknown"


@config_app.command(name="show")
def config_show(
    dir: Path | None = typer.Option(
        None,
        "--dir",
        "-d",
        help="Path to .pageclick/ directory.",
    ),
) -> None:
    """Show the resolved PageClick configuration.

    Displays all effective config values, merging config.yaml with
    defaults. API keys are masked.
    """
    project_dir = dir or find_project_dir()
    config_path = project_dir / "config.yaml"

    try:
        config = load_config(project_dir)
    except PageClickConfigError as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="[red]Config Error[/red]", border_style="red"))
        raise typer.Exit(code=2)

    provider = provider_for_model(config.model)
    try:
        key_display = mask_key(resolve_api_key(provider, project_dir))
        key_source = _identify_key_source(provider, project_dir)
    except PageClickConfigError:
        key_display = "[red]NOT SET[/red]"
        key_source = "-"

    table = Table(title="PageClick Configuration", border_style="cyan")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    table.add_column("Source", style="dim")

    table.add_row("Project Dir", str(project_dir), "resolved")
    table.add_row("Config File", str(config_path), "exists" if config_path.is_file() else "missing")
    table.add_row("", "", "")
    table.add_row("Model", config.model, provider)
    table.add_row("API Key", key_display, key_source)
    table.add_row("Request Timeout", f"{config.request_timeout:g}s", "config")
    table.add_row(
        "Loop Budget",
        str(config.max_loops) if config.max_loops else f"heuristic (default {config.default_loop_budget})",
        "config",
    )
    table.add_row("Stuck Window", str(config.stuck_window), "config")
    table.add_row("History Window", str(config.history_window), "config")
    table.add_row("Audit Log", str(config.resolved_audit_log_path), "config")
    table.add_row("Downloads Dir", str(config.downloads_dir), "config")
    table.add_row("Native Roots", ", ".join(config.native_allowed_dirs), "config")
    table.add_row("Headless", str(config.headless), "config")
    table.add_row("Extra Policy Rules", str(sum(len(v or []) for v in config.policy.values())), "config")

    console.print()
    console.print(table)
    console.print()


@config_app.command(name="init")
def config_init(
    dir: Path | None = typer.Option(
        None,
        "--dir",
        "-d",
        help="Directory to create (default: ./.pageclick).",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite an existing config.yaml.",
    ),
) -> None:
    """Create a .pageclick/config.yaml with default settings."""
    project_dir = dir or Path.cwd() / ".pageclick"
    config_path = project_dir / "config.yaml"
    if config_path.is_file() and not force:
        console.print(f"[yellow]Config already exists:[/yellow] {config_path} [dim](use --force to overwrite)[/dim]")
        raise typer.Exit(code=1)
    _save_raw_config(project_dir, dict(DEFAULT_CONFIG))
    console.print(f"[green]Created[/green] {config_path}")


@config_app.command(name="set-key")
def config_set_key(
    dir: Path | None = typer.Option(
        None,
        "--dir",
        "-d",
        help="Path to .pageclick/ directory.",
    ),
    global_config: bool = typer.Option(
        False,
        "--global",
        "-g",
        help="Save to global config (~/.pageclick/config.yaml) instead of project config.",
    ),
) -> None:
    """Interactively set the model provider API key.

    The key is never displayed in full after entry.
    """
    api_key = typer.prompt("Enter your model provider API key", hide_input=True).strip()
    if not api_key:
        console.print("[red]API key cannot be empty.[/red]")
        raise typer.Exit(code=2)

    target_dir = Path.home() / ".pageclick" if global_config else (dir or find_project_dir())
    data = _load_raw_config(target_dir)
    data["api_key"] = api_key
    _save_raw_config(target_dir, data)

    console.print(f"\n[green]API key saved[/green] ({mask_key(api_key)}) [dim]to {target_dir / 'config.yaml'}[/dim]")
    console.print("\n[dim]Tip: PAGECLICK_API_KEY and provider environment variables take priority.[/dim]")
