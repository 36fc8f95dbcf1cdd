"""PageClick CLI -- Main Typer entry point.

Registers all subcommands and provides --version / --verbose global options.
"""

from __future__ import annotations

import typer
from rich.console import Console

from pageclick import __version__

TAGLINE = "Tell the page what you want done. PageClick clicks."

console = Console()

# -- Version callback ----------------------------------------------------------


def _version_callback(value: bool) -> None:
    if value:
        console.print("PageClick", style="bold cyan")
        console.print(f"  {TAGLINE}", style="dim")
        console.print(f"  v{__version__}\n", style="bold")
        raise typer.Exit()


# -- Main app ------------------------------------------------------------------

app = typer.Typer(
    name="pageclick",
    help=TAGLINE,
    rich_markup_mode="rich",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show PageClick version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output.",
    ),
) -> None:
    """PageClick -- a model-driven agent that completes tasks in a live web page."""
    if verbose:
        import logging

        logging.basicConfig(level=logging.DEBUG, format="%(name)s  %(message)s")


# -- Register subcommands ------------------------------------------------------

from pageclick.cli.audit import audit  # noqa: E402
from pageclick.cli.config_cmd import config_app  # noqa: E402
from pageclick.cli.native_host_cmd import native_host  # noqa: E402
from pageclick.cli.run import run  # noqa: E402

app.command(name="run", help="Run a task in a browser page.")(run)
app.command(name="audit", help="Show the safety audit log.")(audit)
app.command(name="native-host", help="Serve native companion requests on stdin/stdout.")(native_host)
app.add_typer(config_app, name="config", help="View and manage PageClick configuration.")


if __name__ == "__main__":
    app()
