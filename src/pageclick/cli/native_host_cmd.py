"""pageclick native-host -- Serve the native companion over stdin/stdout.

Frames are a 4-byte little-endian length followed by UTF-8 JSON. Nothing
else may be written to stdout while serving.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from pageclick.config import PageClickConfigError, load_config
from pageclick.engine.native_host import NativeHost

console = Console(stderr=True)

logger = logging.getLogger("pageclick.cli.native_host")


def native_host(
    dir: Path | None = typer.Option(
        None,
        "--dir",
        "-d",
        help="Path to .pageclick/ directory (for native_allowed_dirs).",
    ),
) -> None:
    """Answer clipboard and file-read requests until stdin closes."""
    try:
        config = load_config(dir)
    except PageClickConfigError as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="[red]Config Error[/red]", border_style="red"))
        raise typer.Exit(code=2)

    host = NativeHost(allowed_dirs=config.native_allowed_dirs, max_read_bytes=config.native_max_read_bytes)
    logger.debug("Native host serving (roots: %s)", ", ".join(str(r) for r in host.allowed_roots))
    host.serve(sys.stdin.buffer, sys.stdout.buffer)
