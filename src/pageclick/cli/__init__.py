"""PageClick CLI -- Typer-based command-line interface."""
