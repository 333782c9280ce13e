"""Doctor command implementation."""

import typer

from kplane.cli.commands.common import load_settings, make_manager


def run_doctor(config_file: str) -> None:
    """Check local prerequisites, exiting non-zero when any are missing."""
    settings = load_settings(config_file)
    missing = make_manager(settings, trace=False).doctor()
    if missing:
        typer.echo(f"Error: missing dependencies: {', '.join(missing)}", err=True)
        raise typer.Exit(code=1)
    typer.echo("ok")
