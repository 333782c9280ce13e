"""Get command implementations."""

import typer

from kplane.cli.commands.common import load_settings, make_manager
from kplane.config.models import ConfigOverrides


async def run_get_clusters(config_file: str, overrides: ConfigOverrides, trace: bool) -> None:
    """Print management and control-plane contexts, marking the current one."""
    settings = load_settings(config_file, overrides)
    for entry in await make_manager(settings, trace).list_clusters():
        marker = "*" if entry.current else " "
        typer.echo(f"{marker} {entry.context}")
