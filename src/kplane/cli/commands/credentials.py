"""Get-credentials command implementation."""

import typer

from kplane.cli.commands.common import load_settings, make_manager
from kplane.config.models import ConfigOverrides


async def run_get_credentials(
    config_file: str,
    name: str,
    set_current: bool,
    overrides: ConfigOverrides,
    trace: bool,
) -> None:
    """Merge credentials for a management cluster or control plane."""
    settings = load_settings(config_file, overrides)
    context = await make_manager(settings, trace).get_credentials(name, set_current=set_current)
    typer.echo(f"context: {context}")
