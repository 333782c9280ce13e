"""Up command implementation."""

import typer

from kplane.cli.commands.common import consume_hint, load_settings, make_manager
from kplane.config.models import ConfigOverrides
from kplane.core.logging import get_logger

logger = get_logger(__name__)


async def run_up(
    config_file: str,
    overrides: ConfigOverrides,
    install_crds: bool,
    set_current: bool,
    trace: bool,
) -> None:
    """Create or reuse the management cluster and install the stack.

    Args:
        config_file: Path to the settings file
        overrides: Settings overrides from the command line
        install_crds: Install CRDs before deploying the operator
        set_current: Make the management context current
        trace: Print every command and its output
    """
    settings = load_settings(config_file, overrides)
    settings.profile.install_crds = settings.profile.install_crds and install_crds

    logger.info(
        "Configuration loaded",
        provider=settings.profile.provider,
        cluster=settings.profile.cluster_name,
        namespace=settings.profile.namespace,
    )

    result = await make_manager(settings, trace).up(set_current=set_current)

    typer.echo(f"management context: {result.context}")
    if consume_hint(settings, "up_hint_count"):
        typer.echo("next: create a control plane with `kplane create cluster <name>`")
