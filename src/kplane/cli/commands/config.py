"""Config command implementations."""

import typer

from kplane.cli.commands.common import load_settings, make_manager
from kplane.config.loader import save_config
from kplane.config.models import ConfigOverrides
from kplane.core.logging import get_logger
from kplane.providers.factory import resolve_provider_kind

logger = get_logger(__name__)


async def run_use_context(
    config_file: str, name: str, overrides: ConfigOverrides, trace: bool
) -> None:
    """Switch the current kubeconfig context to a cluster or control plane.

    Args:
        config_file: Path to the settings file
        name: Context, or control plane name
        overrides: Settings overrides from the command line
        trace: Print every command and its output
    """
    settings = load_settings(config_file, overrides)
    context = await make_manager(settings, trace).use_context(name)
    typer.echo(f"current context set to {context}")


def run_set_provider(config_file: str, name: str) -> None:
    """Store the default provider on the active profile.

    Args:
        config_file: Path to the settings file
        name: Provider name or alias
    """
    kind = resolve_provider_kind(name)
    settings = load_settings(config_file)
    settings.config.active_profile().provider = kind.value
    save_config(settings.path, settings.config)
    logger.debug("Saved provider", provider=kind.value, path=str(settings.path))
    typer.echo(f"provider set to {kind.value}")
