"""Down command implementation."""

from kplane.cli.commands.common import load_settings, make_manager
from kplane.config.models import ConfigOverrides
from kplane.core.logging import get_logger

logger = get_logger(__name__)


async def run_down(config_file: str, overrides: ConfigOverrides, trace: bool) -> None:
    """Delete the management cluster.

    Args:
        config_file: Path to the settings file
        overrides: Settings overrides from the command line
        trace: Print every command and its output
    """
    settings = load_settings(config_file, overrides)
    await make_manager(settings, trace).down()
    logger.info("Management cluster deleted", cluster=settings.profile.cluster_name)
