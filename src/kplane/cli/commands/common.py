"""Helpers shared by the command implementations."""

from dataclasses import dataclass
from pathlib import Path

from kplane.config.loader import (
    apply_overrides,
    get_env_overrides,
    load_config,
    merge_overrides,
    resolve_config_path,
    save_config,
)
from kplane.config.models import ConfigOverrides, KplaneConfig, Profile
from kplane.core.logging import LoggerSink, LogSink, NullSink, get_logger, set_color
from kplane.core.manager import ManagementPlane

logger = get_logger(__name__)

# First-run hints are shown this many times per profile.
HINT_LIMIT = 1


@dataclass
class Settings:
    """Loaded settings file together with the resolved active profile."""

    path: Path
    config: KplaneConfig
    profile: Profile


def load_settings(config_file: str, overrides: ConfigOverrides | None = None) -> Settings:
    """Load the settings file and resolve the active profile.

    Environment overrides are applied beneath ``overrides``. The profile's
    color preference is applied to terminal logging.
    """
    path = resolve_config_path(config_file)
    config = load_config(path)
    merged = merge_overrides(overrides or ConfigOverrides(), get_env_overrides())
    profile = apply_overrides(config.active_profile(), merged)
    set_color(profile.ui.color)
    return Settings(path=path, config=config, profile=profile)


def make_sink(profile: Profile) -> LogSink:
    """Progress sink for the terminal, silent when the UI is disabled."""
    if not profile.ui.enabled:
        return NullSink()
    return LoggerSink(get_logger("kplane"))


def make_manager(settings: Settings, trace: bool) -> ManagementPlane:
    """Build the orchestrator for the active profile."""
    return ManagementPlane(settings.profile, sink=make_sink(settings.profile), trace=trace)


def consume_hint(settings: Settings, field: str) -> bool:
    """Count a hint display and persist the counter.

    Counters live on the stored profile so overrides never leak into the file.

    Args:
        settings: Loaded settings
        field: Counter attribute on the profile's UI settings

    Returns:
        True if the hint should still be shown
    """
    stored = settings.config.active_profile()
    count = getattr(stored.ui, field)
    if count >= HINT_LIMIT:
        return False

    setattr(stored.ui, field, count + 1)
    try:
        save_config(settings.path, settings.config)
    except OSError as e:
        logger.warning("Could not save hint state", path=str(settings.path), error=str(e))
    return True
