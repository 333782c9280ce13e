"""Configuration loading and saving for kplane."""

import os
from pathlib import Path

import yaml
from pydantic import ValidationError as PydanticValidationError

from kplane.config.models import ConfigOverrides, KplaneConfig, Profile
from kplane.core.logging import get_logger

logger = get_logger(__name__)

CONFIG_FILE_NAME = "config.yaml"
ENV_PREFIX = "KPLANE_"


def resolve_config_path(explicit: str = "") -> Path:
    """Resolve the settings file location.

    An explicit path wins, then ``$XDG_CONFIG_HOME/kplane/config.yaml``, then
    ``~/.config/kplane/config.yaml``.

    Args:
        explicit: Path given on the command line (optional)

    Returns:
        Settings file path
    """
    if explicit:
        return Path(explicit).expanduser()
    xdg = os.getenv("XDG_CONFIG_HOME", "")
    if xdg:
        return Path(xdg) / "kplane" / CONFIG_FILE_NAME
    return Path.home() / ".config" / "kplane" / CONFIG_FILE_NAME


def load_config(path: Path | str) -> KplaneConfig:
    """Load settings from a YAML file.

    A missing file yields the built-in defaults.

    Args:
        path: Settings file path

    Returns:
        Parsed configuration

    Raises:
        ValueError: If the file is invalid YAML or doesn't match the schema
    """
    path = Path(path)
    if not path.exists():
        logger.debug("No config file found, using defaults", path=str(path))
        return KplaneConfig()

    logger.debug("Loading configuration file", path=str(path))

    try:
        with path.open("r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in configuration file: {e}") from e

    # Treat empty files as empty configuration
    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ValueError("Configuration file must contain a YAML mapping")

    try:
        config = KplaneConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ValueError(f"Failed to parse configuration: {e}") from e

    if not config.current_profile:
        config.current_profile = "default"
    return config


def save_config(path: Path | str, config: KplaneConfig) -> None:
    """Write settings to ``path``, readable only by the owner.

    Args:
        path: Settings file path
        config: Configuration to write
    """
    path = Path(path)
    data = config.model_dump(mode="json", by_alias=True)

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as f:
        yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)
    os.chmod(path, 0o600)

    logger.debug("Saved configuration file", path=str(path))


def apply_overrides(profile: Profile, overrides: ConfigOverrides) -> Profile:
    """Return a copy of ``profile`` with non-empty overrides applied.

    Args:
        profile: Profile loaded from the settings file
        overrides: Override values to apply

    Returns:
        Updated profile
    """
    profile = profile.model_copy(deep=True)

    if overrides.provider:
        profile.provider = overrides.provider
    if overrides.cluster_name:
        profile.cluster_name = overrides.cluster_name
    if overrides.namespace:
        profile.namespace = overrides.namespace
    if overrides.kubeconfig_path:
        profile.kubeconfig_path = overrides.kubeconfig_path
    if overrides.stack_version:
        profile.stack_version = overrides.stack_version
    if overrides.crd_source:
        profile.crd_source = overrides.crd_source

    # Image overrides
    if overrides.apiserver_image:
        profile.images.apiserver = overrides.apiserver_image
    if overrides.operator_image:
        profile.images.operator = overrides.operator_image
    if overrides.etcd_image:
        profile.images.etcd = overrides.etcd_image

    return profile


def merge_overrides(cli: ConfigOverrides, env: ConfigOverrides) -> ConfigOverrides:
    """Combine CLI and environment overrides; CLI values win."""
    merged = env.model_dump()
    merged.update({key: value for key, value in cli.model_dump().items() if value})
    return ConfigOverrides.model_validate(merged)


def get_env_overrides() -> ConfigOverrides:
    """Get configuration overrides from environment variables.

    Environment variables are prefixed with KPLANE_ and named after the
    override field (e.g., KPLANE_CLUSTER_NAME).

    Returns:
        ConfigOverrides populated from environment variables
    """

    def get_str(key: str) -> str:
        return os.getenv(f"{ENV_PREFIX}{key.upper()}", "")

    return ConfigOverrides(
        provider=get_str("provider"),
        cluster_name=get_str("cluster_name"),
        namespace=get_str("namespace"),
        kubeconfig_path=get_str("kubeconfig"),
        stack_version=get_str("stack_version"),
        crd_source=get_str("crd_source"),
        apiserver_image=get_str("apiserver_image"),
        operator_image=get_str("operator_image"),
        etcd_image=get_str("etcd_image"),
    )
