"""Factory for creating provider instances."""

from enum import Enum

from kplane.core.errors import UnsupportedProviderError
from kplane.providers.base import Provider
from kplane.providers.k3s import K3s
from kplane.providers.kind import Kind
from kplane.system.worker import Worker


class ProviderKind(str, Enum):
    """Known management-cluster providers."""

    KIND = "kind"
    K3S = "k3s"


DEFAULT_PROVIDER = ProviderKind.KIND

SUPPORTED_PROVIDERS = [kind.value for kind in ProviderKind]

# Accepted spellings, including the empty string for the default provider.
_PROVIDER_ALIASES = {
    "": DEFAULT_PROVIDER,
    "kind": ProviderKind.KIND,
    "k3s": ProviderKind.K3S,
    "k3d": ProviderKind.K3S,
}


def resolve_provider_kind(provider_name: str) -> ProviderKind:
    """Resolve a configured provider name to a known provider.

    Args:
        provider_name: Provider name; empty selects the default provider

    Returns:
        The matching provider kind

    Raises:
        UnsupportedProviderError: If the name is unknown
    """
    try:
        return _PROVIDER_ALIASES[provider_name]
    except KeyError:
        raise UnsupportedProviderError(provider_name) from None


def create_provider(provider_name: str, system: Worker) -> Provider:
    """Create a provider instance by name.

    Args:
        provider_name: Name of the provider to create
        system: System worker

    Returns:
        Provider instance

    Raises:
        UnsupportedProviderError: If the name is unknown
    """
    kind = resolve_provider_kind(provider_name)

    if kind is ProviderKind.K3S:
        return K3s(system)
    return Kind(system)
