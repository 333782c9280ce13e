"""Exception hierarchy for kplane.

Every failure raised by the orchestrator derives from ``KplaneError`` so the
CLI can report it uniformly. Subclasses group failures by what the caller can
do about them: install a missing tool, fix an input, retry after a timeout, or
repair corrupt data.
"""


class KplaneError(Exception):
    """Base class for all kplane errors."""


class ValidationError(KplaneError, ValueError):
    """Raised when an input is rejected before any side effect happens."""


class UnsupportedProviderError(ValidationError):
    """Raised when a provider name does not map to a known provider.

    Attributes:
        provider: The offending provider name
    """

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"unsupported provider {provider!r}")


class UnsupportedStackVersionError(ValidationError):
    """Raised when a stack version other than ``latest`` is requested.

    Attributes:
        version: The offending stack version
    """

    def __init__(self, version: str) -> None:
        self.version = version
        super().__init__(f"unsupported stack version {version!r} (use latest)")


class ReadinessTimeoutError(KplaneError, TimeoutError):
    """Raised when a resource does not become ready before its deadline."""


class NotFoundError(KplaneError, LookupError):
    """Raised when a named cluster or control plane does not exist."""


class KubeconfigError(KplaneError):
    """Raised when kubeconfig data cannot be parsed, serialized or written."""


class ContextNotFoundError(KubeconfigError):
    """Raised when a requested context is absent from a kubeconfig.

    Attributes:
        context: Name of the missing context
    """

    def __init__(self, context: str) -> None:
        self.context = context
        super().__init__(f"context {context!r} not found in kubeconfig")


class SecretDataError(KplaneError):
    """Raised when a secret key is missing or its value cannot be decoded."""


class CertificateError(KplaneError):
    """Raised when key or certificate generation fails."""


class OverlayPatchError(KplaneError):
    """Raised when the embedded operator overlay cannot be patched."""
