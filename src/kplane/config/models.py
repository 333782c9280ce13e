"""Configuration models for kplane using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from kplane.core.errors import ValidationError

DEFAULT_PROFILE = "default"
DEFAULT_CRD_SOURCE = "https://github.com/kplane-dev/controlplane-operator//config/crd?ref=main"
DEFAULT_INGRESS_PORT = 8443


def _default_kubeconfig_path() -> str:
    return str(Path.home() / ".kube" / "config")


class ConfigOverrides(BaseModel):
    """CLI flag and environment variable overrides for configuration."""

    provider: str = ""
    cluster_name: str = ""
    namespace: str = ""
    kubeconfig_path: str = ""
    stack_version: str = ""
    crd_source: str = ""
    apiserver_image: str = ""
    operator_image: str = ""
    etcd_image: str = ""


class ImagesConfig(BaseModel):
    """Container images deployed into the management plane."""

    apiserver: str = "docker.io/kplanedev/apiserver:v0.0.3"
    operator: str = "docker.io/kplanedev/controlplane-operator:v0.0.3"
    etcd: str = "quay.io/coreos/etcd:v3.5.13"


class KindConfig(BaseModel):
    """Configuration for the kind provider."""

    model_config = ConfigDict(populate_by_name=True)

    node_image: str = Field("kindest/node:v1.29.2", alias="nodeImage")
    config_path: str = Field("", alias="configPath")
    ingress_port: int = Field(DEFAULT_INGRESS_PORT, alias="ingressPort")


class K3sConfig(BaseModel):
    """Configuration for the k3s (k3d) provider."""

    model_config = ConfigDict(populate_by_name=True)

    image: str = "rancher/k3s:v1.29.2-k3s1"
    ingress_port: int = Field(DEFAULT_INGRESS_PORT, alias="ingressPort")


class UIConfig(BaseModel):
    """Terminal output preferences and first-run hint counters."""

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = True
    color: bool = True
    up_hint_count: int = Field(0, alias="upHintCount")
    create_hint_count: int = Field(0, alias="createHintCount")


class Profile(BaseModel):
    """A named set of management-plane settings."""

    model_config = ConfigDict(populate_by_name=True)

    provider: str = "kind"
    cluster_name: str = Field("kplane-management", alias="clusterName")
    namespace: str = "kplane-system"
    kubeconfig_path: str = Field(default_factory=_default_kubeconfig_path, alias="kubeconfigPath")
    stack_version: str = Field("latest", alias="stackVersion")
    crd_source: str = Field(DEFAULT_CRD_SOURCE, alias="crdSource")
    install_crds: bool = Field(True, alias="installCRDs")
    wait_timeout: int = Field(300, alias="waitTimeout", ge=1)
    images: ImagesConfig = Field(default_factory=ImagesConfig)
    kind: KindConfig = Field(default_factory=KindConfig)
    k3s: K3sConfig = Field(default_factory=K3sConfig)
    ui: UIConfig = Field(default_factory=UIConfig)

    def ingress_port(self) -> int:
        """Requested ingress port for the configured provider."""
        if self.provider in ("k3s", "k3d"):
            return self.k3s.ingress_port
        return self.kind.ingress_port

    def node_image(self) -> str:
        """Node image for the configured provider."""
        if self.provider in ("k3s", "k3d"):
            return self.k3s.image
        return self.kind.node_image


def _default_profiles() -> dict[str, Profile]:
    return {DEFAULT_PROFILE: Profile()}


class KplaneConfig(BaseModel):
    """Complete kplane settings file."""

    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field("config.kplane.io/v1alpha1", alias="apiVersion")
    kind: str = "KplaneConfig"
    current_profile: str = Field(DEFAULT_PROFILE, alias="currentProfile")
    profiles: dict[str, Profile] = Field(default_factory=_default_profiles)

    def active_profile(self) -> Profile:
        """Return the profile selected by ``current_profile``.

        Raises:
            ValidationError: If the profile does not exist
        """
        try:
            return self.profiles[self.current_profile]
        except KeyError:
            raise ValidationError(f"profile {self.current_profile!r} not found in config") from None
