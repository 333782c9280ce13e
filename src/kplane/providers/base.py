"""Provider protocol for ephemeral management-cluster backends."""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class CreateClusterOptions:
    """Options for creating a management cluster.

    Attributes:
        name: Cluster name
        node_image: Optional node image override
        config_path: Optional path to a provider-native cluster config file
        ingress_port: Host port forwarded to the cluster's ingress (0 = none)
    """

    name: str
    node_image: str = ""
    config_path: str = ""
    ingress_port: int = 0


@runtime_checkable
class Provider(Protocol):
    """Protocol for providers that create and destroy local clusters.

    Providers own no state beyond their identity; every operation delegates
    to the provider's command-line tool, and all cluster state lives there.
    """

    def name(self) -> str:
        """Get the provider name.

        Returns:
            Provider name (e.g., 'kind', 'k3s')
        """
        ...

    def context_prefix(self) -> str:
        """Get the prefix the provider's tool puts on kubeconfig context names.

        Returns:
            Context prefix (e.g., 'kind-')
        """
        ...

    def context_name(self, cluster_name: str) -> str:
        """Derive the kubeconfig context name for a cluster.

        Args:
            cluster_name: Name of the cluster

        Returns:
            Context name
        """
        ...

    def ensure_installed(self) -> None:
        """Check that the provider's tool is available.

        Raises:
            NotInstalledError: If the tool is missing
        """
        ...

    async def cluster_exists(self, name: str) -> bool:
        """Check whether a cluster with exactly this name exists.

        Args:
            name: Cluster name

        Returns:
            True if the cluster exists

        Raises:
            CommandError: If listing clusters fails
        """
        ...

    async def list_clusters(self) -> list[str]:
        """List the names of all clusters.

        Returns:
            Cluster names

        Raises:
            CommandError: If listing clusters fails
        """
        ...

    async def create_cluster(self, opts: CreateClusterOptions) -> None:
        """Create a cluster.

        Args:
            opts: Cluster creation options

        Raises:
            CommandError: If creation fails
        """
        ...

    async def delete_cluster(self, name: str) -> None:
        """Delete a cluster.

        Args:
            name: Cluster name

        Raises:
            CommandError: If deletion fails
        """
        ...

    async def get_kubeconfig(self, name: str) -> bytes:
        """Fetch the raw kubeconfig the provider generated for a cluster.

        Args:
            name: Cluster name

        Returns:
            Kubeconfig bytes

        Raises:
            CommandError: If the kubeconfig cannot be retrieved
        """
        ...
