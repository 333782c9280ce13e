"""k3s provider implementation (driven through k3d)."""

from kplane.core.logging import get_logger
from kplane.providers.base import CreateClusterOptions
from kplane.system.command import Command, require_command
from kplane.system.worker import Worker

logger = get_logger(__name__)

K3D_INSTALL_HINT = "https://k3d.io/"


class K3s:
    """Provider backed by k3s clusters running in Docker via k3d.

    k3d has no cluster config file in this flow; everything is expressed as
    flags. The bundled traefik and servicelb are disabled so the stack's own
    ingress controller owns port 443.
    """

    def __init__(self, system: Worker) -> None:
        """Initialize the k3s provider.

        Args:
            system: System worker for executing commands
        """
        self.system = system

    def name(self) -> str:
        """Get the provider name."""
        return "k3s"

    def context_prefix(self) -> str:
        """Get the kubeconfig context prefix."""
        return "k3d-"

    def context_name(self, cluster_name: str) -> str:
        """Derive the kubeconfig context name for a cluster."""
        return self.context_prefix() + cluster_name

    def ensure_installed(self) -> None:
        """Check that the k3d binary is available."""
        require_command("k3d", K3D_INSTALL_HINT)

    async def cluster_exists(self, name: str) -> bool:
        """Check whether a cluster with exactly this name exists."""
        return name in await self.list_clusters()

    async def list_clusters(self) -> list[str]:
        """List the names of all k3d clusters.

        ``k3d cluster list`` prints a table; the first column of every
        non-header row is the cluster name.
        """
        cmd = Command(executable="k3d", args=["cluster", "list"], action="list k3d clusters")
        output = await self.system.run(cmd)

        clusters = []
        for line in output.decode().splitlines():
            line = line.strip()
            if not line or line.startswith("NAME"):
                continue
            clusters.append(line.split()[0])
        return clusters

    async def create_cluster(self, opts: CreateClusterOptions) -> None:
        """Create a k3d cluster.

        ``opts.config_path`` is ignored; k3d is configured through flags.

        Args:
            opts: Cluster creation options

        Raises:
            CommandError: If creation fails
        """
        args = ["cluster", "create", opts.name]
        if opts.node_image:
            args.extend(["--image", opts.node_image])
        args.extend(["--k3s-arg", "--disable=traefik@server:0"])
        args.extend(["--k3s-arg", "--disable=servicelb@server:0"])
        if opts.ingress_port > 0:
            args.extend(["--port", f"{opts.ingress_port}:443@loadbalancer"])

        cmd = Command(executable="k3d", args=args, action="create k3d cluster")
        await self.system.run(cmd)

        logger.info("Created cluster", provider=self.name(), cluster=opts.name)

    async def delete_cluster(self, name: str) -> None:
        """Delete a k3d cluster."""
        cmd = Command(
            executable="k3d",
            args=["cluster", "delete", name],
            action="delete k3d cluster",
        )
        await self.system.run(cmd)

        logger.info("Deleted cluster", provider=self.name(), cluster=name)

    async def get_kubeconfig(self, name: str) -> bytes:
        """Fetch the kubeconfig k3d generated for a cluster."""
        cmd = Command(
            executable="k3d",
            args=["kubeconfig", "get", name],
            action="get k3d kubeconfig",
        )
        return await self.system.run(cmd)
