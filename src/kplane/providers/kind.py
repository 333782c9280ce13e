"""kind (Kubernetes in Docker) provider implementation."""

import os
import tempfile

import yaml

from kplane.core.logging import get_logger
from kplane.providers.base import CreateClusterOptions
from kplane.system.command import Command, require_command
from kplane.system.worker import Worker

logger = get_logger(__name__)

KIND_INSTALL_HINT = "https://kind.sigs.k8s.io/"


def render_cluster_config(ingress_port: int) -> str:
    """Render a kind cluster config forwarding host ingress traffic.

    Args:
        ingress_port: Host port mapped to the node's port 443

    Returns:
        kind cluster configuration as YAML
    """
    config = {
        "kind": "Cluster",
        "apiVersion": "kind.x-k8s.io/v1alpha4",
        "nodes": [
            {
                "role": "control-plane",
                "extraPortMappings": [
                    {
                        "containerPort": 443,
                        "hostPort": ingress_port,
                        "listenAddress": "127.0.0.1",
                    }
                ],
            }
        ],
    }
    return yaml.safe_dump(config, sort_keys=False, default_flow_style=False)


class Kind:
    """Provider backed by the kind multi-node Docker emulator.

    kind accepts a declarative cluster config file. When the caller does not
    supply one but asks for an ingress port, a temporary config is written for
    the duration of the create call.
    """

    def __init__(self, system: Worker) -> None:
        """Initialize the kind provider.

        Args:
            system: System worker for executing commands
        """
        self.system = system

    def name(self) -> str:
        """Get the provider name."""
        return "kind"

    def context_prefix(self) -> str:
        """Get the kubeconfig context prefix."""
        return "kind-"

    def context_name(self, cluster_name: str) -> str:
        """Derive the kubeconfig context name for a cluster."""
        return self.context_prefix() + cluster_name

    def ensure_installed(self) -> None:
        """Check that the kind binary is available."""
        require_command("kind", KIND_INSTALL_HINT)

    async def cluster_exists(self, name: str) -> bool:
        """Check whether a cluster with exactly this name exists."""
        return name in await self.list_clusters()

    async def list_clusters(self) -> list[str]:
        """List the names of all kind clusters."""
        cmd = Command(executable="kind", args=["get", "clusters"], action="list kind clusters")
        output = await self.system.run(cmd)

        return [line.strip() for line in output.decode().splitlines() if line.strip()]

    async def create_cluster(self, opts: CreateClusterOptions) -> None:
        """Create a kind cluster.

        Args:
            opts: Cluster creation options

        Raises:
            CommandError: If creation fails
        """
        args = ["create", "cluster", "--name", opts.name]
        if opts.node_image:
            args.extend(["--image", opts.node_image])

        if opts.config_path or opts.ingress_port <= 0:
            if opts.config_path:
                args.extend(["--config", opts.config_path])
            await self._create(args, opts.name)
            return

        fd, config_path = tempfile.mkstemp(prefix="kplane-kind-config-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(render_cluster_config(opts.ingress_port))
            args.extend(["--config", config_path])
            await self._create(args, opts.name)
        finally:
            os.unlink(config_path)

    async def delete_cluster(self, name: str) -> None:
        """Delete a kind cluster."""
        cmd = Command(
            executable="kind",
            args=["delete", "cluster", "--name", name],
            action="delete kind cluster",
        )
        await self.system.run(cmd)

        logger.info("Deleted cluster", provider=self.name(), cluster=name)

    async def get_kubeconfig(self, name: str) -> bytes:
        """Fetch the kubeconfig kind generated for a cluster."""
        cmd = Command(
            executable="kind",
            args=["get", "kubeconfig", "--name", name],
            action="get kind kubeconfig",
        )
        return await self.system.run(cmd)

    async def _create(self, args: list[str], name: str) -> None:
        """Run ``kind create cluster`` with the given arguments."""
        cmd = Command(executable="kind", args=args, action="create kind cluster")
        await self.system.run(cmd)

        logger.info("Created cluster", provider=self.name(), cluster=name)
