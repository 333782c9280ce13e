"""Orchestration of the management-plane lifecycle."""

import socket
from dataclasses import dataclass
from pathlib import Path
from shutil import which

from kplane.config.models import DEFAULT_INGRESS_PORT, Profile
from kplane.core.errors import NotFoundError, ValidationError
from kplane.core.logging import LogSink, NullSink, PrefixedSink, get_logger
from kplane.core.poller import READY_JSONPATH, READY_VALUE, wait_for_ready
from kplane.kube import kubeconfig
from kplane.kube.kubectl import Kubectl
from kplane.providers.base import CreateClusterOptions, Provider
from kplane.providers.factory import ProviderKind, create_provider, resolve_provider_kind
from kplane.stack import manifests
from kplane.stack.installer import Images, InstallOptions, install, resolve_stack_version
from kplane.system.command import CommandError
from kplane.system.runner import System
from kplane.system.worker import Worker

logger = get_logger(__name__)

CONTROL_PLANE_RESOURCE = "controlplane"
CONTROL_PLANE_CONTEXT_PREFIX = "kplane-"
KUBECONFIG_SECRET_KEY = "kubeconfig"
INGRESS_READY_LABEL = "ingress-ready"


@dataclass(frozen=True)
class UpResult:
    """Outcome of bringing up the management plane.

    Attributes:
        context: Kubeconfig context of the management cluster
        ingress_port: Host port the ingress listens on
        created: False when an existing cluster was reused
    """

    context: str
    ingress_port: int
    created: bool


@dataclass(frozen=True)
class ClusterEntry:
    """A kubeconfig context kplane knows about."""

    context: str
    current: bool


def port_available(port: int) -> bool:
    """Check whether a TCP port can be bound on the loopback interface."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


def find_free_port() -> int:
    """Ask the OS for a free loopback TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def resolve_ingress_port(requested: int) -> int:
    """Choose the host port for the ingress of a new cluster.

    A requested port must be free. Without a request the default port is used
    when free, otherwise any free port.

    Raises:
        ValidationError: If the requested port is in use
    """
    if requested > 0:
        if not port_available(requested):
            raise ValidationError(f"ingress port {requested} is already in use")
        return requested
    if port_available(DEFAULT_INGRESS_PORT):
        return DEFAULT_INGRESS_PORT
    return find_free_port()


def control_plane_context(name: str) -> str:
    """Kubeconfig context name used for a control plane's credentials."""
    return f"{CONTROL_PLANE_CONTEXT_PREFIX}{name}"


def normalize_context_name(name: str, provider_prefix: str) -> str:
    """Qualify a bare name as a control plane context.

    Names already carrying the control plane or provider prefix are kept.
    """
    if name.startswith(CONTROL_PLANE_CONTEXT_PREFIX) or name.startswith(provider_prefix):
        return name
    return control_plane_context(name)


class ManagementPlane:
    """Brings the management plane up and down and manages control planes.

    The orchestrator is stateless between calls. Everything it needs comes
    from the profile; progress goes to the injected sink.
    """

    def __init__(
        self,
        profile: Profile,
        system: Worker | None = None,
        sink: LogSink | None = None,
        trace: bool = False,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            profile: Resolved settings profile
            system: Worker for executing commands (defaults to the local system)
            sink: Receives user-facing progress
            trace: Enable trace output for all commands
        """
        self.profile = profile
        self.system = system or System(trace=trace)
        self.sink = sink or NullSink()
        self.kubectl = Kubectl(self.system)

    def provider(self) -> Provider:
        """Bind the configured provider.

        Raises:
            UnsupportedProviderError: If the provider name is unknown
        """
        return create_provider(self.profile.provider, self.system)

    def management_context(self) -> str:
        """Kubeconfig context of the management cluster."""
        return self.provider().context_name(self.profile.cluster_name)

    async def up(self, set_current: bool = True) -> UpResult:
        """Create or reuse the management cluster and install the stack.

        Args:
            set_current: Make the management context current in the kubeconfig

        Returns:
            The management context and ingress port

        Raises:
            ValidationError: If the provider, stack version or CRD settings are invalid
            NotInstalledError: If the provider tool or kubectl is missing
            CommandError: If any command fails
        """
        profile = self.profile

        # Reject bad settings before touching anything.
        provider = self.provider()
        version = resolve_stack_version(profile.stack_version)
        if profile.install_crds and not profile.crd_source:
            raise ValidationError("crd source is required when CRD installation is enabled")

        provider.ensure_installed()
        self.kubectl.ensure_installed()

        name = profile.cluster_name
        context = provider.context_name(name)
        label = provider.name()

        created = not await provider.cluster_exists(name)
        if created:
            ingress_port = resolve_ingress_port(profile.ingress_port())
            self.sink.line(f"{label}: creating management cluster {name}")
            await provider.create_cluster(
                CreateClusterOptions(
                    name=name,
                    node_image=profile.node_image(),
                    config_path=profile.kind.config_path if label == ProviderKind.KIND.value else "",
                    ingress_port=ingress_port,
                )
            )
        else:
            self.sink.line(f"{label}: reusing existing cluster {name}")
            ingress_port = await self.read_ingress_port(context)

        self.sink.line(f"kubeconfig: updating (set current={str(set_current).lower()})")
        kubeconfig.merge_and_write(
            profile.kubeconfig_path, await provider.get_kubeconfig(name), set_current
        )

        await self.kubectl.label_nodes(context, {INGRESS_READY_LABEL: "true"})

        self.sink.line(f"stack: installing {version}")
        await install(
            self.kubectl,
            InstallOptions(
                context=context,
                namespace=profile.namespace,
                images=Images(
                    apiserver=profile.images.apiserver,
                    operator=profile.images.operator,
                    etcd=profile.images.etcd,
                ),
                crd_source=profile.crd_source,
                install_crds=profile.install_crds,
                sink=PrefixedSink(self.sink, "stack"),
            ),
        )
        await self.kubectl.apply(
            context, manifests.render_ingress_config(profile.namespace, ingress_port)
        )

        self.sink.line("ready: management plane is up")
        logger.info("Management plane is up", context=context, ingress_port=ingress_port)

        return UpResult(context=context, ingress_port=ingress_port, created=created)

    async def down(self) -> None:
        """Delete the management cluster.

        Raises:
            UnsupportedProviderError: If the provider name is unknown
            NotInstalledError: If the provider tool is missing
            CommandError: If deletion fails
        """
        provider = self.provider()
        provider.ensure_installed()

        self.sink.line(f"{provider.name()}: deleting cluster {self.profile.cluster_name}")
        await provider.delete_cluster(self.profile.cluster_name)

    async def create_control_plane(
        self,
        name: str,
        class_name: str = manifests.DEFAULT_CLASS_NAME,
        endpoint: str = "",
        get_credentials: bool = True,
        set_current: bool = True,
        timeout: float | None = None,
        management_context: str = "",
    ) -> str:
        """Create a control plane and optionally merge its credentials.

        Args:
            name: Control plane name
            class_name: ControlPlaneClass to instantiate
            endpoint: External endpoint; derived from the ingress port when empty
            get_credentials: Wait for readiness and merge the kubeconfig
            set_current: Make the new context current
            timeout: Seconds to wait for readiness (defaults to the profile's)
            management_context: Context of the management cluster override

        Returns:
            Kubeconfig context of the control plane

        Raises:
            ValidationError: If name is empty
            ReadinessTimeoutError: If the control plane does not become ready
        """
        if not name:
            raise ValidationError("control plane name is required")

        context = management_context or self.management_context()
        self.kubectl.ensure_installed()

        namespace = self.profile.namespace
        internal = manifests.internal_endpoint(namespace, name)
        external = endpoint or manifests.external_endpoint(
            await self.read_ingress_port(context), name
        )

        await self.kubectl.apply(
            context, manifests.render_control_plane(name, class_name, internal, external)
        )
        logger.info("Created control plane", control_plane=name, context=context)

        if not get_credentials:
            return control_plane_context(name)

        self.sink.line(f"waiting for {CONTROL_PLANE_RESOURCE} to reconcile...")
        await self._wait_ready(context, name, timeout)
        return await self._merge_control_plane_credentials(context, name, external, set_current)

    async def get_credentials(self, name: str, set_current: bool = True) -> str:
        """Merge credentials for a management cluster or a control plane.

        A provider cluster with this name wins; otherwise ``name`` is treated
        as a control plane, which is waited on until ready.

        Args:
            name: Cluster or control plane name
            set_current: Make the merged context current

        Returns:
            Kubeconfig context that was merged
        """
        if not name:
            raise ValidationError("cluster name is required")

        provider = self.provider()
        provider.ensure_installed()
        self.kubectl.ensure_installed()

        if await provider.cluster_exists(name):
            kubeconfig.merge_and_write(
                self.profile.kubeconfig_path, await provider.get_kubeconfig(name), set_current
            )
            return provider.context_name(name)

        context = provider.context_name(self.profile.cluster_name)
        try:
            ready = await self.kubectl.get_jsonpath(
                context, CONTROL_PLANE_RESOURCE, name, jsonpath=READY_JSONPATH
            )
        except CommandError:
            ready = ""
        if ready != READY_VALUE:
            self.sink.line(f"waiting for {CONTROL_PLANE_RESOURCE} to reconcile...")
            await self._wait_ready(context, name, None)

        external = manifests.external_endpoint(await self.read_ingress_port(context), name)
        return await self._merge_control_plane_credentials(context, name, external, set_current)

    async def list_clusters(self) -> list[ClusterEntry]:
        """List management clusters and control planes as kubeconfig contexts.

        Returns:
            Provider clusters then control planes, each sorted by name
        """
        current = ""
        if Path(self.profile.kubeconfig_path).exists():
            _, current = kubeconfig.list_contexts(self.profile.kubeconfig_path)

        provider = self.provider()
        provider.ensure_installed()

        entries: list[ClusterEntry] = []
        for cluster in sorted(await provider.list_clusters()):
            context = provider.context_name(cluster)
            entries.append(ClusterEntry(context=context, current=context == current))

        output = await self.kubectl.get_jsonpath(
            provider.context_name(self.profile.cluster_name),
            "controlplanes",
            jsonpath="{.items[*].metadata.name}",
        )
        for name in sorted(output.split()):
            context = control_plane_context(name)
            entries.append(ClusterEntry(context=context, current=context == current))

        return entries

    async def use_context(self, name: str) -> str:
        """Make a management cluster or control plane the current context.

        A bare name is taken as a control plane. The cluster or control plane
        must exist before the kubeconfig is touched.

        Args:
            name: Context, or control plane name

        Returns:
            Context that is now current

        Raises:
            NotFoundError: If the cluster or control plane does not exist
            ContextNotFoundError: If the kubeconfig has no such context
        """
        if not name:
            raise ValidationError("context name is required")

        provider = self.provider()
        context = normalize_context_name(name, provider.context_prefix())

        if context.startswith(provider.context_prefix()):
            provider.ensure_installed()
            cluster = context.removeprefix(provider.context_prefix())
            if not await provider.cluster_exists(cluster):
                raise NotFoundError(f"{provider.name()} cluster {cluster!r} not found")
        else:
            self.kubectl.ensure_installed()
            control_plane = context.removeprefix(CONTROL_PLANE_CONTEXT_PREFIX)
            if not control_plane:
                raise ValidationError("control plane name is required")
            try:
                await self.kubectl.get_jsonpath(
                    self.management_context(),
                    CONTROL_PLANE_RESOURCE,
                    control_plane,
                    jsonpath="{.metadata.name}",
                )
            except CommandError as e:
                raise NotFoundError(
                    f"{CONTROL_PLANE_RESOURCE} {control_plane!r} not found in management cluster"
                ) from e

        kubeconfig.set_current_context(self.profile.kubeconfig_path, context)
        logger.info("Switched context", context=context)
        return context

    def doctor(self) -> list[str]:
        """Check that the local prerequisites are on PATH.

        Returns:
            Names of missing binaries (empty when everything is present)
        """
        cluster_tool = "k3d" if resolve_provider_kind(self.profile.provider) is ProviderKind.K3S else "kind"
        missing = [binary for binary in (cluster_tool, "kubectl", "docker") if which(binary) is None]
        if missing:
            logger.warning("Missing dependencies", missing=",".join(missing))
        return missing

    async def read_ingress_port(self, context: str) -> int:
        """Read the ingress port recorded in the management cluster.

        A missing ConfigMap or value means the default port.
        """
        try:
            value = await self.kubectl.get_jsonpath(
                context,
                "configmap",
                manifests.INGRESS_CONFIG_NAME,
                self.profile.namespace,
                "{.data.ingressPort}",
            )
        except CommandError as e:
            if "NotFound" not in e.output:
                raise
            value = ""

        if not value:
            return DEFAULT_INGRESS_PORT
        try:
            return int(value)
        except ValueError:
            logger.warning("Ignoring invalid recorded ingress port", value=value)
            return DEFAULT_INGRESS_PORT

    async def _wait_ready(self, context: str, name: str, timeout: float | None) -> None:
        await wait_for_ready(
            self.kubectl,
            context,
            CONTROL_PLANE_RESOURCE,
            name,
            timeout=timeout if timeout is not None else self.profile.wait_timeout,
            sink=self.sink,
        )

    async def _kubeconfig_secret_ref(self, context: str, name: str) -> tuple[str, str]:
        """Locate the secret holding a control plane's kubeconfig."""
        secret_name = await self.kubectl.get_jsonpath(
            context, CONTROL_PLANE_RESOURCE, name, jsonpath="{.status.kubeconfigSecretRef.name}"
        )
        if not secret_name:
            return manifests.KUBECONFIG_SECRET_NAME, self.profile.namespace

        secret_namespace = await self.kubectl.get_jsonpath(
            context,
            CONTROL_PLANE_RESOURCE,
            name,
            jsonpath="{.status.kubeconfigSecretRef.namespace}",
        )
        return secret_name, secret_namespace or self.profile.namespace

    async def _merge_control_plane_credentials(
        self, context: str, name: str, external: str, set_current: bool
    ) -> str:
        secret_name, secret_namespace = await self._kubeconfig_secret_ref(context, name)
        data = await self.kubectl.get_secret_data(
            context, secret_name, secret_namespace, KUBECONFIG_SECRET_KEY
        )

        target = control_plane_context(name)
        data = kubeconfig.rename_context(kubeconfig.rewrite_server(data, external), target)
        kubeconfig.merge_and_write(self.profile.kubeconfig_path, data, set_current)

        self.sink.line(f"updated kubeconfig (current context={str(set_current).lower()})")
        return target
