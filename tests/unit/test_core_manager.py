"""Unit tests for the management-plane orchestrator."""

from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest
import yaml

from kplane.config.models import Profile
from kplane.core.errors import (
    ContextNotFoundError,
    NotFoundError,
    UnsupportedProviderError,
    UnsupportedStackVersionError,
    ValidationError,
)
from kplane.core.manager import (
    ClusterEntry,
    ManagementPlane,
    UpResult,
    normalize_context_name,
    resolve_ingress_port,
)
from kplane.core.poller import READY_JSONPATH
from kplane.kube import kubeconfig
from kplane.kube.kubeconfig import list_contexts, load
from kplane.system.command import CommandError


class RecordingSink:
    """Sink that records everything it is given."""

    def __init__(self) -> None:
        self.stages: list[str] = []
        self.lines: list[str] = []

    def stage(self, name: str) -> None:
        self.stages.append(name)

    def line(self, text: str) -> None:
        self.lines.append(text)


def _kubeconfig(name: str, server: str = "https://127.0.0.1:6443") -> bytes:
    return yaml.safe_dump(
        {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [{"name": name, "cluster": {"server": server}}],
            "users": [{"name": name, "user": {"token": "abc"}}],
            "contexts": [{"name": name, "context": {"cluster": name, "user": name}}],
            "current-context": name,
        }
    ).encode()


def _provider(exists: bool = False, clusters: list[str] | None = None) -> Mock:
    provider = Mock()
    provider.name.return_value = "kind"
    provider.context_name.side_effect = lambda name: f"kind-{name}"
    provider.context_prefix.return_value = "kind-"
    provider.cluster_exists = AsyncMock(return_value=exists)
    provider.list_clusters = AsyncMock(return_value=clusters or [])
    provider.create_cluster = AsyncMock()
    provider.delete_cluster = AsyncMock()
    provider.get_kubeconfig = AsyncMock(
        side_effect=lambda name: _kubeconfig(f"kind-{name}")
    )
    return provider


def _kubectl(answers: dict[str, str] | None = None) -> Mock:
    """Build a kubectl double answering jsonpath queries from ``answers``."""
    answers = answers or {}

    async def get_jsonpath(
        context: str, kind: str, name: str = "", namespace: str = "", jsonpath: str = ""
    ) -> str:
        value = answers.get(jsonpath, "")
        if isinstance(value, Exception):
            raise value
        return value

    kubectl = Mock()
    kubectl.apply = AsyncMock()
    kubectl.label_nodes = AsyncMock()
    kubectl.get_jsonpath = AsyncMock(side_effect=get_jsonpath)
    kubectl.get_secret_data = AsyncMock(return_value=_kubeconfig("kplane-apiserver"))
    return kubectl


def _plane(tmp_path: Path, kubectl: Mock, sink: RecordingSink | None = None, **settings: object) -> ManagementPlane:
    profile = Profile(kubeconfigPath=str(tmp_path / "kube" / "config"), **settings)
    plane = ManagementPlane(profile, system=Mock(), sink=sink)
    plane.kubectl = kubectl
    return plane


class TestResolveIngressPort:
    """Tests for resolve_ingress_port."""

    def test_requested_port_free(self) -> None:
        """Test that a free requested port is used."""
        with patch("kplane.core.manager.port_available", return_value=True):
            assert resolve_ingress_port(9443) == 9443

    def test_requested_port_busy(self) -> None:
        """Test that a busy requested port is an error."""
        with patch("kplane.core.manager.port_available", return_value=False):
            with pytest.raises(ValidationError, match="9443 is already in use"):
                resolve_ingress_port(9443)

    def test_default_port(self) -> None:
        """Test that the default port is used when free."""
        with patch("kplane.core.manager.port_available", return_value=True):
            assert resolve_ingress_port(0) == 8443

    def test_fallback_to_free_port(self) -> None:
        """Test that any free port is used when the default is taken."""
        with (
            patch("kplane.core.manager.port_available", return_value=False),
            patch("kplane.core.manager.find_free_port", return_value=40123),
        ):
            assert resolve_ingress_port(0) == 40123


class TestUpValidation:
    """Tests for settings rejected before any side effect."""

    @pytest.mark.asyncio
    async def test_unsupported_stack_version(self, tmp_path: Path) -> None:
        """Test that a pinned stack version fails before any command runs."""
        system = Mock()
        system.run = AsyncMock()
        plane = ManagementPlane(
            Profile(stackVersion="v2", kubeconfigPath=str(tmp_path / "config")), system=system
        )

        with pytest.raises(UnsupportedStackVersionError):
            await plane.up()

        system.run.assert_not_awaited()
        assert not (tmp_path / "config").exists()

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, tmp_path: Path) -> None:
        """Test that an unknown provider fails before any command runs."""
        system = Mock()
        system.run = AsyncMock()
        plane = ManagementPlane(Profile(provider="minikube"), system=system)

        with pytest.raises(UnsupportedProviderError, match="minikube"):
            await plane.up()

        system.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_crds_without_source(self, tmp_path: Path) -> None:
        """Test that CRD installation without a source is rejected up front."""
        system = Mock()
        system.run = AsyncMock()
        plane = ManagementPlane(Profile(crdSource="", installCRDs=True), system=system)

        with pytest.raises(ValidationError, match="crd source"):
            await plane.up()

        system.run.assert_not_awaited()


@pytest.fixture
def stack():
    with patch("kplane.core.manager.install", new_callable=AsyncMock) as mock:
        yield mock


class TestUp:
    """Tests for ManagementPlane.up."""

    @pytest.mark.asyncio
    async def test_creates_cluster(self, tmp_path: Path, stack: AsyncMock) -> None:
        """Test the full bring-up of a new management cluster."""
        provider = _provider(exists=False)
        kubectl = _kubectl()
        sink = RecordingSink()
        plane = _plane(tmp_path, kubectl, sink)

        with (
            patch("kplane.core.manager.create_provider", return_value=provider),
            patch("kplane.core.manager.resolve_ingress_port", return_value=9443),
        ):
            result = await plane.up()

        assert result == UpResult(context="kind-kplane-management", ingress_port=9443, created=True)

        opts = provider.create_cluster.await_args.args[0]
        assert opts.name == "kplane-management"
        assert opts.ingress_port == 9443
        assert opts.node_image == "kindest/node:v1.29.2"

        names, current = list_contexts(tmp_path / "kube" / "config")
        assert names == ["kind-kplane-management"]
        assert current == "kind-kplane-management"

        kubectl.label_nodes.assert_awaited_once_with("kind-kplane-management", {"ingress-ready": "true"})

        install_opts = stack.await_args.args[1]
        assert install_opts.context == "kind-kplane-management"
        assert install_opts.namespace == "kplane-system"
        assert install_opts.install_crds is True

        recorded = kubectl.apply.await_args.args[1]
        assert yaml.safe_load(recorded)["data"] == {"ingressPort": "9443"}

        assert sink.lines == [
            "kind: creating management cluster kplane-management",
            "kubeconfig: updating (set current=true)",
            "stack: installing latest",
            "ready: management plane is up",
        ]

    @pytest.mark.asyncio
    async def test_reuses_cluster(self, tmp_path: Path, stack: AsyncMock) -> None:
        """Test that an existing cluster is reused with its recorded port."""
        provider = _provider(exists=True)
        kubectl = _kubectl({"{.data.ingressPort}": "9555"})
        sink = RecordingSink()
        plane = _plane(tmp_path, kubectl, sink)

        with patch("kplane.core.manager.create_provider", return_value=provider):
            result = await plane.up(set_current=False)

        assert result.created is False
        assert result.ingress_port == 9555
        provider.create_cluster.assert_not_awaited()
        assert sink.lines[0] == "kind: reusing existing cluster kplane-management"
        assert "kubeconfig: updating (set current=false)" in sink.lines
        stack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stack_stages_are_prefixed(self, tmp_path: Path) -> None:
        """Test that installer stages reach the sink labelled as stack stages."""
        provider = _provider(exists=True)
        sink = RecordingSink()
        plane = _plane(tmp_path, _kubectl(), sink)

        async def fake_install(kubectl: Mock, opts: object) -> None:
            opts.sink.stage("deploying etcd")

        with (
            patch("kplane.core.manager.create_provider", return_value=provider),
            patch("kplane.core.manager.install", side_effect=fake_install),
        ):
            await plane.up()

        assert sink.stages == ["stack: deploying etcd"]

    @pytest.mark.asyncio
    async def test_down(self, tmp_path: Path) -> None:
        """Test that down deletes the configured cluster."""
        provider = _provider()
        plane = _plane(tmp_path, _kubectl(), clusterName="mgmt")

        with patch("kplane.core.manager.create_provider", return_value=provider):
            await plane.down()

        provider.delete_cluster.assert_awaited_once_with("mgmt")


class TestReadIngressPort:
    """Tests for ManagementPlane.read_ingress_port."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("answer", "expected"),
        [
            ("9443", 9443),
            ("", 8443),
            ("not-a-port", 8443),
            (CommandError("kubectl get", 1, 'configmaps "kplane-management" not found (NotFound)'), 8443),
        ],
    )
    async def test_values(self, tmp_path: Path, answer: object, expected: int) -> None:
        """Test the recorded port and its fallbacks."""
        plane = _plane(tmp_path, _kubectl({"{.data.ingressPort}": answer}))
        assert await plane.read_ingress_port("kind-mgmt") == expected

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, tmp_path: Path) -> None:
        """Test that unreachable clusters are not mistaken for a missing record."""
        error = CommandError("kubectl get", 1, "connection refused")
        plane = _plane(tmp_path, _kubectl({"{.data.ingressPort}": error}))

        with pytest.raises(CommandError, match="connection refused"):
            await plane.read_ingress_port("kind-mgmt")


class TestControlPlanes:
    """Tests for control plane creation and credentials."""

    @pytest.mark.asyncio
    async def test_empty_name(self, tmp_path: Path) -> None:
        """Test that a control plane needs a name."""
        kubectl = _kubectl()
        plane = _plane(tmp_path, kubectl)

        with pytest.raises(ValidationError, match="name is required"):
            await plane.create_control_plane("")

        kubectl.apply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_and_merge_credentials(self, tmp_path: Path) -> None:
        """Test that a ready control plane's kubeconfig is rewritten and merged."""
        kubectl = _kubectl({"{.data.ingressPort}": "9443", READY_JSONPATH: "True"})
        sink = RecordingSink()
        plane = _plane(tmp_path, kubectl, sink)

        context = await plane.create_control_plane("demo", management_context="kind-mgmt")

        assert context == "kplane-demo"

        endpoint, control_plane = yaml.safe_load_all(kubectl.apply.await_args.args[1])
        assert endpoint["spec"]["externalEndpoint"] == "https://127.0.0.1:9443/clusters/demo/control-plane"
        assert control_plane["spec"]["classRef"] == {"name": "starter"}

        kubectl.get_secret_data.assert_awaited_once_with(
            "kind-mgmt", "apiserver-kubeconfig", "kplane-system", "kubeconfig"
        )
        config = load((tmp_path / "kube" / "config").read_bytes())
        assert config.current_context == "kplane-demo"
        assert config.clusters[0].cluster["server"] == (
            "https://127.0.0.1:9443/clusters/demo/control-plane"
        )
        assert sink.lines[-1] == "updated kubeconfig (current context=true)"

    @pytest.mark.asyncio
    async def test_create_without_credentials(self, tmp_path: Path) -> None:
        """Test that credentials can be skipped."""
        kubectl = _kubectl()
        plane = _plane(tmp_path, kubectl)

        context = await plane.create_control_plane(
            "demo", endpoint="https://example.invalid", get_credentials=False, management_context="c"
        )

        assert context == "kplane-demo"
        kubectl.get_secret_data.assert_not_awaited()
        assert not (tmp_path / "kube" / "config").exists()

    @pytest.mark.asyncio
    async def test_get_credentials_for_provider_cluster(self, tmp_path: Path) -> None:
        """Test that an existing provider cluster wins over a control plane."""
        provider = _provider(exists=True)
        kubectl = _kubectl()
        plane = _plane(tmp_path, kubectl)

        with patch("kplane.core.manager.create_provider", return_value=provider):
            context = await plane.get_credentials("other")

        assert context == "kind-other"
        kubectl.get_secret_data.assert_not_awaited()
        _, current = list_contexts(tmp_path / "kube" / "config")
        assert current == "kind-other"

    @pytest.mark.asyncio
    async def test_get_credentials_for_control_plane(self, tmp_path: Path) -> None:
        """Test that the secret reference in the status is honoured."""
        provider = _provider(exists=False)
        kubectl = _kubectl(
            {
                READY_JSONPATH: "True",
                "{.status.kubeconfigSecretRef.name}": "demo-kubeconfig",
                "{.status.kubeconfigSecretRef.namespace}": "tenants",
            }
        )
        plane = _plane(tmp_path, kubectl)

        with patch("kplane.core.manager.create_provider", return_value=provider):
            context = await plane.get_credentials("demo", set_current=False)

        assert context == "kplane-demo"
        kubectl.get_secret_data.assert_awaited_once_with(
            "kind-kplane-management", "demo-kubeconfig", "tenants", "kubeconfig"
        )
        names, current = list_contexts(tmp_path / "kube" / "config")
        assert names == ["kplane-demo"]
        assert current == ""


class TestListAndDoctor:
    """Tests for listing clusters and checking prerequisites."""

    @pytest.mark.asyncio
    async def test_list_clusters(self, tmp_path: Path) -> None:
        """Test that provider clusters come before sorted control planes."""
        provider = _provider(clusters=["b", "a"])
        kubectl = _kubectl({"{.items[*].metadata.name}": "zeta alpha"})
        plane = _plane(tmp_path, kubectl)

        path = tmp_path / "kube" / "config"
        path.parent.mkdir()
        path.write_bytes(_kubeconfig("kplane-alpha"))

        with patch("kplane.core.manager.create_provider", return_value=provider):
            entries = await plane.list_clusters()

        assert entries == [
            ClusterEntry(context="kind-a", current=False),
            ClusterEntry(context="kind-b", current=False),
            ClusterEntry(context="kplane-alpha", current=True),
            ClusterEntry(context="kplane-zeta", current=False),
        ]

    @pytest.mark.asyncio
    async def test_list_without_kubeconfig(self, tmp_path: Path) -> None:
        """Test that a missing kubeconfig means no current context."""
        provider = _provider(clusters=["a"])
        plane = _plane(tmp_path, _kubectl())

        with patch("kplane.core.manager.create_provider", return_value=provider):
            entries = await plane.list_clusters()

        assert entries == [ClusterEntry(context="kind-a", current=False)]

    def test_doctor_reports_missing(self, tmp_path: Path) -> None:
        """Test that missing binaries are reported by name."""
        plane = _plane(tmp_path, _kubectl())

        with patch(
            "kplane.core.manager.which",
            side_effect=lambda binary: None if binary == "docker" else f"/usr/bin/{binary}",
        ):
            assert plane.doctor() == ["docker"]

    def test_doctor_checks_k3d(self, tmp_path: Path) -> None:
        """Test that the k3s provider needs k3d instead of kind."""
        plane = _plane(tmp_path, _kubectl(), provider="k3s")

        with patch("kplane.core.manager.which", return_value=None):
            assert plane.doctor() == ["k3d", "kubectl", "docker"]


class TestUseContext:
    """Tests for switching the current context."""

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("demo", "kplane-demo"),
            ("kplane-demo", "kplane-demo"),
            ("kind-kplane-management", "kind-kplane-management"),
        ],
    )
    def test_normalize(self, name: str, expected: str) -> None:
        """Test that only bare names are qualified as control planes."""
        assert normalize_context_name(name, "kind-") == expected

    @staticmethod
    def _write(tmp_path: Path, *contexts: str) -> Path:
        path = tmp_path / "kube" / "config"
        path.parent.mkdir()
        path.write_bytes(_kubeconfig("elsewhere"))
        for context in contexts:
            kubeconfig.merge_and_write(path, _kubeconfig(context), set_current=False)
        return path

    @pytest.mark.asyncio
    async def test_provider_cluster(self, tmp_path: Path) -> None:
        """Test that an existing provider cluster becomes current."""
        path = self._write(tmp_path, "kind-kplane-management")
        provider = _provider(exists=True)
        kubectl = _kubectl()
        plane = _plane(tmp_path, kubectl)

        with patch("kplane.core.manager.create_provider", return_value=provider):
            context = await plane.use_context("kind-kplane-management")

        assert context == "kind-kplane-management"
        provider.cluster_exists.assert_awaited_once_with("kplane-management")
        kubectl.get_jsonpath.assert_not_awaited()
        assert list_contexts(path)[1] == "kind-kplane-management"

    @pytest.mark.asyncio
    async def test_missing_provider_cluster(self, tmp_path: Path) -> None:
        """Test that an absent provider cluster leaves the kubeconfig alone."""
        path = self._write(tmp_path, "kind-gone")
        plane = _plane(tmp_path, _kubectl())

        with patch("kplane.core.manager.create_provider", return_value=_provider(exists=False)):
            with pytest.raises(NotFoundError, match="kind cluster 'gone' not found"):
                await plane.use_context("kind-gone")

        assert list_contexts(path)[1] == "elsewhere"

    @pytest.mark.asyncio
    async def test_control_plane(self, tmp_path: Path) -> None:
        """Test that a bare name switches to the control plane context."""
        path = self._write(tmp_path, "kplane-demo")
        kubectl = _kubectl({"{.metadata.name}": "demo"})
        plane = _plane(tmp_path, kubectl)

        with patch("kplane.core.manager.create_provider", return_value=_provider()):
            context = await plane.use_context("demo")

        assert context == "kplane-demo"
        kubectl.get_jsonpath.assert_awaited_once_with(
            "kind-kplane-management", "controlplane", "demo", jsonpath="{.metadata.name}"
        )
        assert list_contexts(path)[1] == "kplane-demo"

    @pytest.mark.asyncio
    async def test_missing_control_plane(self, tmp_path: Path) -> None:
        """Test that a control plane unknown to the management cluster fails."""
        path = self._write(tmp_path, "kplane-demo")
        kubectl = _kubectl({"{.metadata.name}": CommandError("kubectl get", 1, "NotFound")})
        plane = _plane(tmp_path, kubectl)

        with patch("kplane.core.manager.create_provider", return_value=_provider()):
            with pytest.raises(NotFoundError, match="controlplane 'demo' not found"):
                await plane.use_context("demo")

        assert list_contexts(path)[1] == "elsewhere"

    @pytest.mark.asyncio
    async def test_context_missing_from_kubeconfig(self, tmp_path: Path) -> None:
        """Test that an existing control plane without credentials fails."""
        self._write(tmp_path)
        plane = _plane(tmp_path, _kubectl({"{.metadata.name}": "demo"}))

        with patch("kplane.core.manager.create_provider", return_value=_provider()):
            with pytest.raises(ContextNotFoundError):
                await plane.use_context("demo")

    @pytest.mark.asyncio
    async def test_prefix_only(self, tmp_path: Path) -> None:
        """Test that the bare control plane prefix is rejected."""
        plane = _plane(tmp_path, _kubectl())

        with patch("kplane.core.manager.create_provider", return_value=_provider()):
            with pytest.raises(ValidationError, match="control plane name is required"):
                await plane.use_context("kplane-")
