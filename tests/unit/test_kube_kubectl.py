"""Unit tests for the kubectl wrapper."""

import base64
from unittest.mock import AsyncMock, Mock

import pytest

from kplane.core.errors import SecretDataError, ValidationError
from kplane.kube.kubectl import Kubectl
from kplane.system.command import Command, CommandError


def _kubectl(output: bytes = b"") -> tuple[Kubectl, Mock]:
    system = Mock()
    system.run = AsyncMock(return_value=output)
    return Kubectl(system), system


def _sent(system: Mock) -> Command:
    return system.run.await_args.args[0]


class TestApply:
    """Tests for manifest apply methods."""

    @pytest.mark.asyncio
    async def test_apply_pipes_manifest(self) -> None:
        """Test that manifests are piped through stdin with the context flag."""
        kubectl, system = _kubectl()

        await kubectl.apply("kind-mgmt", "kind: Namespace\n")

        cmd = _sent(system)
        assert cmd.executable == "kubectl"
        assert cmd.args == ["--context", "kind-mgmt", "apply", "-f", "-"]
        assert cmd.stdin == b"kind: Namespace\n"
        assert cmd.action == "kubectl apply"

    @pytest.mark.asyncio
    async def test_apply_url(self) -> None:
        """Test that URL apply passes the URL to -f."""
        kubectl, system = _kubectl()

        await kubectl.apply_url("kind-mgmt", "https://example.invalid/deploy.yaml")

        assert _sent(system).args == [
            "--context",
            "kind-mgmt",
            "apply",
            "-f",
            "https://example.invalid/deploy.yaml",
        ]

    @pytest.mark.asyncio
    async def test_apply_kustomize(self) -> None:
        """Test that overlay apply uses -k."""
        kubectl, system = _kubectl()

        await kubectl.apply_kustomize("kind-mgmt", "/tmp/overlay")

        assert _sent(system).args == ["--context", "kind-mgmt", "apply", "-k", "/tmp/overlay"]

    @pytest.mark.asyncio
    async def test_apply_without_context(self) -> None:
        """Test that an empty context adds no flag."""
        kubectl, system = _kubectl()

        await kubectl.apply_file("", "manifest.yaml")

        assert _sent(system).args == ["apply", "-f", "manifest.yaml"]


class TestCreateNamespace:
    """Tests for Kubectl.create_namespace."""

    @pytest.mark.asyncio
    async def test_creates(self) -> None:
        """Test the namespace creation arguments."""
        kubectl, system = _kubectl()

        await kubectl.create_namespace("kind-mgmt", "kplane-system")

        assert _sent(system).args == ["--context", "kind-mgmt", "create", "namespace", "kplane-system"]

    @pytest.mark.asyncio
    async def test_already_exists_is_success(self) -> None:
        """Test that an existing namespace is not an error."""
        kubectl, system = _kubectl()
        system.run.side_effect = CommandError(
            "kubectl create namespace kplane-system",
            1,
            'Error from server (AlreadyExists): namespaces "kplane-system" already exists',
        )

        await kubectl.create_namespace("kind-mgmt", "kplane-system")

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self) -> None:
        """Test that other failures are raised."""
        kubectl, system = _kubectl()
        system.run.side_effect = CommandError("kubectl", 1, "connection refused")

        with pytest.raises(CommandError, match="connection refused"):
            await kubectl.create_namespace("kind-mgmt", "kplane-system")


class TestQueries:
    """Tests for labelling, rollout and jsonpath reads."""

    @pytest.mark.asyncio
    async def test_label_nodes_overwrites(self) -> None:
        """Test that labels apply to all nodes with overwrite."""
        kubectl, system = _kubectl()

        await kubectl.label_nodes("kind-mgmt", {"ingress-ready": "true"})

        assert _sent(system).args == [
            "--context",
            "kind-mgmt",
            "label",
            "nodes",
            "--all",
            "ingress-ready=true",
            "--overwrite",
        ]

    @pytest.mark.asyncio
    async def test_rollout_status(self) -> None:
        """Test that rollout status is scoped and bounded by the timeout."""
        kubectl, system = _kubectl()

        await kubectl.rollout_status(
            "kind-mgmt", "ingress-nginx", "deployment", "ingress-nginx-controller", 180
        )

        assert _sent(system).args == [
            "--context",
            "kind-mgmt",
            "-n",
            "ingress-nginx",
            "rollout",
            "status",
            "deployment/ingress-nginx-controller",
            "--timeout=180s",
        ]

    @pytest.mark.asyncio
    async def test_get_jsonpath_trims(self) -> None:
        """Test that jsonpath output is trimmed."""
        kubectl, system = _kubectl(b"  True\n")

        value = await kubectl.get_jsonpath(
            "kind-mgmt", "controlplane", "demo", jsonpath="{.status.endpoint}"
        )

        assert value == "True"
        assert _sent(system).args == [
            "--context",
            "kind-mgmt",
            "get",
            "controlplane",
            "demo",
            "-o",
            "jsonpath={.status.endpoint}",
        ]

    @pytest.mark.asyncio
    async def test_get_jsonpath_error_is_verbatim(self) -> None:
        """Test that kubectl's diagnostic text surfaces trimmed."""
        kubectl, system = _kubectl()
        system.run.side_effect = CommandError(
            "kubectl get controlplane demo",
            1,
            'Error from server (NotFound): controlplanes "demo" not found\n',
            action="kubectl get controlplane",
        )

        with pytest.raises(CommandError) as exc_info:
            await kubectl.get_jsonpath("kind-mgmt", "controlplane", "demo")

        assert exc_info.value.output == 'Error from server (NotFound): controlplanes "demo" not found'


class TestGetSecretData:
    """Tests for Kubectl.get_secret_data."""

    @pytest.mark.asyncio
    async def test_decodes_value(self) -> None:
        """Test that the value is base64-decoded and dotted keys are escaped."""
        kubectl, system = _kubectl(base64.b64encode(b"apiVersion: v1\n"))

        value = await kubectl.get_secret_data("kind-mgmt", "creds", "kplane-system", "config.yaml")

        assert value == b"apiVersion: v1\n"
        assert _sent(system).args[-1] == "jsonpath={.data.config\\.yaml}"
        assert ["-n", "kplane-system"] == _sent(system).args[2:4]

    @pytest.mark.asyncio
    async def test_missing_key(self) -> None:
        """Test that an empty value is reported as a missing key."""
        kubectl, _ = _kubectl(b"")

        with pytest.raises(SecretDataError, match="missing key 'kubeconfig'"):
            await kubectl.get_secret_data("kind-mgmt", "creds", "kplane-system", "kubeconfig")

    @pytest.mark.asyncio
    async def test_invalid_base64(self) -> None:
        """Test that undecodable data is reported distinctly."""
        kubectl, _ = _kubectl(b"not base64!")

        with pytest.raises(SecretDataError, match="decode secret"):
            await kubectl.get_secret_data("kind-mgmt", "creds", "kplane-system", "kubeconfig")

    @pytest.mark.asyncio
    async def test_namespace_required(self) -> None:
        """Test that an empty namespace is rejected before running kubectl."""
        kubectl, system = _kubectl()

        with pytest.raises(ValidationError):
            await kubectl.get_secret_data("kind-mgmt", "creds", "", "kubeconfig")

        system.run.assert_not_awaited()
