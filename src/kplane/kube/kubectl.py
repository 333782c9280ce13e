"""kubectl wrapper used to apply manifests and query cluster state."""

import base64
import binascii
from pathlib import Path

from kplane.core.errors import SecretDataError, ValidationError
from kplane.core.logging import get_logger
from kplane.system.command import Command, CommandError, require_command
from kplane.system.worker import Worker

logger = get_logger(__name__)

KUBECTL_INSTALL_HINT = "https://kubernetes.io/docs/tasks/tools/"


def _scoped(args: list[str], context: str = "", namespace: str = "") -> list[str]:
    """Prefix kubectl arguments with optional context and namespace flags."""
    prefix: list[str] = []
    if context:
        prefix.extend(["--context", context])
    if namespace:
        prefix.extend(["-n", namespace])
    return prefix + args


class Kubectl:
    """Runs kubectl against a named kubeconfig context.

    Each method builds one kubectl invocation. Failures surface as
    ``CommandError`` carrying kubectl's trimmed diagnostic text.
    """

    def __init__(self, system: Worker) -> None:
        """Initialize the wrapper.

        Args:
            system: System worker for executing commands
        """
        self.system = system

    def ensure_installed(self) -> None:
        """Check that the kubectl binary is available.

        Raises:
            NotInstalledError: If kubectl is missing
        """
        require_command("kubectl", KUBECTL_INSTALL_HINT)

    async def apply(self, context: str, manifest: str | bytes) -> None:
        """Apply manifests piped through standard input.

        Args:
            context: Kubeconfig context
            manifest: One or more YAML documents
        """
        if isinstance(manifest, str):
            manifest = manifest.encode("utf-8")
        await self._run(
            _scoped(["apply", "-f", "-"], context), action="kubectl apply", stdin=manifest
        )

    async def apply_file(self, context: str, path: Path | str) -> None:
        """Apply manifests from a file or URL.

        Args:
            context: Kubeconfig context
            path: Local path or URL
        """
        await self._run(_scoped(["apply", "-f", str(path)], context), action="kubectl apply -f")

    async def apply_url(self, context: str, url: str) -> None:
        """Apply manifests served at a URL."""
        await self.apply_file(context, url)

    async def apply_kustomize(self, context: str, path: Path | str) -> None:
        """Apply a kustomize overlay directory or remote kustomize target.

        Args:
            context: Kubeconfig context
            path: Overlay directory or kustomize URL
        """
        await self._run(_scoped(["apply", "-k", str(path)], context), action="kubectl apply -k")

    async def create_namespace(self, context: str, name: str) -> None:
        """Create a namespace, treating an existing one as success.

        Args:
            context: Kubeconfig context
            name: Namespace name
        """
        try:
            await self._run(
                _scoped(["create", "namespace", name], context), action="create namespace"
            )
        except CommandError as e:
            if "AlreadyExists" in e.output:
                logger.debug("Namespace already exists", namespace=name)
                return
            raise

    async def label_nodes(self, context: str, labels: dict[str, str]) -> None:
        """Apply labels to every node, overwriting existing values.

        Args:
            context: Kubeconfig context
            labels: Label keys and values
        """
        args = ["label", "nodes", "--all"]
        args.extend(f"{key}={value}" for key, value in labels.items())
        args.append("--overwrite")
        await self._run(_scoped(args, context), action="kubectl label nodes")

    async def rollout_status(
        self,
        context: str,
        namespace: str,
        kind: str,
        name: str,
        timeout_seconds: int,
    ) -> None:
        """Block until a workload's rollout completes or the timeout elapses.

        Args:
            context: Kubeconfig context
            namespace: Namespace of the workload
            kind: Workload kind (e.g. "deployment")
            name: Workload name
            timeout_seconds: Upper bound kubectl waits for
        """
        args = ["rollout", "status", f"{kind}/{name}", f"--timeout={timeout_seconds}s"]
        await self._run(_scoped(args, context, namespace), action="kubectl rollout status")

    async def get_jsonpath(
        self,
        context: str,
        resource: str,
        name: str = "",
        namespace: str = "",
        jsonpath: str = "",
    ) -> str:
        """Read a single value selected by a JSONPath expression.

        Args:
            context: Kubeconfig context
            resource: Resource type (e.g. "controlplane")
            name: Resource name; empty selects the whole list
            namespace: Namespace for namespaced resources
            jsonpath: JSONPath expression (e.g. "{.status.endpoint}")

        Returns:
            Selected value, trimmed of whitespace
        """
        args = ["get", resource]
        if name:
            args.append(name)
        args.extend(["-o", f"jsonpath={jsonpath}"])
        output = await self._run(_scoped(args, context, namespace), action=f"kubectl get {resource}")
        return output.decode("utf-8").strip()

    async def get_secret_data(self, context: str, name: str, namespace: str, key: str) -> bytes:
        """Read and base64-decode one key of a secret.

        Args:
            context: Kubeconfig context
            name: Secret name
            namespace: Secret namespace
            key: Data key

        Returns:
            Decoded value

        Raises:
            ValidationError: If namespace is empty
            SecretDataError: If the key is absent or not valid base64
        """
        if not namespace:
            raise ValidationError(f"namespace is required for secret {name!r}")

        escaped_key = key.replace(".", "\\.")
        value = await self.get_jsonpath(
            context, "secret", name, namespace, "{.data." + escaped_key + "}"
        )
        if not value:
            raise SecretDataError(f"secret {name!r} missing key {key!r}")

        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise SecretDataError(f"decode secret {name!r} key {key!r}: {e}") from e

    async def _run(self, args: list[str], action: str, stdin: bytes | None = None) -> bytes:
        """Run kubectl with the given arguments."""
        cmd = Command(executable="kubectl", args=args, stdin=stdin, action=action)
        return await self.system.run(cmd)
