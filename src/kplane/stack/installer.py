"""Sequenced installer for the management-plane stack.

The stack is installed by a fixed pipeline of stages. Each stage waits for the
previous one because later manifests reference secrets and services created
earlier. A failing stage aborts the pipeline and nothing is rolled back; every
stage is an idempotent apply, so the installer can simply be run again.
"""

import tempfile
from dataclasses import dataclass, field
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path

from kplane.core.errors import OverlayPatchError, UnsupportedStackVersionError, ValidationError
from kplane.core.logging import LogSink, NullSink, get_logger
from kplane.kube.kubectl import Kubectl
from kplane.pki.certs import DEFAULT_NAMESPACE, generate_cert_bundle
from kplane.stack import manifests

logger = get_logger(__name__)

LATEST_STACK_VERSION = "latest"

INGRESS_NGINX_URL = (
    "https://raw.githubusercontent.com/kubernetes/ingress-nginx/"
    "controller-v1.11.3/deploy/static/provider/kind/deploy.yaml"
)
INGRESS_NGINX_NAMESPACE = "ingress-nginx"
INGRESS_NGINX_DEPLOYMENT = "ingress-nginx-controller"
INGRESS_ROLLOUT_TIMEOUT = 180

OPERATOR_ASSET_DIR = "controlplane-operator"
OPERATOR_CONFIG_FILE = "config/operatorconfig.yaml"
DEFAULT_KUSTOMIZATION = "config/default/kustomization.yaml"
MANAGER_KUSTOMIZATION = "config/manager/kustomization.yaml"


@dataclass(frozen=True)
class Images:
    """Container images for the stack components."""

    apiserver: str = "docker.io/kplanedev/apiserver:v0.0.3"
    operator: str = "docker.io/kplanedev/controlplane-operator:v0.0.3"
    etcd: str = "quay.io/coreos/etcd:v3.5.13"


@dataclass(frozen=True)
class InstallOptions:
    """Per-invocation install settings.

    Attributes:
        context: Kubeconfig context of the management cluster
        namespace: Namespace the stack is installed into
        images: Container images to deploy
        crd_source: Kustomize path or URL for the CRDs
        install_crds: Apply the CRDs from ``crd_source``
        sink: Receives one ``stage`` call before each stage runs
    """

    context: str
    namespace: str = DEFAULT_NAMESPACE
    images: Images = field(default_factory=Images)
    crd_source: str = ""
    install_crds: bool = False
    sink: LogSink = field(default_factory=NullSink, compare=False)


def resolve_stack_version(version: str) -> str:
    """Validate a stack version, mapping empty to ``latest``.

    Raises:
        UnsupportedStackVersionError: For anything but "" or "latest"
    """
    if version in ("", LATEST_STACK_VERSION):
        return LATEST_STACK_VERSION
    raise UnsupportedStackVersionError(version)


def split_image(image: str) -> tuple[str, str]:
    """Split an image reference into repository and tag.

    The tag separator is the last ``:`` after the last ``/`` so registry ports
    are kept in the repository. A missing tag means ``latest``.
    """
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        return image[:colon], image[colon + 1 :] or "latest"
    return image, "latest"


def patch_namespace(text: str, namespace: str) -> str:
    """Rewrite the top-level ``namespace:`` line of a kustomization.

    Raises:
        OverlayPatchError: If the kustomization has no namespace line
    """
    lines = text.split("\n")
    patched = False
    for i, line in enumerate(lines):
        if line.startswith("namespace:"):
            lines[i] = f"namespace: {namespace}"
            patched = True
    if not patched:
        raise OverlayPatchError("operator kustomization has no namespace line")
    return "\n".join(lines)


def patch_image(text: str, image: str) -> str:
    """Rewrite the ``newName:``/``newTag:`` lines of a kustomization image entry.

    Raises:
        OverlayPatchError: If either line is missing
    """
    name, tag = split_image(image)
    replacements = {"newName:": name, "newTag:": tag}
    seen: set[str] = set()

    lines = text.split("\n")
    for i, line in enumerate(lines):
        stripped = line.lstrip()
        for key, value in replacements.items():
            if stripped.startswith(key):
                indent = line[: len(line) - len(stripped)]
                lines[i] = f"{indent}{key} {value}"
                seen.add(key)

    missing = [key.rstrip(":") for key in replacements if key not in seen]
    if missing:
        raise OverlayPatchError(f"operator kustomization has no {', '.join(missing)} line")
    return "\n".join(lines)


def operator_assets() -> Traversable:
    """Embedded operator deployment tree shipped with the package."""
    return resources.files("kplane") / "assets" / OPERATOR_ASSET_DIR


def _materialize(source: Traversable, target: Path) -> None:
    """Copy an embedded resource tree onto the filesystem."""
    target.mkdir(parents=True, exist_ok=True)
    for entry in source.iterdir():
        if entry.is_dir():
            _materialize(entry, target / entry.name)
        else:
            (target / entry.name).write_bytes(entry.read_bytes())


async def install_operator(kubectl: Kubectl, opts: InstallOptions) -> None:
    """Patch the embedded operator overlay in a scratch directory and apply it.

    The scratch directory is removed whether or not the apply succeeds.
    """
    assets = operator_assets()
    if not (assets / DEFAULT_KUSTOMIZATION).is_file():
        raise OverlayPatchError("embedded operator assets are missing from the package")

    with tempfile.TemporaryDirectory(prefix="kplane-operator-kustomize-") as tmp:
        root = Path(tmp) / OPERATOR_ASSET_DIR
        _materialize(assets, root)

        default = root / DEFAULT_KUSTOMIZATION
        default.write_text(patch_namespace(default.read_text(), opts.namespace))

        manager = root / MANAGER_KUSTOMIZATION
        if not manager.is_file():
            raise OverlayPatchError("embedded operator assets have no manager kustomization")
        manager.write_text(patch_image(manager.read_text(), opts.images.operator))

        logger.debug("Materialized operator overlay", path=str(root))
        await kubectl.apply_kustomize(opts.context, default.parent)


async def install(kubectl: Kubectl, opts: InstallOptions) -> None:
    """Install the management-plane stack into a cluster.

    Args:
        kubectl: kubectl wrapper
        opts: Install settings

    Raises:
        ValidationError: If CRD installation is enabled without a source
        CommandError: If any kubectl invocation fails
        CertificateError: If certificate generation fails
        OverlayPatchError: If the operator overlay cannot be patched
    """
    if opts.install_crds and not opts.crd_source:
        raise ValidationError("crd source is required when CRD installation is enabled")

    sink = opts.sink
    ns = opts.namespace
    ctx = opts.context

    sink.stage(f"creating namespace {ns}")
    await kubectl.create_namespace(ctx, ns)

    sink.stage("generating certs and secrets")
    certs = generate_cert_bundle(ns)

    sink.stage("applying secrets")
    await kubectl.apply(ctx, manifests.render_secrets(ns, certs))

    sink.stage("deploying etcd")
    await kubectl.apply(ctx, manifests.render_etcd(ns, opts.images.etcd))

    sink.stage("deploying apiserver")
    await kubectl.apply(ctx, manifests.render_apiserver(ns, opts.images.apiserver))

    sink.stage("deploying ingress controller")
    await kubectl.apply_url(ctx, INGRESS_NGINX_URL)
    await kubectl.rollout_status(
        ctx,
        INGRESS_NGINX_NAMESPACE,
        "deployment",
        INGRESS_NGINX_DEPLOYMENT,
        INGRESS_ROLLOUT_TIMEOUT,
    )

    sink.stage("configuring ingress route")
    await kubectl.apply(ctx, manifests.render_ingress_route(ns))

    sink.stage("applying operator config")
    raw_config = (operator_assets() / OPERATOR_CONFIG_FILE).read_text()
    await kubectl.apply(ctx, manifests.render_operator_config(ns, raw_config))

    sink.stage("creating apiserver token auth secret")
    await kubectl.apply(ctx, manifests.render_token_auth_secret(ns, certs.admin_token))

    sink.stage("creating apiserver kubeconfig secret")
    await kubectl.apply(ctx, manifests.render_apiserver_kubeconfig_secret(ns, certs))

    if opts.install_crds:
        sink.stage(f"installing CRDs from {opts.crd_source}")
        await kubectl.apply_kustomize(ctx, opts.crd_source)
    else:
        logger.debug("Skipping CRD installation")

    sink.stage("applying default ControlPlaneClass")
    await kubectl.apply(ctx, manifests.render_default_control_plane_class())

    sink.stage("deploying controlplane-operator")
    await install_operator(kubectl, opts)

    logger.info("Installed management-plane stack", context=ctx, namespace=ns)
