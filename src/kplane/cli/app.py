"""Main CLI application for kplane."""

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Annotated, Any

import typer

from kplane.cli.commands.config import run_set_provider, run_use_context
from kplane.cli.commands.create import run_create_cluster
from kplane.cli.commands.credentials import run_get_credentials
from kplane.cli.commands.doctor import run_doctor
from kplane.cli.commands.down import run_down
from kplane.cli.commands.get import run_get_clusters
from kplane.cli.commands.up import run_up
from kplane.config.models import ConfigOverrides
from kplane.core.errors import KplaneError
from kplane.core.logging import setup_logging

app = typer.Typer(
    name="kplane",
    help="Run a local Kubernetes management plane and its virtual control planes",
    no_args_is_help=True,
)
create_app = typer.Typer(help="Create resources", no_args_is_help=True)
get_app = typer.Typer(help="Get resources", no_args_is_help=True)
config_app = typer.Typer(help="Manage kubeconfig contexts and settings", no_args_is_help=True)
app.add_typer(create_app, name="create")
app.add_typer(get_app, name="get")
app.add_typer(config_app, name="config")


@dataclass
class GlobalOptions:
    """Options given before the subcommand."""

    config: str = ""
    trace: bool = False


def _options(ctx: typer.Context) -> GlobalOptions:
    obj = ctx.find_root().obj
    return obj if isinstance(obj, GlobalOptions) else GlobalOptions()


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine, reporting kplane errors as one line."""
    try:
        asyncio.run(coro)
    except (KplaneError, ValueError) as e:
        # ValueError covers an invalid settings file
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e


ProviderOption = Annotated[
    str, typer.Option("--provider", help="Cluster provider (kind, k3s)")
]
ClusterNameOption = Annotated[
    str, typer.Option("--cluster-name", help="Management cluster name")
]
NamespaceOption = Annotated[
    str, typer.Option("--namespace", help="Namespace for the kplane system")
]
KubeconfigOption = Annotated[
    str, typer.Option("--kubeconfig", help="Kubeconfig path to update")
]
SetCurrentOption = Annotated[
    bool, typer.Option("--set-current/--no-set-current", help="Set current kubeconfig context")
]


@app.callback()
def main(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
    trace: Annotated[
        bool, typer.Option("--trace", help="Print every command and its output")
    ] = False,
    config: Annotated[
        str,
        typer.Option("--config", "-c", help="Path to the kplane settings file"),
    ] = "",
) -> None:
    """kplane - local management plane for virtual Kubernetes control planes."""
    setup_logging(verbose=verbose, trace=trace)
    ctx.obj = GlobalOptions(config=config, trace=trace)


@app.command()
def up(
    ctx: typer.Context,
    provider: ProviderOption = "",
    cluster_name: ClusterNameOption = "",
    namespace: NamespaceOption = "",
    apiserver_image: Annotated[
        str, typer.Option("--apiserver-image", help="API server image")
    ] = "",
    operator_image: Annotated[
        str, typer.Option("--operator-image", help="Controlplane-operator image")
    ] = "",
    etcd_image: Annotated[str, typer.Option("--etcd-image", help="etcd image")] = "",
    stack_version: Annotated[
        str, typer.Option("--stack-version", help="Stack version to install")
    ] = "",
    crd_source: Annotated[
        str, typer.Option("--crd-source", help="CRD source (kustomize URL or path)")
    ] = "",
    install_crds: Annotated[
        bool,
        typer.Option("--install-crds/--skip-crds", help="Install CRDs before deploying operator"),
    ] = True,
    kubeconfig: KubeconfigOption = "",
    set_current: SetCurrentOption = True,
) -> None:
    """Create or reuse a management plane on a local cluster."""
    opts = _options(ctx)
    overrides = ConfigOverrides(
        provider=provider,
        cluster_name=cluster_name,
        namespace=namespace,
        kubeconfig_path=kubeconfig,
        stack_version=stack_version,
        crd_source=crd_source,
        apiserver_image=apiserver_image,
        operator_image=operator_image,
        etcd_image=etcd_image,
    )
    _run(run_up(opts.config, overrides, install_crds, set_current, opts.trace))


@app.command()
def down(
    ctx: typer.Context,
    provider: ProviderOption = "",
    cluster_name: ClusterNameOption = "",
) -> None:
    """Delete the local management cluster."""
    opts = _options(ctx)
    overrides = ConfigOverrides(provider=provider, cluster_name=cluster_name)
    _run(run_down(opts.config, overrides, opts.trace))


@create_app.command("cluster")
def create_cluster(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Control plane name")],
    class_name: Annotated[
        str, typer.Option("--class", help="ControlPlaneClass name")
    ] = "starter",
    endpoint: Annotated[
        str, typer.Option("--endpoint", help="Control plane endpoint URL")
    ] = "",
    namespace: NamespaceOption = "",
    get_credentials: Annotated[
        bool,
        typer.Option(
            "--get-credentials/--no-get-credentials",
            help="Fetch and merge kubeconfig for the control plane",
        ),
    ] = True,
    set_current: SetCurrentOption = True,
    kubeconfig: KubeconfigOption = "",
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", help="Seconds to wait for control plane readiness"),
    ] = None,
    management_context: Annotated[
        str,
        typer.Option("--management-context", help="Kubeconfig context of the management plane"),
    ] = "",
) -> None:
    """Create a ControlPlane resource."""
    opts = _options(ctx)
    overrides = ConfigOverrides(namespace=namespace, kubeconfig_path=kubeconfig)
    _run(
        run_create_cluster(
            opts.config,
            name,
            class_name,
            endpoint,
            get_credentials,
            set_current,
            timeout,
            management_context,
            overrides,
            opts.trace,
        )
    )


@app.command("get-credentials")
def get_credentials(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Cluster or control plane name")],
    provider: ProviderOption = "",
    kubeconfig: KubeconfigOption = "",
    set_current: SetCurrentOption = True,
) -> None:
    """Update kubeconfig for a cluster."""
    opts = _options(ctx)
    overrides = ConfigOverrides(provider=provider, kubeconfig_path=kubeconfig)
    _run(run_get_credentials(opts.config, name, set_current, overrides, opts.trace))


@get_app.command("clusters")
def get_clusters(
    ctx: typer.Context,
    kubeconfig: Annotated[
        str, typer.Option("--kubeconfig", help="Kubeconfig path to read")
    ] = "",
) -> None:
    """List kplane and management contexts."""
    opts = _options(ctx)
    _run(run_get_clusters(opts.config, ConfigOverrides(kubeconfig_path=kubeconfig), opts.trace))


@config_app.command("use-context")
def use_context(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Context, or control plane name")],
    kubeconfig: KubeconfigOption = "",
) -> None:
    """Set the current kubeconfig context."""
    opts = _options(ctx)
    _run(run_use_context(opts.config, name, ConfigOverrides(kubeconfig_path=kubeconfig), opts.trace))


@config_app.command("set-provider")
def set_provider(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Provider name (kind, k3s)")],
) -> None:
    """Set the default provider of the active profile."""
    opts = _options(ctx)
    try:
        run_set_provider(opts.config, name)
    except (KplaneError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e


@app.command()
def doctor(ctx: typer.Context) -> None:
    """Check local prerequisites for kplane."""
    opts = _options(ctx)
    try:
        run_doctor(opts.config)
    except (KplaneError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e


if __name__ == "__main__":
    app()
