"""Create command implementations."""

import typer

from kplane.cli.commands.common import consume_hint, load_settings, make_manager
from kplane.config.models import ConfigOverrides


async def run_create_cluster(
    config_file: str,
    name: str,
    class_name: str,
    endpoint: str,
    get_credentials: bool,
    set_current: bool,
    timeout: float | None,
    management_context: str,
    overrides: ConfigOverrides,
    trace: bool,
) -> None:
    """Create a control plane and optionally merge its credentials."""
    settings = load_settings(config_file, overrides)
    manager = make_manager(settings, trace)

    context = await manager.create_control_plane(
        name,
        class_name=class_name,
        endpoint=endpoint,
        get_credentials=get_credentials,
        set_current=set_current,
        timeout=timeout,
        management_context=management_context,
    )

    if not get_credentials:
        typer.echo(f"controlplane {name} created")
        return

    typer.echo(f"context: {context}")
    if consume_hint(settings, "create_hint_count"):
        typer.echo(f"next: kubectl --context {context} get namespaces")
