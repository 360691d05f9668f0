"""``deployforge resolve-target`` — show where (service, environment) deploys."""

from __future__ import annotations

import typer

from deployforge.cli.render import target_panel
from deployforge.cli.state import console, fail, get_state
from deployforge.errors import DeployforgeError


def resolve_target_cmd(
    ctx: typer.Context,
    service: str = typer.Option(..., "--service", "-s", help="Logical service name."),
    environment: str = typer.Option(..., "--env", "-e", help="Environment name."),
    as_json: bool = typer.Option(False, "--json", help="Print the target as JSON."),
) -> None:
    """Resolve SERVICE/ENV to exactly one deployment target."""
    pipeline = get_state(ctx).pipeline()
    try:
        target = pipeline.resolve(service, environment)
    except DeployforgeError as exc:
        fail(exc)

    if as_json:
        console.print_json(target.model_dump_json())
    else:
        console.print(target_panel(target))
