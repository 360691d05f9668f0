"""``deployforge store ARTIFACT`` — persist an artifact in the artifact store.

Idempotent: storing identical content under the same destination again
returns the same reference without writing.
"""

from __future__ import annotations

from pathlib import Path

import typer

from deployforge.cli.render import stored_panel
from deployforge.cli.state import console, fail, get_state, load_model, write_model
from deployforge.errors import DeployforgeError
from deployforge.models.artifacts import Artifact


def store_cmd(
    ctx: typer.Context,
    artifact_manifest: Path = typer.Argument(
        ...,
        help="Artifact manifest JSON written by `deployforge package`.",
    ),
    service: str = typer.Option(..., "--service", "-s", help="Logical service name."),
    environment: str = typer.Option(..., "--env", "-e", help="Environment name."),
    output: Path = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the stored reference JSON here (default: print it).",
    ),
) -> None:
    """Store a packaged artifact under SERVICE/ENV."""
    pipeline = get_state(ctx).pipeline()
    artifact = load_model(artifact_manifest, Artifact)
    try:
        ref = pipeline.store_artifact(artifact, f"{service}/{environment}")
    except DeployforgeError as exc:
        fail(exc)

    if output is not None:
        console.print(stored_panel(ref))
    write_model(output, ref)
