"""``deployforge package SOURCE_DIR`` — build and package a source tree.

Runs the optional build command, applies include/exclude filtering and
writes one artifact (zip archive or container image).  The artifact
manifest is written as JSON for the ``store`` and ``deploy`` commands.
"""

from __future__ import annotations

from pathlib import Path

import typer

from deployforge.cli.render import artifact_panel
from deployforge.cli.state import console, fail, get_state, write_model
from deployforge.errors import DeployforgeError
from deployforge.models.artifacts import OutputFormat


def package_cmd(
    ctx: typer.Context,
    source_dir: Path = typer.Argument(
        ...,
        help="Source directory to package.",
    ),
    output_format: OutputFormat = typer.Option(
        OutputFormat.ARCHIVE,
        "--format",
        "-f",
        help="Output format: archive (zip) or image.",
    ),
    build_command: str = typer.Option(
        None,
        "--build",
        "-b",
        help="Shell command run in SOURCE_DIR before packaging.",
    ),
    include: list[str] = typer.Option(
        [],
        "--include",
        "-i",
        help="Glob of paths to include (repeatable). Default: everything.",
    ),
    exclude: list[str] = typer.Option(
        [],
        "--exclude",
        "-x",
        help="Glob of paths to exclude (repeatable). Exclude wins over include.",
    ),
    runtime: str = typer.Option(
        "",
        "--runtime",
        help="Runtime identifier recorded on the artifact.",
    ),
    name: str = typer.Option(
        "",
        "--name",
        help="Artifact name. Defaults to the directory name.",
    ),
    image_repository: str = typer.Option(
        "",
        "--image-repository",
        help="Image repository for --format image.",
    ),
    output: Path = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the artifact manifest JSON here (default: print it).",
    ),
) -> None:
    """Package SOURCE_DIR into one artifact."""
    state = get_state(ctx)
    pipeline = state.pipeline()
    try:
        artifact = pipeline.package(
            source_dir,
            output_format=output_format,
            build_command=build_command,
            include=include,
            exclude=exclude,
            runtime=runtime,
            source_commit=state.settings.source_commit,
            name=name,
            image_repository=image_repository,
        )
    except DeployforgeError as exc:
        fail(exc)

    if output is not None:
        console.print(artifact_panel(artifact))
    write_model(output, artifact)
