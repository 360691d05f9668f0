"""Shared CLI state and helpers used by every command."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any, NoReturn, TypeVar

import typer
from pydantic import BaseModel, ValidationError
from rich.console import Console

from deployforge.config import DeployforgeSettings
from deployforge.core.orchestrator import DeploymentPipeline
from deployforge.errors import DeployforgeError, ExitCode

console = Console()
err_console = Console(stderr=True)

ModelT = TypeVar("ModelT", bound=BaseModel)


class CliState:
    """Object stored on ``typer.Context.obj``.

    Commands build their pipeline through ``pipeline()`` so tests can
    substitute a factory wired to fake backends.
    """

    def __init__(
        self,
        settings: DeployforgeSettings,
        pipeline_factory: Callable[[DeployforgeSettings], DeploymentPipeline] | None = None,
    ) -> None:
        self.settings = settings
        self._factory = pipeline_factory or DeploymentPipeline.from_settings
        self._pipeline: DeploymentPipeline | None = None

    def pipeline(self) -> DeploymentPipeline:
        """Build the pipeline once; construction failures exit like any other."""
        if self._pipeline is None:
            try:
                self._pipeline = self._factory(self.settings)
            except DeployforgeError as exc:
                fail(exc)
        return self._pipeline


def get_state(ctx: typer.Context) -> CliState:
    state = ctx.obj
    if not isinstance(state, CliState):
        state = ctx.obj = CliState(DeployforgeSettings())
    return state


def fail(exc: DeployforgeError) -> NoReturn:
    """Print *exc* and exit with its failure-kind exit code."""
    err_console.print(f"[bold red]{type(exc).__name__}:[/bold red] {exc}")
    raise typer.Exit(code=int(exc.exit_code))


def usage_error(message: str) -> NoReturn:
    err_console.print(f"[bold red]Error:[/bold red] {message}")
    raise typer.Exit(code=int(ExitCode.USAGE))


def load_model(path: Path, model: type[ModelT]) -> ModelT:
    """Read a JSON manifest written by an earlier command."""
    try:
        return model.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        usage_error(f"File not found: {path}")
    except ValidationError as exc:
        usage_error(f"{path} is not a valid {model.__name__}: {exc.error_count()} error(s)")


def write_model(path: Path | None, value: BaseModel) -> None:
    """Write *value* as JSON to *path*, or print it when no path is given."""
    text = value.model_dump_json(indent=2)
    if path is None:
        console.print_json(text)
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text + "\n", encoding="utf-8")


def parse_json_option(raw: str | None, option: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        usage_error(f"{option} is not valid JSON: {exc}")
    if not isinstance(value, dict):
        usage_error(f"{option} must be a JSON object")
    return value
