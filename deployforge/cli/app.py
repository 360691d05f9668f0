"""Main Typer application — imports and registers all CLI commands.

Entry point: ``deployforge`` (configured via pyproject.toml scripts).

Commands: package, store, resolve-target, deploy, verify, history.
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from deployforge.cli.commands.deploy import deploy_cmd
from deployforge.cli.commands.history import history_cmd
from deployforge.cli.commands.package import package_cmd
from deployforge.cli.commands.resolve import resolve_target_cmd
from deployforge.cli.commands.store import store_cmd
from deployforge.cli.commands.verify import verify_cmd
from deployforge.cli.state import CliState, err_console
from deployforge.config import DeployforgeSettings

app = typer.Typer(
    name="deployforge",
    help="Deployforge: package, deploy, verify and record releases.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="package", help="Package a source tree into an artifact.")(package_cmd)
app.command(name="store", help="Persist a packaged artifact in the artifact store.")(store_cmd)
app.command(name="resolve-target", help="Resolve (service, environment) to a target.")(
    resolve_target_cmd
)
app.command(name="deploy", help="Deploy an artifact to a resolved target.")(deploy_cmd)
app.command(name="verify", help="Run a post-deploy health check.")(verify_cmd)
app.command(name="history", help="Show a target's release history.")(history_cmd)


def configure_logging(level: str) -> None:
    """Route stdlib logging through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


@app.callback()
def main_callback(
    ctx: typer.Context,
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Override DEPLOYFORGE_LOG_LEVEL.",
    ),
) -> None:
    """Load settings once and share them with every subcommand."""
    if not isinstance(ctx.obj, CliState):
        ctx.obj = CliState(DeployforgeSettings())
    configure_logging(log_level or ctx.obj.settings.log_level)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
