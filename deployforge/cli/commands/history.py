"""``deployforge history`` — list a target's releases, newest first."""

from __future__ import annotations

import json

import typer

from deployforge.cli.render import history_table
from deployforge.cli.state import console, fail, get_state
from deployforge.errors import LedgerIntegrityError


def history_cmd(
    ctx: typer.Context,
    service: str = typer.Option(..., "--service", "-s", help="Logical service name."),
    environment: str = typer.Option(..., "--env", "-e", help="Environment name."),
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Maximum records to show."),
    as_json: bool = typer.Option(False, "--json", help="Print records as JSON lines."),
    verify_chain: bool = typer.Option(
        False,
        "--verify-chain",
        help="Verify the target's ledger hash chain first.",
    ),
) -> None:
    """Show release history for SERVICE/ENV."""
    pipeline = get_state(ctx).pipeline()
    target_key = f"{service}/{environment}"

    if verify_chain:
        try:
            pipeline.ledger.verify_chain(target_key)
        except LedgerIntegrityError as exc:
            fail(exc)
        console.print(f"[green]Hash chain for {target_key} is intact.[/green]")

    records = pipeline.history(target_key, limit=limit)
    if as_json:
        for record in records:
            typer.echo(json.dumps(record.model_dump(mode="json"), sort_keys=True))
        return
    if not records:
        console.print(f"[dim]No releases recorded for {target_key}.[/dim]")
        return
    console.print(history_table(target_key, records))
