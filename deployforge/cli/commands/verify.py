"""``deployforge verify`` — run a post-deploy health check.

The gate only reports Healthy or Unhealthy; it never rolls back.  Exit
status is 0 when healthy and the verification-failed code otherwise.
"""

from __future__ import annotations

import typer

from deployforge.cli.render import verification_panel
from deployforge.cli.state import console, fail, get_state, parse_json_option
from deployforge.errors import DeployforgeError, ExitCode


def verify_cmd(
    ctx: typer.Context,
    service: str = typer.Option(..., "--service", "-s", help="Logical service name."),
    environment: str = typer.Option(..., "--env", "-e", help="Environment name."),
    command: str = typer.Option(
        None,
        "--command",
        "-c",
        help="Shell command; healthy when it exits 0.",
    ),
    payload: str = typer.Option(
        None,
        "--payload",
        help="JSON payload for function invocation (functions only).",
    ),
    timeout: float = typer.Option(
        120.0,
        "--timeout",
        "-t",
        min=0.1,
        help="Seconds to keep checking before reporting Unhealthy.",
    ),
) -> None:
    """Check SERVICE/ENV until healthy or TIMEOUT expires.

    Without --command, functions are invoked through their alias and
    cluster releases are checked for workload readiness.
    """
    pipeline = get_state(ctx).pipeline()
    invoke_payload = parse_json_option(payload, "--payload")
    try:
        target = pipeline.resolve(service, environment)
        check = pipeline.health_check(target, command=command, invoke_payload=invoke_payload)
        result = pipeline.verify(target, timeout, check)
    except DeployforgeError as exc:
        fail(exc)

    console.print(verification_panel(result))
    if not result.healthy:
        raise typer.Exit(code=int(ExitCode.VERIFICATION_FAILED))
