"""``deployforge deploy ARTIFACT`` — deploy an artifact to a resolved target.

Function targets take code/config options (``--memory``, ``--timeout``,
``--env-json``, ``--layer``, ``--architecture``, ``--publish``,
``--alias``).  Cluster-release targets take values options
(``--values-file``, ``--values-json``, ``--set``) and release flags
(``--atomic``, ``--wait``, ``--dry-run``, ``--diff``,
``--create-namespace``).

The exit status distinguishes succeeded, failed, timed out, rolled back
and verification failed, so calling automation can branch on outcome.
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError

from deployforge.cli.render import result_panel, verification_panel
from deployforge.cli.state import (
    console,
    fail,
    get_state,
    load_model,
    parse_json_option,
    usage_error,
)
from deployforge.core.values import parse_set_overrides
from deployforge.errors import DeployforgeError, ExitCode
from deployforge.models.artifacts import Artifact, StoredArtifactRef
from deployforge.models.deployments import ClusterReleaseSettings, FunctionSettings
from deployforge.models.targets import TargetKind


def deploy_cmd(
    ctx: typer.Context,
    artifact_manifest: Path = typer.Argument(
        ...,
        help="Artifact manifest JSON written by `deployforge package`.",
    ),
    service: str = typer.Option(..., "--service", "-s", help="Logical service name."),
    environment: str = typer.Option(..., "--env", "-e", help="Environment name."),
    stored_ref_path: Path = typer.Option(
        None,
        "--stored-ref",
        help="Stored reference JSON from `deployforge store`.",
    ),
    store: bool = typer.Option(
        False,
        "--store",
        help="Store the artifact first (always done when it exceeds the inline limit).",
    ),
    deploy_timeout: float = typer.Option(
        None,
        "--deploy-timeout",
        min=1.0,
        help="Overall deploy timeout in seconds (default: DEPLOYFORGE_DEFAULT_TIMEOUT_SECONDS).",
    ),
    # function-kind
    runtime: str = typer.Option("", "--runtime", help="Function runtime identifier."),
    memory: int = typer.Option(None, "--memory", help="Function memory size in MB."),
    timeout: int = typer.Option(None, "--timeout", help="Function timeout in seconds."),
    env_json: str = typer.Option(
        None, "--env-json", help="Function environment variables as a JSON object."
    ),
    layers: list[str] = typer.Option([], "--layer", help="Layer reference (repeatable)."),
    architecture: str = typer.Option(
        "", "--architecture", help="Function architecture: x86_64 or arm64."
    ),
    publish: bool = typer.Option(
        False, "--publish/--no-publish", help="Publish a new function version."
    ),
    alias: str = typer.Option(
        "", "--alias", help="Alias to move to the published version (default: target's alias)."
    ),
    # cluster-release-kind
    values_file: Path = typer.Option(None, "--values-file", "-f", help="Values YAML file."),
    values_json: str = typer.Option(None, "--values-json", help="Inline values as JSON."),
    set_values: list[str] = typer.Option(
        [], "--set", help="Per-key override KEY=VALUE; dotted keys nest (repeatable)."
    ),
    atomic: bool = typer.Option(
        True, "--atomic/--no-atomic", help="Roll back automatically on failure."
    ),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for workload readiness."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Render and validate only."),
    diff: bool = typer.Option(False, "--diff", help="Preview the manifest diff first."),
    create_namespace: bool = typer.Option(
        True, "--create-namespace/--no-create-namespace", help="Create the namespace if missing."
    ),
    # verification
    verify_command: str = typer.Option(
        None,
        "--verify-command",
        help="Health-check command run after a successful deploy.",
    ),
    verify_timeout: float = typer.Option(
        120.0, "--verify-timeout", min=0.1, help="Seconds allowed for verification."
    ),
) -> None:
    """Deploy ARTIFACT to the target for SERVICE/ENV and record the release."""
    state = get_state(ctx)
    pipeline = state.pipeline()
    artifact = load_model(artifact_manifest, Artifact)
    stored_ref = load_model(stored_ref_path, StoredArtifactRef) if stored_ref_path else None
    inline_values = parse_json_option(values_json, "--values-json")
    environment_vars = parse_json_option(env_json, "--env-json")
    try:
        overrides = parse_set_overrides(set_values)
    except ValueError as exc:
        usage_error(str(exc))

    try:
        target = pipeline.resolve(service, environment)
        if stored_ref is None and (store or pipeline.store.requires_store(artifact)):
            stored_ref = pipeline.store_artifact(artifact, target.key)

        function = cluster_release = None
        if target.kind == TargetKind.FUNCTION:
            function = FunctionSettings(
                runtime=runtime,
                memory_size=memory,
                timeout_seconds=timeout,
                layers=layers,
                architecture=architecture,
                publish_version=publish,
                update_alias=alias,
            )
            inline_values = {**inline_values, **environment_vars}
        else:
            cluster_release = ClusterReleaseSettings(
                wait=wait,
                dry_run=dry_run,
                diff_preview=diff,
                create_namespace=create_namespace,
            )
        request = pipeline.build_request(
            target,
            artifact,
            stored_ref=stored_ref,
            overrides=overrides,
            inline_values=inline_values,
            values_file=values_file,
            timeout_seconds=deploy_timeout or state.settings.default_timeout_seconds,
            atomic=atomic,
            function=function,
            cluster_release=cluster_release,
        )
    except ValidationError as exc:
        usage_error(f"Invalid deploy options: {exc}")
    except DeployforgeError as exc:
        fail(exc)

    try:
        result = pipeline.deploy(request)
    except DeployforgeError as exc:
        fail(exc)
    if result.diff:
        console.print(result.diff, markup=False, highlight=False)
    console.print(result_panel(result))
    if not result.succeeded:
        raise typer.Exit(code=int(result.exit_code))

    if verify_command:
        check = pipeline.health_check(target, command=verify_command)
        try:
            verification = pipeline.verify(target, verify_timeout, check)
        except DeployforgeError as exc:
            fail(exc)
        console.print(verification_panel(verification))
        if not verification.healthy:
            if pipeline.config.rollback_on_verification_failure:
                reverted = pipeline.revert(request, result)
                console.print(result_panel(reverted))
            raise typer.Exit(code=int(ExitCode.VERIFICATION_FAILED))
