"""Rich renderables for CLI output.

Color scheme
------------
- green     : succeeded / healthy
- yellow    : rolled_back
- red       : failed / unhealthy
"""

from __future__ import annotations

from rich.panel import Panel
from rich.table import Table

from deployforge.core.verification import VerificationResult
from deployforge.models.artifacts import Artifact, StoredArtifactRef
from deployforge.models.deployments import DeploymentResult, DeploymentStatus
from deployforge.models.ledger import ReleaseRecord
from deployforge.models.targets import DeploymentTarget

_STATUS_STYLES: dict[DeploymentStatus, str] = {
    DeploymentStatus.SUCCEEDED: "bold green",
    DeploymentStatus.ROLLED_BACK: "bold yellow",
    DeploymentStatus.FAILED: "bold red",
}


def _status(status: DeploymentStatus) -> str:
    style = _STATUS_STYLES[status]
    return f"[{style}]{status.value.upper()}[/{style}]"


def _fmt(value: object) -> str:
    return "-" if value is None or value == "" else str(value)


def artifact_panel(artifact: Artifact) -> Panel:
    lines = [
        f"[bold]Content hash:[/bold] {artifact.content_hash}",
        f"[bold]Format:[/bold]       {artifact.output_format.value}",
        f"[bold]Size:[/bold]         {artifact.size_bytes} bytes ({artifact.file_count} files)",
        f"[bold]Runtime:[/bold]      {_fmt(artifact.runtime)}",
        f"[bold]Commit:[/bold]       {_fmt(artifact.source_commit)}",
    ]
    if artifact.local_path is not None:
        lines.append(f"[bold]Local path:[/bold]   {artifact.local_path}")
    if artifact.image_ref:
        lines.append(f"[bold]Image:[/bold]        {artifact.image_ref}")
    return Panel("\n".join(lines), title="[bold]Artifact[/bold]", border_style="green")


def stored_panel(ref: StoredArtifactRef) -> Panel:
    return Panel(
        "\n".join([
            f"[bold]Reference:[/bold] {ref.reference}",
            f"[bold]Key:[/bold]       {ref.object_key}",
            f"[bold]Hash:[/bold]      {ref.content_hash}",
        ]),
        title="[bold]Stored[/bold]",
        border_style="green",
    )


def target_panel(target: DeploymentTarget) -> Panel:
    lines = [
        f"[bold]Key:[/bold]    {target.key}",
        f"[bold]Kind:[/bold]   {target.kind.value}",
        f"[bold]Region:[/bold] {target.region}",
        f"[bold]Role:[/bold]   {target.role}",
    ]
    if target.function is not None:
        lines.append(f"[bold]Function:[/bold] {target.function.function_name}")
        lines.append(f"[bold]Alias:[/bold]    {_fmt(target.function.alias)}")
    if target.cluster_release is not None:
        cr = target.cluster_release
        lines.append(f"[bold]Cluster:[/bold]   {cr.cluster_name}")
        lines.append(f"[bold]Namespace:[/bold] {cr.namespace}")
        lines.append(f"[bold]Release:[/bold]   {cr.release_name}")
        chart = f"{cr.chart_ref}@{cr.chart_version}" if cr.chart_version else cr.chart_ref
        lines.append(f"[bold]Chart:[/bold]     {chart}")
    return Panel("\n".join(lines), title="[bold]Target[/bold]", border_style="cyan")


def result_panel(result: DeploymentResult) -> Panel:
    lines = [
        f"[bold]Status:[/bold]   {_status(result.status)}",
        f"[bold]State:[/bold]    {result.final_state}",
        f"[bold]Version:[/bold]  {_fmt(result.version)} (was {_fmt(result.previous_version)})",
        f"[bold]Duration:[/bold] {result.duration_seconds:.1f}s",
    ]
    if result.attempted_version is not None:
        lines.append(f"[bold]Discarded:[/bold] {result.attempted_version}")
    if result.deployed_by_reference:
        lines.append("[dim]Deployed by artifact store reference.[/dim]")
    if result.error:
        lines += ["", f"[red]{result.error}[/red]"]
    border = _STATUS_STYLES[result.status].split()[-1]
    return Panel(
        "\n".join(lines),
        title=f"[bold]Deployment {result.request_id}[/bold]",
        border_style=border,
    )


def verification_panel(result: VerificationResult) -> Panel:
    style = "green" if result.healthy else "red"
    return Panel(
        "\n".join([
            f"[bold]Status:[/bold]   [{style}]{result.status.upper()}[/{style}]",
            f"[bold]Attempts:[/bold] {result.attempts}",
            f"[bold]Elapsed:[/bold]  {result.elapsed_seconds:.1f}s",
            f"[bold]Detail:[/bold]   {_fmt(result.detail)}",
        ]),
        title=f"[bold]Verification {result.target_key}[/bold]",
        border_style=style,
    )


def history_table(target_key: str, records: list[ReleaseRecord]) -> Table:
    table = Table(title=f"Release history: {target_key}")
    table.add_column("When (UTC)", style="dim")
    table.add_column("Status")
    table.add_column("Version", justify="right")
    table.add_column("Previous", justify="right")
    table.add_column("Artifact", style="cyan")
    table.add_column("Actor")
    table.add_column("Error", style="red")
    for record in records:
        table.add_row(
            record.timestamp_utc.strftime("%Y-%m-%d %H:%M:%S"),
            _status(record.status),
            _fmt(record.version),
            _fmt(record.previous_version),
            record.artifact_hash.removeprefix("sha256:")[:12] or "-",
            _fmt(record.actor),
            (record.error or "")[:60],
        )
    return table
