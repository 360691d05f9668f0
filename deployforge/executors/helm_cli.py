"""Cluster backend driven through ``helm`` and ``kubectl``.

Each target gets its own kubeconfig, written by ``aws eks
update-kubeconfig`` with the role's short-lived credentials, so concurrent
deployments to different clusters never share context.
"""

from __future__ import annotations

import difflib
import logging
import tempfile
from pathlib import Path
from typing import Any

import yaml

from deployforge.core.cli_runner import CliCommandError, run_cli, run_cli_json
from deployforge.executors.backends import CredentialProvider, ReadinessStatus
from deployforge.models.targets import ClusterReleaseCoordinates, DeploymentTarget

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("release: not found", "Release not loaded")


class HelmCliClusterBackend:
    """Chart manager plus cluster API over the ``helm``/``kubectl`` CLIs.

    Parameters
    ----------
    credentials:
        Source of per-role credentials.
    work_dir:
        Where kubeconfigs and rendered values files are written.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        *,
        work_dir: Path,
        helm_cli: str = "helm",
        kubectl_cli: str = "kubectl",
        aws_cli: str = "aws",
    ) -> None:
        self._credentials = credentials
        self._work_dir = Path(work_dir)
        self._helm = helm_cli
        self._kubectl = kubectl_cli
        self._aws = aws_cli

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    @staticmethod
    def _coords(target: DeploymentTarget) -> ClusterReleaseCoordinates:
        assert target.cluster_release is not None
        return target.cluster_release

    def _env(self, target: DeploymentTarget) -> dict[str, str]:
        creds = self._credentials.credentials_for(target.role, target.region).as_env()
        coords = self._coords(target)
        kubeconfig = self._work_dir / "kube" / f"{coords.cluster_name}-{target.region}.yaml"
        if not kubeconfig.exists():
            kubeconfig.parent.mkdir(parents=True, exist_ok=True)
            run_cli(
                [self._aws, "eks", "update-kubeconfig",
                 "--name", coords.cluster_name,
                 "--region", target.region,
                 "--kubeconfig", str(kubeconfig)],
                env=creds,
            )
        return {**creds, "KUBECONFIG": str(kubeconfig)}

    def _helm_run(self, target: DeploymentTarget, *args: str, **kwargs: Any) -> str:
        coords = self._coords(target)
        return run_cli(
            [self._helm, *args, "--namespace", coords.namespace],
            env=self._env(target), **kwargs,
        )

    # ------------------------------------------------------------------
    # ClusterBackend
    # ------------------------------------------------------------------

    def ensure_namespace(self, target: DeploymentTarget) -> None:
        env = self._env(target)
        manifest = run_cli(
            [self._kubectl, "create", "namespace", self._coords(target).namespace,
             "--dry-run=client", "-o", "yaml"],
            env=env,
        )
        run_cli([self._kubectl, "apply", "-f", "-"], env=env, input_text=manifest)

    def chart_defaults(self, target: DeploymentTarget) -> dict[str, Any]:
        coords = self._coords(target)
        args = [self._helm, "show", "values", coords.chart_ref]
        if coords.chart_version:
            args += ["--version", coords.chart_version]
        out = run_cli(args, env=self._env(target))
        return yaml.safe_load(out) or {}

    def current_revision(self, target: DeploymentTarget) -> int | None:
        coords = self._coords(target)
        try:
            out = run_cli_json(
                [self._helm, "status", coords.release_name,
                 "--namespace", coords.namespace, "-o", "json"],
                env=self._env(target),
            )
        except CliCommandError as exc:
            if any(marker in exc.stderr for marker in _NOT_FOUND_MARKERS):
                return None
            raise
        version = out.get("version")
        return int(version) if version is not None else None

    def diff(self, target: DeploymentTarget, values: dict[str, Any]) -> str:
        coords = self._coords(target)
        with self._values_file(values) as values_path:
            args = ["template", coords.release_name, coords.chart_ref, "-f", str(values_path)]
            if coords.chart_version:
                args += ["--version", coords.chart_version]
            proposed = self._helm_run(target, *args)
        try:
            current = self._helm_run(target, "get", "manifest", coords.release_name)
        except CliCommandError as exc:
            if not any(marker in exc.stderr for marker in _NOT_FOUND_MARKERS):
                raise
            current = ""
        return "".join(difflib.unified_diff(
            current.splitlines(keepends=True),
            proposed.splitlines(keepends=True),
            fromfile=f"{coords.release_name} (deployed)",
            tofile=f"{coords.release_name} (proposed)",
        ))

    def upgrade(
        self,
        target: DeploymentTarget,
        values: dict[str, Any],
        *,
        dry_run: bool = False,
        timeout_seconds: float = 300.0,
    ) -> int:
        coords = self._coords(target)
        with self._values_file(values) as values_path:
            args = [
                "upgrade", "--install", coords.release_name, coords.chart_ref,
                "-f", str(values_path),
                "--timeout", f"{int(timeout_seconds)}s",
                "-o", "json",
            ]
            if coords.chart_version:
                args += ["--version", coords.chart_version]
            if dry_run:
                args.append("--dry-run")
            out = run_cli_json(
                [self._helm, *args, "--namespace", coords.namespace],
                env=self._env(target),
                timeout=timeout_seconds + 30,
            )
        revision = int(out.get("version", 0))
        logger.info("Release %s upgraded to revision %d", coords.release_name, revision)
        return revision

    def readiness(self, target: DeploymentTarget) -> ReadinessStatus:
        coords = self._coords(target)
        out = run_cli_json(
            [self._kubectl, "get", "deployments,statefulsets",
             "--namespace", coords.namespace,
             "-l", f"app.kubernetes.io/instance={coords.release_name}",
             "-o", "json"],
            env=self._env(target),
        )
        pending: list[str] = []
        for item in out.get("items", []):
            name = f"{item.get('kind', '').lower()}/{item.get('metadata', {}).get('name', '?')}"
            wanted = item.get("spec", {}).get("replicas", 1)
            status = item.get("status", {})
            ready = status.get("readyReplicas", 0)
            updated = status.get("updatedReplicas", 0)
            if ready < wanted or updated < wanted:
                pending.append(f"{name} {ready}/{wanted} ready, {updated}/{wanted} updated")
        if pending:
            return ReadinessStatus(ready=False, detail="; ".join(pending))
        return ReadinessStatus(ready=True, detail=f"{len(out.get('items', []))} workload(s) ready")

    def rollback(
        self,
        target: DeploymentTarget,
        revision: int | None,
        *,
        timeout_seconds: float = 300.0,
    ) -> None:
        coords = self._coords(target)
        if revision is None:
            logger.warning("No prior revision of %s; uninstalling", coords.release_name)
            self._helm_run(target, "uninstall", coords.release_name, "--wait",
                           "--timeout", f"{int(timeout_seconds)}s")
            return
        self._helm_run(target, "rollback", coords.release_name, str(revision), "--wait",
                       "--timeout", f"{int(timeout_seconds)}s")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _values_file(self, values: dict[str, Any]) -> _ValuesFile:
        return _ValuesFile(self._work_dir, values)


class _ValuesFile:
    """Context manager writing resolved values to a temporary YAML file."""

    def __init__(self, work_dir: Path, values: dict[str, Any]) -> None:
        self._work_dir = work_dir
        self._values = values
        self._path: Path | None = None

    def __enter__(self) -> Path:
        self._work_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", suffix=".yaml", prefix="values-", dir=self._work_dir, delete=False
        ) as fh:
            yaml.safe_dump(self._values, fh, sort_keys=True)
            self._path = Path(fh.name)
        return self._path

    def __exit__(self, *exc_info: object) -> None:
        if self._path is not None:
            self._path.unlink(missing_ok=True)
