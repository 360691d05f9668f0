"""Deployment pipeline — the central coordinator for deployforge runs.

``DeploymentPipeline`` wires the ArtifactPackager, ArtifactStore,
TargetResolver, DeploymentExecutor, VerificationGate and ReleaseLedger
into one flow:

    package -> store -> resolve -> deploy -> verify -> record

Each stage's output is the next stage's input.  Packaging, store and
resolution errors raise before any external mutation.  Deploy-phase
outcomes come back as a ``DeploymentResult`` and are always recorded in
the ledger, whatever their status.
"""

from __future__ import annotations

import functools
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from deployforge.config import DeployforgeSettings
from deployforge.core.artifact_store import (
    ArtifactStore,
    AwsS3CliStorage,
    LocalObjectStorage,
    ObjectStorage,
)
from deployforge.core.packager import ArtifactPackager, DockerImageBuilder
from deployforge.core.production_guard import enforce_production_constraints
from deployforge.core.release_ledger import ReleaseLedger
from deployforge.core.target_lock import TargetLockRegistry
from deployforge.core.target_resolver import FileTargetRegistry, TargetResolver
from deployforge.core.verification import (
    CommandCheck,
    FunctionInvokeCheck,
    HealthCheck,
    ReleaseReadinessCheck,
    VerificationGate,
    VerificationResult,
)
from deployforge.errors import DeployforgeError, ExitCode
from deployforge.executors.aws_cli import AwsCliFunctionBackend, StsWebIdentityCredentials
from deployforge.executors.base import DeploymentControl
from deployforge.executors.cluster_release import ClusterReleaseExecutor
from deployforge.executors.dispatcher import DeploymentExecutor
from deployforge.executors.function import FunctionExecutor
from deployforge.executors.helm_cli import HelmCliClusterBackend
from deployforge.models.artifacts import (
    Artifact,
    ArtifactMetadata,
    OutputFormat,
    StoredArtifactRef,
)
from deployforge.models.config import PipelineConfig
from deployforge.models.deployments import (
    ClusterReleaseSettings,
    DeploymentRequest,
    DeploymentResult,
    FunctionSettings,
)
from deployforge.models.ledger import ReleaseRecord
from deployforge.models.targets import DeploymentTarget, TargetKind

logger = logging.getLogger(__name__)


def _role_env(credentials: StsWebIdentityCredentials, role: str, region: str) -> dict[str, str]:
    return credentials.credentials_for(role, region).as_env()


class PipelineRun(BaseModel):
    """Inputs for one end-to-end ``DeploymentPipeline.run``."""

    model_config = ConfigDict(frozen=True)

    service: str
    environment: str
    source_dir: Path
    output_format: OutputFormat = OutputFormat.ARCHIVE
    build_command: str | None = None
    include: list[str] = []
    exclude: list[str] = []
    runtime: str = ""
    source_commit: str = ""
    image_repository: str = ""
    store_for_audit: bool = True

    overrides: dict[str, Any] = {}
    inline_values: dict[str, Any] = {}
    values_file: Path | None = None
    timeout_seconds: float = Field(default=300.0, gt=0)
    atomic: bool = True
    function: FunctionSettings | None = None
    cluster_release: ClusterReleaseSettings | None = None

    verify_timeout_seconds: float = Field(default=120.0, gt=0)


class PipelineOutcome(BaseModel):
    """Everything a run produced, stage by stage."""

    model_config = ConfigDict(frozen=True)

    artifact: Artifact
    stored_ref: StoredArtifactRef | None = None
    target: DeploymentTarget
    result: DeploymentResult
    verification: VerificationResult | None = None
    revert: DeploymentResult | None = None

    @property
    def exit_code(self) -> ExitCode:
        if self.verification is not None and not self.verification.healthy:
            return ExitCode.VERIFICATION_FAILED
        return self.result.exit_code


class DeploymentPipeline:
    """Central deployment coordinator.

    Parameters
    ----------
    config:
        Pipeline configuration.  Every component receives its settings
        explicitly from here.
    packager, store, executor, ledger:
        The pipeline's components.
    resolver:
        Target resolver.  When omitted, one is loaded from *targets_file*
        on first use.
    gate:
        Verification gate; defaults to one using ``config.poll``.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        packager: ArtifactPackager,
        store: ArtifactStore,
        executor: DeploymentExecutor,
        ledger: ReleaseLedger,
        resolver: TargetResolver | None = None,
        targets_file: Path | None = None,
        gate: VerificationGate | None = None,
    ) -> None:
        self.config = config
        self.packager = packager
        self.store = store
        self.executor = executor
        self.ledger = ledger
        self._resolver = resolver
        self._targets_file = targets_file
        self.gate = gate or VerificationGate(policy=config.poll)

    @classmethod
    def from_settings(cls, settings: DeployforgeSettings) -> DeploymentPipeline:
        """Build a pipeline with the CLI-driven cloud backends."""
        enforce_production_constraints(settings)
        config = settings.pipeline_config()
        credentials = StsWebIdentityCredentials(aws_cli=settings.aws_cli)

        storage: ObjectStorage
        if settings.artifact_bucket:
            credentials_env = None
            if settings.artifact_store_role:
                credentials_env = functools.partial(
                    _role_env, credentials,
                    settings.artifact_store_role, settings.artifact_bucket_region,
                )
            storage = AwsS3CliStorage(
                settings.artifact_bucket,
                aws_cli=settings.aws_cli,
                region=settings.artifact_bucket_region,
                credentials_env=credentials_env,
            )
        else:
            storage = LocalObjectStorage(config.artifact_store_path)

        ledger = ReleaseLedger(config.ledger_db_path)
        executor = DeploymentExecutor(
            [
                FunctionExecutor(
                    AwsCliFunctionBackend(credentials, aws_cli=settings.aws_cli),
                    inline_deploy_limit_bytes=config.inline_deploy_limit_bytes,
                    poll_policy=config.poll,
                ),
                ClusterReleaseExecutor(
                    HelmCliClusterBackend(
                        credentials,
                        work_dir=config.work_dir,
                        helm_cli=settings.helm_cli,
                        kubectl_cli=settings.kubectl_cli,
                        aws_cli=settings.aws_cli,
                    ),
                    ledger=ledger,
                    poll_policy=config.poll,
                ),
            ],
            locks=TargetLockRegistry(config.conflict_policy),
        )
        return cls(
            config,
            packager=ArtifactPackager(
                config.work_dir / "packages",
                inline_deploy_limit_bytes=config.inline_deploy_limit_bytes,
                image_builder=DockerImageBuilder(settings.docker_cli),
            ),
            store=ArtifactStore(storage, inline_deploy_limit_bytes=config.inline_deploy_limit_bytes),
            executor=executor,
            ledger=ledger,
            targets_file=settings.targets_file,
        )

    @property
    def resolver(self) -> TargetResolver:
        if self._resolver is None:
            if self._targets_file is None:
                raise ValueError("No target resolver or targets file configured")
            self._resolver = TargetResolver(FileTargetRegistry(self._targets_file))
        return self._resolver

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def package(self, source_dir: Path, **kwargs: Any) -> Artifact:
        """Package *source_dir*; see ``ArtifactPackager.package``."""
        return self.packager.package(source_dir, **kwargs)

    def store_artifact(self, artifact: Artifact, destination_key: str) -> StoredArtifactRef:
        return self.store.put(artifact, destination_key)

    def resolve(self, service: str, environment: str) -> DeploymentTarget:
        return self.resolver.resolve(service, environment)

    def build_request(
        self,
        target: DeploymentTarget,
        artifact: Artifact,
        *,
        stored_ref: StoredArtifactRef | None = None,
        overrides: dict[str, Any] | None = None,
        inline_values: dict[str, Any] | None = None,
        values_file: Path | None = None,
        timeout_seconds: float = 300.0,
        atomic: bool = True,
        function: FunctionSettings | None = None,
        cluster_release: ClusterReleaseSettings | None = None,
    ) -> DeploymentRequest:
        """Assemble an immutable request, filling the target's stored defaults.

        A function deploy that publishes a version without naming an alias
        updates the alias from the target's coordinates.
        """
        if target.kind == TargetKind.FUNCTION:
            function = function or FunctionSettings()
            if not function.runtime and artifact.runtime:
                function = function.model_copy(update={"runtime": artifact.runtime})
            alias = target.function.alias if target.function else ""
            if function.publish_version and not function.update_alias and alias:
                function = function.model_copy(update={"update_alias": alias})
            cluster_release = None
        else:
            cluster_release = cluster_release or ClusterReleaseSettings()
            function = None

        return DeploymentRequest(
            target=target,
            artifact=artifact,
            stored_ref=stored_ref,
            overrides=overrides or {},
            inline_values=inline_values or {},
            values_file=values_file,
            defaults=self.resolver.defaults_for(target.service, target.environment),
            timeout_seconds=timeout_seconds,
            atomic=atomic,
            function=function,
            cluster_release=cluster_release,
            actor=self.config.actor,
        )

    def deploy(
        self, request: DeploymentRequest, control: DeploymentControl | None = None
    ) -> DeploymentResult:
        """Execute *request* and record the outcome in the ledger."""
        if request.stored_ref is None and self.store.requires_store(request.artifact):
            logger.warning(
                "Artifact %s is at or above the inline limit but was not stored",
                request.artifact.content_hash,
            )
        result = self.executor.execute(
            request, control, record=functools.partial(self._record, request)
        )
        if result.succeeded and request.stored_ref is not None:
            self._write_metadata(request, result)
        return result

    def verify(
        self,
        target: DeploymentTarget,
        timeout: float,
        check: HealthCheck,
        control: DeploymentControl | None = None,
    ) -> VerificationResult:
        return self.gate.verify(
            target, timeout, check,
            cancel_event=control.cancel_event if control is not None else None,
        )

    def health_check(
        self,
        target: DeploymentTarget,
        *,
        command: str | None = None,
        invoke_payload: dict[str, Any] | None = None,
    ) -> HealthCheck:
        """Pick a built-in check for *target*.

        A *command* wins; otherwise functions are invoked through their
        alias and cluster releases are checked for workload readiness.
        """
        if command:
            return CommandCheck(command)
        executor = self.executor.executor_for(target.kind)
        if target.kind == TargetKind.FUNCTION:
            return FunctionInvokeCheck(executor.backend, payload=invoke_payload)
        return ReleaseReadinessCheck(executor.backend)

    def revert(self, request: DeploymentRequest, result: DeploymentResult) -> DeploymentResult:
        """Undo a successful deployment and record the revert."""
        return self.executor.revert(
            request, result, record=functools.partial(self._record, request)
        )

    def history(self, target_key: str, limit: int | None = None) -> list[ReleaseRecord]:
        records: list[ReleaseRecord] = []
        for record in self.ledger.history(target_key):
            if limit is not None and len(records) >= limit:
                break
            records.append(record)
        return records

    # ------------------------------------------------------------------
    # End to end
    # ------------------------------------------------------------------

    def run(self, run: PipelineRun, check: HealthCheck | None = None) -> PipelineOutcome:
        """Package, store, resolve, deploy and optionally verify.

        Raises the stage's error if packaging, storing or resolution
        fails.  When *check* reports Unhealthy after a successful deploy
        and ``config.rollback_on_verification_failure`` is set, the
        deployment is reverted.
        """
        artifact = self.package(
            run.source_dir,
            output_format=run.output_format,
            build_command=run.build_command,
            include=run.include,
            exclude=run.exclude,
            runtime=run.runtime,
            source_commit=run.source_commit,
            name=run.service,
            image_repository=run.image_repository,
        )

        stored_ref = None
        if run.store_for_audit or self.store.requires_store(artifact):
            stored_ref = self.store_artifact(artifact, f"{run.service}/{run.environment}")

        target = self.resolve(run.service, run.environment)
        request = self.build_request(
            target, artifact,
            stored_ref=stored_ref,
            overrides=run.overrides,
            inline_values=run.inline_values,
            values_file=run.values_file,
            timeout_seconds=run.timeout_seconds,
            atomic=run.atomic,
            function=run.function,
            cluster_release=run.cluster_release,
        )
        control = DeploymentControl()
        result = self.deploy(request, control)
        outcome: dict[str, Any] = {
            "artifact": artifact, "stored_ref": stored_ref, "target": target, "result": result,
        }
        if not result.succeeded or check is None:
            return PipelineOutcome(**outcome)

        verification = self.verify(target, run.verify_timeout_seconds, check, control)
        outcome["verification"] = verification
        if not verification.healthy and self.config.rollback_on_verification_failure:
            logger.warning(
                "Verification of %s failed; reverting %s", target.key, request.request_id
            )
            outcome["revert"] = self.revert(request, result)
        return PipelineOutcome(**outcome)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _record(self, request: DeploymentRequest, result: DeploymentResult) -> ReleaseRecord:
        record = self.ledger.append(
            ReleaseRecord.from_deployment(request, result, actor=self.config.actor)
        )
        logger.info(
            "Recorded %s for %s (version %s)", result.status.value, request.target.key, result.version
        )
        return record

    def _write_metadata(self, request: DeploymentRequest, result: DeploymentResult) -> None:
        assert request.stored_ref is not None
        refs = [request.stored_ref.reference]
        if request.artifact.image_ref:
            refs.append(request.artifact.image_ref)
        metadata = ArtifactMetadata(
            content_refs=refs,
            version=str(result.version) if result.version is not None else "",
            source_commit=request.artifact.source_commit,
            repository=self.config.repository,
            ci_run_id=self.config.ci_run_id,
            actor=self.config.actor,
            retention_days=self.config.audit_retention_days,
        )
        try:
            self.store.put_metadata(request.stored_ref, metadata)
        except DeployforgeError as exc:
            logger.error(
                "Deployed %s but could not write its audit metadata: %s",
                request.target.key, exc,
            )
