"""Unit tests for DeploymentPipeline — stage wiring, recording and revert."""

from __future__ import annotations

import json

import pytest
import yaml

from deployforge.core.orchestrator import DeploymentPipeline, PipelineRun
from deployforge.core.verification import (
    CheckOutcome,
    CommandCheck,
    FunctionInvokeCheck,
    ReleaseReadinessCheck,
)
from deployforge.errors import BuildFailedError, ExitCode, TargetNotFoundError
from deployforge.models.config import PipelineConfig
from deployforge.models.deployments import (
    ClusterReleaseSettings,
    DeploymentStatus,
    FunctionSettings,
)


def _healthy(target) -> CheckOutcome:
    return CheckOutcome(healthy=True, detail="ok")


def _unhealthy(target) -> CheckOutcome:
    return CheckOutcome(healthy=False, detail="500 from /health")


class TestBuildRequest:
    def test_target_defaults_and_actor(self, pipeline, artifact):
        target = pipeline.resolve("orders", "production")
        request = pipeline.build_request(target, artifact)
        assert request.defaults == {"LOG_LEVEL": "info", "REGION_NAME": "east"}
        assert request.actor == "ci-bot"
        assert request.function.runtime == "python3.12"
        assert request.cluster_release is None

    def test_publish_defaults_alias_from_target(self, pipeline, artifact):
        target = pipeline.resolve("orders", "production")
        request = pipeline.build_request(
            target, artifact, function=FunctionSettings(publish_version=True)
        )
        assert request.function.update_alias == "live"

    def test_cluster_release_settings_default(self, pipeline, artifact):
        target = pipeline.resolve("web", "staging")
        request = pipeline.build_request(target, artifact)
        assert request.cluster_release == ClusterReleaseSettings()
        assert request.function is None


class TestDeploy:
    def test_every_outcome_is_recorded(self, pipeline, cluster_backend, artifact):
        target = pipeline.resolve("web", "staging")
        ok = pipeline.deploy(pipeline.build_request(target, artifact))
        cluster_backend.ready_after = None
        rolled = pipeline.deploy(pipeline.build_request(target, artifact, timeout_seconds=10))

        history = pipeline.history(target.key)
        assert [r.status for r in history] == [
            DeploymentStatus.ROLLED_BACK, DeploymentStatus.SUCCEEDED,
        ]
        assert history[0].version == 5
        assert history[0].attempted_version == 6
        assert history[0].actor == "ci-bot"
        assert ok.version == 5
        assert rolled.version == 5
        assert pipeline.ledger.verify_chain(target.key)

    def test_history_limit(self, pipeline, artifact):
        target = pipeline.resolve("web", "staging")
        for _ in range(3):
            pipeline.deploy(pipeline.build_request(target, artifact))
        assert len(pipeline.history(target.key, limit=2)) == 2

    def test_metadata_written_on_success(self, pipeline, storage, artifact):
        target = pipeline.resolve("orders", "production")
        ref = pipeline.store_artifact(artifact, target.key)
        pipeline.deploy(pipeline.build_request(
            target, artifact, stored_ref=ref,
            function=FunctionSettings(publish_version=True),
        ))
        metadata_keys = [k for k in storage.puts if ".metadata/" in k]
        assert len(metadata_keys) == 1
        record = json.loads(storage.get(metadata_keys[0]))
        assert record["version"] == "4"
        assert record["actor"] == "ci-bot"
        assert record["repository"] == "acme/orders"
        assert record["ci_run_id"] == "run-77"
        assert "expires_at" in record

    def test_metadata_failure_does_not_fail_deploy(self, pipeline, storage, artifact):
        target = pipeline.resolve("orders", "production")
        ref = pipeline.store_artifact(artifact, target.key)
        storage.unavailable = True
        result = pipeline.deploy(pipeline.build_request(target, artifact, stored_ref=ref))
        assert result.succeeded

    def test_no_metadata_without_stored_ref(self, pipeline, storage, artifact):
        target = pipeline.resolve("orders", "production")
        pipeline.deploy(pipeline.build_request(target, artifact))
        assert storage.puts == []


class TestHealthCheckSelection:
    def test_command_wins(self, pipeline):
        target = pipeline.resolve("orders", "production")
        assert isinstance(pipeline.health_check(target, command="true"), CommandCheck)

    def test_function_default(self, pipeline):
        target = pipeline.resolve("orders", "production")
        assert isinstance(pipeline.health_check(target), FunctionInvokeCheck)

    def test_cluster_default(self, pipeline):
        target = pipeline.resolve("web", "staging")
        assert isinstance(pipeline.health_check(target), ReleaseReadinessCheck)


class TestRun:
    def test_function_run_end_to_end(self, pipeline, function_backend, source_tree):
        outcome = pipeline.run(
            PipelineRun(
                service="orders",
                environment="production",
                source_dir=source_tree,
                runtime="python3.12",
                function=FunctionSettings(memory_size=512, publish_version=True),
            ),
            check=_healthy,
        )
        assert outcome.exit_code == ExitCode.SUCCEEDED
        assert outcome.result.version == 4
        assert outcome.stored_ref is not None
        assert outcome.verification.healthy
        assert outcome.revert is None
        assert function_backend.aliases["live"] == 4

    def test_unhealthy_run_is_reverted(self, pipeline, cluster_backend, source_tree):
        outcome = pipeline.run(
            PipelineRun(service="web", environment="staging", source_dir=source_tree),
            check=_unhealthy,
        )
        assert outcome.result.succeeded
        assert outcome.exit_code == ExitCode.VERIFICATION_FAILED
        assert outcome.verification.detail == "500 from /health"
        assert outcome.revert.status == DeploymentStatus.ROLLED_BACK
        assert cluster_backend.rollbacks == [4]
        assert pipeline.ledger.latest("web/staging").status == DeploymentStatus.ROLLED_BACK

    def test_unhealthy_run_kept_when_rollback_disabled(
        self, pipeline_config, packager, store, resolver, ledger, cluster_backend,
        source_tree, pipeline,
    ):
        config = pipeline_config.model_copy(update={"rollback_on_verification_failure": False})
        keep = DeploymentPipeline(
            config, packager=packager, store=store, executor=pipeline.executor,
            ledger=ledger, resolver=resolver, gate=pipeline.gate,
        )
        outcome = keep.run(
            PipelineRun(service="web", environment="staging", source_dir=source_tree),
            check=_unhealthy,
        )
        assert outcome.exit_code == ExitCode.VERIFICATION_FAILED
        assert outcome.revert is None
        assert cluster_backend.rollbacks == []

    def test_failed_deploy_skips_verification(self, pipeline, cluster_backend, source_tree):
        cluster_backend.ready_after = None
        outcome = pipeline.run(
            PipelineRun(
                service="web", environment="staging", source_dir=source_tree,
                timeout_seconds=5,
            ),
            check=_healthy,
        )
        assert outcome.result.status == DeploymentStatus.ROLLED_BACK
        assert outcome.verification is None
        assert outcome.exit_code == ExitCode.DEPLOY_ROLLED_BACK

    def test_build_failure_raises_before_deploy(self, pipeline, function_backend, source_tree):
        with pytest.raises(BuildFailedError):
            pipeline.run(PipelineRun(
                service="orders", environment="production",
                source_dir=source_tree, build_command="exit 1",
            ))
        assert function_backend.calls == []
        assert pipeline.ledger.latest("orders/production") is None

    def test_unknown_target_raises(self, pipeline, source_tree):
        with pytest.raises(TargetNotFoundError):
            pipeline.run(PipelineRun(
                service="payments", environment="production", source_dir=source_tree,
            ))


class TestResolverConfiguration:
    def test_targets_file_is_loaded_lazily(self, pipeline, tmp_dir, registry_mapping):
        path = tmp_dir / "targets.yaml"
        path.write_text(yaml.safe_dump({"services": registry_mapping}))
        lazy = DeploymentPipeline(
            PipelineConfig(), packager=pipeline.packager, store=pipeline.store,
            executor=pipeline.executor, ledger=pipeline.ledger, targets_file=path,
        )
        assert lazy.resolve("web", "staging").key == "web/staging"

    def test_no_resolver_configured(self, pipeline):
        bare = DeploymentPipeline(
            PipelineConfig(), packager=pipeline.packager, store=pipeline.store,
            executor=pipeline.executor, ledger=pipeline.ledger,
        )
        with pytest.raises(ValueError, match="targets file"):
            bare.resolve("web", "staging")
