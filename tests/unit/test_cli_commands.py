"""Unit tests for the CLI — command registration, output and exit codes.

Every command runs against a pipeline wired to in-memory fakes, passed in
through ``CliState`` as the Typer context object.
"""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from deployforge.cli.app import app
from deployforge.cli.state import CliState
from deployforge.config import DeployforgeSettings
from deployforge.errors import AuthorizationDeniedError, ExitCode
from deployforge.models.artifacts import StoredArtifactRef
from deployforge.models.deployments import DeploymentStatus

runner = CliRunner()


@pytest.fixture
def state(pipeline) -> CliState:
    settings = DeployforgeSettings(environment="development", actor="ci-bot")
    return CliState(settings, pipeline_factory=lambda s: pipeline)


@pytest.fixture
def manifest(tmp_dir, artifact):
    path = tmp_dir / "artifact.json"
    path.write_text(artifact.model_dump_json())
    return path


def invoke(state: CliState, *args: str):
    return runner.invoke(app, list(args), obj=state)


# ---------------------------------------------------------------------------
# Test: CLI help and registration
# ---------------------------------------------------------------------------


class TestCliApp:
    """The CLI must register all expected commands and show help."""

    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("package", "store", "resolve-target", "deploy", "verify", "history"):
            assert command in result.output

    @pytest.mark.parametrize(
        "command", ["package", "store", "resolve-target", "deploy", "verify", "history"]
    )
    def test_command_help(self, command):
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0


# ---------------------------------------------------------------------------
# package / store
# ---------------------------------------------------------------------------


class TestPackageCommand:
    def test_package_writes_manifest(self, state, source_tree, tmp_dir):
        out = tmp_dir / "out" / "artifact.json"
        result = invoke(state, "package", str(source_tree), "--runtime", "python3.12", "-o", str(out))
        assert result.exit_code == 0, result.output
        manifest = json.loads(out.read_text())
        assert manifest["content_hash"].startswith("sha256:")
        assert manifest["runtime"] == "python3.12"
        assert manifest["file_count"] == 3

    def test_build_failure_exit_code(self, state, source_tree):
        result = invoke(state, "package", str(source_tree), "--build", "exit 1")
        assert result.exit_code == ExitCode.PACKAGING_FAILED


class TestStoreCommand:
    def test_store_is_idempotent(self, state, manifest, tmp_dir, storage):
        first = tmp_dir / "ref1.json"
        second = tmp_dir / "ref2.json"
        for out in (first, second):
            result = invoke(state, "store", str(manifest), "-s", "orders", "-e", "production",
                            "-o", str(out))
            assert result.exit_code == 0, result.output
        ref1 = StoredArtifactRef.model_validate_json(first.read_text())
        ref2 = StoredArtifactRef.model_validate_json(second.read_text())
        assert ref1 == ref2
        assert len(storage.puts) == 1

    def test_store_unavailable_exit_code(self, state, manifest, storage):
        storage.unavailable = True
        result = invoke(state, "store", str(manifest), "-s", "orders", "-e", "production")
        assert result.exit_code == ExitCode.STORE_UNAVAILABLE

    def test_missing_manifest_is_usage_error(self, state, tmp_dir):
        result = invoke(state, "store", str(tmp_dir / "nope.json"), "-s", "orders", "-e", "prod")
        assert result.exit_code == ExitCode.USAGE


# ---------------------------------------------------------------------------
# resolve-target
# ---------------------------------------------------------------------------


class TestResolveTargetCommand:
    def test_resolve_json(self, state):
        result = invoke(state, "resolve-target", "-s", "orders", "-e", "production", "--json")
        assert result.exit_code == 0
        assert "orders-prod" in result.output

    def test_resolve_panel(self, state):
        result = invoke(state, "resolve-target", "-s", "web", "-e", "staging")
        assert result.exit_code == 0
        assert "web/staging" in result.output

    def test_not_found(self, state):
        result = invoke(state, "resolve-target", "-s", "orders", "-e", "qa")
        assert result.exit_code == ExitCode.TARGET_NOT_FOUND

    def test_ambiguous(self, state, registry_mapping):
        entry = registry_mapping["orders"]["production"]
        registry_mapping["orders"]["production"] = [entry, dict(entry)]
        result = invoke(state, "resolve-target", "-s", "orders", "-e", "production")
        assert result.exit_code == ExitCode.AMBIGUOUS_TARGET


# ---------------------------------------------------------------------------
# deploy
# ---------------------------------------------------------------------------


class TestDeployCommand:
    def test_function_deploy(self, state, manifest, pipeline, function_backend):
        result = invoke(
            state, "deploy", str(manifest), "-s", "orders", "-e", "production",
            "--memory", "512", "--timeout", "30", "--publish",
            "--env-json", '{"FEATURE_FLAG": true}',
        )
        assert result.exit_code == 0, result.output
        assert function_backend.aliases["live"] == 4
        settings, environment = function_backend.config_updates[0]
        assert settings.memory_size == 512
        assert environment["FEATURE_FLAG"] == "true"
        assert environment["LOG_LEVEL"] == "info"
        assert pipeline.ledger.latest("orders/production").version == 4

    def test_cluster_deploy_with_overrides(self, state, manifest, cluster_backend):
        result = invoke(
            state, "deploy", str(manifest), "-s", "web", "-e", "staging",
            "--set", "image.tag=v2", "--set", "replicaCount=3",
        )
        assert result.exit_code == 0, result.output
        values = cluster_backend.upgrades[0]["values"]
        assert values["image"]["tag"] == "v2"
        assert values["replicaCount"] == 3

    def test_rolled_back_exit_code(self, state, manifest, cluster_backend, pipeline):
        cluster_backend.ready_after = None
        result = invoke(
            state, "deploy", str(manifest), "-s", "web", "-e", "staging",
            "--deploy-timeout", "10",
        )
        assert result.exit_code == ExitCode.DEPLOY_ROLLED_BACK
        latest = pipeline.ledger.latest("web/staging")
        assert latest.status == DeploymentStatus.ROLLED_BACK
        assert latest.version == 4

    def test_timed_out_exit_code(self, state, manifest, cluster_backend):
        cluster_backend.ready_after = None
        result = invoke(
            state, "deploy", str(manifest), "-s", "web", "-e", "staging",
            "--deploy-timeout", "10", "--no-atomic",
        )
        assert result.exit_code == ExitCode.DEPLOY_TIMED_OUT

    def test_authorization_denied_exit_code(self, state, manifest, function_backend):
        function_backend.failures["update_code"] = AuthorizationDeniedError("AccessDenied")
        result = invoke(state, "deploy", str(manifest), "-s", "orders", "-e", "production")
        assert result.exit_code == ExitCode.AUTHORIZATION_DENIED

    def test_invalid_override_is_usage_error(self, state, manifest):
        result = invoke(state, "deploy", str(manifest), "-s", "web", "-e", "staging",
                        "--set", "replicaCount")
        assert result.exit_code == ExitCode.USAGE

    def test_alias_without_publish_is_usage_error(self, state, manifest, function_backend):
        result = invoke(state, "deploy", str(manifest), "-s", "orders", "-e", "production",
                        "--alias", "live")
        assert result.exit_code == ExitCode.USAGE
        assert function_backend.calls == []

    def test_invalid_values_json(self, state, manifest):
        result = invoke(state, "deploy", str(manifest), "-s", "web", "-e", "staging",
                        "--values-json", "[1, 2]")
        assert result.exit_code == ExitCode.USAGE

    def test_verification_failure_reverts(self, state, manifest, cluster_backend):
        result = invoke(
            state, "deploy", str(manifest), "-s", "web", "-e", "staging",
            "--verify-command", "exit 1", "--verify-timeout", "1",
        )
        assert result.exit_code == ExitCode.VERIFICATION_FAILED
        assert cluster_backend.rollbacks == [4]

    def test_unknown_target(self, state, manifest):
        result = invoke(state, "deploy", str(manifest), "-s", "payments", "-e", "production")
        assert result.exit_code == ExitCode.TARGET_NOT_FOUND


# ---------------------------------------------------------------------------
# verify / history
# ---------------------------------------------------------------------------


class TestVerifyCommand:
    def test_healthy(self, state):
        result = invoke(state, "verify", "-s", "web", "-e", "staging", "--command", "true")
        assert result.exit_code == 0
        assert "HEALTHY" in result.output

    def test_unhealthy(self, state):
        result = invoke(state, "verify", "-s", "web", "-e", "staging",
                        "--command", "false", "--timeout", "1")
        assert result.exit_code == ExitCode.VERIFICATION_FAILED

    def test_function_invoke_default(self, state, function_backend):
        result = invoke(state, "verify", "-s", "orders", "-e", "production",
                        "--payload", '{"ping": 1}')
        assert result.exit_code == 0
        assert "invoke" in function_backend.calls


class TestHistoryCommand:
    def test_empty(self, state):
        result = invoke(state, "history", "-s", "web", "-e", "staging")
        assert result.exit_code == 0
        assert "No releases" in result.output

    def test_json_lines_newest_first(self, state, manifest, cluster_backend):
        invoke(state, "deploy", str(manifest), "-s", "web", "-e", "staging")
        cluster_backend.ready_after = None
        invoke(state, "deploy", str(manifest), "-s", "web", "-e", "staging",
               "--deploy-timeout", "5")
        result = invoke(state, "history", "-s", "web", "-e", "staging", "--json",
                        "--verify-chain")
        assert result.exit_code == 0
        lines = [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]
        assert [line["status"] for line in lines] == ["rolled_back", "succeeded"]
        assert "intact" in result.output


# ---------------------------------------------------------------------------
# Test: pipeline construction failures
# ---------------------------------------------------------------------------


class TestPipelineConstructionFailure:
    """A refused production configuration exits as a usage error."""

    @pytest.mark.parametrize(
        "args",
        [
            ["history", "-s", "web", "-e", "staging"],
            ["resolve-target", "-s", "web", "-e", "staging"],
        ],
    )
    def test_production_without_actor(self, tmp_dir, args):
        settings = DeployforgeSettings(
            environment="production",
            actor="",
            ledger_path=tmp_dir / "releases.db",
        )
        result = runner.invoke(app, args, obj=CliState(settings))
        assert result.exit_code == ExitCode.USAGE
        assert not (tmp_dir / "releases.db").exists()
