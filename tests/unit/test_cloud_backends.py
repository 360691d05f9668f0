"""Unit tests for the aws/helm/kubectl backends with the subprocess layer stubbed."""

from __future__ import annotations

from typing import Any

import pytest

from deployforge.core.cli_runner import CliCommandError
from deployforge.errors import AuthorizationDeniedError
from deployforge.executors import aws_cli, helm_cli
from deployforge.executors.aws_cli import AwsCliFunctionBackend, StsWebIdentityCredentials
from deployforge.executors.backends import Credentials
from deployforge.executors.helm_cli import HelmCliClusterBackend
from deployforge.models.deployments import FunctionSettings


class StaticCredentials:
    def __init__(self) -> None:
        self.requests: list[tuple[str, str]] = []

    def credentials_for(self, role: str, region: str) -> Credentials:
        self.requests.append((role, region))
        return Credentials(access_key_id="ASIA1", secret_access_key="s", session_token="t")


class FakeCli:
    """Records every command and answers from a list of handlers."""

    def __init__(self) -> None:
        self.commands: list[list[str]] = []
        self.envs: list[dict[str, str]] = []
        self.handlers: list[tuple[str, Any]] = []

    def on(self, needle: str, response: Any) -> None:
        self.handlers.append((needle, response))

    def _answer(self, args, env) -> Any:
        self.commands.append(list(args))
        self.envs.append(dict(env or {}))
        joined = " ".join(args)
        for needle, response in self.handlers:
            if needle in joined:
                if isinstance(response, Exception):
                    raise response
                return response
        return None

    def run_cli(self, args, *, env=None, **kwargs) -> str:
        answer = self._answer(args, env)
        return "" if answer is None else answer

    def run_cli_json(self, args, *, env=None, **kwargs) -> Any:
        answer = self._answer(args, env)
        return {} if answer is None else answer

    def find(self, needle: str) -> list[str]:
        matches = [c for c in self.commands if needle in " ".join(c)]
        assert matches, f"no command containing {needle!r}: {self.commands}"
        return matches[-1]


@pytest.fixture
def fake_cli(monkeypatch) -> FakeCli:
    cli = FakeCli()
    for module in (aws_cli, helm_cli):
        monkeypatch.setattr(module, "run_cli", cli.run_cli)
        monkeypatch.setattr(module, "run_cli_json", cli.run_cli_json)
    return cli


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class TestStsWebIdentityCredentials:
    def test_missing_token_is_authorization_denied(self, tmp_dir):
        provider = StsWebIdentityCredentials(token_file=str(tmp_dir / "absent"))
        with pytest.raises(AuthorizationDeniedError, match="web identity token"):
            provider.credentials_for("arn:aws:iam::1:role/deploy", "us-east-1")

    def test_credentials_are_cached(self, tmp_dir, fake_cli):
        token = tmp_dir / "token"
        token.write_text("jwt\n")
        fake_cli.on("assume-role-with-web-identity", {"Credentials": {
            "AccessKeyId": "ASIA2", "SecretAccessKey": "secret",
            "SessionToken": "session", "Expiration": "2099-01-01T00:00:00Z",
        }})
        provider = StsWebIdentityCredentials(token_file=str(token))
        first = provider.credentials_for("arn:aws:iam::1:role/deploy", "us-east-1")
        second = provider.credentials_for("arn:aws:iam::1:role/deploy", "us-east-1")
        assert first is second
        assert first.as_env()["AWS_SESSION_TOKEN"] == "session"
        assert len(fake_cli.commands) == 1
        command = fake_cli.commands[0]
        assert "jwt" not in command
        assert f"file://{token.resolve()}" in command

    def test_expiring_credentials_are_refreshed(self, tmp_dir, fake_cli):
        token = tmp_dir / "token"
        token.write_text("jwt")
        fake_cli.on("assume-role-with-web-identity", {"Credentials": {
            "AccessKeyId": "ASIA2", "SecretAccessKey": "secret",
            "SessionToken": "session", "Expiration": "2000-01-01T00:00:00Z",
        }})
        provider = StsWebIdentityCredentials(token_file=str(token))
        provider.credentials_for("arn:aws:iam::1:role/deploy", "us-east-1")
        provider.credentials_for("arn:aws:iam::1:role/deploy", "us-east-1")
        assert len(fake_cli.commands) == 2

    def test_refused_role(self, tmp_dir, fake_cli):
        token = tmp_dir / "token"
        token.write_text("jwt")
        fake_cli.on("assume-role-with-web-identity", CliCommandError("exit 254"))
        provider = StsWebIdentityCredentials(token_file=str(token))
        with pytest.raises(AuthorizationDeniedError, match="Could not assume"):
            provider.credentials_for("arn:aws:iam::1:role/deploy", "us-east-1")

    def test_unreachable_endpoint_does_not_leak_token(self, tmp_dir):
        token = tmp_dir / "token"
        token.write_text("SECRET-OIDC-TOKEN-xyz")
        aws = tmp_dir / "aws"
        aws.write_text(
            "#!/bin/sh\n"
            "echo 'Could not connect to the endpoint URL' >&2\n"
            "exit 255\n"
        )
        aws.chmod(0o755)
        provider = StsWebIdentityCredentials(aws_cli=str(aws), token_file=str(token))
        with pytest.raises(AuthorizationDeniedError) as exc_info:
            provider.credentials_for("arn:aws:iam::1:role/deploy", "us-east-1")
        message = str(exc_info.value)
        assert "endpoint URL" in message
        assert "SECRET-OIDC-TOKEN-xyz" not in message


# ---------------------------------------------------------------------------
# Function backend
# ---------------------------------------------------------------------------


class TestAwsCliFunctionBackend:
    @pytest.fixture
    def backend(self) -> AwsCliFunctionBackend:
        return AwsCliFunctionBackend(StaticCredentials())

    def test_zip_upload_then_wait(self, backend, fake_cli, function_target):
        backend.update_code(function_target, zip_bytes=b"PK", architecture="arm64")
        update = fake_cli.find("update-function-code")
        assert any(arg.startswith("fileb://") for arg in update)
        assert "arm64" in update
        assert fake_cli.commands[-1][1:4] == ["lambda", "wait", "function-updated-v2"]
        assert fake_cli.envs[0]["AWS_ACCESS_KEY_ID"] == "ASIA1"

    def test_s3_reference(self, backend, fake_cli, function_target):
        backend.update_code(function_target, s3_bucket="artifacts", s3_key="orders/x.zip")
        update = fake_cli.find("update-function-code")
        assert update[update.index("--s3-bucket") + 1] == "artifacts"
        assert update[update.index("--s3-key") + 1] == "orders/x.zip"

    def test_update_code_needs_a_source(self, backend, function_target):
        with pytest.raises(ValueError):
            backend.update_code(function_target)

    def test_configuration(self, backend, fake_cli, function_target):
        backend.update_configuration(
            function_target,
            FunctionSettings(runtime="python3.12", memory_size=512, layers=["arn:layer:1"]),
            {"LOG_LEVEL": "info"},
        )
        update = fake_cli.find("update-function-configuration")
        assert update[update.index("--memory-size") + 1] == "512"
        assert '{"Variables": {"LOG_LEVEL": "info"}}' in update

    def test_publish_version(self, backend, fake_cli, function_target):
        fake_cli.on("publish-version", {"Version": "12"})
        assert backend.publish_version(function_target, "sha256:abc dr-1") == 12

    def test_missing_alias(self, backend, fake_cli, function_target):
        fake_cli.on("get-alias", CliCommandError(
            "exit 254", stderr="An error occurred (ResourceNotFoundException)"
        ))
        assert backend.get_alias_version(function_target, "live") is None

    def test_alias_version(self, backend, fake_cli, function_target):
        fake_cli.on("get-alias", {"FunctionVersion": "7"})
        assert backend.get_alias_version(function_target, "live") == 7

    def test_update_alias_creates_missing_alias(self, backend, fake_cli, function_target):
        fake_cli.on("update-alias", CliCommandError(
            "exit 254", stderr="An error occurred (ResourceNotFoundException)"
        ))
        backend.update_alias(function_target, "live", 4)
        create = fake_cli.find("create-alias")
        assert create[create.index("--function-version") + 1] == "4"

    def test_invoke_goes_through_alias(self, backend, fake_cli, function_target):
        fake_cli.on("lambda invoke", {"StatusCode": 200})
        response = backend.invoke(function_target, {"ping": True})
        assert response.status_code == 200
        invoke = fake_cli.find("lambda invoke")
        assert "orders-prod:live" in invoke


# ---------------------------------------------------------------------------
# Cluster backend
# ---------------------------------------------------------------------------


class TestHelmCliClusterBackend:
    @pytest.fixture
    def backend(self, tmp_dir) -> HelmCliClusterBackend:
        return HelmCliClusterBackend(StaticCredentials(), work_dir=tmp_dir / "helm")

    def test_kubeconfig_per_cluster(self, backend, fake_cli, cluster_target):
        backend.rollback(cluster_target, 3)
        kube = fake_cli.find("update-kubeconfig")
        assert kube[kube.index("--name") + 1] == "staging"
        assert fake_cli.envs[-1]["KUBECONFIG"].endswith("staging-us-east-1.yaml")

    def test_upgrade_arguments(self, backend, fake_cli, cluster_target):
        fake_cli.on("upgrade --install", {"version": 6})
        revision = backend.upgrade(cluster_target, {"replicaCount": 2}, timeout_seconds=120)
        assert revision == 6
        upgrade = fake_cli.find("upgrade --install")
        assert upgrade[upgrade.index("--timeout") + 1] == "120s"
        assert upgrade[upgrade.index("--namespace") + 1] == "web"
        assert "--dry-run" not in upgrade
        assert not list((backend._work_dir).glob("values-*.yaml"))

    def test_dry_run_flag(self, backend, fake_cli, cluster_target):
        fake_cli.on("upgrade --install", {"version": 6})
        backend.upgrade(cluster_target, {}, dry_run=True)
        assert "--dry-run" in fake_cli.find("upgrade --install")

    def test_current_revision_of_missing_release(self, backend, fake_cli, cluster_target):
        fake_cli.on("helm status", CliCommandError("exit 1", stderr="Error: release: not found"))
        assert backend.current_revision(cluster_target) is None

    def test_current_revision(self, backend, fake_cli, cluster_target):
        fake_cli.on("helm status", {"version": 9})
        assert backend.current_revision(cluster_target) == 9

    def test_rollback_without_revision_uninstalls(self, backend, fake_cli, cluster_target):
        backend.rollback(cluster_target, None)
        assert fake_cli.find("uninstall")[2] == "web"

    def test_readiness(self, backend, fake_cli, cluster_target):
        fake_cli.on("get deployments,statefulsets", {"items": [
            {"kind": "Deployment", "metadata": {"name": "web"},
             "spec": {"replicas": 2}, "status": {"readyReplicas": 1, "updatedReplicas": 2}},
        ]})
        status = backend.readiness(cluster_target)
        assert not status.ready
        assert "deployment/web 1/2 ready" in status.detail

    def test_chart_defaults(self, backend, fake_cli, cluster_target):
        fake_cli.on("show values", "replicaCount: 1\nimage:\n  tag: stable\n")
        assert backend.chart_defaults(cluster_target) == {
            "replicaCount": 1, "image": {"tag": "stable"},
        }

    def test_diff_against_deployed_manifest(self, backend, fake_cli, cluster_target):
        fake_cli.on("get manifest", "replicas: 1\n")
        fake_cli.on("template", "replicas: 2\n")
        diff = backend.diff(cluster_target, {"replicaCount": 2})
        assert "-replicas: 1" in diff
        assert "+replicas: 2" in diff
