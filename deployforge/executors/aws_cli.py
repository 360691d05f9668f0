"""Cloud provider backends driven through the ``aws`` CLI.

Credentials are always short-lived: the CI identity token is exchanged for
role credentials with ``sts assume-role-with-web-identity``, and every
call runs with those credentials injected into the child environment.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from deployforge.core.cli_runner import CliCommandError, run_cli, run_cli_json
from deployforge.errors import AuthorizationDeniedError
from deployforge.executors.backends import CredentialProvider, Credentials, InvokeResponse
from deployforge.models.deployments import FunctionSettings
from deployforge.models.targets import DeploymentTarget

logger = logging.getLogger(__name__)

_REFRESH_MARGIN = timedelta(minutes=5)


class StsWebIdentityCredentials:
    """Exchanges the CI identity token for per-role credentials.

    The token path comes from ``AWS_WEB_IDENTITY_TOKEN_FILE``.  Credentials
    are cached per (role, region) until shortly before they expire.
    """

    def __init__(
        self,
        *,
        aws_cli: str = "aws",
        token_file: str | None = None,
        session_name: str = "deployforge",
        duration_seconds: int = 3600,
    ) -> None:
        self._aws = aws_cli
        self._token_file = token_file or os.environ.get("AWS_WEB_IDENTITY_TOKEN_FILE", "")
        self._session_name = session_name
        self._duration = duration_seconds
        self._cache: dict[tuple[str, str], Credentials] = {}
        self._lock = threading.Lock()

    def credentials_for(self, role: str, region: str) -> Credentials:
        with self._lock:
            cached = self._cache.get((role, region))
            if cached is not None and not _expiring(cached):
                return cached
            creds = self._assume(role, region)
            self._cache[(role, region)] = creds
            return creds

    def _assume(self, role: str, region: str) -> Credentials:
        if not self._token_file or not Path(self._token_file).is_file():
            raise AuthorizationDeniedError(
                f"No web identity token available to assume {role}; "
                "set AWS_WEB_IDENTITY_TOKEN_FILE"
            )
        try:
            out = run_cli_json([
                self._aws, "sts", "assume-role-with-web-identity",
                "--role-arn", role,
                "--role-session-name", self._session_name,
                "--web-identity-token", f"file://{Path(self._token_file).resolve()}",
                "--duration-seconds", str(self._duration),
                "--region", region,
                "--output", "json",
            ])
        except CliCommandError as exc:
            raise AuthorizationDeniedError(f"Could not assume {role}: {exc}") from exc
        raw = out.get("Credentials", {})
        logger.info("Assumed role %s in %s", role, region)
        return Credentials(
            access_key_id=raw["AccessKeyId"],
            secret_access_key=raw["SecretAccessKey"],
            session_token=raw["SessionToken"],
            expiration=raw.get("Expiration"),
        )


def _expiring(creds: Credentials) -> bool:
    if creds.expiration is None:
        return False
    expiration = creds.expiration
    if expiration.tzinfo is None:
        expiration = expiration.replace(tzinfo=timezone.utc)
    return expiration - datetime.now(timezone.utc) < _REFRESH_MARGIN


class _AwsCli:
    """Shared plumbing: role credentials and region on every call."""

    def __init__(self, credentials: CredentialProvider, *, aws_cli: str = "aws") -> None:
        self._credentials = credentials
        self._aws = aws_cli

    def _env(self, target: DeploymentTarget) -> dict[str, str]:
        return self._credentials.credentials_for(target.role, target.region).as_env()

    def _run(self, target: DeploymentTarget, *args: str) -> str:
        return run_cli(
            [self._aws, *args, "--region", target.region],
            env=self._env(target),
        )

    def _run_json(self, target: DeploymentTarget, *args: str) -> Any:
        return run_cli_json(
            [self._aws, *args, "--region", target.region, "--output", "json"],
            env=self._env(target),
        )


class AwsCliFunctionBackend(_AwsCli):
    """Lambda function API over the ``aws lambda`` commands."""

    @staticmethod
    def _name(target: DeploymentTarget) -> str:
        assert target.function is not None
        return target.function.function_name

    def _wait_updated(self, target: DeploymentTarget) -> None:
        self._run(target, "lambda", "wait", "function-updated-v2",
                  "--function-name", self._name(target))

    def update_code(
        self,
        target: DeploymentTarget,
        *,
        zip_bytes: bytes | None = None,
        s3_bucket: str = "",
        s3_key: str = "",
        image_uri: str = "",
        architecture: str = "",
    ) -> None:
        args = ["lambda", "update-function-code", "--function-name", self._name(target)]
        if architecture:
            args += ["--architectures", architecture]
        if image_uri:
            self._run_json(target, *args, "--image-uri", image_uri)
        elif s3_bucket:
            self._run_json(target, *args, "--s3-bucket", s3_bucket, "--s3-key", s3_key)
        elif zip_bytes is not None:
            with tempfile.TemporaryDirectory(prefix="deployforge-") as tmp:
                path = Path(tmp) / "function.zip"
                path.write_bytes(zip_bytes)
                self._run_json(target, *args, "--zip-file", f"fileb://{path}")
        else:
            raise ValueError("update_code needs zip bytes, a storage reference, or an image")
        self._wait_updated(target)

    def update_configuration(
        self,
        target: DeploymentTarget,
        settings: FunctionSettings,
        environment: dict[str, str],
    ) -> None:
        args = ["lambda", "update-function-configuration", "--function-name", self._name(target)]
        if settings.runtime:
            args += ["--runtime", settings.runtime]
        if settings.memory_size:
            args += ["--memory-size", str(settings.memory_size)]
        if settings.timeout_seconds:
            args += ["--timeout", str(settings.timeout_seconds)]
        if settings.layers:
            args += ["--layers", *settings.layers]
        if environment:
            args += ["--environment", json.dumps({"Variables": environment})]
        self._run_json(target, *args)
        self._wait_updated(target)

    def publish_version(self, target: DeploymentTarget, description: str = "") -> int:
        out = self._run_json(
            target, "lambda", "publish-version",
            "--function-name", self._name(target),
            "--description", description[:256],
        )
        return int(out["Version"])

    def get_alias_version(self, target: DeploymentTarget, alias: str) -> int | None:
        try:
            out = self._run_json(
                target, "lambda", "get-alias",
                "--function-name", self._name(target), "--name", alias,
            )
        except CliCommandError as exc:
            if "ResourceNotFoundException" in exc.stderr:
                return None
            raise
        version = out.get("FunctionVersion", "")
        return int(version) if version.isdigit() else None

    def update_alias(self, target: DeploymentTarget, alias: str, version: int) -> None:
        args = ["--function-name", self._name(target), "--name", alias,
                "--function-version", str(version)]
        try:
            self._run_json(target, "lambda", "update-alias", *args)
        except CliCommandError as exc:
            if "ResourceNotFoundException" not in exc.stderr:
                raise
            logger.info("Alias %s does not exist on %s; creating it", alias, self._name(target))
            self._run_json(target, "lambda", "create-alias", *args)

    def invoke(self, target: DeploymentTarget, payload: dict[str, Any]) -> InvokeResponse:
        assert target.function is not None
        name = self._name(target)
        if target.function.alias:
            name = f"{name}:{target.function.alias}"
        with tempfile.TemporaryDirectory(prefix="deployforge-") as tmp:
            outfile = Path(tmp) / "response.json"
            out = self._run_json(
                target, "lambda", "invoke",
                "--function-name", name,
                "--cli-binary-format", "raw-in-base64-out",
                "--payload", json.dumps(payload),
                "--log-type", "Tail",
                str(outfile),
            )
            body = outfile.read_text() if outfile.exists() else ""
        error = out.get("FunctionError", "")
        if error and out.get("LogResult"):
            logger.debug("Invoke log: %s", base64.b64decode(out["LogResult"]).decode(errors="replace"))
        return InvokeResponse(
            status_code=int(out.get("StatusCode", 0)), function_error=error, body=body,
        )
