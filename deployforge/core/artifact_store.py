"""Artifact Store — durable, content-keyed storage for packaged artifacts.

Object layout: ``{destination_key}/{sha256}{.zip|.image.json}``.  Because
the content hash is part of the key, ``put`` is idempotent: re-uploading
identical content under the same destination key performs no write and
returns the same reference.  There is no delete.

Artifacts at or above ``inline_deploy_limit_bytes`` must be stored here
before deployment; smaller ones may be stored for audit only.
"""

from __future__ import annotations

import logging
import tempfile
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from deployforge.core.cli_runner import CliCommandError, run_cli, run_cli_json
from deployforge.core.hasher import canonical_json_bytes, sha256_file, sha256_hex
from deployforge.errors import ArtifactIntegrityError, StoreUnavailableError
from deployforge.models.artifacts import (
    Artifact,
    ArtifactMetadata,
    OutputFormat,
    StoredArtifactRef,
)

logger = logging.getLogger(__name__)

_HASH_METADATA_KEY = "sha256"


# ---------------------------------------------------------------------------
# Object storage backends
# ---------------------------------------------------------------------------


@runtime_checkable
class ObjectStorage(Protocol):
    """Minimal object storage contract used by ``ArtifactStore``.

    Implementations raise ``OSError`` or ``CliCommandError`` when the
    backend is unreachable; the store translates those into
    ``StoreUnavailableError``.
    """

    bucket: str

    def put(self, key: str, data: bytes, metadata: Mapping[str, str]) -> None:
        ...

    def get(self, key: str) -> bytes:
        ...

    def head(self, key: str) -> dict[str, str] | None:
        """Return object metadata, or None if the key does not exist."""
        ...

    def url(self, key: str) -> str:
        ...


class LocalObjectStorage:
    """Filesystem-backed object storage rooted at *base_path*."""

    bucket = ""

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self._base / key).resolve()
        if self._base.resolve() not in path.parents:
            raise ValueError(f"Object key escapes storage root: {key!r}")
        return path

    def put(self, key: str, data: bytes, metadata: Mapping[str, str]) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(path.name + ".partial")
        partial.write_bytes(data)
        partial.replace(path)

    def get(self, key: str) -> bytes:
        return self._path(key).read_bytes()

    def head(self, key: str) -> dict[str, str] | None:
        path = self._path(key)
        if not path.exists():
            return None
        return {_HASH_METADATA_KEY: sha256_file(path)}

    def url(self, key: str) -> str:
        return self._path(key).as_uri()


class AwsS3CliStorage:
    """S3 object storage driven through the cloud CLI.

    Parameters
    ----------
    bucket:
        Destination bucket; must already exist.
    credentials_env:
        Callable returning environment variables carrying short-lived
        credentials for the storage role.
    """

    def __init__(
        self,
        bucket: str,
        *,
        aws_cli: str = "aws",
        region: str = "",
        credentials_env: Callable[[], Mapping[str, str]] | None = None,
    ) -> None:
        self.bucket = bucket
        self._cli = aws_cli
        self._region = region
        self._credentials_env = credentials_env

    def _base_args(self) -> list[str]:
        args = [self._cli, "s3api"]
        if self._region:
            args += ["--region", self._region]
        return args

    def _env(self) -> Mapping[str, str] | None:
        return self._credentials_env() if self._credentials_env else None

    def put(self, key: str, data: bytes, metadata: Mapping[str, str]) -> None:
        with tempfile.NamedTemporaryFile(suffix=".upload") as fh:
            fh.write(data)
            fh.flush()
            meta = ",".join(f"{k}={v}" for k, v in sorted(metadata.items()))
            args = [
                *self._base_args(), "put-object",
                "--bucket", self.bucket, "--key", key, "--body", fh.name,
            ]
            if meta:
                args += ["--metadata", meta]
            run_cli(args, env=self._env(), timeout=900)

    def get(self, key: str) -> bytes:
        with tempfile.TemporaryDirectory() as tmp:
            out = Path(tmp) / "object"
            run_cli(
                [*self._base_args(), "get-object", "--bucket", self.bucket,
                 "--key", key, str(out)],
                env=self._env(),
                timeout=900,
            )
            return out.read_bytes()

    def head(self, key: str) -> dict[str, str] | None:
        try:
            response = run_cli_json(
                [*self._base_args(), "head-object", "--bucket", self.bucket, "--key", key],
                env=self._env(),
                timeout=60,
            )
        except CliCommandError as exc:
            if "Not Found" in exc.stderr or "404" in exc.stderr:
                return None
            raise
        return {k.lower(): v for k, v in response.get("Metadata", {}).items()}

    def url(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"


# ---------------------------------------------------------------------------
# Artifact store
# ---------------------------------------------------------------------------


class ArtifactStore:
    """Idempotent ``put``/``get`` of packaged artifacts over ``ObjectStorage``.

    Parameters
    ----------
    storage:
        The object storage backend.
    inline_deploy_limit_bytes:
        Artifacts at or above this size must be stored before deploying.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        *,
        inline_deploy_limit_bytes: int = 50 * 1024 * 1024,
    ) -> None:
        self._storage = storage
        self.inline_deploy_limit_bytes = inline_deploy_limit_bytes

    def requires_store(self, artifact: Artifact) -> bool:
        """Whether *artifact* is too large to deploy inline."""
        return artifact.size_bytes >= self.inline_deploy_limit_bytes

    @staticmethod
    def object_key(artifact: Artifact, destination_key: str) -> str:
        suffix = ".image.json" if artifact.output_format == OutputFormat.IMAGE else ".zip"
        return f"{destination_key.strip('/')}/{artifact.digest}{suffix}"

    # ------------------------------------------------------------------
    # Put
    # ------------------------------------------------------------------

    def put(self, artifact: Artifact, destination_key: str) -> StoredArtifactRef:
        """Persist *artifact* under *destination_key* and return its reference.

        A second call with identical content and key performs no write.
        Raises ``StoreUnavailableError`` if the backend fails; the local
        artifact is left untouched for retry.
        """
        key = self.object_key(artifact, destination_key)
        payload_hash = self._payload_hash(artifact)
        try:
            existing = self._storage.head(key)
            if existing is not None:
                if existing.get(_HASH_METADATA_KEY) != payload_hash:
                    raise ArtifactIntegrityError(
                        f"Stored object {key} does not match {artifact.content_hash}"
                    )
                logger.debug("Artifact %s already stored at %s", artifact.content_hash, key)
            else:
                self._storage.put(
                    key, self._payload(artifact), {_HASH_METADATA_KEY: payload_hash}
                )
                logger.info("Stored artifact %s at %s", artifact.content_hash, key)
            url = self._storage.url(key)
        except (OSError, CliCommandError) as exc:
            raise StoreUnavailableError(
                f"Artifact store unavailable while writing {key}: {exc}"
            ) from exc

        return StoredArtifactRef(
            reference=url,
            destination_key=destination_key,
            object_key=key,
            content_hash=artifact.content_hash,
            size_bytes=artifact.size_bytes,
            bucket=self._storage.bucket,
        )

    def put_metadata(self, ref: StoredArtifactRef, metadata: ArtifactMetadata) -> str:
        """Write the audit metadata record next to a stored artifact."""
        stamp = metadata.timestamp.strftime("%Y%m%dT%H%M%S%fZ")
        key = f"{ref.object_key}.metadata/{stamp}.json"
        record = metadata.model_dump(mode="json")
        record["expires_at"] = metadata.expires_at.isoformat()
        data = canonical_json_bytes(record)
        try:
            self._storage.put(key, data, {_HASH_METADATA_KEY: sha256_hex(data)})
        except (OSError, CliCommandError) as exc:
            raise StoreUnavailableError(
                f"Artifact store unavailable while writing {key}: {exc}"
            ) from exc
        return key

    # ------------------------------------------------------------------
    # Get
    # ------------------------------------------------------------------

    def get(self, ref: StoredArtifactRef) -> bytes:
        """Return the stored bytes for *ref*, verifying their hash."""
        try:
            data = self._storage.get(ref.object_key)
        except FileNotFoundError:
            raise
        except (OSError, CliCommandError) as exc:
            raise StoreUnavailableError(
                f"Artifact store unavailable while reading {ref.object_key}: {exc}"
            ) from exc
        if ref.object_key.endswith(".zip") and f"sha256:{sha256_hex(data)}" != ref.content_hash:
            raise ArtifactIntegrityError(
                f"Stored object {ref.object_key} failed integrity check"
            )
        return data

    def exists(self, ref: StoredArtifactRef) -> bool:
        try:
            return self._storage.head(ref.object_key) is not None
        except (OSError, CliCommandError) as exc:
            raise StoreUnavailableError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _payload(artifact: Artifact) -> bytes:
        if artifact.output_format == OutputFormat.IMAGE:
            return canonical_json_bytes({
                "image_ref": artifact.image_ref,
                "digest": artifact.content_hash,
                "source_commit": artifact.source_commit,
            })
        if artifact.local_path is None:
            raise StoreUnavailableError(
                f"Artifact {artifact.content_hash} has no local copy to upload"
            )
        return Path(artifact.local_path).read_bytes()

    @staticmethod
    def _payload_hash(artifact: Artifact) -> str:
        if artifact.output_format == OutputFormat.IMAGE:
            return sha256_hex(ArtifactStore._payload(artifact))
        return artifact.digest
