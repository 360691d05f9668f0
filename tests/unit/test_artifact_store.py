"""Unit tests for the ArtifactStore — idempotent, content-keyed storage."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from deployforge.core.artifact_store import ArtifactStore
from deployforge.errors import ArtifactIntegrityError, ExitCode, StoreUnavailableError
from deployforge.models.artifacts import ArtifactMetadata


class TestPut:
    def test_put_returns_reference(self, store, artifact):
        ref = store.put(artifact, "orders/production")
        assert ref.object_key == f"orders/production/{artifact.digest}.zip"
        assert ref.content_hash == artifact.content_hash
        assert ref.size_bytes == artifact.size_bytes
        assert ref.reference.startswith("file://")
        assert ref.destination_key == "orders/production"

    def test_put_is_idempotent(self, store, storage, artifact):
        first = store.put(artifact, "orders/production")
        second = store.put(artifact, "orders/production")
        assert first == second
        assert storage.puts == [first.object_key]

    def test_different_destinations_write_separately(self, store, storage, artifact):
        store.put(artifact, "orders/production")
        store.put(artifact, "orders/staging")
        assert len(storage.puts) == 2

    def test_backend_failure_is_store_unavailable(self, store, storage, artifact):
        storage.unavailable = True
        with pytest.raises(StoreUnavailableError) as exc_info:
            store.put(artifact, "orders/production")
        assert exc_info.value.exit_code == ExitCode.STORE_UNAVAILABLE
        assert artifact.local_path.exists()

    def test_existing_object_with_other_hash_is_integrity_error(self, store, storage, artifact):
        key = ArtifactStore.object_key(artifact, "orders/production")
        storage.put(key, b"not the artifact", {})
        with pytest.raises(ArtifactIntegrityError):
            store.put(artifact, "orders/production")

    def test_bucket_is_carried_on_reference(self, storage, artifact):
        storage.bucket = "deploy-artifacts"
        store = ArtifactStore(storage)
        assert store.put(artifact, "orders/production").bucket == "deploy-artifacts"


class TestGet:
    def test_get_round_trips_bytes(self, store, artifact):
        ref = store.put(artifact, "orders/production")
        assert store.get(ref) == artifact.local_path.read_bytes()
        assert store.exists(ref)

    def test_corrupted_object_fails_integrity(self, store, storage, artifact):
        ref = store.put(artifact, "orders/production")
        (storage._base / ref.object_key).write_bytes(b"corrupted")
        with pytest.raises(ArtifactIntegrityError):
            store.get(ref)


class TestRequiresStore:
    def test_threshold_is_inclusive(self, storage, artifact):
        at_limit = ArtifactStore(storage, inline_deploy_limit_bytes=artifact.size_bytes)
        above = ArtifactStore(storage, inline_deploy_limit_bytes=artifact.size_bytes + 1)
        assert at_limit.requires_store(artifact) is True
        assert above.requires_store(artifact) is False


class TestMetadata:
    def test_metadata_written_next_to_artifact(self, store, storage, artifact):
        ref = store.put(artifact, "orders/production")
        stamp = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        metadata = ArtifactMetadata(
            content_refs=[ref.reference],
            version="7",
            source_commit="abc123",
            repository="acme/orders",
            ci_run_id="run-1",
            actor="ci-bot",
            timestamp=stamp,
            retention_days=30,
        )
        key = store.put_metadata(ref, metadata)
        assert key.startswith(f"{ref.object_key}.metadata/")

        record = json.loads(storage.get(key))
        assert record["version"] == "7"
        assert record["actor"] == "ci-bot"
        assert record["content_refs"] == [ref.reference]
        expires = datetime.fromisoformat(record["expires_at"])
        assert expires == stamp + timedelta(days=30)

    def test_expires_at_follows_retention(self):
        now = datetime.now(timezone.utc)
        metadata = ArtifactMetadata(content_refs=["x"], timestamp=now, retention_days=90)
        assert metadata.expires_at == now + timedelta(days=90)
