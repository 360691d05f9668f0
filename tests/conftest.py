"""Shared test fixtures for deployforge.

External collaborators (function API, chart manager, object storage) are
replaced by in-memory fakes; polling runs against a fake clock so no test
waits in real time.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

from deployforge.core.artifact_store import ArtifactStore, LocalObjectStorage
from deployforge.core.orchestrator import DeploymentPipeline
from deployforge.core.packager import ArtifactPackager
from deployforge.core.release_ledger import ReleaseLedger
from deployforge.core.target_lock import TargetLockRegistry
from deployforge.core.target_resolver import InMemoryTargetRegistry, TargetResolver
from deployforge.core.verification import VerificationGate
from deployforge.executors.backends import InvokeResponse, ReadinessStatus
from deployforge.executors.cluster_release import ClusterReleaseExecutor
from deployforge.executors.dispatcher import DeploymentExecutor
from deployforge.executors.function import FunctionExecutor
from deployforge.models.artifacts import Artifact
from deployforge.models.config import PipelineConfig, PollPolicy
from deployforge.models.deployments import FunctionSettings
from deployforge.models.targets import (
    ClusterReleaseCoordinates,
    DeploymentTarget,
    FunctionCoordinates,
    TargetKind,
)

FAST_POLL = PollPolicy(initial_interval=1.0, max_interval=4.0, backoff_factor=2.0)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeFunctionBackend:
    """In-memory function API with per-method failure injection."""

    def __init__(self, *, latest_version: int = 0, aliases: Mapping[str, int] | None = None) -> None:
        self.latest_version = latest_version
        self.aliases: dict[str, int] = dict(aliases or {})
        self.code_updates: list[dict[str, Any]] = []
        self.config_updates: list[tuple[FunctionSettings, dict[str, str]]] = []
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.invoke_responses: list[InvokeResponse] = []
        self.version_step = 1

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if method in self.failures:
            raise self.failures[method]

    def update_code(self, target: DeploymentTarget, **kwargs: Any) -> None:
        self._enter("update_code")
        self.code_updates.append(kwargs)

    def update_configuration(
        self, target: DeploymentTarget, settings: FunctionSettings, environment: dict[str, str]
    ) -> None:
        self._enter("update_configuration")
        self.config_updates.append((settings, environment))

    def publish_version(self, target: DeploymentTarget, description: str = "") -> int:
        self._enter("publish_version")
        self.latest_version += self.version_step
        return self.latest_version

    def get_alias_version(self, target: DeploymentTarget, alias: str) -> int | None:
        self._enter("get_alias_version")
        return self.aliases.get(alias)

    def update_alias(self, target: DeploymentTarget, alias: str, version: int) -> None:
        self._enter("update_alias")
        self.aliases[alias] = version

    def invoke(self, target: DeploymentTarget, payload: dict[str, Any]) -> InvokeResponse:
        self._enter("invoke")
        if self.invoke_responses:
            return self.invoke_responses.pop(0)
        return InvokeResponse(status_code=200, body='{"ok": true}')


class FakeClusterBackend:
    """In-memory chart manager.

    ``ready_after`` is the number of readiness checks that report not
    ready before the release becomes ready; ``None`` means never.
    """

    def __init__(
        self,
        *,
        revision: int | None = None,
        chart_values: dict[str, Any] | None = None,
        ready_after: int | None = 0,
    ) -> None:
        self.revision = revision
        self.chart_values = chart_values or {}
        self.ready_after = ready_after
        self.readiness_checks = 0
        self.namespaces: set[str] = set()
        self.namespace_calls = 0
        self.upgrades: list[dict[str, Any]] = []
        self.rollbacks: list[int | None] = []
        self.uninstalled = False
        self.failures: dict[str, Exception] = {}
        self.upgrade_started = threading.Event()
        self.upgrade_gate: threading.Event | None = None
        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def _enter(self, method: str) -> None:
        if method in self.failures:
            raise self.failures[method]

    def ensure_namespace(self, target: DeploymentTarget) -> None:
        self._enter("ensure_namespace")
        self.namespace_calls += 1
        assert target.cluster_release is not None
        self.namespaces.add(target.cluster_release.namespace)

    def chart_defaults(self, target: DeploymentTarget) -> dict[str, Any]:
        self._enter("chart_defaults")
        return dict(self.chart_values)

    def current_revision(self, target: DeploymentTarget) -> int | None:
        self._enter("current_revision")
        return self.revision

    def diff(self, target: DeploymentTarget, values: dict[str, Any]) -> str:
        self._enter("diff")
        return f"+ values: {sorted(values)}"

    def upgrade(
        self,
        target: DeploymentTarget,
        values: dict[str, Any],
        *,
        dry_run: bool = False,
        timeout_seconds: float = 300.0,
    ) -> int:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.upgrade_started.set()
            if self.upgrade_gate is not None:
                self.upgrade_gate.wait(timeout=5)
            self._enter("upgrade")
            self.upgrades.append({"values": values, "dry_run": dry_run})
            new_revision = (self.revision or 0) + 1
            if not dry_run:
                self.revision = new_revision
            self.readiness_checks = 0
            return new_revision
        finally:
            with self._lock:
                self.in_flight -= 1

    def readiness(self, target: DeploymentTarget) -> ReadinessStatus:
        self._enter("readiness")
        self.readiness_checks += 1
        if self.ready_after is not None and self.readiness_checks > self.ready_after:
            return ReadinessStatus(ready=True, detail="1/1 ready")
        return ReadinessStatus(ready=False, detail="deployment/web 0/1 ready")

    def rollback(
        self, target: DeploymentTarget, revision: int | None, *, timeout_seconds: float = 300.0
    ) -> None:
        self._enter("rollback")
        self.rollbacks.append(revision)
        if revision is None:
            self.uninstalled = True
            self.revision = None
        else:
            self.revision = revision


class CountingStorage(LocalObjectStorage):
    """Local storage that counts physical writes."""

    def __init__(self, base_path: Path, *, bucket: str = "") -> None:
        super().__init__(base_path)
        self.bucket = bucket
        self.puts: list[str] = []
        self.unavailable = False

    def put(self, key: str, data: bytes, metadata: Mapping[str, str]) -> None:
        if self.unavailable:
            raise OSError("storage offline")
        self.puts.append(key)
        super().put(key, data, metadata)

    def head(self, key: str) -> dict[str, str] | None:
        if self.unavailable:
            raise OSError("storage offline")
        return super().head(key)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(tmp_dir: Path) -> ReleaseLedger:
    """Provide a fresh ReleaseLedger backed by a temp SQLite database."""
    return ReleaseLedger(tmp_dir / "releases.db")


@pytest.fixture
def storage(tmp_dir: Path) -> CountingStorage:
    return CountingStorage(tmp_dir / "objects")


@pytest.fixture
def store(storage: CountingStorage) -> ArtifactStore:
    return ArtifactStore(storage, inline_deploy_limit_bytes=1024 * 1024)


@pytest.fixture
def packager(tmp_dir: Path) -> ArtifactPackager:
    return ArtifactPackager(tmp_dir / "work", inline_deploy_limit_bytes=1024 * 1024)


@pytest.fixture
def source_tree(tmp_dir: Path) -> Path:
    """A small function source tree with files that must never be packaged."""
    root = tmp_dir / "src"
    (root / "app").mkdir(parents=True)
    (root / "tests").mkdir()
    (root / ".git").mkdir()
    (root / "handler.py").write_text("def handler(event, context):\n    return {'ok': True}\n")
    (root / "app" / "__init__.py").write_text("")
    (root / "app" / "logic.py").write_text("VALUE = 42\n")
    (root / "tests" / "test_handler.py").write_text("def test_ok():\n    pass\n")
    (root / ".git" / "config").write_text("[core]\n")
    (root / ".env").write_text("SECRET=hunter2\n")
    return root


@pytest.fixture
def function_target() -> DeploymentTarget:
    return DeploymentTarget(
        kind=TargetKind.FUNCTION,
        service="orders",
        environment="production",
        region="us-east-1",
        role="arn:aws:iam::123456789012:role/deploy-orders",
        function=FunctionCoordinates(function_name="orders-prod", alias="live"),
    )


@pytest.fixture
def cluster_target() -> DeploymentTarget:
    return DeploymentTarget(
        kind=TargetKind.CLUSTER_RELEASE,
        service="web",
        environment="staging",
        region="us-east-1",
        role="arn:aws:iam::123456789012:role/deploy-staging",
        cluster_release=ClusterReleaseCoordinates(
            cluster_name="staging",
            namespace="web",
            release_name="web",
            chart_ref="./charts/web",
        ),
    )


@pytest.fixture
def registry_mapping() -> dict[str, Any]:
    return {
        "orders": {
            "production": {
                "kind": "function",
                "region": "us-east-1",
                "role": "arn:aws:iam::123456789012:role/deploy-orders",
                "function_name": "orders-prod",
                "alias": "live",
                "defaults": {"LOG_LEVEL": "info", "REGION_NAME": "east"},
            },
        },
        "web": {
            "staging": {
                "kind": "cluster-release",
                "region": "us-east-1",
                "role": "arn:aws:iam::123456789012:role/deploy-staging",
                "cluster_name": "staging",
                "namespace": "web",
                "release_name": "web",
                "chart_ref": "./charts/web",
                "defaults": {"replicaCount": 2},
            },
        },
    }


@pytest.fixture
def resolver(registry_mapping: dict[str, Any]) -> TargetResolver:
    return TargetResolver(InMemoryTargetRegistry(registry_mapping))


@pytest.fixture
def function_backend() -> FakeFunctionBackend:
    return FakeFunctionBackend(latest_version=3, aliases={"live": 3})


@pytest.fixture
def cluster_backend() -> FakeClusterBackend:
    return FakeClusterBackend(revision=4, chart_values={"image": {"tag": "stable"}, "replicaCount": 1})


@pytest.fixture
def function_executor(function_backend: FakeFunctionBackend, clock: FakeClock) -> FunctionExecutor:
    return FunctionExecutor(
        function_backend,
        inline_deploy_limit_bytes=1024 * 1024,
        poll_policy=FAST_POLL,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def cluster_executor(cluster_backend: FakeClusterBackend, clock: FakeClock) -> ClusterReleaseExecutor:
    return ClusterReleaseExecutor(
        cluster_backend, poll_policy=FAST_POLL, clock=clock, sleep=clock.sleep
    )


@pytest.fixture
def pipeline_config(tmp_dir: Path) -> PipelineConfig:
    return PipelineConfig(
        ledger_db_path=tmp_dir / "releases.db",
        artifact_store_path=tmp_dir / "objects",
        work_dir=tmp_dir / "work",
        inline_deploy_limit_bytes=1024 * 1024,
        poll=FAST_POLL,
        actor="ci-bot",
        repository="acme/orders",
        ci_run_id="run-77",
    )


@pytest.fixture
def pipeline(
    pipeline_config: PipelineConfig,
    packager: ArtifactPackager,
    store: ArtifactStore,
    resolver: TargetResolver,
    ledger: ReleaseLedger,
    function_backend: FakeFunctionBackend,
    cluster_backend: FakeClusterBackend,
    clock: FakeClock,
) -> DeploymentPipeline:
    """A pipeline wired entirely to fakes."""
    executor = DeploymentExecutor(
        [
            FunctionExecutor(
                function_backend,
                inline_deploy_limit_bytes=pipeline_config.inline_deploy_limit_bytes,
                poll_policy=FAST_POLL, clock=clock, sleep=clock.sleep,
            ),
            ClusterReleaseExecutor(
                cluster_backend, ledger=ledger,
                poll_policy=FAST_POLL, clock=clock, sleep=clock.sleep,
            ),
        ],
        locks=TargetLockRegistry("queue"),
    )
    return DeploymentPipeline(
        pipeline_config,
        packager=packager,
        store=store,
        executor=executor,
        ledger=ledger,
        resolver=resolver,
        gate=VerificationGate(policy=FAST_POLL, clock=clock, sleep=clock.sleep),
    )


@pytest.fixture
def artifact(packager: ArtifactPackager, source_tree: Path) -> Artifact:
    return packager.package(source_tree, runtime="python3.12", source_commit="abc123def456")
