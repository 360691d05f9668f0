"""Target Resolver — maps (service, environment) onto a DeploymentTarget.

The mapping itself lives in an external registry.  The resolver only
validates and assembles: it never fills in defaults for region, role or
function/cluster identity.

Registry file format (YAML)::

    services:
      orders:
        production:
          kind: function
          region: us-east-1
          role: arn:aws:iam::123456789012:role/deploy-orders
          function_name: orders-prod
          alias: live
        staging:
          kind: cluster-release
          region: us-east-1
          role: arn:aws:iam::123456789012:role/deploy-staging
          cluster_name: staging
          namespace: orders
          release_name: orders
          chart_ref: ./charts/orders
          defaults:
            replicaCount: 1

An environment may list several entries; more than one is ambiguous.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml
from pydantic import ValidationError

from deployforge.errors import (
    AmbiguousTargetError,
    IncompleteTargetError,
    TargetNotFoundError,
)
from deployforge.models.targets import (
    ClusterReleaseCoordinates,
    DeploymentTarget,
    FunctionCoordinates,
    TargetKind,
)

logger = logging.getLogger(__name__)

_FUNCTION_FIELDS = ("function_name", "alias")
_CLUSTER_FIELDS = ("cluster_name", "namespace", "release_name", "chart_ref", "chart_version")


@runtime_checkable
class TargetRegistry(Protocol):
    """Source of raw target mappings."""

    def lookup(self, service: str, environment: str) -> list[dict[str, Any]]:
        """Return every raw mapping entry for (service, environment)."""
        ...


class InMemoryTargetRegistry:
    """Registry backed by a nested ``{service: {environment: entry|[entries]}}`` dict."""

    def __init__(self, mapping: Mapping[str, Mapping[str, Any]]) -> None:
        self._mapping = mapping

    def lookup(self, service: str, environment: str) -> list[dict[str, Any]]:
        entries = (self._mapping.get(service) or {}).get(environment)
        if entries is None:
            return []
        if isinstance(entries, Mapping):
            return [dict(entries)]
        return [dict(e) for e in entries]


class FileTargetRegistry(InMemoryTargetRegistry):
    """Registry loaded from a YAML file with a top-level ``services`` key."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        if not self.path.exists():
            raise TargetNotFoundError(f"Target registry not found: {self.path}")
        with self.path.open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, Mapping):
            raise TargetNotFoundError(f"Target registry {self.path} is not a mapping")
        super().__init__(data.get("services", {}) or {})


class TargetResolver:
    """Validates registry entries and assembles ``DeploymentTarget``s."""

    def __init__(self, registry: TargetRegistry) -> None:
        self._registry = registry

    def resolve(self, service: str, environment: str) -> DeploymentTarget:
        """Resolve exactly one target for (service, environment).

        Raises
        ------
        TargetNotFoundError
            No mapping exists.
        AmbiguousTargetError
            More than one mapping exists.
        IncompleteTargetError
            The mapping lacks a required coordinate.
        """
        entries = self._registry.lookup(service, environment)
        if not entries:
            raise TargetNotFoundError(
                f"No deployment target for service={service!r} environment={environment!r}"
            )
        if len(entries) > 1:
            kinds = sorted({str(e.get("kind", "?")) for e in entries})
            raise AmbiguousTargetError(
                f"{service}/{environment} maps to {len(entries)} targets "
                f"(kinds: {', '.join(kinds)}); exactly one is required"
            )
        target = self._assemble(service, environment, entries[0])
        logger.info("Resolved %s to %s", target.key, target.describe())
        return target

    def defaults_for(self, service: str, environment: str) -> dict[str, Any]:
        """Return the stored default configuration for a target, if any."""
        entries = self._registry.lookup(service, environment)
        if len(entries) != 1:
            return {}
        return dict(entries[0].get("defaults") or {})

    @staticmethod
    def _assemble(service: str, environment: str, entry: dict[str, Any]) -> DeploymentTarget:
        where = f"{service}/{environment}"
        try:
            kind = TargetKind(entry.get("kind", ""))
        except ValueError:
            raise IncompleteTargetError(
                f"{where}: unknown or missing target kind {entry.get('kind')!r}"
            ) from None

        try:
            if kind == TargetKind.FUNCTION:
                coords = {k: entry[k] for k in _FUNCTION_FIELDS if k in entry}
                return DeploymentTarget(
                    kind=kind,
                    service=service,
                    environment=environment,
                    region=entry.get("region", ""),
                    role=entry.get("role", ""),
                    function=FunctionCoordinates(**coords),
                )
            coords = {k: entry[k] for k in _CLUSTER_FIELDS if k in entry}
            return DeploymentTarget(
                kind=kind,
                service=service,
                environment=environment,
                region=entry.get("region", ""),
                role=entry.get("role", ""),
                cluster_release=ClusterReleaseCoordinates(**coords),
            )
        except ValidationError as exc:
            missing = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            raise IncompleteTargetError(
                f"{where}: incomplete target mapping ({', '.join(missing)})"
            ) from exc
