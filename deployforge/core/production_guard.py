"""Production configuration guard — enforces hard constraints in production.

The guard validates production-critical settings before the pipeline
starts.  It runs once when the pipeline is built from settings and fails
hard (raises ``ProductionConfigError``) if any constraint is violated.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from deployforge.config import DeployforgeSettings
from deployforge.errors import ProductionConfigError

logger = logging.getLogger(__name__)

# Long-lived credentials present without a session token.
_STATIC_CREDENTIAL_VARS: tuple[str, ...] = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY")


def enforce_production_constraints(
    settings: DeployforgeSettings,
    environ: Mapping[str, str] | None = None,
) -> None:
    """Validate all production-critical configuration constraints.

    Constraints enforced
    --------------------
    1. Debug mode must be disabled.
    2. No static cloud credentials in the environment: deployments use
       federated, short-lived credentials only.
    3. An actor must be recorded with every release.

    Parameters
    ----------
    settings:
        The active settings.
    environ:
        Process environment to inspect; defaults to ``os.environ``.
    """
    if not settings.is_production:
        return

    env = os.environ if environ is None else environ
    violations: list[str] = []

    if settings.debug:
        violations.append(
            "debug=True is not allowed in production. "
            "Set DEPLOYFORGE_DEBUG=false."
        )

    if all(env.get(var) for var in _STATIC_CREDENTIAL_VARS) and not env.get("AWS_SESSION_TOKEN"):
        violations.append(
            "Static AWS access keys are set without a session token. "
            "Production deployments must use federated short-lived credentials."
        )

    if not settings.actor:
        violations.append(
            "No actor configured; every production release must record who "
            "triggered it. Set DEPLOYFORGE_ACTOR."
        )

    if violations:
        msg = (
            "Production configuration guard failed.\n"
            + "\n".join(f"  - {v}" for v in violations)
        )
        logger.critical(msg)
        raise ProductionConfigError(msg)

    logger.info("Production configuration guard passed.")
