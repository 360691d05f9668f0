"""Deployforge: package, store, resolve, deploy, verify and record releases.

Targets are serverless functions (deploy code, publish a version, move an
alias) and chart-based cluster releases (upgrade, wait for readiness,
roll back atomically).  Every outcome lands in an append-only,
hash-chained Release Ledger.
"""

__version__ = "0.1.0"
__description__ = "Deployment orchestrator for function and cluster-release targets"

from deployforge.core.orchestrator import DeploymentPipeline, PipelineOutcome, PipelineRun
from deployforge.cli.app import app as cli

__all__ = ["DeploymentPipeline", "PipelineRun", "PipelineOutcome", "cli", "__version__"]
