"""Deployment executors — one state machine per target kind.

``DeploymentExecutor`` is the single entry point; it serializes work per
target and dispatches to ``FunctionExecutor`` or ``ClusterReleaseExecutor``.
"""

from deployforge.executors.base import DeploymentControl
from deployforge.executors.cluster_release import ClusterReleaseExecutor
from deployforge.executors.dispatcher import DeploymentExecutor
from deployforge.executors.function import FunctionExecutor

__all__ = [
    "DeploymentControl",
    "DeploymentExecutor",
    "FunctionExecutor",
    "ClusterReleaseExecutor",
]
