"""Runner-side collaborators for the Stratus orchestration core.

The pool manager owns agent assignment; executors, fleet backends and
deployment targets are supplied by the embedding application through the
protocols in :mod:`stratus.runners.base`.
"""

from .base import (
    ApplyResult,
    DeploymentExecutor,
    ExecutionContext,
    FleetBackend,
    JobExecutor,
    RunResult,
    SmokeTestRunner,
)
from .pool_manager import PoolManager, PoolSnapshot, ScalingPolicy

__all__ = [
    "ApplyResult",
    "DeploymentExecutor",
    "ExecutionContext",
    "FleetBackend",
    "JobExecutor",
    "PoolManager",
    "PoolSnapshot",
    "RunResult",
    "ScalingPolicy",
    "SmokeTestRunner",
]
