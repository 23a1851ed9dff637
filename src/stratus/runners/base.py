"""Collaborator interfaces and common result types."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from ..common.schemas import (
    AgentHandle,
    AgentLease,
    CacheLookup,
    Credential,
    JobSpec,
    JobStatus,
    TriggerContext,
)


class RunResult(BaseModel):
    """Result of a job execution."""

    success: bool
    exit_code: int
    log_lines: list[str] = []
    duration_seconds: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    # Bytes to save under the job's cache key once the job has succeeded.
    cache_payload: Optional[bytes] = None
    outputs: dict[str, str] = Field(default_factory=dict)
    error_message: Optional[str] = None


class ExecutionContext(BaseModel):
    """Everything an executor needs to run one attempt of a job."""

    run_id: str
    job_run_id: str
    attempt: int
    job: JobSpec
    trigger: TriggerContext
    agent: AgentLease
    credential: Optional[Credential] = None
    cache: Optional[CacheLookup] = None
    restored_payload: Optional[bytes] = None
    # Terminal status of every direct predecessor, for ``run: always`` jobs.
    upstream: dict[str, JobStatus] = Field(default_factory=dict)


class ApplyResult(BaseModel):
    success: bool
    message: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class JobExecutor(Protocol):
    """Runs a job's steps on a leased agent."""

    @abc.abstractmethod
    async def run(self, context: ExecutionContext) -> RunResult:
        """Execute the job and return the result."""
        ...


class FleetBackend(Protocol):
    """Cluster backend that provisions and terminates ephemeral agents."""

    @abc.abstractmethod
    async def provision(self, labels: frozenset[str]) -> AgentHandle:
        """Provision an agent carrying ``labels``; returns once it reports ready."""
        ...

    @abc.abstractmethod
    async def terminate(self, handle: AgentHandle) -> None:
        ...


class DeploymentExecutor(Protocol):
    @abc.abstractmethod
    async def apply(self, environment: str, artifact_ref: str) -> ApplyResult:
        """Apply ``artifact_ref`` to ``environment``."""
        ...


class SmokeTestRunner(Protocol):
    @abc.abstractmethod
    async def verify(self, environment: str, *, timeout_seconds: float) -> bool:
        """Return True when the environment passes its smoke tests."""
        ...
