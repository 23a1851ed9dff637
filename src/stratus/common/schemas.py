"""Shared data models for the Stratus orchestration core."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Iterator, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


JobStatus = Literal["pending", "queued", "running", "succeeded", "failed", "skipped", "cancelled"]
RunStatus = Literal["running", "succeeded", "failed", "cancelled"]
SkipReason = Literal["condition", "upstream_failure", "upstream_skipped"]
AgentState = Literal["idle", "busy", "provisioning", "draining", "terminated"]
AgentKind = Literal["static", "ephemeral"]
DeploymentStatus = Literal[
    "pending_approval",
    "approved",
    "deploying",
    "verifying",
    "succeeded",
    "failed",
    "rolled_back",
]
Severity = Literal["info", "warning", "critical"]

TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "skipped", "cancelled"})
TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "cancelled"})
TERMINAL_DEPLOYMENT_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "rolled_back"})


def utc_now() -> datetime:
    return datetime.now(UTC)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# Conditions ---------------------------------------------------------------


class BranchCondition(_Frozen):
    """True when the trigger branch matches any glob pattern."""

    kind: Literal["branch"] = "branch"
    patterns: tuple[str, ...]


class EventCondition(_Frozen):
    kind: Literal["event"] = "event"
    events: tuple[str, ...]


class PathsCondition(_Frozen):
    """True when any changed path matches any glob pattern."""

    kind: Literal["paths"] = "paths"
    patterns: tuple[str, ...]


class VariableCondition(_Frozen):
    kind: Literal["variable"] = "variable"
    name: str
    equals: str


class AlwaysCondition(_Frozen):
    kind: Literal["always"] = "always"


class AllCondition(_Frozen):
    kind: Literal["all"] = "all"
    conditions: tuple[Condition, ...]


class AnyCondition(_Frozen):
    kind: Literal["any"] = "any"
    conditions: tuple[Condition, ...]


class NotCondition(_Frozen):
    kind: Literal["not"] = "not"
    condition: Condition


Condition = Annotated[
    Union[
        BranchCondition,
        EventCondition,
        PathsCondition,
        VariableCondition,
        AlwaysCondition,
        AllCondition,
        AnyCondition,
        NotCondition,
    ],
    Field(discriminator="kind"),
]

AllCondition.model_rebuild()
AnyCondition.model_rebuild()
NotCondition.model_rebuild()


# Pipeline definitions -----------------------------------------------------


class TriggerContext(_Frozen):
    """Snapshot of the event that triggered a run, frozen at submit time."""

    repository: str
    ref: str
    event: str = "push"
    sha: Optional[str] = None
    actor: str = "system"
    changed_paths: tuple[str, ...] = ()
    variables: dict[str, str] = Field(default_factory=dict)

    @property
    def branch(self) -> Optional[str]:
        if self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        if self.ref.startswith("refs/"):
            return None
        return self.ref


class ScopeRequest(_Frozen):
    """Secret scope a job asks for; repository and ref come from the trigger."""

    environment: Optional[str] = None
    claims: tuple[str, ...] = ("read",)
    ttl_seconds: Optional[int] = Field(default=None, gt=0)


class CacheSpec(_Frozen):
    key: str = Field(min_length=1)
    restore_keys: tuple[str, ...] = ()
    namespace: Optional[str] = None


class DeployTarget(_Frozen):
    environment: str = Field(min_length=1)
    artifact_ref: Optional[str] = None
    emergency: bool = False


class JobSpec(_Frozen):
    name: str = Field(min_length=1)
    needs: Optional[tuple[str, ...]] = None
    when: Optional[Condition] = None
    runs_on: frozenset[str] = frozenset()
    run: Literal["on_success", "always"] = "on_success"
    skip_is_success: bool = False
    retries: int = Field(default=0, ge=0)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    secret_scope: Optional[ScopeRequest] = None
    cache: Optional[CacheSpec] = None
    deploy: Optional[DeployTarget] = None
    steps: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)


class StageSpec(_Frozen):
    name: str = Field(min_length=1)
    jobs: tuple[JobSpec, ...] = Field(min_length=1)


class PipelineDefinition(_Frozen):
    """Immutable pipeline definition: ordered stages of jobs."""

    name: str = Field(min_length=1)
    stages: tuple[StageSpec, ...] = Field(min_length=1)
    max_parallel: Optional[int] = Field(default=None, ge=1)
    fail_fast: bool = False
    cancel_in_progress: bool = True

    @classmethod
    def parse(cls, payload: Mapping[str, Any]) -> "PipelineDefinition":
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"invalid pipeline definition: {exc.error_count()} error(s)",
                component="scheduler",
                errors=exc.errors(include_url=False),
            ) from exc

    def iter_jobs(self) -> Iterator[tuple[StageSpec, JobSpec]]:
        for stage in self.stages:
            for job in stage.jobs:
                yield stage, job


# Run state ----------------------------------------------------------------


class JobRun(BaseModel):
    """Instance of a job within one pipeline run."""

    job_run_id: str
    run_id: str
    job_name: str
    stage: str
    status: JobStatus = "pending"
    agent_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    retry_count: int = 0
    skip_reason: Optional[SkipReason] = None
    cache_hit: Optional[bool] = None
    deployment_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_component: Optional[str] = None
    error_message: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class PipelineRun(BaseModel):
    run_id: str
    pipeline: str
    repository: str
    ref: str
    status: RunStatus = "running"
    trigger: TriggerContext
    definition: PipelineDefinition
    cancel_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


# Agents -------------------------------------------------------------------


class AgentHandle(_Frozen):
    """Opaque reference returned by the fleet backend for a provisioned agent."""

    reference: str
    metadata: dict[str, str] = Field(default_factory=dict)


class AgentLease(_Frozen):
    """An agent assigned to a single job run."""

    lease_id: str
    agent_id: str
    job_run_id: Optional[str]
    kind: AgentKind
    labels: frozenset[str]
    handle: Optional[AgentHandle] = None
    leased_at: datetime = Field(default_factory=utc_now)


# Credentials --------------------------------------------------------------


class CredentialScope(_Frozen):
    repository: str
    environment: Optional[str] = None
    ref: str


class Credential(_Frozen):
    """Short-lived credential. Held in memory only; the token never leaves as plain text."""

    credential_id: str
    scope: CredentialScope
    claims: tuple[str, ...]
    subject: str
    job_run_id: Optional[str] = None
    issued_at: datetime
    expires_at: datetime
    token: SecretStr


class CredentialGrant(_Frozen):
    """Result of a successful credential exchange."""

    credential_id: str
    scope: CredentialScope
    claims: tuple[str, ...]
    subject: str
    expires_at: datetime


# Cache --------------------------------------------------------------------


class CacheEntry(_Frozen):
    namespace: str
    key: str
    location: str
    size_bytes: int
    content_digest: str
    created_at: datetime
    sequence: int


class CacheLookup(_Frozen):
    hit: bool
    entry: Optional[CacheEntry] = None
    exact_match: bool = False
    matched_restore_key: Optional[str] = None


# Deployments --------------------------------------------------------------


class Approval(BaseModel):
    approver: str
    approved_at: datetime = Field(default_factory=utc_now)
    comment: Optional[str] = None


class Deployment(BaseModel):
    deployment_id: str
    environment: str
    artifact_ref: str
    status: DeploymentStatus
    requested_by: str
    approvals: list[Approval] = Field(default_factory=list)
    previous_deployment_id: Optional[str] = None
    emergency: bool = False
    rollback_attempts: int = 0
    rolled_back_to: Optional[str] = None
    applied_at: Optional[datetime] = None
    run_id: Optional[str] = None
    job_run_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_component: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_DEPLOYMENT_STATUSES


class EnvironmentState(BaseModel):
    environment: str
    current_deployment_id: Optional[str] = None
    health: Literal["healthy", "failed"] = "healthy"
    updated_at: datetime = Field(default_factory=utc_now)


# Audit --------------------------------------------------------------------


class AuditEvent(BaseModel):
    """Append-only record of a state transition."""

    event_id: int
    event_type: str
    component: str
    subject: Optional[str] = None
    actor: Optional[str] = None
    severity: Severity = "info"
    details: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=utc_now)
