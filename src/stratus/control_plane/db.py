"""Async database helpers for durable orchestration state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    insert,
    select,
    update,
)
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..common.schemas import (
    Approval,
    AuditEvent,
    Deployment,
    EnvironmentState,
    JobRun,
    PipelineDefinition,
    PipelineRun,
    TriggerContext,
)


metadata = MetaData()


pipeline_runs_table = Table(
    "pipeline_runs",
    metadata,
    Column("run_id", String(length=64), primary_key=True),
    Column("pipeline", String(length=256), nullable=False),
    Column("repository", String(length=512), nullable=False),
    Column("ref", String(length=512), nullable=False),
    Column("status", String(length=32), nullable=False),
    Column("trigger", JSON(none_as_null=True), nullable=False),
    Column("definition", JSON(none_as_null=True), nullable=False),
    Column("cancel_reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ix_pipeline_runs_status", "status"),
)


job_runs_table = Table(
    "job_runs",
    metadata,
    Column("job_run_id", String(length=64), primary_key=True),
    Column("run_id", String(length=64), nullable=False),
    Column("job_name", String(length=256), nullable=False),
    Column("stage", String(length=256), nullable=False),
    Column("status", String(length=32), nullable=False),
    Column("agent_id", String(length=128), nullable=True),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("finished_at", DateTime(timezone=True), nullable=True),
    Column("exit_code", Integer, nullable=True),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("skip_reason", String(length=32), nullable=True),
    Column("cache_hit", Boolean, nullable=True),
    Column("deployment_id", String(length=64), nullable=True),
    Column("error_kind", String(length=64), nullable=True),
    Column("error_component", String(length=64), nullable=True),
    Column("error_message", Text, nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ix_job_runs_run_id", "run_id"),
)


deployments_table = Table(
    "deployments",
    metadata,
    Column("deployment_id", String(length=64), primary_key=True),
    Column("environment", String(length=128), nullable=False),
    Column("artifact_ref", String(length=1024), nullable=False),
    Column("status", String(length=32), nullable=False),
    Column("requested_by", String(length=256), nullable=False),
    Column("approvals", JSON(none_as_null=True), nullable=False),
    Column("previous_deployment_id", String(length=64), nullable=True),
    Column("emergency", Boolean, nullable=False, default=False),
    Column("rollback_attempts", Integer, nullable=False, default=0),
    Column("rolled_back_to", String(length=64), nullable=True),
    Column("applied_at", DateTime(timezone=True), nullable=True),
    Column("run_id", String(length=64), nullable=True),
    Column("job_run_id", String(length=64), nullable=True),
    Column("error_kind", String(length=64), nullable=True),
    Column("error_component", String(length=64), nullable=True),
    Column("error_message", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Index("ix_deployments_environment_status", "environment", "status"),
)


environments_table = Table(
    "environments",
    metadata,
    Column("environment", String(length=128), primary_key=True),
    Column("current_deployment_id", String(length=64), nullable=True),
    Column("health", String(length=16), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


audit_events_table = Table(
    "audit_events",
    metadata,
    Column("event_id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(length=128), nullable=False),
    Column("component", String(length=64), nullable=False),
    Column("subject", String(length=256), nullable=True),
    Column("actor", String(length=256), nullable=True),
    Column("severity", String(length=16), nullable=False),
    Column("details", JSON(none_as_null=True), nullable=False),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
    Index("ix_audit_events_subject", "subject"),
)


def create_engine(database_url: str) -> AsyncEngine:
    url = make_url(database_url)
    engine_kwargs: dict[str, object] = {
        "future": True,
        "echo": False,
        "pool_pre_ping": True,
    }
    if url.get_backend_name() not in {"sqlite", "sqlite+aiosqlite"}:
        engine_kwargs.update(
            {
                "pool_size": 20,
                "max_overflow": 40,
                "pool_timeout": 30,
                "pool_recycle": 1800,
            }
        )
    return create_async_engine(database_url, **engine_kwargs)


async def ensure_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def _upsert(session: AsyncSession, table: Table, key_column: str, values: dict[str, Any]) -> None:
    key = values[key_column]
    stmt = update(table).where(table.c[key_column] == key).values(**values)
    result = await session.execute(stmt)
    if result.rowcount == 0:
        await session.execute(insert(table).values(**values))


# Pipeline runs ------------------------------------------------------------


async def save_pipeline_run(session: AsyncSession, run: PipelineRun) -> None:
    await _upsert(
        session,
        pipeline_runs_table,
        "run_id",
        {
            "run_id": run.run_id,
            "pipeline": run.pipeline,
            "repository": run.repository,
            "ref": run.ref,
            "status": run.status,
            "trigger": run.trigger.model_dump(mode="json"),
            "definition": run.definition.model_dump(mode="json"),
            "cancel_reason": run.cancel_reason,
            "created_at": run.created_at,
            "completed_at": run.completed_at,
            "updated_at": run.updated_at,
        },
    )


def _row_to_pipeline_run(row: dict) -> PipelineRun:
    return PipelineRun(
        run_id=row["run_id"],
        pipeline=row["pipeline"],
        repository=row["repository"],
        ref=row["ref"],
        status=row["status"],
        trigger=TriggerContext.model_validate(row["trigger"]),
        definition=PipelineDefinition.model_validate(row["definition"]),
        cancel_reason=row.get("cancel_reason"),
        created_at=_as_utc(row["created_at"]),
        completed_at=_as_utc(row.get("completed_at")),
        updated_at=_as_utc(row["updated_at"]),
    )


async def get_pipeline_run(session: AsyncSession, run_id: str) -> Optional[PipelineRun]:
    result = await session.execute(select(pipeline_runs_table).where(pipeline_runs_table.c.run_id == run_id))
    row = result.mappings().first()
    return _row_to_pipeline_run(dict(row)) if row else None


async def list_pipeline_runs(
    session: AsyncSession,
    *,
    statuses: Optional[Iterable[str]] = None,
    limit: int = 100,
) -> list[PipelineRun]:
    stmt = select(pipeline_runs_table).order_by(pipeline_runs_table.c.created_at.desc()).limit(limit)
    if statuses is not None:
        stmt = stmt.where(pipeline_runs_table.c.status.in_(list(statuses)))
    result = await session.execute(stmt)
    return [_row_to_pipeline_run(dict(row)) for row in result.mappings()]


# Job runs -----------------------------------------------------------------


async def save_job_run(session: AsyncSession, job_run: JobRun) -> None:
    await _upsert(session, job_runs_table, "job_run_id", job_run.model_dump())


async def list_job_runs(session: AsyncSession, run_id: str) -> list[JobRun]:
    stmt = select(job_runs_table).where(job_runs_table.c.run_id == run_id).order_by(job_runs_table.c.job_run_id)
    result = await session.execute(stmt)
    job_runs: list[JobRun] = []
    for row in result.mappings():
        payload = dict(row)
        for key in ("started_at", "finished_at", "updated_at"):
            payload[key] = _as_utc(payload.get(key))
        job_runs.append(JobRun.model_validate(payload))
    return job_runs


# Deployments --------------------------------------------------------------


async def save_deployment(session: AsyncSession, deployment: Deployment) -> None:
    values = deployment.model_dump(mode="python")
    values["approvals"] = [approval.model_dump(mode="json") for approval in deployment.approvals]
    await _upsert(session, deployments_table, "deployment_id", values)


def _row_to_deployment(row: dict) -> Deployment:
    payload = dict(row)
    payload["approvals"] = [
        Approval.model_validate(item) for item in (payload.get("approvals") or [])
    ]
    for key in ("created_at", "updated_at", "completed_at", "applied_at"):
        payload[key] = _as_utc(payload.get(key))
    return Deployment.model_validate(payload)


async def get_deployment(session: AsyncSession, deployment_id: str) -> Optional[Deployment]:
    result = await session.execute(
        select(deployments_table).where(deployments_table.c.deployment_id == deployment_id)
    )
    row = result.mappings().first()
    return _row_to_deployment(dict(row)) if row else None


async def list_deployments(
    session: AsyncSession,
    *,
    environment: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
) -> list[Deployment]:
    stmt = select(deployments_table).order_by(deployments_table.c.created_at)
    if environment is not None:
        stmt = stmt.where(deployments_table.c.environment == environment)
    if statuses is not None:
        stmt = stmt.where(deployments_table.c.status.in_(list(statuses)))
    result = await session.execute(stmt)
    return [_row_to_deployment(dict(row)) for row in result.mappings()]


async def save_environment(session: AsyncSession, state: EnvironmentState) -> None:
    await _upsert(session, environments_table, "environment", state.model_dump())


async def list_environments(session: AsyncSession) -> list[EnvironmentState]:
    result = await session.execute(select(environments_table))
    states: list[EnvironmentState] = []
    for row in result.mappings():
        payload = dict(row)
        payload["updated_at"] = _as_utc(payload["updated_at"])
        states.append(EnvironmentState.model_validate(payload))
    return states


# Audit events -------------------------------------------------------------


async def append_audit_event(
    session: AsyncSession,
    *,
    event_type: str,
    component: str,
    subject: Optional[str],
    actor: Optional[str],
    severity: str,
    details: dict[str, Any],
    recorded_at: datetime,
) -> AuditEvent:
    result = await session.execute(
        insert(audit_events_table)
        .values(
            event_type=event_type,
            component=component,
            subject=subject,
            actor=actor,
            severity=severity,
            details=details,
            recorded_at=recorded_at,
        )
    )
    event_id = result.inserted_primary_key[0]
    return AuditEvent(
        event_id=event_id,
        event_type=event_type,
        component=component,
        subject=subject,
        actor=actor,
        severity=severity,  # type: ignore[arg-type]
        details=details,
        recorded_at=recorded_at,
    )


async def list_audit_events(
    session: AsyncSession,
    *,
    subject: Optional[str] = None,
    event_type: Optional[str] = None,
    since_id: Optional[int] = None,
    limit: int = 1000,
) -> list[AuditEvent]:
    stmt = select(audit_events_table).order_by(audit_events_table.c.event_id).limit(limit)
    if subject is not None:
        stmt = stmt.where(audit_events_table.c.subject == subject)
    if event_type is not None:
        stmt = stmt.where(audit_events_table.c.event_type == event_type)
    if since_id is not None:
        stmt = stmt.where(audit_events_table.c.event_id > since_id)
    result = await session.execute(stmt)
    events: list[AuditEvent] = []
    for row in result.mappings():
        payload = dict(row)
        payload["recorded_at"] = _as_utc(payload["recorded_at"])
        payload["details"] = payload.get("details") or {}
        events.append(AuditEvent.model_validate(payload))
    return events
