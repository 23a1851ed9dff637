"""Durable state store for runs, deployments and the audit trail."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Optional

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..common.schemas import (
    AuditEvent,
    Deployment,
    EnvironmentState,
    JobRun,
    PipelineRun,
    utc_now,
)
from . import db

LOGGER = structlog.get_logger("stratus.control_plane.state")


class StateStore:
    """SQL-backed persistence shared by the scheduler, deployments and audit log."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._lock = asyncio.Lock()
        # SQLite allows one writer at a time; serialise writes through the store.
        self._write_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    async def open(self) -> None:
        async with self._lock:
            if self._engine is not None:
                return

            url = make_url(self._database_url)
            if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
                sqlite_path = Path(url.database).expanduser()
                sqlite_path.parent.mkdir(parents=True, exist_ok=True)

            self._engine = db.create_engine(self._database_url)
            self._session_factory = db.session_factory(self._engine)
            await db.ensure_schema(self._engine)
            LOGGER.debug("State store initialised", url=url.render_as_string(hide_password=True))

    async def close(self) -> None:
        async with self._lock:
            if self._engine is None:
                return
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        session_factory = self._session_factory
        if session_factory is None:
            raise RuntimeError("StateStore not opened")
        async with session_factory() as session:
            yield session

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._write_lock:
            async with self._session() as session:
                yield session
                await session.commit()

    # Pipeline runs --------------------------------------------------------

    async def save_run(self, run: PipelineRun, job_runs: Iterable[JobRun] = ()) -> None:
        async with self._transaction() as session:
            await db.save_pipeline_run(session, run)
            for job_run in job_runs:
                await db.save_job_run(session, job_run)

    async def save_job_run(self, job_run: JobRun) -> None:
        async with self._transaction() as session:
            await db.save_job_run(session, job_run)

    async def get_run(self, run_id: str) -> Optional[PipelineRun]:
        async with self._session() as session:
            return await db.get_pipeline_run(session, run_id)

    async def list_runs(self, *, statuses: Optional[Iterable[str]] = None, limit: int = 100) -> list[PipelineRun]:
        async with self._session() as session:
            return await db.list_pipeline_runs(session, statuses=statuses, limit=limit)

    async def list_job_runs(self, run_id: str) -> list[JobRun]:
        async with self._session() as session:
            return await db.list_job_runs(session, run_id)

    # Deployments ----------------------------------------------------------

    async def save_deployment(self, deployment: Deployment) -> None:
        async with self._transaction() as session:
            await db.save_deployment(session, deployment)

    async def get_deployment(self, deployment_id: str) -> Optional[Deployment]:
        async with self._session() as session:
            return await db.get_deployment(session, deployment_id)

    async def list_deployments(
        self,
        *,
        environment: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> list[Deployment]:
        async with self._session() as session:
            return await db.list_deployments(session, environment=environment, statuses=statuses)

    async def save_environment(self, state: EnvironmentState) -> None:
        async with self._transaction() as session:
            await db.save_environment(session, state)

    async def list_environments(self) -> list[EnvironmentState]:
        async with self._session() as session:
            return await db.list_environments(session)

    # Audit ----------------------------------------------------------------

    async def append_audit_event(
        self,
        event_type: str,
        *,
        component: str,
        subject: Optional[str],
        actor: Optional[str],
        severity: str,
        details: dict[str, Any],
    ) -> AuditEvent:
        async with self._transaction() as session:
            return await db.append_audit_event(
                session,
                event_type=event_type,
                component=component,
                subject=subject,
                actor=actor,
                severity=severity,
                details=details,
                recorded_at=utc_now(),
            )

    async def list_audit_events(
        self,
        *,
        subject: Optional[str] = None,
        event_type: Optional[str] = None,
        since_id: Optional[int] = None,
        limit: int = 1000,
    ) -> list[AuditEvent]:
        async with self._session() as session:
            return await db.list_audit_events(
                session,
                subject=subject,
                event_type=event_type,
                since_id=since_id,
                limit=limit,
            )
