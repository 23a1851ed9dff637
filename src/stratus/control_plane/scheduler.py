"""Pipeline scheduler: expands runs into job DAGs and drives them to completion."""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import structlog
from opentelemetry import trace

from ..cache_proxy.store import CacheStore
from ..common.errors import (
    AcquireTimeout,
    ExecutionFailure,
    InfrastructureFailure,
    NoAgentAvailable,
    NotFound,
    OrchestrationTimeout,
    StratusError,
    ValidationError,
    error_fields,
)
from ..common.observability import span_attributes
from ..common.schemas import (
    CacheLookup,
    Credential,
    CredentialScope,
    DeployTarget,
    JobRun,
    JobStatus,
    PipelineDefinition,
    PipelineRun,
    Severity,
    TriggerContext,
    utc_now,
)
from ..common.settings import SchedulerSettings
from ..runners.base import ExecutionContext, JobExecutor, RunResult
from ..runners.pool_manager import PoolManager
from .audit import AuditLog
from .credentials import CredentialBroker
from .deployments import DeploymentStateMachine
from .pipeline import JobState, PipelineGraph, compile_pipeline, condition_skips, resolve_readiness
from .state import StateStore

LOGGER = structlog.get_logger("stratus.control_plane.scheduler")
TRACER = trace.get_tracer("stratus.control_plane.scheduler")

COMPONENT = "scheduler"


# Events posted to a run's coordinator ------------------------------------


@dataclass
class _JobStarted:
    job: str
    token: int
    agent_id: str


@dataclass
class _JobFinished:
    job: str
    token: int
    result: Optional[RunResult] = None
    error: Optional[BaseException] = None
    cache_hit: Optional[bool] = None
    deployment_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.result is not None and self.result.success


@dataclass
class _RetryDue:
    job: str
    token: int


@dataclass
class _CancelRun:
    reason: str
    ack: asyncio.Future


@dataclass
class _CancelJob:
    job: str
    reason: str
    ack: asyncio.Future


_Event = Union[_JobStarted, _JobFinished, _RetryDue, _CancelRun, _CancelJob]


@dataclass
class _RunState:
    run: PipelineRun
    graph: PipelineGraph
    job_runs: dict[str, JobRun]
    key: tuple[str, str]
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    ready: deque = field(default_factory=deque)
    tasks: dict[str, asyncio.Task] = field(default_factory=dict)
    timers: dict[str, asyncio.Task] = field(default_factory=dict)
    tokens: dict[str, int] = field(default_factory=dict)
    execution_retries: dict[str, int] = field(default_factory=dict)
    infra_retries: dict[str, int] = field(default_factory=dict)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    coordinator: Optional[asyncio.Task] = None
    cancelled: bool = False
    finished: bool = False

    def states(self) -> dict[str, JobState]:
        return {
            name: JobState(status=job_run.status, skip_reason=job_run.skip_reason)
            for name, job_run in self.job_runs.items()
        }

    def next_token(self, job: str) -> int:
        token = self.tokens.get(job, 0) + 1
        self.tokens[job] = token
        return token


@dataclass
class _Resources:
    """Per-attempt resources the job task must give back."""

    lease: Any = None
    credential: Optional[Credential] = None


class PipelineScheduler:
    """Accepts pipeline runs and dispatches their jobs.

    Each run has one coordinator task consuming a single event queue; job
    tasks only post events, so the coordinator is the sole writer of the
    run's JobRun records and observes transitions in the order they occur.
    """

    def __init__(
        self,
        settings: SchedulerSettings,
        *,
        store: StateStore,
        audit: AuditLog,
        pool: PoolManager,
        executor: JobExecutor,
        credentials: Optional[CredentialBroker] = None,
        cache: Optional[CacheStore] = None,
        deployments: Optional[DeploymentStateMachine] = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._audit = audit
        self._pool = pool
        self._executor = executor
        self._credentials = credentials
        self._cache = cache
        self._deployments = deployments
        self._global_slots = asyncio.Semaphore(settings.global_max_running)
        self._runs: dict[str, _RunState] = {}
        self._by_key: dict[tuple[str, str], str] = {}

    # Public API -----------------------------------------------------------

    async def submit(self, definition: PipelineDefinition, trigger: TriggerContext) -> str:
        """Validate and start a run. Nothing is created if validation fails."""

        graph = compile_pipeline(definition)
        run_id = uuid.uuid4().hex
        run = PipelineRun(
            run_id=run_id,
            pipeline=definition.name,
            repository=trigger.repository,
            ref=trigger.ref,
            trigger=trigger,
            definition=definition,
        )
        job_runs: dict[str, JobRun] = {}
        for name in graph.order:
            compiled = graph.job(name)
            job_runs[name] = JobRun(
                job_run_id=uuid.uuid4().hex,
                run_id=run_id,
                job_name=name,
                stage=compiled.stage,
            )
        skips = condition_skips(graph, trigger)
        for name in skips:
            job_runs[name].status = "skipped"
            job_runs[name].skip_reason = "condition"
            job_runs[name].finished_at = utc_now()

        key = (definition.name, trigger.ref)
        state = _RunState(run=run, graph=graph, job_runs=job_runs, key=key)
        prior_id = self._by_key.get(key) if definition.cancel_in_progress else None
        self._runs[run_id] = state
        self._by_key[key] = run_id

        try:
            await self._store.save_run(run, job_runs.values())
            await self._record(
                "run.submitted",
                state,
                actor=trigger.actor,
                details={
                    "pipeline": definition.name,
                    "repository": trigger.repository,
                    "ref": trigger.ref,
                    "event": trigger.event,
                    "sha": trigger.sha,
                    "jobs": len(job_runs),
                },
            )
            for name in skips:
                await self._record("job.skipped", state, job=name, details={"reason": "condition"})

            if prior_id is not None and prior_id in self._runs:
                LOGGER.info("Superseding in-progress run", run_id=run_id, superseded=prior_id, ref=trigger.ref)
                await self.cancel(prior_id, reason=f"superseded by run {run_id}")
        except BaseException:
            self._runs.pop(run_id, None)
            if self._by_key.get(key) == run_id:
                del self._by_key[key]
            raise

        LOGGER.info(
            "Run submitted",
            run_id=run_id,
            pipeline=definition.name,
            repository=trigger.repository,
            ref=trigger.ref,
            jobs=len(job_runs),
            skipped=len(skips),
        )
        state.coordinator = asyncio.create_task(self._coordinate(state), name=f"stratus-run-{run_id[:8]}")
        return run_id

    async def cancel(self, run_id: str, reason: str = "cancelled") -> PipelineRun:
        """Cancel a run; returns once its agents are released and credentials revoked."""

        state = self._runs.get(run_id)
        if state is None:
            run = await self._store.get_run(run_id)
            if run is None:
                raise NotFound(f"run {run_id} not found", component=COMPONENT, run_id=run_id)
            return run
        ack: asyncio.Future = asyncio.get_running_loop().create_future()
        state.events.put_nowait(_CancelRun(reason=reason, ack=ack))
        await ack
        return state.run.model_copy(deep=True)

    async def cancel_job(self, run_id: str, job_name: str, reason: str = "cancelled") -> JobRun:
        """Cancel one job. The run continues under normal failure propagation."""

        state = self._runs.get(run_id)
        if state is None:
            raise NotFound(f"run {run_id} is not active", component=COMPONENT, run_id=run_id)
        if job_name not in state.job_runs:
            raise NotFound(f"job {job_name} not in run {run_id}", component=COMPONENT, run_id=run_id, job=job_name)
        ack: asyncio.Future = asyncio.get_running_loop().create_future()
        state.events.put_nowait(_CancelJob(job=job_name, reason=reason, ack=ack))
        await ack
        return state.job_runs[job_name].model_copy()

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> PipelineRun:
        state = self._runs.get(run_id)
        if state is None:
            return await self.get_run(run_id)
        try:
            await asyncio.wait_for(state.done.wait(), timeout)
        except asyncio.TimeoutError:
            raise OrchestrationTimeout(
                f"run {run_id} did not finish within {timeout}s", component=COMPONENT, run_id=run_id
            ) from None
        return state.run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> PipelineRun:
        state = self._runs.get(run_id)
        if state is not None:
            return state.run.model_copy(deep=True)
        run = await self._store.get_run(run_id)
        if run is None:
            raise NotFound(f"run {run_id} not found", component=COMPONENT, run_id=run_id)
        return run

    async def job_runs(self, run_id: str) -> dict[str, JobRun]:
        state = self._runs.get(run_id)
        if state is not None:
            return {name: job_run.model_copy() for name, job_run in state.job_runs.items()}
        return {job_run.job_name: job_run for job_run in await self._store.list_job_runs(run_id)}

    def active_runs(self) -> list[str]:
        return [run_id for run_id, state in self._runs.items() if not state.finished]

    async def recover(self) -> int:
        """Fail runs that were in flight when the previous process stopped."""

        interrupted = await self._store.list_runs(statuses=["running"], limit=10_000)
        for run in interrupted:
            if run.run_id in self._runs:
                continue
            error = InfrastructureFailure(
                "interrupted by restart", component=COMPONENT, run_id=run.run_id, pipeline=run.pipeline
            )
            job_runs = await self._store.list_job_runs(run.run_id)
            now = utc_now()
            for job_run in job_runs:
                if job_run.terminal:
                    continue
                job_run.status = "cancelled"
                job_run.finished_at = now
                job_run.updated_at = now
                job_run.error_kind = error.kind
                job_run.error_component = error.component
                job_run.error_message = error.message
            run.status = "failed"
            run.cancel_reason = error.message
            run.completed_at = now
            run.updated_at = now
            await self._store.save_run(run, job_runs)
            await self._audit.record(
                "run.recovered",
                component=COMPONENT,
                subject=run.run_id,
                severity="warning",
                details={"pipeline": run.pipeline, "ref": run.ref, "resolution": "failed"},
            )
            LOGGER.warning("Interrupted run failed on recovery", run_id=run.run_id, pipeline=run.pipeline)
        return len(interrupted)

    async def shutdown(self) -> None:
        active = self.active_runs()
        if active:
            LOGGER.info("Cancelling active runs for shutdown", runs=len(active))
        await asyncio.gather(
            *(self.cancel(run_id, reason="scheduler shutdown") for run_id in active),
            return_exceptions=True,
        )

    # Coordinator ----------------------------------------------------------

    async def _coordinate(self, state: _RunState) -> None:
        bound = structlog.contextvars.bound_contextvars(run_id=state.run.run_id, pipeline=state.run.pipeline)
        with bound:
            try:
                while not state.finished:
                    if state.events.empty():
                        await self._advance(state)
                        if state.finished:
                            break
                    event = await state.events.get()
                    await self._apply(state, event)
            except asyncio.CancelledError:
                await self._halt(state)
                raise
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Run coordinator crashed")
                await self._halt(state)
                await self._finalize(state, forced_status="failed", reason=f"coordinator error: {exc}")

    async def _advance(self, state: _RunState) -> None:
        readiness = resolve_readiness(state.graph, state.states())
        for name, reason in readiness.skipped.items():
            await self._update(state, name, "job.skipped", status="skipped", skip_reason=reason, finished_at=utc_now())
        for name in readiness.ready:
            await self._update(state, name, "job.queued", status="queued")
            state.ready.append(name)

        limit = state.run.definition.max_parallel
        while state.ready and (limit is None or len(state.tasks) < limit):
            self._dispatch(state, state.ready.popleft())

        if not state.tasks and not state.timers and not state.ready:
            if all(job_run.terminal for job_run in state.job_runs.values()):
                await self._finalize(state)

    def _dispatch(self, state: _RunState, name: str) -> None:
        token = state.next_token(name)
        job_run = state.job_runs[name]
        upstream: dict[str, JobStatus] = {
            dependency: state.job_runs[dependency].status for dependency in state.graph.predecessors(name)
        }
        attempt = job_run.retry_count + 1
        state.tasks[name] = asyncio.create_task(
            self._job_task(state, name, token, job_run.job_run_id, attempt, upstream),
            name=f"stratus-job-{name}",
        )

    async def _apply(self, state: _RunState, event: _Event) -> None:
        if isinstance(event, _CancelRun):
            if not state.finished:
                await self._cancel_everything(state, event.reason)
            if not event.ack.done():
                event.ack.set_result(None)
            return
        if isinstance(event, _CancelJob):
            await self._cancel_one(state, event.job, event.reason)
            if not event.ack.done():
                event.ack.set_result(None)
            return

        if state.tokens.get(event.job) != event.token or state.job_runs[event.job].terminal:
            return  # stale report from an attempt that was cancelled

        if isinstance(event, _JobStarted):
            await self._update(
                state,
                event.job,
                "job.dispatched",
                status="running",
                agent_id=event.agent_id,
                started_at=utc_now(),
                details={"agent_id": event.agent_id},
            )
        elif isinstance(event, _RetryDue):
            state.timers.pop(event.job, None)
            if state.job_runs[event.job].status == "queued":
                state.ready.append(event.job)
        elif isinstance(event, _JobFinished):
            state.tasks.pop(event.job, None)
            await self._settle_job(state, event)

    async def _settle_job(self, state: _RunState, event: _JobFinished) -> None:
        name = event.job
        job_run = state.job_runs[name]
        result = event.result
        if event.succeeded:
            await self._update(
                state,
                name,
                "job.succeeded",
                status="succeeded",
                exit_code=result.exit_code if result else 0,
                finished_at=utc_now(),
                cache_hit=event.cache_hit,
                deployment_id=event.deployment_id,
                details={"deployment_id": event.deployment_id, "cache_hit": event.cache_hit},
            )
            return

        error = event.error or ExecutionFailure(
            f"job exited with code {result.exit_code if result else 'unknown'}",
            component="executor",
            job=name,
            agent_id=job_run.agent_id,
        )
        retry_delay = self._retry_delay(state, name, error)
        if retry_delay is not None:
            token = state.next_token(name)
            await self._update(
                state,
                name,
                "job.retry_scheduled",
                severity="warning",
                status="queued",
                retry_count=job_run.retry_count + 1,
                agent_id=None,
                exit_code=result.exit_code if result else None,
                details={"delay_seconds": retry_delay, **error_fields(error)},
            )
            if retry_delay > 0:
                state.timers[name] = asyncio.create_task(self._retry_timer(state, name, token, retry_delay))
            else:
                state.ready.append(name)
            return

        await self._update(
            state,
            name,
            "job.failed",
            severity="warning",
            status="failed",
            exit_code=result.exit_code if result else None,
            finished_at=utc_now(),
            cache_hit=event.cache_hit,
            deployment_id=event.deployment_id,
            details=error_fields(error),
            **error_fields(error),
        )
        if state.run.definition.fail_fast:
            await self._fail_fast(state, name)

    def _retry_delay(self, state: _RunState, name: str, error: BaseException) -> Optional[float]:
        spec = state.graph.job(name).spec
        if isinstance(error, InfrastructureFailure):
            used = state.infra_retries.get(name, 0)
            if used >= self._settings.infra_retry_attempts:
                return None
            state.infra_retries[name] = used + 1
            delay = self._settings.infra_retry_base_seconds * (2 ** used)
            return min(delay, self._settings.infra_retry_max_seconds)
        if isinstance(error, ExecutionFailure):
            used = state.execution_retries.get(name, 0)
            if used >= spec.retries:
                return None
            state.execution_retries[name] = used + 1
            return 0.0
        return None

    async def _retry_timer(self, state: _RunState, name: str, token: int, delay: float) -> None:
        await asyncio.sleep(delay)
        state.events.put_nowait(_RetryDue(job=name, token=token))

    async def _fail_fast(self, state: _RunState, origin: str) -> None:
        LOGGER.info("Fail-fast triggered", job=origin)
        reason = f"fail-fast after {origin} failed"
        for name, job_run in state.job_runs.items():
            if name != origin and job_run.status in ("queued", "running"):
                await self._cancel_one(state, name, reason, cascade=False)

    async def _cancel_one(self, state: _RunState, name: str, reason: str, *, cascade: bool = True) -> None:
        job_run = state.job_runs[name]
        if job_run.terminal:
            return
        state.next_token(name)
        await self._stop_job(state, name)
        await self._update(
            state,
            name,
            "job.cancelled",
            status="cancelled",
            finished_at=utc_now(),
            error_component=COMPONENT,
            error_message=reason,
            details={"reason": reason},
        )
        if cascade and state.run.definition.fail_fast and not state.cancelled:
            await self._fail_fast(state, name)

    async def _stop_job(self, state: _RunState, name: str) -> None:
        if name in state.ready:
            state.ready.remove(name)
        timer = state.timers.pop(name, None)
        if timer is not None:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
        task = state.tasks.pop(name, None)
        if task is not None:
            task.cancel()
            # The task's cleanup releases the agent and revokes the credential.
            await asyncio.gather(task, return_exceptions=True)

    async def _cancel_everything(self, state: _RunState, reason: str) -> None:
        state.cancelled = True
        state.run.cancel_reason = reason
        LOGGER.info("Cancelling run", reason=reason)
        for name in list(state.tasks) + list(state.timers) + list(state.ready):
            await self._stop_job(state, name)
        for name, job_run in state.job_runs.items():
            if not job_run.terminal:
                state.next_token(name)
                await self._update(
                    state,
                    name,
                    "job.cancelled",
                    status="cancelled",
                    finished_at=utc_now(),
                    error_component=COMPONENT,
                    error_message=reason,
                    details={"reason": reason},
                )
        await self._finalize(state, forced_status="cancelled", reason=reason)

    async def _halt(self, state: _RunState) -> None:
        for name in list(state.tasks) + list(state.timers):
            await self._stop_job(state, name)

    async def _finalize(
        self,
        state: _RunState,
        *,
        forced_status: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        if state.finished:
            return
        run = state.run
        if forced_status is not None:
            run.status = forced_status  # type: ignore[assignment]
        elif any(job_run.status in ("failed", "cancelled") for job_run in state.job_runs.values()):
            run.status = "failed"
        else:
            run.status = "succeeded"
        if reason is not None:
            run.cancel_reason = reason
        run.completed_at = utc_now()
        run.updated_at = run.completed_at
        await self._store.save_run(run)
        counts: dict[str, int] = {}
        for job_run in state.job_runs.values():
            counts[job_run.status] = counts.get(job_run.status, 0) + 1
        event_type = "run.cancelled" if run.status == "cancelled" else "run.completed"
        await self._record(
            event_type,
            state,
            severity="warning" if run.status != "succeeded" else "info",
            details={"status": run.status, "reason": reason, "jobs": counts},
        )
        LOGGER.info("Run finished", status=run.status, jobs=counts)
        state.finished = True
        state.done.set()
        self._runs.pop(run.run_id, None)
        if self._by_key.get(state.key) == run.run_id:
            del self._by_key[state.key]

    async def _update(
        self,
        state: _RunState,
        name: str,
        event_type: str,
        *,
        severity: Severity = "info",
        details: Optional[dict[str, Any]] = None,
        **changes: Any,
    ) -> None:
        job_run = state.job_runs[name]
        for attr, value in changes.items():
            setattr(job_run, attr, value)
        job_run.updated_at = utc_now()
        await self._store.save_job_run(job_run)
        LOGGER.debug("Job transition", job=name, event_type=event_type, status=job_run.status)
        await self._record(
            event_type,
            state,
            job=name,
            severity=severity,
            details={"status": job_run.status, "retry_count": job_run.retry_count, **(details or {})},
        )

    async def _record(
        self,
        event_type: str,
        state: _RunState,
        *,
        job: Optional[str] = None,
        actor: Optional[str] = None,
        severity: Severity = "info",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        payload = dict(details or {})
        if job is not None:
            payload["job"] = job
            payload["job_run_id"] = state.job_runs[job].job_run_id
        await self._audit.record(
            event_type,
            component=COMPONENT,
            subject=state.run.run_id,
            actor=actor,
            severity=severity,
            details=payload,
        )

    # Job tasks ------------------------------------------------------------

    async def _job_task(
        self,
        state: _RunState,
        name: str,
        token: int,
        job_run_id: str,
        attempt: int,
        upstream: dict[str, JobStatus],
    ) -> None:
        resources = _Resources()
        try:
            outcome = await self._attempt(state, name, token, job_run_id, attempt, upstream, resources)
        except asyncio.CancelledError:
            await self._cleanup(resources, job_run_id, reason="job cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            outcome = _JobFinished(job=name, token=token, error=exc)
        await self._cleanup(resources, job_run_id, reason="job finished")
        state.events.put_nowait(outcome)

    async def _attempt(
        self,
        state: _RunState,
        name: str,
        token: int,
        job_run_id: str,
        attempt: int,
        upstream: dict[str, JobStatus],
        resources: _Resources,
    ) -> _JobFinished:
        spec = state.graph.job(name).spec
        trigger = state.run.trigger
        with TRACER.start_as_current_span(
            "stratus.job",
            attributes=span_attributes(run_id=state.run.run_id, job=name, attempt=attempt),
        ) as span:
            async with self._global_slots:
                try:
                    lease = await self._pool.acquire(
                        spec.runs_on,
                        timeout=self._settings.agent_acquire_timeout_seconds,
                        job_run_id=job_run_id,
                    )
                except AcquireTimeout as exc:
                    raise NoAgentAvailable(
                        f"no agent matching {sorted(spec.runs_on)} became available",
                        component="agent_pool",
                        job=name,
                        labels=sorted(spec.runs_on),
                    ) from exc
                resources.lease = lease
                span.set_attribute("stratus.agent_id", lease.agent_id)
                state.events.put_nowait(_JobStarted(job=name, token=token, agent_id=lease.agent_id))

                if spec.secret_scope is not None:
                    if self._credentials is None:
                        raise ValidationError(
                            f"job {name} declares a secret scope but no credential broker is configured",
                            component=COMPONENT,
                            job=name,
                        )
                    scope = CredentialScope(
                        repository=trigger.repository,
                        environment=spec.secret_scope.environment,
                        ref=trigger.ref,
                    )
                    resources.credential = await self._credentials.issue(
                        scope,
                        spec.secret_scope.ttl_seconds,
                        requester=f"{state.run.pipeline}/{name}",
                        claims=spec.secret_scope.claims,
                        job_run_id=job_run_id,
                    )

                lookup, restored = await self._restore_cache(state, name)
                context = ExecutionContext(
                    run_id=state.run.run_id,
                    job_run_id=job_run_id,
                    attempt=attempt,
                    job=spec,
                    trigger=trigger,
                    agent=lease,
                    credential=resources.credential,
                    cache=lookup,
                    restored_payload=restored,
                    upstream=upstream,
                )
                timeout = spec.timeout_seconds or self._settings.default_job_timeout_seconds
                result = await self._run_on_agent(context, lease, timeout)
                cache_hit = lookup.hit if lookup is not None else None
                if not result.success:
                    return _JobFinished(
                        job=name,
                        token=token,
                        result=result,
                        error=ExecutionFailure(
                            result.error_message or f"job exited with code {result.exit_code}",
                            component="executor",
                            job=name,
                            agent_id=lease.agent_id,
                            exit_code=result.exit_code,
                        ),
                        cache_hit=cache_hit,
                    )

                await self._save_cache(state, name, lookup, result)
                deployment_id = None
                if spec.deploy is not None:
                    deployment_id = await self._request_deployment(state, name, spec.deploy, job_run_id, result)
                return _JobFinished(
                    job=name,
                    token=token,
                    result=result,
                    cache_hit=cache_hit,
                    deployment_id=deployment_id,
                )

    async def _run_on_agent(self, context: ExecutionContext, lease: Any, timeout: float) -> RunResult:
        """Run the executor, racing it against agent loss and the job timeout."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        lost = await self._pool.watch(lease)
        run_task = asyncio.ensure_future(self._executor.run(context))
        pending: set[asyncio.Future] = {run_task, lost}
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise OrchestrationTimeout(
                        f"job {context.job.name} exceeded its {timeout}s timeout",
                        component="executor",
                        job=context.job.name,
                        agent_id=lease.agent_id,
                    )
                done, _ = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                if run_task in done:
                    break
                if lost in done:
                    loss = lost.result()
                    if loss is not None:
                        raise loss
                    pending = {run_task}
        finally:
            if not run_task.done():
                run_task.cancel()
                await asyncio.gather(run_task, return_exceptions=True)

        try:
            return run_task.result()
        except StratusError:
            raise
        except Exception as exc:
            raise InfrastructureFailure(
                f"executor error: {exc}",
                component="executor",
                job=context.job.name,
                agent_id=lease.agent_id,
            ) from exc

    async def _restore_cache(self, state: _RunState, name: str) -> tuple[Optional[CacheLookup], Optional[bytes]]:
        spec = state.graph.job(name).spec
        if spec.cache is None or self._cache is None:
            return None, None
        namespace = spec.cache.namespace or state.run.repository
        try:
            return await self._cache.restore(spec.cache.key, spec.cache.restore_keys, namespace)
        except Exception as exc:  # noqa: BLE001
            # A cache failure degrades to a miss.
            LOGGER.warning("Cache restore failed", job=name, key=spec.cache.key, error=str(exc))
            return CacheLookup(hit=False), None

    async def _save_cache(
        self,
        state: _RunState,
        name: str,
        lookup: Optional[CacheLookup],
        result: RunResult,
    ) -> None:
        spec = state.graph.job(name).spec
        if spec.cache is None or self._cache is None or result.cache_payload is None:
            return
        if lookup is not None and lookup.exact_match:
            return
        namespace = spec.cache.namespace or state.run.repository
        try:
            status = await self._cache.put(spec.cache.key, result.cache_payload, namespace)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Cache save failed", job=name, key=spec.cache.key, error=str(exc))
            return
        LOGGER.debug("Cache saved", job=name, key=spec.cache.key, status=status.value)

    async def _request_deployment(
        self,
        state: _RunState,
        name: str,
        target: DeployTarget,
        job_run_id: str,
        result: RunResult,
    ) -> str:
        if self._deployments is None:
            raise ValidationError(
                f"job {name} deploys to {target.environment} but no deployment state machine is configured",
                component=COMPONENT,
                job=name,
            )
        trigger = state.run.trigger
        artifact_ref = target.artifact_ref or result.outputs.get("artifact_ref") or trigger.sha
        if not artifact_ref:
            raise ValidationError(
                f"job {name} produced no artifact reference to deploy",
                component=COMPONENT,
                job=name,
                environment=target.environment,
            )
        return await self._deployments.request_deployment(
            target.environment,
            artifact_ref,
            requested_by=trigger.actor,
            emergency=target.emergency,
            run_id=state.run.run_id,
            job_run_id=job_run_id,
        )

    async def _cleanup(self, resources: _Resources, job_run_id: str, *, reason: str) -> None:
        if resources.credential is not None and self._credentials is not None:
            try:
                await self._credentials.revoke(resources.credential, reason=reason)
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("Credential revoke failed", job_run_id=job_run_id, error=str(exc))
            resources.credential = None
        if resources.lease is not None:
            try:
                await self._pool.release(resources.lease)
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("Agent release failed", job_run_id=job_run_id, error=str(exc))
            resources.lease = None
