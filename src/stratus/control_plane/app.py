"""Wiring for the Stratus orchestration core."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

import structlog

from ..cache_proxy.store import CacheStore, PayloadBackend
from ..common.observability import configure_logging, configure_tracing
from ..common.settings import (
    AgentPoolSettings,
    CacheSettings,
    CredentialSettings,
    DeploymentSettings,
    OrchestratorSettings,
    SchedulerSettings,
)
from ..runners.base import DeploymentExecutor, FleetBackend, JobExecutor, SmokeTestRunner
from ..runners.pool_manager import PoolManager
from .audit import AuditLog, NotificationSink, WebhookNotificationSink
from .credentials import CredentialBroker
from .deployments import DeploymentStateMachine
from .policy import PolicyDocument, load_policy_document
from .scheduler import PipelineScheduler
from .state import StateStore

LOGGER = structlog.get_logger("stratus.control_plane.app")


class Orchestrator:
    """Container for the orchestration components sharing one process."""

    def __init__(
        self,
        settings: OrchestratorSettings,
        *,
        store: StateStore,
        audit: AuditLog,
        policies: PolicyDocument,
        pool: PoolManager,
        credentials: CredentialBroker,
        cache: CacheStore,
        deployments: DeploymentStateMachine,
        scheduler: PipelineScheduler,
    ) -> None:
        self.settings = settings
        self.store = store
        self.audit = audit
        self.policies = policies
        self.pool = pool
        self.credentials = credentials
        self.cache = cache
        self.deployments = deployments
        self.scheduler = scheduler

    async def shutdown(self) -> None:
        """Stop accepting work and release everything in dependency order."""

        LOGGER.info("Shutting down orchestrator")
        await self.scheduler.shutdown()
        await self.deployments.stop()
        await self.pool.stop()
        await self.audit.close()
        await self.store.close()


async def create_orchestrator(
    settings: Optional[OrchestratorSettings] = None,
    *,
    job_executor: JobExecutor,
    deploy_executor: DeploymentExecutor,
    smoke_tests: SmokeTestRunner,
    fleet: Optional[FleetBackend] = None,
    policies: Optional[PolicyDocument] = None,
    scheduler_settings: Optional[SchedulerSettings] = None,
    pool_settings: Optional[AgentPoolSettings] = None,
    cache_settings: Optional[CacheSettings] = None,
    credential_settings: Optional[CredentialSettings] = None,
    deployment_settings: Optional[DeploymentSettings] = None,
    cache_backend: Optional[PayloadBackend] = None,
    sinks: Iterable[NotificationSink] = (),
    pool_maintenance_loop: bool = True,
) -> Orchestrator:
    """Build, recover and start every component.

    Runs and deployments that were in flight when the previous process
    stopped are resolved before any new work is accepted.
    """

    settings = settings or OrchestratorSettings()
    configure_logging("control_plane", settings.log_level, json_output=settings.log_json)
    configure_tracing(
        "control_plane",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    if policies is None:
        try:
            policies = load_policy_document(settings.policy_path)
        except Exception as exc:
            LOGGER.error("Failed to load policy document", error=str(exc))
            raise

    store = StateStore(settings.database_url)
    await store.open()

    audit = AuditLog(store, sinks=sinks)
    if settings.notification_webhook_url is not None:
        audit.add_sink(
            WebhookNotificationSink(
                str(settings.notification_webhook_url),
                min_severity=settings.notification_min_severity,
            )
        )

    pool = PoolManager(pool_settings or AgentPoolSettings(), fleet, policies=policies.scaling)
    credentials = CredentialBroker(credential_settings or CredentialSettings(), policies.credentials, audit)
    cache = CacheStore(cache_settings or CacheSettings(), cache_backend)
    deployments = DeploymentStateMachine(
        deployment_settings or DeploymentSettings(),
        policies,
        store,
        audit,
        deploy_executor,
        smoke_tests,
    )
    scheduler = PipelineScheduler(
        scheduler_settings or SchedulerSettings(),
        store=store,
        audit=audit,
        pool=pool,
        executor=job_executor,
        credentials=credentials,
        cache=cache,
        deployments=deployments,
    )

    try:
        recovered_runs = await scheduler.recover()
        recovered_deployments = await deployments.recover()
        await pool.start(maintenance_loop=pool_maintenance_loop)
        await deployments.start()
    except Exception:
        await pool.stop()
        await audit.close()
        await store.close()
        raise

    LOGGER.info(
        "Orchestrator started",
        recovered_runs=recovered_runs,
        recovered_deployments=recovered_deployments,
        scaling_pools=len(policies.scaling),
        environments=len(policies.environments),
    )
    return Orchestrator(
        settings,
        store=store,
        audit=audit,
        policies=policies,
        pool=pool,
        credentials=credentials,
        cache=cache,
        deployments=deployments,
        scheduler=scheduler,
    )


@asynccontextmanager
async def orchestrator_lifespan(**kwargs) -> AsyncIterator[Orchestrator]:
    """``async with`` wrapper around :func:`create_orchestrator`."""

    orchestrator = await create_orchestrator(**kwargs)
    try:
        yield orchestrator
    finally:
        await orchestrator.shutdown()
