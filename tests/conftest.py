"""Shared fixtures for the Stratus test-suite."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from stratus.common.schemas import utc_now
from stratus.common.settings import (
    AgentPoolSettings,
    CacheSettings,
    CredentialSettings,
    DeploymentSettings,
    SchedulerSettings,
)
from stratus.control_plane.audit import AuditLog
from stratus.control_plane.state import StateStore


class FakeClock:
    """Settable wall clock for components that take a ``clock`` callable."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class MonotonicClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> MonotonicClock:
    return MonotonicClock()


@pytest_asyncio.fixture
async def state_store(tmp_path):
    store = StateStore(f"sqlite+aiosqlite:///{tmp_path / 'state' / 'stratus.db'}")
    await store.open()
    try:
        yield store
    finally:
        await store.close()


@pytest_asyncio.fixture
async def audit_log(state_store):
    audit = AuditLog(state_store)
    try:
        yield audit
    finally:
        await audit.close()


@pytest.fixture
def scheduler_settings() -> SchedulerSettings:
    return SchedulerSettings(
        agent_acquire_timeout_seconds=2.0,
        global_max_running=16,
        default_job_timeout_seconds=5.0,
        infra_retry_attempts=2,
        infra_retry_base_seconds=0.01,
        infra_retry_max_seconds=0.05,
    )


@pytest.fixture
def pool_settings() -> AgentPoolSettings:
    return AgentPoolSettings(
        provisioning_timeout_seconds=1.0,
        scale_up_debounce_seconds=30.0,
        scale_down_cooldown_seconds=60.0,
        heartbeat_liveness_seconds=90.0,
        maintenance_interval_seconds=3600.0,
    )


@pytest.fixture
def cache_settings() -> CacheSettings:
    return CacheSettings(storage_path=None, namespace_budget_bytes=1024)


@pytest.fixture
def credential_settings() -> CredentialSettings:
    return CredentialSettings(
        signing_secret="test-signing-secret-0123456789abcdef",
        issuer="stratus-test",
        default_ttl_seconds=300,
        max_ttl_seconds=900,
    )


@pytest.fixture
def deployment_settings() -> DeploymentSettings:
    return DeploymentSettings(
        smoke_test_timeout_seconds=1.0,
        approval_timeout_seconds=None,
        approval_check_interval_seconds=3600.0,
    )
