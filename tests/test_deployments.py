"""Tests for the deployment state machine."""

from __future__ import annotations

import asyncio

import pytest

from stratus.common.errors import (
    ApprovalDenied,
    EnvironmentBusy,
    InvalidTransition,
    MaintenanceWindowActive,
    RollbackUnavailable,
    ValidationError,
)
from stratus.common.schemas import Deployment
from stratus.control_plane.deployments import AUTO_ROLLBACK_ACTOR, DeploymentStateMachine
from stratus.control_plane.policy import PolicyDocument

from tests.utils.fakes import FakeDeployExecutor, FakeSmokeTests

POLICIES = PolicyDocument.from_dict(
    {
        "environments": {
            "staging": {"auto_rollback": True},
            "prod": {
                "required_approvals": 2,
                "approvers": ["alice", "bob", "carol"],
                "prevent_self_approval": True,
            },
            "frozen": {
                "blackout_windows": [{"name": "always", "start": "00:00", "end": "23:59:59.999999"}],
            },
        }
    }
)


@pytest.fixture
def deploy() -> FakeDeployExecutor:
    return FakeDeployExecutor()


@pytest.fixture
def smoke(deploy) -> FakeSmokeTests:
    return FakeSmokeTests(deploy)


@pytest.fixture
def machine(deployment_settings, state_store, audit_log, deploy, smoke, clock) -> DeploymentStateMachine:
    return DeploymentStateMachine(
        deployment_settings, POLICIES, state_store, audit_log, deploy, smoke, clock=clock
    )


async def _deploy(machine: DeploymentStateMachine, environment: str, artifact: str) -> Deployment:
    deployment_id = await machine.request_deployment(environment, artifact, requested_by="ci")
    return await machine.wait_for(deployment_id, timeout=2)


async def _event_types(audit_log, subject: str) -> list[str]:
    return [event.event_type for event in await audit_log.list_events(subject=subject)]


@pytest.mark.asyncio
async def test_ungated_deployment_succeeds(machine, audit_log, deploy):
    deployment = await _deploy(machine, "dev", "v1")

    assert deployment.status == "succeeded"
    assert deploy.applied == [("dev", "v1")]
    assert machine.environment_state("dev").current_deployment_id == deployment.deployment_id
    assert machine.lock_holder("dev") is None
    assert (await machine.current("dev")).artifact_ref == "v1"
    assert await _event_types(audit_log, deployment.deployment_id) == [
        "deployment.requested",
        "deployment.approved",
        "deployment.deploying",
        "deployment.verifying",
        "deployment.succeeded",
    ]


@pytest.mark.asyncio
async def test_request_requires_environment_and_artifact(machine):
    with pytest.raises(ValidationError):
        await machine.request_deployment("dev", "", requested_by="ci")


@pytest.mark.asyncio
async def test_environment_lock_rejects_concurrent_requests(machine):
    first = await machine.request_deployment("prod", "v1", requested_by="ci")

    with pytest.raises(EnvironmentBusy) as exc_info:
        await machine.request_deployment("prod", "v2", requested_by="ci")

    assert exc_info.value.context["holder"] == first
    assert machine.lock_holder("prod") == first
    assert len(await machine.history("prod")) == 1

    await machine.reject(first, "alice", "not today")
    assert machine.lock_holder("prod") is None
    second = await machine.request_deployment("prod", "v2", requested_by="ci")
    assert machine.lock_holder("prod") == second


@pytest.mark.asyncio
async def test_concurrent_requests_leave_one_live_deployment(machine):
    results = await asyncio.gather(
        *(machine.request_deployment("prod", f"v{index}", requested_by="ci") for index in range(5)),
        return_exceptions=True,
    )

    accepted = [item for item in results if isinstance(item, str)]
    assert len(accepted) == 1
    assert all(isinstance(item, EnvironmentBusy) for item in results if item not in accepted)
    assert machine.lock_holder("prod") == accepted[0]


@pytest.mark.asyncio
async def test_approval_quorum(machine, deploy, audit_log):
    deployment_id = await machine.request_deployment("prod", "v1", requested_by="ci")
    assert (await machine.get(deployment_id)).status == "pending_approval"

    await machine.approve(deployment_id, "alice")
    duplicate = await machine.approve(deployment_id, "alice")
    assert duplicate.status == "pending_approval"
    assert len(duplicate.approvals) == 1
    assert deploy.applied == []

    await machine.approve(deployment_id, "bob", comment="lgtm")
    deployment = await machine.wait_for(deployment_id, timeout=2)

    assert deployment.status == "succeeded"
    assert [approval.approver for approval in deployment.approvals] == ["alice", "bob"]
    recorded = await audit_log.list_events(subject=deployment_id, event_type="deployment.approval_recorded")
    assert len(recorded) == 2

    with pytest.raises(InvalidTransition):
        await machine.approve(deployment_id, "carol")


@pytest.mark.asyncio
async def test_concurrent_approvals_launch_once(machine, deploy, audit_log):
    deployment_id = await machine.request_deployment("prod", "v1", requested_by="ci")

    await asyncio.gather(machine.approve(deployment_id, "alice"), machine.approve(deployment_id, "bob"))
    deployment = await machine.wait_for(deployment_id, timeout=2)

    assert deployment.status == "succeeded"
    assert deploy.applied == [("prod", "v1")]
    events = await _event_types(audit_log, deployment_id)
    for event_type in ("deployment.approved", "deployment.deploying", "deployment.verifying", "deployment.succeeded"):
        assert events.count(event_type) == 1


@pytest.mark.asyncio
async def test_unauthorized_and_self_approval_are_denied(machine):
    deployment_id = await machine.request_deployment("prod", "v1", requested_by="alice")

    with pytest.raises(ApprovalDenied):
        await machine.approve(deployment_id, "mallory")
    with pytest.raises(ApprovalDenied):
        await machine.approve(deployment_id, "alice")

    assert (await machine.get(deployment_id)).approvals == []


@pytest.mark.asyncio
async def test_rejection_fails_deployment(machine, deploy):
    deployment_id = await machine.request_deployment("prod", "v1", requested_by="ci")

    deployment = await machine.reject(deployment_id, "carol", "wrong artifact")

    assert deployment.status == "failed"
    assert deployment.error_kind == "policy_rejection"
    assert "wrong artifact" in deployment.error_message
    assert deploy.applied == []


@pytest.mark.asyncio
async def test_pending_approvals_expire(deployment_settings, state_store, audit_log, deploy, smoke, clock):
    settings = deployment_settings.model_copy(update={"approval_timeout_seconds": 60.0})
    machine = DeploymentStateMachine(settings, POLICIES, state_store, audit_log, deploy, smoke, clock=clock)
    deployment_id = await machine.request_deployment("prod", "v1", requested_by="ci")

    clock.advance(30)
    assert await machine.expire_pending_approvals() == []

    clock.advance(31)
    assert await machine.expire_pending_approvals() == [deployment_id]

    deployment = await machine.get(deployment_id)
    assert deployment.status == "failed"
    assert deployment.error_kind == "timeout"
    assert machine.lock_holder("prod") is None


@pytest.mark.asyncio
async def test_blackout_window_rejects_unless_emergency(machine, audit_log, deploy):
    with pytest.raises(MaintenanceWindowActive):
        await machine.request_deployment("frozen", "v1", requested_by="ci")
    assert machine.lock_holder("frozen") is None
    assert await audit_log.list_events(event_type="deployment.rejected")

    deployment_id = await machine.request_deployment("frozen", "hotfix", requested_by="oncall", emergency=True)
    deployment = await machine.wait_for(deployment_id, timeout=2)

    assert deployment.status == "succeeded"
    assert deployment.emergency
    overrides = await audit_log.list_events(event_type="deployment.emergency_override")
    assert overrides[0].actor == "oncall"
    assert overrides[0].severity == "warning"


@pytest.mark.asyncio
async def test_failed_smoke_tests_roll_back_once(machine, deploy, smoke, audit_log):
    good = await _deploy(machine, "staging", "v1")
    smoke.failing.add("v2")

    bad = await _deploy(machine, "staging", "v2")

    assert bad.status == "rolled_back"
    assert bad.rolled_back_to == good.deployment_id
    assert bad.rollback_attempts == 1
    assert bad.error_kind == "execution_failure"
    assert deploy.applied == [("staging", "v1"), ("staging", "v2"), ("staging", "v1")]
    assert machine.environment_state("staging").current_deployment_id == good.deployment_id
    assert machine.environment_state("staging").health == "healthy"

    events = await _event_types(audit_log, bad.deployment_id)
    assert events.count("rollback.started") == 1
    assert events[-1] == "rollback.succeeded"
    started = await audit_log.list_events(subject=bad.deployment_id, event_type="rollback.started")
    assert started[0].actor == AUTO_ROLLBACK_ACTOR


@pytest.mark.asyncio
async def test_failed_rollback_leaves_environment_failed(machine, deploy, smoke, audit_log):
    good = await _deploy(machine, "staging", "v1")
    smoke.failing.add("v2")
    deploy.failing.add("v1")

    bad = await _deploy(machine, "staging", "v2")

    assert bad.status == "failed"
    assert bad.rollback_attempts == 1
    assert deploy.applied == [("staging", "v1"), ("staging", "v2"), ("staging", "v1")]
    state = machine.environment_state("staging")
    assert state.health == "failed"
    assert state.current_deployment_id == good.deployment_id
    assert machine.lock_holder("staging") is None

    failures = await audit_log.list_events(subject=bad.deployment_id, event_type="rollback.failed")
    assert len(failures) == 1
    assert failures[0].severity == "critical"


@pytest.mark.asyncio
async def test_first_deployment_failure_has_nothing_to_roll_back_to(machine, smoke, audit_log):
    smoke.failing.add("v1")

    deployment = await _deploy(machine, "staging", "v1")

    assert deployment.status == "failed"
    assert machine.environment_state("staging").health == "failed"
    events = await _event_types(audit_log, deployment.deployment_id)
    assert "rollback.started" not in events
    assert events[-1] == "rollback.failed"


@pytest.mark.asyncio
async def test_manual_rollback(machine, deploy):
    first = await _deploy(machine, "dev", "v1")
    with pytest.raises(RollbackUnavailable):
        await machine.rollback(first.deployment_id, "ops")

    second = await _deploy(machine, "dev", "v2")
    rolled = await machine.rollback(second.deployment_id, "ops")

    assert rolled.status == "rolled_back"
    assert rolled.rolled_back_to == first.deployment_id
    assert deploy.applied[-1] == ("dev", "v1")
    assert machine.environment_state("dev").current_deployment_id == first.deployment_id

    with pytest.raises(RollbackUnavailable):
        await machine.rollback(second.deployment_id, "ops")


@pytest.mark.asyncio
async def test_rejected_deployment_cannot_be_rolled_back(machine, deploy):
    first = await machine.request_deployment("prod", "v1", requested_by="ci")
    await machine.approve(first, "alice")
    await machine.approve(first, "bob")
    assert (await machine.wait_for(first, timeout=2)).status == "succeeded"

    second = await machine.request_deployment("prod", "v2", requested_by="ci")
    await machine.reject(second, "carol", "not ready")

    with pytest.raises(RollbackUnavailable):
        await machine.rollback(second, "ops")

    assert deploy.applied == [("prod", "v1")]
    assert (await machine.get(second)).status == "failed"
    assert machine.environment_state("prod").current_deployment_id == first
    assert machine.lock_holder("prod") is None


@pytest.mark.asyncio
async def test_pending_deployment_cannot_be_rolled_back(machine):
    deployment_id = await machine.request_deployment("prod", "v1", requested_by="ci")

    with pytest.raises(RollbackUnavailable):
        await machine.rollback(deployment_id, "ops")


@pytest.mark.asyncio
async def test_recovery_resumes_pending_and_fails_in_flight(
    deployment_settings, state_store, audit_log, deploy, smoke, clock
):
    before = DeploymentStateMachine(deployment_settings, POLICIES, state_store, audit_log, deploy, smoke, clock=clock)
    pending_id = await before.request_deployment("prod", "v1", requested_by="ci")
    await before.approve(pending_id, "alice")
    await state_store.save_deployment(
        Deployment(
            deployment_id="in-flight",
            environment="dev",
            artifact_ref="v9",
            status="deploying",
            requested_by="ci",
        )
    )

    after = DeploymentStateMachine(deployment_settings, POLICIES, state_store, audit_log, deploy, smoke, clock=clock)
    assert await after.recover() == {"resumed": 1, "failed": 1}

    interrupted = await after.get("in-flight")
    assert interrupted.status == "failed"
    assert interrupted.error_kind == "infrastructure_failure"
    assert deploy.applied == []
    assert after.lock_holder("prod") == pending_id
    with pytest.raises(EnvironmentBusy):
        await after.request_deployment("prod", "v2", requested_by="ci")

    await after.approve(pending_id, "bob")
    resumed = await after.wait_for(pending_id, timeout=2)
    assert resumed.status == "succeeded"
    assert [approval.approver for approval in resumed.approvals] == ["alice", "bob"]
