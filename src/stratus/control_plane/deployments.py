"""Deployment state machine: approval gates, environment locks, verification and rollback."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from opentelemetry import trace

from ..common.errors import (
    ApprovalDenied,
    ApprovalTimeout,
    EnvironmentBusy,
    ExecutionFailure,
    InfrastructureFailure,
    InvalidTransition,
    MaintenanceWindowActive,
    NotFound,
    OrchestrationTimeout,
    RollbackUnavailable,
    SmokeTestTimeout,
    StratusError,
    ValidationError,
    error_fields,
)
from ..common.observability import span_attributes
from ..common.schemas import (
    Approval,
    Deployment,
    DeploymentStatus,
    EnvironmentState,
    Severity,
    utc_now,
)
from ..common.settings import DeploymentSettings
from ..runners.base import DeploymentExecutor, SmokeTestRunner
from .audit import AuditLog
from .policy import EnvironmentPolicy, PolicyDocument
from .state import StateStore

LOGGER = structlog.get_logger("stratus.control_plane.deployments")
TRACER = trace.get_tracer("stratus.control_plane.deployments")

COMPONENT = "deployments"
AUTO_ROLLBACK_ACTOR = "stratus:auto-rollback"


class DeploymentStateMachine:
    """Drives deployments through approval, apply, verification and rollback.

    Each environment has a single lock held from ``request_deployment`` until
    the deployment (and any automatic rollback) finishes, so at most one
    deployment per environment is ever non-terminal. A deployment waiting
    for approval is plain durable state; ``approve`` resumes it.
    """

    def __init__(
        self,
        settings: DeploymentSettings,
        policies: PolicyDocument,
        store: StateStore,
        audit: AuditLog,
        executor: DeploymentExecutor,
        smoke_tests: SmokeTestRunner,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._policies = policies
        self._store = store
        self._audit = audit
        self._executor = executor
        self._smoke_tests = smoke_tests
        self._clock = clock
        self._locks: dict[str, str] = {}
        self._deployments: dict[str, Deployment] = {}
        self._environments: dict[str, EnvironmentState] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._tasks: set[asyncio.Task] = set()
        self._watchdog: Optional[asyncio.Task] = None

    # Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        if self._watchdog is not None or self._settings.approval_timeout_seconds is None:
            return
        self._watchdog = asyncio.create_task(self._approval_watchdog(), name="stratus-approval-watchdog")

    async def stop(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            await asyncio.gather(self._watchdog, return_exceptions=True)
            self._watchdog = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _approval_watchdog(self) -> None:
        while True:
            await asyncio.sleep(self._settings.approval_check_interval_seconds)
            try:
                await self.expire_pending_approvals()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Approval watchdog iteration failed")

    async def recover(self) -> dict[str, int]:
        """Reload environment pointers and settle deployments interrupted by a restart."""

        for state in await self._store.list_environments():
            self._environments[state.environment] = state

        resumed = failed = 0
        pending = await self._store.list_deployments(statuses=["pending_approval", "approved", "deploying", "verifying"])
        for deployment in pending:
            self._deployments[deployment.deployment_id] = deployment
            self._finished.setdefault(deployment.deployment_id, asyncio.Event())
            if deployment.status == "pending_approval":
                self._locks[deployment.environment] = deployment.deployment_id
                resumed += 1
                continue
            error = InfrastructureFailure(
                "deployment interrupted by restart; not re-applied automatically",
                component=COMPONENT,
                environment=deployment.environment,
                deployment_id=deployment.deployment_id,
            )
            previous_status = deployment.status
            self._finish(deployment, "failed", error)
            await self._save(deployment)
            await self._record(
                "deployment.recovered",
                deployment,
                severity="warning",
                details={"previous_status": previous_status, "resolution": "failed"},
            )
            self._finished[deployment.deployment_id].set()
            failed += 1
        LOGGER.info("Deployment recovery complete", resumed=resumed, failed=failed)
        return {"resumed": resumed, "failed": failed}

    # Queries --------------------------------------------------------------

    async def get(self, deployment_id: str) -> Deployment:
        deployment = self._deployments.get(deployment_id)
        if deployment is None:
            deployment = await self._store.get_deployment(deployment_id)
        if deployment is None:
            raise NotFound(f"deployment {deployment_id} not found", component=COMPONENT, deployment_id=deployment_id)
        return deployment.model_copy(deep=True)

    async def current(self, environment: str) -> Optional[Deployment]:
        state = self._environments.get(environment)
        if state is None or state.current_deployment_id is None:
            return None
        return await self.get(state.current_deployment_id)

    def environment_state(self, environment: str) -> EnvironmentState:
        state = self._environments.get(environment)
        if state is None:
            return EnvironmentState(environment=environment)
        return state.model_copy()

    def lock_holder(self, environment: str) -> Optional[str]:
        return self._locks.get(environment)

    async def history(self, environment: str) -> list[Deployment]:
        return await self._store.list_deployments(environment=environment)

    async def wait_for(self, deployment_id: str, timeout: Optional[float] = None) -> Deployment:
        """Wait until the deployment and any automatic rollback have finished."""

        event = self._finished.get(deployment_id)
        if event is None:
            return await self.get(deployment_id)
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            raise OrchestrationTimeout(
                f"deployment {deployment_id} still in progress after {timeout}s",
                component=COMPONENT,
                deployment_id=deployment_id,
            ) from None
        return await self.get(deployment_id)

    # Commands -------------------------------------------------------------

    async def request_deployment(
        self,
        environment: str,
        artifact_ref: str,
        *,
        requested_by: str,
        emergency: bool = False,
        run_id: Optional[str] = None,
        job_run_id: Optional[str] = None,
    ) -> str:
        """Create a deployment, taking the environment lock. Returns its id."""

        if not environment or not artifact_ref:
            raise ValidationError("environment and artifact_ref are required", component=COMPONENT)
        policy = self._policies.environment(environment)
        now = self._clock()
        window = policy.active_blackout(now)
        if window is not None and not emergency:
            await self._audit.record(
                "deployment.rejected",
                component=COMPONENT,
                subject=environment,
                actor=requested_by,
                severity="warning",
                details={"environment": environment, "artifact_ref": artifact_ref, "reason": "maintenance_window"},
            )
            raise MaintenanceWindowActive(
                f"environment {environment} is inside a blackout window",
                component=COMPONENT,
                environment=environment,
                window=window.name,
            )

        holder = self._locks.get(environment)
        if holder is not None:
            raise EnvironmentBusy(
                f"environment {environment} is locked by deployment {holder}",
                component=COMPONENT,
                environment=environment,
                holder=holder,
            )
        deployment_id = uuid.uuid4().hex
        self._locks[environment] = deployment_id

        try:
            current = self._environments.get(environment)
            deployment = Deployment(
                deployment_id=deployment_id,
                environment=environment,
                artifact_ref=artifact_ref,
                status="pending_approval" if policy.requires_approval else "approved",
                requested_by=requested_by,
                previous_deployment_id=current.current_deployment_id if current else None,
                emergency=emergency,
                run_id=run_id,
                job_run_id=job_run_id,
                created_at=now,
                updated_at=now,
            )
            self._deployments[deployment_id] = deployment
            self._finished[deployment_id] = asyncio.Event()
            await self._save(deployment)
        except BaseException:
            self._release_lock(environment, deployment_id)
            self._deployments.pop(deployment_id, None)
            self._finished.pop(deployment_id, None)
            raise

        if window is not None:
            LOGGER.warning(
                "Emergency deployment overriding blackout window",
                environment=environment,
                deployment_id=deployment_id,
                requested_by=requested_by,
                window=window.name,
            )
            await self._record(
                "deployment.emergency_override",
                deployment,
                actor=requested_by,
                severity="warning",
                details={"window": window.name, "start": window.start.isoformat(), "end": window.end.isoformat()},
            )
        await self._record(
            "deployment.requested",
            deployment,
            actor=requested_by,
            details={
                "artifact_ref": artifact_ref,
                "required_approvals": policy.required_approvals,
                "previous_deployment_id": deployment.previous_deployment_id,
                "run_id": run_id,
                "job_run_id": job_run_id,
            },
        )
        LOGGER.info(
            "Deployment requested",
            deployment_id=deployment_id,
            environment=environment,
            artifact_ref=artifact_ref,
            status=deployment.status,
        )
        if deployment.status == "approved":
            await self._record("deployment.approved", deployment, actor=requested_by, details={"gate": "none"})
            self._launch(deployment_id)
        return deployment_id

    async def approve(self, deployment_id: str, approver: str, comment: Optional[str] = None) -> Deployment:
        deployment = self._require_live(deployment_id)
        if deployment.status != "pending_approval":
            raise InvalidTransition(
                f"deployment is {deployment.status}, not pending_approval",
                component=COMPONENT,
                deployment_id=deployment_id,
                environment=deployment.environment,
            )
        policy = self._policies.environment(deployment.environment)
        self._authorize(policy, deployment, approver)
        if any(item.approver == approver for item in deployment.approvals):
            LOGGER.debug("Duplicate approval ignored", deployment_id=deployment_id, approver=approver)
            return deployment.model_copy(deep=True)

        deployment.approvals.append(Approval(approver=approver, approved_at=self._clock(), comment=comment))
        deployment.updated_at = self._clock()
        # Quorum is decided before the first await so only one approver launches the flow.
        reached_quorum = len(deployment.approvals) >= policy.required_approvals
        if reached_quorum:
            deployment.status = "approved"
        await self._save(deployment)
        await self._record(
            "deployment.approval_recorded",
            deployment,
            actor=approver,
            details={
                "approvals": len(deployment.approvals),
                "required_approvals": policy.required_approvals,
                "comment": comment,
            },
        )
        if reached_quorum:
            await self._record(
                "deployment.approved",
                deployment,
                actor=approver,
                details={"approvers": [item.approver for item in deployment.approvals]},
            )
            LOGGER.info("Deployment approved", deployment_id=deployment_id, environment=deployment.environment)
            self._launch(deployment_id)
        return deployment.model_copy(deep=True)

    async def reject(self, deployment_id: str, approver: str, reason: str) -> Deployment:
        deployment = self._require_live(deployment_id)
        if deployment.status != "pending_approval":
            raise InvalidTransition(
                f"deployment is {deployment.status}, not pending_approval",
                component=COMPONENT,
                deployment_id=deployment_id,
            )
        policy = self._policies.environment(deployment.environment)
        self._authorize(policy, deployment, approver)
        error = ApprovalDenied(
            f"rejected by {approver}: {reason}",
            component=COMPONENT,
            environment=deployment.environment,
            deployment_id=deployment_id,
        )
        self._finish(deployment, "failed", error)
        await self._save(deployment)
        await self._record("deployment.rejected", deployment, actor=approver, severity="warning", details={"reason": reason})
        self._settle(deployment)
        return deployment.model_copy(deep=True)

    async def expire_pending_approvals(self) -> list[str]:
        """Fail deployments that have waited for approval longer than the configured timeout."""

        timeout = self._settings.approval_timeout_seconds
        if timeout is None:
            return []
        now = self._clock()
        expired: list[str] = []
        for deployment in list(self._deployments.values()):
            if deployment.status != "pending_approval":
                continue
            if (now - deployment.created_at).total_seconds() < timeout:
                continue
            error = ApprovalTimeout(
                f"no approval quorum within {timeout}s",
                component=COMPONENT,
                environment=deployment.environment,
                deployment_id=deployment.deployment_id,
            )
            self._finish(deployment, "failed", error)
            await self._save(deployment)
            await self._record(
                "deployment.approval_expired",
                deployment,
                severity="warning",
                details={"approvals": len(deployment.approvals), "timeout_seconds": timeout},
            )
            self._settle(deployment)
            expired.append(deployment.deployment_id)
        return expired

    async def rollback(self, deployment_id: str, requested_by: str) -> Deployment:
        """Manually roll an environment back from ``deployment_id`` to its predecessor."""

        deployment = self._deployments.get(deployment_id) or await self._store.get_deployment(deployment_id)
        if deployment is None:
            raise NotFound(f"deployment {deployment_id} not found", component=COMPONENT, deployment_id=deployment_id)
        self._deployments[deployment_id] = deployment
        environment = deployment.environment
        current = self._environments.get(environment)
        is_current = current is not None and current.current_deployment_id == deployment_id
        if not (deployment.status == "failed" or (deployment.status == "succeeded" and is_current)):
            raise RollbackUnavailable(
                f"cannot roll back a {deployment.status} deployment that is not live",
                component=COMPONENT,
                deployment_id=deployment_id,
                environment=environment,
            )
        if deployment.applied_at is None:
            raise RollbackUnavailable(
                "deployment was never applied to the environment",
                component=COMPONENT,
                deployment_id=deployment_id,
                environment=environment,
                error_kind=deployment.error_kind,
            )
        if deployment.previous_deployment_id is None:
            raise RollbackUnavailable(
                f"environment {environment} has no previous deployment to roll back to",
                component=COMPONENT,
                deployment_id=deployment_id,
                environment=environment,
            )
        holder = self._locks.get(environment)
        if holder is not None:
            raise EnvironmentBusy(
                f"environment {environment} is locked by deployment {holder}",
                component=COMPONENT,
                environment=environment,
                holder=holder,
            )
        self._locks[environment] = deployment_id
        event = asyncio.Event()
        self._finished[deployment_id] = event
        try:
            await self._rollback(deployment, requested_by=requested_by)
        finally:
            self._release_lock(environment, deployment_id)
            event.set()
        return deployment.model_copy(deep=True)

    # Flow -----------------------------------------------------------------

    def _launch(self, deployment_id: str) -> None:
        task = asyncio.create_task(self._run(deployment_id), name=f"stratus-deploy-{deployment_id[:8]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, deployment_id: str) -> None:
        deployment = self._deployments[deployment_id]
        policy = self._policies.environment(deployment.environment)
        try:
            with TRACER.start_as_current_span(
                "stratus.deployment",
                attributes=span_attributes(
                    deployment_id=deployment_id,
                    environment=deployment.environment,
                    artifact_ref=deployment.artifact_ref,
                ),
            ):
                error = await self._apply_and_verify(deployment, deployment.artifact_ref, policy, phase="deployment")
                if error is None:
                    self._finish(deployment, "succeeded")
                    await self._save(deployment)
                    await self._set_current(deployment.environment, deployment_id, health="healthy")
                    await self._record("deployment.succeeded", deployment, details={"artifact_ref": deployment.artifact_ref})
                    LOGGER.info("Deployment succeeded", deployment_id=deployment_id, environment=deployment.environment)
                    return

                self._finish(deployment, "failed", error)
                await self._save(deployment)
                await self._record("deployment.failed", deployment, severity="warning", details=error.to_dict())
                LOGGER.warning(
                    "Deployment failed",
                    deployment_id=deployment_id,
                    environment=deployment.environment,
                    error=error.message,
                    auto_rollback=policy.auto_rollback,
                )
                if policy.auto_rollback and deployment.rollback_attempts == 0:
                    await self._rollback(deployment, requested_by=AUTO_ROLLBACK_ACTOR)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Deployment flow crashed", deployment_id=deployment_id)
            if not deployment.terminal:
                self._finish(deployment, "failed", exc)
                await self._save(deployment)
                await self._record("deployment.failed", deployment, severity="critical", details=error_fields(exc))
        finally:
            self._settle(deployment)

    async def _apply_and_verify(
        self,
        deployment: Deployment,
        artifact_ref: str,
        policy: EnvironmentPolicy,
        *,
        phase: str,
    ) -> Optional[StratusError]:
        """Apply then smoke-test ``artifact_ref``. Returns the failure, if any.

        During a rollback the original deployment's status is left alone; the
        phases are visible through ``rollback.*`` audit events instead.
        """

        environment = deployment.environment
        tracks_status = phase == "deployment"

        if tracks_status:
            self._transition(deployment, "deploying")
            deployment.applied_at = deployment.updated_at
            await self._save(deployment)
        await self._record(f"{phase}.deploying", deployment, details={"artifact_ref": artifact_ref})
        try:
            result = await self._executor.apply(environment, artifact_ref)
        except Exception as exc:  # noqa: BLE001
            return ExecutionFailure(
                f"deployment executor raised: {exc}",
                component=COMPONENT,
                environment=environment,
                deployment_id=deployment.deployment_id,
                artifact_ref=artifact_ref,
            )
        if not result.success:
            return ExecutionFailure(
                result.message or "deployment executor reported failure",
                component=COMPONENT,
                environment=environment,
                deployment_id=deployment.deployment_id,
                artifact_ref=artifact_ref,
            )

        if tracks_status:
            self._transition(deployment, "verifying")
            await self._save(deployment)
        timeout = policy.smoke_test_timeout_seconds or self._settings.smoke_test_timeout_seconds
        await self._record(f"{phase}.verifying", deployment, details={"artifact_ref": artifact_ref, "timeout_seconds": timeout})
        try:
            passed = await asyncio.wait_for(
                self._smoke_tests.verify(environment, timeout_seconds=timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return SmokeTestTimeout(
                f"smoke tests did not finish within {timeout}s",
                component=COMPONENT,
                environment=environment,
                deployment_id=deployment.deployment_id,
                artifact_ref=artifact_ref,
            )
        except Exception as exc:  # noqa: BLE001
            return ExecutionFailure(
                f"smoke test runner raised: {exc}",
                component=COMPONENT,
                environment=environment,
                deployment_id=deployment.deployment_id,
                artifact_ref=artifact_ref,
            )
        if not passed:
            return ExecutionFailure(
                "smoke tests failed",
                component=COMPONENT,
                environment=environment,
                deployment_id=deployment.deployment_id,
                artifact_ref=artifact_ref,
            )
        return None

    async def _rollback(self, deployment: Deployment, *, requested_by: str) -> None:
        environment = deployment.environment
        policy = self._policies.environment(environment)
        target = None
        if deployment.previous_deployment_id is not None:
            target = self._deployments.get(deployment.previous_deployment_id) or await self._store.get_deployment(
                deployment.previous_deployment_id
            )

        deployment.rollback_attempts += 1
        deployment.updated_at = self._clock()
        await self._save(deployment)

        if target is None:
            await self._mark_environment_failed(
                deployment,
                requested_by=requested_by,
                reason="no previous successful deployment to roll back to",
            )
            return

        await self._record(
            "rollback.started",
            deployment,
            actor=requested_by,
            severity="warning",
            details={
                "target_deployment_id": target.deployment_id,
                "target_artifact_ref": target.artifact_ref,
                "attempt": deployment.rollback_attempts,
            },
        )
        LOGGER.warning(
            "Rolling back deployment",
            deployment_id=deployment.deployment_id,
            environment=environment,
            target=target.deployment_id,
            requested_by=requested_by,
        )
        with TRACER.start_as_current_span(
            "stratus.deployment.rollback",
            attributes=span_attributes(deployment_id=deployment.deployment_id, environment=environment),
        ):
            error = await self._apply_and_verify(deployment, target.artifact_ref, policy, phase="rollback")

        if error is None:
            self._finish(deployment, "rolled_back", keep_error=True)
            deployment.rolled_back_to = target.deployment_id
            await self._save(deployment)
            await self._set_current(environment, target.deployment_id, health="healthy")
            await self._record(
                "rollback.succeeded",
                deployment,
                actor=requested_by,
                details={"target_deployment_id": target.deployment_id},
            )
            return

        await self._mark_environment_failed(
            deployment,
            requested_by=requested_by,
            reason=error.message,
            details={"target_deployment_id": target.deployment_id, "error": error.to_dict()},
        )

    async def _mark_environment_failed(
        self,
        deployment: Deployment,
        *,
        requested_by: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        state = self._environments.get(deployment.environment) or EnvironmentState(environment=deployment.environment)
        state.health = "failed"
        state.updated_at = self._clock()
        self._environments[deployment.environment] = state
        await self._store.save_environment(state)
        LOGGER.error(
            "Rollback failed; environment left failed",
            deployment_id=deployment.deployment_id,
            environment=deployment.environment,
            reason=reason,
        )
        await self._record(
            "rollback.failed",
            deployment,
            actor=requested_by,
            severity="critical",
            details={"reason": reason, "attempt": deployment.rollback_attempts, **(details or {})},
        )

    # Helpers --------------------------------------------------------------

    def _require_live(self, deployment_id: str) -> Deployment:
        deployment = self._deployments.get(deployment_id)
        if deployment is None:
            raise NotFound(f"deployment {deployment_id} not found", component=COMPONENT, deployment_id=deployment_id)
        return deployment

    def _authorize(self, policy: EnvironmentPolicy, deployment: Deployment, approver: str) -> None:
        if not policy.is_authorized_approver(approver):
            raise ApprovalDenied(
                f"{approver} is not an authorized approver for {deployment.environment}",
                component=COMPONENT,
                environment=deployment.environment,
                deployment_id=deployment.deployment_id,
                approver=approver,
            )
        if policy.prevent_self_approval and approver == deployment.requested_by:
            raise ApprovalDenied(
                "requesters cannot approve their own deployment",
                component=COMPONENT,
                environment=deployment.environment,
                deployment_id=deployment.deployment_id,
                approver=approver,
            )

    def _transition(self, deployment: Deployment, status: DeploymentStatus) -> None:
        LOGGER.debug(
            "Deployment transition",
            deployment_id=deployment.deployment_id,
            environment=deployment.environment,
            from_status=deployment.status,
            to_status=status,
        )
        deployment.status = status
        deployment.updated_at = self._clock()

    def _finish(
        self,
        deployment: Deployment,
        status: DeploymentStatus,
        error: Optional[BaseException] = None,
        *,
        keep_error: bool = False,
    ) -> None:
        self._transition(deployment, status)
        deployment.completed_at = deployment.updated_at
        if error is not None:
            fields = error_fields(error)
            deployment.error_kind = fields["error_kind"]
            deployment.error_component = fields["error_component"]
            deployment.error_message = fields["error_message"]
        elif not keep_error:
            deployment.error_kind = deployment.error_component = deployment.error_message = None

    def _settle(self, deployment: Deployment) -> None:
        self._release_lock(deployment.environment, deployment.deployment_id)
        event = self._finished.get(deployment.deployment_id)
        if event is not None:
            event.set()

    def _release_lock(self, environment: str, deployment_id: str) -> None:
        if self._locks.get(environment) == deployment_id:
            del self._locks[environment]

    async def _set_current(self, environment: str, deployment_id: str, *, health: str) -> None:
        state = self._environments.get(environment) or EnvironmentState(environment=environment)
        state.current_deployment_id = deployment_id
        state.health = health  # type: ignore[assignment]
        state.updated_at = self._clock()
        self._environments[environment] = state
        await self._store.save_environment(state)

    async def _save(self, deployment: Deployment) -> None:
        await self._store.save_deployment(deployment)

    async def _record(
        self,
        event_type: str,
        deployment: Deployment,
        *,
        actor: Optional[str] = None,
        severity: Severity = "info",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        payload = {"environment": deployment.environment, "status": deployment.status, **(details or {})}
        await self._audit.record(
            event_type,
            component=COMPONENT,
            subject=deployment.deployment_id,
            actor=actor,
            severity=severity,
            details=payload,
        )
