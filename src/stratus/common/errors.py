"""Error taxonomy shared by every Stratus component."""

from __future__ import annotations

from typing import Any, Optional


class StratusError(Exception):
    """Base error carrying the taxonomy kind, failing component and context."""

    kind = "internal"
    component = "core"

    def __init__(self, message: str, *, component: Optional[str] = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        if component:
            self.component = component
        self.context = {key: value for key, value in context.items() if value is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "error": type(self).__name__,
            "component": self.component,
            "message": self.message,
            "context": dict(self.context),
        }


class ValidationError(StratusError):
    """Malformed pipeline definition or policy; rejected before any side effect."""

    kind = "validation"


class CyclicDependencyError(ValidationError):
    pass


class ResourceUnavailable(StratusError):
    kind = "resource_unavailable"


class NoAgentAvailable(ResourceUnavailable):
    pass


class PolicyRejection(StratusError):
    """Request refused by policy. Raised before any partial side effect."""

    kind = "policy_rejection"


class ScopeDenied(PolicyRejection):
    pass


class MaintenanceWindowActive(PolicyRejection):
    pass


class EnvironmentBusy(PolicyRejection):
    pass


class ApprovalDenied(PolicyRejection):
    pass


class CredentialRevoked(PolicyRejection):
    pass


class CredentialExpired(PolicyRejection):
    pass


class CredentialInvalid(PolicyRejection):
    pass


class ExecutionFailure(StratusError):
    """The job's own command failed."""

    kind = "execution_failure"


class InfrastructureFailure(StratusError):
    kind = "infrastructure_failure"


class AgentLost(InfrastructureFailure):
    pass


class ProvisioningFailed(InfrastructureFailure):
    pass


class OrchestrationTimeout(StratusError):
    kind = "timeout"


class AcquireTimeout(OrchestrationTimeout):
    pass


class ApprovalTimeout(OrchestrationTimeout):
    pass


class SmokeTestTimeout(OrchestrationTimeout):
    pass


class InvalidTransition(StratusError):
    kind = "conflict"


class RollbackUnavailable(InvalidTransition):
    pass


class NotFound(StratusError):
    kind = "not_found"


def error_fields(exc: BaseException) -> dict[str, Optional[str]]:
    """Flatten an exception into the error columns stored on run records."""

    if isinstance(exc, StratusError):
        return {
            "error_kind": exc.kind,
            "error_component": exc.component,
            "error_message": exc.message,
        }
    return {
        "error_kind": "internal",
        "error_component": "core",
        "error_message": f"{type(exc).__name__}: {exc}",
    }
