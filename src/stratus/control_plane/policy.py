"""Identity and policy tables: credential scopes, environment gates, scaling."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Iterable, Optional

import structlog
import yaml

from ..common.errors import ValidationError
from ..common.schemas import CredentialScope
from ..runners.pool_manager import ScalingPolicy

LOGGER = structlog.get_logger("stratus.control_plane.policy")

_WEEKDAYS = {"mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6}


class PolicyError(ValidationError):
    """Raised when a policy configuration is invalid."""

    component = "policy"


def _normalise_entries(entries: Iterable[str] | None) -> frozenset[str]:
    if not entries:
        return frozenset()
    if isinstance(entries, str):
        entries = [entries]
    return frozenset(str(item).strip() for item in entries if item and str(item).strip())


def _parse_clock(value: Any, field_name: str) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, int):
        # YAML 1.1 reads unquoted 22:00 as sexagesimal minutes.
        hours, minutes = divmod(value, 60)
        if 0 <= hours < 24:
            return time(hour=hours, minute=minutes)
    try:
        return time.fromisoformat(str(value))
    except ValueError as exc:
        raise PolicyError(f"Invalid time for {field_name}: {value!r}") from exc


def _parse_days(values: Any) -> frozenset[int]:
    if not values:
        return frozenset(range(7))
    days: set[int] = set()
    for value in values if isinstance(values, (list, tuple)) else [values]:
        if isinstance(value, int) and 0 <= value <= 6:
            days.add(value)
            continue
        key = str(value).strip().lower()[:3]
        if key not in _WEEKDAYS:
            raise PolicyError(f"Invalid weekday in blackout window: {value!r}")
        days.add(_WEEKDAYS[key])
    return frozenset(days)


@dataclass(frozen=True)
class BlackoutWindow:
    """Recurring UTC window during which deployments are refused.

    A window whose ``end`` is earlier than its ``start`` wraps past midnight;
    ``days`` are the weekdays on which the window opens.
    """

    start: time
    end: time
    days: frozenset[int] = frozenset(range(7))
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "BlackoutWindow":
        if not isinstance(payload, dict):
            raise PolicyError("blackout window entries must be mappings")
        if "start" not in payload or "end" not in payload:
            raise PolicyError("blackout windows require start and end")
        return cls(
            start=_parse_clock(payload["start"], "start"),
            end=_parse_clock(payload["end"], "end"),
            days=_parse_days(payload.get("days")),
            name=payload.get("name"),
        )

    def contains(self, moment: datetime) -> bool:
        clock = moment.timetz().replace(tzinfo=None)
        if self.start <= self.end:
            return moment.weekday() in self.days and self.start <= clock < self.end
        if clock >= self.start:
            return moment.weekday() in self.days
        if clock < self.end:
            return (moment - timedelta(days=1)).weekday() in self.days
        return False


@dataclass(frozen=True)
class EnvironmentPolicy:
    name: str
    required_approvals: int = 0
    approvers: frozenset[str] = frozenset()
    prevent_self_approval: bool = False
    auto_rollback: bool = False
    smoke_test_timeout_seconds: Optional[float] = None
    blackout_windows: tuple[BlackoutWindow, ...] = ()

    @property
    def requires_approval(self) -> bool:
        return self.required_approvals > 0

    def is_authorized_approver(self, approver: str) -> bool:
        # An empty approver list means any identity may approve.
        return not self.approvers or approver in self.approvers

    def active_blackout(self, moment: datetime) -> Optional[BlackoutWindow]:
        for window in self.blackout_windows:
            if window.contains(moment):
                return window
        return None

    @classmethod
    def from_dict(cls, name: str, payload: dict[str, Any]) -> "EnvironmentPolicy":
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise PolicyError(f"environment {name!r} must be a mapping")
        approvals = payload.get("required_approvals", 0)
        if not isinstance(approvals, int) or approvals < 0:
            raise PolicyError(f"environment {name!r}: required_approvals must be a non-negative integer")
        approvers = _normalise_entries(payload.get("approvers"))
        if approvers and approvals > len(approvers):
            raise PolicyError(
                f"environment {name!r}: required_approvals exceeds the number of authorized approvers"
            )
        smoke_timeout = payload.get("smoke_test_timeout_seconds")
        if smoke_timeout is not None and float(smoke_timeout) <= 0:
            raise PolicyError(f"environment {name!r}: smoke_test_timeout_seconds must be positive")
        windows = tuple(BlackoutWindow.from_dict(item) for item in payload.get("blackout_windows") or [])
        return cls(
            name=name,
            required_approvals=approvals,
            approvers=approvers,
            prevent_self_approval=bool(payload.get("prevent_self_approval", False)),
            auto_rollback=bool(payload.get("auto_rollback", False)),
            smoke_test_timeout_seconds=float(smoke_timeout) if smoke_timeout is not None else None,
            blackout_windows=windows,
        )


@dataclass(frozen=True)
class CredentialRule:
    """One row of the scope table: repository x environment x ref -> claims."""

    repository: str
    ref: str = "*"
    environment: Optional[str] = None
    claims: frozenset[str] = frozenset({"read"})

    def matches(self, scope: CredentialScope) -> bool:
        if not fnmatchcase(scope.repository, self.repository):
            return False
        if not fnmatchcase(scope.ref, self.ref):
            return False
        if self.environment is not None and self.environment != "*" and scope.environment != self.environment:
            return False
        return True

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CredentialRule":
        if not isinstance(payload, dict):
            raise PolicyError("credential rules must be mappings")
        repository = payload.get("repository")
        if not repository:
            raise PolicyError("credential rules require a repository pattern")
        claims = _normalise_entries(payload.get("claims"))
        if not claims:
            raise PolicyError(f"credential rule for {repository!r} grants no claims")
        return cls(
            repository=str(repository),
            ref=str(payload.get("ref", "*")),
            environment=payload.get("environment"),
            claims=claims,
        )


@dataclass(frozen=True)
class CredentialPolicy:
    rules: tuple[CredentialRule, ...] = ()

    def allowed_claims(self, scope: CredentialScope) -> frozenset[str]:
        allowed: set[str] = set()
        for rule in self.rules:
            if rule.matches(scope):
                allowed |= rule.claims
        return frozenset(allowed)


@dataclass(frozen=True)
class PolicyDocument:
    credentials: CredentialPolicy = field(default_factory=CredentialPolicy)
    environments: dict[str, EnvironmentPolicy] = field(default_factory=dict)
    scaling: tuple[ScalingPolicy, ...] = ()

    def environment(self, name: str) -> EnvironmentPolicy:
        policy = self.environments.get(name)
        if policy is None:
            return EnvironmentPolicy(name=name)
        return policy

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PolicyDocument":
        credential_rows = payload.get("credentials") or []
        if not isinstance(credential_rows, list):
            raise PolicyError("credentials must be a list of rules")
        environments_raw = payload.get("environments") or {}
        if not isinstance(environments_raw, dict):
            raise PolicyError("environments must be a mapping")
        scaling_rows = payload.get("scaling") or []
        if not isinstance(scaling_rows, list):
            raise PolicyError("scaling must be a list of pools")

        scaling: list[ScalingPolicy] = []
        for row in scaling_rows:
            if not isinstance(row, dict) or not row.get("labels"):
                raise PolicyError("scaling pools require a labels list")
            try:
                scaling.append(
                    ScalingPolicy(
                        labels=_normalise_entries(row.get("labels")),
                        min_replicas=int(row.get("min_replicas", 0)),
                        max_replicas=int(row.get("max_replicas", 1)),
                        scale_up_threshold=int(row.get("scale_up_threshold", 1)),
                    )
                )
            except ValueError as exc:
                raise PolicyError(f"Invalid scaling pool {row.get('labels')!r}: {exc}") from exc

        return cls(
            credentials=CredentialPolicy(rules=tuple(CredentialRule.from_dict(row) for row in credential_rows)),
            environments={
                str(name): EnvironmentPolicy.from_dict(str(name), body)
                for name, body in environments_raw.items()
            },
            scaling=tuple(scaling),
        )


def load_policy_document(path: Optional[Path]) -> PolicyDocument:
    if path is None:
        LOGGER.info("No policy document configured; using defaults")
        return PolicyDocument()
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found at {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        LOGGER.info("Loaded empty policy document", path=str(path))
        return PolicyDocument()
    if not isinstance(data, dict):
        raise PolicyError("Policy file must contain a mapping at the top level")
    document = PolicyDocument.from_dict(data)
    LOGGER.info(
        "Loaded policy document",
        path=str(path),
        credential_rules=len(document.credentials.rules),
        environments=sorted(document.environments),
        scaling_pools=len(document.scaling),
    )
    return document
