"""Short-lived, scope-restricted credentials for running jobs."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import structlog
from opentelemetry import trace

from ..common.errors import (
    CredentialExpired,
    CredentialInvalid,
    CredentialRevoked,
    ScopeDenied,
    ValidationError,
)
from ..common.observability import span_attributes
from ..common.schemas import Credential, CredentialGrant, CredentialScope, utc_now
from ..common.security import decode_credential_token, mint_credential_token, token_expiry
from ..common.settings import CredentialSettings
from .audit import AuditLog
from .policy import CredentialPolicy

LOGGER = structlog.get_logger("stratus.control_plane.credentials")
TRACER = trace.get_tracer("stratus.control_plane.credentials")

COMPONENT = "credentials"


class CredentialBroker:
    """Issues, revokes and exchanges job credentials.

    Active credentials and the revocation set live only in process memory.
    A credential that this broker instance did not issue is never accepted,
    so a restart invalidates everything outstanding.
    """

    def __init__(
        self,
        settings: CredentialSettings,
        policy: CredentialPolicy,
        audit: AuditLog,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._policy = policy
        self._audit = audit
        self._clock = clock
        self._secrets: list[str] = [settings.signing_secret.get_secret_value(), *settings.signing_secret_fallbacks]
        self._active: dict[str, Credential] = {}
        self._revoked: dict[str, datetime] = {}

    @property
    def active_count(self) -> int:
        return len(self._active)

    def rotate_signing_secret(self, secret: str) -> None:
        """Sign new credentials with ``secret``; earlier secrets still verify."""

        if not secret:
            raise ValueError("signing secret cannot be empty")
        self._secrets = [secret, *[item for item in self._secrets if item != secret]]
        LOGGER.info("Credential signing secret rotated", verification_keys=len(self._secrets))

    def _check_scope(
        self,
        scope: CredentialScope,
        claims: frozenset[str],
        ttl_seconds: int,
        requester: str,
    ) -> None:
        if ttl_seconds > self._settings.max_ttl_seconds:
            raise ScopeDenied(
                f"requested ttl {ttl_seconds}s exceeds maximum {self._settings.max_ttl_seconds}s",
                component=COMPONENT,
                repository=scope.repository,
                environment=scope.environment,
                ref=scope.ref,
                requester=requester,
            )
        allowed = self._policy.allowed_claims(scope)
        missing = claims - allowed
        if missing:
            raise ScopeDenied(
                f"scope does not permit claims {sorted(missing)}",
                component=COMPONENT,
                repository=scope.repository,
                environment=scope.environment,
                ref=scope.ref,
                requester=requester,
                denied_claims=sorted(missing),
            )

    async def issue(
        self,
        scope: CredentialScope,
        ttl_seconds: Optional[int] = None,
        *,
        requester: str,
        claims: Iterable[str] = ("read",),
        job_run_id: Optional[str] = None,
    ) -> Credential:
        """Mint a credential for ``scope`` or fail closed with :class:`ScopeDenied`.

        The grant is never narrowed: either every requested claim is allowed
        for the scope or nothing is issued.
        """

        requested = frozenset(claims)
        if not requested:
            raise ValidationError("at least one claim must be requested", component=COMPONENT)
        ttl = ttl_seconds if ttl_seconds is not None else self._settings.default_ttl_seconds
        if ttl <= 0:
            raise ValidationError("ttl must be positive", component=COMPONENT, ttl_seconds=ttl)

        with TRACER.start_as_current_span(
            "stratus.credentials.issue",
            attributes=span_attributes(repository=scope.repository, environment=scope.environment, ref=scope.ref),
        ):
            try:
                self._check_scope(scope, requested, ttl, requester)
            except ScopeDenied as exc:
                LOGGER.warning(
                    "Credential request denied",
                    repository=scope.repository,
                    environment=scope.environment,
                    ref=scope.ref,
                    requester=requester,
                    reason=exc.message,
                )
                await self._audit.record(
                    "credential.denied",
                    component=COMPONENT,
                    subject=job_run_id,
                    actor=requester,
                    severity="warning",
                    details={"scope": scope.model_dump(), "claims": sorted(requested), "reason": exc.message},
                )
                raise

            self._prune()
            issued_at = self._clock()
            expires_at = issued_at + timedelta(seconds=ttl)
            credential_id = uuid.uuid4().hex
            token = mint_credential_token(
                secret=self._secrets[0],
                issuer=self._settings.issuer,
                credential_id=credential_id,
                subject=requester,
                issued_at=issued_at,
                expires_at=expires_at,
                repository=scope.repository,
                environment=scope.environment,
                ref=scope.ref,
                claims=sorted(requested),
            )
            credential = Credential(
                credential_id=credential_id,
                scope=scope,
                claims=tuple(sorted(requested)),
                subject=requester,
                job_run_id=job_run_id,
                issued_at=issued_at,
                expires_at=expires_at,
                token=token,
            )
            self._active[credential_id] = credential

        LOGGER.info(
            "Credential issued",
            credential_id=credential_id,
            repository=scope.repository,
            environment=scope.environment,
            ref=scope.ref,
            requester=requester,
            ttl_seconds=ttl,
        )
        await self._audit.record(
            "credential.issued",
            component=COMPONENT,
            subject=job_run_id,
            actor=requester,
            details={
                "credential_id": credential_id,
                "scope": scope.model_dump(),
                "claims": sorted(requested),
                "expires_at": expires_at.isoformat(),
            },
        )
        return credential

    async def revoke(
        self,
        credential: Credential | str,
        *,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> bool:
        """Revoke a credential. Idempotent; returns False when already revoked."""

        credential_id = credential if isinstance(credential, str) else credential.credential_id
        if credential_id in self._revoked:
            return False
        stored = self._active.pop(credential_id, None)
        if stored is None and isinstance(credential, Credential):
            stored = credential
        expires_at = stored.expires_at if stored is not None else self._clock() + timedelta(
            seconds=self._settings.max_ttl_seconds
        )
        self._revoked[credential_id] = expires_at

        details: dict[str, object] = {"credential_id": credential_id, "reason": reason}
        if stored is not None:
            details["scope"] = stored.scope.model_dump()
            details["requester"] = stored.subject
        LOGGER.info("Credential revoked", credential_id=credential_id, actor=actor, reason=reason)
        await self._audit.record(
            "credential.revoked",
            component=COMPONENT,
            subject=stored.job_run_id if stored is not None else None,
            actor=actor,
            details=details,
        )
        return True

    async def revoke_for_job(self, job_run_id: str, *, reason: str = "job terminated") -> int:
        targets = [item for item in self._active.values() if item.job_run_id == job_run_id]
        for credential in targets:
            await self.revoke(credential, reason=reason)
        return len(targets)

    def is_revoked(self, credential_id: str) -> bool:
        return credential_id in self._revoked

    async def exchange(self, token: str) -> CredentialGrant:
        """Validate a presented token. Revocation is checked before expiry."""

        payload = decode_credential_token(self._secrets, token, issuer=self._settings.issuer)
        if payload is None:
            raise CredentialInvalid("credential signature or format is invalid", component=COMPONENT)
        credential_id = payload["jti"]
        if credential_id in self._revoked:
            raise CredentialRevoked("credential has been revoked", component=COMPONENT, credential_id=credential_id)
        now = self._clock()
        if token_expiry(payload) <= now:
            raise CredentialExpired("credential has expired", component=COMPONENT, credential_id=credential_id)
        credential = self._active.get(credential_id)
        if credential is None:
            raise CredentialInvalid(
                "credential was not issued by this broker", component=COMPONENT, credential_id=credential_id
            )
        return CredentialGrant(
            credential_id=credential_id,
            scope=credential.scope,
            claims=credential.claims,
            subject=credential.subject,
            expires_at=credential.expires_at,
        )

    def _prune(self) -> None:
        now = self._clock()
        for credential_id, expires_at in list(self._revoked.items()):
            if expires_at <= now:
                del self._revoked[credential_id]
        for credential_id, credential in list(self._active.items()):
            if credential.expires_at <= now:
                del self._active[credential_id]
