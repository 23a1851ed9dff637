"""Tests for the credential broker."""

from __future__ import annotations

import pytest

from stratus.common.errors import (
    CredentialExpired,
    CredentialInvalid,
    CredentialRevoked,
    ScopeDenied,
    ValidationError,
)
from stratus.common.schemas import CredentialScope
from stratus.common.security import decode_credential_token, mint_credential_token
from stratus.control_plane.audit import AuditLog
from stratus.control_plane.credentials import CredentialBroker
from stratus.control_plane.policy import CredentialPolicy, CredentialRule

POLICY = CredentialPolicy(
    rules=(
        CredentialRule(repository="acme/*", claims=frozenset({"read"})),
        CredentialRule(repository="acme/api", ref="refs/heads/main", environment="prod", claims=frozenset({"deploy"})),
    )
)

MAIN_PROD = CredentialScope(repository="acme/api", environment="prod", ref="refs/heads/main")


@pytest.fixture
def audit() -> AuditLog:
    return AuditLog()


@pytest.fixture
def broker(credential_settings, audit, clock) -> CredentialBroker:
    return CredentialBroker(credential_settings, POLICY, audit, clock=clock)


@pytest.mark.asyncio
async def test_issue_and_exchange(broker: CredentialBroker, audit: AuditLog):
    credential = await broker.issue(MAIN_PROD, 120, requester="ci/deploy", claims=["read", "deploy"], job_run_id="j-1")

    grant = await broker.exchange(credential.token.get_secret_value())

    assert grant.credential_id == credential.credential_id
    assert grant.scope == MAIN_PROD
    assert set(grant.claims) == {"read", "deploy"}
    assert grant.subject == "ci/deploy"
    assert (credential.expires_at - credential.issued_at).total_seconds() == 120

    issued = await audit.list_events(event_type="credential.issued")
    assert issued[0].subject == "j-1"
    assert credential.token.get_secret_value() not in str(issued[0].details)


@pytest.mark.asyncio
async def test_default_ttl_applies(broker: CredentialBroker, credential_settings):
    credential = await broker.issue(MAIN_PROD, requester="ci")
    ttl = (credential.expires_at - credential.issued_at).total_seconds()
    assert ttl == credential_settings.default_ttl_seconds


@pytest.mark.asyncio
async def test_claims_outside_scope_are_denied(broker: CredentialBroker, audit: AuditLog):
    feature = MAIN_PROD.model_copy(update={"ref": "refs/heads/feature"})

    with pytest.raises(ScopeDenied) as exc_info:
        await broker.issue(feature, requester="ci", claims=["deploy"])

    assert exc_info.value.context["denied_claims"] == ["deploy"]
    assert broker.active_count == 0
    denied = await audit.list_events(event_type="credential.denied")
    assert denied and denied[0].severity == "warning"


@pytest.mark.asyncio
async def test_ttl_above_maximum_is_denied(broker: CredentialBroker):
    with pytest.raises(ScopeDenied):
        await broker.issue(MAIN_PROD, 10_000, requester="ci")


@pytest.mark.asyncio
async def test_invalid_requests_are_rejected(broker: CredentialBroker):
    with pytest.raises(ValidationError):
        await broker.issue(MAIN_PROD, requester="ci", claims=[])
    with pytest.raises(ValidationError):
        await broker.issue(MAIN_PROD, 0, requester="ci")


@pytest.mark.asyncio
async def test_revoked_credential_is_rejected_before_expiry(broker: CredentialBroker, clock):
    credential = await broker.issue(MAIN_PROD, 60, requester="ci")
    token = credential.token.get_secret_value()

    assert await broker.revoke(credential, actor="ops", reason="leaked")
    assert not await broker.revoke(credential.credential_id)

    clock.advance(120)
    with pytest.raises(CredentialRevoked):
        await broker.exchange(token)


@pytest.mark.asyncio
async def test_expired_credential_is_rejected(broker: CredentialBroker, clock):
    credential = await broker.issue(MAIN_PROD, 60, requester="ci")

    clock.advance(61)

    with pytest.raises(CredentialExpired):
        await broker.exchange(credential.token.get_secret_value())


@pytest.mark.asyncio
async def test_revoke_for_job(broker: CredentialBroker):
    first = await broker.issue(MAIN_PROD, requester="ci", job_run_id="j-1")
    await broker.issue(MAIN_PROD, requester="ci", job_run_id="j-2")

    assert await broker.revoke_for_job("j-1") == 1
    assert broker.is_revoked(first.credential_id)
    assert broker.active_count == 1


@pytest.mark.asyncio
async def test_foreign_tokens_are_invalid(broker: CredentialBroker, credential_settings, clock):
    with pytest.raises(CredentialInvalid):
        await broker.exchange("not-a-jwt")

    forged = mint_credential_token(
        secret="some-other-secret",
        issuer=credential_settings.issuer,
        credential_id="forged",
        subject="attacker",
        issued_at=clock(),
        expires_at=clock(),
        repository="acme/api",
        environment="prod",
        ref="refs/heads/main",
        claims=["deploy"],
    )
    with pytest.raises(CredentialInvalid):
        await broker.exchange(forged)


@pytest.mark.asyncio
async def test_credentials_from_previous_process_are_not_honoured(credential_settings, audit, clock):
    before = CredentialBroker(credential_settings, POLICY, audit, clock=clock)
    credential = await before.issue(MAIN_PROD, requester="ci")

    after = CredentialBroker(credential_settings, POLICY, audit, clock=clock)
    with pytest.raises(CredentialInvalid):
        await after.exchange(credential.token.get_secret_value())


@pytest.mark.asyncio
async def test_rotation_keeps_old_tokens_verifiable(broker: CredentialBroker, credential_settings):
    old = await broker.issue(MAIN_PROD, requester="ci")

    broker.rotate_signing_secret("rotated-secret-abcdef0123456789")
    new = await broker.issue(MAIN_PROD, requester="ci")

    assert (await broker.exchange(old.token.get_secret_value())).credential_id == old.credential_id
    assert (await broker.exchange(new.token.get_secret_value())).credential_id == new.credential_id
    assert decode_credential_token(
        credential_settings.signing_secret.get_secret_value(),
        new.token.get_secret_value(),
        issuer=credential_settings.issuer,
    ) is None
