"""Token utilities for short-lived job credentials."""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Optional

import jwt

ALGORITHM = "HS256"


def key_id_from_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


def mint_credential_token(
    *,
    secret: str,
    issuer: str,
    credential_id: str,
    subject: str,
    issued_at: datetime,
    expires_at: datetime,
    repository: str,
    environment: Optional[str],
    ref: str,
    claims: Sequence[str],
) -> str:
    """Sign a credential as a JWT. The payload carries the scope, never other secrets."""

    payload = {
        "iss": issuer,
        "sub": subject,
        "jti": credential_id,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
        "repository": repository,
        "environment": environment,
        "ref": ref,
        "scp": list(claims),
    }
    headers = {"kid": key_id_from_secret(secret)}
    return jwt.encode(payload, secret, algorithm=ALGORITHM, headers=headers)


def _decode_with_secret(secret: str, token: str, issuer: str) -> Optional[dict[str, Any]]:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            issuer=issuer,
            options={"verify_exp": False, "require": ["exp", "iat", "jti", "sub"]},
        )
    except jwt.PyJWTError:
        return None
    if not isinstance(payload.get("jti"), str) or not isinstance(payload.get("sub"), str):
        return None
    return payload


def decode_credential_token(
    secrets: str | Sequence[str], token: str, *, issuer: str
) -> Optional[dict[str, Any]]:
    """Verify the signature against the current and fallback secrets.

    Expiry is deliberately not checked here; callers consult the revocation
    set first and then compare ``exp`` themselves.
    """

    secret_list: list[str]
    if isinstance(secrets, str):
        secret_list = [secrets]
    else:
        secret_list = list(secrets)
    if not secret_list:
        return None

    preferred: list[str] = secret_list
    try:
        header = jwt.get_unverified_header(token)
        kid = header.get("kid")
    except jwt.PyJWTError:
        return None

    if kid:
        keyed = [secret for secret in secret_list if key_id_from_secret(secret) == kid]
        if keyed:
            preferred = keyed + [secret for secret in secret_list if secret not in keyed]

    for secret in preferred:
        payload = _decode_with_secret(secret, token, issuer)
        if payload is not None:
            return payload
    return None


def token_expiry(payload: dict[str, Any]) -> datetime:
    return datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
