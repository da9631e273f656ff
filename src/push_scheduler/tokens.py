# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tenant and cron bearer tokens.

Tokens are compact HS256 JWTs carrying::

    {"tid": <tenant id>, "typ": "tenant" | "cron", "iat": ..., "exp": ..., "v": 1}

A ``tenant`` token authorizes the end-user facing endpoints; a ``cron`` token
authorizes only the dispatch trigger. Every verification failure raises the
same :class:`~push_scheduler.errors.InvalidTenantAuth` so callers cannot tell
which check rejected the token.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Iterable

import jwt

from .errors import InvalidTenantAuth

TOKEN_VERSION = 1
TOKEN_ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL_SECONDS = 30 * 24 * 3600

TOKEN_TYPE_TENANT = "tenant"
TOKEN_TYPE_CRON = "cron"
TOKEN_TYPES = (TOKEN_TYPE_TENANT, TOKEN_TYPE_CRON)


@dataclass(frozen=True)
class TokenClaims:
    """Verified token payload."""

    tenant_id: str
    token_type: str
    issued_at: int
    expires_at: int
    version: int = TOKEN_VERSION


def issue_token(
    tenant_id: str,
    token_type: str,
    signing_key: str,
    ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
    now: int | None = None,
) -> str:
    """Sign a new token.

    Args:
        tenant_id: Tenant the token is scoped to.
        token_type: ``"tenant"`` or ``"cron"``.
        signing_key: HMAC secret shared by the deployment.
        ttl_seconds: Lifetime in seconds. Defaults to 30 days.
        now: Issue time as epoch seconds; defaults to the current time.

    Returns:
        The encoded token.

    Raises:
        ValueError: Unknown token type or missing tenant id / signing key.
    """
    if token_type not in TOKEN_TYPES:
        raise ValueError(f"Unknown token type: {token_type!r}")
    if not tenant_id or not signing_key:
        raise ValueError("tenant_id and signing_key are required")
    issued_at = int(time.time()) if now is None else int(now)
    claims = {
        "tid": tenant_id,
        "typ": token_type,
        "iat": issued_at,
        "exp": issued_at + int(ttl_seconds),
        "v": TOKEN_VERSION,
    }
    return jwt.encode(claims, signing_key, algorithm=TOKEN_ALGORITHM)


def verify_token(
    token: str,
    signing_key: str,
    expected_types: Iterable[str] = (),
    now: int | None = None,
) -> TokenClaims:
    """Verify signature, version, expiry and scope of a token.

    Args:
        token: Encoded token.
        signing_key: HMAC secret used at issue time.
        expected_types: Accepted ``typ`` values; empty accepts any.
        now: Current time as epoch seconds; defaults to the current time.

    Returns:
        The verified :class:`TokenClaims`.

    Raises:
        InvalidTenantAuth: On any failure.
    """
    if not isinstance(token, str) or token.count(".") != 2 or not signing_key:
        raise InvalidTenantAuth()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            signing_key,
            algorithms=[TOKEN_ALGORITHM],
            options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
        )
    except jwt.InvalidTokenError as exc:
        raise InvalidTenantAuth() from exc

    tid = payload.get("tid")
    typ = payload.get("typ")
    exp = payload.get("exp")
    if payload.get("v") != TOKEN_VERSION or not tid or not typ or exp is None:
        raise InvalidTenantAuth()
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        raise InvalidTenantAuth()

    current = int(time.time()) if now is None else int(now)
    if exp <= current:
        raise InvalidTenantAuth()

    allowed = set(expected_types)
    if allowed and typ not in allowed:
        raise InvalidTenantAuth()

    return TokenClaims(
        tenant_id=str(tid),
        token_type=str(typ),
        issued_at=int(payload.get("iat") or 0),
        expires_at=int(exp),
    )


def extract_bearer_token(
    authorization: str | None,
    query_token: str | None = None,
    allow_query: bool = False,
) -> str | None:
    """Pick the bearer token from the Authorization header or the query.

    The header wins when both are present. The query parameter is only
    considered when ``allow_query`` is set (cron webhooks).
    """
    header = (authorization or "").strip()
    if header[:7].lower() == "bearer ":
        token = header[7:].strip()
        if token:
            return token
    if allow_query and query_token and query_token.strip():
        return query_token.strip()
    return None
