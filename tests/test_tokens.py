"""Tests for tenant and cron tokens."""

import jwt
import pytest

from push_scheduler.errors import InvalidTenantAuth
from push_scheduler.tokens import (
    TOKEN_TYPE_CRON,
    TOKEN_TYPE_TENANT,
    extract_bearer_token,
    issue_token,
    verify_token,
)

from conftest import SIGNING_KEY

TENANT_ID = "3d9f2c1e-8b4a-4e6f-a7c8-1b2d3e4f5a6b"
NOW = 1_750_000_000


def test_issue_and_verify_round_trip():
    token = issue_token(TENANT_ID, TOKEN_TYPE_TENANT, SIGNING_KEY, ttl_seconds=60, now=NOW)
    claims = verify_token(token, SIGNING_KEY, expected_types=(TOKEN_TYPE_TENANT,), now=NOW + 30)
    assert claims.tenant_id == TENANT_ID
    assert claims.token_type == TOKEN_TYPE_TENANT
    assert claims.issued_at == NOW
    assert claims.expires_at == NOW + 60
    assert claims.version == 1


def test_expired_token_rejected():
    token = issue_token(TENANT_ID, TOKEN_TYPE_TENANT, SIGNING_KEY, ttl_seconds=60, now=NOW)
    with pytest.raises(InvalidTenantAuth):
        verify_token(token, SIGNING_KEY, now=NOW + 60)


def test_wrong_type_rejected():
    cron = issue_token(TENANT_ID, TOKEN_TYPE_CRON, SIGNING_KEY, now=NOW)
    with pytest.raises(InvalidTenantAuth):
        verify_token(cron, SIGNING_KEY, expected_types=(TOKEN_TYPE_TENANT,), now=NOW)


def test_other_secret_rejected():
    token = issue_token(TENANT_ID, TOKEN_TYPE_TENANT, SIGNING_KEY, now=NOW)
    with pytest.raises(InvalidTenantAuth):
        verify_token(token, "another-signing-key-of-sufficient-length", now=NOW)


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
def test_malformed_rejected(token):
    with pytest.raises(InvalidTenantAuth):
        verify_token(token, SIGNING_KEY, now=NOW)


def test_wrong_version_rejected():
    token = jwt.encode(
        {"tid": TENANT_ID, "typ": "tenant", "iat": NOW, "exp": NOW + 60, "v": 2},
        SIGNING_KEY,
        algorithm="HS256",
    )
    with pytest.raises(InvalidTenantAuth):
        verify_token(token, SIGNING_KEY, now=NOW)


def test_unknown_type_cannot_be_issued():
    with pytest.raises(ValueError):
        issue_token(TENANT_ID, "admin", SIGNING_KEY)


def test_extract_bearer_token():
    assert extract_bearer_token("Bearer abc") == "abc"
    assert extract_bearer_token("bearer  abc ") == "abc"
    assert extract_bearer_token("Basic abc") is None
    assert extract_bearer_token(None, "q") is None
    assert extract_bearer_token(None, "q", allow_query=True) == "q"
    assert extract_bearer_token("Bearer h", "q", allow_query=True) == "h"
