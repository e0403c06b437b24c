"""
Security Test Suite: JWT Authentication

Tests that the tenant dependency in dependencies.py correctly:
- Rejects missing Authorization headers
- Rejects malformed, expired and wrongly signed tokens
- Enforces the issuer when one is configured
- Accepts properly signed tokens
"""

import time
from unittest.mock import patch

import jwt
import pytest
from fastapi import FastAPI, Depends
from fastapi.testclient import TestClient

from app.api.dependencies import get_current_tenant_id
from app.config.settings import Settings


SECRET = "test-secret-with-enough-length-for-hs256"


# ---------------------------------------------------------------------------
# Minimal app that uses the real dependency
# ---------------------------------------------------------------------------

test_app = FastAPI()


@test_app.get("/protected")
async def protected_endpoint(tenant_id: str = Depends(get_current_tenant_id)):
    return {"tenant_id": tenant_id}


client = TestClient(test_app, raise_server_exceptions=False)


def make_token(secret: str = SECRET, **claims) -> str:
    payload = {"sub": "tenant-1", "exp": int(time.time()) + 3600}
    payload.update(claims)
    payload = {k: v for k, v in payload.items() if v is not None}
    return jwt.encode(payload, secret, algorithm="HS256")


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def jwt_settings():
    with patch(
        "app.api.dependencies.get_settings",
        return_value=Settings(_env_file=None, jwt_secret=SECRET),
    ) as mock_settings:
        yield mock_settings


# ---------------------------------------------------------------------------
# Tests: rejection scenarios
# ---------------------------------------------------------------------------


class TestJWTRejection:
    """Verify that invalid/missing JWTs are rejected with 401."""

    def test_no_auth_header(self):
        resp = client.get("/protected")
        assert resp.status_code == 401

    def test_malformed_scheme(self):
        resp = client.get("/protected", headers={"Authorization": "Basic abc123"})
        assert resp.status_code == 401

    def test_garbage_token(self):
        resp = client.get("/protected", headers=auth("not.a.jwt"))
        assert resp.status_code == 401

    def test_expired_token(self):
        resp = client.get("/protected", headers=auth(make_token(exp=int(time.time()) - 60)))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Token has expired"

    def test_wrong_signature(self):
        resp = client.get("/protected", headers=auth(make_token(secret="another-secret-of-some-length")))
        assert resp.status_code == 401

    def test_missing_subject(self):
        resp = client.get("/protected", headers=auth(make_token(sub=None)))
        assert resp.status_code == 401

    def test_none_algorithm_rejected(self):
        token = jwt.encode({"sub": "tenant-1", "exp": int(time.time()) + 60}, None, algorithm="none")
        resp = client.get("/protected", headers=auth(token))
        assert resp.status_code == 401


class TestJWTAcceptance:

    def test_valid_token_returns_tenant(self):
        resp = client.get("/protected", headers=auth(make_token()))
        assert resp.status_code == 200
        assert resp.json() == {"tenant_id": "tenant-1"}

    def test_issuer_enforced_when_configured(self, jwt_settings):
        jwt_settings.return_value = Settings(
            _env_file=None, jwt_secret=SECRET, jwt_issuer="https://auth.magnethub.test"
        )

        wrong = client.get("/protected", headers=auth(make_token(iss="https://evil.test")))
        right = client.get(
            "/protected", headers=auth(make_token(iss="https://auth.magnethub.test"))
        )

        assert wrong.status_code == 401
        assert right.status_code == 200


class TestJWTConfiguration:

    def test_missing_secret_is_server_error(self, jwt_settings):
        jwt_settings.return_value = Settings(_env_file=None, jwt_secret=None)

        resp = client.get("/protected", headers=auth(make_token()))

        assert resp.status_code == 500
