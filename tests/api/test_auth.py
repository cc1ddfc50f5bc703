"""Bearer JWT validation and role gates on the progression endpoints."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import jwt
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient

from progression.services import token_service
from tests.conftest import mint_token


def test_missing_token_rejected(client: TestClient) -> None:
    resp = client.get("/v1/profile/me")
    assert resp.status_code == 401
    assert resp.headers["www-authenticate"] == "Bearer"


def test_garbage_token_rejected(client: TestClient) -> None:
    resp = client.get(
        "/v1/profile/me", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid token"


def test_expired_token_rejected(client: TestClient) -> None:
    token = token_service.create_access_token(sub="u", ttl_minutes=-1)
    resp = client.get("/v1/profile/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Token expired"


def test_token_signed_by_another_key_rejected(client: TestClient) -> None:
    now = datetime.now(UTC)
    forged = jwt.encode(
        {
            "sub": "u",
            "iss": token_service.ISSUER,
            "aud": token_service.AUDIENCE,
            "iat": now,
            "exp": now + timedelta(minutes=5),
            "roles": ["admin"],
        },
        ec.generate_private_key(ec.SECP256R1()),
        algorithm="ES256",
    )
    resp = client.get("/v1/profile/me", headers={"Authorization": f"Bearer {forged}"})
    assert resp.status_code == 401


def test_wrong_audience_rejected(client: TestClient) -> None:
    now = datetime.now(UTC)
    token = jwt.encode(
        {
            "sub": "u",
            "iss": token_service.ISSUER,
            "aud": "some-other-service",
            "iat": now,
            "exp": now + timedelta(minutes=5),
        },
        token_service._private_key,
        algorithm="ES256",
    )
    resp = client.get("/v1/profile/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_admin_route_requires_admin_role(client: TestClient) -> None:
    resp = client.post(
        "/admin/reconcile",
        headers={"Authorization": f"Bearer {mint_token(roles=['user'])}"},
    )
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Insufficient permissions"
