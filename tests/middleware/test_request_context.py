"""Every response carries an X-Request-ID, generated or echoed."""

from __future__ import annotations

import uuid

from fastapi.testclient import TestClient


def test_request_id_generated_when_not_provided(client: TestClient) -> None:
    resp = client.get("/health")
    uuid.UUID(resp.headers["x-request-id"])  # raises ValueError if invalid


def test_request_id_echoed_when_provided(client: TestClient) -> None:
    resp = client.get("/health", headers={"X-Request-ID": "lb-7f3a:42"})
    assert resp.headers.get("x-request-id") == "lb-7f3a:42"


def test_unprintable_request_id_is_replaced(client: TestClient) -> None:
    resp = client.get("/health", headers={"X-Request-ID": "a b\tc" + "x" * 200})
    uuid.UUID(resp.headers["x-request-id"])


def test_request_id_present_on_error_responses(client: TestClient) -> None:
    resp = client.get("/v1/profile/me")  # no token → 401
    assert resp.status_code == 401
    assert resp.headers.get("x-request-id") is not None
