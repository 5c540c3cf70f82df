from __future__ import annotations

from fastapi.testclient import TestClient

from entitlements.core.config import SETTINGS


def test_health_without_backing_services(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {
        "status": "ok",
        "checks": {"database": "not_configured", "redis": "not_configured"},
    }


def test_ready(client: TestClient) -> None:
    assert client.get("/ready").status_code == 200


def test_version(client: TestClient) -> None:
    body = client.get("/version").json()
    assert body == {"version": SETTINGS.version, "environment": SETTINGS.environment}
