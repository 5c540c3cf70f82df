from __future__ import annotations

from datetime import timedelta

from fastapi.testclient import TestClient

from entitlements.services import token_service
from entitlements.wiring import Core
from tests.conftest import auth, plan_named


def test_missing_token_is_401(client: TestClient) -> None:
    assert client.get("/user-subscriptions/current").status_code == 401


def test_garbage_token_is_401(client: TestClient) -> None:
    headers = {"Authorization": "Bearer not-a-jwt"}
    assert client.get("/user-subscriptions/current", headers=headers).status_code == 401


def test_checkout_requires_verified_email(client: TestClient, core: Core) -> None:
    trial = plan_named(core, "trial")
    r = client.post(
        "/user-subscriptions/checkout",
        json={"plan_id": str(trial.id)},
        headers=auth("u1", email_verified=False),
    )
    assert r.status_code == 403
    assert r.json()["code"] == "EMAIL_NOT_VERIFIED"


def test_register_requires_admin(client: TestClient) -> None:
    r = client.post("/users", json={"email": "a@example.com"}, headers=auth("plain"))
    assert r.status_code == 403


def test_me_for_unknown_user_is_404(client: TestClient) -> None:
    assert client.get("/users/me", headers=auth("ghost")).status_code == 404


def test_expired_token_is_401(client: TestClient) -> None:
    token = token_service.create_access_token(sub="u1", ttl=timedelta(minutes=-1))
    r = client.get("/user-subscriptions/current", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Token expired"
