from __future__ import annotations

from fastapi.testclient import TestClient

from entitlements.wiring import Core
from tests.conftest import auth, plan_named, register

RULE = {"subject": "u_x", "object": "/organizations/*", "action": "GET"}


def test_policies_require_admin(client: TestClient) -> None:
    assert client.get("/admin/policies").status_code == 401
    assert client.get("/admin/policies", headers=auth("plain")).status_code == 403
    r = client.post("/admin/policies", json=RULE, headers=auth("plain"))
    assert r.status_code == 403


def test_add_list_and_remove_policy(
    client: TestClient, core: Core, admin_headers: dict[str, str]
) -> None:
    assert client.post("/admin/policies", json=RULE, headers=admin_headers).status_code == 201
    assert core.store.enforce("u_x", "/organizations/abc", "GET")

    listed = client.get(
        "/admin/policies", params={"subject": "u_x"}, headers=admin_headers
    ).json()
    assert listed["policies"] == [RULE]

    r = client.request("DELETE", "/admin/policies", json=RULE, headers=admin_headers)
    assert r.status_code == 204
    assert not core.store.enforce("u_x", "/organizations/abc", "GET")


def test_reload_reports_counts(
    client: TestClient, core: Core, admin_headers: dict[str, str]
) -> None:
    client.post("/admin/policies", json=RULE, headers=admin_headers)
    body = client.post("/admin/policies/reload", headers=admin_headers).json()
    assert body["policies"] == len(core.store.get_policies())
    assert body["policies"] >= 1


def test_admin_can_grant_a_plan(
    client: TestClient, core: Core, admin_headers: dict[str, str]
) -> None:
    register(core, "u1")
    solo = plan_named(core, "solo")
    r = client.post(
        "/admin/subscriptions/assign",
        json={"user_id": "u1", "plan_id": str(solo.id)},
        headers=admin_headers,
    )
    assert r.status_code == 201
    assert r.json()["status"] == "active"
    current = client.get("/user-subscriptions/current", headers=auth("u1")).json()
    assert current["plan_id"] == str(solo.id)
