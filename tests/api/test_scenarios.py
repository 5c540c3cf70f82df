"""End-to-end flows over HTTP against the in-memory core."""

from __future__ import annotations

import asyncio
from uuid import UUID

from fastapi.testclient import TestClient

from entitlements.wiring import Core
from tests.conftest import add_free_plan, auth, plan_named, register


def _check(client: TestClient, user: str, metric: str) -> dict:
    r = client.post(
        "/user-subscriptions/usage/check",
        json={"metric": metric, "increment": 1},
        headers=auth(user),
    )
    assert r.status_code == 200
    return r.json()


def test_free_trial_checkout_sets_usage_caps(client: TestClient, core: Core) -> None:
    trial = plan_named(core, "trial")

    r = client.post(
        "/user-subscriptions/checkout",
        json={"plan_id": str(trial.id)},
        headers=auth("u1"),
    )

    assert r.status_code == 200
    body = r.json()
    assert body["subscription"]["status"] == "active"
    assert body["checkout_url"] is None
    assert _check(client, "u1", "concurrent_terminals")["limit"] == 1
    assert _check(client, "u1", "lab_sessions")["limit"] == -1

    current = client.get("/user-subscriptions/current", headers=auth("u1")).json()
    assert current["plan_id"] == str(trial.id)


def test_registered_user_sees_personal_org(
    client: TestClient, admin_headers: dict[str, str]
) -> None:
    r = client.post(
        "/users", json={"email": "New@Example.com", "name": "New"}, headers=admin_headers
    )
    assert r.status_code == 201
    created = r.json()
    assert created["user"]["email"] == "new@example.com"

    features = client.get(
        "/users/me/features", headers=auth(created["user"]["id"])
    ).json()

    assert [o["organization_id"] for o in features["organizations"]] == [
        created["personal_organization_id"]
    ]
    assert features["organizations"][0]["is_personal"] is True


def test_upgrade_failure_keeps_the_old_plan(client: TestClient, core: Core) -> None:
    register(core, "u1")
    trial = plan_named(core, "trial")
    org_plan = plan_named(core, "organization")
    client.post(
        "/user-subscriptions/checkout",
        json={"plan_id": str(trial.id)},
        headers=auth("u1"),
    )

    core.provider.fail_next("create_subscription")  # type: ignore[attr-defined]
    r = client.post(
        "/user-subscriptions/upgrade",
        json={"plan_id": str(org_plan.id)},
        headers=auth("u1"),
    )
    assert r.status_code == 502
    assert r.json()["code"] == "EXTERNAL_FAILURE"
    assert _check(client, "u1", "concurrent_terminals")["limit"] == 1

    r = client.post(
        "/user-subscriptions/upgrade",
        json={"plan_id": str(org_plan.id)},
        headers=auth("u1"),
    )
    assert r.status_code == 200
    assert r.json()["plan_id"] == str(org_plan.id)
    assert _check(client, "u1", "concurrent_terminals")["limit"] == 10


def test_trainer_bulk_purchase_assign_and_revoke(client: TestClient, core: Core) -> None:
    seat = add_free_plan(core, "seat", max_concurrent_terminals=2)
    register(core, "alice")
    buyer = auth("buyer", ["trainer"])

    r = client.post(
        "/user-subscriptions/purchase-bulk",
        json={"plan_id": str(seat.id), "quantity": 5},
        headers=buyer,
    )
    assert r.status_code == 201
    batch_id = r.json()["batch"]["id"]
    listed = client.get("/subscription-batches", headers=buyer).json()
    assert [b["id"] for b in listed] == [batch_id]
    licenses = client.get(f"/subscription-batches/{batch_id}/licenses", headers=buyer)
    assert licenses.json()["pool"] == 5

    r = client.post(
        f"/subscription-batches/{batch_id}/assign",
        json={"user_id": "alice"},
        headers=buyer,
    )
    assert r.status_code == 201
    license_id = r.json()["id"]
    batch = client.get(f"/subscription-batches/{batch_id}", headers=buyer).json()
    assert batch["assigned_quantity"] == 1

    held = client.get("/user-subscriptions/all", headers=auth("alice")).json()
    assert [(s["source"], s["batch_id"]) for s in held] == [("assigned", batch_id)]

    r = client.delete(
        f"/subscription-batches/{batch_id}/licenses/{license_id}/revoke", headers=buyer
    )
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    batch = client.get(f"/subscription-batches/{batch_id}", headers=buyer).json()
    assert batch["assigned_quantity"] == 0
    row = asyncio.run(core.ledger.get_subscription(UUID(license_id)))
    assert row.status == "cancelled"


def test_plain_user_cannot_bulk_purchase(client: TestClient, core: Core) -> None:
    seat = add_free_plan(core, "seat")
    r = client.post(
        "/user-subscriptions/purchase-bulk",
        json={"plan_id": str(seat.id), "quantity": 2},
        headers=auth("plain"),
    )
    assert r.status_code == 403


def test_org_manager_cascades_into_org_groups(client: TestClient, core: Core) -> None:
    register(core, "mgr")
    register(core, "mem")
    owner = auth("owner")

    org = client.post("/organizations", json={"name": "acme"}, headers=owner)
    assert org.status_code == 201
    org_id = org.json()["id"]
    for user_id, role in (("mgr", "manager"), ("mem", "member")):
        r = client.post(
            f"/organizations/{org_id}/members",
            json={"user_id": user_id, "role": role},
            headers=owner,
        )
        assert r.status_code == 201
    again = client.post(
        f"/organizations/{org_id}/members",
        json={"user_id": "mem", "role": "member"},
        headers=owner,
    )
    assert again.status_code == 200

    group = client.post(
        "/groups", json={"name": "team", "organization_id": org_id}, headers=owner
    )
    assert group.status_code == 201
    path = f"/groups/{group.json()['id']}"

    assert client.get(path, headers=auth("mgr")).status_code == 200
    assert client.delete(path, headers=auth("mgr")).status_code == 403
    hidden = client.get(path, headers=auth("mem"))
    assert hidden.status_code == 404
    assert hidden.json()["detail"] == "Group not found"


def test_explicit_policy_grants_exactly_what_it_names(
    client: TestClient, admin_headers: dict[str, str]
) -> None:
    a = client.post("/organizations", json={"name": "alpha"}, headers=auth("owner"))
    b = client.post("/organizations", json={"name": "beta"}, headers=auth("owner"))
    path_a = f"/organizations/{a.json()['id']}"

    r = client.post(
        "/admin/policies",
        json={"subject": "u_x", "object": path_a, "action": "GET"},
        headers=admin_headers,
    )
    assert r.status_code == 201

    assert client.get(path_a, headers=auth("u_x")).status_code == 200
    assert client.patch(path_a, json={}, headers=auth("u_x")).status_code == 403
    other = client.get(f"/organizations/{b.json()['id']}", headers=auth("u_x"))
    assert other.status_code == 404


def test_org_listing_shows_only_member_orgs(client: TestClient) -> None:
    mine = client.post("/organizations", json={"name": "mine"}, headers=auth("me"))
    client.post("/organizations", json={"name": "theirs"}, headers=auth("them"))

    listed = client.get("/organizations", headers=auth("me")).json()

    assert [o["id"] for o in listed] == [mine.json()["id"]]
