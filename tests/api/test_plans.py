from __future__ import annotations

from uuid import uuid4

from fastapi.testclient import TestClient

from entitlements.wiring import Core
from tests.conftest import auth, plan_named


def test_catalog_is_readable_by_any_user(client: TestClient) -> None:
    r = client.get("/subscription-plans", headers=auth("anyone"))
    assert r.status_code == 200
    names = {p["name"] for p in r.json()}
    assert {"trial", "solo", "trainer", "organization"} <= names


def test_catalog_needs_a_token(client: TestClient) -> None:
    assert client.get("/subscription-plans").status_code == 401


def test_get_plan(client: TestClient, core: Core) -> None:
    trial = plan_named(core, "trial")
    body = client.get(f"/subscription-plans/{trial.id}", headers=auth("anyone")).json()
    assert body["name"] == "trial"
    assert body["price_amount"] == 0


def test_unknown_plan_is_404(client: TestClient) -> None:
    r = client.get(f"/subscription-plans/{uuid4()}", headers=auth("anyone"))
    assert r.status_code == 404


def test_pricing_for_a_quantity(client: TestClient, core: Core) -> None:
    org_plan = plan_named(core, "organization")
    r = client.get(
        f"/subscription-plans/{org_plan.id}/pricing",
        params={"quantity": 5},
        headers=auth("anyone"),
    )
    assert r.status_code == 200
    body = r.json()
    assert body["plan_name"] == "organization"
    assert body["quantity"] == 5
    assert sum(t["subtotal"] for t in body["tiers"]) == body["total"]

    preview = client.get(
        "/user-subscriptions/pricing-preview",
        params={"plan_id": str(org_plan.id), "quantity": 5},
        headers=auth("anyone"),
    ).json()
    assert preview["total"] == body["total"]


def test_only_admins_create_plans(
    client: TestClient, admin_headers: dict[str, str]
) -> None:
    plan = {"name": "workshop", "priority": 15}
    assert client.post("/subscription-plans", json=plan, headers=auth("plain")).status_code == 403
    r = client.post("/subscription-plans", json=plan, headers=admin_headers)
    assert r.status_code == 201
    assert r.json()["name"] == "workshop"
