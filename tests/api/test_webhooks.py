from __future__ import annotations

from fastapi.testclient import TestClient


def test_non_json_body_is_rejected(client: TestClient) -> None:
    r = client.post("/webhooks/payments", content=b"not json")
    assert r.status_code == 400


def test_non_object_body_is_rejected(client: TestClient) -> None:
    r = client.post("/webhooks/payments", json=[1, 2])
    assert r.status_code == 400


def test_unhandled_event_is_acknowledged(client: TestClient) -> None:
    event = {"id": "evt_1", "type": "customer.created", "data": {"object": {}}}
    r = client.post("/webhooks/payments", json=event)
    assert r.status_code == 200
    assert r.json() == {"received": True, "outcome": "ignored"}
