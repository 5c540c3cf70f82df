"""Tests for Prometheus metrics middleware.

The prometheus-client default registry is global and counters only go
up, so every assertion is on a DELTA: read the sample, act, read again.
"""

from __future__ import annotations

import uuid

from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from entitlements.middleware.metrics import endpoint_label
from tests.conftest import auth


def _get_sample(name: str, labels: dict | None = None) -> float:
    value = REGISTRY.get_sample_value(name, labels=labels or {})
    return value if value is not None else 0.0


def test_request_counter_increments(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "/health", "status_code": "200"}
    before = _get_sample("http_requests_total", labels)
    client.get("/health")
    assert _get_sample("http_requests_total", labels) - before >= 1


def test_request_duration_histogram_observes(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "/health"}
    before = _get_sample("http_request_duration_seconds_count", labels)
    client.get("/health")
    assert _get_sample("http_request_duration_seconds_count", labels) - before >= 1


def test_entity_ids_fold_into_one_series(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "/groups/{id}", "status_code": "404"}
    before = _get_sample("http_requests_total", labels)
    for _ in range(2):
        client.get(f"/groups/{uuid.uuid4()}", headers=auth("metrics-user"))
    assert _get_sample("http_requests_total", labels) - before == 2


def test_endpoint_label_keeps_static_segments() -> None:
    gid = uuid.uuid4()
    assert endpoint_label(f"/groups/{gid}/members/alice") == "/groups/{id}/members/alice"
    assert endpoint_label("/user-subscriptions/current") == "/user-subscriptions/current"


def test_authz_denials_are_counted(client: TestClient) -> None:
    labels = {"outcome": "deny", "reason": "unknown_entity"}
    before = _get_sample("authz_decisions_total", labels)
    client.get(f"/organizations/{uuid.uuid4()}", headers=auth("metrics-user"))
    assert _get_sample("authz_decisions_total", labels) - before == 1


def test_metrics_endpoint_returns_prometheus_format(client: TestClient) -> None:
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text
    assert "task_queue_depth" in resp.text


def test_metrics_endpoint_not_self_instrumented(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "/metrics", "status_code": "200"}
    before = _get_sample("http_requests_total", labels)
    client.get("/metrics")
    client.get("/metrics")
    assert _get_sample("http_requests_total", labels) == before
