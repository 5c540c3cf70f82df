"""Error kinds map to one status code each and reach clients as {detail, code}."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from entitlements.core.errors import (
    ConflictError,
    DeadlineExceededError,
    EntitlementError,
    ExternalServiceError,
    InternalError,
    LimitReachedError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from tests.conftest import auth


@pytest.mark.parametrize(
    ("cls", "status", "code"),
    [
        (ValidationError, 400, "VALIDATION_ERROR"),
        (NotFoundError, 404, "NOT_FOUND"),
        (PermissionDeniedError, 403, "PERMISSION_DENIED"),
        (ConflictError, 409, "CONFLICT"),
        (LimitReachedError, 403, "LIMIT_EXCEEDED"),
        (StateError, 409, "INVALID_STATE"),
        (ExternalServiceError, 502, "EXTERNAL_FAILURE"),
        (DeadlineExceededError, 504, "DEADLINE_EXCEEDED"),
        (InternalError, 500, "INTERNAL"),
    ],
)
def test_error_kind_defaults(cls: type[EntitlementError], status: int, code: str) -> None:
    err = cls("boom")
    assert err.status_code == status
    assert err.code == code
    assert err.message == "boom"
    assert str(err) == f"[{code}] boom"


def test_explicit_code_overrides_default() -> None:
    err = ConflictError("taken", code="ALREADY_MEMBER")
    assert err.code == "ALREADY_MEMBER"
    assert err.status_code == 409


def test_handler_renders_detail_and_code(client: TestClient) -> None:
    resp = client.post(
        "/user-subscriptions/usage/check",
        json={"metric": "gpu_hours", "increment": 1},
        headers=auth("someone"),
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert "gpu_hours" in body["detail"]
