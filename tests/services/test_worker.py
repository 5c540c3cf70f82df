"""Worker loop: one task at a time, failures logged and dropped."""

from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from entitlements import worker
from entitlements.core.errors import ExternalServiceError, ValidationError
from entitlements.services.task_queue import (
    SUBSCRIPTION_RECONCILIATION,
    TERMINAL_PROVISIONING,
)
from entitlements.services.terminal import TerminalService
from entitlements.wiring import Core


def test_both_queues_have_handlers() -> None:
    assert set(worker.HANDLERS) == {TERMINAL_PROVISIONING, SUBSCRIPTION_RECONCILIATION}


def test_register_user_queues_provisioning(core: Core) -> None:
    user, org = asyncio.run(core.users.register_user(" Alice@Example.com ", "Alice"))

    assert user.email == "alice@example.com"
    assert org.is_personal and org.owner_user_id == user.id
    task = asyncio.run(core.tasks.dequeue(TERMINAL_PROVISIONING))
    assert task.payload == {"user_id": user.id, "email": "alice@example.com"}


def test_register_user_rejects_bad_email(core: Core) -> None:
    with pytest.raises(ValidationError):
        asyncio.run(core.users.register_user("not-an-email"))
    assert asyncio.run(core.tasks.queue_length(TERMINAL_PROVISIONING)) == 0


def test_process_one_runs_a_task_then_reports_empty(core: Core) -> None:
    asyncio.run(core.users.register_user("bob@example.com"))

    assert asyncio.run(worker.process_one(TERMINAL_PROVISIONING)) is True
    assert asyncio.run(worker.process_one(TERMINAL_PROVISIONING)) is False


def test_failed_task_is_logged_and_dropped(
    core: Core, caplog: pytest.LogCaptureFixture
) -> None:
    asyncio.run(core.tasks.enqueue(SUBSCRIPTION_RECONCILIATION, {"bogus": True}))

    with caplog.at_level(logging.ERROR, logger="worker"):
        assert asyncio.run(worker.process_one(SUBSCRIPTION_RECONCILIATION)) is True

    assert any("failed" in r.getMessage() for r in caplog.records)
    assert asyncio.run(core.tasks.queue_length(SUBSCRIPTION_RECONCILIATION)) == 0


# ---- terminal service client ----


def _terminal(handler) -> TerminalService:
    return TerminalService(
        "http://terminal.test", transport=httpx.MockTransport(handler)
    )


def test_terminal_provisioning_posts_the_user() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"ok": True})

    asyncio.run(_terminal(handler).provision_user("u1", "u1@example.com"))

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/users"


def test_terminal_error_status_raises() -> None:
    terminal = _terminal(lambda request: httpx.Response(503))
    with pytest.raises(ExternalServiceError):
        asyncio.run(terminal.provision_user("u1", "u1@example.com"))


def test_terminal_unreachable_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ExternalServiceError, match="unreachable"):
        asyncio.run(_terminal(handler).provision_user("u1", "u1@example.com"))


def test_terminal_without_url_skips() -> None:
    asyncio.run(TerminalService(None).provision_user("u1", "u1@example.com"))
