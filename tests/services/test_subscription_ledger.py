"""Subscription Ledger: personal plan changes, provider failures, role sync."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from entitlements.core.config import SETTINGS
from entitlements.core.errors import (
    ConflictError,
    DeadlineExceededError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
)
from entitlements.services.subscription_ledger import USER_SUBSCRIPTION_KEY
from entitlements.services.task_queue import SUBSCRIPTION_RECONCILIATION
from entitlements.wiring import Core, build_core
from tests.conftest import add_free_plan, plan_named, principal, register

URLS = {"success_url": "https://app.test/ok", "cancel_url": "https://app.test/cancel"}


def _trial(core: Core, user_id: str):
    plan = plan_named(core, "trial")
    return asyncio.run(core.ledger.checkout(user_id, plan.id, **URLS)).subscription


def _statuses(core: Core, user_id: str) -> dict[str, str]:
    rows = asyncio.run(core.ledger.list_history(user_id))
    plans = {p.id: p.name for p in asyncio.run(core.catalog.list_active_plans())}
    return {plans[r.plan_id]: r.status for r in rows}


# ---- checkout ----


def test_free_checkout_activates_immediately(core: Core) -> None:
    sub = _trial(core, "u1")
    assert sub.status == "active"
    assert sub.provider_subscription_id is None


def test_second_free_checkout_is_rejected(core: Core) -> None:
    _trial(core, "u1")
    with pytest.raises(ConflictError) as exc:
        _trial(core, "u1")
    assert exc.value.code == "ALREADY_SUBSCRIBED"


def test_paid_checkout_returns_session_and_incomplete_row(core: Core) -> None:
    register(core, "u1")
    solo = plan_named(core, "solo")
    result = asyncio.run(core.ledger.checkout("u1", solo.id, **URLS))
    assert result.subscription.status == "incomplete"
    assert result.checkout_url.startswith("https://")
    assert result.session_id in core.provider.sessions  # type: ignore[attr-defined]


def test_paid_checkout_needs_a_known_user(core: Core) -> None:
    solo = plan_named(core, "solo")
    with pytest.raises(NotFoundError):
        asyncio.run(core.ledger.checkout("ghost", solo.id, **URLS))


# ---- upgrade ----


def test_upgrade_from_trial_replaces_the_free_row(core: Core) -> None:
    register(core, "u1")
    _trial(core, "u1")
    org_plan = plan_named(core, "organization")

    row = asyncio.run(core.ledger.upgrade("u1", org_plan.id))

    assert row.status == "active"
    assert row.provider_subscription_id in core.provider.subscriptions  # type: ignore[attr-defined]
    assert _statuses(core, "u1") == {"trial": "cancelled", "organization": "active"}
    check = asyncio.run(core.usage.check("u1", "concurrent_terminals", 1))
    assert check.limit == 10


def test_upgrade_provider_error_leaves_ledger_untouched(core: Core) -> None:
    register(core, "u1")
    _trial(core, "u1")
    org_plan = plan_named(core, "organization")
    core.provider.fail_next("create_subscription")  # type: ignore[attr-defined]

    with pytest.raises(ExternalServiceError):
        asyncio.run(core.ledger.upgrade("u1", org_plan.id))

    assert _statuses(core, "u1") == {"trial": "active"}
    assert asyncio.run(core.usage.check("u1", "concurrent_terminals", 1)).limit == 1
    assert asyncio.run(core.tasks.queue_length(SUBSCRIPTION_RECONCILIATION)) == 0


def test_upgrade_awaiting_payment_keeps_the_trial_caps(
    core: Core, monkeypatch: pytest.MonkeyPatch
) -> None:
    register(core, "u1")
    _trial(core, "u1")
    org_plan = plan_named(core, "organization")
    create = core.provider.create_subscription

    async def unpaid(**kwargs):
        return replace(await create(**kwargs), status="incomplete")

    monkeypatch.setattr(core.provider, "create_subscription", unpaid)

    row = asyncio.run(core.ledger.upgrade("u1", org_plan.id))

    assert row.status == "incomplete"
    assert _statuses(core, "u1") == {"trial": "active", "organization": "incomplete"}
    assert asyncio.run(core.usage.check("u1", "concurrent_terminals", 1)).limit == 1


def test_upgrade_to_same_plan_conflicts(core: Core) -> None:
    trial = plan_named(core, "trial")
    _trial(core, "u1")
    with pytest.raises(ConflictError):
        asyncio.run(core.ledger.upgrade("u1", trial.id))


def test_paid_to_paid_upgrade_swaps_plan_roles(core: Core) -> None:
    register(core, "u1")
    trainer = plan_named(core, "trainer")
    org_plan = plan_named(core, "organization")

    asyncio.run(core.ledger.upgrade("u1", trainer.id))
    assert "trainer" in core.store.roles_for("u1")

    row = asyncio.run(core.ledger.upgrade("u1", org_plan.id, "none"))
    assert row.plan_id == org_plan.id
    roles = core.store.roles_for("u1")
    assert "organization" in roles
    assert "trainer" not in roles


def test_downgrade_to_free_cancels_provider_side_and_drops_role(core: Core) -> None:
    register(core, "u1")
    trainer = plan_named(core, "trainer")
    trial = plan_named(core, "trial")
    paid = asyncio.run(core.ledger.upgrade("u1", trainer.id))

    asyncio.run(core.ledger.upgrade("u1", trial.id))

    remote = core.provider.subscriptions[paid.provider_subscription_id]  # type: ignore[attr-defined]
    assert remote.status == "canceled"
    assert _statuses(core, "u1") == {"trainer": "cancelled", "trial": "active"}
    assert "trainer" not in core.store.roles_for("u1")


# ---- provider timeout and reconciliation ----


@pytest.fixture
def slow_core() -> Core:
    fast = build_core(replace(SETTINGS, request_timeout_seconds=0.05))
    asyncio.run(fast.startup())
    return fast


def test_upgrade_timeout_queues_reconciliation(slow_core: Core) -> None:
    register(slow_core, "u1")
    _trial(slow_core, "u1")
    org_plan = plan_named(slow_core, "organization")
    slow_core.provider.stall_next("create_subscription")  # type: ignore[attr-defined]

    with pytest.raises(DeadlineExceededError):
        asyncio.run(slow_core.ledger.upgrade("u1", org_plan.id))

    assert _statuses(slow_core, "u1") == {"trial": "active", "organization": "incomplete"}
    task = asyncio.run(slow_core.tasks.dequeue(SUBSCRIPTION_RECONCILIATION))
    assert task is not None
    assert task.payload["metadata_key"] == USER_SUBSCRIPTION_KEY
    assert task.payload["provider_subscription_id"] is None


def test_reconciliation_completes_a_timed_out_upgrade(slow_core: Core) -> None:
    register(slow_core, "u1")
    _trial(slow_core, "u1")
    org_plan = plan_named(slow_core, "organization")
    slow_core.provider.stall_next("create_subscription")  # type: ignore[attr-defined]
    with pytest.raises(DeadlineExceededError):
        asyncio.run(slow_core.ledger.upgrade("u1", org_plan.id))
    task = asyncio.run(slow_core.tasks.dequeue(SUBSCRIPTION_RECONCILIATION))

    # The provider finished the subscription after we gave up waiting.
    asyncio.run(
        slow_core.provider.create_subscription(
            customer_id=slow_core.provider.customers["u1"],  # type: ignore[attr-defined]
            price_id=org_plan.provider_price_id,
            metadata={USER_SUBSCRIPTION_KEY: task.payload["local_id"], "user_id": "u1"},
        )
    )
    outcome = asyncio.run(slow_core.webhooks.reconcile(task.payload))

    assert outcome == "processed"
    assert _statuses(slow_core, "u1") == {"trial": "cancelled", "organization": "active"}


def test_reconciliation_without_provider_subscription_is_unmatched(slow_core: Core) -> None:
    outcome = asyncio.run(
        slow_core.webhooks.reconcile(
            {
                "metadata_key": USER_SUBSCRIPTION_KEY,
                "local_id": "00000000-0000-4000-8000-000000000000",
                "provider_subscription_id": None,
            }
        )
    )
    assert outcome == "unmatched"


# ---- cancel and reactivate ----


def test_cancel_free_row_is_immediate(core: Core) -> None:
    sub = _trial(core, "u1")
    cancelled = asyncio.run(core.ledger.cancel(sub.id, "u1"))
    assert cancelled.status == "cancelled"
    assert asyncio.run(core.usage.check("u1", "concurrent_terminals", 1)).allowed is False


def test_cancel_someone_elses_subscription_is_not_found(core: Core) -> None:
    sub = _trial(core, "u1")
    with pytest.raises(NotFoundError):
        asyncio.run(core.ledger.cancel(sub.id, "intruder"))


def test_cancel_at_period_end_then_reactivate(core: Core) -> None:
    register(core, "u1")
    solo = plan_named(core, "solo")
    paid = asyncio.run(core.ledger.upgrade("u1", solo.id))

    scheduled = asyncio.run(core.ledger.cancel(paid.id, "u1"))
    assert scheduled.status == "active"
    assert scheduled.cancel_at_period_end is True

    resumed = asyncio.run(core.ledger.reactivate(paid.id, "u1"))
    assert resumed.cancel_at_period_end is False
    remote = core.provider.subscriptions[paid.provider_subscription_id]  # type: ignore[attr-defined]
    assert remote.cancel_at_period_end is False


def test_reactivate_requires_scheduled_cancellation(core: Core) -> None:
    sub = _trial(core, "u1")
    with pytest.raises(StateError):
        asyncio.run(core.ledger.reactivate(sub.id, "u1"))


# ---- administrator grants ----


def test_grant_plan_replaces_free_row(core: Core) -> None:
    register(core, "u1")
    _trial(core, "u1")
    trainer = plan_named(core, "trainer")

    row = asyncio.run(core.ledger.grant_plan("u1", trainer.id, principal("root", "admin")))

    assert row.status == "active"
    assert _statuses(core, "u1") == {"trial": "cancelled", "trainer": "active"}
    assert "trainer" in core.store.roles_for("u1")


def test_grant_plan_requires_admin(core: Core) -> None:
    register(core, "u1")
    trainer = plan_named(core, "trainer")
    with pytest.raises(PermissionDeniedError):
        asyncio.run(core.ledger.grant_plan("u1", trainer.id, principal("someone")))


# ---- organization subscriptions ----


def test_subscribe_org_requires_owner(core: Core) -> None:
    team = add_free_plan(core, "team")
    org = asyncio.run(core.membership.create_org("owner", "acme"))
    with pytest.raises(PermissionDeniedError):
        asyncio.run(core.ledger.subscribe_org(org.id, team.id, principal("other"), **URLS))


def test_cancel_org_subscription_drops_member_caps(core: Core) -> None:
    team = add_free_plan(core, "team", max_concurrent_terminals=4)
    owner = principal("owner")

    async def _run() -> tuple[int, int]:
        org = await core.membership.create_org("owner", "acme")
        await core.membership.add_org_member(org.id, "m1", "member", owner)
        await core.ledger.subscribe_org(org.id, team.id, owner, **URLS)
        before = (await core.usage.check("m1", "concurrent_terminals", 1)).limit
        await core.ledger.cancel_org_subscription(org.id, owner)
        after = (await core.usage.check("m1", "concurrent_terminals", 1)).limit
        return before, after

    assert asyncio.run(_run()) == (4, 0)


def test_second_org_subscription_conflicts(core: Core) -> None:
    team = add_free_plan(core, "team")
    owner = principal("owner")
    org = asyncio.run(core.membership.create_org("owner", "acme"))
    asyncio.run(core.ledger.subscribe_org(org.id, team.id, owner, **URLS))
    with pytest.raises(ConflictError):
        asyncio.run(core.ledger.subscribe_org(org.id, team.id, owner, **URLS))
