"""Batch Manager: seat accounting, group auto-assignment, paid activation."""

from __future__ import annotations

import asyncio

import pytest

from entitlements.core.errors import (
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from entitlements.models.principal import Principal
from entitlements.repos.user_subscription_repo import InMemoryUserSubscriptionRepo
from entitlements.wiring import Core
from tests.conftest import add_free_plan, plan_named, principal, register

URLS = {"success_url": "https://app.test/ok", "cancel_url": "https://app.test/cancel"}

BUYER = principal("buyer", "trainer")


def _free_batch(core: Core, quantity: int, **kw):
    seat = add_free_plan(core, "seat", max_concurrent_terminals=2)
    purchase = asyncio.run(
        core.batches.purchase_batch(BUYER, seat.id, quantity, **URLS, **kw)
    )
    return purchase.batch


def _batch(core: Core, batch_id):
    return asyncio.run(core.batches.get_batch(batch_id, BUYER))


def test_free_batch_is_active_with_a_full_pool(core: Core) -> None:
    batch = _free_batch(core, 5)
    licenses = asyncio.run(core.batches.list_licenses(batch.id, BUYER))
    assert batch.status == "active"
    assert licenses.pool == 5
    assert licenses.licenses == ()


def test_purchase_rejects_zero_quantity(core: Core) -> None:
    seat = add_free_plan(core, "seat")
    with pytest.raises(ValidationError):
        asyncio.run(core.batches.purchase_batch(BUYER, seat.id, 0, **URLS))


def test_assign_creates_an_assigned_subscription(core: Core) -> None:
    batch = _free_batch(core, 2)
    register(core, "alice")

    sub = asyncio.run(core.batches.assign(batch.id, "alice", BUYER))

    assert sub.is_active
    assert sub.batch_id == batch.id
    assert sub.assignor == "buyer"
    assert _batch(core, batch.id).assigned_quantity == 1
    check = asyncio.run(core.usage.check("alice", "concurrent_terminals", 1))
    assert check.limit == 2


def test_assign_unknown_user(core: Core) -> None:
    batch = _free_batch(core, 2)
    with pytest.raises(NotFoundError):
        asyncio.run(core.batches.assign(batch.id, "ghost", BUYER))


def test_purchaser_cannot_take_a_seat(core: Core) -> None:
    batch = _free_batch(core, 2)
    register(core, "buyer")
    with pytest.raises(ValidationError):
        asyncio.run(core.batches.assign(batch.id, "buyer", BUYER))


def test_duplicate_assignment_conflicts(core: Core) -> None:
    batch = _free_batch(core, 2)
    register(core, "alice")
    asyncio.run(core.batches.assign(batch.id, "alice", BUYER))
    with pytest.raises(ConflictError):
        asyncio.run(core.batches.assign(batch.id, "alice", BUYER))
    assert _batch(core, batch.id).assigned_quantity == 1


def test_full_batch_refuses_more_seats(core: Core) -> None:
    batch = _free_batch(core, 1)
    register(core, "alice")
    register(core, "bob")
    asyncio.run(core.batches.assign(batch.id, "alice", BUYER))

    with pytest.raises(ConflictError) as exc:
        asyncio.run(core.batches.assign(batch.id, "bob", BUYER))
    assert exc.value.code == "NO_AVAILABLE_LICENSES"


def test_concurrent_assignments_respect_total(core: Core) -> None:
    batch = _free_batch(core, 3)
    users = [f"user-{i}" for i in range(8)]
    for user_id in users:
        register(core, user_id)

    async def _race() -> list:
        return await asyncio.gather(
            *(core.batches.assign(batch.id, u, BUYER) for u in users),
            return_exceptions=True,
        )

    results = asyncio.run(_race())
    assigned = [r for r in results if not isinstance(r, Exception)]
    assert len(assigned) == 3
    assert _batch(core, batch.id).assigned_quantity == 3


def test_revoke_returns_the_seat(core: Core) -> None:
    batch = _free_batch(core, 1)
    register(core, "alice")
    sub = asyncio.run(core.batches.assign(batch.id, "alice", BUYER))

    revoked = asyncio.run(core.batches.revoke(batch.id, sub.id, BUYER))

    assert revoked.status == "cancelled"
    assert _batch(core, batch.id).assigned_quantity == 0
    assert asyncio.run(core.usage.check("alice", "concurrent_terminals", 1)).allowed is False


def test_concurrent_revokes_release_one_seat(
    core: Core, monkeypatch: pytest.MonkeyPatch
) -> None:
    batch = _free_batch(core, 2)
    register(core, "alice")
    register(core, "bob")
    alice = asyncio.run(core.batches.assign(batch.id, "alice", BUYER))
    asyncio.run(core.batches.assign(batch.id, "bob", BUYER))

    # A database read yields to the loop; make the in-memory one do the same.
    original_get = InMemoryUserSubscriptionRepo.get

    async def slow_get(self, subscription_id):
        await asyncio.sleep(0)
        return await original_get(self, subscription_id)

    monkeypatch.setattr(InMemoryUserSubscriptionRepo, "get", slow_get)

    async def _race() -> list:
        return await asyncio.gather(
            core.batches.revoke(batch.id, alice.id, BUYER),
            core.batches.revoke(batch.id, alice.id, BUYER),
        )

    results = asyncio.run(_race())

    assert [r.status for r in results] == ["cancelled", "cancelled"]
    assert _batch(core, batch.id).assigned_quantity == 1
    licenses = asyncio.run(core.batches.list_licenses(batch.id, BUYER))
    assert [s.user_id for s in licenses.licenses if s.is_active] == ["bob"]
    assert licenses.pool == 1


def test_revoke_on_a_cancelled_batch_keeps_seats_balanced(core: Core) -> None:
    batch = _free_batch(core, 2)
    register(core, "alice")
    register(core, "bob")
    alice = asyncio.run(core.batches.assign(batch.id, "alice", BUYER))
    bob = asyncio.run(core.batches.assign(batch.id, "bob", BUYER))

    async def _race() -> None:
        await asyncio.gather(
            core.batches.cancel_batch(batch.id, BUYER),
            core.batches.revoke(batch.id, alice.id, BUYER),
        )

    asyncio.run(_race())
    again = asyncio.run(core.batches.revoke(batch.id, bob.id, BUYER))

    assert again.status == "cancelled"
    closed = _batch(core, batch.id)
    assert closed.status == "cancelled"
    assert closed.assigned_quantity == 0
    licenses = asyncio.run(core.batches.list_licenses(batch.id, BUYER))
    assert not [s for s in licenses.licenses if s.is_active]
    assert closed.assigned_quantity + licenses.pool == closed.total_quantity


def test_other_users_cannot_see_the_batch(core: Core) -> None:
    batch = _free_batch(core, 1)
    with pytest.raises(NotFoundError):
        asyncio.run(core.batches.get_batch(batch.id, principal("nosy")))
    assert asyncio.run(core.batches.get_batch(batch.id, principal("root", "admin")))


def test_assign_bulk_reports_rows_independently(core: Core) -> None:
    batch = _free_batch(core, 2)
    register(core, "alice")
    register(core, "bob")
    register(core, "carol")

    report = asyncio.run(
        core.batches.assign_bulk(
            batch.id,
            [
                {"user_id": "alice"},
                {"email": "bob@example.com"},
                {"user_id": "ghost"},
                {"user_id": "carol"},
            ],
            BUYER,
        )
    )

    assert [r.status for r in report.rows] == ["ok", "ok", "error", "error"]
    assert report.rows[3].code == "NO_AVAILABLE_LICENSES"
    assert report.warnings


def test_update_quantity_cannot_drop_below_assigned(core: Core) -> None:
    batch = _free_batch(core, 3)
    register(core, "alice")
    register(core, "bob")
    asyncio.run(core.batches.assign(batch.id, "alice", BUYER))
    asyncio.run(core.batches.assign(batch.id, "bob", BUYER))

    with pytest.raises(ConflictError):
        asyncio.run(core.batches.update_quantity(batch.id, 1, BUYER))
    with pytest.raises(ValidationError):
        asyncio.run(core.batches.update_quantity(batch.id, 0, BUYER))

    grown = asyncio.run(core.batches.update_quantity(batch.id, 5, BUYER))
    assert grown.total_quantity == 5
    shrunk = asyncio.run(core.batches.update_quantity(batch.id, 2, BUYER))
    assert shrunk.total_quantity == 2


def test_cancel_batch_revokes_every_seat(core: Core) -> None:
    batch = _free_batch(core, 2)
    register(core, "alice")
    sub = asyncio.run(core.batches.assign(batch.id, "alice", BUYER))

    closed = asyncio.run(core.batches.cancel_batch(batch.id, BUYER))

    assert closed.status == "cancelled"
    assert closed.assigned_quantity == 0
    assert asyncio.run(core.ledger.get_subscription(sub.id)).status == "cancelled"
    with pytest.raises(StateError):
        asyncio.run(core.batches.assign(batch.id, "alice", BUYER))


def test_no_seat_survives_an_assign_racing_cancel(core: Core) -> None:
    batch = _free_batch(core, 2)
    register(core, "alice")

    async def _race() -> list:
        return await asyncio.gather(
            core.batches.cancel_batch(batch.id, BUYER),
            core.batches.assign(batch.id, "alice", BUYER),
            return_exceptions=True,
        )

    results = asyncio.run(_race())

    assert not isinstance(results[0], Exception)
    if isinstance(results[1], Exception):
        assert isinstance(results[1], StateError)
    closed = _batch(core, batch.id)
    assert closed.status == "cancelled"
    assert closed.assigned_quantity == 0
    licenses = asyncio.run(core.batches.list_licenses(batch.id, BUYER))
    assert not [s for s in licenses.licenses if s.is_active]


def test_delete_batch_with_assigned_seats_is_refused(core: Core) -> None:
    batch = _free_batch(core, 2)
    register(core, "alice")
    asyncio.run(core.batches.assign(batch.id, "alice", BUYER))
    with pytest.raises(StateError):
        asyncio.run(core.batches.delete_batch(batch.id, BUYER))


# ---- group-linked batches ----


def _group_with_members(core: Core, owner: Principal, *members: str):
    async def _run():
        group = await core.membership.create_group(owner, "cohort-1")
        for user_id in members:
            await core.membership.add_group_member(group.id, user_id, "member", owner)
        return group

    return asyncio.run(_run())


def test_group_batch_preassigns_members_and_skips_purchaser(core: Core) -> None:
    group = _group_with_members(core, BUYER, "m1", "m2")
    batch = _free_batch(core, 3, group_id=group.id)

    licenses = asyncio.run(core.batches.list_licenses(batch.id, BUYER))
    assert sorted(s.user_id for s in licenses.licenses) == ["m1", "m2"]
    assert licenses.pool == 1


def test_joining_a_licensed_group_takes_a_free_seat(core: Core) -> None:
    group = _group_with_members(core, BUYER)
    batch = _free_batch(core, 1, group_id=group.id)

    async def _join() -> None:
        await core.membership.add_group_member(group.id, "late-1", "member", BUYER)
        await core.membership.add_group_member(group.id, "late-2", "member", BUYER)

    asyncio.run(_join())
    licenses = asyncio.run(core.batches.list_licenses(batch.id, BUYER))
    assert [s.user_id for s in licenses.licenses] == ["late-1"]
    assert licenses.pool == 0


# ---- paid batches ----


def test_paid_batch_activates_on_checkout_completion(core: Core) -> None:
    register(core, "buyer")
    org_plan = plan_named(core, "organization")
    purchase = asyncio.run(core.batches.purchase_batch(BUYER, org_plan.id, 6, **URLS))
    assert purchase.batch.status == "incomplete"
    assert purchase.checkout_url

    remote = asyncio.run(core.provider.complete_session(purchase.session_id))  # type: ignore[attr-defined]
    outcome = asyncio.run(
        core.webhooks.handle(
            {
                "id": "evt_batch_1",
                "type": "checkout.session.completed",
                "data": {"object": {"subscription": remote.id}},
            }
        )
    )

    assert outcome == "processed"
    batch = _batch(core, purchase.batch.id)
    assert batch.status == "active"
    assert batch.provider_subscription_id == remote.id
    assert batch.total_quantity == 6


def test_deleting_a_paid_batch_cancels_provider_billing(core: Core) -> None:
    register(core, "buyer")
    org_plan = plan_named(core, "organization")
    purchase = asyncio.run(core.batches.purchase_batch(BUYER, org_plan.id, 6, **URLS))
    remote = asyncio.run(core.provider.complete_session(purchase.session_id))  # type: ignore[attr-defined]
    asyncio.run(
        core.webhooks.handle(
            {
                "id": "evt_batch_2",
                "type": "checkout.session.completed",
                "data": {"object": {"subscription": remote.id}},
            }
        )
    )
    assert _batch(core, purchase.batch.id).status == "active"

    asyncio.run(core.batches.delete_batch(purchase.batch.id, BUYER))

    billed = asyncio.run(core.provider.get_subscription(remote.id))
    assert billed.status == "canceled"
    with pytest.raises(NotFoundError):
        _batch(core, purchase.batch.id)
