"""Entitlement Resolver: authorization decisions and feature aggregation."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from entitlements.core.errors import PermissionDeniedError
from entitlements.wiring import Core
from tests.conftest import add_free_plan, plan_named, principal

OWNER = principal("owner")
URLS = {"success_url": "https://app.test/ok", "cancel_url": "https://app.test/cancel"}


@pytest.fixture
def world(core: Core) -> dict[str, str]:
    """An org with a manager and a member, a group inside it, an expired group."""

    async def _build() -> dict[str, str]:
        org = await core.membership.create_org("owner", "acme")
        await core.membership.add_org_member(org.id, "mgr", "manager", OWNER)
        await core.membership.add_org_member(org.id, "mem", "member", OWNER)
        group = await core.membership.create_group(OWNER, "team", organization_id=org.id)
        old = await core.membership.create_group(
            OWNER, "old", expires_at=datetime.now(UTC) + timedelta(hours=1)
        )
        await core.membership.add_group_member(old.id, "gm", "member", OWNER)
        # Expire it after the member is in.
        await core.membership.update_group(
            old.id, OWNER, {"expires_at": datetime.now(UTC) - timedelta(hours=1)}
        )
        return {
            "org": f"/organizations/{org.id}",
            "group": f"/groups/{group.id}",
            "old": f"/groups/{old.id}",
        }

    return asyncio.run(_build())


MATRIX = [
    # user, method, entity, suffix, allowed, via-or-reason
    ("owner", "GET", "org", "", True, "policy"),
    ("owner", "DELETE", "org", "", True, "policy"),
    ("mem", "GET", "org", "", True, "policy"),
    ("mem", "GET", "org", "/members", True, "policy"),
    ("mem", "PATCH", "org", "", False, "insufficient_role"),
    ("mgr", "PATCH", "org", "", True, "policy"),
    ("mgr", "POST", "org", "/members", True, "policy"),
    ("mgr", "DELETE", "org", "", False, "insufficient_role"),
    ("outsider", "GET", "org", "", False, "not_a_member"),
    ("owner", "DELETE", "group", "", True, "policy"),
    ("mgr", "GET", "group", "", True, "cascade"),
    ("mgr", "PATCH", "group", "", True, "cascade"),
    ("mgr", "DELETE", "group", "", False, "insufficient_role"),
    ("mem", "GET", "group", "", False, "not_a_member"),
    ("gm", "GET", "old", "", True, "policy"),
    ("gm", "POST", "old", "/members", False, "expired"),
    ("owner", "PATCH", "old", "", True, "policy"),
    ("owner", "DELETE", "old", "", False, "expired"),
]


def _matrix_id(case: tuple) -> str:
    user, method, entity, suffix, _, outcome = case
    return f"{user}-{method}-{entity}{suffix}-{outcome}"


@pytest.mark.parametrize("case", MATRIX, ids=[_matrix_id(c) for c in MATRIX])
def test_authorize_matrix(core: Core, world: dict[str, str], case: tuple) -> None:
    user, method, entity, suffix, allowed, outcome = case
    decision = asyncio.run(
        core.resolver.authorize(principal(user), world[entity] + suffix, method)
    )
    assert decision.allowed is allowed
    if allowed:
        assert decision.via == outcome
    else:
        assert decision.deny_reason == outcome


def test_admin_is_always_allowed(core: Core, world: dict[str, str]) -> None:
    decision = asyncio.run(
        core.resolver.authorize(principal("root", "admin"), world["org"], "DELETE")
    )
    assert decision.allowed
    assert decision.via == "administrator"


@pytest.mark.parametrize(
    "path",
    [f"/organizations/{uuid4()}", f"/groups/{uuid4()}", "/widgets/1"],
)
def test_unknown_entities_are_denied(core: Core, path: str) -> None:
    decision = asyncio.run(core.resolver.authorize(principal("anyone"), path, "GET"))
    assert decision.allowed is False
    assert decision.deny_reason == "unknown_entity"


def test_plans_are_public(core: Core) -> None:
    plan = plan_named(core, "trial")
    decision = asyncio.run(
        core.resolver.authorize(principal("anyone"), f"/subscription-plans/{plan.id}", "GET")
    )
    assert decision.allowed
    assert decision.via == "public"


def test_collection_listing_carries_visible_ids(core: Core, world: dict[str, str]) -> None:
    org_id = world["org"].rsplit("/", 1)[1]
    group_id = world["group"].rsplit("/", 1)[1]

    orgs = asyncio.run(core.resolver.authorize(principal("mem"), "/organizations", "GET"))
    groups = asyncio.run(core.resolver.authorize(principal("mgr"), "/groups", "GET"))
    outsider = asyncio.run(core.resolver.authorize(principal("outsider"), "/groups", "GET"))

    assert orgs.allowed and orgs.filter.allows(org_id)
    assert groups.filter.allows(group_id)
    assert not outsider.filter.allows(group_id)


# ---- features ----


def test_effective_features_merge_personal_and_org_plans(core: Core) -> None:
    team = add_free_plan(
        core,
        "team",
        priority=15,
        features=("terminals", "bulk_purchase"),
        max_concurrent_terminals=4,
        max_concurrent_users=-1,
        network_access_enabled=True,
    )
    trial = plan_named(core, "trial")

    async def _run():
        await core.ledger.checkout("u1", trial.id, **URLS)
        org = await core.membership.create_org("owner", "acme")
        await core.membership.add_org_member(org.id, "u1", "member", OWNER)
        await core.ledger.subscribe_org(org.id, team.id, OWNER, **URLS)
        return await core.resolver.effective_features("u1")

    bundle = asyncio.run(_run())
    assert bundle.highest_plan.name == "team"
    assert bundle.features == ("bulk_purchase", "terminals")
    assert bundle.cap("concurrent_terminals") == 4
    assert bundle.cap("concurrent_users") == -1
    assert bundle.cap("courses_created") == -1
    assert bundle.network_access_enabled is True
    assert [o.plan_name for o in bundle.organizations] == ["team"]


def test_effective_features_without_plans_are_empty(core: Core) -> None:
    bundle = asyncio.run(core.resolver.effective_features("nobody"))
    assert bundle.highest_plan is None
    assert bundle.features == ()
    assert bundle.caps == {}


def test_bulk_purchase_by_role_or_feature(core: Core) -> None:
    assert asyncio.run(core.resolver.can_bulk_purchase(principal("t", "trainer")))
    assert not asyncio.run(core.resolver.can_bulk_purchase(principal("plain")))
    with pytest.raises(PermissionDeniedError):
        asyncio.run(core.resolver.require_bulk_purchase(principal("plain")))

    perk = add_free_plan(core, "perk", features=("bulk_purchase",))
    asyncio.run(core.ledger.checkout("plain", perk.id, **URLS))
    assert asyncio.run(core.resolver.can_bulk_purchase(principal("plain")))


def test_check_quota_denies_without_subscription(core: Core) -> None:
    decision, result = asyncio.run(core.resolver.check_quota("nobody", "lab_sessions"))
    assert decision.deny_reason == "quota_exceeded"
    assert result.limit == 0
