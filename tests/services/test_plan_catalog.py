"""Plan ordering, primary selection and graduated pricing."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from entitlements.core.errors import ConflictError, NotFoundError, ValidationError
from entitlements.models.plan import PricingTier, SubscriptionPlan, merge_caps
from entitlements.models.subscription import Assigned, UserSubscription
from entitlements.repos.plan_repo import InMemoryPlanRepo
from entitlements.services.plan_catalog import (
    PlanCatalog,
    highest,
    select_primary,
    tiered_price,
    validate_tiers,
)

ORG_TIERS = (
    PricingTier(1, 5, 4900),
    PricingTier(6, 15, 4400),
    PricingTier(16, None, 3900),
)


def _plan(name: str, priority: int, **kw) -> SubscriptionPlan:
    return SubscriptionPlan.new(name=name, priority=priority, **kw)


# ---- tiered pricing ----


@pytest.mark.parametrize(
    ("quantity", "total", "labels"),
    [
        (1, 4900, ["1-1"]),
        (5, 5 * 4900, ["1-5"]),
        (6, 5 * 4900 + 4400, ["1-5", "6-6"]),
        (15, 5 * 4900 + 10 * 4400, ["1-5", "6-15"]),
        (20, 5 * 4900 + 10 * 4400 + 5 * 3900, ["1-5", "6-15", "16+"]),
    ],
)
def test_tiered_price_fills_tiers_in_order(
    quantity: int, total: int, labels: list[str]
) -> None:
    plan = _plan("organization", 30, price_amount=4900, pricing_tiers=ORG_TIERS)
    breakdown = tiered_price(plan, quantity)
    assert breakdown.total == total
    assert [t.range_label for t in breakdown.tiers] == labels
    assert sum(t.quantity for t in breakdown.tiers) == quantity
    assert breakdown.savings == 4900 * quantity - total


def test_tiered_price_without_tiers_is_flat() -> None:
    plan = _plan("solo", 10, price_amount=900)
    breakdown = tiered_price(plan, 3)
    assert breakdown.total == 2700
    assert breakdown.savings == 0
    assert breakdown.average_per_unit == 9.0
    assert breakdown.discount_explanation == ""


def test_tiered_price_bills_past_a_closed_table_at_last_rate() -> None:
    plan = _plan(
        "capped", 5, price_amount=1000, pricing_tiers=(PricingTier(1, 2, 1000),)
    )
    breakdown = tiered_price(plan, 4)
    assert breakdown.total == 4000
    assert [t.range_label for t in breakdown.tiers] == ["1-2", "3+"]


def test_tiered_price_explains_savings() -> None:
    plan = _plan("organization", 30, price_amount=4900, pricing_tiers=ORG_TIERS)
    assert "saves" in tiered_price(plan, 10).discount_explanation


def test_tiered_price_rejects_zero_quantity() -> None:
    with pytest.raises(ValidationError) as exc:
        tiered_price(_plan("solo", 10, price_amount=900), 0)
    assert exc.value.code == "INVALID_QUANTITY"


@pytest.mark.parametrize(
    "tiers",
    [
        (PricingTier(2, 5, 100),),
        (PricingTier(1, 5, 100), PricingTier(7, None, 90)),
        (PricingTier(1, None, 100), PricingTier(2, None, 90)),
        (PricingTier(1, 5, -1),),
    ],
)
def test_validate_tiers_rejects_broken_tables(tiers: tuple[PricingTier, ...]) -> None:
    with pytest.raises(ValidationError):
        validate_tiers(tiers)


def test_validate_tiers_sorts() -> None:
    ordered = validate_tiers(reversed(ORG_TIERS))
    assert ordered == ORG_TIERS


# ---- ordering and primary selection ----


def test_merge_caps_unlimited_dominates() -> None:
    assert merge_caps(3, 10) == 10
    assert merge_caps(-1, 10) == -1
    assert merge_caps(5, -1) == -1


def test_highest_uses_priority_then_terminal_cap() -> None:
    small = _plan("a", 10, max_concurrent_terminals=1)
    big = _plan("b", 10, max_concurrent_terminals=-1)
    top = _plan("c", 20, max_concurrent_terminals=1)
    assert highest([small, big]) is big
    assert highest([small, big, top]) is top
    assert highest([]) is None


def _sub(plan: SubscriptionPlan, **kw) -> UserSubscription:
    kw.setdefault("status", "active")
    return UserSubscription.new(user_id="u1", plan_id=plan.id, **kw)


def test_select_primary_prefers_richer_plan() -> None:
    trial = _plan("trial", 0)
    org = _plan("organization", 30)
    subs = [_sub(trial), _sub(org, source=Assigned(batch_id=uuid4(), assignor="boss"))]
    primary = select_primary(subs, {trial.id: trial, org.id: org})
    assert primary is subs[1]


def test_select_primary_personal_wins_a_tie() -> None:
    plan = _plan("trainer", 20)
    now = datetime.now(UTC)
    assigned = _sub(
        plan,
        source=Assigned(batch_id=uuid4(), assignor="boss"),
        created_at=now - timedelta(days=1),
    )
    personal = _sub(plan, created_at=now)
    assert select_primary([assigned, personal], {plan.id: plan}) is personal


def test_select_primary_skips_inactive_and_unknown_plans() -> None:
    plan = _plan("solo", 10)
    cancelled = _sub(plan, status="cancelled")
    orphan = UserSubscription.new(user_id="u1", plan_id=uuid4(), status="active")
    assert select_primary([cancelled, orphan], {plan.id: plan}) is None


# ---- catalog service ----


def test_seed_defaults_only_into_an_empty_catalog() -> None:
    catalog = PlanCatalog(InMemoryPlanRepo())

    async def _run() -> list[str]:
        await catalog.seed_defaults()
        await catalog.seed_defaults()
        return [p.name for p in await catalog.list_active_plans()]

    names = asyncio.run(_run())
    assert sorted(names) == ["organization", "solo", "trainer", "trial"]


def test_required_roles_come_from_plans() -> None:
    catalog = PlanCatalog(InMemoryPlanRepo())
    asyncio.run(catalog.seed_defaults())
    assert asyncio.run(catalog.required_roles()) == frozenset({"trainer", "organization"})


def test_create_plan_rejects_duplicate_name() -> None:
    catalog = PlanCatalog(InMemoryPlanRepo())
    asyncio.run(catalog.create_plan(_plan("team", 5)))
    with pytest.raises(ConflictError):
        asyncio.run(catalog.create_plan(_plan("team", 6)))


def test_get_plan_unknown_id() -> None:
    catalog = PlanCatalog(InMemoryPlanRepo())
    with pytest.raises(NotFoundError):
        asyncio.run(catalog.get_plan(uuid4()))
