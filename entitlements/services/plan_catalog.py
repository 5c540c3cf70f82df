"""Subscription Plan Catalog: plan lookup, priority ordering and tier pricing."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from uuid import UUID

from entitlements.core.errors import ConflictError, NotFoundError, ValidationError
from entitlements.models.plan import (
    PriceBreakdown,
    PricingTier,
    SubscriptionPlan,
    TierCost,
    cap_sort_value,
)
from entitlements.models.subscription import UserSubscription
from entitlements.repos.plan_repo import PlanRepo

logger = logging.getLogger(__name__)


def plan_rank(plan: SubscriptionPlan) -> tuple[float, float, str]:
    """Sort key; the smallest key is the richest plan.

    Priority first, then the larger terminal cap, then name.
    """
    return (-plan.priority, -cap_sort_value(plan.max_concurrent_terminals), plan.name)


def highest(plans: Iterable[SubscriptionPlan]) -> SubscriptionPlan | None:
    return min(plans, key=plan_rank, default=None)


def tiered_price(plan: SubscriptionPlan, quantity: int) -> PriceBreakdown:
    """Graduated pricing: units fill the tiers in order.

    Each tier bills min(remaining, tier size) units at its own unit amount.
    A tier with no max_quantity takes everything left.  Plans without a
    tier table price every unit at price_amount.
    """
    if quantity < 1:
        raise ValidationError("quantity must be at least 1", code="INVALID_QUANTITY")

    flat_total = plan.price_amount * quantity
    if not plan.pricing_tiers:
        return PriceBreakdown(
            plan_name=plan.name,
            quantity=quantity,
            tiers=(
                TierCost(
                    range_label=f"1-{quantity}",
                    quantity=quantity,
                    unit_price=plan.price_amount,
                    subtotal=flat_total,
                ),
            ),
            total=flat_total,
            average_per_unit=plan.price_amount / 100.0,
            savings=0,
            currency=plan.currency,
        )

    remaining = quantity
    total = 0
    costs: list[TierCost] = []
    for tier in sorted(plan.pricing_tiers, key=lambda t: t.min_quantity):
        if remaining <= 0:
            break
        if tier.max_quantity is None:
            take = remaining
            label = f"{tier.min_quantity}+"
        else:
            take = min(remaining, tier.max_quantity - tier.min_quantity + 1)
            label = f"{tier.min_quantity}-{tier.min_quantity + take - 1}"
        subtotal = take * tier.unit_amount
        costs.append(
            TierCost(
                range_label=label,
                quantity=take,
                unit_price=tier.unit_amount,
                subtotal=subtotal,
            )
        )
        total += subtotal
        remaining -= take

    if remaining > 0:
        # Tier table ends before the quantity does; bill the rest at the
        # last tier's rate.
        last = costs[-1]
        extra = remaining * last.unit_price
        start = quantity - remaining + 1
        costs.append(
            TierCost(
                range_label=f"{start}+",
                quantity=remaining,
                unit_price=last.unit_price,
                subtotal=extra,
            )
        )
        total += extra

    savings = flat_total - total
    explanation = ""
    if savings > 0:
        explanation = (
            f"Volume pricing saves {savings / 100:.2f} {plan.currency.upper()} "
            f"versus {quantity} x {plan.price_amount / 100:.2f}"
        )
    return PriceBreakdown(
        plan_name=plan.name,
        quantity=quantity,
        tiers=tuple(costs),
        total=total,
        average_per_unit=round(total / quantity / 100.0, 2),
        savings=savings,
        currency=plan.currency,
        discount_explanation=explanation,
    )


def validate_tiers(tiers: Iterable[PricingTier]) -> tuple[PricingTier, ...]:
    """Tiers must start at 1, be contiguous, and only the last may be open."""
    ordered = tuple(sorted(tiers, key=lambda t: t.min_quantity))
    expected = 1
    for i, tier in enumerate(ordered):
        if tier.min_quantity != expected:
            raise ValidationError(
                f"pricing tier must start at {expected} (got {tier.min_quantity})"
            )
        if tier.unit_amount < 0:
            raise ValidationError("pricing tier unit amount must not be negative")
        if tier.max_quantity is None:
            if i != len(ordered) - 1:
                raise ValidationError("only the last pricing tier may be open-ended")
            break
        if tier.max_quantity < tier.min_quantity:
            raise ValidationError("pricing tier max is below its min")
        expected = tier.max_quantity + 1
    return ordered


class PlanCatalog:
    def __init__(self, plans: PlanRepo) -> None:
        self._plans = plans

    async def get_plan(self, plan_id: UUID) -> SubscriptionPlan:
        plan = await self._plans.get(plan_id)
        if plan is None:
            raise NotFoundError("Subscription plan not found")
        return plan

    async def find_plan(self, plan_id: UUID) -> SubscriptionPlan | None:
        return await self._plans.get(plan_id)

    async def plans_for(self, plan_ids: Iterable[UUID]) -> dict[UUID, SubscriptionPlan]:
        """Plans by id; unknown ids are left out."""
        found: dict[UUID, SubscriptionPlan] = {}
        for plan_id in set(plan_ids):
            plan = await self._plans.get(plan_id)
            if plan is not None:
                found[plan_id] = plan
        return found

    async def find_by_name(self, name: str) -> SubscriptionPlan | None:
        return await self._plans.get_by_name(name)

    async def find_by_price_id(self, price_id: str) -> SubscriptionPlan | None:
        for plan in await self._plans.list_all(active_only=False):
            if plan.provider_price_id == price_id:
                return plan
        return None

    async def required_roles(self) -> frozenset[str]:
        """Every role some plan confers; role sync owns exactly these."""
        plans = await self._plans.list_all(active_only=False)
        return frozenset(p.required_role for p in plans if p.required_role)

    async def list_active_plans(self) -> list[SubscriptionPlan]:
        plans = await self._plans.list_all(active_only=True)
        return sorted(plans, key=plan_rank, reverse=True)

    @staticmethod
    def priority(plan: SubscriptionPlan) -> int:
        return plan.priority

    async def create_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        validate_tiers(plan.pricing_tiers)
        if plan.price_amount < 0:
            raise ValidationError("price must not be negative")
        try:
            await self._plans.add(plan)
        except ValueError as exc:
            raise ConflictError(str(exc), code="DUPLICATE_NAME") from exc
        logger.info("Plan created: name=%s priority=%d", plan.name, plan.priority)
        return plan

    async def price(self, plan_id: UUID, quantity: int) -> PriceBreakdown:
        return tiered_price(await self.get_plan(plan_id), quantity)

    async def seed_defaults(self) -> None:
        """Insert the default plan set when the catalog is empty."""
        if await self._plans.list_all(active_only=False):
            return
        for plan in default_plans():
            await self._plans.add(plan)
        logger.info("Seeded default subscription plans")


def default_plans() -> list[SubscriptionPlan]:
    return [
        SubscriptionPlan.new(
            name="trial",
            priority=0,
            description="Free plan for trying out terminals",
            features=("terminals",),
            max_concurrent_terminals=1,
            max_courses=0,
            max_session_duration_minutes=60,
            allowed_machine_sizes=("XS",),
        ),
        SubscriptionPlan.new(
            name="solo",
            priority=10,
            price_amount=900,
            provider_price_id="price_solo_monthly",
            description="Individual learning with network and storage",
            features=("terminals", "network_access", "data_persistence"),
            max_concurrent_terminals=1,
            max_courses=0,
            max_session_duration_minutes=480,
            network_access_enabled=True,
            data_persistence_enabled=True,
            data_persistence_gb=2,
            allowed_machine_sizes=("XS", "S"),
        ),
        SubscriptionPlan.new(
            name="trainer",
            priority=20,
            price_amount=1900,
            provider_price_id="price_trainer_monthly",
            description="Professional trainers running sessions",
            features=(
                "terminals",
                "network_access",
                "data_persistence",
                "bulk_purchase",
            ),
            max_concurrent_terminals=3,
            max_concurrent_users=3,
            max_courses=0,
            max_session_duration_minutes=480,
            network_access_enabled=True,
            data_persistence_enabled=True,
            data_persistence_gb=5,
            allowed_machine_sizes=("XS", "S", "M"),
            required_role="trainer",
        ),
        SubscriptionPlan.new(
            name="organization",
            priority=30,
            price_amount=4900,
            provider_price_id="price_organization_monthly",
            description="Training companies and organizations",
            features=(
                "terminals",
                "network_access",
                "data_persistence",
                "bulk_purchase",
                "custom_images",
            ),
            max_concurrent_terminals=10,
            max_concurrent_users=10,
            max_session_duration_minutes=480,
            network_access_enabled=True,
            data_persistence_enabled=True,
            data_persistence_gb=20,
            allowed_machine_sizes=("XS", "S", "M", "L", "XL"),
            required_role="organization",
            pricing_tiers=(
                PricingTier(1, 5, 4900),
                PricingTier(6, 15, 4400, "10% off"),
                PricingTier(16, None, 3900, "20% off"),
            ),
        ),
    ]


def select_primary(
    subscriptions: Iterable[UserSubscription],
    plans: Mapping[UUID, SubscriptionPlan],
) -> UserSubscription | None:
    """The active subscription whose plan ranks highest.

    Ties on plan rank go to a personal subscription over an assigned one,
    then to the older row.  Rows whose plan is unknown are skipped.
    """

    def key(sub: UserSubscription) -> tuple:
        return (
            plan_rank(plans[sub.plan_id]),
            sub.is_assigned,
            sub.created_at,
            str(sub.id),
        )

    candidates = [s for s in subscriptions if s.is_active and s.plan_id in plans]
    return min(candidates, key=key, default=None)
