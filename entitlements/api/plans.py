"""Subscription plan catalog endpoints.

Reading the catalog and pricing a quantity are public to any signed-in
user (the Resolver registers GET on subscription-plans as public).
Creating a plan is for administrators.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from entitlements.api.dependencies import AdminDep, CoreDep
from entitlements.api.permissions import authorize
from entitlements.models.plan import PriceBreakdown, PricingTier, SubscriptionPlan
from entitlements.services.plan_catalog import validate_tiers

router = APIRouter(
    prefix="/subscription-plans",
    tags=["plans"],
    dependencies=[Depends(authorize)],
)


class TierIn(BaseModel):
    min_quantity: int = Field(ge=1)
    max_quantity: int | None = None  # None or 0 = open-ended
    unit_amount: int = Field(ge=0)
    description: str = ""


class TierOut(BaseModel):
    range: str
    min_quantity: int
    max_quantity: int | None
    unit_amount: int
    description: str


class PlanIn(BaseModel):
    name: str
    priority: int
    price_amount: int = Field(0, ge=0)
    currency: str = "eur"
    billing_interval: str = "month"
    description: str = ""
    trial_days: int = Field(0, ge=0)
    features: list[str] = Field(default_factory=list)
    max_concurrent_terminals: int = 1
    max_courses: int = -1
    max_lab_sessions: int = -1
    max_concurrent_users: int = 1
    max_session_duration_minutes: int = 60
    network_access_enabled: bool = False
    data_persistence_enabled: bool = False
    data_persistence_gb: int = 0
    allowed_machine_sizes: list[str] = Field(default_factory=list)
    pricing_tiers: list[TierIn] = Field(default_factory=list)
    required_role: str | None = None
    provider_price_id: str | None = None


class PlanOut(BaseModel):
    id: str
    name: str
    description: str
    priority: int
    price_amount: int
    currency: str
    billing_interval: str
    trial_days: int
    features: list[str]
    caps: dict[str, int]
    max_session_duration_minutes: int
    network_access_enabled: bool
    data_persistence_enabled: bool
    data_persistence_gb: int
    allowed_machine_sizes: list[str]
    pricing_tiers: list[TierOut]
    required_role: str | None


class TierCostOut(BaseModel):
    range: str
    quantity: int
    unit_price: int
    subtotal: int


class PriceOut(BaseModel):
    plan_name: str
    quantity: int
    tiers: list[TierCostOut]
    total: int
    average_per_unit: float
    savings: int
    currency: str
    discount_explanation: str


def plan_out(plan: SubscriptionPlan) -> PlanOut:
    return PlanOut(
        id=str(plan.id),
        name=plan.name,
        description=plan.description,
        priority=plan.priority,
        price_amount=plan.price_amount,
        currency=plan.currency,
        billing_interval=plan.billing_interval,
        trial_days=plan.trial_days,
        features=list(plan.features),
        caps=plan.caps(),
        max_session_duration_minutes=plan.max_session_duration_minutes,
        network_access_enabled=plan.network_access_enabled,
        data_persistence_enabled=plan.data_persistence_enabled,
        data_persistence_gb=plan.data_persistence_gb,
        allowed_machine_sizes=list(plan.allowed_machine_sizes),
        pricing_tiers=[
            TierOut(
                range=t.range_label,
                min_quantity=t.min_quantity,
                max_quantity=t.max_quantity,
                unit_amount=t.unit_amount,
                description=t.description,
            )
            for t in plan.pricing_tiers
        ],
        required_role=plan.required_role,
    )


def price_out(breakdown: PriceBreakdown) -> PriceOut:
    return PriceOut(
        plan_name=breakdown.plan_name,
        quantity=breakdown.quantity,
        tiers=[
            TierCostOut(
                range=t.range_label,
                quantity=t.quantity,
                unit_price=t.unit_price,
                subtotal=t.subtotal,
            )
            for t in breakdown.tiers
        ],
        total=breakdown.total,
        average_per_unit=breakdown.average_per_unit,
        savings=breakdown.savings,
        currency=breakdown.currency,
        discount_explanation=breakdown.discount_explanation,
    )


@router.get("", response_model=list[PlanOut])
async def list_plans(core: CoreDep) -> list[PlanOut]:
    return [plan_out(p) for p in await core.catalog.list_active_plans()]


@router.post("", response_model=PlanOut, status_code=status.HTTP_201_CREATED)
async def create_plan(body: PlanIn, principal: AdminDep, core: CoreDep) -> PlanOut:
    tiers = validate_tiers(
        PricingTier(
            min_quantity=t.min_quantity,
            max_quantity=t.max_quantity or None,
            unit_amount=t.unit_amount,
            description=t.description,
        )
        for t in body.pricing_tiers
    )
    fields = body.model_dump(exclude={"pricing_tiers", "features", "allowed_machine_sizes"})
    plan = SubscriptionPlan.new(
        **fields,
        features=tuple(body.features),
        allowed_machine_sizes=tuple(body.allowed_machine_sizes),
        pricing_tiers=tiers,
    )
    return plan_out(await core.catalog.create_plan(plan))


@router.get("/{plan_id}", response_model=PlanOut)
async def get_plan(plan_id: UUID, core: CoreDep) -> PlanOut:
    return plan_out(await core.catalog.get_plan(plan_id))


@router.get("/{plan_id}/pricing", response_model=PriceOut)
async def get_pricing(
    plan_id: UUID, core: CoreDep, quantity: int = Query(1, ge=1)
) -> PriceOut:
    """Graduated price for ``quantity`` seats of the plan."""
    return price_out(await core.catalog.price(plan_id, quantity))
