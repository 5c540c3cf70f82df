"""The caller's own subscriptions, usage meters, and bulk purchases.

Static paths (checkout, current, usage, ...) are declared before the
``/{subscription_id}`` routes so they are never parsed as an id.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from entitlements.api.dependencies import CoreDep, UserDep, VerifiedUserDep, checkout_urls
from entitlements.api.permissions import authorize
from entitlements.api.plans import PriceOut, price_out
from entitlements.api.schemas import BatchOut, SubscriptionOut, batch_out, subscription_out
from entitlements.models.usage import UsageMetric

router = APIRouter(
    prefix="/user-subscriptions",
    tags=["subscriptions"],
    dependencies=[Depends(authorize)],
)


# --- Pydantic schemas ---


class CheckoutIn(BaseModel):
    plan_id: UUID
    success_url: str | None = None
    cancel_url: str | None = None


class CheckoutOut(BaseModel):
    subscription: SubscriptionOut | None
    checkout_url: str | None = None
    session_id: str | None = None


class UpgradeIn(BaseModel):
    plan_id: UUID
    proration_behavior: str = "create_prorations"


class DowngradeIn(BaseModel):
    plan_id: UUID


class CancelIn(BaseModel):
    immediate: bool = False


class UsageIn(BaseModel):
    metric: str
    increment: int = Field(1, ge=0)


class UsageDeltaIn(BaseModel):
    metric: str
    delta: int = Field(1, ge=1)


class UsageOut(BaseModel):
    metric: str
    current_value: int
    current_limit: int
    period_start: datetime
    last_reset: datetime


class UsageCheckOut(BaseModel):
    allowed: bool
    current: int
    limit: int
    remaining: int
    message: str


class BulkPurchaseIn(BaseModel):
    plan_id: UUID
    quantity: int = Field(ge=1)
    group_id: UUID | None = None
    success_url: str | None = None
    cancel_url: str | None = None


class BulkPurchaseOut(BaseModel):
    batch: BatchOut
    checkout_url: str | None = None
    session_id: str | None = None


def _usage_out(metric: UsageMetric) -> UsageOut:
    return UsageOut(
        metric=metric.metric_type,
        current_value=metric.current_value,
        current_limit=metric.current_limit,
        period_start=metric.period_start,
        last_reset=metric.last_reset,
    )


# --- Lifecycle ---


@router.post("/checkout", response_model=CheckoutOut)
async def checkout(body: CheckoutIn, principal: VerifiedUserDep, core: CoreDep) -> CheckoutOut:
    """Start a personal subscription: free plans activate now, paid ones return a checkout URL."""
    success_url, cancel_url = checkout_urls(body.success_url, body.cancel_url)
    result = await core.ledger.checkout(
        principal.user_id,
        body.plan_id,
        success_url=success_url,
        cancel_url=cancel_url,
    )
    return CheckoutOut(
        subscription=subscription_out(result.subscription) if result.subscription else None,
        checkout_url=result.checkout_url,
        session_id=result.session_id,
    )


@router.post("/upgrade", response_model=SubscriptionOut)
async def upgrade(body: UpgradeIn, principal: VerifiedUserDep, core: CoreDep) -> SubscriptionOut:
    sub = await core.ledger.upgrade(
        principal.user_id, body.plan_id, body.proration_behavior
    )
    return subscription_out(sub)


@router.post("/downgrade", response_model=SubscriptionOut)
async def downgrade(body: DowngradeIn, principal: UserDep, core: CoreDep) -> SubscriptionOut:
    """Cancel the paid personal subscription and drop to a free plan."""
    return subscription_out(await core.ledger.downgrade_to_free(principal.user_id, body.plan_id))


@router.get("/current", response_model=SubscriptionOut | None)
async def current(principal: UserDep, core: CoreDep) -> SubscriptionOut | None:
    """The primary subscription: the one that sets usage caps."""
    sub = await core.ledger.get_primary_user_subscription(principal.user_id)
    return subscription_out(sub) if sub else None


@router.get("/all", response_model=list[SubscriptionOut])
async def all_active(principal: UserDep, core: CoreDep) -> list[SubscriptionOut]:
    return [subscription_out(s) for s in await core.ledger.get_all_active(principal.user_id)]


@router.get("/history", response_model=list[SubscriptionOut])
async def history(principal: UserDep, core: CoreDep) -> list[SubscriptionOut]:
    return [subscription_out(s) for s in await core.ledger.list_history(principal.user_id)]


# --- Usage ---


@router.get("/usage", response_model=list[UsageOut])
async def usage(principal: UserDep, core: CoreDep) -> list[UsageOut]:
    return [_usage_out(m) for m in await core.usage.list_usage(principal.user_id)]


@router.post("/usage/check", response_model=UsageCheckOut)
async def check_usage(body: UsageIn, principal: UserDep, core: CoreDep) -> UsageCheckOut:
    """Would ``increment`` more units fit under the cap?  Never changes the meter."""
    _, result = await core.resolver.check_quota(
        principal.user_id, body.metric, body.increment
    )
    return UsageCheckOut(
        allowed=result.allowed,
        current=result.current,
        limit=result.limit,
        remaining=result.remaining,
        message=result.message,
    )


@router.post("/usage/increment", response_model=UsageOut)
async def increment_usage(
    body: UsageDeltaIn, principal: UserDep, core: CoreDep
) -> UsageOut:
    """Count usage; refused with LIMIT_EXCEEDED when it would pass the cap."""
    return _usage_out(await core.usage.increment(principal.user_id, body.metric, body.delta))


@router.post("/usage/decrement", response_model=UsageOut)
async def decrement_usage(
    body: UsageDeltaIn, principal: UserDep, core: CoreDep
) -> UsageOut:
    return _usage_out(await core.usage.decrement(principal.user_id, body.metric, body.delta))


# --- Bulk purchase ---


@router.post(
    "/purchase-bulk",
    response_model=BulkPurchaseOut,
    status_code=status.HTTP_201_CREATED,
)
async def purchase_bulk(
    body: BulkPurchaseIn, principal: VerifiedUserDep, core: CoreDep
) -> BulkPurchaseOut:
    """Buy a batch of seats to hand out (trainer/organization plans)."""
    await core.resolver.require_bulk_purchase(principal)
    success_url, cancel_url = checkout_urls(body.success_url, body.cancel_url)
    purchase = await core.batches.purchase_batch(
        principal,
        body.plan_id,
        body.quantity,
        group_id=body.group_id,
        success_url=success_url,
        cancel_url=cancel_url,
    )
    return BulkPurchaseOut(
        batch=batch_out(purchase.batch),
        checkout_url=purchase.checkout_url,
        session_id=purchase.session_id,
    )


@router.get("/pricing-preview", response_model=PriceOut)
async def pricing_preview(
    core: CoreDep,
    plan_id: UUID = Query(...),
    quantity: int = Query(1, ge=1),
) -> PriceOut:
    return price_out(await core.catalog.price(plan_id, quantity))


# --- Single subscription ---


@router.get("/{subscription_id}", response_model=SubscriptionOut)
async def get_subscription(subscription_id: UUID, core: CoreDep) -> SubscriptionOut:
    return subscription_out(await core.ledger.get_subscription(subscription_id))


@router.post("/{subscription_id}/cancel", response_model=SubscriptionOut)
async def cancel(
    subscription_id: UUID, principal: UserDep, core: CoreDep, body: CancelIn | None = None
) -> SubscriptionOut:
    """Cancel at period end, or right away with ``immediate``."""
    immediate = body.immediate if body else False
    sub = await core.ledger.cancel(subscription_id, principal.user_id, immediate=immediate)
    return subscription_out(sub)


@router.post("/{subscription_id}/reactivate", response_model=SubscriptionOut)
async def reactivate(
    subscription_id: UUID, principal: UserDep, core: CoreDep
) -> SubscriptionOut:
    return subscription_out(await core.ledger.reactivate(subscription_id, principal.user_id))
