"""Bulk license batches: the purchaser's view of their seats.

A batch is visible to its purchaser (and administrators) only; anyone
else gets 404, the same answer as for a batch that does not exist.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from entitlements.api.dependencies import CoreDep, UserDep
from entitlements.api.permissions import DecisionDep, authorize, visible
from entitlements.api.schemas import (
    BatchOut,
    BulkReportOut,
    SubscriptionOut,
    batch_out,
    bulk_out,
    subscription_out,
)
from entitlements.repos.batch_repo import PAGE_SIZE

router = APIRouter(
    prefix="/subscription-batches",
    tags=["batches"],
    dependencies=[Depends(authorize)],
)


class AssignIn(BaseModel):
    user_id: str | None = None
    email: str | None = None


class AssignBulkIn(BaseModel):
    assignees: list[AssignIn]


class QuantityIn(BaseModel):
    quantity: int = Field(ge=1)
    proration_behavior: str = "create_prorations"


class LicensesOut(BaseModel):
    batch: BatchOut
    total: int
    assigned: int
    pool: int
    licenses: list[SubscriptionOut]


@router.get("", response_model=list[BatchOut])
async def list_batches(
    decision: DecisionDep,
    principal: UserDep,
    core: CoreDep,
    offset: int = Query(0, ge=0),
    limit: int = Query(PAGE_SIZE, ge=1, le=PAGE_SIZE),
) -> list[BatchOut]:
    """Batches the caller purchased."""
    batches = await core.batches.list_batches(
        principal.user_id, offset=offset, limit=limit
    )
    allowed = visible(decision)
    return [batch_out(b) for b in batches if allowed.allows(b.id)]


@router.get("/{batch_id}", response_model=BatchOut)
async def get_batch(batch_id: UUID, principal: UserDep, core: CoreDep) -> BatchOut:
    return batch_out(await core.batches.get_batch(batch_id, principal))


@router.get("/{batch_id}/licenses", response_model=LicensesOut)
async def list_licenses(batch_id: UUID, principal: UserDep, core: CoreDep) -> LicensesOut:
    """Assigned seats and the size of the unassigned pool."""
    found = await core.batches.list_licenses(batch_id, principal)
    return LicensesOut(
        batch=batch_out(found.batch),
        total=found.batch.total_quantity,
        assigned=found.batch.assigned_quantity,
        pool=found.pool,
        licenses=[subscription_out(s) for s in found.licenses if s.is_active],
    )


@router.post(
    "/{batch_id}/assign",
    response_model=SubscriptionOut,
    status_code=status.HTTP_201_CREATED,
)
async def assign(
    batch_id: UUID, body: AssignIn, principal: UserDep, core: CoreDep
) -> SubscriptionOut:
    user_id = await core.membership.resolve_user_id(user_id=body.user_id, email=body.email)
    return subscription_out(await core.batches.assign(batch_id, user_id, principal))


@router.post("/{batch_id}/assign-bulk", response_model=BulkReportOut)
async def assign_bulk(
    batch_id: UUID, body: AssignBulkIn, principal: UserDep, core: CoreDep
) -> BulkReportOut:
    rows = [a.model_dump(exclude_none=True) for a in body.assignees]
    return bulk_out(await core.batches.assign_bulk(batch_id, rows, principal))


@router.delete(
    "/{batch_id}/licenses/{license_id}/revoke", response_model=SubscriptionOut
)
async def revoke(
    batch_id: UUID, license_id: UUID, principal: UserDep, core: CoreDep
) -> SubscriptionOut:
    """Take a seat back; it returns to the pool."""
    return subscription_out(await core.batches.revoke(batch_id, license_id, principal))


@router.patch("/{batch_id}/quantity", response_model=BatchOut)
async def update_quantity(
    batch_id: UUID, body: QuantityIn, principal: UserDep, core: CoreDep
) -> BatchOut:
    batch = await core.batches.update_quantity(
        batch_id, body.quantity, principal, body.proration_behavior
    )
    return batch_out(batch)


@router.post("/{batch_id}/cancel", response_model=BatchOut)
async def cancel_batch(batch_id: UUID, principal: UserDep, core: CoreDep) -> BatchOut:
    """Cancel the batch and every seat handed out from it."""
    return batch_out(await core.batches.cancel_batch(batch_id, principal))


@router.delete("/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_batch(batch_id: UUID, principal: UserDep, core: CoreDep) -> None:
    await core.batches.delete_batch(batch_id, principal)
