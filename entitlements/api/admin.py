from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel

from entitlements.api.dependencies import AdminDep, CoreDep
from entitlements.api.schemas import SubscriptionOut, subscription_out

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class PolicyIn(BaseModel):
    subject: str
    object: str
    action: str


class PolicyOut(BaseModel):
    subject: str
    object: str
    action: str


class GroupingOut(BaseModel):
    user: str
    role: str


class PoliciesOut(BaseModel):
    policies: list[PolicyOut]
    groupings: list[GroupingOut]


class AssignPlanIn(BaseModel):
    user_id: str
    plan_id: UUID


@router.get("/policies", response_model=PoliciesOut)
async def list_policies(
    principal: AdminDep,
    core: CoreDep,
    subject: str | None = Query(None),
) -> PoliciesOut:
    """The loaded rule set, optionally narrowed to one subject."""
    policies = [
        PolicyOut(subject=p.subject, object=p.object, action=p.action)
        for p in core.store.get_policies()
        if subject is None or p.subject == subject
    ]
    groupings = [
        GroupingOut(user=g.user, role=g.role)
        for g in core.store.get_groupings()
        if subject is None or g.user == subject
    ]
    return PoliciesOut(policies=policies, groupings=groupings)


@router.post("/policies", response_model=PolicyOut, status_code=status.HTTP_201_CREATED)
async def add_policy(body: PolicyIn, principal: AdminDep, core: CoreDep) -> PolicyOut:
    await core.store.add_policy(body.subject, body.object, body.action)
    logger.info(
        "Policy added by admin=%s: %s %s %s",
        principal.user_id,
        body.subject,
        body.object,
        body.action,
    )
    return PolicyOut(subject=body.subject, object=body.object, action=body.action)


@router.delete("/policies", status_code=status.HTTP_204_NO_CONTENT)
async def remove_policy(body: PolicyIn, principal: AdminDep, core: CoreDep) -> None:
    await core.store.remove_policy(body.subject, body.object, body.action)
    logger.info(
        "Policy removed by admin=%s: %s %s %s",
        principal.user_id,
        body.subject,
        body.object,
        body.action,
    )


@router.post("/policies/reload")
async def reload_policies(principal: AdminDep, core: CoreDep) -> dict[str, int]:
    """Rebuild the in-memory rule index from storage."""
    await core.store.reload()
    logger.info("Policy reload requested by admin=%s", principal.user_id)
    return {
        "policies": len(core.store.get_policies()),
        "groupings": len(core.store.get_groupings()),
    }


@router.post(
    "/subscriptions/assign",
    response_model=SubscriptionOut,
    status_code=status.HTTP_201_CREATED,
)
async def assign_plan(
    body: AssignPlanIn, principal: AdminDep, core: CoreDep
) -> SubscriptionOut:
    """Give a user a plan without going through payment."""
    sub = await core.ledger.grant_plan(body.user_id, body.plan_id, principal)
    return subscription_out(sub)
