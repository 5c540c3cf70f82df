"""Organization endpoints: CRUD, membership, org subscription, features.

Every route sits behind ``authorize`` (a router dependency), so by the
time a handler runs the Resolver has already matched the caller against
the Policy Store.  The services still check roles themselves; the API
check decides 404 versus 403, the service check guards callers that do
not come through HTTP.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from entitlements.api.dependencies import CoreDep, UserDep, VerifiedUserDep, checkout_urls
from entitlements.api.groups import GroupOut, group_out
from entitlements.api.permissions import DecisionDep, authorize, visible
from entitlements.api.plans import PlanOut, plan_out
from entitlements.models.organization import Organization, OrganizationMember
from entitlements.models.subscription import OrganizationSubscription
from entitlements.repos.org_member_repo import PAGE_SIZE

router = APIRouter(
    prefix="/organizations",
    tags=["organizations"],
    dependencies=[Depends(authorize)],
)


# --- Pydantic schemas ---


class OrgCreateIn(BaseModel):
    name: str
    display_name: str = ""
    description: str = ""
    max_groups: int | None = None
    max_members: int | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class OrgPatchIn(BaseModel):
    display_name: str | None = None
    description: str | None = None
    max_groups: int | None = None
    max_members: int | None = None
    metadata: dict[str, str] | None = None


class OrgOut(BaseModel):
    id: str
    name: str
    display_name: str
    description: str
    owner_user_id: str
    is_personal: bool
    max_groups: int
    max_members: int
    metadata: dict[str, str]
    created_at: datetime


class MemberIn(BaseModel):
    user_id: str | None = None
    email: str | None = None
    role: str = "member"


class RoleIn(BaseModel):
    role: str


class MemberOut(BaseModel):
    user_id: str
    role: str
    joined_at: datetime
    invited_by: str | None


class SubscribeIn(BaseModel):
    plan_id: UUID
    quantity: int = 1
    success_url: str | None = None
    cancel_url: str | None = None


class OrgSubscriptionOut(BaseModel):
    id: str
    organization_id: str
    plan_id: str
    status: str
    quantity: int
    current_period_end: datetime | None
    cancel_at_period_end: bool


class SubscribeOut(BaseModel):
    subscription: OrgSubscriptionOut | None
    checkout_url: str | None = None
    session_id: str | None = None


class OrgFeaturesOut(BaseModel):
    organization_id: str
    plan: PlanOut | None
    features: list[str]
    caps: dict[str, int]


class UsageLimitsOut(BaseModel):
    organization_id: str
    member_count: int
    max_members: int
    group_count: int
    max_groups: int
    caps: dict[str, int]


def org_out(org: Organization) -> OrgOut:
    return OrgOut(
        id=str(org.id),
        name=org.name,
        display_name=org.display_name,
        description=org.description,
        owner_user_id=org.owner_user_id,
        is_personal=org.is_personal,
        max_groups=org.max_groups,
        max_members=org.max_members,
        metadata=dict(org.metadata),
        created_at=org.created_at,
    )


def _member_out(member: OrganizationMember) -> MemberOut:
    return MemberOut(
        user_id=member.user_id,
        role=member.role,
        joined_at=member.joined_at,
        invited_by=member.invited_by,
    )


def _org_sub_out(sub: OrganizationSubscription) -> OrgSubscriptionOut:
    return OrgSubscriptionOut(
        id=str(sub.id),
        organization_id=str(sub.organization_id),
        plan_id=str(sub.plan_id),
        status=sub.status,
        quantity=sub.quantity,
        current_period_end=sub.current_period_end,
        cancel_at_period_end=sub.cancel_at_period_end,
    )


# --- Organizations ---


@router.get("", response_model=list[OrgOut])
async def list_organizations(
    decision: DecisionDep,
    core: CoreDep,
    offset: int = Query(0, ge=0),
    limit: int = Query(PAGE_SIZE, ge=1, le=PAGE_SIZE),
) -> list[OrgOut]:
    """Organizations the caller belongs to or holds a rule for."""
    allowed = visible(decision)
    orgs = await core.membership.list_orgs(UUID(i) for i in allowed.entity_ids)
    return [org_out(o) for o in orgs[offset : offset + limit]]


@router.post("", response_model=OrgOut, status_code=status.HTTP_201_CREATED)
async def create_organization(
    body: OrgCreateIn, principal: UserDep, core: CoreDep
) -> OrgOut:
    """Create an organization; the caller becomes its owner."""
    org = await core.membership.create_org(
        principal.user_id,
        body.name,
        display_name=body.display_name,
        description=body.description,
        max_groups=body.max_groups,
        max_members=body.max_members,
        metadata=body.metadata,
    )
    return org_out(org)


@router.get("/{org_id}", response_model=OrgOut)
async def get_organization(org_id: UUID, core: CoreDep) -> OrgOut:
    return org_out(await core.membership.get_org(org_id))


@router.patch("/{org_id}", response_model=OrgOut)
async def update_organization(
    org_id: UUID, body: OrgPatchIn, principal: UserDep, core: CoreDep
) -> OrgOut:
    patch = body.model_dump(exclude_unset=True, exclude_none=True)
    return org_out(await core.membership.update_org(org_id, principal, patch))


@router.delete("/{org_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_organization(org_id: UUID, principal: UserDep, core: CoreDep) -> None:
    await core.membership.delete_org(org_id, principal)


# --- Members ---


@router.get("/{org_id}/members", response_model=list[MemberOut])
async def list_members(
    org_id: UUID,
    core: CoreDep,
    offset: int = Query(0, ge=0),
    limit: int = Query(PAGE_SIZE, ge=1, le=PAGE_SIZE),
) -> list[MemberOut]:
    members = await core.membership.list_org_members(org_id, offset=offset, limit=limit)
    return [_member_out(m) for m in members]


@router.post(
    "/{org_id}/members",
    response_model=MemberOut,
    status_code=status.HTTP_201_CREATED,
)
async def add_member(
    org_id: UUID,
    body: MemberIn,
    response: Response,
    principal: UserDep,
    core: CoreDep,
) -> MemberOut:
    """Add a member by user id or email.

    Re-adding someone with the role they already hold is a no-op and
    answers 200 instead of 201.
    """
    user_id = await core.membership.resolve_user_id(user_id=body.user_id, email=body.email)
    member, created = await core.membership.add_org_member(
        org_id, user_id, body.role, principal
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return _member_out(member)


@router.patch("/{org_id}/members/{user_id}", response_model=MemberOut)
async def update_member_role(
    org_id: UUID, user_id: str, body: RoleIn, principal: UserDep, core: CoreDep
) -> MemberOut:
    member = await core.membership.update_org_member_role(
        org_id, user_id, body.role, principal
    )
    return _member_out(member)


@router.delete("/{org_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    org_id: UUID, user_id: str, principal: UserDep, core: CoreDep
) -> None:
    """Remove a member.  Members may remove themselves."""
    await core.membership.remove_org_member(org_id, user_id, principal)


@router.get("/{org_id}/groups", response_model=list[GroupOut])
async def list_org_groups(
    org_id: UUID,
    core: CoreDep,
    offset: int = Query(0, ge=0),
    limit: int = Query(PAGE_SIZE, ge=1, le=PAGE_SIZE),
) -> list[GroupOut]:
    groups = await core.membership.list_org_groups(org_id, offset=offset, limit=limit)
    return [group_out(g) for g in groups]


# --- Subscription ---


@router.post("/{org_id}/subscribe", response_model=SubscribeOut)
async def subscribe(
    org_id: UUID, body: SubscribeIn, principal: VerifiedUserDep, core: CoreDep
) -> SubscribeOut:
    """Subscribe the organization to a plan (owner only, verified email)."""
    success_url, cancel_url = checkout_urls(body.success_url, body.cancel_url)
    result = await core.ledger.subscribe_org(
        org_id,
        body.plan_id,
        principal,
        quantity=body.quantity,
        success_url=success_url,
        cancel_url=cancel_url,
    )
    return SubscribeOut(
        subscription=_org_sub_out(result.subscription) if result.subscription else None,
        checkout_url=result.checkout_url,
        session_id=result.session_id,
    )


@router.get("/{org_id}/subscription", response_model=OrgSubscriptionOut | None)
async def get_subscription(org_id: UUID, core: CoreDep) -> OrgSubscriptionOut | None:
    sub = await core.ledger.get_org_subscription(org_id)
    return _org_sub_out(sub) if sub else None


@router.delete("/{org_id}/subscription", response_model=OrgSubscriptionOut)
async def cancel_subscription(
    org_id: UUID, principal: UserDep, core: CoreDep
) -> OrgSubscriptionOut:
    return _org_sub_out(await core.ledger.cancel_org_subscription(org_id, principal))


# --- Features ---


@router.get("/{org_id}/features", response_model=OrgFeaturesOut)
async def get_features(org_id: UUID, core: CoreDep) -> OrgFeaturesOut:
    features = await core.resolver.organization_features(org_id)
    return OrgFeaturesOut(
        organization_id=str(features.organization_id),
        plan=plan_out(features.plan) if features.plan else None,
        features=list(features.features),
        caps=features.caps,
    )


@router.get("/{org_id}/usage-limits", response_model=UsageLimitsOut)
async def get_usage_limits(org_id: UUID, core: CoreDep) -> UsageLimitsOut:
    """Member and group counts against the org's caps."""
    features = await core.resolver.organization_features(org_id)
    return UsageLimitsOut(
        organization_id=str(features.organization_id),
        member_count=features.member_count,
        max_members=features.max_members,
        group_count=features.group_count,
        max_groups=features.max_groups,
        caps=features.caps,
    )
