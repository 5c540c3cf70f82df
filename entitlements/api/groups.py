"""Group endpoints.

Groups may stand alone or belong to an organization; managers of the
owning organization reach them through the Resolver's cascade.  An
expired group is read-only apart from moving its ``expires_at``.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from entitlements.api.dependencies import CoreDep, UserDep
from entitlements.api.permissions import DecisionDep, authorize, visible
from entitlements.api.schemas import BulkReportOut, bulk_out
from entitlements.models.group import Group, GroupMember
from entitlements.repos.group_repo import PAGE_SIZE

router = APIRouter(
    prefix="/groups",
    tags=["groups"],
    dependencies=[Depends(authorize)],
)


# --- Pydantic schemas ---


class GroupCreateIn(BaseModel):
    name: str
    display_name: str = ""
    description: str = ""
    organization_id: UUID | None = None
    parent_group_id: UUID | None = None
    max_members: int | None = None
    expires_at: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class GroupPatchIn(BaseModel):
    display_name: str | None = None
    description: str | None = None
    max_members: int | None = None
    expires_at: datetime | None = None
    metadata: dict[str, str] | None = None


class ParentIn(BaseModel):
    parent_group_id: UUID | None = None


class GroupOut(BaseModel):
    id: str
    name: str
    display_name: str
    description: str
    owner_user_id: str
    organization_id: str | None
    parent_group_id: str | None
    max_members: int
    expires_at: datetime | None
    is_expired: bool
    metadata: dict[str, str]
    created_at: datetime


class GroupMemberIn(BaseModel):
    user_id: str | None = None
    email: str | None = None
    role: str = "member"


class BulkMembersIn(BaseModel):
    members: list[GroupMemberIn]


class RoleIn(BaseModel):
    role: str


class GroupMemberOut(BaseModel):
    user_id: str
    role: str
    joined_at: datetime
    invited_by: str | None


def group_out(group: Group) -> GroupOut:
    return GroupOut(
        id=str(group.id),
        name=group.name,
        display_name=group.display_name,
        description=group.description,
        owner_user_id=group.owner_user_id,
        organization_id=str(group.organization_id) if group.organization_id else None,
        parent_group_id=str(group.parent_group_id) if group.parent_group_id else None,
        max_members=group.max_members,
        expires_at=group.expires_at,
        is_expired=group.is_expired(),
        metadata=dict(group.metadata),
        created_at=group.created_at,
    )


def _member_out(member: GroupMember) -> GroupMemberOut:
    return GroupMemberOut(
        user_id=member.user_id,
        role=member.role,
        joined_at=member.joined_at,
        invited_by=member.invited_by,
    )


# --- Groups ---


@router.get("", response_model=list[GroupOut])
async def list_groups(
    decision: DecisionDep,
    core: CoreDep,
    offset: int = Query(0, ge=0),
    limit: int = Query(PAGE_SIZE, ge=1, le=PAGE_SIZE),
) -> list[GroupOut]:
    """Groups the caller belongs to, plus groups of orgs they manage."""
    allowed = visible(decision)
    groups = await core.membership.list_groups(UUID(i) for i in allowed.entity_ids)
    return [group_out(g) for g in groups[offset : offset + limit]]


@router.post("", response_model=GroupOut, status_code=status.HTTP_201_CREATED)
async def create_group(body: GroupCreateIn, principal: UserDep, core: CoreDep) -> GroupOut:
    group = await core.membership.create_group(
        principal,
        body.name,
        display_name=body.display_name,
        description=body.description,
        organization_id=body.organization_id,
        parent_group_id=body.parent_group_id,
        max_members=body.max_members,
        expires_at=body.expires_at,
        metadata=body.metadata,
    )
    return group_out(group)


@router.get("/{group_id}", response_model=GroupOut)
async def get_group(group_id: UUID, core: CoreDep) -> GroupOut:
    return group_out(await core.membership.get_group(group_id))


@router.patch("/{group_id}", response_model=GroupOut)
async def update_group(
    group_id: UUID, body: GroupPatchIn, principal: UserDep, core: CoreDep
) -> GroupOut:
    patch = body.model_dump(exclude_unset=True, exclude_none=True)
    return group_out(await core.membership.update_group(group_id, principal, patch))


@router.patch("/{group_id}/parent", response_model=GroupOut)
async def set_parent(
    group_id: UUID, body: ParentIn, principal: UserDep, core: CoreDep
) -> GroupOut:
    """Nest the group under another group of the same organization, or detach it."""
    group = await core.membership.set_parent(group_id, body.parent_group_id, principal)
    return group_out(group)


@router.delete("/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(group_id: UUID, principal: UserDep, core: CoreDep) -> None:
    await core.membership.delete_group(group_id, principal)


# --- Members ---


@router.get("/{group_id}/members", response_model=list[GroupMemberOut])
async def list_members(
    group_id: UUID,
    core: CoreDep,
    offset: int = Query(0, ge=0),
    limit: int = Query(PAGE_SIZE, ge=1, le=PAGE_SIZE),
) -> list[GroupMemberOut]:
    members = await core.membership.list_group_members(
        group_id, offset=offset, limit=limit
    )
    return [_member_out(m) for m in members]


@router.post(
    "/{group_id}/members",
    response_model=GroupMemberOut,
    status_code=status.HTTP_201_CREATED,
)
async def add_member(
    group_id: UUID,
    body: GroupMemberIn,
    response: Response,
    principal: UserDep,
    core: CoreDep,
) -> GroupMemberOut:
    user_id = await core.membership.resolve_user_id(user_id=body.user_id, email=body.email)
    member, created = await core.membership.add_group_member(
        group_id, user_id, body.role, principal
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return _member_out(member)


@router.post("/{group_id}/members/bulk", response_model=BulkReportOut)
async def add_members_bulk(
    group_id: UUID, body: BulkMembersIn, principal: UserDep, core: CoreDep
) -> BulkReportOut:
    """Add many members at once; each row succeeds or fails on its own."""
    rows = [m.model_dump(exclude_none=True) for m in body.members]
    report = await core.membership.add_group_members_bulk(group_id, rows, principal)
    return bulk_out(report)


@router.patch("/{group_id}/members/{user_id}", response_model=GroupMemberOut)
async def update_member_role(
    group_id: UUID, user_id: str, body: RoleIn, principal: UserDep, core: CoreDep
) -> GroupMemberOut:
    member = await core.membership.update_group_member_role(
        group_id, user_id, body.role, principal
    )
    return _member_out(member)


@router.delete("/{group_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    group_id: UUID, user_id: str, principal: UserDep, core: CoreDep
) -> None:
    await core.membership.remove_group_member(group_id, user_id, principal)
