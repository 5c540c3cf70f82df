"""Membership Graph: organizations, groups and their members.

Ownership rules
---------------
The owner of an organization or group is always an active member with
role "owner".  Nothing here transfers ownership, so the owner row can be
neither demoted nor removed, and "owner" is never a role you can grant.

Who may write
-------------
  organization  members:  org owner/manager, or an administrator
  group         members:  group owner/admin, a manager of the owning
                          organization (cascade), or an administrator
  self-removal            any non-owner member may leave

Groups
------
A group may sit under a parent group of the same organization (or both
may be org-less).  set_parent() walks the new parent's ancestor chain and
refuses when it meets the group itself, so the parent graph stays a
forest.  Once ``expires_at`` has passed a group is read-only: reads still
work, every member write raises StateError(GROUP_EXPIRED).  Pushing
``expires_at`` forward is the one update an expired group accepts.

Side effects
------------
Every membership write mirrors itself into the Policy Store through
PermissionGrants and publishes a domain event after the row is saved.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from entitlements.core.errors import (
    ConflictError,
    LimitReachedError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from entitlements.models.bulk import BulkReport
from entitlements.models.group import GROUP_ROLES, Group, GroupMember
from entitlements.models.organization import (
    ORG_ROLES,
    Organization,
    OrganizationMember,
    personal_org_name,
)
from entitlements.models.principal import Principal
from entitlements.repos.group_member_repo import GroupMemberRepo
from entitlements.repos.group_repo import GroupRepo
from entitlements.repos.org_member_repo import PAGE_SIZE, OrgMemberRepo
from entitlements.repos.org_repo import OrgRepo
from entitlements.services.domain_events import (
    EventBus,
    GroupMemberAdded,
    OrganizationMemberChanged,
)
from entitlements.services.identity import IdentityProvider
from entitlements.services.permissions import PermissionGrants

logger = logging.getLogger(__name__)

PERSONAL_ORG_DISPLAY_NAME = "Personal Organization"

_ORG_PATCHABLE = frozenset(
    {"display_name", "description", "max_groups", "max_members", "metadata"}
)
_GROUP_PATCHABLE = frozenset(
    {"display_name", "description", "max_members", "expires_at", "metadata"}
)


def _now() -> datetime:
    return datetime.now(UTC)


def _check_patch(patch: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = sorted(set(patch) - allowed)
    if unknown:
        raise ValidationError(f"unknown or read-only fields: {', '.join(unknown)}")


def _check_cap(value: int, what: str) -> None:
    if value != -1 and value < 1:
        raise ValidationError(f"{what} must be -1 (unlimited) or at least 1")


class MembershipGraph:
    def __init__(
        self,
        orgs: OrgRepo,
        org_members: OrgMemberRepo,
        groups: GroupRepo,
        group_members: GroupMemberRepo,
        grants: PermissionGrants,
        events: EventBus,
        identity: IdentityProvider,
    ) -> None:
        self._orgs = orgs
        self._org_members = org_members
        self._groups = groups
        self._group_members = group_members
        self._grants = grants
        self._events = events
        self._identity = identity

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    async def get_org(self, org_id: UUID) -> Organization:
        org = await self._orgs.get(org_id)
        if org is None or not org.is_active:
            raise NotFoundError("Organization not found")
        return org

    async def list_orgs(self, org_ids: Iterable[UUID]) -> list[Organization]:
        orgs = await self._orgs.list_by_ids(list(org_ids))
        return sorted((o for o in orgs if o.is_active), key=lambda o: o.created_at)

    async def create_org(
        self,
        owner_user_id: str,
        name: str,
        *,
        display_name: str = "",
        description: str = "",
        max_groups: int | None = None,
        max_members: int | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Organization:
        name = name.strip()
        if not name:
            raise ValidationError("organization name must not be empty")
        if name.startswith("personal_"):
            raise ValidationError("the personal_ prefix is reserved")
        kwargs: dict[str, Any] = {}
        if max_groups is not None:
            _check_cap(max_groups, "max_groups")
            kwargs["max_groups"] = max_groups
        if max_members is not None:
            _check_cap(max_members, "max_members")
            kwargs["max_members"] = max_members
        org = Organization.new(
            name=name,
            owner_user_id=owner_user_id,
            display_name=display_name,
            description=description,
            metadata=metadata,
            **kwargs,
        )
        return await self._insert_org(org)

    async def create_personal_org(self, user_id: str) -> Organization:
        """Idempotent: returns the existing personal org when there is one."""
        existing = await self._orgs.get_personal(user_id)
        if existing is not None:
            return existing
        org = Organization.new(
            name=personal_org_name(user_id),
            owner_user_id=user_id,
            display_name=PERSONAL_ORG_DISPLAY_NAME,
            is_personal=True,
            max_groups=-1,
            max_members=1,
        )
        try:
            return await self._insert_org(org)
        except ConflictError:
            # Lost a race with a concurrent bootstrap of the same user.
            existing = await self._orgs.get_personal(user_id)
            if existing is None:
                raise
            return existing

    async def _insert_org(self, org: Organization) -> Organization:
        try:
            await self._orgs.add(org)
        except ValueError as exc:
            raise ConflictError(str(exc), code="DUPLICATE_NAME") from exc
        owner = OrganizationMember(
            organization_id=org.id, user_id=org.owner_user_id, role="owner"
        )
        await self._org_members.save(owner)
        await self._grants.grant_org_member(org.id, owner.user_id, "owner")
        logger.info(
            "Organization created: id=%s name=%s owner=%s personal=%s",
            org.id,
            org.name,
            org.owner_user_id,
            org.is_personal,
        )
        await self._events.publish(
            OrganizationMemberChanged(org.id, owner.user_id, "owner")
        )
        return org

    async def update_org(
        self, org_id: UUID, actor: Principal, patch: dict[str, Any]
    ) -> Organization:
        _check_patch(patch, _ORG_PATCHABLE)
        org = await self.get_org(org_id)
        await self._require_org_manager(org, actor)
        if "max_members" in patch:
            _check_cap(patch["max_members"], "max_members")
            count = await self._org_members.count_active(org.id)
            if patch["max_members"] != -1 and patch["max_members"] < count:
                raise ValidationError(
                    f"max_members ({patch['max_members']}) is below the current "
                    f"member count ({count})"
                )
        if "max_groups" in patch:
            _check_cap(patch["max_groups"], "max_groups")
        if org.is_personal and patch.get("max_members", 1) != 1:
            raise ValidationError("personal organizations hold a single member")
        return await self._orgs.update(replace(org, updated_at=_now(), **patch))

    async def delete_org(self, org_id: UUID, actor: Principal) -> None:
        org = await self.get_org(org_id)
        if not (actor.is_admin() or actor.user_id == org.owner_user_id):
            raise PermissionDeniedError("Only the owner can delete an organization")
        if org.is_personal:
            raise StateError("Personal organizations cannot be deleted")
        await self._orgs.update(replace(org, is_active=False, updated_at=_now()))
        removed = await self._org_members.deactivate_all(org.id)
        await self._grants.purge_org(org.id, [m.user_id for m in removed])
        logger.info("Organization deleted: id=%s members=%d", org.id, len(removed))
        for member in removed:
            await self._events.publish(
                OrganizationMemberChanged(org.id, member.user_id, None)
            )

    async def org_role(self, org_id: UUID, user_id: str) -> str | None:
        member = await self._org_members.get(org_id, user_id)
        if member is None or not member.is_active:
            return None
        return member.role

    async def list_org_members(
        self, org_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[OrganizationMember]:
        await self.get_org(org_id)
        return await self._org_members.list_by_org(org_id, offset=offset, limit=limit)

    async def all_org_members(self, org_id: UUID) -> list[OrganizationMember]:
        found: list[OrganizationMember] = []
        offset = 0
        while True:
            page = await self._org_members.list_by_org(
                org_id, offset=offset, limit=PAGE_SIZE
            )
            found.extend(page)
            if len(page) < PAGE_SIZE:
                return found
            offset += PAGE_SIZE

    async def memberships_of(self, user_id: str) -> list[OrganizationMember]:
        """Every active org membership of the user, paging through the repo."""
        found: list[OrganizationMember] = []
        offset = 0
        while True:
            page = await self._org_members.list_by_user(
                user_id, offset=offset, limit=PAGE_SIZE
            )
            found.extend(page)
            if len(page) < PAGE_SIZE:
                return found
            offset += PAGE_SIZE

    async def count_org_members(self, org_id: UUID) -> int:
        return await self._org_members.count_active(org_id)

    async def count_org_groups(self, org_id: UUID) -> int:
        return await self._groups.count_by_org(org_id)

    async def add_org_member(
        self, org_id: UUID, user_id: str, role: str, actor: Principal
    ) -> tuple[OrganizationMember, bool]:
        """Returns (member, created).  Re-adding with the same role is a no-op."""
        if role not in ORG_ROLES or role == "owner":
            raise ValidationError(f"invalid organization role {role!r}", code="INVALID_ROLE")
        org = await self.get_org(org_id)
        await self._require_org_manager(org, actor)

        existing = await self._org_members.get(org.id, user_id)
        if existing is not None and existing.is_active:
            if existing.role == role:
                return existing, False
            raise ConflictError(
                f"User is already a {existing.role} of this organization",
                code="ALREADY_MEMBER",
            )
        if org.max_members != -1:
            if await self._org_members.count_active(org.id) >= org.max_members:
                raise LimitReachedError(
                    f"Organization member limit reached ({org.max_members})"
                )

        member = OrganizationMember(
            organization_id=org.id,
            user_id=user_id,
            role=role,
            invited_by=actor.user_id,
        )
        await self._org_members.save(member)
        await self._grants.grant_org_member(org.id, user_id, role)
        logger.info("Org member added: org=%s user=%s role=%s", org.id, user_id, role)
        await self._events.publish(OrganizationMemberChanged(org.id, user_id, role))
        return member, True

    async def update_org_member_role(
        self, org_id: UUID, user_id: str, new_role: str, actor: Principal
    ) -> OrganizationMember:
        if new_role not in ORG_ROLES or new_role == "owner":
            raise ValidationError(
                f"invalid organization role {new_role!r}", code="INVALID_ROLE"
            )
        org = await self.get_org(org_id)
        await self._require_org_manager(org, actor)
        member = await self._org_members.get(org.id, user_id)
        if member is None or not member.is_active:
            raise NotFoundError("Member not found")
        if member.role == "owner":
            raise StateError("The owner's role cannot be changed")
        if member.role == new_role:
            return member
        updated = await self._org_members.save(replace(member, role=new_role))
        await self._grants.change_org_role(org.id, user_id, new_role)
        logger.info(
            "Org member role changed: org=%s user=%s %s->%s",
            org.id,
            user_id,
            member.role,
            new_role,
        )
        await self._events.publish(OrganizationMemberChanged(org.id, user_id, new_role))
        return updated

    async def remove_org_member(
        self, org_id: UUID, user_id: str, actor: Principal
    ) -> None:
        org = await self.get_org(org_id)
        if actor.user_id != user_id:
            await self._require_org_manager(org, actor)
        member = await self._org_members.get(org.id, user_id)
        if member is None or not member.is_active:
            raise NotFoundError("Member not found")
        if member.role == "owner":
            raise StateError("The organization owner cannot be removed")
        await self._org_members.save(replace(member, is_active=False))
        await self._grants.revoke_org_member(org.id, user_id)
        logger.info("Org member removed: org=%s user=%s", org.id, user_id)
        await self._events.publish(OrganizationMemberChanged(org.id, user_id, None))

    async def _require_org_manager(self, org: Organization, actor: Principal) -> None:
        if actor.is_admin():
            return
        member = await self._org_members.get(org.id, actor.user_id)
        if member is None or not member.is_active or not member.is_manager:
            raise PermissionDeniedError(
                "Only organization owners and managers can do this"
            )

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def get_group(self, group_id: UUID) -> Group:
        group = await self._groups.get(group_id)
        if group is None or not group.is_active:
            raise NotFoundError("Group not found")
        return group

    async def list_groups(self, group_ids: Iterable[UUID]) -> list[Group]:
        groups = await self._groups.list_by_ids(list(group_ids))
        return sorted((g for g in groups if g.is_active), key=lambda g: g.created_at)

    async def list_org_groups(
        self, org_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[Group]:
        await self.get_org(org_id)
        return await self._groups.list_by_org(org_id, offset=offset, limit=limit)

    async def create_group(
        self,
        actor: Principal,
        name: str,
        *,
        display_name: str = "",
        description: str = "",
        organization_id: UUID | None = None,
        parent_group_id: UUID | None = None,
        max_members: int | None = None,
        expires_at: datetime | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Group:
        name = name.strip()
        if not name:
            raise ValidationError("group name must not be empty")
        if organization_id is not None:
            org = await self.get_org(organization_id)
            await self._require_org_manager(org, actor)
            if org.max_groups != -1:
                if await self._groups.count_by_org(org.id) >= org.max_groups:
                    raise LimitReachedError(
                        f"Organization group limit reached ({org.max_groups})"
                    )
        kwargs: dict[str, Any] = {}
        if max_members is not None:
            _check_cap(max_members, "max_members")
            kwargs["max_members"] = max_members
        group = Group.new(
            name=name,
            owner_user_id=actor.user_id,
            display_name=display_name,
            description=description,
            organization_id=organization_id,
            expires_at=expires_at,
            metadata=metadata,
            **kwargs,
        )
        if parent_group_id is not None:
            parent = await self.get_group(parent_group_id)
            if parent.organization_id != group.organization_id:
                raise ValidationError(
                    "parent group must belong to the same organization"
                )
            group = replace(group, parent_group_id=parent.id)
        try:
            await self._groups.add(group)
        except ValueError as exc:
            raise ConflictError(str(exc), code="DUPLICATE_NAME") from exc
        await self._group_members.save(
            GroupMember(group_id=group.id, user_id=actor.user_id, role="owner")
        )
        await self._grants.grant_group_member(group.id, actor.user_id, "owner")
        logger.info(
            "Group created: id=%s name=%s owner=%s org=%s",
            group.id,
            group.name,
            actor.user_id,
            organization_id,
        )
        return group

    async def update_group(
        self, group_id: UUID, actor: Principal, patch: dict[str, Any]
    ) -> Group:
        _check_patch(patch, _GROUP_PATCHABLE)
        group = await self.get_group(group_id)
        await self.require_group_admin(group, actor)
        if group.is_expired() and set(patch) != {"expires_at"}:
            raise StateError("Group has expired and is read-only", code="GROUP_EXPIRED")
        if "max_members" in patch:
            _check_cap(patch["max_members"], "max_members")
            count = await self._group_members.count_active(group.id)
            if patch["max_members"] != -1 and patch["max_members"] < count:
                raise ValidationError(
                    f"max_members ({patch['max_members']}) is below the current "
                    f"member count ({count})"
                )
        return await self._groups.update(replace(group, updated_at=_now(), **patch))

    async def set_parent(
        self, group_id: UUID, parent_group_id: UUID | None, actor: Principal
    ) -> Group:
        group = await self.get_group(group_id)
        await self.require_group_admin(group, actor)
        self._require_writable(group)
        if parent_group_id is None:
            return await self._groups.update(
                replace(group, parent_group_id=None, updated_at=_now())
            )
        parent = await self.get_group(parent_group_id)
        if parent.organization_id != group.organization_id:
            raise ValidationError("parent group must belong to the same organization")

        seen: set[UUID] = set()
        cursor: Group | None = parent
        while cursor is not None:
            if cursor.id == group.id:
                raise ValidationError("group nesting would create a cycle")
            if cursor.id in seen:
                # Stored graph already has a loop; refuse rather than spin.
                raise ValidationError("group nesting would create a cycle")
            seen.add(cursor.id)
            cursor = (
                await self._groups.get(cursor.parent_group_id)
                if cursor.parent_group_id
                else None
            )
        logger.info("Group parent set: group=%s parent=%s", group.id, parent.id)
        return await self._groups.update(
            replace(group, parent_group_id=parent.id, updated_at=_now())
        )

    async def delete_group(self, group_id: UUID, actor: Principal) -> None:
        group = await self.get_group(group_id)
        if not (actor.is_admin() or actor.user_id == group.owner_user_id):
            raise PermissionDeniedError("Only the group owner can delete a group")
        await self._groups.update(replace(group, is_active=False, updated_at=_now()))
        for child in await self._groups.list_children(group.id):
            await self._groups.update(
                replace(child, parent_group_id=None, updated_at=_now())
            )
        removed = await self._group_members.deactivate_all(group.id)
        await self._grants.purge_group(group.id, [m.user_id for m in removed])
        logger.info("Group deleted: id=%s members=%d", group.id, len(removed))

    async def list_group_members(
        self, group_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[GroupMember]:
        await self.get_group(group_id)
        return await self._group_members.list_by_group(
            group_id, offset=offset, limit=limit
        )

    async def all_group_members(self, group_id: UUID) -> list[GroupMember]:
        found: list[GroupMember] = []
        offset = 0
        while True:
            page = await self._group_members.list_by_group(
                group_id, offset=offset, limit=PAGE_SIZE
            )
            found.extend(page)
            if len(page) < PAGE_SIZE:
                return found
            offset += PAGE_SIZE

    async def add_group_member(
        self, group_id: UUID, user_id: str, role: str, actor: Principal
    ) -> tuple[GroupMember, bool]:
        group = await self.get_group(group_id)
        await self.require_group_admin(group, actor)
        self._require_writable(group)
        return await self._add_group_member(group, user_id, role, actor.user_id)

    async def _add_group_member(
        self, group: Group, user_id: str, role: str, invited_by: str
    ) -> tuple[GroupMember, bool]:
        if role not in GROUP_ROLES or role == "owner":
            raise ValidationError(f"invalid group role {role!r}", code="INVALID_ROLE")
        existing = await self._group_members.get(group.id, user_id)
        if existing is not None and existing.is_active:
            if existing.role == role:
                return existing, False
            raise ConflictError(
                f"User is already a {existing.role} of this group",
                code="ALREADY_MEMBER",
            )
        if group.max_members != -1:
            if await self._group_members.count_active(group.id) >= group.max_members:
                raise LimitReachedError(
                    f"Group member limit reached ({group.max_members})"
                )
        member = GroupMember(
            group_id=group.id, user_id=user_id, role=role, invited_by=invited_by
        )
        await self._group_members.save(member)
        await self._grants.grant_group_member(group.id, user_id, role)
        logger.info("Group member added: group=%s user=%s role=%s", group.id, user_id, role)
        await self._events.publish(GroupMemberAdded(group.id, user_id, role))
        return member, True

    async def add_group_members_bulk(
        self, group_id: UUID, rows: list[dict[str, str]], actor: Principal
    ) -> BulkReport:
        """Add many members; each row names ``user_id`` or ``email`` and a role.

        Unknown target, missing permission and an expired group fail the
        whole call.  Everything else is reported per row.
        """
        group = await self.get_group(group_id)
        await self.require_group_admin(group, actor)
        self._require_writable(group)

        report = BulkReport()
        for index, row in enumerate(rows):
            key = row.get("user_id") or row.get("email") or f"row {index + 1}"
            role = row.get("role") or "member"
            try:
                user_id = await self.resolve_user_id(
                    user_id=row.get("user_id"), email=row.get("email")
                )
                _, created = await self._add_group_member(
                    group, user_id, role, actor.user_id
                )
            except (ValidationError, ConflictError, NotFoundError, LimitReachedError) as exc:
                report.error(key, exc.code, exc.message)
                continue
            if created:
                report.ok(key)
            else:
                report.skipped(key, "already a member with this role")
        if report.failed:
            report.warn(f"{report.failed} of {len(rows)} rows were not added")
        logger.info(
            "Bulk group add: group=%s ok=%d failed=%d",
            group.id,
            report.succeeded,
            report.failed,
        )
        return report

    async def update_group_member_role(
        self, group_id: UUID, user_id: str, new_role: str, actor: Principal
    ) -> GroupMember:
        if new_role not in GROUP_ROLES or new_role == "owner":
            raise ValidationError(f"invalid group role {new_role!r}", code="INVALID_ROLE")
        group = await self.get_group(group_id)
        await self.require_group_admin(group, actor)
        self._require_writable(group)
        member = await self._group_members.get(group.id, user_id)
        if member is None or not member.is_active:
            raise NotFoundError("Member not found")
        if member.role == "owner":
            raise StateError("The owner's role cannot be changed")
        if member.role == new_role:
            return member
        updated = await self._group_members.save(replace(member, role=new_role))
        await self._grants.change_group_role(group.id, user_id, new_role)
        return updated

    async def remove_group_member(
        self, group_id: UUID, user_id: str, actor: Principal
    ) -> None:
        group = await self.get_group(group_id)
        if actor.user_id != user_id:
            await self.require_group_admin(group, actor)
        self._require_writable(group)
        member = await self._group_members.get(group.id, user_id)
        if member is None or not member.is_active:
            raise NotFoundError("Member not found")
        if member.role == "owner":
            raise StateError("The group owner cannot be removed")
        await self._group_members.save(replace(member, is_active=False))
        await self._grants.revoke_group_member(group.id, user_id)
        logger.info("Group member removed: group=%s user=%s", group.id, user_id)

    async def groups_of(self, user_id: str) -> list[GroupMember]:
        found: list[GroupMember] = []
        offset = 0
        while True:
            page = await self._group_members.list_by_user(
                user_id, offset=offset, limit=PAGE_SIZE
            )
            found.extend(page)
            if len(page) < PAGE_SIZE:
                return found
            offset += PAGE_SIZE

    async def resolve_group_access(self, group_id: UUID, user_id: str) -> str:
        """Returns "direct", "via_org_manager" or "none"."""
        group = await self._groups.get(group_id)
        if group is None or not group.is_active:
            return "none"
        member = await self._group_members.get(group.id, user_id)
        if member is not None and member.is_active:
            return "direct"
        if group.organization_id is not None:
            org_member = await self._org_members.get(group.organization_id, user_id)
            if org_member is not None and org_member.is_active and org_member.is_manager:
                return "via_org_manager"
        return "none"

    async def require_group_admin(self, group: Group, actor: Principal) -> None:
        if actor.is_admin():
            return
        member = await self._group_members.get(group.id, actor.user_id)
        if member is not None and member.is_active and member.is_admin:
            return
        if await self.resolve_group_access(group.id, actor.user_id) == "via_org_manager":
            return
        raise PermissionDeniedError("Only group owners and admins can do this")

    @staticmethod
    def _require_writable(group: Group) -> None:
        if group.is_expired():
            raise StateError("Group has expired and is read-only", code="GROUP_EXPIRED")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def resolve_user_id(
        self, *, user_id: str | None = None, email: str | None = None
    ) -> str:
        """Turn a user id or an email into a user id known to the identity provider."""
        if user_id:
            return (await self._identity.get_user(user_id)).id
        if email:
            return (await self._identity.get_user_by_email(email)).id
        raise ValidationError("either user_id or email is required")
