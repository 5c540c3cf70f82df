"""PostgreSQL implementations of GroupRepo and GroupMemberRepo."""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select, update

from entitlements.db.engine import repo_session
from entitlements.db.tables import GroupMemberRow, GroupRow
from entitlements.models.group import Group, GroupMember
from entitlements.repos.group_repo import PAGE_SIZE


class PgGroupRepo:
    """Satisfies the GroupRepo Protocol using PostgreSQL."""

    async def get(self, group_id: UUID) -> Group | None:
        async with repo_session() as session:
            row = await session.get(GroupRow, group_id)
            return _row_to_group(row) if row is not None else None

    async def get_by_owner_and_name(
        self, owner_user_id: str, name: str
    ) -> Group | None:
        stmt = select(GroupRow).where(
            GroupRow.owner_user_id == owner_user_id,
            GroupRow.name == name,
            GroupRow.is_active.is_(True),
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _row_to_group(row) if row is not None else None

    async def add(self, group: Group) -> None:
        if await self.get_by_owner_and_name(group.owner_user_id, group.name):
            raise ValueError("group name already used by this owner")
        row = GroupRow(
            id=group.id,
            name=group.name,
            display_name=group.display_name,
            description=group.description,
            owner_user_id=group.owner_user_id,
            organization_id=group.organization_id,
            parent_group_id=group.parent_group_id,
            max_members=group.max_members,
            expires_at=group.expires_at,
            is_active=group.is_active,
            metadata_json=dict(group.metadata),
            created_at=group.created_at,
            updated_at=group.updated_at,
        )
        async with repo_session() as session:
            session.add(row)
            await session.flush()

    async def update(self, group: Group) -> Group:
        stmt = (
            update(GroupRow)
            .where(GroupRow.id == group.id)
            .values(
                name=group.name,
                display_name=group.display_name,
                description=group.description,
                parent_group_id=group.parent_group_id,
                max_members=group.max_members,
                expires_at=group.expires_at,
                is_active=group.is_active,
                metadata_json=dict(group.metadata),
                updated_at=group.updated_at,
                deleted_at=None if group.is_active else datetime.now(UTC),
            )
        )
        async with repo_session() as session:
            result = await session.execute(stmt)
        if result.rowcount == 0:
            raise KeyError(group.id)
        return group

    async def list_by_org(
        self, org_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[Group]:
        stmt = (
            select(GroupRow)
            .where(GroupRow.organization_id == org_id, GroupRow.is_active.is_(True))
            .order_by(GroupRow.created_at, GroupRow.name)
            .offset(offset)
            .limit(limit)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_group(r) for r in rows]

    async def count_by_org(self, org_id: UUID) -> int:
        stmt = select(func.count()).where(
            GroupRow.organization_id == org_id, GroupRow.is_active.is_(True)
        )
        async with repo_session() as session:
            return (await session.execute(stmt)).scalar_one()

    async def list_children(self, group_id: UUID) -> list[Group]:
        stmt = select(GroupRow).where(
            GroupRow.parent_group_id == group_id, GroupRow.is_active.is_(True)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_group(r) for r in rows]

    async def list_by_ids(self, group_ids: list[UUID]) -> list[Group]:
        if not group_ids:
            return []
        stmt = select(GroupRow).where(GroupRow.id.in_(group_ids))
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        by_id = {row.id: _row_to_group(row) for row in rows}
        return [by_id[i] for i in group_ids if i in by_id]


class PgGroupMemberRepo:
    """Satisfies the GroupMemberRepo Protocol using PostgreSQL."""

    async def get(self, group_id: UUID, user_id: str) -> GroupMember | None:
        stmt = select(GroupMemberRow).where(
            GroupMemberRow.group_id == group_id, GroupMemberRow.user_id == user_id
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_member(row) if row is not None else None

    async def save(self, member: GroupMember) -> GroupMember:
        stmt = select(GroupMemberRow).where(
            GroupMemberRow.group_id == member.group_id,
            GroupMemberRow.user_id == member.user_id,
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = GroupMemberRow(group_id=member.group_id, user_id=member.user_id)
                session.add(row)
            row.role = member.role
            row.joined_at = member.joined_at
            row.invited_by = member.invited_by
            row.is_active = member.is_active
            row.deleted_at = None if member.is_active else datetime.now(UTC)
            await session.flush()
        return member

    async def list_by_group(
        self, group_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[GroupMember]:
        stmt = (
            select(GroupMemberRow)
            .where(
                GroupMemberRow.group_id == group_id,
                GroupMemberRow.is_active.is_(True),
            )
            .order_by(GroupMemberRow.joined_at, GroupMemberRow.user_id)
            .offset(offset)
            .limit(limit)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_member(r) for r in rows]

    async def list_by_user(
        self, user_id: str, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[GroupMember]:
        stmt = (
            select(GroupMemberRow)
            .where(
                GroupMemberRow.user_id == user_id,
                GroupMemberRow.is_active.is_(True),
            )
            .order_by(GroupMemberRow.joined_at, GroupMemberRow.group_id)
            .offset(offset)
            .limit(limit)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_member(r) for r in rows]

    async def count_active(self, group_id: UUID) -> int:
        stmt = select(func.count()).where(
            GroupMemberRow.group_id == group_id, GroupMemberRow.is_active.is_(True)
        )
        async with repo_session() as session:
            return (await session.execute(stmt)).scalar_one()

    async def deactivate_all(self, group_id: UUID) -> list[GroupMember]:
        stmt = (
            update(GroupMemberRow)
            .where(
                GroupMemberRow.group_id == group_id,
                GroupMemberRow.is_active.is_(True),
            )
            .values(is_active=False, deleted_at=datetime.now(UTC))
            .returning(GroupMemberRow)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_member(r, is_active=True) for r in rows]


def _row_to_group(row: GroupRow) -> Group:
    return Group(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        owner_user_id=row.owner_user_id,
        description=row.description or "",
        organization_id=row.organization_id,
        parent_group_id=row.parent_group_id,
        max_members=row.max_members,
        expires_at=row.expires_at,
        is_active=row.is_active,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_member(row: GroupMemberRow, *, is_active: bool | None = None) -> GroupMember:
    return GroupMember(
        group_id=row.group_id,
        user_id=row.user_id,
        role=row.role,
        joined_at=row.joined_at,
        invited_by=row.invited_by,
        is_active=row.is_active if is_active is None else is_active,
    )
