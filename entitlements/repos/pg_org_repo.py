"""PostgreSQL implementations of OrgRepo and OrgMemberRepo."""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from entitlements.db.engine import repo_session
from entitlements.db.tables import OrganizationMemberRow, OrganizationRow
from entitlements.models.organization import Organization, OrganizationMember
from entitlements.repos.org_member_repo import PAGE_SIZE


class PgOrgRepo:
    """Satisfies the OrgRepo Protocol using PostgreSQL via SQLAlchemy."""

    async def get(self, org_id: UUID) -> Organization | None:
        async with repo_session() as session:
            row = await session.get(OrganizationRow, org_id)
            return _row_to_org(row) if row is not None else None

    async def get_by_owner_and_name(
        self, owner_user_id: str, name: str
    ) -> Organization | None:
        stmt = select(OrganizationRow).where(
            OrganizationRow.owner_user_id == owner_user_id,
            OrganizationRow.name == name,
            OrganizationRow.is_active.is_(True),
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_org(row) if row is not None else None

    async def get_personal(self, owner_user_id: str) -> Organization | None:
        stmt = select(OrganizationRow).where(
            OrganizationRow.owner_user_id == owner_user_id,
            OrganizationRow.is_personal.is_(True),
            OrganizationRow.is_active.is_(True),
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _row_to_org(row) if row is not None else None

    async def add(self, org: Organization) -> None:
        row = OrganizationRow(
            id=org.id,
            name=org.name,
            display_name=org.display_name,
            description=org.description,
            owner_user_id=org.owner_user_id,
            plan_id=org.plan_id,
            is_personal=org.is_personal,
            max_groups=org.max_groups,
            max_members=org.max_members,
            is_active=org.is_active,
            metadata_json=dict(org.metadata),
            created_at=org.created_at,
            updated_at=org.updated_at,
        )
        async with repo_session() as session:
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise ValueError("organization name already used by this owner") from exc

    async def update(self, org: Organization) -> Organization:
        stmt = (
            update(OrganizationRow)
            .where(OrganizationRow.id == org.id)
            .values(
                name=org.name,
                display_name=org.display_name,
                description=org.description,
                plan_id=org.plan_id,
                max_groups=org.max_groups,
                max_members=org.max_members,
                is_active=org.is_active,
                metadata_json=dict(org.metadata),
                updated_at=org.updated_at,
                deleted_at=None if org.is_active else datetime.now(UTC),
            )
        )
        async with repo_session() as session:
            result = await session.execute(stmt)
        if result.rowcount == 0:
            raise KeyError(org.id)
        return org

    async def list_by_ids(self, org_ids: list[UUID]) -> list[Organization]:
        if not org_ids:
            return []
        stmt = select(OrganizationRow).where(OrganizationRow.id.in_(org_ids))
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        by_id = {row.id: _row_to_org(row) for row in rows}
        return [by_id[i] for i in org_ids if i in by_id]


class PgOrgMemberRepo:
    """Satisfies the OrgMemberRepo Protocol using PostgreSQL."""

    async def get(self, org_id: UUID, user_id: str) -> OrganizationMember | None:
        stmt = select(OrganizationMemberRow).where(
            OrganizationMemberRow.organization_id == org_id,
            OrganizationMemberRow.user_id == user_id,
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_member(row) if row is not None else None

    async def save(self, member: OrganizationMember) -> OrganizationMember:
        stmt = select(OrganizationMemberRow).where(
            OrganizationMemberRow.organization_id == member.organization_id,
            OrganizationMemberRow.user_id == member.user_id,
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = OrganizationMemberRow(
                    organization_id=member.organization_id, user_id=member.user_id
                )
                session.add(row)
            row.role = member.role
            row.joined_at = member.joined_at
            row.invited_by = member.invited_by
            row.is_active = member.is_active
            row.deleted_at = None if member.is_active else datetime.now(UTC)
            await session.flush()
        return member

    async def list_by_org(
        self, org_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[OrganizationMember]:
        stmt = (
            select(OrganizationMemberRow)
            .where(
                OrganizationMemberRow.organization_id == org_id,
                OrganizationMemberRow.is_active.is_(True),
            )
            .order_by(OrganizationMemberRow.joined_at, OrganizationMemberRow.user_id)
            .offset(offset)
            .limit(limit)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_member(r) for r in rows]

    async def list_by_user(
        self, user_id: str, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[OrganizationMember]:
        stmt = (
            select(OrganizationMemberRow)
            .where(
                OrganizationMemberRow.user_id == user_id,
                OrganizationMemberRow.is_active.is_(True),
            )
            .order_by(
                OrganizationMemberRow.joined_at, OrganizationMemberRow.organization_id
            )
            .offset(offset)
            .limit(limit)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_member(r) for r in rows]

    async def count_active(self, org_id: UUID) -> int:
        stmt = select(func.count()).where(
            OrganizationMemberRow.organization_id == org_id,
            OrganizationMemberRow.is_active.is_(True),
        )
        async with repo_session() as session:
            return (await session.execute(stmt)).scalar_one()

    async def deactivate_all(self, org_id: UUID) -> list[OrganizationMember]:
        stmt = (
            update(OrganizationMemberRow)
            .where(
                OrganizationMemberRow.organization_id == org_id,
                OrganizationMemberRow.is_active.is_(True),
            )
            .values(is_active=False, deleted_at=datetime.now(UTC))
            .returning(OrganizationMemberRow)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_member(r, is_active=True) for r in rows]


def _row_to_org(row: OrganizationRow) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        owner_user_id=row.owner_user_id,
        description=row.description or "",
        plan_id=row.plan_id,
        is_personal=row.is_personal,
        max_groups=row.max_groups,
        max_members=row.max_members,
        is_active=row.is_active,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_member(
    row: OrganizationMemberRow, *, is_active: bool | None = None
) -> OrganizationMember:
    return OrganizationMember(
        organization_id=row.organization_id,
        user_id=row.user_id,
        role=row.role,
        joined_at=row.joined_at,
        invited_by=row.invited_by,
        is_active=row.is_active if is_active is None else is_active,
    )
