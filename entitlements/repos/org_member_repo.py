from __future__ import annotations

from dataclasses import replace
from typing import Protocol
from uuid import UUID

from entitlements.models.organization import OrganizationMember

PAGE_SIZE = 100


class OrgMemberRepo(Protocol):
    async def get(self, org_id: UUID, user_id: str) -> OrganizationMember | None: ...
    async def save(self, member: OrganizationMember) -> OrganizationMember: ...
    async def list_by_org(
        self, org_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[OrganizationMember]: ...
    async def list_by_user(
        self, user_id: str, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[OrganizationMember]: ...
    async def count_active(self, org_id: UUID) -> int: ...
    async def deactivate_all(self, org_id: UUID) -> list[OrganizationMember]: ...


class InMemoryOrgMemberRepo:
    """Keyed by (org_id, user_id); list methods return active rows only."""

    def __init__(self) -> None:
        self._store: dict[tuple[UUID, str], OrganizationMember] = {}

    async def get(self, org_id: UUID, user_id: str) -> OrganizationMember | None:
        return self._store.get((org_id, user_id))

    async def save(self, member: OrganizationMember) -> OrganizationMember:
        self._store[(member.organization_id, member.user_id)] = member
        return member

    async def list_by_org(
        self, org_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[OrganizationMember]:
        rows = [
            m for m in self._store.values() if m.organization_id == org_id and m.is_active
        ]
        rows.sort(key=lambda m: (m.joined_at, m.user_id))
        return rows[offset : offset + limit]

    async def list_by_user(
        self, user_id: str, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[OrganizationMember]:
        rows = [m for m in self._store.values() if m.user_id == user_id and m.is_active]
        rows.sort(key=lambda m: (m.joined_at, str(m.organization_id)))
        return rows[offset : offset + limit]

    async def count_active(self, org_id: UUID) -> int:
        return sum(
            1 for m in self._store.values() if m.organization_id == org_id and m.is_active
        )

    async def deactivate_all(self, org_id: UUID) -> list[OrganizationMember]:
        removed = []
        for key, m in self._store.items():
            if m.organization_id == org_id and m.is_active:
                self._store[key] = replace(m, is_active=False)
                removed.append(m)
        return removed
