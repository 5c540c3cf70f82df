from __future__ import annotations

from typing import Protocol
from uuid import UUID

from entitlements.models.group import Group

PAGE_SIZE = 100


class GroupRepo(Protocol):
    async def get(self, group_id: UUID) -> Group | None: ...
    async def get_by_owner_and_name(
        self, owner_user_id: str, name: str
    ) -> Group | None: ...
    async def add(self, group: Group) -> None: ...
    async def update(self, group: Group) -> Group: ...
    async def list_by_org(
        self, org_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[Group]: ...
    async def count_by_org(self, org_id: UUID) -> int: ...
    async def list_children(self, group_id: UUID) -> list[Group]: ...
    async def list_by_ids(self, group_ids: list[UUID]) -> list[Group]: ...


class InMemoryGroupRepo:
    def __init__(self) -> None:
        self._by_id: dict[UUID, Group] = {}

    async def get(self, group_id: UUID) -> Group | None:
        return self._by_id.get(group_id)

    async def get_by_owner_and_name(
        self, owner_user_id: str, name: str
    ) -> Group | None:
        for group in self._by_id.values():
            if (
                group.is_active
                and group.owner_user_id == owner_user_id
                and group.name == name
            ):
                return group
        return None

    async def add(self, group: Group) -> None:
        if group.id in self._by_id:
            raise ValueError("group already exists")
        if await self.get_by_owner_and_name(group.owner_user_id, group.name):
            raise ValueError("group name already used by this owner")
        self._by_id[group.id] = group

    async def update(self, group: Group) -> Group:
        if group.id not in self._by_id:
            raise KeyError(group.id)
        self._by_id[group.id] = group
        return group

    async def list_by_org(
        self, org_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[Group]:
        rows = [
            g for g in self._by_id.values() if g.organization_id == org_id and g.is_active
        ]
        rows.sort(key=lambda g: (g.created_at, g.name))
        return rows[offset : offset + limit]

    async def count_by_org(self, org_id: UUID) -> int:
        return sum(
            1 for g in self._by_id.values() if g.organization_id == org_id and g.is_active
        )

    async def list_children(self, group_id: UUID) -> list[Group]:
        return [
            g
            for g in self._by_id.values()
            if g.parent_group_id == group_id and g.is_active
        ]

    async def list_by_ids(self, group_ids: list[UUID]) -> list[Group]:
        return [self._by_id[i] for i in group_ids if i in self._by_id]
