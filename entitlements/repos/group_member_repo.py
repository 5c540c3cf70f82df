from __future__ import annotations

from dataclasses import replace
from typing import Protocol
from uuid import UUID

from entitlements.models.group import GroupMember

PAGE_SIZE = 100


class GroupMemberRepo(Protocol):
    async def get(self, group_id: UUID, user_id: str) -> GroupMember | None: ...
    async def save(self, member: GroupMember) -> GroupMember: ...
    async def list_by_group(
        self, group_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[GroupMember]: ...
    async def list_by_user(
        self, user_id: str, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[GroupMember]: ...
    async def count_active(self, group_id: UUID) -> int: ...
    async def deactivate_all(self, group_id: UUID) -> list[GroupMember]: ...


class InMemoryGroupMemberRepo:
    def __init__(self) -> None:
        self._store: dict[tuple[UUID, str], GroupMember] = {}

    async def get(self, group_id: UUID, user_id: str) -> GroupMember | None:
        return self._store.get((group_id, user_id))

    async def save(self, member: GroupMember) -> GroupMember:
        self._store[(member.group_id, member.user_id)] = member
        return member

    async def list_by_group(
        self, group_id: UUID, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[GroupMember]:
        rows = [m for m in self._store.values() if m.group_id == group_id and m.is_active]
        rows.sort(key=lambda m: (m.joined_at, m.user_id))
        return rows[offset : offset + limit]

    async def list_by_user(
        self, user_id: str, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[GroupMember]:
        rows = [m for m in self._store.values() if m.user_id == user_id and m.is_active]
        rows.sort(key=lambda m: (m.joined_at, str(m.group_id)))
        return rows[offset : offset + limit]

    async def count_active(self, group_id: UUID) -> int:
        return sum(
            1 for m in self._store.values() if m.group_id == group_id and m.is_active
        )

    async def deactivate_all(self, group_id: UUID) -> list[GroupMember]:
        removed = []
        for key, m in self._store.items():
            if m.group_id == group_id and m.is_active:
                self._store[key] = replace(m, is_active=False)
                removed.append(m)
        return removed
