from __future__ import annotations

from typing import Protocol
from uuid import UUID

from entitlements.models.organization import Organization


class OrgRepo(Protocol):
    async def get(self, org_id: UUID) -> Organization | None: ...
    async def get_by_owner_and_name(
        self, owner_user_id: str, name: str
    ) -> Organization | None: ...
    async def get_personal(self, owner_user_id: str) -> Organization | None: ...
    async def add(self, org: Organization) -> None: ...
    async def update(self, org: Organization) -> Organization: ...
    async def list_by_ids(self, org_ids: list[UUID]) -> list[Organization]: ...


class InMemoryOrgRepo:
    def __init__(self) -> None:
        self._by_id: dict[UUID, Organization] = {}

    async def get(self, org_id: UUID) -> Organization | None:
        return self._by_id.get(org_id)

    async def get_by_owner_and_name(
        self, owner_user_id: str, name: str
    ) -> Organization | None:
        for org in self._by_id.values():
            if org.is_active and org.owner_user_id == owner_user_id and org.name == name:
                return org
        return None

    async def get_personal(self, owner_user_id: str) -> Organization | None:
        for org in self._by_id.values():
            if org.is_active and org.is_personal and org.owner_user_id == owner_user_id:
                return org
        return None

    async def add(self, org: Organization) -> None:
        if org.id in self._by_id:
            raise ValueError("organization already exists")
        if await self.get_by_owner_and_name(org.owner_user_id, org.name) is not None:
            raise ValueError("organization name already used by this owner")
        if org.is_personal and await self.get_personal(org.owner_user_id) is not None:
            raise ValueError("personal organization already exists")
        self._by_id[org.id] = org

    async def update(self, org: Organization) -> Organization:
        if org.id not in self._by_id:
            raise KeyError(org.id)
        self._by_id[org.id] = org
        return org

    async def list_by_ids(self, org_ids: list[UUID]) -> list[Organization]:
        return [self._by_id[i] for i in org_ids if i in self._by_id]
