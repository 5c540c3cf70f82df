from __future__ import annotations

from collections.abc import Collection
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID

from entitlements.models.subscription import ACTIVE_STATUSES, OrganizationSubscription


class OrgSubscriptionRepo(Protocol):
    async def get(self, subscription_id: UUID) -> OrganizationSubscription | None: ...
    async def add(self, subscription: OrganizationSubscription) -> None: ...
    async def compare_and_set(
        self,
        subscription_id: UUID,
        expected_statuses: Collection[str],
        **changes: Any,
    ) -> OrganizationSubscription | None: ...
    async def get_active_for_org(
        self, org_id: UUID
    ) -> OrganizationSubscription | None: ...
    async def list_active_for_orgs(
        self, org_ids: list[UUID]
    ) -> list[OrganizationSubscription]: ...
    async def list_by_provider_id(
        self, provider_subscription_id: str
    ) -> list[OrganizationSubscription]: ...


class InMemoryOrgSubscriptionRepo:
    def __init__(self) -> None:
        self._by_id: dict[UUID, OrganizationSubscription] = {}

    async def get(self, subscription_id: UUID) -> OrganizationSubscription | None:
        return self._by_id.get(subscription_id)

    async def add(self, subscription: OrganizationSubscription) -> None:
        if subscription.id in self._by_id:
            raise ValueError("subscription already exists")
        if (
            subscription.is_active
            and await self.get_active_for_org(subscription.organization_id) is not None
        ):
            raise ValueError("organization already has an active subscription")
        self._by_id[subscription.id] = subscription

    async def compare_and_set(
        self,
        subscription_id: UUID,
        expected_statuses: Collection[str],
        **changes: Any,
    ) -> OrganizationSubscription | None:
        current = self._by_id.get(subscription_id)
        if current is None or current.status not in expected_statuses:
            return None
        updated = replace(current, updated_at=datetime.now(UTC), **changes)
        self._by_id[subscription_id] = updated
        return updated

    async def get_active_for_org(self, org_id: UUID) -> OrganizationSubscription | None:
        for sub in self._by_id.values():
            if sub.organization_id == org_id and sub.status in ACTIVE_STATUSES:
                return sub
        return None

    async def list_active_for_orgs(
        self, org_ids: list[UUID]
    ) -> list[OrganizationSubscription]:
        wanted = set(org_ids)
        return [
            s
            for s in self._by_id.values()
            if s.organization_id in wanted and s.status in ACTIVE_STATUSES
        ]

    async def list_by_provider_id(
        self, provider_subscription_id: str
    ) -> list[OrganizationSubscription]:
        return [
            s
            for s in self._by_id.values()
            if s.provider_subscription_id == provider_subscription_id
        ]
