from __future__ import annotations

from collections.abc import Collection
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID

from entitlements.models.subscription import ACTIVE_STATUSES, UserSubscription


class UserSubscriptionRepo(Protocol):
    async def get(self, subscription_id: UUID) -> UserSubscription | None: ...
    async def add(self, subscription: UserSubscription) -> None: ...
    async def compare_and_set(
        self,
        subscription_id: UUID,
        expected_statuses: Collection[str],
        **changes: Any,
    ) -> UserSubscription | None: ...
    async def list_by_user(
        self, user_id: str, *, active_only: bool = True
    ) -> list[UserSubscription]: ...
    async def list_by_batch(self, batch_id: UUID) -> list[UserSubscription]: ...
    async def list_by_provider_id(
        self, provider_subscription_id: str
    ) -> list[UserSubscription]: ...


class InMemoryUserSubscriptionRepo:
    def __init__(self) -> None:
        self._by_id: dict[UUID, UserSubscription] = {}

    async def get(self, subscription_id: UUID) -> UserSubscription | None:
        return self._by_id.get(subscription_id)

    async def add(self, subscription: UserSubscription) -> None:
        if subscription.id in self._by_id:
            raise ValueError("subscription already exists")
        self._by_id[subscription.id] = subscription

    async def compare_and_set(
        self,
        subscription_id: UUID,
        expected_statuses: Collection[str],
        **changes: Any,
    ) -> UserSubscription | None:
        """Apply ``changes`` only if the row's status is still expected."""
        current = self._by_id.get(subscription_id)
        if current is None or current.status not in expected_statuses:
            return None
        updated = replace(current, updated_at=datetime.now(UTC), **changes)
        self._by_id[subscription_id] = updated
        return updated

    async def list_by_user(
        self, user_id: str, *, active_only: bool = True
    ) -> list[UserSubscription]:
        rows = [
            s
            for s in self._by_id.values()
            if s.user_id == user_id and (s.status in ACTIVE_STATUSES or not active_only)
        ]
        rows.sort(key=lambda s: (s.created_at, str(s.id)))
        return rows

    async def list_by_batch(self, batch_id: UUID) -> list[UserSubscription]:
        rows = [s for s in self._by_id.values() if s.batch_id == batch_id]
        rows.sort(key=lambda s: (s.created_at, str(s.id)))
        return rows

    async def list_by_provider_id(
        self, provider_subscription_id: str
    ) -> list[UserSubscription]:
        return [
            s
            for s in self._by_id.values()
            if s.provider_subscription_id == provider_subscription_id
        ]
