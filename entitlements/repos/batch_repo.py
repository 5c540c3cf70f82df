from __future__ import annotations

from collections.abc import Collection
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID

from entitlements.models.batch import SubscriptionBatch

PAGE_SIZE = 100


class BatchRepo(Protocol):
    async def get(self, batch_id: UUID) -> SubscriptionBatch | None: ...
    async def add(self, batch: SubscriptionBatch) -> None: ...
    async def compare_and_set(
        self, batch_id: UUID, expected_statuses: Collection[str], **changes: Any
    ) -> SubscriptionBatch | None: ...
    async def reserve_seat(self, batch_id: UUID) -> SubscriptionBatch | None: ...
    async def release_seat(self, batch_id: UUID) -> SubscriptionBatch | None: ...
    async def resize(
        self, batch_id: UUID, new_total: int
    ) -> SubscriptionBatch | None: ...
    async def delete(self, batch_id: UUID) -> bool: ...
    async def list_by_purchaser(
        self, purchaser_user_id: str, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[SubscriptionBatch]: ...
    async def list_active_by_group(self, group_id: UUID) -> list[SubscriptionBatch]: ...
    async def list_by_provider_id(
        self, provider_subscription_id: str
    ) -> list[SubscriptionBatch]: ...


class InMemoryBatchRepo:
    """Seat counters change only through reserve/release/resize.

    Each of those is a single check-then-write with no await in between,
    which is what makes them atomic on one event loop.
    """

    def __init__(self) -> None:
        self._by_id: dict[UUID, SubscriptionBatch] = {}

    async def get(self, batch_id: UUID) -> SubscriptionBatch | None:
        return self._by_id.get(batch_id)

    async def add(self, batch: SubscriptionBatch) -> None:
        if batch.id in self._by_id:
            raise ValueError("batch already exists")
        self._by_id[batch.id] = batch

    async def compare_and_set(
        self, batch_id: UUID, expected_statuses: Collection[str], **changes: Any
    ) -> SubscriptionBatch | None:
        current = self._by_id.get(batch_id)
        if current is None or current.status not in expected_statuses:
            return None
        return self._put(replace(current, **changes))

    async def reserve_seat(self, batch_id: UUID) -> SubscriptionBatch | None:
        current = self._by_id.get(batch_id)
        if (
            current is None
            or current.status != "active"
            or current.assigned_quantity >= current.total_quantity
        ):
            return None
        return self._put(
            replace(current, assigned_quantity=current.assigned_quantity + 1)
        )

    async def release_seat(self, batch_id: UUID) -> SubscriptionBatch | None:
        current = self._by_id.get(batch_id)
        if current is None or current.assigned_quantity <= 0:
            return None
        return self._put(
            replace(current, assigned_quantity=current.assigned_quantity - 1)
        )

    async def resize(self, batch_id: UUID, new_total: int) -> SubscriptionBatch | None:
        current = self._by_id.get(batch_id)
        if current is None or new_total < current.assigned_quantity:
            return None
        return self._put(replace(current, total_quantity=new_total))

    async def delete(self, batch_id: UUID) -> bool:
        current = self._by_id.get(batch_id)
        if current is None or current.assigned_quantity > 0:
            return False
        del self._by_id[batch_id]
        return True

    async def list_by_purchaser(
        self, purchaser_user_id: str, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[SubscriptionBatch]:
        rows = [
            b for b in self._by_id.values() if b.purchaser_user_id == purchaser_user_id
        ]
        rows.sort(key=lambda b: (b.created_at, str(b.id)))
        return rows[offset : offset + limit]

    async def list_active_by_group(self, group_id: UUID) -> list[SubscriptionBatch]:
        rows = [
            b for b in self._by_id.values() if b.group_id == group_id and b.is_active
        ]
        rows.sort(key=lambda b: (b.created_at, str(b.id)))
        return rows

    async def list_by_provider_id(
        self, provider_subscription_id: str
    ) -> list[SubscriptionBatch]:
        return [
            b
            for b in self._by_id.values()
            if b.provider_subscription_id == provider_subscription_id
        ]

    def _put(self, batch: SubscriptionBatch) -> SubscriptionBatch:
        batch = replace(batch, updated_at=datetime.now(UTC))
        self._by_id[batch.id] = batch
        return batch
