"""PostgreSQL implementation of BatchRepo.

Seat reservation is one conditional UPDATE:

    assigned_quantity = assigned_quantity + 1
    WHERE status = 'active' AND assigned_quantity < total_quantity

so the invariant 0 <= assigned <= total holds even across processes.
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update

from entitlements.db.engine import repo_session
from entitlements.db.tables import SubscriptionBatchRow
from entitlements.models.batch import SubscriptionBatch
from entitlements.repos.batch_repo import PAGE_SIZE


class PgBatchRepo:
    async def get(self, batch_id: UUID) -> SubscriptionBatch | None:
        async with repo_session() as session:
            row = await session.get(SubscriptionBatchRow, batch_id)
            return _row_to_batch(row) if row is not None else None

    async def add(self, batch: SubscriptionBatch) -> None:
        row = SubscriptionBatchRow(
            id=batch.id,
            purchaser_user_id=batch.purchaser_user_id,
            plan_id=batch.plan_id,
            total_quantity=batch.total_quantity,
            assigned_quantity=batch.assigned_quantity,
            status=batch.status,
            group_id=batch.group_id,
            provider_subscription_id=batch.provider_subscription_id,
            provider_subscription_item_id=batch.provider_subscription_item_id,
            current_period_start=batch.current_period_start,
            current_period_end=batch.current_period_end,
            cancelled_at=batch.cancelled_at,
            created_at=batch.created_at,
            updated_at=batch.updated_at,
        )
        async with repo_session() as session:
            session.add(row)
            await session.flush()

    async def compare_and_set(
        self, batch_id: UUID, expected_statuses: Collection[str], **changes: Any
    ) -> SubscriptionBatch | None:
        return await self._update_returning(
            batch_id,
            SubscriptionBatchRow.status.in_(list(expected_statuses)),
            **changes,
        )

    async def reserve_seat(self, batch_id: UUID) -> SubscriptionBatch | None:
        return await self._update_returning(
            batch_id,
            (SubscriptionBatchRow.status == "active")
            & (
                SubscriptionBatchRow.assigned_quantity
                < SubscriptionBatchRow.total_quantity
            ),
            assigned_quantity=SubscriptionBatchRow.assigned_quantity + 1,
        )

    async def release_seat(self, batch_id: UUID) -> SubscriptionBatch | None:
        return await self._update_returning(
            batch_id,
            SubscriptionBatchRow.assigned_quantity > 0,
            assigned_quantity=SubscriptionBatchRow.assigned_quantity - 1,
        )

    async def resize(self, batch_id: UUID, new_total: int) -> SubscriptionBatch | None:
        return await self._update_returning(
            batch_id,
            SubscriptionBatchRow.assigned_quantity <= new_total,
            total_quantity=new_total,
        )

    async def delete(self, batch_id: UUID) -> bool:
        stmt = delete(SubscriptionBatchRow).where(
            SubscriptionBatchRow.id == batch_id,
            SubscriptionBatchRow.assigned_quantity == 0,
        )
        async with repo_session() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def list_by_purchaser(
        self, purchaser_user_id: str, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[SubscriptionBatch]:
        stmt = (
            select(SubscriptionBatchRow)
            .where(SubscriptionBatchRow.purchaser_user_id == purchaser_user_id)
            .order_by(SubscriptionBatchRow.created_at, SubscriptionBatchRow.id)
            .offset(offset)
            .limit(limit)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_batch(r) for r in rows]

    async def list_active_by_group(self, group_id: UUID) -> list[SubscriptionBatch]:
        stmt = (
            select(SubscriptionBatchRow)
            .where(
                SubscriptionBatchRow.group_id == group_id,
                SubscriptionBatchRow.status == "active",
            )
            .order_by(SubscriptionBatchRow.created_at, SubscriptionBatchRow.id)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_batch(r) for r in rows]

    async def list_by_provider_id(
        self, provider_subscription_id: str
    ) -> list[SubscriptionBatch]:
        stmt = select(SubscriptionBatchRow).where(
            SubscriptionBatchRow.provider_subscription_id == provider_subscription_id
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_batch(r) for r in rows]

    async def _update_returning(
        self, batch_id: UUID, condition, **values: Any
    ) -> SubscriptionBatch | None:
        stmt = (
            update(SubscriptionBatchRow)
            .where(SubscriptionBatchRow.id == batch_id, condition)
            .values(**values, updated_at=datetime.now(UTC))
            .returning(SubscriptionBatchRow)
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_batch(row) if row is not None else None


def _row_to_batch(row: SubscriptionBatchRow) -> SubscriptionBatch:
    return SubscriptionBatch(
        id=row.id,
        purchaser_user_id=row.purchaser_user_id,
        plan_id=row.plan_id,
        total_quantity=row.total_quantity,
        assigned_quantity=row.assigned_quantity,
        status=row.status,
        group_id=row.group_id,
        provider_subscription_id=row.provider_subscription_id,
        provider_subscription_item_id=row.provider_subscription_item_id,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        cancelled_at=row.cancelled_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
