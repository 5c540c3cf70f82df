"""PostgreSQL implementations of UserSubscriptionRepo and OrgSubscriptionRepo.

compare_and_set is a single UPDATE ... WHERE status IN (...) RETURNING,
so two writers racing on the same row cannot both win.
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from entitlements.db.engine import repo_session
from entitlements.db.tables import OrganizationSubscriptionRow, UserSubscriptionRow
from entitlements.models.subscription import (
    ACTIVE_STATUSES,
    Assigned,
    OrganizationSubscription,
    Personal,
    UserSubscription,
)


class PgUserSubscriptionRepo:
    async def get(self, subscription_id: UUID) -> UserSubscription | None:
        async with repo_session() as session:
            row = await session.get(UserSubscriptionRow, subscription_id)
            return _row_to_user_sub(row) if row is not None else None

    async def add(self, subscription: UserSubscription) -> None:
        row = UserSubscriptionRow(
            id=subscription.id,
            user_id=subscription.user_id,
            plan_id=subscription.plan_id,
            created_at=subscription.created_at,
            **_user_sub_values(subscription),
        )
        async with repo_session() as session:
            session.add(row)
            await session.flush()

    async def compare_and_set(
        self,
        subscription_id: UUID,
        expected_statuses: Collection[str],
        **changes: Any,
    ) -> UserSubscription | None:
        values = _user_sub_changes(changes)
        values["updated_at"] = datetime.now(UTC)
        stmt = (
            update(UserSubscriptionRow)
            .where(
                UserSubscriptionRow.id == subscription_id,
                UserSubscriptionRow.status.in_(list(expected_statuses)),
            )
            .values(**values)
            .returning(UserSubscriptionRow)
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_user_sub(row) if row is not None else None

    async def list_by_user(
        self, user_id: str, *, active_only: bool = True
    ) -> list[UserSubscription]:
        stmt = (
            select(UserSubscriptionRow)
            .where(UserSubscriptionRow.user_id == user_id)
            .order_by(UserSubscriptionRow.created_at, UserSubscriptionRow.id)
        )
        if active_only:
            stmt = stmt.where(UserSubscriptionRow.status.in_(list(ACTIVE_STATUSES)))
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_user_sub(r) for r in rows]

    async def list_by_batch(self, batch_id: UUID) -> list[UserSubscription]:
        stmt = (
            select(UserSubscriptionRow)
            .where(UserSubscriptionRow.batch_id == batch_id)
            .order_by(UserSubscriptionRow.created_at, UserSubscriptionRow.id)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_user_sub(r) for r in rows]

    async def list_by_provider_id(
        self, provider_subscription_id: str
    ) -> list[UserSubscription]:
        stmt = select(UserSubscriptionRow).where(
            UserSubscriptionRow.provider_subscription_id == provider_subscription_id
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_user_sub(r) for r in rows]


class PgOrgSubscriptionRepo:
    async def get(self, subscription_id: UUID) -> OrganizationSubscription | None:
        async with repo_session() as session:
            row = await session.get(OrganizationSubscriptionRow, subscription_id)
            return _row_to_org_sub(row) if row is not None else None

    async def add(self, subscription: OrganizationSubscription) -> None:
        row = OrganizationSubscriptionRow(
            id=subscription.id,
            organization_id=subscription.organization_id,
            plan_id=subscription.plan_id,
            status=subscription.status,
            quantity=subscription.quantity,
            provider_subscription_id=subscription.provider_subscription_id,
            provider_customer_id=subscription.provider_customer_id,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            trial_end=subscription.trial_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            cancelled_at=subscription.cancelled_at,
            created_by=subscription.created_by,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )
        async with repo_session() as session:
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise ValueError(
                    "organization already has an active subscription"
                ) from exc

    async def compare_and_set(
        self,
        subscription_id: UUID,
        expected_statuses: Collection[str],
        **changes: Any,
    ) -> OrganizationSubscription | None:
        stmt = (
            update(OrganizationSubscriptionRow)
            .where(
                OrganizationSubscriptionRow.id == subscription_id,
                OrganizationSubscriptionRow.status.in_(list(expected_statuses)),
            )
            .values(**changes, updated_at=datetime.now(UTC))
            .returning(OrganizationSubscriptionRow)
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_org_sub(row) if row is not None else None

    async def get_active_for_org(self, org_id: UUID) -> OrganizationSubscription | None:
        stmt = select(OrganizationSubscriptionRow).where(
            OrganizationSubscriptionRow.organization_id == org_id,
            OrganizationSubscriptionRow.status.in_(list(ACTIVE_STATUSES)),
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _row_to_org_sub(row) if row is not None else None

    async def list_active_for_orgs(
        self, org_ids: list[UUID]
    ) -> list[OrganizationSubscription]:
        if not org_ids:
            return []
        stmt = select(OrganizationSubscriptionRow).where(
            OrganizationSubscriptionRow.organization_id.in_(org_ids),
            OrganizationSubscriptionRow.status.in_(list(ACTIVE_STATUSES)),
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_org_sub(r) for r in rows]

    async def list_by_provider_id(
        self, provider_subscription_id: str
    ) -> list[OrganizationSubscription]:
        stmt = select(OrganizationSubscriptionRow).where(
            OrganizationSubscriptionRow.provider_subscription_id
            == provider_subscription_id
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_org_sub(r) for r in rows]


def _user_sub_values(sub: UserSubscription) -> dict[str, Any]:
    return {
        "status": sub.status,
        "batch_id": sub.batch_id,
        "assigned_by": sub.assignor,
        "provider_subscription_id": sub.provider_subscription_id,
        "provider_customer_id": sub.provider_customer_id,
        "current_period_start": sub.current_period_start,
        "current_period_end": sub.current_period_end,
        "trial_end": sub.trial_end,
        "cancel_at_period_end": sub.cancel_at_period_end,
        "cancelled_at": sub.cancelled_at,
        "replaces_subscription_id": sub.replaces_subscription_id,
        "updated_at": sub.updated_at,
    }


def _user_sub_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Map dataclass field changes onto column values."""
    values = dict(changes)
    source = values.pop("source", None)
    if isinstance(source, Assigned):
        values["batch_id"] = source.batch_id
        values["assigned_by"] = source.assignor
    elif isinstance(source, Personal):
        values["batch_id"] = None
        values["assigned_by"] = None
    return values


def _row_to_user_sub(row: UserSubscriptionRow) -> UserSubscription:
    source = (
        Assigned(batch_id=row.batch_id, assignor=row.assigned_by or "")
        if row.batch_id is not None
        else Personal()
    )
    return UserSubscription(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=row.status,
        source=source,
        provider_subscription_id=row.provider_subscription_id,
        provider_customer_id=row.provider_customer_id,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        trial_end=row.trial_end,
        cancel_at_period_end=row.cancel_at_period_end,
        cancelled_at=row.cancelled_at,
        replaces_subscription_id=row.replaces_subscription_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_org_sub(row: OrganizationSubscriptionRow) -> OrganizationSubscription:
    return OrganizationSubscription(
        id=row.id,
        organization_id=row.organization_id,
        plan_id=row.plan_id,
        status=row.status,
        quantity=row.quantity,
        provider_subscription_id=row.provider_subscription_id,
        provider_customer_id=row.provider_customer_id,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        trial_end=row.trial_end,
        cancel_at_period_end=row.cancel_at_period_end,
        cancelled_at=row.cancelled_at,
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
