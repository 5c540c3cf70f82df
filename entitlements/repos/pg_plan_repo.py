"""PostgreSQL implementation of PlanRepo."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from entitlements.db.engine import repo_session
from entitlements.db.tables import SubscriptionPlanRow
from entitlements.models.plan import PricingTier, SubscriptionPlan


class PgPlanRepo:
    async def get(self, plan_id: UUID) -> SubscriptionPlan | None:
        async with repo_session() as session:
            row = await session.get(SubscriptionPlanRow, plan_id)
            return _row_to_plan(row) if row is not None else None

    async def get_by_name(self, name: str) -> SubscriptionPlan | None:
        stmt = select(SubscriptionPlanRow).where(SubscriptionPlanRow.name == name)
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_plan(row) if row is not None else None

    async def list_all(self, *, active_only: bool = True) -> list[SubscriptionPlan]:
        stmt = select(SubscriptionPlanRow).order_by(
            SubscriptionPlanRow.priority, SubscriptionPlanRow.name
        )
        if active_only:
            stmt = stmt.where(SubscriptionPlanRow.is_active.is_(True))
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_plan(r) for r in rows]

    async def add(self, plan: SubscriptionPlan) -> None:
        row = SubscriptionPlanRow(id=plan.id)
        _apply(row, plan)
        async with repo_session() as session:
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise ValueError("plan already exists") from exc

    async def update(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        async with repo_session() as session:
            row = await session.get(SubscriptionPlanRow, plan.id)
            if row is None:
                raise KeyError(plan.id)
            _apply(row, plan)
            await session.flush()
        return plan


def _apply(row: SubscriptionPlanRow, plan: SubscriptionPlan) -> None:
    row.name = plan.name
    row.description = plan.description
    row.priority = plan.priority
    row.price_amount = plan.price_amount
    row.currency = plan.currency
    row.billing_interval = plan.billing_interval
    row.trial_days = plan.trial_days
    row.features = list(plan.features)
    row.max_concurrent_terminals = plan.max_concurrent_terminals
    row.max_courses = plan.max_courses
    row.max_lab_sessions = plan.max_lab_sessions
    row.max_concurrent_users = plan.max_concurrent_users
    row.max_session_duration_minutes = plan.max_session_duration_minutes
    row.network_access_enabled = plan.network_access_enabled
    row.data_persistence_enabled = plan.data_persistence_enabled
    row.data_persistence_gb = plan.data_persistence_gb
    row.allowed_machine_sizes = list(plan.allowed_machine_sizes)
    row.pricing_tiers = [
        {
            "min_quantity": t.min_quantity,
            "max_quantity": t.max_quantity,
            "unit_amount": t.unit_amount,
            "description": t.description,
        }
        for t in plan.pricing_tiers
    ]
    row.required_role = plan.required_role
    row.provider_price_id = plan.provider_price_id
    row.is_active = plan.is_active


def _row_to_plan(row: SubscriptionPlanRow) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=row.id,
        name=row.name,
        priority=row.priority,
        price_amount=row.price_amount,
        currency=row.currency,
        billing_interval=row.billing_interval,
        description=row.description or "",
        trial_days=row.trial_days,
        features=tuple(row.features or ()),
        max_concurrent_terminals=row.max_concurrent_terminals,
        max_courses=row.max_courses,
        max_lab_sessions=row.max_lab_sessions,
        max_concurrent_users=row.max_concurrent_users,
        max_session_duration_minutes=row.max_session_duration_minutes,
        network_access_enabled=row.network_access_enabled,
        data_persistence_enabled=row.data_persistence_enabled,
        data_persistence_gb=row.data_persistence_gb,
        allowed_machine_sizes=tuple(row.allowed_machine_sizes or ()),
        pricing_tiers=tuple(
            PricingTier(
                min_quantity=t["min_quantity"],
                max_quantity=t.get("max_quantity"),
                unit_amount=t["unit_amount"],
                description=t.get("description", ""),
            )
            for t in (row.pricing_tiers or [])
        ),
        required_role=row.required_role,
        provider_price_id=row.provider_price_id,
        is_active=row.is_active,
    )
