"""PostgreSQL implementation of UsageRepo."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert

from entitlements.db.engine import repo_session
from entitlements.db.tables import UsageMetricRow
from entitlements.models.usage import PERIOD_SCOPED_METRICS, UsageMetric


class PgUsageRepo:
    async def get(self, user_id: str, metric_type: str) -> UsageMetric | None:
        stmt = select(UsageMetricRow).where(
            UsageMetricRow.user_id == user_id,
            UsageMetricRow.metric_type == metric_type,
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_metric(row) if row is not None else None

    async def list_for_user(self, user_id: str) -> list[UsageMetric]:
        stmt = (
            select(UsageMetricRow)
            .where(UsageMetricRow.user_id == user_id)
            .order_by(UsageMetricRow.metric_type)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_metric(r) for r in rows]

    async def upsert(self, metric: UsageMetric) -> UsageMetric:
        values = {
            "user_id": metric.user_id,
            "metric_type": metric.metric_type,
            "current_value": metric.current_value,
            "limit_value": metric.current_limit,
            "period_start": metric.period_start,
            "last_reset": metric.last_reset,
        }
        stmt = insert(UsageMetricRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "metric_type"],
            set_={
                "current_value": stmt.excluded.current_value,
                "limit_value": stmt.excluded.limit_value,
                "period_start": stmt.excluded.period_start,
                "last_reset": stmt.excluded.last_reset,
                "updated_at": datetime.now(UTC),
            },
        )
        async with repo_session() as session:
            await session.execute(stmt)
        return metric

    async def try_increment(
        self, user_id: str, metric_type: str, amount: int
    ) -> UsageMetric | None:
        stmt = (
            update(UsageMetricRow)
            .where(
                UsageMetricRow.user_id == user_id,
                UsageMetricRow.metric_type == metric_type,
                or_(
                    UsageMetricRow.limit_value == -1,
                    UsageMetricRow.current_value + amount <= UsageMetricRow.limit_value,
                ),
            )
            .values(
                current_value=UsageMetricRow.current_value + amount,
                updated_at=datetime.now(UTC),
            )
            .returning(UsageMetricRow)
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_metric(row) if row is not None else None

    async def decrement(
        self, user_id: str, metric_type: str, amount: int
    ) -> UsageMetric | None:
        stmt = (
            update(UsageMetricRow)
            .where(
                UsageMetricRow.user_id == user_id,
                UsageMetricRow.metric_type == metric_type,
            )
            .values(
                current_value=func.greatest(UsageMetricRow.current_value - amount, 0),
                updated_at=datetime.now(UTC),
            )
            .returning(UsageMetricRow)
        )
        async with repo_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_metric(row) if row is not None else None

    async def set_limits(self, user_id: str, limits: dict[str, int]) -> None:
        now = datetime.now(UTC)
        async with repo_session() as session:
            for metric_type, limit in limits.items():
                stmt = insert(UsageMetricRow).values(
                    user_id=user_id,
                    metric_type=metric_type,
                    current_value=0,
                    limit_value=limit,
                    period_start=now,
                    last_reset=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id", "metric_type"],
                    set_={"limit_value": limit, "updated_at": now},
                )
                await session.execute(stmt)

    async def reset_period(self, user_id: str) -> list[UsageMetric]:
        now = datetime.now(UTC)
        stmt = (
            update(UsageMetricRow)
            .where(
                UsageMetricRow.user_id == user_id,
                UsageMetricRow.metric_type.in_(sorted(PERIOD_SCOPED_METRICS)),
            )
            .values(current_value=0, period_start=now, last_reset=now, updated_at=now)
            .returning(UsageMetricRow)
        )
        async with repo_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_metric(r) for r in rows]


def _row_to_metric(row: UsageMetricRow) -> UsageMetric:
    return UsageMetric(
        user_id=row.user_id,
        metric_type=row.metric_type,
        current_value=row.current_value,
        current_limit=row.limit_value,
        period_start=row.period_start,
        last_reset=row.last_reset,
    )
