from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from typing import Protocol

from entitlements.models.usage import PERIOD_SCOPED_METRICS, UsageMetric


class UsageRepo(Protocol):
    async def get(self, user_id: str, metric_type: str) -> UsageMetric | None: ...
    async def list_for_user(self, user_id: str) -> list[UsageMetric]: ...
    async def upsert(self, metric: UsageMetric) -> UsageMetric: ...
    async def try_increment(
        self, user_id: str, metric_type: str, amount: int
    ) -> UsageMetric | None: ...
    async def decrement(
        self, user_id: str, metric_type: str, amount: int
    ) -> UsageMetric | None: ...
    async def set_limits(self, user_id: str, limits: dict[str, int]) -> None: ...
    async def reset_period(self, user_id: str) -> list[UsageMetric]: ...


class InMemoryUsageRepo:
    """Counters keyed by (user, metric).

    try_increment is the conditional write: it applies the increment only
    when the stored limit still admits it.
    """

    def __init__(self) -> None:
        self._store: dict[tuple[str, str], UsageMetric] = {}

    async def get(self, user_id: str, metric_type: str) -> UsageMetric | None:
        return self._store.get((user_id, metric_type))

    async def list_for_user(self, user_id: str) -> list[UsageMetric]:
        rows = [m for (uid, _), m in self._store.items() if uid == user_id]
        rows.sort(key=lambda m: m.metric_type)
        return rows

    async def upsert(self, metric: UsageMetric) -> UsageMetric:
        self._store[(metric.user_id, metric.metric_type)] = metric
        return metric

    async def try_increment(
        self, user_id: str, metric_type: str, amount: int
    ) -> UsageMetric | None:
        current = self._store.get((user_id, metric_type))
        if current is None or not current.allows(amount):
            return None
        updated = replace(current, current_value=current.current_value + amount)
        self._store[(user_id, metric_type)] = updated
        return updated

    async def decrement(
        self, user_id: str, metric_type: str, amount: int
    ) -> UsageMetric | None:
        current = self._store.get((user_id, metric_type))
        if current is None:
            return None
        updated = replace(
            current, current_value=max(0, current.current_value - amount)
        )
        self._store[(user_id, metric_type)] = updated
        return updated

    async def set_limits(self, user_id: str, limits: dict[str, int]) -> None:
        for metric_type, limit in limits.items():
            current = self._store.get((user_id, metric_type))
            if current is None:
                current = UsageMetric(user_id=user_id, metric_type=metric_type)
            self._store[(user_id, metric_type)] = replace(current, current_limit=limit)

    async def reset_period(self, user_id: str) -> list[UsageMetric]:
        now = datetime.now(UTC)
        reset = []
        for key, m in list(self._store.items()):
            if m.user_id == user_id and m.metric_type in PERIOD_SCOPED_METRICS:
                updated = replace(m, current_value=0, period_start=now, last_reset=now)
                self._store[key] = updated
                reset.append(updated)
        return reset
