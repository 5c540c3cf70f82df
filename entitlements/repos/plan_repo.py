from __future__ import annotations

from typing import Protocol
from uuid import UUID

from entitlements.models.plan import SubscriptionPlan


class PlanRepo(Protocol):
    async def get(self, plan_id: UUID) -> SubscriptionPlan | None: ...
    async def get_by_name(self, name: str) -> SubscriptionPlan | None: ...
    async def list_all(self, *, active_only: bool = True) -> list[SubscriptionPlan]: ...
    async def add(self, plan: SubscriptionPlan) -> None: ...
    async def update(self, plan: SubscriptionPlan) -> SubscriptionPlan: ...


class InMemoryPlanRepo:
    def __init__(self) -> None:
        self._by_id: dict[UUID, SubscriptionPlan] = {}

    async def get(self, plan_id: UUID) -> SubscriptionPlan | None:
        return self._by_id.get(plan_id)

    async def get_by_name(self, name: str) -> SubscriptionPlan | None:
        for plan in self._by_id.values():
            if plan.name == name:
                return plan
        return None

    async def list_all(self, *, active_only: bool = True) -> list[SubscriptionPlan]:
        return [p for p in self._by_id.values() if p.is_active or not active_only]

    async def add(self, plan: SubscriptionPlan) -> None:
        if plan.id in self._by_id or await self.get_by_name(plan.name) is not None:
            raise ValueError("plan already exists")
        self._by_id[plan.id] = plan

    async def update(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        if plan.id not in self._by_id:
            raise KeyError(plan.id)
        self._by_id[plan.id] = plan
        return plan
