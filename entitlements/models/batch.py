from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal
from uuid import UUID, uuid4

BatchStatus = Literal["incomplete", "active", "cancelled", "expired"]


@dataclass(frozen=True, slots=True)
class SubscriptionBatch:
    id: UUID
    purchaser_user_id: str
    plan_id: UUID
    total_quantity: int
    assigned_quantity: int = 0
    status: str = "active"  # incomplete|active|cancelled|expired
    group_id: UUID | None = None
    provider_subscription_id: str | None = None
    provider_subscription_item_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.assigned_quantity

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @staticmethod
    def new(
        *,
        purchaser_user_id: str,
        plan_id: UUID,
        total_quantity: int,
        status: str = "active",
        group_id: UUID | None = None,
    ) -> SubscriptionBatch:
        return SubscriptionBatch(
            id=uuid4(),
            purchaser_user_id=purchaser_user_id,
            plan_id=plan_id,
            total_quantity=total_quantity,
            status=status,
            group_id=group_id,
        )
