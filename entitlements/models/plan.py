from __future__ import annotations

from dataclasses import dataclass
from typing import Literal
from uuid import UUID, uuid4

BillingInterval = Literal["month", "year"]

UNLIMITED = -1

_CAP_FIELDS: dict[str, str] = {
    "concurrent_terminals": "max_concurrent_terminals",
    "courses_created": "max_courses",
    "lab_sessions": "max_lab_sessions",
    "concurrent_users": "max_concurrent_users",
}


def merge_caps(a: int, b: int) -> int:
    """Larger of two caps, where -1 (unlimited) beats everything."""
    if a == UNLIMITED or b == UNLIMITED:
        return UNLIMITED
    return max(a, b)


def cap_sort_value(cap: int) -> float:
    return float("inf") if cap == UNLIMITED else float(cap)


@dataclass(frozen=True, slots=True)
class PricingTier:
    min_quantity: int
    max_quantity: int | None  # None = no upper bound
    unit_amount: int  # cents
    description: str = ""

    @property
    def range_label(self) -> str:
        if self.max_quantity is None:
            return f"{self.min_quantity}+"
        return f"{self.min_quantity}-{self.max_quantity}"


@dataclass(frozen=True, slots=True)
class SubscriptionPlan:
    id: UUID
    name: str
    priority: int  # higher = richer
    price_amount: int = 0  # cents per unit and billing interval
    currency: str = "eur"
    billing_interval: BillingInterval = "month"
    description: str = ""
    trial_days: int = 0
    features: tuple[str, ...] = ()
    max_concurrent_terminals: int = 1
    max_courses: int = UNLIMITED
    max_lab_sessions: int = UNLIMITED
    max_concurrent_users: int = 1
    max_session_duration_minutes: int = 60
    network_access_enabled: bool = False
    data_persistence_enabled: bool = False
    data_persistence_gb: int = 0
    allowed_machine_sizes: tuple[str, ...] = ()
    pricing_tiers: tuple[PricingTier, ...] = ()
    required_role: str | None = None
    provider_price_id: str | None = None
    is_active: bool = True

    @property
    def is_free(self) -> bool:
        return self.price_amount == 0

    def cap(self, metric: str) -> int:
        field_name = _CAP_FIELDS.get(metric)
        if field_name is None:
            return UNLIMITED
        return getattr(self, field_name)

    def caps(self) -> dict[str, int]:
        return {metric: self.cap(metric) for metric in _CAP_FIELDS}

    @staticmethod
    def new(*, name: str, priority: int, **kwargs) -> SubscriptionPlan:
        return SubscriptionPlan(id=uuid4(), name=name, priority=priority, **kwargs)


@dataclass(frozen=True, slots=True)
class TierCost:
    range_label: str
    quantity: int
    unit_price: int  # cents
    subtotal: int  # cents


@dataclass(frozen=True, slots=True)
class PriceBreakdown:
    plan_name: str
    quantity: int
    tiers: tuple[TierCost, ...]
    total: int  # cents
    average_per_unit: float  # currency units, e.g. 8.33
    savings: int  # cents, versus buying every unit at the flat price
    currency: str
    discount_explanation: str = ""
