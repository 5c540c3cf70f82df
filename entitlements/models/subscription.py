from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import ClassVar, Literal
from uuid import UUID, uuid4

SubscriptionStatus = Literal["active", "trialing", "past_due", "cancelled", "incomplete"]
ProrationBehavior = Literal["always_invoice", "create_prorations", "none"]

SUBSCRIPTION_STATUSES: tuple[str, ...] = (
    "active",
    "trialing",
    "past_due",
    "cancelled",
    "incomplete",
)
ACTIVE_STATUSES = frozenset({"active", "trialing"})
PRORATION_BEHAVIORS: tuple[str, ...] = ("always_invoice", "create_prorations", "none")


@dataclass(frozen=True, slots=True)
class Personal:
    """Bought by the user for themself."""

    kind: ClassVar[str] = "personal"


@dataclass(frozen=True, slots=True)
class Assigned:
    """A seat handed out from a bulk batch."""

    batch_id: UUID
    assignor: str  # purchaser user id
    kind: ClassVar[str] = "assigned"


SubscriptionSource = Personal | Assigned


@dataclass(frozen=True, slots=True)
class UserSubscription:
    id: UUID
    user_id: str
    plan_id: UUID
    status: str  # active|trialing|past_due|cancelled|incomplete
    source: SubscriptionSource = Personal()
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    cancelled_at: datetime | None = None
    replaces_subscription_id: UUID | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_assigned(self) -> bool:
        return isinstance(self.source, Assigned)

    @property
    def batch_id(self) -> UUID | None:
        return self.source.batch_id if isinstance(self.source, Assigned) else None

    @property
    def assignor(self) -> str | None:
        return self.source.assignor if isinstance(self.source, Assigned) else None

    @staticmethod
    def new(
        *,
        user_id: str,
        plan_id: UUID,
        status: str,
        source: SubscriptionSource | None = None,
        **kwargs,
    ) -> UserSubscription:
        return UserSubscription(
            id=uuid4(),
            user_id=user_id,
            plan_id=plan_id,
            status=status,
            source=source or Personal(),
            **kwargs,
        )


@dataclass(frozen=True, slots=True)
class OrganizationSubscription:
    id: UUID
    organization_id: UUID
    plan_id: UUID
    status: str
    quantity: int = 1
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    cancelled_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @staticmethod
    def new(
        *, organization_id: UUID, plan_id: UUID, status: str, **kwargs
    ) -> OrganizationSubscription:
        return OrganizationSubscription(
            id=uuid4(),
            organization_id=organization_id,
            plan_id=plan_id,
            status=status,
            **kwargs,
        )
