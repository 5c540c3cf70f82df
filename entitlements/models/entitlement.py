from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal
from uuid import UUID

from entitlements.models.plan import SubscriptionPlan
from entitlements.models.subscription import UserSubscription

DenyReason = Literal[
    "unknown_entity",
    "not_a_member",
    "insufficient_role",
    "expired",
    "quota_exceeded",
]


@dataclass(frozen=True, slots=True)
class CollectionFilter:
    """Which entities of one type a list endpoint may return to the caller."""

    entity_type: str
    entity_ids: frozenset[str] = frozenset()
    unrestricted: bool = False

    def allows(self, entity_id: UUID | str) -> bool:
        return self.unrestricted or str(entity_id) in self.entity_ids


@dataclass(frozen=True, slots=True)
class Decision:
    allowed: bool
    reason: str
    deny_reason: str | None = None  # one of DenyReason when denied
    via: str = ""  # administrator|policy|cascade|membership|collection|public
    entity_type: str | None = None
    entity_id: str | None = None
    filter: CollectionFilter | None = None

    @staticmethod
    def allow(
        via: str,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        filter: CollectionFilter | None = None,
    ) -> Decision:
        return Decision(
            allowed=True,
            reason=f"allowed via {via}",
            via=via,
            entity_type=entity_type,
            entity_id=entity_id,
            filter=filter,
        )

    @staticmethod
    def deny(
        deny_reason: str,
        reason: str,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> Decision:
        return Decision(
            allowed=False,
            reason=reason,
            deny_reason=deny_reason,
            entity_type=entity_type,
            entity_id=entity_id,
        )


@dataclass(frozen=True, slots=True)
class OrgContribution:
    organization_id: UUID
    name: str
    display_name: str
    is_personal: bool
    role: str
    plan_id: UUID | None = None
    plan_name: str | None = None


@dataclass(frozen=True, slots=True)
class FeatureBundle:
    user_id: str
    highest_plan: SubscriptionPlan | None
    features: tuple[str, ...] = ()
    caps: dict[str, int] = field(default_factory=dict)
    network_access_enabled: bool = False
    data_persistence_enabled: bool = False
    organizations: tuple[OrgContribution, ...] = ()
    subscriptions: tuple[UserSubscription, ...] = ()

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    def cap(self, metric: str) -> int:
        return self.caps.get(metric, 0)


@dataclass(frozen=True, slots=True)
class OrgFeatures:
    """What an organization's own subscription gives it, with live counts."""

    organization_id: UUID
    plan: SubscriptionPlan | None
    features: tuple[str, ...]
    caps: dict[str, int]
    member_count: int
    group_count: int
    max_members: int
    max_groups: int
