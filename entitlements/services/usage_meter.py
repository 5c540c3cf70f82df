"""Usage Meter: per-user counters checked against the current plan caps.

Which plan sets the caps:
  1. the user's primary subscription (see plan_catalog.select_primary)
  2. otherwise the richest plan among active subscriptions of
     organizations the user is an active member of
  3. otherwise nothing: every check is refused with
     NO_SUBSCRIPTION_MESSAGE and a limit of 0

Limits are written into the usage rows by sync_limits(), which the
ledger calls inside the same unit of work as the subscription change.
increment() is the repository's conditional update, so two concurrent
increments can never push a counter past its stored limit.
"""

from __future__ import annotations

import logging

from entitlements.core.errors import LimitReachedError, ValidationError
from entitlements.core.metrics import USAGE_LIMIT_REJECTIONS
from entitlements.models.plan import SubscriptionPlan
from entitlements.models.usage import (
    METRIC_TYPES,
    NO_SUBSCRIPTION_MESSAGE,
    UsageCheck,
    UsageMetric,
)
from entitlements.repos.org_member_repo import PAGE_SIZE, OrgMemberRepo
from entitlements.repos.org_subscription_repo import OrgSubscriptionRepo
from entitlements.repos.usage_repo import UsageRepo
from entitlements.repos.user_subscription_repo import UserSubscriptionRepo
from entitlements.services.plan_catalog import PlanCatalog, highest, select_primary

logger = logging.getLogger(__name__)


def _require_metric(metric: str) -> None:
    if metric not in METRIC_TYPES:
        raise ValidationError(
            f"unknown metric {metric!r}; expected one of {', '.join(METRIC_TYPES)}"
        )


class UsageMeter:
    def __init__(
        self,
        usage: UsageRepo,
        subscriptions: UserSubscriptionRepo,
        org_members: OrgMemberRepo,
        org_subscriptions: OrgSubscriptionRepo,
        catalog: PlanCatalog,
    ) -> None:
        self._usage = usage
        self._subscriptions = subscriptions
        self._org_members = org_members
        self._org_subscriptions = org_subscriptions
        self._catalog = catalog

    async def cap_plan(self, user_id: str) -> SubscriptionPlan | None:
        subs = await self._subscriptions.list_by_user(user_id)
        plans = await self._catalog.plans_for(s.plan_id for s in subs)
        primary = select_primary(subs, plans)
        if primary is not None:
            return plans[primary.plan_id]

        org_ids = []
        offset = 0
        while True:
            page = await self._org_members.list_by_user(
                user_id, offset=offset, limit=PAGE_SIZE
            )
            org_ids.extend(m.organization_id for m in page)
            if len(page) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        if not org_ids:
            return None
        org_subs = await self._org_subscriptions.list_active_for_orgs(org_ids)
        org_plans = await self._catalog.plans_for(s.plan_id for s in org_subs)
        return highest(org_plans.values())

    async def sync_limits(self, user_id: str) -> dict[str, int]:
        """Rewrite every metric's limit from the plan that currently sets caps."""
        plan = await self.cap_plan(user_id)
        limits = plan.caps() if plan else {metric: 0 for metric in METRIC_TYPES}
        await self._usage.set_limits(user_id, limits)
        logger.debug(
            "Usage limits synced: user=%s plan=%s", user_id, plan.name if plan else None
        )
        return limits

    async def _metric(self, user_id: str, metric: str) -> UsageMetric:
        row = await self._usage.get(user_id, metric)
        if row is None:
            await self.sync_limits(user_id)
            row = await self._usage.get(user_id, metric)
        return row or UsageMetric(user_id=user_id, metric_type=metric)

    async def check(self, user_id: str, metric: str, increment: int = 1) -> UsageCheck:
        _require_metric(metric)
        if increment < 0:
            raise ValidationError("increment must not be negative")
        if await self.cap_plan(user_id) is None:
            row = await self._usage.get(user_id, metric)
            USAGE_LIMIT_REJECTIONS.labels(metric=metric).inc()
            return UsageCheck(
                allowed=False,
                current=row.current_value if row else 0,
                limit=0,
                remaining=0,
                message=NO_SUBSCRIPTION_MESSAGE,
            )
        result = UsageCheck.from_metric(await self._metric(user_id, metric), increment)
        if not result.allowed:
            USAGE_LIMIT_REJECTIONS.labels(metric=metric).inc()
        return result

    async def increment(self, user_id: str, metric: str, delta: int = 1) -> UsageMetric:
        _require_metric(metric)
        if delta < 1:
            raise ValidationError("delta must be at least 1")
        if await self.cap_plan(user_id) is None:
            USAGE_LIMIT_REJECTIONS.labels(metric=metric).inc()
            raise LimitReachedError(NO_SUBSCRIPTION_MESSAGE)
        await self._metric(user_id, metric)
        updated = await self._usage.try_increment(user_id, metric, delta)
        if updated is None:
            USAGE_LIMIT_REJECTIONS.labels(metric=metric).inc()
            row = await self._metric(user_id, metric)
            logger.info(
                "Usage limit reached: user=%s metric=%s current=%d limit=%d",
                user_id,
                metric,
                row.current_value,
                row.current_limit,
            )
            raise LimitReachedError(
                f"Usage limit exceeded. Current: {row.current_value}, "
                f"Limit: {row.current_limit}"
            )
        return updated

    async def decrement(self, user_id: str, metric: str, delta: int = 1) -> UsageMetric:
        _require_metric(metric)
        if delta < 1:
            raise ValidationError("delta must be at least 1")
        updated = await self._usage.decrement(user_id, metric, delta)
        return updated or await self._metric(user_id, metric)

    async def reset_period(self, user_id: str) -> list[UsageMetric]:
        reset = await self._usage.reset_period(user_id)
        logger.info("Usage period reset: user=%s metrics=%d", user_id, len(reset))
        return reset

    async def list_usage(self, user_id: str) -> list[UsageMetric]:
        rows = await self._usage.list_for_user(user_id)
        if len(rows) < len(METRIC_TYPES):
            await self.sync_limits(user_id)
            rows = await self._usage.list_for_user(user_id)
        return rows
