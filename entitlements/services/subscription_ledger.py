"""Subscription Ledger: user and organization subscriptions and their lifecycle.

PRIMARY SUBSCRIPTION
---------------------
A user may hold several active rows at once: one personal subscription
plus any number of seats assigned from bulk batches.  The primary is
chosen by plan_catalog.select_primary (plan priority, then terminal cap,
then name; personal beats assigned on a tie).  It drives usage caps; the
feature set callers see is the union over every active row.

PROVIDER-BACKED CHANGES
------------------------
Every change that touches the payment provider runs in three steps:

  1. prepare   read the current rows and build the intended new state
  2. provider  call the provider, unlocked, bounded by the deadline
  3. commit    under the per-user lock and one unit of work: write the
               ledger rows with compare-and-set on status, rewrite usage
               limits, then adjust role groupings

A provider error leaves the ledger untouched.  A provider timeout, or a
commit that loses its compare-and-set after the provider already
succeeded, enqueues a subscription_reconciliation task; the worker later
re-reads the provider subscription and feeds it to apply_provider_update.
When a brand-new paid subscription times out, its row is stored as
``incomplete`` so reconciliation has something to complete.

ROLE SYNC
----------
A plan may name a ``required_role``.  While some active subscription of
the user is on such a plan, the user holds that role as a Policy Store
grouping; roles conferred by plans the user no longer holds are removed.
Roles that no plan confers are never touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from uuid import UUID

from entitlements.core.errors import (
    ConflictError,
    DeadlineExceededError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from entitlements.db.engine import unit_of_work
from entitlements.models.plan import SubscriptionPlan
from entitlements.models.principal import Principal
from entitlements.models.subscription import (
    ACTIVE_STATUSES,
    PRORATION_BEHAVIORS,
    SUBSCRIPTION_STATUSES,
    Assigned,
    OrganizationSubscription,
    Personal,
    SubscriptionSource,
    UserSubscription,
)
from entitlements.repos.org_subscription_repo import OrgSubscriptionRepo
from entitlements.repos.user_subscription_repo import UserSubscriptionRepo
from entitlements.services.identity import IdentityProvider
from entitlements.services.locks import KeyedLocks
from entitlements.services.membership import MembershipGraph
from entitlements.services.payment_provider import (
    PaymentProvider,
    ProviderNotFoundError,
    ProviderSubscription,
    call_provider,
)
from entitlements.services.permissions import PermissionGrants
from entitlements.services.plan_catalog import PlanCatalog, select_primary
from entitlements.services.policy_store import PolicyStore
from entitlements.services.task_queue import SUBSCRIPTION_RECONCILIATION, TaskQueue
from entitlements.services.usage_meter import UsageMeter

logger = logging.getLogger(__name__)

USER_SUBSCRIPTION_KEY = "user_subscription_id"
ORG_SUBSCRIPTION_KEY = "org_subscription_id"

# Every status except the terminal one.
_LIVE_STATUSES = frozenset(SUBSCRIPTION_STATUSES) - {"cancelled"}

_PROVIDER_STATUS = {
    "canceled": "cancelled",
    "unpaid": "past_due",
    "incomplete_expired": "cancelled",
    "paused": "past_due",
}


def ledger_status(provider_status: str) -> str | None:
    """Map a provider status to ours; None when it has no counterpart."""
    status = _PROVIDER_STATUS.get(provider_status, provider_status)
    return status if status in SUBSCRIPTION_STATUSES else None


@dataclass(frozen=True, slots=True)
class CheckoutResult:
    subscription: UserSubscription | OrganizationSubscription | None
    checkout_url: str | None = None
    session_id: str | None = None


class SubscriptionLedger:
    def __init__(
        self,
        subscriptions: UserSubscriptionRepo,
        org_subscriptions: OrgSubscriptionRepo,
        catalog: PlanCatalog,
        usage: UsageMeter,
        membership: MembershipGraph,
        provider: PaymentProvider,
        identity: IdentityProvider,
        store: PolicyStore,
        grants: PermissionGrants,
        tasks: TaskQueue,
        locks: KeyedLocks,
        *,
        provider_timeout: float,
    ) -> None:
        self._subs = subscriptions
        self._org_subs = org_subscriptions
        self._catalog = catalog
        self._usage = usage
        self._membership = membership
        self._provider = provider
        self._identity = identity
        self._store = store
        self._grants = grants
        self._tasks = tasks
        self._locks = locks
        self._timeout = provider_timeout

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_subscription(self, subscription_id: UUID) -> UserSubscription:
        sub = await self._subs.get(subscription_id)
        if sub is None:
            raise NotFoundError("Subscription not found")
        return sub

    async def get_all_active(self, user_id: str) -> list[UserSubscription]:
        return await self._subs.list_by_user(user_id, active_only=True)

    async def list_history(self, user_id: str) -> list[UserSubscription]:
        return await self._subs.list_by_user(user_id, active_only=False)

    async def get_primary_user_subscription(
        self, user_id: str
    ) -> UserSubscription | None:
        subs = await self.get_all_active(user_id)
        plans = await self._catalog.plans_for(s.plan_id for s in subs)
        return select_primary(subs, plans)

    async def primary_feature_set(self, user_id: str) -> tuple[str, ...]:
        """Features of every active row, primary first, duplicates collapsed."""
        subs = await self.get_all_active(user_id)
        plans = await self._catalog.plans_for(s.plan_id for s in subs)
        primary = select_primary(subs, plans)
        ordered = sorted(subs, key=lambda s: s is not primary)
        features: dict[str, None] = {}
        for sub in ordered:
            if sub.plan_id in plans:
                features.update(dict.fromkeys(plans[sub.plan_id].features))
        return tuple(features)

    async def _personal_primary(
        self, user_id: str
    ) -> tuple[UserSubscription | None, SubscriptionPlan | None]:
        subs = [s for s in await self.get_all_active(user_id) if not s.is_assigned]
        plans = await self._catalog.plans_for(s.plan_id for s in subs)
        primary = select_primary(subs, plans)
        if primary is None:
            return None, None
        return primary, plans[primary.plan_id]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_user_subscription(
        self,
        user_id: str,
        plan: SubscriptionPlan,
        source: SubscriptionSource | None = None,
        **fields,
    ) -> UserSubscription:
        """Store a new row and, when it is active, apply its side effects.

        Free plans and seats assigned from a (paid) batch start active;
        any other paid plan starts ``incomplete`` until the provider
        confirms payment.
        """
        source = source or Personal()
        active = plan.is_free or isinstance(source, Assigned)
        sub = UserSubscription.new(
            user_id=user_id,
            plan_id=plan.id,
            status="active" if active else "incomplete",
            source=source,
            **fields,
        )
        async with self._locks.hold(user_id), unit_of_work():
            await self._subs.add(sub)
            if sub.is_active:
                await self._after_change(user_id)
        if sub.is_active:
            await self._grants.grant_subscription(
                sub.id, user_id, assigned=sub.is_assigned
            )
        logger.info(
            "User subscription created: id=%s user=%s plan=%s status=%s source=%s",
            sub.id,
            user_id,
            plan.name,
            sub.status,
            source.kind,
        )
        return sub

    async def checkout(
        self,
        user_id: str,
        plan_id: UUID,
        *,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutResult:
        """Start a personal subscription.

        A free plan is activated on the spot.  A paid plan returns a hosted
        checkout URL; the row stays ``incomplete`` until the provider's
        checkout-completed event arrives.
        """
        plan = await self._require_active_plan(plan_id)
        current, current_plan = await self._personal_primary(user_id)

        if plan.is_free:
            if current is not None:
                raise ConflictError(
                    "User already has an active subscription",
                    code="ALREADY_SUBSCRIBED",
                )
            sub = await self.create_user_subscription(user_id, plan)
            return CheckoutResult(subscription=sub)

        if current_plan is not None and not current_plan.is_free:
            raise ConflictError(
                "User already has a paid subscription; use upgrade instead",
                code="ALREADY_SUBSCRIBED",
            )
        pending = UserSubscription.new(
            user_id=user_id,
            plan_id=plan.id,
            status="incomplete",
            replaces_subscription_id=current.id if current else None,
        )
        customer_id = await self._customer_for(user_id)
        session = await call_provider(
            "create_checkout_session",
            self._provider.create_checkout_session(
                customer_id=customer_id,
                price_id=self._price_id(plan),
                quantity=1,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=self._metadata(pending),
                trial_days=plan.trial_days,
            ),
            self._timeout,
        )
        async with unit_of_work():
            await self._subs.add(replace(pending, provider_customer_id=customer_id))
        logger.info(
            "Checkout started: user=%s plan=%s subscription=%s session=%s",
            user_id,
            plan.name,
            pending.id,
            session.id,
        )
        return CheckoutResult(
            subscription=await self._subs.get(pending.id),
            checkout_url=session.url,
            session_id=session.id,
        )

    async def grant_plan(
        self, user_id: str, plan_id: UUID, admin: Principal
    ) -> UserSubscription:
        """Administrator grant: an active personal row with no provider behind it."""
        if not admin.is_admin():
            raise PermissionDeniedError("Only administrators can grant plans")
        plan = await self._require_active_plan(plan_id)
        await self._identity.get_user(user_id)
        current, current_plan = await self._personal_primary(user_id)
        sub = UserSubscription.new(
            user_id=user_id,
            plan_id=plan.id,
            status="active",
            replaces_subscription_id=current.id if current else None,
        )
        async with self._locks.hold(user_id), unit_of_work():
            await self._subs.add(sub)
            if current is not None and current.provider_subscription_id is None:
                await self._subs.compare_and_set(
                    current.id,
                    ACTIVE_STATUSES,
                    status="cancelled",
                    cancelled_at=datetime.now(UTC),
                )
            await self._after_change(user_id)
        await self._grants.grant_subscription(sub.id, user_id, assigned=False)
        logger.info(
            "Plan granted by administrator: admin=%s user=%s plan=%s",
            admin.user_id,
            user_id,
            plan.name,
        )
        return sub

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    async def upgrade(
        self,
        user_id: str,
        new_plan_id: UUID,
        proration_behavior: str = "create_prorations",
    ) -> UserSubscription:
        """Move the user's personal subscription to ``new_plan_id``.

        free/none -> paid   replace_free_with
        paid -> paid        provider update, then ledger row update
        paid -> free        downgrade_to_free
        """
        if proration_behavior not in PRORATION_BEHAVIORS:
            raise ValidationError(
                f"proration_behavior must be one of {', '.join(PRORATION_BEHAVIORS)}"
            )
        new_plan = await self._require_active_plan(new_plan_id)
        current, current_plan = await self._personal_primary(user_id)

        if current is not None and current.plan_id == new_plan.id:
            raise ConflictError(
                f"Already subscribed to {new_plan.name}", code="ALREADY_SUBSCRIBED"
            )
        if new_plan.is_free:
            return await self.downgrade_to_free(user_id, new_plan.id)
        if current is None or current_plan is None or current_plan.is_free:
            return await self.replace_free_with(user_id, new_plan.id)
        if current.provider_subscription_id is None:
            raise StateError("Current subscription is not managed by the payment provider")

        try:
            updated = await call_provider(
                "update_subscription",
                self._provider.update_subscription(
                    current.provider_subscription_id,
                    price_id=self._price_id(new_plan),
                    proration_behavior=proration_behavior,
                ),
                self._timeout,
            )
        except DeadlineExceededError:
            await self._enqueue_reconciliation(
                USER_SUBSCRIPTION_KEY, current.id, current.provider_subscription_id
            )
            raise

        async with self._locks.hold(user_id), unit_of_work():
            row = await self._subs.compare_and_set(
                current.id,
                ACTIVE_STATUSES | {"past_due"},
                plan_id=new_plan.id,
                current_period_start=updated.current_period_start
                or current.current_period_start,
                current_period_end=updated.current_period_end
                or current.current_period_end,
            )
            if row is not None:
                await self._after_change(user_id)
        if row is None:
            await self._enqueue_reconciliation(
                USER_SUBSCRIPTION_KEY, current.id, current.provider_subscription_id
            )
            raise StateError("Subscription changed while upgrading; it will be reconciled")
        logger.info(
            "Subscription upgraded: user=%s %s->%s proration=%s",
            user_id,
            current_plan.name,
            new_plan.name,
            proration_behavior,
        )
        return row

    async def replace_free_with(
        self, user_id: str, new_plan_id: UUID
    ) -> UserSubscription:
        """Swap a free (or missing) personal subscription for a paid one."""
        new_plan = await self._require_active_plan(new_plan_id)
        if new_plan.is_free:
            raise ValidationError("replacement plan must be a paid plan")
        current, current_plan = await self._personal_primary(user_id)
        if current_plan is not None and not current_plan.is_free:
            raise StateError("Current plan is paid; use upgrade instead")

        pending = UserSubscription.new(
            user_id=user_id,
            plan_id=new_plan.id,
            status="incomplete",
            replaces_subscription_id=current.id if current else None,
        )
        customer_id = await self._customer_for(user_id)
        try:
            created = await call_provider(
                "create_subscription",
                self._provider.create_subscription(
                    customer_id=customer_id,
                    price_id=self._price_id(new_plan),
                    metadata=self._metadata(pending),
                    trial_days=new_plan.trial_days,
                ),
                self._timeout,
            )
        except DeadlineExceededError:
            async with unit_of_work():
                await self._subs.add(replace(pending, provider_customer_id=customer_id))
            await self._enqueue_reconciliation(USER_SUBSCRIPTION_KEY, pending.id, None)
            raise

        status = ledger_status(created.status) or "incomplete"
        row = replace(
            pending,
            status=status,
            provider_subscription_id=created.id,
            provider_customer_id=customer_id,
            current_period_start=created.current_period_start,
            current_period_end=created.current_period_end,
        )
        async with self._locks.hold(user_id), unit_of_work():
            await self._subs.add(row)
            if row.is_active:
                if current is not None:
                    await self._subs.compare_and_set(
                        current.id,
                        ACTIVE_STATUSES,
                        status="cancelled",
                        cancelled_at=datetime.now(UTC),
                    )
                # An incomplete row waits for checkout completion to sync.
                await self._after_change(user_id)
        if row.is_active:
            await self._grants.grant_subscription(row.id, user_id, assigned=False)
        logger.info(
            "Free plan replaced: user=%s plan=%s status=%s provider=%s",
            user_id,
            new_plan.name,
            row.status,
            created.id,
        )
        return row

    async def downgrade_to_free(
        self, user_id: str, free_plan_id: UUID
    ) -> UserSubscription:
        """Cancel the paid subscription provider-side first, then swap rows."""
        free_plan = await self._require_active_plan(free_plan_id)
        if not free_plan.is_free:
            raise ValidationError("downgrade target must be a free plan")
        current, current_plan = await self._personal_primary(user_id)
        if current is None or current_plan is None or current_plan.is_free:
            raise StateError("No paid subscription to downgrade from")

        if current.provider_subscription_id:
            await self._provider_cancel(current.provider_subscription_id, immediate=True)

        replacement = UserSubscription.new(
            user_id=user_id,
            plan_id=free_plan.id,
            status="active",
            replaces_subscription_id=current.id,
        )
        async with self._locks.hold(user_id), unit_of_work():
            await self._subs.compare_and_set(
                current.id,
                _LIVE_STATUSES,
                status="cancelled",
                cancelled_at=datetime.now(UTC),
            )
            await self._subs.add(replacement)
            await self._after_change(user_id)
        await self._grants.grant_subscription(replacement.id, user_id, assigned=False)
        logger.info(
            "Subscription downgraded: user=%s %s->%s",
            user_id,
            current_plan.name,
            free_plan.name,
        )
        return replacement

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(
        self, subscription_id: UUID, user_id: str, *, immediate: bool = False
    ) -> UserSubscription:
        """Holder-initiated cancel of a personal subscription."""
        sub = await self.get_subscription(subscription_id)
        if sub.user_id != user_id:
            raise NotFoundError("Subscription not found")
        if sub.is_assigned:
            raise StateError("Assigned licenses are revoked by their purchaser")
        if sub.status == "cancelled":
            return sub
        if sub.provider_subscription_id:
            await self._provider_cancel(sub.provider_subscription_id, immediate=immediate)
            if not immediate:
                row = await self._subs.compare_and_set(
                    sub.id, _LIVE_STATUSES, cancel_at_period_end=True
                )
                logger.info("Cancellation scheduled at period end: subscription=%s", sub.id)
                return row or await self.get_subscription(sub.id)
        row, _ = await self.cancel_row(sub)
        return row

    async def cancel_row(
        self, sub: UserSubscription
    ) -> tuple[UserSubscription, bool]:
        """Flip a row to cancelled with no provider call (free rows, revoked seats).

        The flag is False when the row was no longer live, i.e. another
        caller cancelled it first; callers release per-row resources such
        as a batch seat only when it is True.
        """
        async with self._locks.hold(sub.user_id), unit_of_work():
            row = await self._subs.compare_and_set(
                sub.id,
                _LIVE_STATUSES,
                status="cancelled",
                cancelled_at=datetime.now(UTC),
                cancel_at_period_end=False,
            )
            if row is not None:
                await self._after_change(sub.user_id)
        if row is None:
            return await self.get_subscription(sub.id), False
        logger.info("Subscription cancelled: id=%s user=%s", sub.id, sub.user_id)
        return row, True

    async def reactivate(self, subscription_id: UUID, user_id: str) -> UserSubscription:
        sub = await self.get_subscription(subscription_id)
        if sub.user_id != user_id:
            raise NotFoundError("Subscription not found")
        if not (sub.is_active and sub.cancel_at_period_end):
            raise StateError("Only a subscription scheduled for cancellation can be reactivated")
        if sub.provider_subscription_id:
            await call_provider(
                "reactivate_subscription",
                self._provider.reactivate_subscription(sub.provider_subscription_id),
                self._timeout,
            )
        row = await self._subs.compare_and_set(
            sub.id, ACTIVE_STATUSES, cancel_at_period_end=False
        )
        if row is None:
            raise StateError("Subscription is no longer active")
        logger.info("Subscription reactivated: id=%s", sub.id)
        return row

    async def _provider_cancel(self, provider_subscription_id: str, *, immediate: bool) -> None:
        try:
            await call_provider(
                "cancel_subscription",
                self._provider.cancel_subscription(
                    provider_subscription_id, at_period_end=not immediate
                ),
                self._timeout,
            )
        except ProviderNotFoundError:
            logger.info(
                "Provider subscription already gone, treating as cancelled: %s",
                provider_subscription_id,
            )

    # ------------------------------------------------------------------
    # Organization subscriptions
    # ------------------------------------------------------------------

    async def get_org_subscription(self, org_id: UUID) -> OrganizationSubscription | None:
        await self._membership.get_org(org_id)
        return await self._org_subs.get_active_for_org(org_id)

    async def subscribe_org(
        self,
        org_id: UUID,
        plan_id: UUID,
        actor: Principal,
        *,
        quantity: int = 1,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutResult:
        org = await self._membership.get_org(org_id)
        if not actor.is_admin() and actor.user_id != org.owner_user_id:
            raise PermissionDeniedError("Only the organization owner can subscribe")
        if quantity < 1:
            raise ValidationError("quantity must be at least 1", code="INVALID_QUANTITY")
        plan = await self._require_active_plan(plan_id)
        if await self._org_subs.get_active_for_org(org.id) is not None:
            raise ConflictError(
                "Organization already has an active subscription",
                code="ALREADY_SUBSCRIBED",
            )

        sub = OrganizationSubscription.new(
            organization_id=org.id,
            plan_id=plan.id,
            status="active" if plan.is_free else "incomplete",
            quantity=quantity,
            created_by=actor.user_id,
        )
        if plan.is_free:
            try:
                await self._org_subs.add(sub)
            except ValueError as exc:
                raise ConflictError(str(exc), code="ALREADY_SUBSCRIBED") from exc
            await self._sync_org_members(org.id)
            logger.info("Org subscribed: org=%s plan=%s", org.id, plan.name)
            return CheckoutResult(subscription=sub)

        customer_id = await self._customer_for(actor.user_id)
        session = await call_provider(
            "create_checkout_session",
            self._provider.create_checkout_session(
                customer_id=customer_id,
                price_id=self._price_id(plan),
                quantity=quantity,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={
                    ORG_SUBSCRIPTION_KEY: str(sub.id),
                    "organization_id": str(org.id),
                    "plan_id": str(plan.id),
                },
                trial_days=plan.trial_days,
            ),
            self._timeout,
        )
        await self._org_subs.add(replace(sub, provider_customer_id=customer_id))
        logger.info(
            "Org checkout started: org=%s plan=%s session=%s", org.id, plan.name, session.id
        )
        return CheckoutResult(
            subscription=await self._org_subs.get(sub.id),
            checkout_url=session.url,
            session_id=session.id,
        )

    async def cancel_org_subscription(
        self, org_id: UUID, actor: Principal
    ) -> OrganizationSubscription:
        org = await self._membership.get_org(org_id)
        if not actor.is_admin() and actor.user_id != org.owner_user_id:
            raise PermissionDeniedError("Only the organization owner can cancel")
        sub = await self._org_subs.get_active_for_org(org.id)
        if sub is None:
            raise NotFoundError("Organization has no active subscription")
        if sub.provider_subscription_id:
            await self._provider_cancel(sub.provider_subscription_id, immediate=True)
        row = await self._org_subs.compare_and_set(
            sub.id, _LIVE_STATUSES, status="cancelled", cancelled_at=datetime.now(UTC)
        )
        await self._sync_org_members(org.id)
        logger.info("Org subscription cancelled: org=%s", org.id)
        return row or sub

    async def _sync_org_members(self, org_id: UUID) -> None:
        for member in await self._membership.all_org_members(org_id):
            await self._usage.sync_limits(member.user_id)

    # ------------------------------------------------------------------
    # Provider-driven updates (webhooks and reconciliation)
    # ------------------------------------------------------------------

    async def apply_provider_update(
        self, remote: ProviderSubscription, metadata: dict[str, str] | None = None
    ) -> bool:
        """Bring local user/org rows in line with a provider subscription.

        Rows are found by provider id, or by the local id the provider
        carries in metadata.  Returns False when nothing local matched.
        """
        metadata = {**remote.metadata, **(metadata or {})}
        matched = False

        user_rows = await self._subs.list_by_provider_id(remote.id)
        local_id = metadata.get(USER_SUBSCRIPTION_KEY)
        if not user_rows and local_id:
            row = await self._subs.get(UUID(local_id))
            if row is None:
                row = await self._adopt_user_row(remote, metadata)
            if row is not None:
                user_rows = [row]
        for row in user_rows:
            await self._apply_to_user_row(row, remote)
            matched = True

        org_rows = await self._org_subs.list_by_provider_id(remote.id)
        org_local = metadata.get(ORG_SUBSCRIPTION_KEY)
        if not org_rows and org_local:
            row = await self._org_subs.get(UUID(org_local))
            if row is not None:
                org_rows = [row]
        for org_row in org_rows:
            await self._apply_to_org_row(org_row, remote)
            matched = True
        return matched

    async def _adopt_user_row(
        self, remote: ProviderSubscription, metadata: dict[str, str]
    ) -> UserSubscription | None:
        # The provider holds a subscription our ledger never stored (the
        # checkout response was lost).  Recreate the row from metadata.
        try:
            user_id = metadata["user_id"]
            plan = await self._catalog.get_plan(UUID(metadata["plan_id"]))
            local_id = UUID(metadata[USER_SUBSCRIPTION_KEY])
        except (KeyError, ValueError, NotFoundError):
            logger.warning("Provider subscription without usable metadata: %s", remote.id)
            return None
        row = UserSubscription(
            id=local_id,
            user_id=user_id,
            plan_id=plan.id,
            status="incomplete",
            provider_customer_id=remote.customer_id,
        )
        await self._subs.add(row)
        logger.info("Adopted provider subscription: provider=%s local=%s", remote.id, local_id)
        return row

    async def _apply_to_user_row(
        self, row: UserSubscription, remote: ProviderSubscription
    ) -> None:
        status = ledger_status(remote.status)
        if status is None:
            logger.info("Ignoring provider status %s for %s", remote.status, row.id)
            return
        changes: dict = {
            "status": status,
            "provider_subscription_id": remote.id,
            "provider_customer_id": remote.customer_id or row.provider_customer_id,
            "current_period_start": remote.current_period_start or row.current_period_start,
            "current_period_end": remote.current_period_end or row.current_period_end,
            "cancel_at_period_end": remote.cancel_at_period_end,
        }
        if status == "cancelled":
            changes["cancelled_at"] = remote.canceled_at or datetime.now(UTC)
        if remote.price_id and not row.is_assigned:
            plan = await self._catalog.find_by_price_id(remote.price_id)
            if plan is not None:
                changes["plan_id"] = plan.id

        async with self._locks.hold(row.user_id), unit_of_work():
            updated = await self._subs.compare_and_set(row.id, _LIVE_STATUSES, **changes)
            if updated is None:
                return
            if updated.is_active and updated.replaces_subscription_id:
                await self._subs.compare_and_set(
                    updated.replaces_subscription_id,
                    ACTIVE_STATUSES,
                    status="cancelled",
                    cancelled_at=datetime.now(UTC),
                )
            await self._after_change(row.user_id)
        if updated.is_active and not row.is_active:
            await self._grants.grant_subscription(
                updated.id, updated.user_id, assigned=updated.is_assigned
            )
        logger.info(
            "User subscription updated from provider: id=%s %s->%s",
            row.id,
            row.status,
            updated.status,
        )

    async def _apply_to_org_row(
        self, row: OrganizationSubscription, remote: ProviderSubscription
    ) -> None:
        status = ledger_status(remote.status)
        if status is None:
            return
        changes: dict = {
            "status": status,
            "provider_subscription_id": remote.id,
            "quantity": remote.quantity or row.quantity,
            "current_period_start": remote.current_period_start or row.current_period_start,
            "current_period_end": remote.current_period_end or row.current_period_end,
            "cancel_at_period_end": remote.cancel_at_period_end,
        }
        if status == "cancelled":
            changes["cancelled_at"] = remote.canceled_at or datetime.now(UTC)
        updated = await self._org_subs.compare_and_set(row.id, _LIVE_STATUSES, **changes)
        if updated is not None:
            await self._sync_org_members(row.organization_id)
            logger.info(
                "Org subscription updated from provider: id=%s %s->%s",
                row.id,
                row.status,
                updated.status,
            )

    async def renew_period(
        self,
        provider_subscription_id: str,
        period_start: datetime | None,
        period_end: datetime | None,
    ) -> int:
        """Invoice paid: roll the billing period and reset period-scoped usage."""
        renewed = 0
        for row in await self._subs.list_by_provider_id(provider_subscription_id):
            changes: dict = {"status": "active"}
            if period_start:
                changes["current_period_start"] = period_start
            if period_end:
                changes["current_period_end"] = period_end
            async with self._locks.hold(row.user_id), unit_of_work():
                updated = await self._subs.compare_and_set(
                    row.id, ACTIVE_STATUSES | {"past_due"}, **changes
                )
                if updated is None:
                    continue
                if period_start and period_start != row.current_period_start:
                    await self._usage.reset_period(row.user_id)
                await self._after_change(row.user_id)
            renewed += 1
        return renewed

    async def mark_past_due(self, provider_subscription_id: str) -> int:
        marked = 0
        for row in await self._subs.list_by_provider_id(provider_subscription_id):
            async with self._locks.hold(row.user_id), unit_of_work():
                if await self._subs.compare_and_set(row.id, ACTIVE_STATUSES, status="past_due"):
                    await self._after_change(row.user_id)
                    marked += 1
        for org_row in await self._org_subs.list_by_provider_id(provider_subscription_id):
            if await self._org_subs.compare_and_set(
                org_row.id, ACTIVE_STATUSES, status="past_due"
            ):
                await self._sync_org_members(org_row.organization_id)
                marked += 1
        if marked:
            logger.warning("Payment failed, marked past_due: provider=%s", provider_subscription_id)
        return marked

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _after_change(self, user_id: str) -> None:
        """Usage limits first, then role groupings."""
        await self._usage.sync_limits(user_id)
        await self._sync_roles(user_id)

    async def _sync_roles(self, user_id: str) -> None:
        managed = await self._catalog.required_roles()
        if not managed:
            return
        subs = await self.get_all_active(user_id)
        plans = await self._catalog.plans_for(s.plan_id for s in subs)
        wanted = {p.required_role for p in plans.values() if p.required_role}
        held = self._store.roles_for(user_id)
        for role in sorted((managed - wanted) & held):
            await self._grants.revoke_role(user_id, role)
            logger.info("Plan role removed: user=%s role=%s", user_id, role)
        for role in sorted(wanted - held):
            await self._grants.grant_role(user_id, role)
            logger.info("Plan role granted: user=%s role=%s", user_id, role)

    async def _require_active_plan(self, plan_id: UUID) -> SubscriptionPlan:
        plan = await self._catalog.get_plan(plan_id)
        if not plan.is_active:
            raise StateError(f"Plan {plan.name} is no longer available")
        return plan

    async def _customer_for(self, user_id: str) -> str:
        user = await self._identity.get_user(user_id)
        return await call_provider(
            "ensure_customer",
            self._provider.ensure_customer(user.id, user.email),
            self._timeout,
        )

    async def _enqueue_reconciliation(
        self, key: str, local_id: UUID, provider_subscription_id: str | None
    ) -> None:
        await self._tasks.enqueue(
            SUBSCRIPTION_RECONCILIATION,
            {
                "metadata_key": key,
                "local_id": str(local_id),
                "provider_subscription_id": provider_subscription_id,
            },
        )
        logger.warning(
            "Reconciliation queued: %s=%s provider=%s",
            key,
            local_id,
            provider_subscription_id,
        )

    @staticmethod
    def _price_id(plan: SubscriptionPlan) -> str:
        if not plan.provider_price_id:
            raise StateError(f"Plan {plan.name} has no provider price configured")
        return plan.provider_price_id

    @staticmethod
    def _metadata(sub: UserSubscription) -> dict[str, str]:
        return {
            USER_SUBSCRIPTION_KEY: str(sub.id),
            "user_id": sub.user_id,
            "plan_id": str(sub.plan_id),
        }

