"""Batch Manager: bulk licenses bought by one purchaser, handed out as seats.

Seat accounting lives in the batch row (total_quantity, assigned_quantity)
and only moves through the repository's conditional updates, so
0 <= assigned <= total holds whatever interleaving of assign/revoke runs.
Each assigned seat is a UserSubscription with an Assigned source.

Paid batches go through the provider's hosted checkout and stay
``incomplete`` until the checkout-completed event activates them.  A batch
linked to a group hands seats to the group's active members on activation
and to every member who joins later, while seats remain.  The purchaser
never receives a seat from their own batch.

Seats survive the purchaser's own plan changes; they end when revoked or
when the batch itself is cancelled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from entitlements.core.errors import (
    ConflictError,
    DeadlineExceededError,
    NotFoundError,
    StateError,
    ValidationError,
)
from entitlements.db.engine import unit_of_work
from entitlements.models.batch import SubscriptionBatch
from entitlements.models.bulk import BulkReport
from entitlements.models.principal import Principal
from entitlements.models.subscription import Assigned, UserSubscription
from entitlements.repos.batch_repo import PAGE_SIZE, BatchRepo
from entitlements.repos.user_subscription_repo import UserSubscriptionRepo
from entitlements.services.domain_events import GroupMemberAdded
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
from entitlements.services.plan_catalog import PlanCatalog
from entitlements.services.subscription_ledger import SubscriptionLedger, ledger_status
from entitlements.services.task_queue import SUBSCRIPTION_RECONCILIATION, TaskQueue

logger = logging.getLogger(__name__)

BATCH_KEY = "batch_id"

_SEATS_IN_USE = "Batch still has assigned licenses; revoke them or cancel the batch first"


@dataclass(frozen=True, slots=True)
class BatchLicenses:
    batch: SubscriptionBatch
    licenses: tuple[UserSubscription, ...]

    @property
    def pool(self) -> int:
        return self.batch.available_quantity


@dataclass(frozen=True, slots=True)
class BatchPurchase:
    batch: SubscriptionBatch
    checkout_url: str | None = None
    session_id: str | None = None


class BatchManager:
    def __init__(
        self,
        batches: BatchRepo,
        subscriptions: UserSubscriptionRepo,
        ledger: SubscriptionLedger,
        catalog: PlanCatalog,
        membership: MembershipGraph,
        provider: PaymentProvider,
        identity: IdentityProvider,
        grants: PermissionGrants,
        tasks: TaskQueue,
        locks: KeyedLocks,
        *,
        provider_timeout: float,
    ) -> None:
        self._batches = batches
        self._subs = subscriptions
        self._ledger = ledger
        self._catalog = catalog
        self._membership = membership
        self._provider = provider
        self._identity = identity
        self._grants = grants
        self._tasks = tasks
        self._locks = locks
        self._timeout = provider_timeout

    # --- reads ---

    async def get_batch(self, batch_id: UUID, actor: Principal) -> SubscriptionBatch:
        batch = await self._batches.get(batch_id)
        # Someone else's batch looks exactly like a missing one.
        if batch is None or not (
            actor.is_admin() or batch.purchaser_user_id == actor.user_id
        ):
            raise NotFoundError("Subscription batch not found")
        return batch

    async def list_batches(
        self, purchaser_user_id: str, *, offset: int = 0, limit: int = PAGE_SIZE
    ) -> list[SubscriptionBatch]:
        return await self._batches.list_by_purchaser(
            purchaser_user_id, offset=offset, limit=limit
        )

    async def list_licenses(self, batch_id: UUID, actor: Principal) -> BatchLicenses:
        batch = await self.get_batch(batch_id, actor)
        licenses = await self._subs.list_by_batch(batch.id)
        return BatchLicenses(batch=batch, licenses=tuple(licenses))

    # --- purchase ---

    async def purchase_batch(
        self,
        purchaser: Principal,
        plan_id: UUID,
        quantity: int,
        *,
        group_id: UUID | None = None,
        success_url: str,
        cancel_url: str,
    ) -> BatchPurchase:
        """Buy ``quantity`` seats.  Bulk-purchase permission is checked by the caller."""
        if quantity < 1:
            raise ValidationError("quantity must be at least 1", code="INVALID_QUANTITY")
        plan = await self._catalog.get_plan(plan_id)
        if not plan.is_active:
            raise StateError(f"Plan {plan.name} is no longer available")
        if group_id is not None:
            group = await self._membership.get_group(group_id)
            await self._membership.require_group_admin(group, purchaser)

        batch = SubscriptionBatch.new(
            purchaser_user_id=purchaser.user_id,
            plan_id=plan.id,
            total_quantity=quantity,
            status="active" if plan.is_free else "incomplete",
            group_id=group_id,
        )
        if plan.is_free:
            await self._batches.add(batch)
            await self._grants.grant_batch_purchaser(batch.id, purchaser.user_id)
            logger.info(
                "Batch created: id=%s purchaser=%s plan=%s quantity=%d",
                batch.id,
                purchaser.user_id,
                plan.name,
                quantity,
            )
            await self._preassign(batch)
            return BatchPurchase(batch=await self._batches.get(batch.id) or batch)

        if not plan.provider_price_id:
            raise StateError(f"Plan {plan.name} has no provider price configured")
        user = await self._identity.get_user(purchaser.user_id)
        customer_id = await call_provider(
            "ensure_customer",
            self._provider.ensure_customer(user.id, user.email),
            self._timeout,
        )
        session = await call_provider(
            "create_checkout_session",
            self._provider.create_checkout_session(
                customer_id=customer_id,
                price_id=plan.provider_price_id,
                quantity=quantity,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={
                    BATCH_KEY: str(batch.id),
                    "user_id": purchaser.user_id,
                    "plan_id": str(plan.id),
                },
            ),
            self._timeout,
        )
        await self._batches.add(batch)
        await self._grants.grant_batch_purchaser(batch.id, purchaser.user_id)
        logger.info(
            "Batch checkout started: id=%s purchaser=%s plan=%s quantity=%d session=%s",
            batch.id,
            purchaser.user_id,
            plan.name,
            quantity,
            session.id,
        )
        return BatchPurchase(batch=batch, checkout_url=session.url, session_id=session.id)

    # --- seats ---

    async def assign(
        self, batch_id: UUID, assignee_user_id: str, actor: Principal
    ) -> UserSubscription:
        batch = await self.get_batch(batch_id, actor)
        await self._identity.get_user(assignee_user_id)
        return await self._assign(batch, assignee_user_id)

    async def _assign(
        self, batch: SubscriptionBatch, assignee_user_id: str
    ) -> UserSubscription:
        if not batch.is_active:
            raise StateError(f"Batch is {batch.status}")
        if assignee_user_id == batch.purchaser_user_id:
            raise ValidationError("The purchaser cannot hold a seat of their own batch")

        async with self._locks.hold(f"batch:{batch.id}"):
            held = await self._subs.list_by_batch(batch.id)
            if any(s.user_id == assignee_user_id and s.is_active for s in held):
                raise ConflictError("User already holds a license from this batch")
            reserved = await self._batches.reserve_seat(batch.id)
            if reserved is None:
                latest = await self._batches.get(batch.id)
                if latest is None or not latest.is_active:
                    raise StateError("Batch is no longer active")
                raise ConflictError(
                    "No licenses available in this batch", code="NO_AVAILABLE_LICENSES"
                )
            plan = await self._catalog.get_plan(batch.plan_id)
            try:
                sub = await self._ledger.create_user_subscription(
                    assignee_user_id,
                    plan,
                    Assigned(batch_id=batch.id, assignor=batch.purchaser_user_id),
                    current_period_start=batch.current_period_start,
                    current_period_end=batch.current_period_end,
                )
            except Exception:
                await self._batches.release_seat(batch.id)
                raise
        logger.info(
            "License assigned: batch=%s user=%s assigned=%d/%d",
            batch.id,
            assignee_user_id,
            reserved.assigned_quantity,
            reserved.total_quantity,
        )
        return sub

    async def assign_bulk(
        self, batch_id: UUID, rows: list[dict[str, str]], actor: Principal
    ) -> BulkReport:
        """Assign one seat per row (``user_id`` or ``email``); rows fail independently."""
        batch = await self.get_batch(batch_id, actor)
        if not batch.is_active:
            raise StateError(f"Batch is {batch.status}")
        report = BulkReport()
        for index, row in enumerate(rows):
            key = row.get("user_id") or row.get("email") or f"row {index + 1}"
            try:
                user_id = await self._membership.resolve_user_id(
                    user_id=row.get("user_id"), email=row.get("email")
                )
                await self._assign(batch, user_id)
            except ConflictError as exc:
                if exc.code == "NO_AVAILABLE_LICENSES":
                    report.error(key, exc.code, exc.message)
                else:
                    report.skipped(key, exc.message)
            except (ValidationError, NotFoundError, StateError) as exc:
                report.error(key, exc.code, exc.message)
            else:
                report.ok(key)
        if report.failed:
            report.warn(f"{report.failed} of {len(rows)} licenses were not assigned")
        return report

    async def revoke(
        self, batch_id: UUID, license_id: UUID, actor: Principal
    ) -> UserSubscription:
        """Take a seat back.  Allowed on a cancelled batch too, for cleanup."""
        batch = await self.get_batch(batch_id, actor)
        async with self._locks.hold(f"batch:{batch.id}"):
            sub = await self._subs.get(license_id)
            if sub is None or sub.batch_id != batch.id:
                raise NotFoundError("License not found")
            if sub.status == "cancelled":
                return sub
            cancelled, changed = await self._ledger.cancel_row(sub)
            if changed:
                await self._batches.release_seat(batch.id)
        if changed:
            logger.info("License revoked: batch=%s user=%s", batch.id, sub.user_id)
        return cancelled

    async def update_quantity(
        self,
        batch_id: UUID,
        new_quantity: int,
        actor: Principal,
        proration_behavior: str = "create_prorations",
    ) -> SubscriptionBatch:
        batch = await self.get_batch(batch_id, actor)
        if not batch.is_active:
            raise StateError(f"Batch is {batch.status}")
        if new_quantity < 1:
            raise ValidationError("quantity must be at least 1", code="INVALID_QUANTITY")
        if new_quantity < batch.assigned_quantity:
            raise ConflictError(
                f"Cannot reduce below the {batch.assigned_quantity} assigned licenses"
            )
        if new_quantity == batch.total_quantity:
            return batch

        if batch.provider_subscription_id:
            try:
                await call_provider(
                    "update_subscription",
                    self._provider.update_subscription(
                        batch.provider_subscription_id,
                        quantity=new_quantity,
                        proration_behavior=proration_behavior,
                    ),
                    self._timeout,
                )
            except DeadlineExceededError:
                await self._enqueue_reconciliation(batch)
                raise

        resized = await self._batches.resize(batch.id, new_quantity)
        if resized is None:
            # Seats were assigned between our read and the resize.
            raise ConflictError("Cannot reduce below the assigned licenses")
        logger.info(
            "Batch resized: id=%s %d->%d", batch.id, batch.total_quantity, new_quantity
        )
        return resized

    async def cancel_batch(self, batch_id: UUID, actor: Principal) -> SubscriptionBatch:
        batch = await self.get_batch(batch_id, actor)
        if batch.status in ("cancelled", "expired"):
            return batch
        await self._cancel_remote(batch)
        return await self._close(batch)

    async def _cancel_remote(self, batch: SubscriptionBatch) -> None:
        if not batch.provider_subscription_id:
            return
        try:
            await call_provider(
                "cancel_subscription",
                self._provider.cancel_subscription(
                    batch.provider_subscription_id, at_period_end=False
                ),
                self._timeout,
            )
        except ProviderNotFoundError:
            logger.info("Provider batch subscription already gone: %s", batch.id)

    async def _close(self, batch: SubscriptionBatch) -> SubscriptionBatch:
        # Held across the status flip and the sweep so no seat lands in between.
        async with self._locks.hold(f"batch:{batch.id}"):
            async with unit_of_work():
                closed = await self._batches.compare_and_set(
                    batch.id,
                    ("active", "incomplete"),
                    status="cancelled",
                    cancelled_at=datetime.now(UTC),
                )
            for sub in await self._subs.list_by_batch(batch.id):
                if sub.status == "cancelled":
                    continue
                _, changed = await self._ledger.cancel_row(sub)
                if changed:
                    await self._batches.release_seat(batch.id)
        logger.info("Batch cancelled: id=%s", batch.id)
        return await self._batches.get(batch.id) or closed or batch

    async def delete_batch(self, batch_id: UUID, actor: Principal) -> None:
        """Delete a batch with no assigned seats, cancelling its provider billing first."""
        batch = await self.get_batch(batch_id, actor)
        async with self._locks.hold(f"batch:{batch.id}"):
            current = await self._batches.get(batch.id) or batch
            if current.assigned_quantity > 0:
                raise StateError(_SEATS_IN_USE)
            if current.status not in ("cancelled", "expired"):
                await self._cancel_remote(current)
            if not await self._batches.delete(batch.id):
                raise StateError(_SEATS_IN_USE)
        await self._grants.purge_batch(batch.id)
        logger.info("Batch deleted: id=%s", batch.id)

    # --- events and provider updates ---

    async def on_group_member_added(self, event: GroupMemberAdded) -> None:
        for batch in await self._batches.list_active_by_group(event.group_id):
            if batch.purchaser_user_id == event.user_id:
                continue
            if batch.available_quantity <= 0:
                continue
            held = await self._subs.list_by_batch(batch.id)
            if any(s.user_id == event.user_id and s.is_active for s in held):
                return
            try:
                await self._assign(batch, event.user_id)
            except (ConflictError, StateError, ValidationError) as exc:
                logger.warning(
                    "Auto-license skipped: group=%s user=%s reason=%s",
                    event.group_id,
                    event.user_id,
                    exc.message,
                )
                continue
            return

    async def _preassign(self, batch: SubscriptionBatch) -> int:
        if batch.group_id is None:
            return 0
        assigned = 0
        for member in await self._membership.all_group_members(batch.group_id):
            current = await self._batches.get(batch.id)
            if current is None or current.available_quantity <= 0:
                break
            if member.user_id == batch.purchaser_user_id:
                continue
            try:
                await self._assign(current, member.user_id)
            except (ConflictError, StateError, ValidationError) as exc:
                logger.warning(
                    "Pre-assign skipped: batch=%s user=%s reason=%s",
                    batch.id,
                    member.user_id,
                    exc.message,
                )
                continue
            assigned += 1
        logger.info("Pre-assigned licenses: batch=%s count=%d", batch.id, assigned)
        return assigned

    async def apply_provider_update(
        self, remote: ProviderSubscription, metadata: dict[str, str] | None = None
    ) -> bool:
        metadata = {**remote.metadata, **(metadata or {})}
        batches = await self._batches.list_by_provider_id(remote.id)
        if not batches and metadata.get(BATCH_KEY):
            found = await self._batches.get(UUID(metadata[BATCH_KEY]))
            batches = [found] if found else []
        for batch in batches:
            await self._apply(batch, remote)
        return bool(batches)

    async def _apply(self, batch: SubscriptionBatch, remote: ProviderSubscription) -> None:
        status = ledger_status(remote.status)
        if status == "cancelled":
            await self._close(batch)
            return
        changes = {
            "provider_subscription_id": remote.id,
            "provider_subscription_item_id": remote.item_id,
            "current_period_start": remote.current_period_start
            or batch.current_period_start,
            "current_period_end": remote.current_period_end or batch.current_period_end,
        }
        if status in ("active", "trialing"):
            changes["status"] = "active"
        updated = await self._batches.compare_and_set(
            batch.id, ("incomplete", "active"), **changes
        )
        if updated is None:
            return
        if batch.status == "incomplete" and updated.is_active:
            logger.info("Batch activated: id=%s provider=%s", batch.id, remote.id)
            await self._preassign(updated)

    async def _enqueue_reconciliation(self, batch: SubscriptionBatch) -> None:
        await self._tasks.enqueue(
            SUBSCRIPTION_RECONCILIATION,
            {
                "metadata_key": BATCH_KEY,
                "local_id": str(batch.id),
                "provider_subscription_id": batch.provider_subscription_id,
            },
        )
        logger.warning("Reconciliation queued: batch=%s", batch.id)
