"""Webhook consumer: payment-provider events in, ledger transitions out.

Events are dicts shaped like the provider's (``id``, ``type``,
``data.object``).  Handling is idempotent on the event id: the id is
claimed before the handler runs and released again if the handler
fails, so a redelivery of a failed event is processed while a
redelivery of a handled one is acknowledged and skipped.

The consumer never trusts the event's copy of a subscription for
checkout completion; it re-reads the subscription from the provider.
Subscription lifecycle events carry the full object and are applied as
delivered.  Reconciliation tasks from the worker enter through
``reconcile``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from entitlements.core.errors import ValidationError
from entitlements.core.metrics import WEBHOOK_EVENTS
from entitlements.repos.payment_event_repo import PaymentEventRepo
from entitlements.services.batch_manager import BatchManager
from entitlements.services.payment_provider import (
    PaymentProvider,
    ProviderSubscription,
    call_provider,
    parse_subscription,
    timestamp,
)
from entitlements.services.subscription_ledger import SubscriptionLedger

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[str]]


class WebhookConsumer:
    def __init__(
        self,
        events: PaymentEventRepo,
        ledger: SubscriptionLedger,
        batches: BatchManager,
        provider: PaymentProvider,
        *,
        provider_timeout: float,
    ) -> None:
        self._events = events
        self._ledger = ledger
        self._batches = batches
        self._provider = provider
        self._timeout = provider_timeout
        self._handlers: dict[str, Handler] = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_changed,
            "customer.subscription.updated": self._subscription_changed,
            "customer.subscription.deleted": self._subscription_changed,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.payment_failed": self._invoice_failed,
        }

    async def handle(self, event: dict[str, Any]) -> str:
        """Process one event; returns the outcome recorded in metrics."""
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise ValidationError("event id and type are required")

        handler = self._handlers.get(event_type)
        if handler is None:
            WEBHOOK_EVENTS.labels(event_type=event_type, outcome="ignored").inc()
            logger.debug("Webhook ignored: id=%s type=%s", event_id, event_type)
            return "ignored"

        if not await self._events.mark_processed(event_id, event_type):
            WEBHOOK_EVENTS.labels(event_type=event_type, outcome="duplicate").inc()
            logger.info("Webhook duplicate: id=%s type=%s", event_id, event_type)
            return "duplicate"

        obj = (event.get("data") or {}).get("object") or {}
        try:
            outcome = await handler(obj)
        except Exception:
            await self._events.release(event_id)
            WEBHOOK_EVENTS.labels(event_type=event_type, outcome="error").inc()
            logger.error(
                "Webhook handling failed: id=%s type=%s", event_id, event_type, exc_info=True
            )
            raise
        WEBHOOK_EVENTS.labels(event_type=event_type, outcome=outcome).inc()
        logger.info("Webhook handled: id=%s type=%s outcome=%s", event_id, event_type, outcome)
        return outcome

    async def _apply(
        self, remote: ProviderSubscription, metadata: dict[str, str] | None = None
    ) -> str:
        matched = await self._ledger.apply_provider_update(remote, metadata)
        matched = await self._batches.apply_provider_update(remote, metadata) or matched
        if not matched:
            logger.warning("Provider subscription matches nothing local: %s", remote.id)
            return "unmatched"
        return "processed"

    async def _checkout_completed(self, obj: dict[str, Any]) -> str:
        subscription_id = obj.get("subscription")
        if not subscription_id:
            # One-off payment sessions carry no subscription.
            return "ignored"
        remote = await call_provider(
            "get_subscription",
            self._provider.get_subscription(subscription_id),
            self._timeout,
        )
        if remote is None:
            logger.warning("Checkout completed for unknown subscription %s", subscription_id)
            return "unmatched"
        return await self._apply(remote, dict(obj.get("metadata") or {}))

    async def _subscription_changed(self, obj: dict[str, Any]) -> str:
        return await self._apply(parse_subscription(obj))

    async def _invoice_paid(self, obj: dict[str, Any]) -> str:
        subscription_id = obj.get("subscription")
        if not subscription_id:
            return "ignored"
        if obj.get("billing_reason") != "subscription_cycle":
            # The first invoice is covered by checkout/subscription events.
            return "ignored"
        lines = (obj.get("lines") or {}).get("data") or []
        period = (lines[0].get("period") or {}) if lines else {}
        renewed = await self._ledger.renew_period(
            subscription_id,
            timestamp(period.get("start")),
            timestamp(period.get("end")),
        )
        return "processed" if renewed else "unmatched"

    async def _invoice_failed(self, obj: dict[str, Any]) -> str:
        subscription_id = obj.get("subscription")
        if not subscription_id:
            return "ignored"
        marked = await self._ledger.mark_past_due(subscription_id)
        return "processed" if marked else "unmatched"

    async def reconcile(self, payload: dict[str, str]) -> str:
        """Re-read a provider subscription after a lost or timed-out commit.

        The payload names the metadata key and local id the provider
        subscription was tagged with, and the provider id when known.
        """
        remote = None
        provider_id = payload.get("provider_subscription_id")
        if provider_id:
            remote = await call_provider(
                "get_subscription", self._provider.get_subscription(provider_id), self._timeout
            )
        if remote is None:
            remote = await call_provider(
                "find_subscription",
                self._provider.find_subscription(payload["metadata_key"], payload["local_id"]),
                self._timeout,
            )
        if remote is None:
            logger.warning(
                "Reconciliation found no provider subscription: %s=%s",
                payload["metadata_key"],
                payload["local_id"],
            )
            return "unmatched"
        outcome = await self._apply(remote, {payload["metadata_key"]: payload["local_id"]})
        logger.info(
            "Reconciled: %s=%s provider=%s outcome=%s",
            payload["metadata_key"],
            payload["local_id"],
            remote.id,
            outcome,
        )
        return outcome
