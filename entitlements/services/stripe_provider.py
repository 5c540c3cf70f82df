"""Stripe implementation of the PaymentProvider contract.

The stripe SDK is synchronous; every call runs in the default executor so
the event loop stays free while Stripe answers.  Stripe objects are
converted to ProviderSubscription / CheckoutSession at the boundary and
never leak into the ledger.

Error mapping:
  stripe.InvalidRequestError  -> ProviderNotFoundError (missing object)
  any other stripe.StripeError -> ExternalServiceError
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import stripe

from entitlements.core.errors import ExternalServiceError
from entitlements.services.payment_provider import (
    CheckoutSession,
    ProviderNotFoundError,
    ProviderSubscription,
    parse_subscription,
)

logger = logging.getLogger(__name__)


class StripePaymentProvider:
    def __init__(self, api_key: str) -> None:
        stripe.api_key = api_key
        logger.info("Stripe provider initialised: test_mode=%s", api_key.startswith("sk_test_"))

    async def _run(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args, **kwargs))

    async def _call(self, what: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await self._run(func, *args, **kwargs)
        except stripe.InvalidRequestError as exc:
            logger.warning("Stripe object not found: op=%s error=%s", what, exc)
            raise ProviderNotFoundError(f"Stripe {what}: {exc.user_message or exc}") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe call failed: op=%s error=%s", what, exc)
            raise ExternalServiceError(f"Stripe {what} failed") from exc

    async def ensure_customer(self, user_id: str, email: str) -> str:
        found = await self._call(
            "customer search",
            stripe.Customer.search,
            query=f"metadata['user_id']:'{user_id}'",
            limit=1,
        )
        if found.data:
            return found.data[0].id
        customer = await self._call(
            "customer create",
            stripe.Customer.create,
            email=email,
            metadata={"user_id": user_id},
        )
        logger.info("Stripe customer created: user=%s customer=%s", user_id, customer.id)
        return customer.id

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        quantity: int,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        trial_days: int = 0,
    ) -> CheckoutSession:
        subscription_data: dict[str, Any] = {"metadata": metadata}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days
        session = await self._call(
            "checkout session create",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": quantity}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data=subscription_data,
        )
        return CheckoutSession(
            id=session.id, url=session.url or "", metadata=dict(session.metadata or {})
        )

    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        quantity: int = 1,
        metadata: dict[str, str],
        trial_days: int = 0,
    ) -> ProviderSubscription:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id, "quantity": quantity}],
            "metadata": metadata,
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        raw = await self._call("subscription create", stripe.Subscription.create, **params)
        return parse_subscription(raw)

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        price_id: str | None = None,
        quantity: int | None = None,
        proration_behavior: str = "create_prorations",
    ) -> ProviderSubscription:
        current = await self._call(
            "subscription retrieve", stripe.Subscription.retrieve, subscription_id
        )
        item_id = current["items"]["data"][0]["id"]
        item: dict[str, Any] = {"id": item_id}
        if price_id:
            item["price"] = price_id
        if quantity is not None:
            item["quantity"] = quantity
        raw = await self._call(
            "subscription modify",
            stripe.Subscription.modify,
            subscription_id,
            items=[item],
            proration_behavior=proration_behavior,
        )
        return parse_subscription(raw)

    async def cancel_subscription(
        self, subscription_id: str, *, at_period_end: bool
    ) -> ProviderSubscription:
        if at_period_end:
            raw = await self._call(
                "subscription modify",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        else:
            raw = await self._call(
                "subscription cancel", stripe.Subscription.cancel, subscription_id
            )
        return parse_subscription(raw)

    async def reactivate_subscription(self, subscription_id: str) -> ProviderSubscription:
        raw = await self._call(
            "subscription modify",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=False,
        )
        return parse_subscription(raw)

    async def get_subscription(self, subscription_id: str) -> ProviderSubscription | None:
        try:
            raw = await self._call(
                "subscription retrieve", stripe.Subscription.retrieve, subscription_id
            )
        except ProviderNotFoundError:
            return None
        return parse_subscription(raw)

    async def find_subscription(
        self, metadata_key: str, value: str
    ) -> ProviderSubscription | None:
        result = await self._call(
            "subscription search",
            stripe.Subscription.search,
            query=f"metadata['{metadata_key}']:'{value}'",
            limit=1,
        )
        if not result.data:
            return None
        return parse_subscription(result.data[0])
