"""Payment provider contract and an in-memory fake.

The entitlement core only needs a handful of provider operations:
hosted checkout, direct subscription create/update/cancel, and reads for
reconciliation.  StripePaymentProvider (stripe_provider.py) talks to the
real API; InMemoryPaymentProvider backs local runs and tests and can be
told to fail or stall on the next call.

Every call made by the core goes through ``call_provider`` so the
deadline and the provider metrics live in one place.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, TypeVar

from entitlements.core.errors import DeadlineExceededError, ExternalServiceError
from entitlements.core.metrics import PAYMENT_PROVIDER_CALLS

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderNotFoundError(ExternalServiceError):
    default_code = "NOT_FOUND"


@dataclass(frozen=True, slots=True)
class ProviderSubscription:
    id: str
    customer_id: str
    status: str  # provider vocabulary: active|trialing|past_due|canceled|incomplete|...
    price_id: str | None = None
    item_id: str | None = None
    quantity: int = 1
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CheckoutSession:
    id: str
    url: str
    metadata: dict[str, str] = field(default_factory=dict)


def timestamp(value: Any) -> datetime | None:
    """Provider epoch seconds to an aware datetime."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def parse_subscription(raw: Any) -> ProviderSubscription:
    """Build a ProviderSubscription from a provider subscription object.

    Accepts SDK objects and plain webhook payload dicts alike.
    """
    # "items" collides with dict.items on SDK objects; index it instead.
    items = raw["items"]["data"] if raw.get("items") else []
    item = items[0] if items else None
    # Newer API versions report the billing period on the item.
    period_source = raw if raw.get("current_period_start") else (item or {})
    return ProviderSubscription(
        id=raw["id"],
        customer_id=str(raw.get("customer") or ""),
        status=raw.get("status") or "incomplete",
        price_id=item["price"]["id"] if item else None,
        item_id=item["id"] if item else None,
        quantity=int(item.get("quantity") or 1) if item else 1,
        current_period_start=timestamp(period_source.get("current_period_start")),
        current_period_end=timestamp(period_source.get("current_period_end")),
        cancel_at_period_end=bool(raw.get("cancel_at_period_end")),
        canceled_at=timestamp(raw.get("canceled_at")),
        metadata=dict(raw.get("metadata") or {}),
    )


class PaymentProvider(Protocol):
    async def ensure_customer(self, user_id: str, email: str) -> str: ...
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
    ) -> CheckoutSession: ...
    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        quantity: int = 1,
        metadata: dict[str, str],
        trial_days: int = 0,
    ) -> ProviderSubscription: ...
    async def update_subscription(
        self,
        subscription_id: str,
        *,
        price_id: str | None = None,
        quantity: int | None = None,
        proration_behavior: str = "create_prorations",
    ) -> ProviderSubscription: ...
    async def cancel_subscription(
        self, subscription_id: str, *, at_period_end: bool
    ) -> ProviderSubscription: ...
    async def reactivate_subscription(
        self, subscription_id: str
    ) -> ProviderSubscription: ...
    async def get_subscription(
        self, subscription_id: str
    ) -> ProviderSubscription | None: ...
    async def find_subscription(
        self, metadata_key: str, value: str
    ) -> ProviderSubscription | None: ...


async def call_provider(operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Await a provider call under a deadline and record its outcome.

    Raises DeadlineExceededError on timeout and ExternalServiceError (or
    its ProviderNotFoundError subclass) on provider failure.
    """
    try:
        result = await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as exc:
        PAYMENT_PROVIDER_CALLS.labels(operation=operation, outcome="timeout").inc()
        logger.warning("Payment provider timeout: op=%s after=%.1fs", operation, timeout)
        raise DeadlineExceededError(
            f"Payment provider did not answer in time ({operation})"
        ) from exc
    except ProviderNotFoundError:
        PAYMENT_PROVIDER_CALLS.labels(operation=operation, outcome="not_found").inc()
        raise
    except ExternalServiceError:
        PAYMENT_PROVIDER_CALLS.labels(operation=operation, outcome="error").inc()
        logger.error("Payment provider error: op=%s", operation, exc_info=True)
        raise
    PAYMENT_PROVIDER_CALLS.labels(operation=operation, outcome="ok").inc()
    return result


class InMemoryPaymentProvider:
    """Behaves like the hosted provider, minus the network.

    ``fail_next(op)`` makes the next call of that operation raise an
    ExternalServiceError; ``stall_next(op)`` makes it sleep long enough to
    miss any reasonable deadline.
    """

    def __init__(self) -> None:
        self.customers: dict[str, str] = {}
        self.subscriptions: dict[str, ProviderSubscription] = {}
        self.sessions: dict[str, CheckoutSession] = {}
        self._session_terms: dict[str, tuple[str, str, int, int]] = {}
        self._failures: set[str] = set()
        self._stalls: set[str] = set()

    def fail_next(self, operation: str) -> None:
        self._failures.add(operation)

    def stall_next(self, operation: str) -> None:
        self._stalls.add(operation)

    async def _maybe_misbehave(self, operation: str) -> None:
        if operation in self._stalls:
            self._stalls.discard(operation)
            await asyncio.sleep(3600)
        if operation in self._failures:
            self._failures.discard(operation)
            raise ExternalServiceError(f"Payment provider rejected {operation}")

    async def ensure_customer(self, user_id: str, email: str) -> str:
        await self._maybe_misbehave("ensure_customer")
        return self.customers.setdefault(user_id, f"cus_{uuid.uuid4().hex[:14]}")

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
        await self._maybe_misbehave("create_checkout_session")
        session_id = f"cs_{uuid.uuid4().hex[:24]}"
        session = CheckoutSession(
            id=session_id,
            url=f"https://checkout.example.test/pay/{session_id}",
            metadata=dict(metadata, price_id=price_id, quantity=str(quantity)),
        )
        self.sessions[session_id] = session
        self._session_terms[session_id] = (customer_id, price_id, quantity, trial_days)
        return session

    async def complete_session(self, session_id: str) -> ProviderSubscription:
        """Pay a hosted checkout: the subscription it was opened for now exists."""
        customer_id, price_id, quantity, trial_days = self._session_terms.pop(session_id)
        metadata = {
            k: v
            for k, v in self.sessions[session_id].metadata.items()
            if k not in ("price_id", "quantity")
        }
        return await self.create_subscription(
            customer_id=customer_id,
            price_id=price_id,
            quantity=quantity,
            metadata=metadata,
            trial_days=trial_days,
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
        await self._maybe_misbehave("create_subscription")
        now = datetime.now(UTC)
        sub = ProviderSubscription(
            id=f"sub_{uuid.uuid4().hex[:14]}",
            customer_id=customer_id,
            status="trialing" if trial_days else "active",
            price_id=price_id,
            item_id=f"si_{uuid.uuid4().hex[:14]}",
            quantity=quantity,
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
            metadata=dict(metadata),
        )
        self.subscriptions[sub.id] = sub
        return sub

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        price_id: str | None = None,
        quantity: int | None = None,
        proration_behavior: str = "create_prorations",
    ) -> ProviderSubscription:
        await self._maybe_misbehave("update_subscription")
        sub = self._require(subscription_id)
        sub = replace(
            sub,
            price_id=price_id or sub.price_id,
            quantity=quantity if quantity is not None else sub.quantity,
        )
        self.subscriptions[sub.id] = sub
        return sub

    async def cancel_subscription(
        self, subscription_id: str, *, at_period_end: bool
    ) -> ProviderSubscription:
        await self._maybe_misbehave("cancel_subscription")
        sub = self._require(subscription_id)
        if at_period_end:
            sub = replace(sub, cancel_at_period_end=True)
        else:
            sub = replace(sub, status="canceled", canceled_at=datetime.now(UTC))
        self.subscriptions[sub.id] = sub
        return sub

    async def reactivate_subscription(self, subscription_id: str) -> ProviderSubscription:
        await self._maybe_misbehave("reactivate_subscription")
        sub = replace(self._require(subscription_id), cancel_at_period_end=False)
        self.subscriptions[sub.id] = sub
        return sub

    async def get_subscription(self, subscription_id: str) -> ProviderSubscription | None:
        await self._maybe_misbehave("get_subscription")
        return self.subscriptions.get(subscription_id)

    async def find_subscription(
        self, metadata_key: str, value: str
    ) -> ProviderSubscription | None:
        await self._maybe_misbehave("find_subscription")
        for sub in self.subscriptions.values():
            if sub.metadata.get(metadata_key) == value:
                return sub
        return None

    def _require(self, subscription_id: str) -> ProviderSubscription:
        sub = self.subscriptions.get(subscription_id)
        if sub is None:
            raise ProviderNotFoundError(f"No such subscription: {subscription_id}")
        return sub
