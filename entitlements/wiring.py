"""Builds the process-wide entitlement core.

One Core per process, created on first use by get_core().  Which
implementations are wired follows the settings:

  DATABASE_URL           PostgreSQL repositories, else in-memory
  REDIS_URL              Redis task queue, else in-memory
  STRIPE_SECRET_KEY      Stripe, else the in-memory payment provider
  IDENTITY_PROVIDER_URL  HTTP identity provider, else an in-memory directory

Tests call reset_core() to start every case from an empty in-memory core.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from entitlements.core.config import SETTINGS, Settings
from entitlements.db import engine
from entitlements.repos.batch_repo import InMemoryBatchRepo
from entitlements.repos.group_member_repo import InMemoryGroupMemberRepo
from entitlements.repos.group_repo import InMemoryGroupRepo
from entitlements.repos.org_member_repo import InMemoryOrgMemberRepo
from entitlements.repos.org_repo import InMemoryOrgRepo
from entitlements.repos.org_subscription_repo import InMemoryOrgSubscriptionRepo
from entitlements.repos.payment_event_repo import InMemoryPaymentEventRepo
from entitlements.repos.plan_repo import InMemoryPlanRepo
from entitlements.repos.policy_repo import InMemoryPolicyRuleRepo
from entitlements.repos.usage_repo import InMemoryUsageRepo
from entitlements.repos.user_subscription_repo import InMemoryUserSubscriptionRepo
from entitlements.services.batch_manager import BatchManager
from entitlements.services.domain_events import (
    EventBus,
    GroupMemberAdded,
    OrganizationMemberChanged,
)
from entitlements.services.entitlement_resolver import EntitlementResolver
from entitlements.services.identity import (
    HttpIdentityProvider,
    IdentityProvider,
    InMemoryIdentityProvider,
)
from entitlements.services.locks import KeyedLocks
from entitlements.services.membership import MembershipGraph
from entitlements.services.payment_provider import InMemoryPaymentProvider, PaymentProvider
from entitlements.services.permissions import PermissionGrants
from entitlements.services.plan_catalog import PlanCatalog
from entitlements.services.policy_store import PolicyStore
from entitlements.services.subscription_ledger import SubscriptionLedger
from entitlements.services.task_queue import TaskQueue, build_task_queue
from entitlements.services.terminal import TerminalService
from entitlements.services.usage_meter import UsageMeter
from entitlements.services.users_service import UsersService
from entitlements.services.webhook_consumer import WebhookConsumer

logger = logging.getLogger(__name__)


@dataclass
class Core:
    store: PolicyStore
    catalog: PlanCatalog
    usage: UsageMeter
    membership: MembershipGraph
    ledger: SubscriptionLedger
    batches: BatchManager
    resolver: EntitlementResolver
    webhooks: WebhookConsumer
    users: UsersService
    identity: IdentityProvider
    provider: PaymentProvider
    terminal: TerminalService
    tasks: TaskQueue
    events: EventBus

    async def startup(self) -> None:
        """Load the rule index and make sure a plan catalog exists."""
        await self.store.reload()
        await self.catalog.seed_defaults()

    async def shutdown(self) -> None:
        if isinstance(self.identity, HttpIdentityProvider):
            await self.identity.close()


def _repos() -> dict:
    if engine.async_session_factory is None:
        return {
            "orgs": InMemoryOrgRepo(),
            "org_members": InMemoryOrgMemberRepo(),
            "groups": InMemoryGroupRepo(),
            "group_members": InMemoryGroupMemberRepo(),
            "plans": InMemoryPlanRepo(),
            "subscriptions": InMemoryUserSubscriptionRepo(),
            "org_subscriptions": InMemoryOrgSubscriptionRepo(),
            "batches": InMemoryBatchRepo(),
            "usage": InMemoryUsageRepo(),
            "policies": InMemoryPolicyRuleRepo(),
            "payment_events": InMemoryPaymentEventRepo(),
        }

    from entitlements.repos.pg_batch_repo import PgBatchRepo
    from entitlements.repos.pg_group_repo import PgGroupMemberRepo, PgGroupRepo
    from entitlements.repos.pg_org_repo import PgOrgMemberRepo, PgOrgRepo
    from entitlements.repos.pg_plan_repo import PgPlanRepo
    from entitlements.repos.pg_policy_repo import PgPaymentEventRepo, PgPolicyRuleRepo
    from entitlements.repos.pg_subscription_repo import (
        PgOrgSubscriptionRepo,
        PgUserSubscriptionRepo,
    )
    from entitlements.repos.pg_usage_repo import PgUsageRepo

    return {
        "orgs": PgOrgRepo(),
        "org_members": PgOrgMemberRepo(),
        "groups": PgGroupRepo(),
        "group_members": PgGroupMemberRepo(),
        "plans": PgPlanRepo(),
        "subscriptions": PgUserSubscriptionRepo(),
        "org_subscriptions": PgOrgSubscriptionRepo(),
        "batches": PgBatchRepo(),
        "usage": PgUsageRepo(),
        "policies": PgPolicyRuleRepo(),
        "payment_events": PgPaymentEventRepo(),
    }


def _payment_provider(settings: Settings) -> PaymentProvider:
    if settings.stripe_secret_key:
        from entitlements.services.stripe_provider import StripePaymentProvider

        return StripePaymentProvider(settings.stripe_secret_key)
    logger.info("No STRIPE_SECRET_KEY configured, using the in-memory payment provider")
    return InMemoryPaymentProvider()


def _identity_provider(settings: Settings) -> IdentityProvider:
    if settings.identity_provider_url:
        return HttpIdentityProvider(
            settings.identity_provider_url,
            settings.identity_client_id,
            settings.identity_client_secret,
            timeout=settings.request_timeout_seconds,
        )
    logger.info("No IDENTITY_PROVIDER_URL configured, using the in-memory directory")
    return InMemoryIdentityProvider()


def build_core(settings: Settings = SETTINGS) -> Core:
    repos = _repos()
    timeout = settings.request_timeout_seconds
    events = EventBus()
    locks = KeyedLocks()
    tasks = build_task_queue()
    identity = _identity_provider(settings)
    provider = _payment_provider(settings)

    store = PolicyStore(repos["policies"])
    grants = PermissionGrants(store, warn_only=settings.permission_warn_only)
    catalog = PlanCatalog(repos["plans"])
    usage = UsageMeter(
        repos["usage"],
        repos["subscriptions"],
        repos["org_members"],
        repos["org_subscriptions"],
        catalog,
    )
    membership = MembershipGraph(
        repos["orgs"],
        repos["org_members"],
        repos["groups"],
        repos["group_members"],
        grants,
        events,
        identity,
    )
    ledger = SubscriptionLedger(
        repos["subscriptions"],
        repos["org_subscriptions"],
        catalog,
        usage,
        membership,
        provider,
        identity,
        store,
        grants,
        tasks,
        locks,
        provider_timeout=timeout,
    )
    batches = BatchManager(
        repos["batches"],
        repos["subscriptions"],
        ledger,
        catalog,
        membership,
        provider,
        identity,
        grants,
        tasks,
        locks,
        provider_timeout=timeout,
    )
    resolver = EntitlementResolver(
        store,
        membership,
        repos["subscriptions"],
        repos["org_subscriptions"],
        repos["batches"],
        catalog,
        usage,
    )
    webhooks = WebhookConsumer(
        repos["payment_events"], ledger, batches, provider, provider_timeout=timeout
    )

    async def _org_member_changed(event: OrganizationMemberChanged) -> None:
        await usage.sync_limits(event.user_id)

    events.subscribe(GroupMemberAdded, batches.on_group_member_added)
    events.subscribe(OrganizationMemberChanged, _org_member_changed)

    return Core(
        store=store,
        catalog=catalog,
        usage=usage,
        membership=membership,
        ledger=ledger,
        batches=batches,
        resolver=resolver,
        webhooks=webhooks,
        users=UsersService(identity, membership, tasks),
        identity=identity,
        provider=provider,
        terminal=TerminalService(settings.terminal_service_url, timeout=timeout),
        tasks=tasks,
        events=events,
    )


_core: Core | None = None


def get_core() -> Core:
    """FastAPI dependency and plain accessor for the process-wide core."""
    global _core
    if _core is None:
        _core = build_core()
    return _core


def reset_core() -> Core:
    global _core
    _core = build_core()
    return _core
