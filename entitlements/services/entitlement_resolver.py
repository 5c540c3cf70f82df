"""Entitlement Resolver: the single place that answers "may this user do that?".

AUTHORIZE
----------
Requests are described by their canonical path and HTTP method.  The
path ``/{plural}/{id}[/...]`` names an entity kind (looked up in the
registry below) and, when the second segment is a UUID, one entity.

  1. administrators are allowed unconditionally
  2. a concrete entity that does not exist is denied (unknown_entity)
  3. a matching Policy Store rule allows
  4. groups only: an org manager/owner of the owning organization is
     allowed GET/POST/PATCH (cascade); DELETE stays with the direct owner
  5. otherwise denied: insufficient_role when the user can see the entity
     at all, not_a_member when they cannot (the API turns that into 404)

An expired group is read-only: every verb except GET and a PATCH of the
group itself is denied with reason ``expired``.

A path without an entity id is a collection.  It is allowed with a
CollectionFilter naming the entity ids the caller may see; list handlers
enumerate through it.

EFFECTIVE FEATURES
-------------------
The bundle walks every active user subscription (personal and assigned)
and the active subscription of every organization the user belongs to.
Features are unioned, caps take the maximum with -1 dominating, and the
highest-ranked plan is reported alongside.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from uuid import UUID

from entitlements.core.errors import NotFoundError, PermissionDeniedError
from entitlements.core.metrics import AUTHZ_DECISIONS
from entitlements.models.entitlement import (
    CollectionFilter,
    Decision,
    FeatureBundle,
    OrgContribution,
    OrgFeatures,
)
from entitlements.models.group import Group
from entitlements.models.plan import SubscriptionPlan, merge_caps
from entitlements.models.principal import Principal
from entitlements.models.usage import METRIC_TYPES, UsageCheck
from entitlements.repos.batch_repo import BatchRepo
from entitlements.repos.group_repo import PAGE_SIZE
from entitlements.repos.org_subscription_repo import OrgSubscriptionRepo
from entitlements.repos.user_subscription_repo import UserSubscriptionRepo
from entitlements.services.membership import MembershipGraph
from entitlements.services.plan_catalog import PlanCatalog, highest
from entitlements.services.policy_store import PolicyStore, normalize_path
from entitlements.services.usage_meter import UsageMeter

logger = logging.getLogger(__name__)

CASCADE_METHODS = frozenset({"GET", "POST", "PATCH"})
BULK_PURCHASE_FEATURE = "bulk_purchase"
BULK_PURCHASE_ROLES = frozenset({"trainer", "organization", "administrator", "admin"})


@dataclass(frozen=True, slots=True)
class EntityKind:
    plural: str
    entity_type: str
    load: Callable[[UUID], Awaitable[object | None]]
    public_methods: frozenset[str] = frozenset()


def _parse_uuid(value: str) -> UUID | None:
    try:
        return UUID(value)
    except ValueError:
        return None


def _record(decision: Decision, user_id: str, path: str, method: str) -> Decision:
    if decision.allowed:
        AUTHZ_DECISIONS.labels(outcome="allow", reason=decision.via).inc()
        logger.debug(
            "Access allowed: user=%s method=%s path=%s via=%s",
            user_id,
            method,
            path,
            decision.via,
        )
    else:
        AUTHZ_DECISIONS.labels(outcome="deny", reason=decision.deny_reason or "").inc()
        logger.warning(
            "Access denied: user=%s method=%s path=%s reason=%s",
            user_id,
            method,
            path,
            decision.deny_reason,
        )
    return decision


class EntitlementResolver:
    def __init__(
        self,
        store: PolicyStore,
        membership: MembershipGraph,
        subscriptions: UserSubscriptionRepo,
        org_subscriptions: OrgSubscriptionRepo,
        batches: BatchRepo,
        catalog: PlanCatalog,
        usage: UsageMeter,
    ) -> None:
        self._store = store
        self._membership = membership
        self._subs = subscriptions
        self._org_subs = org_subscriptions
        self._batches = batches
        self._catalog = catalog
        self._usage = usage
        self._kinds: dict[str, EntityKind] = {}
        self.register(EntityKind("organizations", "organization", self._load_org))
        self.register(EntityKind("groups", "group", self._load_group))
        self.register(
            EntityKind("subscription-batches", "subscription_batch", self._batches.get)
        )
        self.register(
            EntityKind("user-subscriptions", "user_subscription", self._subs.get)
        )
        self.register(
            EntityKind(
                "subscription-plans",
                "subscription_plan",
                self._catalog.find_plan,
                public_methods=frozenset({"GET"}),
            )
        )

    def register(self, kind: EntityKind) -> None:
        self._kinds[kind.plural] = kind

    async def _load_org(self, org_id: UUID) -> object | None:
        try:
            return await self._membership.get_org(org_id)
        except NotFoundError:
            return None

    async def _load_group(self, group_id: UUID) -> object | None:
        try:
            return await self._membership.get_group(group_id)
        except NotFoundError:
            return None

    # ------------------------------------------------------------------
    # authorize
    # ------------------------------------------------------------------

    async def authorize(self, user: Principal, path: str, method: str) -> Decision:
        path = normalize_path(path)
        method = method.upper()
        segments = [seg for seg in path.split("/") if seg]
        kind = self._kinds.get(segments[0]) if segments else None

        entity_id = _parse_uuid(segments[1]) if kind and len(segments) > 1 else None
        if user.is_admin():
            listing = kind is not None and entity_id is None and method == "GET"
            return _record(
                Decision.allow(
                    "administrator",
                    entity_type=kind.entity_type if kind else None,
                    entity_id=str(entity_id) if entity_id else None,
                    filter=await self.collection_filter(user, kind.plural)
                    if listing
                    else None,
                ),
                user.user_id,
                path,
                method,
            )

        if kind is None:
            return _record(
                Decision.deny("unknown_entity", f"Unknown resource {path}"),
                user.user_id,
                path,
                method,
            )

        if entity_id is None:
            decision = await self._collection(user, kind, method)
        else:
            decision = await self._entity(user, kind, entity_id, segments, method)
        return _record(decision, user.user_id, path, method)

    async def _collection(
        self, user: Principal, kind: EntityKind, method: str
    ) -> Decision:
        if method != "GET":
            return Decision.allow("collection", entity_type=kind.entity_type)
        return Decision.allow(
            "collection",
            entity_type=kind.entity_type,
            filter=await self.collection_filter(user, kind.plural),
        )

    async def _entity(
        self,
        user: Principal,
        kind: EntityKind,
        entity_id: UUID,
        segments: list[str],
        method: str,
    ) -> Decision:
        ids = {"entity_type": kind.entity_type, "entity_id": str(entity_id)}
        entity = await kind.load(entity_id)
        if entity is None:
            return Decision.deny(
                "unknown_entity", f"{kind.entity_type} not found", **ids
            )
        if method in kind.public_methods:
            return Decision.allow("public", **ids)

        base = f"/{kind.plural}/{entity_id}"
        path = "/" + "/".join(segments)
        is_group = kind.plural == "groups"
        if is_group and entity.is_expired():
            read_only = method == "GET" or (method == "PATCH" and path == base)
            if not read_only:
                return Decision.deny(
                    "expired", "Group has expired and is read-only", **ids
                )

        if self._store.enforce(user.user_id, path, method):
            return Decision.allow("policy", **ids)

        access = "none"
        if is_group:
            access = await self._membership.resolve_group_access(entity_id, user.user_id)
            if access == "via_org_manager" and method in CASCADE_METHODS:
                return Decision.allow("cascade", **ids)

        if access != "none" or self._store.has_any_access(user.user_id, base):
            return Decision.deny(
                "insufficient_role",
                f"{method} on this {kind.entity_type} requires a higher role",
                **ids,
            )
        return Decision.deny(
            "not_a_member", f"No access to this {kind.entity_type}", **ids
        )

    async def collection_filter(self, user: Principal, plural: str) -> CollectionFilter:
        """Entity ids the user can see; administrators are also marked unrestricted.

        The id set is what list endpoints enumerate, so it is computed for
        administrators too: they reach any entity by id, but lists show
        what they hold a rule for or belong to.
        """
        kind = self._kinds[plural]
        ids = set(self._store.entity_ids_for(user.user_id, plural))
        if plural == "organizations":
            for member in await self._membership.memberships_of(user.user_id):
                ids.add(str(member.organization_id))
        elif plural == "groups":
            for gm in await self._membership.groups_of(user.user_id):
                ids.add(str(gm.group_id))
            for member in await self._membership.memberships_of(user.user_id):
                if member.is_manager:
                    for group in await self._all_org_groups(member.organization_id):
                        ids.add(str(group.id))
        return CollectionFilter(
            kind.entity_type, entity_ids=frozenset(ids), unrestricted=user.is_admin()
        )

    async def _all_org_groups(self, org_id: UUID) -> list[Group]:
        found: list[Group] = []
        offset = 0
        while True:
            page = await self._membership.list_org_groups(org_id, offset=offset)
            found.extend(page)
            if len(page) < PAGE_SIZE:
                return found
            offset += PAGE_SIZE

    # ------------------------------------------------------------------
    # features
    # ------------------------------------------------------------------

    async def effective_features(self, user_id: str) -> FeatureBundle:
        subs = await self._subs.list_by_user(user_id, active_only=True)
        subs = [s for s in subs if s.is_active]
        memberships = await self._membership.memberships_of(user_id)
        orgs = {
            o.id: o
            for o in await self._membership.list_orgs(
                m.organization_id for m in memberships
            )
        }
        org_subs = {
            s.organization_id: s
            for s in await self._org_subs.list_active_for_orgs(list(orgs))
            if s.is_active
        }
        plans = await self._catalog.plans_for(
            [s.plan_id for s in subs] + [s.plan_id for s in org_subs.values()]
        )

        contributing: list[SubscriptionPlan] = [
            plans[s.plan_id] for s in subs if s.plan_id in plans
        ]
        contributions = []
        for member in memberships:
            org = orgs.get(member.organization_id)
            if org is None:
                continue
            org_sub = org_subs.get(org.id)
            plan = plans.get(org_sub.plan_id) if org_sub else None
            if plan is not None:
                contributing.append(plan)
            contributions.append(
                OrgContribution(
                    organization_id=org.id,
                    name=org.name,
                    display_name=org.display_name,
                    is_personal=org.is_personal,
                    role=member.role,
                    plan_id=plan.id if plan else None,
                    plan_name=plan.name if plan else None,
                )
            )

        caps = {metric: 0 for metric in METRIC_TYPES}
        features: set[str] = set()
        for plan in contributing:
            features.update(plan.features)
            for metric, value in plan.caps().items():
                caps[metric] = merge_caps(caps.get(metric, 0), value)

        return FeatureBundle(
            user_id=user_id,
            highest_plan=highest(contributing),
            features=tuple(sorted(features)),
            caps=caps if contributing else {},
            network_access_enabled=any(p.network_access_enabled for p in contributing),
            data_persistence_enabled=any(
                p.data_persistence_enabled for p in contributing
            ),
            organizations=tuple(contributions),
            subscriptions=tuple(subs),
        )

    async def organization_features(self, org_id: UUID) -> OrgFeatures:
        org = await self._membership.get_org(org_id)
        sub = await self._org_subs.get_active_for_org(org.id)
        plan = await self._catalog.find_plan(sub.plan_id) if sub and sub.is_active else None
        return OrgFeatures(
            organization_id=org.id,
            plan=plan,
            features=plan.features if plan else (),
            caps=plan.caps() if plan else {},
            member_count=await self._membership.count_org_members(org.id),
            group_count=await self._membership.count_org_groups(org.id),
            max_members=org.max_members,
            max_groups=org.max_groups,
        )

    # ------------------------------------------------------------------
    # capability checks
    # ------------------------------------------------------------------

    async def can_bulk_purchase(self, user: Principal) -> bool:
        if user.has_any_role(BULK_PURCHASE_ROLES):
            return True
        bundle = await self.effective_features(user.user_id)
        return bundle.has_feature(BULK_PURCHASE_FEATURE)

    async def require_bulk_purchase(self, user: Principal) -> None:
        if not await self.can_bulk_purchase(user):
            AUTHZ_DECISIONS.labels(outcome="deny", reason="insufficient_role").inc()
            raise PermissionDeniedError(
                "Bulk purchase requires a trainer or organization plan"
            )

    async def check_quota(
        self, user_id: str, metric: str, increment: int = 1
    ) -> tuple[Decision, UsageCheck]:
        result = await self._usage.check(user_id, metric, increment)
        if result.allowed:
            decision = Decision.allow("quota", entity_type="usage_metric", entity_id=metric)
        else:
            decision = Decision.deny(
                "quota_exceeded",
                result.message,
                entity_type="usage_metric",
                entity_id=metric,
            )
        return _record(decision, user_id, f"/usage/{metric}", "POST"), result
