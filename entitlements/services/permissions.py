"""Entity-scoped grants written into the Policy Store.

Every entity instance gets a small set of role subjects, and users are
bound to them through groupings:

  organization:{id}          members     read the org and its sub-paths
  organization_manager:{id}  managers    edit the org, manage members/groups
  organization_owner:{id}    owner       every verb on the org and sub-paths
  group:{id}                 members     read the group
  group_admin:{id}           admins      edit the group, manage members
  group_owner:{id}           owner       every verb on the group
  subscription_batch:{id}    purchaser   every verb on the batch
  user_subscription:{id}     holder      read (and manage, when personal)

Role policies are written once per entity; membership changes only add or
remove groupings.  With ``warn_only`` set, storage failures are logged
and swallowed so that, for example, a failed grant does not abort the
organization create that triggered it.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Iterable
from uuid import UUID

from entitlements.services.policy_store import PolicyStore

logger = logging.getLogger(__name__)

ALL_METHODS = "GET|POST|PUT|PATCH|DELETE"
READ = "GET"

_ORG_ROLE_SUBJECTS = {
    "member": ("organization",),
    "manager": ("organization", "organization_manager"),
    "owner": ("organization", "organization_manager", "organization_owner"),
}
_GROUP_ROLE_SUBJECTS = {
    "member": ("group",),
    "assistant": ("group",),
    "admin": ("group", "group_admin"),
    "owner": ("group", "group_admin", "group_owner"),
}


def org_path(org_id: UUID | str) -> str:
    return f"/organizations/{org_id}"


def group_path(group_id: UUID | str) -> str:
    return f"/groups/{group_id}"


def _role(kind: str, entity_id: UUID | str) -> str:
    return f"{kind}:{entity_id}"


def _self_path(base: str, user_id: str) -> str:
    # Lets a member leave without any write right on the member list.
    return f"{base}/members/{user_id}"


class PermissionGrants:
    def __init__(self, store: PolicyStore, *, warn_only: bool = True) -> None:
        self._store = store
        self._warn_only = warn_only

    async def _guard(self, op: Awaitable[object], what: str) -> None:
        try:
            await op
        except Exception:
            if not self._warn_only:
                raise
            logger.warning(
                "Permission write failed (continuing): %s", what, exc_info=True
            )

    # --- organizations ---

    async def _ensure_org_policies(self, org_id: UUID) -> None:
        base = org_path(org_id)
        member = _role("organization", org_id)
        manager = _role("organization_manager", org_id)
        owner = _role("organization_owner", org_id)
        await self._store.add_policy(member, base, READ)
        await self._store.add_policy(member, f"{base}/*", READ)
        await self._store.add_policy(manager, base, "GET|PATCH")
        for sub in ("members", "members/*", "groups", "groups/*"):
            await self._store.add_policy(manager, f"{base}/{sub}", ALL_METHODS)
        await self._store.add_policy(owner, base, ALL_METHODS)
        await self._store.add_policy(owner, f"{base}/*", ALL_METHODS)

    async def grant_org_member(self, org_id: UUID, user_id: str, role: str) -> None:
        async def _grant() -> None:
            await self._ensure_org_policies(org_id)
            for kind in _ORG_ROLE_SUBJECTS[role]:
                await self._store.add_grouping(user_id, _role(kind, org_id))
            await self._store.add_policy(
                user_id, _self_path(org_path(org_id), user_id), "DELETE"
            )

        await self._guard(_grant(), f"grant org={org_id} user={user_id} role={role}")

    async def revoke_org_member(self, org_id: UUID, user_id: str) -> None:
        async def _revoke() -> None:
            for kind in _ORG_ROLE_SUBJECTS["owner"]:
                await self._store.remove_grouping(user_id, _role(kind, org_id))
            await self._store.remove_policy(
                user_id, _self_path(org_path(org_id), user_id), "DELETE"
            )

        await self._guard(_revoke(), f"revoke org={org_id} user={user_id}")

    async def change_org_role(self, org_id: UUID, user_id: str, role: str) -> None:
        await self.revoke_org_member(org_id, user_id)
        await self.grant_org_member(org_id, user_id, role)

    async def purge_org(self, org_id: UUID, member_ids: Iterable[str] = ()) -> None:
        async def _purge() -> None:
            for kind in _ORG_ROLE_SUBJECTS["owner"]:
                role = _role(kind, org_id)
                await self._store.remove_filtered_policy(0, role)
                await self._store.remove_filtered_grouping(1, role)
            for user_id in member_ids:
                await self._store.remove_policy(
                    user_id, _self_path(org_path(org_id), user_id), "DELETE"
                )

        await self._guard(_purge(), f"purge org={org_id}")

    # --- groups ---

    async def _ensure_group_policies(self, group_id: UUID) -> None:
        base = group_path(group_id)
        member = _role("group", group_id)
        admin = _role("group_admin", group_id)
        owner = _role("group_owner", group_id)
        await self._store.add_policy(member, base, READ)
        await self._store.add_policy(member, f"{base}/*", READ)
        await self._store.add_policy(admin, base, "GET|POST|PATCH")
        await self._store.add_policy(admin, f"{base}/parent", "PATCH")
        await self._store.add_policy(admin, f"{base}/members", ALL_METHODS)
        await self._store.add_policy(admin, f"{base}/members/*", ALL_METHODS)
        await self._store.add_policy(owner, base, ALL_METHODS)
        await self._store.add_policy(owner, f"{base}/*", ALL_METHODS)

    async def grant_group_member(self, group_id: UUID, user_id: str, role: str) -> None:
        async def _grant() -> None:
            await self._ensure_group_policies(group_id)
            for kind in _GROUP_ROLE_SUBJECTS[role]:
                await self._store.add_grouping(user_id, _role(kind, group_id))
            await self._store.add_policy(
                user_id, _self_path(group_path(group_id), user_id), "DELETE"
            )

        await self._guard(
            _grant(), f"grant group={group_id} user={user_id} role={role}"
        )

    async def revoke_group_member(self, group_id: UUID, user_id: str) -> None:
        async def _revoke() -> None:
            for kind in _GROUP_ROLE_SUBJECTS["owner"]:
                await self._store.remove_grouping(user_id, _role(kind, group_id))
            await self._store.remove_policy(
                user_id, _self_path(group_path(group_id), user_id), "DELETE"
            )

        await self._guard(_revoke(), f"revoke group={group_id} user={user_id}")

    async def change_group_role(self, group_id: UUID, user_id: str, role: str) -> None:
        await self.revoke_group_member(group_id, user_id)
        await self.grant_group_member(group_id, user_id, role)

    async def purge_group(
        self, group_id: UUID, member_ids: Iterable[str] = ()
    ) -> None:
        async def _purge() -> None:
            for kind in _GROUP_ROLE_SUBJECTS["owner"]:
                role = _role(kind, group_id)
                await self._store.remove_filtered_policy(0, role)
                await self._store.remove_filtered_grouping(1, role)
            for user_id in member_ids:
                await self._store.remove_policy(
                    user_id, _self_path(group_path(group_id), user_id), "DELETE"
                )

        await self._guard(_purge(), f"purge group={group_id}")

    # --- licensing ---

    async def grant_batch_purchaser(self, batch_id: UUID, user_id: str) -> None:
        base = f"/subscription-batches/{batch_id}"

        async def _grant() -> None:
            await self._store.add_policy(user_id, base, ALL_METHODS)
            await self._store.add_policy(user_id, f"{base}/*", ALL_METHODS)

        await self._guard(_grant(), f"grant batch={batch_id} user={user_id}")

    async def purge_batch(self, batch_id: UUID) -> None:
        base = f"/subscription-batches/{batch_id}"

        async def _purge() -> None:
            await self._store.remove_filtered_policy(1, base)
            await self._store.remove_filtered_policy(1, f"{base}/*")

        await self._guard(_purge(), f"purge batch={batch_id}")

    async def grant_subscription(
        self, subscription_id: UUID, user_id: str, *, assigned: bool
    ) -> None:
        base = f"/user-subscriptions/{subscription_id}"

        async def _grant() -> None:
            await self._store.add_policy(user_id, base, READ)
            if not assigned:
                await self._store.add_policy(user_id, f"{base}/*", "GET|POST")

        await self._guard(
            _grant(), f"grant subscription={subscription_id} user={user_id}"
        )

    # --- plain role bindings (plan-required roles) ---

    async def grant_role(self, user_id: str, role: str) -> None:
        await self._guard(
            self._store.add_grouping(user_id, role), f"grant role={role} user={user_id}"
        )

    async def revoke_role(self, user_id: str, role: str) -> None:
        await self._guard(
            self._store.remove_grouping(user_id, role),
            f"revoke role={role} user={user_id}",
        )
