"""Membership Graph: organizations, groups, roles and their policy grants."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from entitlements.core.errors import (
    ConflictError,
    LimitReachedError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from entitlements.wiring import Core
from tests.conftest import principal, register

OWNER = principal("owner")


def _org(core: Core, name: str = "acme", **kw):
    return asyncio.run(core.membership.create_org("owner", name, **kw))


# ---- organizations ----


def test_create_org_makes_creator_owner_with_full_access(core: Core) -> None:
    org = _org(core)
    assert asyncio.run(core.membership.org_role(org.id, "owner")) == "owner"
    path = f"/organizations/{org.id}"
    assert core.store.enforce("owner", path, "DELETE")
    assert core.store.enforce("owner", path + "/members/x", "POST")


def test_personal_prefix_is_reserved(core: Core) -> None:
    with pytest.raises(ValidationError):
        _org(core, "personal_owner")


def test_duplicate_org_name_for_same_owner_conflicts(core: Core) -> None:
    _org(core)
    with pytest.raises(ConflictError):
        _org(core)


def test_personal_org_is_idempotent(core: Core) -> None:
    first = asyncio.run(core.membership.create_personal_org("u1"))
    second = asyncio.run(core.membership.create_personal_org("u1"))
    assert first.id == second.id
    assert first.is_personal
    assert first.max_members == 1


def test_personal_org_cannot_be_deleted(core: Core) -> None:
    org = asyncio.run(core.membership.create_personal_org("u1"))
    with pytest.raises(StateError):
        asyncio.run(core.membership.delete_org(org.id, principal("u1")))


def test_add_member_same_role_is_a_no_op(core: Core) -> None:
    org = _org(core)
    _, created = asyncio.run(core.membership.add_org_member(org.id, "m1", "member", OWNER))
    _, again = asyncio.run(core.membership.add_org_member(org.id, "m1", "member", OWNER))
    assert created is True
    assert again is False


def test_add_member_with_other_role_conflicts(core: Core) -> None:
    org = _org(core)
    asyncio.run(core.membership.add_org_member(org.id, "m1", "member", OWNER))
    with pytest.raises(ConflictError) as exc:
        asyncio.run(core.membership.add_org_member(org.id, "m1", "manager", OWNER))
    assert exc.value.code == "ALREADY_MEMBER"


@pytest.mark.parametrize("role", ["owner", "superuser"])
def test_add_member_rejects_role(core: Core, role: str) -> None:
    org = _org(core)
    with pytest.raises(ValidationError) as exc:
        asyncio.run(core.membership.add_org_member(org.id, "m1", role, OWNER))
    assert exc.value.code == "INVALID_ROLE"


def test_plain_member_cannot_add_members(core: Core) -> None:
    org = _org(core)
    asyncio.run(core.membership.add_org_member(org.id, "m1", "member", OWNER))
    with pytest.raises(PermissionDeniedError):
        asyncio.run(core.membership.add_org_member(org.id, "m2", "member", principal("m1")))


def test_member_limit(core: Core) -> None:
    org = _org(core, max_members=2)
    asyncio.run(core.membership.add_org_member(org.id, "m1", "member", OWNER))
    with pytest.raises(LimitReachedError):
        asyncio.run(core.membership.add_org_member(org.id, "m2", "member", OWNER))


def test_owner_role_is_immutable(core: Core) -> None:
    org = _org(core)
    with pytest.raises(StateError):
        asyncio.run(core.membership.update_org_member_role(org.id, "owner", "member", OWNER))
    with pytest.raises(StateError):
        asyncio.run(core.membership.remove_org_member(org.id, "owner", OWNER))


def test_role_change_moves_the_policy_binding(core: Core) -> None:
    org = _org(core)
    path = f"/organizations/{org.id}"
    asyncio.run(core.membership.add_org_member(org.id, "m1", "member", OWNER))
    assert not core.store.enforce("m1", path, "PATCH")

    asyncio.run(core.membership.update_org_member_role(org.id, "m1", "manager", OWNER))
    assert core.store.enforce("m1", path, "PATCH")

    asyncio.run(core.membership.remove_org_member(org.id, "m1", OWNER))
    assert not core.store.has_any_access("m1", path)


def test_delete_org_purges_policies(core: Core) -> None:
    org = _org(core)
    asyncio.run(core.membership.add_org_member(org.id, "m1", "member", OWNER))
    asyncio.run(core.membership.delete_org(org.id, OWNER))
    path = f"/organizations/{org.id}"
    assert not core.store.has_any_access("owner", path)
    assert not core.store.has_any_access("m1", path)


# ---- groups ----


def test_group_in_org_needs_an_org_manager(core: Core) -> None:
    org = _org(core)
    asyncio.run(core.membership.add_org_member(org.id, "m1", "member", OWNER))
    with pytest.raises(PermissionDeniedError):
        asyncio.run(
            core.membership.create_group(principal("m1"), "g", organization_id=org.id)
        )


def test_group_access_via_org_manager(core: Core) -> None:
    org = _org(core)

    async def _run() -> tuple[str, str, str]:
        await core.membership.add_org_member(org.id, "boss", "manager", OWNER)
        await core.membership.add_org_member(org.id, "worker", "member", OWNER)
        group = await core.membership.create_group(OWNER, "team", organization_id=org.id)
        return (
            await core.membership.resolve_group_access(group.id, "owner"),
            await core.membership.resolve_group_access(group.id, "boss"),
            await core.membership.resolve_group_access(group.id, "worker"),
        )

    assert asyncio.run(_run()) == ("direct", "via_org_manager", "none")


def test_set_parent_rejects_cycles(core: Core) -> None:
    async def _run() -> None:
        a = await core.membership.create_group(OWNER, "a")
        b = await core.membership.create_group(OWNER, "b", parent_group_id=a.id)
        c = await core.membership.create_group(OWNER, "c", parent_group_id=b.id)
        await core.membership.set_parent(a.id, c.id, OWNER)

    with pytest.raises(ValidationError, match="cycle"):
        asyncio.run(_run())


def test_set_parent_to_self_is_a_cycle(core: Core) -> None:
    group = asyncio.run(core.membership.create_group(OWNER, "solo"))
    with pytest.raises(ValidationError):
        asyncio.run(core.membership.set_parent(group.id, group.id, OWNER))


def test_parent_group_in_other_org_is_rejected(core: Core) -> None:
    acme = _org(core, "acme")
    beta = _org(core, "beta")
    ours = asyncio.run(core.membership.create_group(OWNER, "ours", organization_id=acme.id))
    theirs = asyncio.run(
        core.membership.create_group(OWNER, "theirs", organization_id=beta.id)
    )

    with pytest.raises(ValidationError, match="same organization"):
        asyncio.run(
            core.membership.create_group(
                OWNER, "child", organization_id=acme.id, parent_group_id=theirs.id
            )
        )
    with pytest.raises(ValidationError, match="same organization"):
        asyncio.run(core.membership.set_parent(ours.id, theirs.id, OWNER))
    assert asyncio.run(core.membership.get_group(ours.id)).parent_group_id is None


def test_expired_group_is_read_only(core: Core) -> None:
    past = datetime.now(UTC) - timedelta(days=1)
    group = asyncio.run(core.membership.create_group(OWNER, "old", expires_at=past))
    with pytest.raises(StateError) as exc:
        asyncio.run(core.membership.add_group_member(group.id, "m1", "member", OWNER))
    assert exc.value.code == "GROUP_EXPIRED"

    # Extending the expiry is the one write that is still allowed.
    future = datetime.now(UTC) + timedelta(days=30)
    renewed = asyncio.run(
        core.membership.update_group(group.id, OWNER, {"expires_at": future})
    )
    assert not renewed.is_expired()


def test_group_roles_grant_policies(core: Core) -> None:
    group = asyncio.run(core.membership.create_group(OWNER, "team"))
    path = f"/groups/{group.id}"
    asyncio.run(core.membership.add_group_member(group.id, "adm", "admin", OWNER))
    asyncio.run(core.membership.add_group_member(group.id, "asst", "assistant", OWNER))

    assert core.store.enforce("adm", path, "PATCH")
    assert core.store.enforce("adm", path + "/members", "DELETE")
    assert not core.store.enforce("adm", path, "DELETE")
    assert core.store.enforce("asst", path, "GET")
    assert not core.store.enforce("asst", path, "PATCH")


def test_bulk_add_reports_per_row(core: Core) -> None:
    register(core, "alice")
    register(core, "bob")
    group = asyncio.run(core.membership.create_group(OWNER, "team"))
    asyncio.run(core.membership.add_group_member(group.id, "bob", "member", OWNER))

    report = asyncio.run(
        core.membership.add_group_members_bulk(
            group.id,
            [
                {"user_id": "alice", "role": "member"},
                {"email": "bob@example.com"},
                {"email": "nobody@example.com"},
                {"user_id": "alice", "role": "owner"},
            ],
            OWNER,
        )
    )

    assert [r.status for r in report.rows] == ["ok", "skipped", "error", "error"]
    assert report.rows[3].code == "INVALID_ROLE"
    assert report.succeeded == 1
    assert report.failed == 2


def test_resolve_user_id_needs_an_identifier(core: Core) -> None:
    with pytest.raises(ValidationError):
        asyncio.run(core.membership.resolve_user_id())
