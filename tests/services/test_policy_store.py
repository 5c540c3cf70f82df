"""Policy Store: path/action matching, one-level role expansion, write path."""

from __future__ import annotations

import asyncio

import pytest

from entitlements.models.policy import PolicyRule
from entitlements.repos.policy_repo import InMemoryPolicyRuleRepo
from entitlements.services.policy_store import (
    PolicyStore,
    action_matches,
    normalize_path,
    path_matches,
)

ORG = "/organizations/6f1c2d4e-0000-4000-8000-000000000001"


def _store() -> PolicyStore:
    return PolicyStore(InMemoryPolicyRuleRepo())


def _case_id(case: tuple) -> str:
    pattern, path, _ = case
    return f"{pattern} vs {path}"


PATH_CASES = [
    (ORG, ORG, True),
    (ORG, ORG + "/", True),
    (ORG, ORG + "/members", False),
    (ORG + "/*", ORG + "/members", True),
    (ORG + "/*", ORG + "/members/alice", True),
    (ORG + "/*", ORG, False),
    ("/organizations/{id}", ORG, True),
    ("/organizations/{id}", ORG + "/members", False),
    ("/organizations/{id}/members", ORG + "/members", True),
    ("/groups/*", ORG, False),
]


@pytest.mark.parametrize("case", PATH_CASES, ids=[_case_id(c) for c in PATH_CASES])
def test_path_matches(case: tuple) -> None:
    pattern, path, expected = case
    assert path_matches(pattern, path) is expected


@pytest.mark.parametrize(
    ("mask", "method", "expected"),
    [
        ("GET", "GET", True),
        ("GET", "get", True),
        ("GET|PATCH", "PATCH", True),
        ("GET|PATCH", "DELETE", False),
        ("GET", "GETX", False),
        ("(GET)|(POST)", "POST", True),
        (".*", "DELETE", True),
    ],
)
def test_action_matches_whole_method(mask: str, method: str, expected: bool) -> None:
    assert action_matches(mask, method) is expected


def test_normalize_path_strips_query_and_slashes() -> None:
    assert normalize_path("//groups//abc/?limit=5") == "/groups/abc"
    assert normalize_path("") == "/"


def test_enforce_direct_policy() -> None:
    store = _store()
    asyncio.run(store.add_policy("alice", ORG, "GET"))
    assert store.enforce("alice", ORG, "GET") is True
    assert store.enforce("alice", ORG, "PATCH") is False
    assert store.enforce("bob", ORG, "GET") is False


def test_enforce_expands_roles_one_level_only() -> None:
    store = _store()

    async def _setup() -> None:
        await store.add_policy("org-reader", ORG, "GET")
        await store.add_grouping("alice", "org-reader")
        # Role-to-role bindings are not followed.
        await store.add_grouping("org-reader-parent", "org-reader")
        await store.add_grouping("bob", "org-reader-parent")

    asyncio.run(_setup())
    assert store.enforce("alice", ORG, "GET") is True
    assert store.enforce("bob", ORG, "GET") is False


def test_add_policy_is_idempotent() -> None:
    store = _store()
    first = asyncio.run(store.add_policy("alice", ORG, "GET"))
    second = asyncio.run(store.add_policy("alice", ORG + "/", "GET"))
    assert first is True
    assert second is False
    assert store.get_policies() == (PolicyRule("alice", ORG, "GET"),)


def test_remove_filtered_policy_by_subject() -> None:
    store = _store()

    async def _run() -> int:
        await store.add_policy("role:x", ORG, "GET")
        await store.add_policy("role:x", ORG + "/*", "GET")
        await store.add_policy("role:y", ORG, "GET")
        return await store.remove_filtered_policy(0, "role:x")

    assert asyncio.run(_run()) == 2
    assert [p.subject for p in store.get_policies()] == ["role:y"]


def test_has_any_access_ignores_verb() -> None:
    store = _store()
    asyncio.run(store.add_policy("alice", ORG, "GET"))
    assert store.has_any_access("alice", ORG) is True
    assert store.has_any_access("alice", "/organizations/other") is False


def test_entity_ids_for_collects_concrete_ids() -> None:
    store = _store()

    async def _setup() -> None:
        await store.add_policy("alice", ORG, "GET")
        await store.add_policy("alice", "/organizations/{id}", "GET")
        await store.add_policy("team", "/groups/g-1/*", "GET")
        await store.add_grouping("alice", "team")

    asyncio.run(_setup())
    assert store.entity_ids_for("alice", "organizations") == {ORG.rsplit("/", 1)[1]}
    assert store.entity_ids_for("alice", "groups") == {"g-1"}


def test_reload_rebuilds_index_from_storage() -> None:
    repo = InMemoryPolicyRuleRepo()
    writer = PolicyStore(repo)
    reader = PolicyStore(repo)
    asyncio.run(writer.add_policy("alice", ORG, "GET"))

    assert reader.enforce("alice", ORG, "GET") is False
    asyncio.run(reader.reload())
    assert reader.enforce("alice", ORG, "GET") is True


class _FailingRepo(InMemoryPolicyRuleRepo):
    async def add_policy(self, rule: PolicyRule) -> bool:
        raise RuntimeError("storage down")


def test_storage_failure_leaves_index_untouched() -> None:
    store = PolicyStore(_FailingRepo())
    with pytest.raises(RuntimeError, match="storage down"):
        asyncio.run(store.add_policy("alice", ORG, "GET"))
    assert store.enforce("alice", ORG, "GET") is False
    assert store.get_policies() == ()


def test_concurrent_writes_all_land() -> None:
    store = _store()

    async def _run() -> None:
        await asyncio.gather(
            *(store.add_policy(f"user-{i}", ORG, "GET") for i in range(25))
        )

    asyncio.run(_run())
    assert len(store.get_policies()) == 25
    assert all(store.enforce(f"user-{i}", ORG, "GET") for i in range(25))
