from __future__ import annotations

from typing import Protocol

from entitlements.models.policy import GroupingRule, PolicyRule


class PolicyRuleRepo(Protocol):
    """Durable storage behind the policy store.

    The store keeps its own in-memory index; this repo only has to persist
    rules and hand them all back on reload.
    """

    async def load_all(self) -> tuple[list[PolicyRule], list[GroupingRule]]: ...
    async def add_policy(self, rule: PolicyRule) -> bool: ...
    async def remove_policies(self, rules: list[PolicyRule]) -> int: ...
    async def add_grouping(self, rule: GroupingRule) -> bool: ...
    async def remove_groupings(self, rules: list[GroupingRule]) -> int: ...


class InMemoryPolicyRuleRepo:
    def __init__(self) -> None:
        self._policies: dict[PolicyRule, None] = {}
        self._groupings: dict[GroupingRule, None] = {}

    async def load_all(self) -> tuple[list[PolicyRule], list[GroupingRule]]:
        return list(self._policies), list(self._groupings)

    async def add_policy(self, rule: PolicyRule) -> bool:
        if rule in self._policies:
            return False
        self._policies[rule] = None
        return True

    async def remove_policies(self, rules: list[PolicyRule]) -> int:
        removed = 0
        for rule in rules:
            if self._policies.pop(rule, False) is None:
                removed += 1
        return removed

    async def add_grouping(self, rule: GroupingRule) -> bool:
        if rule in self._groupings:
            return False
        self._groupings[rule] = None
        return True

    async def remove_groupings(self, rules: list[GroupingRule]) -> int:
        removed = 0
        for rule in rules:
            if self._groupings.pop(rule, False) is None:
                removed += 1
        return removed
