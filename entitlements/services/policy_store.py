"""Policy Store: persisted access rules plus an in-memory enforcement index.

TWO KINDS OF RULE
------------------
  policy    (subject, object, action-mask)
            subject  a user id or a role name
            object   a path such as /organizations/<id>, optionally ending
                     in "/*" to cover every sub-path
            action   a regex alternation over HTTP verbs, e.g. "GET|PATCH"

  grouping  (user, role)
            binds a user to a role; enforce() expands it exactly one
            level deep.  Roles never inherit from other roles.

READ PATH
----------
enforce() is synchronous and lock-free.  It reads one immutable _Index
snapshot; a concurrent write can never show it a half-applied change.

WRITE PATH
-----------
Every write takes the writer lock, persists through the PolicyRuleRepo,
then builds a new _Index (copy on write) and swaps the reference.  A
storage error propagates before the swap, so the index never claims a
rule that storage does not hold.  reload() rebuilds the index from
storage in one swap.

PATH MATCHING
--------------
Trailing slashes are stripped, then rule and request are compared
segment by segment:

  /organizations/{id}     "{...}" matches exactly one segment
  /organizations/abc/*    "*" as the last rule segment matches one or more
                          remaining request segments (not zero: the bare
                          entity path needs its own rule)
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from functools import lru_cache

from entitlements.core.metrics import POLICY_RULES
from entitlements.models.policy import GroupingRule, PolicyRule
from entitlements.repos.policy_repo import PolicyRuleRepo

logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    """Strip query string and trailing slashes; keep a single leading slash."""
    path = path.split("?", 1)[0].strip()
    path = "/" + "/".join(seg for seg in path.split("/") if seg)
    return path


def _segments(path: str) -> list[str]:
    return [seg for seg in normalize_path(path).split("/") if seg]


def path_matches(pattern: str, path: str) -> bool:
    pat = _segments(pattern)
    req = _segments(path)
    if pat and pat[-1] == "*":
        head = pat[:-1]
        if len(req) <= len(head):
            return False
        req = req[: len(head)]
        pat = head
    if len(pat) != len(req):
        return False
    for p, r in zip(pat, req, strict=True):
        if p.startswith("{") and p.endswith("}"):
            continue
        if p != r:
            return False
    return True


@lru_cache(maxsize=512)
def _action_regex(mask: str) -> re.Pattern[str]:
    return re.compile(mask)


def action_matches(mask: str, method: str) -> bool:
    return _action_regex(mask).fullmatch(method.upper()) is not None


@dataclass(frozen=True, slots=True)
class _Index:
    policies: tuple[PolicyRule, ...] = ()
    by_subject: dict[str, tuple[PolicyRule, ...]] = field(default_factory=dict)
    groupings: tuple[GroupingRule, ...] = ()
    roles_by_user: dict[str, frozenset[str]] = field(default_factory=dict)

    @staticmethod
    def build(
        policies: Iterable[PolicyRule], groupings: Iterable[GroupingRule]
    ) -> _Index:
        # dict.fromkeys keeps first-seen order and drops duplicates.
        policies = tuple(dict.fromkeys(policies))
        groupings = tuple(dict.fromkeys(groupings))
        by_subject: dict[str, list[PolicyRule]] = {}
        for rule in policies:
            by_subject.setdefault(rule.subject, []).append(rule)
        roles: dict[str, set[str]] = {}
        for g in groupings:
            roles.setdefault(g.user, set()).add(g.role)
        return _Index(
            policies=policies,
            by_subject={k: tuple(v) for k, v in by_subject.items()},
            groupings=groupings,
            roles_by_user={k: frozenset(v) for k, v in roles.items()},
        )


class PolicyStore:
    def __init__(self, storage: PolicyRuleRepo) -> None:
        self._storage = storage
        self._index = _Index()
        self._write_lock = asyncio.Lock()

    # --- reads (snapshot, no lock) ---

    def enforce(self, subject: str, obj: str, action: str) -> bool:
        index = self._index
        for sub in self._subjects(index, subject):
            for rule in index.by_subject.get(sub, ()):
                if path_matches(rule.object, obj) and action_matches(
                    rule.action, action
                ):
                    return True
        return False

    def has_any_access(self, subject: str, obj: str) -> bool:
        """True if some rule covers ``obj`` for ``subject``, whatever the verb."""
        index = self._index
        for sub in self._subjects(index, subject):
            for rule in index.by_subject.get(sub, ()):
                if path_matches(rule.object, obj):
                    return True
        return False

    def roles_for(self, user: str) -> frozenset[str]:
        return self._index.roles_by_user.get(user, frozenset())

    def users_for_role(self, role: str) -> list[str]:
        return [g.user for g in self._index.groupings if g.role == role]

    def entity_ids_for(self, subject: str, plural: str) -> set[str]:
        """Ids of ``/{plural}/{id}`` entities any of the subject's rules name."""
        index = self._index
        ids: set[str] = set()
        for sub in self._subjects(index, subject):
            for rule in index.by_subject.get(sub, ()):
                segs = _segments(rule.object)
                if len(segs) >= 2 and segs[0] == plural and segs[1] != "*":
                    if not segs[1].startswith("{"):
                        ids.add(segs[1])
        return ids

    def get_policies(self) -> tuple[PolicyRule, ...]:
        return self._index.policies

    def get_groupings(self) -> tuple[GroupingRule, ...]:
        return self._index.groupings

    # --- writes ---

    async def add_policy(self, subject: str, obj: str, action: str) -> bool:
        """Idempotent; returns False when the rule already existed."""
        rule = PolicyRule(subject, normalize_path(obj), action)
        async with self._write_lock:
            if rule in self._index.by_subject.get(subject, ()):
                return False
            inserted = await self._storage.add_policy(rule)
            self._swap(self._index.policies + (rule,), self._index.groupings)
        logger.debug("Policy added: %s %s %s", rule.subject, rule.object, rule.action)
        return inserted

    async def remove_policy(self, subject: str, obj: str, action: str) -> bool:
        rule = PolicyRule(subject, normalize_path(obj), action)
        async with self._write_lock:
            if rule not in self._index.policies:
                return False
            await self._storage.remove_policies([rule])
            self._swap(
                tuple(p for p in self._index.policies if p != rule),
                self._index.groupings,
            )
        return True

    async def remove_filtered_policy(self, field_index: int, *values: str) -> int:
        """Remove every policy whose fields from ``field_index`` on equal
        ``values``.  An empty string matches anything in that position."""
        async with self._write_lock:
            doomed = [
                p
                for p in self._index.policies
                if _fields_match(p.field, field_index, values)
            ]
            if not doomed:
                return 0
            await self._storage.remove_policies(doomed)
            gone = set(doomed)
            self._swap(
                tuple(p for p in self._index.policies if p not in gone),
                self._index.groupings,
            )
        logger.debug(
            "Policies removed: field=%d values=%s count=%d",
            field_index,
            values,
            len(doomed),
        )
        return len(doomed)

    async def add_grouping(self, user: str, role: str) -> bool:
        rule = GroupingRule(user, role)
        async with self._write_lock:
            if role in self._index.roles_by_user.get(user, frozenset()):
                return False
            inserted = await self._storage.add_grouping(rule)
            self._swap(self._index.policies, self._index.groupings + (rule,))
        logger.debug("Grouping added: %s -> %s", user, role)
        return inserted

    async def remove_grouping(self, user: str, role: str) -> bool:
        rule = GroupingRule(user, role)
        async with self._write_lock:
            if rule not in self._index.groupings:
                return False
            await self._storage.remove_groupings([rule])
            self._swap(
                self._index.policies,
                tuple(g for g in self._index.groupings if g != rule),
            )
        return True

    async def remove_filtered_grouping(self, field_index: int, *values: str) -> int:
        async with self._write_lock:
            doomed = [
                g
                for g in self._index.groupings
                if _fields_match(g.field, field_index, values)
            ]
            if not doomed:
                return 0
            await self._storage.remove_groupings(doomed)
            gone = set(doomed)
            self._swap(
                self._index.policies,
                tuple(g for g in self._index.groupings if g not in gone),
            )
        return len(doomed)

    async def reload(self) -> None:
        async with self._write_lock:
            policies, groupings = await self._storage.load_all()
            self._swap(tuple(policies), tuple(groupings))
        logger.info(
            "Policy store reloaded: policies=%d groupings=%d",
            len(self._index.policies),
            len(self._index.groupings),
        )

    # --- internals ---

    @staticmethod
    def _subjects(index: _Index, subject: str) -> list[str]:
        return [subject, *index.roles_by_user.get(subject, ())]

    def _swap(
        self, policies: tuple[PolicyRule, ...], groupings: tuple[GroupingRule, ...]
    ) -> None:
        self._index = _Index.build(policies, groupings)
        POLICY_RULES.labels(kind="policy").set(len(self._index.policies))
        POLICY_RULES.labels(kind="grouping").set(len(self._index.groupings))


def _fields_match(get_field, field_index: int, values: tuple[str, ...]) -> bool:
    for offset, value in enumerate(values):
        if value and get_field(field_index + offset) != value:
            return False
    return True
