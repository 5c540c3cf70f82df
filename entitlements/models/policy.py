from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class PolicyRule:
    """(subject, object, action-mask).

    subject: user id or role name
    object:  path, optionally ending in "/*"
    action:  regex alternation over HTTP verbs, e.g. "GET|POST"
    """

    subject: str
    object: str
    action: str

    def field(self, index: int) -> str:
        return (self.subject, self.object, self.action)[index]


@dataclass(frozen=True, slots=True)
class GroupingRule:
    """Binds a user to a role."""

    user: str
    role: str

    def field(self, index: int) -> str:
        return (self.user, self.role)[index]
