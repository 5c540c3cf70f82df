from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class User:
    """A user record as the identity provider returns it.

    The entitlement core never owns user rows; memberships and
    subscriptions reference users by this id only.
    """

    id: str
    email: str
    name: str = ""
    is_active: bool = True
    email_verified: bool = False
