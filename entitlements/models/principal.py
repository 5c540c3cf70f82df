from __future__ import annotations

from dataclasses import dataclass

ADMIN_ROLES = frozenset({"administrator", "admin"})


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated identity extracted from a validated JWT.

    Carried through the request via FastAPI's dependency system.

        user_id:        subject from the JWT (identity-provider user id)
        roles:          token roles merged with Policy Store groupings
        email_verified: gate for payment-mutating endpoints
    """

    user_id: str
    roles: frozenset[str]
    email_verified: bool = False

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, roles: set[str] | frozenset[str]) -> bool:
        return bool(self.roles & roles)

    def is_admin(self) -> bool:
        return bool(self.roles & ADMIN_ROLES)
