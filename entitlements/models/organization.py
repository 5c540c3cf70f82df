from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal
from uuid import UUID, uuid4

OrgRole = Literal["owner", "manager", "member"]

ORG_ROLES: tuple[str, ...] = ("owner", "manager", "member")
ORG_ROLE_PRIORITY: dict[str, int] = {"owner": 100, "manager": 50, "member": 10}
ORG_MANAGER_ROLES = frozenset({"owner", "manager"})

DEFAULT_MAX_GROUPS = 10
DEFAULT_MAX_MEMBERS = 50


def personal_org_name(user_id: str) -> str:
    return f"personal_{user_id}"


@dataclass(frozen=True, slots=True)
class Organization:
    id: UUID
    name: str  # unique per owner
    display_name: str
    owner_user_id: str
    description: str = ""
    plan_id: UUID | None = None
    is_personal: bool = False
    max_groups: int = DEFAULT_MAX_GROUPS  # -1 = unlimited
    max_members: int = DEFAULT_MAX_MEMBERS  # -1 = unlimited
    is_active: bool = True
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def new(
        *,
        name: str,
        owner_user_id: str,
        display_name: str = "",
        description: str = "",
        is_personal: bool = False,
        max_groups: int = DEFAULT_MAX_GROUPS,
        max_members: int = DEFAULT_MAX_MEMBERS,
        metadata: dict[str, str] | None = None,
    ) -> Organization:
        return Organization(
            id=uuid4(),
            name=name,
            display_name=display_name or name,
            owner_user_id=owner_user_id,
            description=description,
            is_personal=is_personal,
            max_groups=max_groups,
            max_members=max_members,
            metadata=dict(metadata or {}),
        )


@dataclass(frozen=True, slots=True)
class OrganizationMember:
    organization_id: UUID
    user_id: str
    role: str  # owner|manager|member
    joined_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    invited_by: str | None = None
    is_active: bool = True

    @property
    def is_manager(self) -> bool:
        """Owners manage too."""
        return self.role in ORG_MANAGER_ROLES

    @property
    def priority(self) -> int:
        return ORG_ROLE_PRIORITY.get(self.role, 0)
