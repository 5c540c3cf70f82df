from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal
from uuid import UUID, uuid4

GroupRole = Literal["owner", "admin", "assistant", "member"]
GroupAccess = Literal["direct", "via_org_manager", "none"]

GROUP_ROLES: tuple[str, ...] = ("owner", "admin", "assistant", "member")
GROUP_ROLE_PRIORITY: dict[str, int] = {
    "owner": 100,
    "admin": 50,
    "assistant": 20,
    "member": 10,
}
GROUP_ADMIN_ROLES = frozenset({"owner", "admin"})

DEFAULT_GROUP_MAX_MEMBERS = 50


@dataclass(frozen=True, slots=True)
class Group:
    id: UUID
    name: str  # unique per owner
    display_name: str
    owner_user_id: str
    description: str = ""
    organization_id: UUID | None = None
    parent_group_id: UUID | None = None
    max_members: int = DEFAULT_GROUP_MAX_MEMBERS  # -1 = unlimited
    expires_at: datetime | None = None
    is_active: bool = True
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or datetime.now(UTC))

    @staticmethod
    def new(
        *,
        name: str,
        owner_user_id: str,
        display_name: str = "",
        description: str = "",
        organization_id: UUID | None = None,
        max_members: int = DEFAULT_GROUP_MAX_MEMBERS,
        expires_at: datetime | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Group:
        return Group(
            id=uuid4(),
            name=name,
            display_name=display_name or name,
            owner_user_id=owner_user_id,
            description=description,
            organization_id=organization_id,
            max_members=max_members,
            expires_at=expires_at,
            metadata=dict(metadata or {}),
        )


@dataclass(frozen=True, slots=True)
class GroupMember:
    group_id: UUID
    user_id: str
    role: str  # owner|admin|assistant|member
    joined_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    invited_by: str | None = None
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role in GROUP_ADMIN_ROLES
