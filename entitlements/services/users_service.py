from __future__ import annotations

import logging

from entitlements.core.errors import ValidationError
from entitlements.models.organization import Organization
from entitlements.models.user import User
from entitlements.services.identity import IdentityProvider
from entitlements.services.membership import MembershipGraph
from entitlements.services.task_queue import TERMINAL_PROVISIONING, TaskQueue

logger = logging.getLogger(__name__)


class UsersService:
    """User onboarding: the identity record lives elsewhere, the rest lives here."""

    def __init__(
        self, identity: IdentityProvider, membership: MembershipGraph, tasks: TaskQueue
    ) -> None:
        self._identity = identity
        self._membership = membership
        self._tasks = tasks

    async def register_user(self, email: str, name: str = "") -> tuple[User, Organization]:
        email = email.strip().lower()
        if not email or "@" not in email:
            logger.warning("Rejected invalid email=%r", email)
            raise ValidationError("a valid email is required")
        user = await self._identity.create_user(email, name)
        logger.info("Registered user id=%s email=%s", user.id, user.email)
        org = await self.ensure_bootstrapped(user, provision=True)
        return user, org

    async def ensure_bootstrapped(self, user: User, *, provision: bool = False) -> Organization:
        """Personal org always; seat provisioning only for freshly created users.

        Provisioning goes through the task queue so a terminal-service
        outage never fails the registration.
        """
        org = await self._membership.create_personal_org(user.id)
        if provision:
            await self._tasks.enqueue(
                TERMINAL_PROVISIONING, {"user_id": user.id, "email": user.email}
            )
            logger.info("Provisioning queued: user=%s", user.id)
        return org

    async def get_user(self, user_id: str) -> User:
        return await self._identity.get_user(user_id)
