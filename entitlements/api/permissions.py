"""Route-level authorization: every entity route depends on ``authorize``.

The dependency hands the request path and method to the Entitlement
Resolver under the request deadline and turns a denial into the API's
error shape.  A denial that would reveal whether the entity exists
(unknown entity, not a member) becomes 404; any other denial is 403.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import Depends, Request

from entitlements.api.dependencies import CoreDep, UserDep
from entitlements.core.config import SETTINGS
from entitlements.core.errors import (
    DeadlineExceededError,
    LimitReachedError,
    NotFoundError,
    PermissionDeniedError,
)
from entitlements.models.entitlement import CollectionFilter, Decision

logger = logging.getLogger(__name__)

_HIDDEN = frozenset({"unknown_entity", "not_a_member"})


def _label(entity_type: str | None) -> str:
    return (entity_type or "resource").replace("_", " ").capitalize()


async def authorize(request: Request, principal: UserDep, core: CoreDep) -> Decision:
    try:
        async with asyncio.timeout(SETTINGS.request_timeout_seconds):
            decision = await core.resolver.authorize(
                principal, request.url.path, request.method
            )
    except TimeoutError:
        logger.error(
            "Authorization timed out: user=%s path=%s", principal.user_id, request.url.path
        )
        raise DeadlineExceededError("Authorization did not finish in time") from None

    if decision.allowed:
        return decision
    if decision.deny_reason in _HIDDEN:
        raise NotFoundError(f"{_label(decision.entity_type)} not found")
    if decision.deny_reason == "expired":
        raise PermissionDeniedError(decision.reason, code="GROUP_EXPIRED")
    if decision.deny_reason == "quota_exceeded":
        raise LimitReachedError(decision.reason)
    raise PermissionDeniedError(decision.reason)


DecisionDep = Annotated[Decision, Depends(authorize)]


def visible(decision: Decision) -> CollectionFilter:
    """The collection filter of an allowed list request."""
    if decision.filter is None:
        return CollectionFilter(decision.entity_type or "", unrestricted=False)
    return decision.filter
