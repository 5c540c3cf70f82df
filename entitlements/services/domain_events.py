"""In-process domain events.

Membership mutations publish small frozen events; other
components subscribe to them at wiring time (for example the batch
manager hands a free seat to a user who joins a licensed group, and the
usage meter re-derives limits when organization membership changes).
Handler failures are logged and never propagate to the publisher.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from uuid import UUID

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GroupMemberAdded:
    group_id: UUID
    user_id: str
    role: str


@dataclass(frozen=True, slots=True)
class OrganizationMemberChanged:
    organization_id: UUID
    user_id: str
    role: str | None  # None once removed


Handler = Callable[[object], Awaitable[None]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = {}

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    async def publish(self, event: object) -> None:
        for handler in self._handlers.get(type(event), ()):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed: event=%s handler=%s",
                    type(event).__name__,
                    getattr(handler, "__qualname__", handler),
                )
