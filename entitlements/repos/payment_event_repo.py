from __future__ import annotations

from typing import Protocol


class PaymentEventRepo(Protocol):
    async def mark_processed(self, event_id: str, event_type: str) -> bool: ...
    async def release(self, event_id: str) -> None: ...


class InMemoryPaymentEventRepo:
    def __init__(self) -> None:
        self._seen: dict[str, str] = {}

    async def mark_processed(self, event_id: str, event_type: str) -> bool:
        """Return False if the event id was already recorded."""
        if event_id in self._seen:
            return False
        self._seen[event_id] = event_type
        return True

    async def release(self, event_id: str) -> None:
        """Forget an event whose handling failed so a redelivery is processed."""
        self._seen.pop(event_id, None)
