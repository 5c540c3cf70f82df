"""Terminal/training service client used for seat provisioning.

Provisioning runs in the worker (queue ``terminal_provisioning``).  Its
failures are logged and never surface to the user-creation request that
scheduled it.
"""

from __future__ import annotations

import logging

import httpx

from entitlements.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class TerminalService:
    def __init__(
        self,
        base_url: str | None,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._timeout = timeout
        self._transport = transport

    async def provision_user(self, user_id: str, email: str) -> None:
        if self._base_url is None:
            logger.info("Terminal provisioning skipped (no service): user=%s", user_id)
            return
        async with httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport
        ) as client:
            try:
                response = await client.post(
                    "/users", json={"user_id": user_id, "email": email}
                )
            except httpx.HTTPError as exc:
                raise ExternalServiceError("Terminal service unreachable") from exc
        if response.is_error:
            raise ExternalServiceError(
                f"Terminal service returned {response.status_code}"
            )
        logger.info("Terminal account provisioned: user=%s", user_id)
