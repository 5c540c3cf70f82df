"""Identity provider collaborator.

User records live in the external identity system; the entitlement core
only ever stores the user id string.  Profile data is fetched on demand
through this interface.
"""

from __future__ import annotations

import logging
import uuid
from typing import Protocol

import httpx

from entitlements.core.errors import ConflictError, ExternalServiceError, NotFoundError
from entitlements.models.user import User

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    async def get_user(self, user_id: str) -> User: ...
    async def get_user_by_email(self, email: str) -> User: ...
    async def create_user(self, email: str, name: str = "") -> User: ...


class InMemoryIdentityProvider:
    """Directory for tests and local runs without an identity provider."""

    def __init__(self) -> None:
        self._users: dict[str, User] = {}

    def put(self, user: User) -> None:
        self._users[user.id] = user

    async def get_user(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def get_user_by_email(self, email: str) -> User:
        email = email.strip().lower()
        for user in self._users.values():
            if user.email == email:
                return user
        raise NotFoundError(f"No user with email {email}")

    async def create_user(self, email: str, name: str = "") -> User:
        email = email.strip().lower()
        if any(u.email == email for u in self._users.values()):
            raise ConflictError(f"User {email} already exists", code="DUPLICATE_NAME")
        user = User(id=str(uuid.uuid4()), email=email, name=name)
        self._users[user.id] = user
        return user


def _to_user(data: dict) -> User:
    return User(
        id=str(data["id"]),
        email=str(data.get("email", "")).lower(),
        name=data.get("name") or data.get("display_name") or "",
        is_active=bool(data.get("is_active", True)),
        email_verified=bool(data.get("email_verified", False)),
    )


class HttpIdentityProvider:
    """REST identity provider authenticated with client credentials."""

    def __init__(
        self,
        base_url: str,
        client_id: str | None,
        client_secret: str | None,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        auth = (client_id, client_secret) if client_id and client_secret else None
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=auth,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Identity provider unreachable: %s %s", method, url)
            raise ExternalServiceError("Identity provider unreachable") from exc
        if response.status_code == 404:
            raise NotFoundError("User not found")
        if response.status_code == 409:
            raise ConflictError("User already exists", code="DUPLICATE_NAME")
        if response.is_error:
            logger.error(
                "Identity provider error: %s %s status=%d",
                method,
                url,
                response.status_code,
            )
            raise ExternalServiceError(
                f"Identity provider returned {response.status_code}"
            )
        return response.json()

    async def get_user(self, user_id: str) -> User:
        return _to_user(await self._request("GET", f"/users/{user_id}"))

    async def get_user_by_email(self, email: str) -> User:
        data = await self._request(
            "GET", "/users", params={"email": email.strip().lower()}
        )
        items = data.get("items", data) if isinstance(data, dict) else data
        if not items:
            raise NotFoundError(f"No user with email {email}")
        return _to_user(items[0])

    async def create_user(self, email: str, name: str = "") -> User:
        data = await self._request(
            "POST", "/users", json={"email": email.strip().lower(), "name": name}
        )
        return _to_user(data)
