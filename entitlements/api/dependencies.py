from __future__ import annotations

import logging
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from entitlements.core.config import SETTINGS
from entitlements.core.errors import PermissionDeniedError
from entitlements.middleware.request_context import user_id_var
from entitlements.models.principal import Principal
from entitlements.services import token_service
from entitlements.wiring import Core, get_core

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

CoreDep = Annotated[Core, Depends(get_core)]


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    core: CoreDep,
) -> Principal:
    """Extract and validate the JWT bearer token. Returns a Principal.

    Roles are the token's roles plus the plain role groupings held in the
    Policy Store (roles conferred by a plan, for example).  Entity-scoped
    groupings such as ``organization:<id>`` stay in the store.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized("Not authenticated")
    try:
        claims = token_service.decode_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise _unauthorized("Token expired") from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected: %s", e)
        raise _unauthorized("Invalid token") from None

    user_id = claims["sub"]
    granted = {r for r in core.store.roles_for(user_id) if ":" not in r}
    principal = Principal(
        user_id=user_id,
        roles=frozenset(claims.get("roles", [])) | granted,
        email_verified=bool(claims.get("email_verified", False)),
    )
    user_id_var.set(user_id)
    logger.debug(
        "Token validated for user=%s roles=%s", principal.user_id, sorted(principal.roles)
    )
    return principal


UserDep = Annotated[Principal, Depends(require_user)]


def require_verified_email(principal: UserDep) -> Principal:
    """Payment-mutating endpoints need a verified email address."""
    if not principal.email_verified:
        logger.warning("Unverified email blocked: user=%s", principal.user_id)
        raise PermissionDeniedError(
            "Email address must be verified first", code="EMAIL_NOT_VERIFIED"
        )
    return principal


def require_admin(principal: UserDep) -> Principal:
    if not principal.is_admin():
        logger.warning("Access denied: user=%s is not an administrator", principal.user_id)
        raise PermissionDeniedError("Administrator role required")
    return principal


VerifiedUserDep = Annotated[Principal, Depends(require_verified_email)]
AdminDep = Annotated[Principal, Depends(require_admin)]


def checkout_urls(success_url: str | None, cancel_url: str | None) -> tuple[str, str]:
    """Hosted-checkout return URLs, defaulting to the frontend's billing pages."""
    base = (SETTINGS.frontend_url or "http://localhost:3000").rstrip("/")
    return (
        success_url or f"{base}/billing/success",
        cancel_url or f"{base}/billing/cancel",
    )
