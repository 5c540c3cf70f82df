from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

# Tests run against the in-memory core; keep any local service config out.
os.environ["ENVIRONMENT"] = "test"
for _name in ("DATABASE_URL", "REDIS_URL", "STRIPE_SECRET_KEY", "IDENTITY_PROVIDER_URL"):
    os.environ.pop(_name, None)

# Ensure repo root is on sys.path so `import entitlements` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from entitlements.main import app  # noqa: E402
from entitlements.models.plan import SubscriptionPlan  # noqa: E402
from entitlements.models.principal import Principal  # noqa: E402
from entitlements.models.user import User  # noqa: E402
from entitlements.services import token_service  # noqa: E402
from entitlements.wiring import Core, reset_core  # noqa: E402


@pytest.fixture(autouse=True)
def core() -> Core:
    """A fresh in-memory core with the default plan catalog for every test."""
    fresh = reset_core()
    asyncio.run(fresh.startup())
    return fresh


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(
    username: str = "test-user",
    roles: list[str] | None = None,
    *,
    email_verified: bool = True,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(
        sub=username, roles=roles, email_verified=email_verified
    )


def auth(username: str, roles: list[str] | None = None, **kwargs) -> dict[str, str]:
    return {"Authorization": f"Bearer {mint_token(username, roles, **kwargs)}"}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return auth("test-admin", ["admin"])


# ---------------------------------------------------------------------------
# Core test helpers
# ---------------------------------------------------------------------------


def register(core: Core, user_id: str, *, verified: bool = True) -> User:
    """Put a user into the in-memory identity directory."""
    user = User(id=user_id, email=f"{user_id}@example.com", email_verified=verified)
    core.identity.put(user)  # type: ignore[attr-defined]
    return user


def principal(user_id: str, *roles: str) -> Principal:
    return Principal(user_id=user_id, roles=frozenset(roles or ("user",)), email_verified=True)


def plan_named(core: Core, name: str) -> SubscriptionPlan:
    plan = asyncio.run(core.catalog.find_by_name(name))
    assert plan is not None, f"no plan {name!r} in the catalog"
    return plan


def add_free_plan(core: Core, name: str, **fields) -> SubscriptionPlan:
    plan = SubscriptionPlan.new(name=name, priority=fields.pop("priority", 5), **fields)
    return asyncio.run(core.catalog.create_plan(plan))
