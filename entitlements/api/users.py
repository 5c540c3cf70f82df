from __future__ import annotations

import logging

from fastapi import APIRouter, status
from pydantic import BaseModel

from entitlements.api.dependencies import AdminDep, CoreDep, UserDep
from entitlements.api.plans import PlanOut, plan_out
from entitlements.api.schemas import SubscriptionOut, subscription_out

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


class RegisterIn(BaseModel):
    email: str
    name: str = ""


class UserOut(BaseModel):
    id: str
    email: str
    name: str
    email_verified: bool


class RegisterOut(BaseModel):
    user: UserOut
    personal_organization_id: str


class OrgContributionOut(BaseModel):
    organization_id: str
    name: str
    display_name: str
    is_personal: bool
    role: str
    plan_id: str | None
    plan_name: str | None


class FeaturesOut(BaseModel):
    user_id: str
    highest_plan: PlanOut | None
    features: list[str]
    caps: dict[str, int]
    network_access_enabled: bool
    data_persistence_enabled: bool
    organizations: list[OrgContributionOut]
    subscriptions: list[SubscriptionOut]


@router.post("", response_model=RegisterOut, status_code=status.HTTP_201_CREATED)
async def register_user(body: RegisterIn, principal: AdminDep, core: CoreDep) -> RegisterOut:
    """Create a user in the identity directory and bootstrap their personal org."""
    user, org = await core.users.register_user(body.email, body.name)
    logger.info("User registered by admin=%s user=%s", principal.user_id, user.id)
    return RegisterOut(
        user=UserOut(
            id=user.id, email=user.email, name=user.name, email_verified=user.email_verified
        ),
        personal_organization_id=str(org.id),
    )


@router.get("/me", response_model=UserOut)
async def me(principal: UserDep, core: CoreDep) -> UserOut:
    user = await core.users.get_user(principal.user_id)
    return UserOut(
        id=user.id, email=user.email, name=user.name, email_verified=user.email_verified
    )


@router.get("/me/features", response_model=FeaturesOut)
async def my_features(principal: UserDep, core: CoreDep) -> FeaturesOut:
    """Everything the caller's subscriptions and organizations entitle them to.

    Users created before personal orgs existed get theirs here, on first read.
    """
    user = await core.users.get_user(principal.user_id)
    await core.users.ensure_bootstrapped(user)
    bundle = await core.resolver.effective_features(principal.user_id)
    return FeaturesOut(
        user_id=bundle.user_id,
        highest_plan=plan_out(bundle.highest_plan) if bundle.highest_plan else None,
        features=list(bundle.features),
        caps=bundle.caps,
        network_access_enabled=bundle.network_access_enabled,
        data_persistence_enabled=bundle.data_persistence_enabled,
        organizations=[
            OrgContributionOut(
                organization_id=str(c.organization_id),
                name=c.name,
                display_name=c.display_name,
                is_personal=c.is_personal,
                role=c.role,
                plan_id=str(c.plan_id) if c.plan_id else None,
                plan_name=c.plan_name,
            )
            for c in bundle.organizations
        ],
        subscriptions=[subscription_out(s) for s in bundle.subscriptions],
    )
