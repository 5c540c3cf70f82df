from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from entitlements.api.admin import router as admin_router
from entitlements.api.groups import router as groups_router
from entitlements.api.health import router as health_router
from entitlements.api.metrics_endpoint import router as metrics_router
from entitlements.api.organizations import router as organizations_router
from entitlements.api.plans import router as plans_router
from entitlements.api.subscription_batches import router as batches_router
from entitlements.api.user_subscriptions import router as user_subscriptions_router
from entitlements.api.users import router as users_router
from entitlements.api.webhooks import router as webhooks_router
from entitlements.core.config import SETTINGS
from entitlements.core.errors import EntitlementError
from entitlements.core.logging import setup_logging
from entitlements.db.engine import lifespan_db
from entitlements.db.redis import lifespan_redis
from entitlements.middleware.metrics import MetricsMiddleware
from entitlements.middleware.request_context import RequestContextMiddleware
from entitlements.wiring import get_core

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Nested so teardown runs in reverse order even if one step fails.
    async with lifespan_db():
        async with lifespan_redis():
            core = get_core()
            await core.startup()
            try:
                yield
            finally:
                await core.shutdown()


app = FastAPI(
    title="entitlements",
    version=SETTINGS.version,
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)


@app.exception_handler(EntitlementError)
async def entitlement_error_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Request failed: %s %s code=%s %s",
            request.method,
            request.url.path,
            exc.code,
            exc.message,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware execution order: last-added runs first (outermost layer).
# RequestContext (outermost) -> Metrics -> CORS -> route handler
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(admin_router)
app.include_router(organizations_router)
app.include_router(groups_router)
app.include_router(plans_router)
app.include_router(user_subscriptions_router)
app.include_router(batches_router)
app.include_router(users_router)
app.include_router(webhooks_router)

logger.info(
    "entitlements started  env=%s log_level=%s port=%d docs=%s",
    SETTINGS.environment,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.is_dev else "off",
)
