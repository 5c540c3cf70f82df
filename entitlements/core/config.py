from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

Environment = Literal["development", "test", "production"]
LogLevel = Literal["debug", "info", "warning", "error"]

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")

# Origins the SPA dev servers run on; only allowed in development.
_DEV_ORIGINS = ("http://localhost:3000", "http://localhost:5173")


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it’s easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _getbool(name: str, default: bool) -> bool:
    raw = _getenv(name, "true" if default else "false").lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{name} must be true|false (got {raw!r})")


@dataclass(frozen=True)
class Settings:
    environment: Environment
    log_level: LogLevel
    log_json: bool
    port: int
    version: str
    database_url: str | None
    redis_url: str | None
    frontend_url: str | None
    admin_frontend_url: str | None
    stripe_secret_key: str | None
    identity_provider_url: str | None
    identity_client_id: str | None
    identity_client_secret: str | None
    terminal_service_url: str | None
    request_timeout_seconds: float
    permission_warn_only: bool
    jwt_public_key_file: str | None
    jwt_issuer: str
    jwt_audience: str

    @property
    def is_dev(self) -> bool:
        return self.environment == "development"

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def is_prod(self) -> bool:
        return self.environment == "production"

    @property
    def cors_origins(self) -> list[str]:
        origins = [u for u in (self.frontend_url, self.admin_frontend_url) if u]
        if self.is_dev:
            origins.extend(o for o in _DEV_ORIGINS if o not in origins)
        return origins


def load_settings() -> Settings:
    environment_raw = _getenv("ENVIRONMENT", "development").lower()
    if environment_raw not in ("development", "test", "production"):
        raise ValueError(
            f"ENVIRONMENT must be development|test|production (got {environment_raw!r})"
        )

    default_level = "debug" if environment_raw == "development" else "info"
    log_level_raw = _getenv("LOG_LEVEL", default_level).lower()
    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    port_raw = _getenv("PORT", "8000")
    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    timeout_raw = _getenv("REQUEST_TIMEOUT_SECONDS", "10")
    try:
        request_timeout = float(timeout_raw)
    except ValueError:
        raise ValueError(
            f"REQUEST_TIMEOUT_SECONDS must be a number (got {timeout_raw!r})"
        ) from None
    if request_timeout <= 0:
        raise ValueError(
            f"REQUEST_TIMEOUT_SECONDS must be positive (got {timeout_raw!r})"
        )

    return Settings(  # type: ignore[arg-type]
        environment=environment_raw,
        log_level=log_level_raw,
        log_json=_getbool("LOG_JSON", False),
        port=port,
        version=_getenv("APP_VERSION", "0.1.0"),
        database_url=_getenv("DATABASE_URL", "") or None,
        redis_url=_getenv("REDIS_URL", "") or None,
        frontend_url=_getenv("FRONTEND_URL", "") or None,
        admin_frontend_url=_getenv("ADMIN_FRONTEND_URL", "") or None,
        stripe_secret_key=_getenv("STRIPE_SECRET_KEY", "") or None,
        identity_provider_url=_getenv("IDENTITY_PROVIDER_URL", "") or None,
        identity_client_id=_getenv("IDENTITY_CLIENT_ID", "") or None,
        identity_client_secret=_getenv("IDENTITY_CLIENT_SECRET", "") or None,
        terminal_service_url=_getenv("TERMINAL_SERVICE_URL", "") or None,
        request_timeout_seconds=request_timeout,
        permission_warn_only=_getbool("PERMISSION_WARN_ONLY", True),
        jwt_public_key_file=_getenv("JWT_PUBLIC_KEY_FILE", "") or None,
        jwt_issuer=_getenv("JWT_ISSUER", "training-platform"),
        jwt_audience=_getenv("JWT_AUDIENCE", "entitlements"),
    )


# Module-level singleton so imports are cheap
SETTINGS = load_settings()
