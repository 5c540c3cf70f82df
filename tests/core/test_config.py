from __future__ import annotations

from dataclasses import replace

import pytest

from entitlements.core.config import SETTINGS, Settings, load_settings

# ---- valid values ----


def test_load_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("REQUEST_TIMEOUT_SECONDS", raising=False)
    monkeypatch.delenv("PERMISSION_WARN_ONLY", raising=False)
    settings = load_settings()
    assert settings.environment == "development"
    assert settings.log_level == "debug"
    assert settings.request_timeout_seconds == 10.0
    assert settings.permission_warn_only is True


def test_load_settings_respects_env_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("LOG_LEVEL", "error")
    monkeypatch.setenv("REQUEST_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("PERMISSION_WARN_ONLY", "false")
    settings = load_settings()
    assert settings.environment == "production"
    assert settings.log_level == "error"
    assert settings.request_timeout_seconds == 2.5
    assert settings.permission_warn_only is False


def test_load_settings_non_dev_defaults_to_info(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    assert load_settings().log_level == "info"


def test_load_settings_normalizes_case_and_whitespace(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("ENVIRONMENT", "  TEST  ")
    monkeypatch.setenv("LOG_LEVEL", " Warning ")
    settings = load_settings()
    assert settings.environment == "test"
    assert settings.log_level == "warning"


def test_empty_urls_mean_not_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "   ")
    settings = load_settings()
    assert settings.database_url is None
    assert settings.stripe_secret_key is None


def test_token_claims_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("JWT_PUBLIC_KEY_FILE", raising=False)
    monkeypatch.setenv("JWT_AUDIENCE", "entitlements-staging")
    settings = load_settings()
    assert settings.jwt_public_key_file is None
    assert settings.jwt_issuer == "training-platform"
    assert settings.jwt_audience == "entitlements-staging"


# ---- invalid values ----


@pytest.mark.parametrize(
    ("var", "value", "match"),
    [
        ("ENVIRONMENT", "staging", "ENVIRONMENT must be"),
        ("LOG_LEVEL", "verbose", "LOG_LEVEL must be"),
        ("PORT", "eighty", "PORT must be an integer"),
        ("REQUEST_TIMEOUT_SECONDS", "soon", "REQUEST_TIMEOUT_SECONDS must be a number"),
        ("REQUEST_TIMEOUT_SECONDS", "0", "REQUEST_TIMEOUT_SECONDS must be positive"),
        ("LOG_JSON", "maybe", "LOG_JSON must be true|false"),
    ],
)
def test_load_settings_rejects_invalid_values(
    monkeypatch: pytest.MonkeyPatch, var: str, value: str, match: str
) -> None:
    monkeypatch.setenv(var, value)
    with pytest.raises(ValueError, match=match):
        load_settings()


# ---- Settings properties ----


def _make_settings(environment: str = "development", **overrides) -> Settings:
    return replace(SETTINGS, environment=environment, **overrides)


def test_settings_environment_flags() -> None:
    assert _make_settings("development").is_dev is True
    assert _make_settings("test").is_test is True
    prod = _make_settings("production")
    assert prod.is_prod is True
    assert prod.is_dev is False


def test_cors_origins_include_dev_servers_only_in_development() -> None:
    dev = _make_settings("development", frontend_url="https://app.example.com")
    prod = _make_settings("production", frontend_url="https://app.example.com")
    assert "http://localhost:3000" in dev.cors_origins
    assert prod.cors_origins == ["https://app.example.com"]


def test_settings_is_frozen() -> None:
    s = _make_settings()
    with pytest.raises(AttributeError):
        s.environment = "production"  # type: ignore[misc]
