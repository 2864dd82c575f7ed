"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Literal, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ADMIN_SECRET: str = ""

    # Redis Configuration (arq queue + cross-process refresh guard)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Cache health
    CACHE_STALE_THRESHOLD_MINUTES: float = 180
    CACHE_CRITICAL_STALE_RATIO: float = 0.5

    # Refresh
    REFRESH_MAX_WORKERS: int = 5
    # Shared with the arq worker; "local" only for an API process running without it
    REFRESH_GUARD_BACKEND: Literal["local", "redis"] = "redis"
    FETCH_TIMEOUT_SECONDS: int = 60

    # Reporting
    OFFLINE_CONVERSION_RATE: float = 0.2

    # Meta Ads SDK (optional app credentials, tokens live on the client row)
    META_APP_ID: Optional[str] = None
    META_APP_SECRET: Optional[str] = None

    # Google Ads SDK
    GOOGLE_ADS_DEVELOPER_TOKEN: Optional[str] = None
    GOOGLE_ADS_CLIENT_ID: Optional[str] = None
    GOOGLE_ADS_CLIENT_SECRET: Optional[str] = None
    GOOGLE_ADS_LOGIN_CUSTOMER_ID: Optional[str] = None

    # Telemetry
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def validate_settings(settings: Settings) -> Settings:
    """Fail fast on settings the cache and refresh services cannot run with.

    Raises:
        ConfigurationError: on the first invalid value found
    """
    if settings.CACHE_STALE_THRESHOLD_MINUTES <= 0:
        raise ConfigurationError(
            f"CACHE_STALE_THRESHOLD_MINUTES must be > 0, got {settings.CACHE_STALE_THRESHOLD_MINUTES}"
        )
    if not 0 < settings.CACHE_CRITICAL_STALE_RATIO <= 1:
        raise ConfigurationError(
            f"CACHE_CRITICAL_STALE_RATIO must be in (0, 1], got {settings.CACHE_CRITICAL_STALE_RATIO}"
        )
    if settings.REFRESH_MAX_WORKERS < 1:
        raise ConfigurationError(
            f"REFRESH_MAX_WORKERS must be >= 1, got {settings.REFRESH_MAX_WORKERS}"
        )
    if settings.FETCH_TIMEOUT_SECONDS <= 0:
        raise ConfigurationError(
            f"FETCH_TIMEOUT_SECONDS must be > 0, got {settings.FETCH_TIMEOUT_SECONDS}"
        )
    if not 0 <= settings.OFFLINE_CONVERSION_RATE <= 1:
        raise ConfigurationError(
            f"OFFLINE_CONVERSION_RATE must be in [0, 1], got {settings.OFFLINE_CONVERSION_RATE}"
        )
    return settings


# =============================================================================
# ADMIN GUARD
# =============================================================================

def verify_admin_secret(
    x_admin_secret: str = Header(...),
    settings: Settings = Depends(get_settings),
):
    """Verify admin secret header for protected endpoints."""
    if not settings.ADMIN_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints not configured"
        )
    if x_admin_secret != settings.ADMIN_SECRET:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin secret"
        )
    return True


# =============================================================================
# SERVICE PROVIDERS
# =============================================================================
# Long-lived collaborators are built once by create_app() and parked on
# app.state. Tests replace them through app.dependency_overrides.

def get_cache_store(request: Request):
    return request.app.state.cache_store


def get_refresh_guard(request: Request):
    return request.app.state.refresh_guard


def get_orchestrator(request: Request):
    return request.app.state.orchestrator


def get_report_service(request: Request):
    return request.app.state.report_service


def get_fetcher(request: Request):
    return request.app.state.fetcher
