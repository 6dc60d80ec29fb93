from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, Optional, Literal
import logging
import re
from functools import lru_cache
from dotenv import load_dotenv

# Explicitly load .env file to ensure environment variables are available
load_dotenv()

logger = logging.getLogger(__name__)

_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


class Settings(BaseSettings):
    # Environment detection
    APP_ENV: Literal["production", "development"] = Field(
        default="development",
        description="Application environment: production enforces shared Redis state"
    )
    SERVICE_NAME: str = Field(default="provider-engine", description="Service name stamped on structured logs")
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    LOG_FORMAT: Literal["json", "development", ""] = Field(
        default="",
        description="Force log format; empty auto-selects json in production"
    )

    # Shared state
    REDIS_URL: Optional[str] = Field(default=None, description="Redis URL for rate limiting and caching")
    REDIS_PREFIX: str = Field(default="", description="Optional namespace prefix for Redis keys")

    # Provider records
    PROVIDERS_CONFIG_PATH: str = Field(
        default="providers.json",
        description="JSON file holding provider configuration records"
    )
    ENCRYPTION_KEY: Optional[str] = Field(
        default=None,
        description="64 hex chars (32 bytes) AES-256-GCM key for stored provider credentials"
    )
    PROVIDER_REFRESH_SECONDS: float = Field(
        default=300.0,
        ge=0,
        description="Rebuild cached provider engines from the store after this age; 0 keeps them until evicted"
    )

    # Request executor
    REQUEST_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0, description="Absolute timeout per attempt")
    MAX_RETRIES: int = Field(default=3, ge=1, description="Attempts per request including the first")
    DEFAULT_RATE_LIMIT_INTERVAL_MS: int = Field(default=1000, ge=0)

    # Circuit breaker and latency quarantine
    CIRCUIT_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    CIRCUIT_OPEN_SECONDS: float = Field(default=30.0, gt=0)
    LATENCY_WINDOW_SIZE: int = Field(default=10, ge=1)
    LATENCY_MIN_SAMPLES: int = Field(default=5, ge=1)
    LATENCY_FACTOR: float = Field(default=1.5, gt=1)
    LATENCY_FLOOR_MS: float = Field(default=2000.0, ge=0)
    LATENCY_SLOW_SAMPLE_LIMIT: int = Field(default=3, ge=1)

    # Cache TTLs (seconds)
    CACHE_TTL_COUNTRIES: int = Field(default=3600)
    CACHE_TTL_SERVICES: int = Field(default=3600)
    CACHE_TTL_PRICES: int = Field(default=60)
    LOCAL_CACHE_SIZE: int = Field(default=1024, description="Entries kept by the in-process cache fallback")

    # Currency
    POINTS_RATE: float = Field(default=100.0, gt=0, description="Internal points per 1 USD")
    FX_RATES: Dict[str, float] = Field(
        default={"USD": 1.0},
        description="Currency units per 1 USD, e.g. {\"RUB\": 92.5}"
    )
    FX_CACHE_TTL_SECONDS: int = Field(default=600)

    # Fan-out and HTTP surface
    STATUS_BATCH_CONCURRENCY: int = Field(default=10, ge=1)
    WEBHOOK_RATE_LIMIT: str = Field(default="120/minute")
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        extra="ignore"
    )

    @field_validator('LOG_FORMAT', mode='before')
    @classmethod
    def normalize_log_format(cls, v):
        if v is None:
            return ""
        return str(v).lower()

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def use_json_logs(self) -> bool:
        if self.LOG_FORMAT:
            return self.LOG_FORMAT == "json"
        return self.is_production


def validate_environment_configuration(settings: Settings) -> None:
    """
    Validate configuration for the current environment mode.

    Critical errors prevent startup, warnings are logged but allow continuation.

    Raises:
        ValueError: For critical configuration errors that prevent startup
    """
    critical_errors = []
    warnings = []

    if settings.ENCRYPTION_KEY and not _HEX_KEY_PATTERN.match(settings.ENCRYPTION_KEY):
        critical_errors.append("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")

    if settings.LATENCY_MIN_SAMPLES > settings.LATENCY_WINDOW_SIZE:
        critical_errors.append("LATENCY_MIN_SAMPLES cannot exceed LATENCY_WINDOW_SIZE")

    if settings.LATENCY_SLOW_SAMPLE_LIMIT > settings.LATENCY_WINDOW_SIZE:
        critical_errors.append("LATENCY_SLOW_SAMPLE_LIMIT cannot exceed LATENCY_WINDOW_SIZE")

    for code, rate in settings.FX_RATES.items():
        if rate <= 0:
            critical_errors.append(f"FX rate for {code} must be positive")

    if settings.is_production and not settings.REDIS_URL:
        warnings.append(
            "REDIS_URL not set in production: rate limiting and caching fall back to "
            "process-local state and are not shared across workers"
        )

    if not settings.ENCRYPTION_KEY:
        warnings.append("ENCRYPTION_KEY not set: provider credentials are used as stored")

    for warning in warnings:
        logger.warning(f"Configuration warning: {warning}")

    if critical_errors:
        for error in critical_errors:
            logger.error(f"Configuration error: {error}")
        raise ValueError("; ".join(critical_errors))


@lru_cache()
def get_settings() -> Settings:
    """Dependency for getting settings with validation."""
    from .exceptions import ConfigurationError
    settings = Settings()

    try:
        validate_environment_configuration(settings)
    except ValueError as e:
        raise ConfigurationError("settings", f"Configuration validation failed: {e}")

    return settings
