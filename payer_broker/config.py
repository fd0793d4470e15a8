"""Runtime configuration for the Payer Data Broker."""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from .constants import (
    DEFAULT_ADAPTER_TIMEOUT_SECONDS,
    DEFAULT_CACHE_TTL_HOURS,
    DEFAULT_HEALTH_TIMEOUT_SECONDS,
)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class BrokerSettings(BaseModel):
    """Settings resolved once at process start."""

    environment: str = "development"
    app_url: str = "http://localhost:5000"
    database_url: Optional[str] = None

    credential_encryption_key: Optional[str] = None
    credential_key_secret_arn: Optional[str] = None

    cache_ttl_hours: float = DEFAULT_CACHE_TTL_HOURS
    adapter_timeout_seconds: float = DEFAULT_ADAPTER_TIMEOUT_SECONDS
    health_timeout_seconds: float = DEFAULT_HEALTH_TIMEOUT_SECONDS
    medicare_use_sandbox: bool = True

    internal_api_token: Optional[str] = None
    sweep_interval_minutes: int = 0
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "BrokerSettings":
        """Build settings from environment variables.

        Args:
            dotenv: Load a local .env file first (values already present in
                the environment win).

        Returns:
            BrokerSettings populated from the environment
        """
        if dotenv:
            load_dotenv()

        return cls(
            environment=os.getenv("ENVIRONMENT", "development"),
            app_url=os.getenv("APP_URL", "http://localhost:5000").rstrip("/"),
            database_url=os.getenv("DATABASE_URL"),
            credential_encryption_key=os.getenv("PAYER_CREDENTIAL_ENCRYPTION_KEY") or None,
            credential_key_secret_arn=os.getenv("PAYER_CREDENTIAL_KEY_SECRET_ARN") or None,
            cache_ttl_hours=float(os.getenv("INSURANCE_CACHE_TTL_HOURS", str(DEFAULT_CACHE_TTL_HOURS))),
            adapter_timeout_seconds=float(
                os.getenv("PAYER_ADAPTER_TIMEOUT_SECONDS", str(DEFAULT_ADAPTER_TIMEOUT_SECONDS))
            ),
            health_timeout_seconds=float(
                os.getenv("PAYER_HEALTH_TIMEOUT_SECONDS", str(DEFAULT_HEALTH_TIMEOUT_SECONDS))
            ),
            medicare_use_sandbox=_env_bool("MEDICARE_USE_SANDBOX", "true"),
            internal_api_token=os.getenv("INTERNAL_API_TOKEN") or None,
            sweep_interval_minutes=int(os.getenv("SWEEP_INTERVAL_MINUTES", "0")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
