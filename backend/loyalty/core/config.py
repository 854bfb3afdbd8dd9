import os
import re
import sys
from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables and .env files."""

    app_name: str = "Loyalty Accrual API"
    environment: str = "dev"
    debug: bool = True
    version: str = "0.1.0"
    database_url: str = "sqlite:///./loyalty.db"
    database_echo: bool = False

    # Reward (accrual) service and reconciliation engine.
    accrual_system_address: str = "http://localhost:8123"
    accrual_poll_interval_seconds: float = Field(default=10.0, gt=0)
    accrual_request_timeout_seconds: float = Field(default=20.0, gt=0)
    accrual_default_retry_after_seconds: int = Field(default=30, ge=0)
    accrual_worker_pool_size: int = Field(default=8, ge=1)
    accrual_enabled: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LOY_",
        extra="ignore",
    )

    def dict_for_logging(self) -> dict[str, Any]:
        return {
            "app_name": self.app_name,
            "environment": self.environment,
            "debug": self.debug,
            "version": self.version,
            "database_url": mask_database_password(self.database_url),
            "accrual_system_address": self.accrual_system_address,
            "accrual_poll_interval_seconds": self.accrual_poll_interval_seconds,
            "accrual_worker_pool_size": self.accrual_worker_pool_size,
        }


_URL_PASSWORD_RE = re.compile(r"(://[^:/@]+:)([^@]+)(@)")
_DSN_PASSWORD_RE = re.compile(r"(password=)(\S+)", re.IGNORECASE)


def mask_database_password(url: str) -> str:
    """Hide the password part of a database URL or key=value DSN."""

    masked = _URL_PASSWORD_RE.sub(r"\1***\3", url)
    return _DSN_PASSWORD_RE.sub(r"\1***", masked)


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings instance."""

    settings = Settings()

    # Test runs use their own SQLite file and never start the background
    # reconciliation thread; tests drive ticks explicitly.
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        settings.database_url = "sqlite:///./loyalty_test.db"
        settings.accrual_enabled = False

    return settings


__all__ = ["Settings", "get_settings", "mask_database_password"]
