"""Account engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application settings loaded from environment variables with ACCOUNT_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.account_engine/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Credentials
    api_key_prefix: str = "slxdb_live_"
    api_key_body_length: int = Field(default=32, ge=16, le=128)
    default_key_label: str = "Default Key"

    # Optional master key for envelope-encrypted credential storage.  The
    # bare API_KEY_ENCRYPTION_KEY name is accepted for existing deployments.
    api_key_encryption_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "ACCOUNT_API_KEY_ENCRYPTION_KEY",
            "API_KEY_ENCRYPTION_KEY",
            "api_key_encryption_key",
        ),
    )

    # Identity
    wallet_placeholder_domain: str = "wallet.solixdb"

    # Logging
    structured_logging: bool = False
    log_level: str = "INFO"

    @field_validator("api_key_encryption_key", mode="before")
    @classmethod
    def blank_master_key_is_unset(cls, v: str | SecretStr | None) -> SecretStr | None:
        if v is None:
            return None
        raw = v.get_secret_value() if isinstance(v, SecretStr) else str(v)
        if not raw.strip():
            return None
        return SecretStr(raw)

    @field_validator("api_key_prefix")
    @classmethod
    def prefix_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("api_key_prefix must not be empty")
        return v

    def is_encryption_enabled(self) -> bool:
        return self.api_key_encryption_key is not None

    def master_key(self) -> str | None:
        if self.api_key_encryption_key is None:
            return None
        return self.api_key_encryption_key.get_secret_value()


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info(
            "Loaded settings for environment: %s (credential encryption %s)",
            settings.env.value,
            "enabled" if settings.is_encryption_enabled() else "disabled",
        )

    return settings
