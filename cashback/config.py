"""Service configuration, read from environment variables (prefix ``CASHBACK_``)."""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CASHBACK_", env_file=".env", extra="ignore")

    # Cashback
    default_cashback_percent: Decimal = Field(default=Decimal("4"), ge=0, le=100)
    coupon_code_bytes: int = Field(default=8, ge=4, le=32)

    # Seeded administrator
    seed_admin: bool = True
    admin_username: str = "admin"
    admin_password: str = "admin123"

    # API
    cors_origins: list[str] = ["*"]

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("log_format")
    @classmethod
    def check_log_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
