from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./fidelya.db"

    # Internal API security
    internal_api_key: str = ""

    # Benefit cache
    benefit_cache_ttl_seconds: int = 300
    redemption_history_cache_ttl_seconds: int = 120

    # Catalog resolution
    catalog_default_limit: int = 50
    catalog_public_cap: int = 20
    catalog_direct_cap: int = 30
    catalog_business_chunk_size: int = 10
    new_benefit_window_days: int = 7
    benefit_backdate_limit_days: int = 31

    # Record store
    store_timeout_seconds: float = 15.0

    # Benefit maintenance scheduler
    benefit_scheduler_enabled: bool = False
    benefit_schedule_path: str = "config/schedules.toml"

    @field_validator("catalog_business_chunk_size", "catalog_default_limit", mode="before")
    @classmethod
    def _ensure_positive(cls, value: object) -> int:
        try:
            parsed = int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError) as error:
            raise ValueError("must be an integer") from error
        if parsed < 1:
            raise ValueError("must be at least 1")
        return parsed


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
