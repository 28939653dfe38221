"""Service configuration loaded from the environment."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.pricing import PricingConfig


class Settings(BaseSettings):
    """Settings for the allocation service; every field may be overridden as PLOT_<NAME>."""

    model_config = SettingsConfigDict(
        env_prefix="PLOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Plot Allocation"
    api_prefix: str = "/plots"

    # Persistence; an empty URI selects the in-memory backend
    mongo_uri: str = Field(default="")
    mongo_db: str = Field(default="plot_allocation")

    ledger_log_path: Path = Field(default=Path("logs/plot_ledger.log"))
    log_level: str = Field(default="INFO")

    # Pricing knobs; the tier table itself lives in PricingConfig
    price_per_square_cents: int = Field(default=100, gt=0)
    custom_model_fee_cents: int = Field(default=2000, ge=0)
    default_free_squares: int = Field(default=25, ge=0)

    demand_cache_ttl_seconds: int = Field(default=60, ge=0)
    max_commit_retries: int = Field(default=3, ge=1)

    @property
    def uses_mongo(self) -> bool:
        return bool(self.mongo_uri)

    def pricing_config(self) -> PricingConfig:
        return PricingConfig(
            price_per_square_cents=self.price_per_square_cents,
            custom_model_fee_cents=self.custom_model_fee_cents,
            default_free_squares=self.default_free_squares,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
