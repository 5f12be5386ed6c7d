from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    engine-wide configuration, loaded from REFERRAL_* environment variables.
    percentages and thresholds are never per-transaction.
    """

    max_direct_referrals: int = Field(8, ge=1)
    direct_earning_percentage: Decimal = Field(Decimal("5"), ge=0, le=100)
    indirect_earning_percentage: Decimal = Field(Decimal("1"), ge=0, le=100)
    min_purchase_amount: Decimal = Field(Decimal("1000"), ge=0)

    # empty -> in-memory store
    database_url: str = ""

    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="REFERRAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
