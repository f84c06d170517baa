from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # =========================
    # Environment
    # =========================
    ENV: str = Field(default="dev")
    LOG_LEVEL: str = Field(default="INFO")

    # =========================
    # Database
    # =========================
    DATABASE_URL: str = Field(default="sqlite:///./gateway.db")

    # =========================
    # Signing / pricing
    # =========================
    GATEWAY_SECRET: str = Field(default="")
    PLATFORM_FEE_PERCENT: Optional[str] = None
    VOUCHER_TTL_SECONDS: int = Field(default=3600, gt=0)

    # =========================
    # Payment rail (Alby wins over NWC, neither = simulated)
    # =========================
    ALBY_API_KEY: Optional[str] = None
    NWC_URL: Optional[str] = None
    INVOICE_EXPIRY_SECONDS: int = Field(default=3600, gt=0)

    # =========================
    # Proxy
    # =========================
    UPSTREAM_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)
    SETTLEMENT_RETRIES: int = Field(default=3, ge=1)

    # =========================
    # Interactive top-up page
    # =========================
    TOPUP_POLL_INTERVAL_MS: int = Field(default=1000, gt=0)
    TOPUP_POLL_MAX_ATTEMPTS: int = Field(default=120, gt=0)

    # =========================
    # Payouts
    # =========================
    PLATFORM_LIGHTNING_ADDRESS: Optional[str] = None
    MIN_PAYOUT_SATS: int = Field(default=100, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
