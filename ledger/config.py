# ledger/config.py
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Core ---
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    DATABASE_URL: str = "sqlite://"

    # HMAC key for status tokens, at least 32 chars
    STATUS_TOKEN_SECRET: str | None = None

    # --- Referrals ---
    REFERRAL_REWARD_RATE_BPS: int = 1000
    REFERRAL_BONUS_DAYS: int = 30
    REFERRAL_REWARD_LOCK_DAYS: int = 7
    REFERRAL_CHECK_ABUSE: bool = True

    # --- Admin login throttling ---
    LOGIN_MAX_FAILURES: int = 5
    LOGIN_WINDOW_SECONDS: int = 10 * 60
    LOGIN_BLOCK_SECONDS: int = 10 * 60

    # --- Background jobs ---
    REWARD_UNLOCK_ENABLED: bool = True
    REWARD_UNLOCK_INTERVAL_SECONDS: int = 5 * 60

    # --- Dashboard ---
    DASHBOARD_UTC_OFFSET_MINUTES: int = 0

    @property
    def database_url(self) -> str:
        # Railway/Heroku hand out postgres://, SQLAlchemy expects postgresql://
        if self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql://", 1)
        return self.DATABASE_URL


settings = Settings()
