from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pydantic import field_validator


def _parse_bool(v):
    if isinstance(v, str):
        return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
    return bool(v)


class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'clinic_user'
    POSTGRES_PASSWORD: str = 'clinic_pass'
    POSTGRES_DB: str = 'clinic_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # async URL override (tests use sqlite+aiosqlite)
    DB_TRANSACTION_TIMEOUT_SECONDS: float = 15.0

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # JWT settings
    APP_SECRET_STRING: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Stripe settings
    STRIPE_SECRET_KEY: str = ''
    STRIPE_DEFAULT_CURRENCY: str = 'usd'

    # Pharmacy fulfillment partner
    PHARMACY_API_URL: str = 'http://pharmacy:8080/api/v1'
    PHARMACY_API_KEY: str = ''
    PHARMACY_TIMEOUT_SECONDS: float = 20.0

    # Batch jobs
    CRON_SECRET: str = ''
    REFILL_SWEEP_INTERVAL_SECONDS: float = 3600.0
    BILLING_RECONCILE_INTERVAL_SECONDS: float = 86400.0

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def async_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        return _parse_bool(v)

settings = Settings()
