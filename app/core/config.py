from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'lab_user'
    POSTGRES_PASSWORD: str = 'lab_pass'
    POSTGRES_DB: str = 'lab_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # Overrides the Postgres settings when set

    # Redis settings (Celery broker and result backend)
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # Subscription policy
    TRIAL_PLAN_NAME: str = 'Trial'
    DEFAULT_PLAN_NAME: str = 'Basic'
    AUTO_DOWNGRADE_PAYMENT_ID: str = 'auto_downgrade_from_trial'
    MANUAL_ASSIGNMENT_PAYMENT_ID: str = 'manual_assignment'
    BILLING_TIMEZONE: str = 'UTC'

    # Expiry sweep: "celery", "inprocess" or "disabled"
    SUBSCRIPTION_SWEEP_MODE: str = 'celery'
    SUBSCRIPTION_SWEEP_CRON: str = '0 0 * * *'  # Daily at midnight
    SUBSCRIPTION_SWEEP_TIMEZONE: str = 'UTC'
    SUBSCRIPTION_SWEEP_MAX_RETRIES: int = 3
    SUBSCRIPTION_SWEEP_RETRY_SECONDS: int = 300

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
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("SUBSCRIPTION_SWEEP_MODE", mode="before")
    @classmethod
    def parse_sweep_mode(cls, v):
        mode = str(v).lower().strip('"').strip("'")
        if mode not in ("celery", "inprocess", "disabled"):
            raise ValueError("SUBSCRIPTION_SWEEP_MODE must be one of: celery, inprocess, disabled")
        return mode

    @field_validator("SUBSCRIPTION_SWEEP_CRON")
    @classmethod
    def validate_sweep_cron(cls, v):
        if len(v.split()) != 5:
            raise ValueError("SUBSCRIPTION_SWEEP_CRON must be a five-field cron expression")
        return v

settings = Settings()
