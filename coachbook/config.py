from functools import lru_cache
import os
from pathlib import Path
from typing import Final

from dotenv import load_dotenv
from pydantic import BaseModel, Field


ENV_FILE_PATH: Final[Path] = Path(".env")


class Settings(BaseModel):
    env: str = Field(default="dev", alias="ENV")
    timezone: str = Field(default="America/Chicago", alias="TIMEZONE")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    database_url: str = Field(default="", alias="DATABASE_URL")
    postgres_db: str = Field(default="coachbook", alias="POSTGRES_DB")
    postgres_user: str = Field(default="coachbook", alias="POSTGRES_USER")
    postgres_password: str = Field(default="coachbook", alias="POSTGRES_PASSWORD")
    postgres_host: str = Field(default="localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, alias="POSTGRES_PORT")

    jwt_secret: str = Field(default="secret", alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")

    payment_provider: str = Field(default="stub", alias="PAYMENT_PROVIDER")
    payment_api_key: str = Field(default="", alias="PAYMENT_API_KEY")
    payment_webhook_secret: str = Field(default="", alias="PAYMENT_WEBHOOK_SECRET")
    payment_currency: str = Field(default="usd", alias="PAYMENT_CURRENCY")
    processor_percentage: float = Field(default=2.9, alias="PROCESSOR_PERCENTAGE")
    processor_fixed_cents: int = Field(default=30, alias="PROCESSOR_FIXED_CENTS")

    default_platform_fee_percentage: float = Field(
        default=15, alias="DEFAULT_PLATFORM_FEE_PERCENTAGE"
    )
    max_platform_fee_percentage: float = Field(default=50, alias="MAX_PLATFORM_FEE_PERCENTAGE")

    payment_deadline_hours: int = Field(default=24, alias="PAYMENT_DEADLINE_HOURS")
    payment_reminder_window_start_min: int = Field(
        default=30, alias="PAYMENT_REMINDER_WINDOW_START_MIN"
    )
    payment_reminder_window_end_min: int = Field(
        default=90, alias="PAYMENT_REMINDER_WINDOW_END_MIN"
    )
    deadline_scan_interval_min: int = Field(default=15, alias="DEADLINE_SCAN_INTERVAL_MIN")
    seat_hold_hours: int = Field(default=24, alias="SEAT_HOLD_HOURS")
    seat_hold_sweep_interval_min: int = Field(default=30, alias="SEAT_HOLD_SWEEP_INTERVAL_MIN")
    reconciliation_grace_min: int = Field(default=10, alias="RECONCILIATION_GRACE_MIN")
    recurring_horizon_weeks: int = Field(default=8, alias="RECURRING_HORIZON_WEEKS")
    auto_complete_delay_hours: int = Field(default=168, alias="AUTO_COMPLETE_DELAY_HOURS")

    notification_webhook_url: str = Field(default="", alias="NOTIFICATION_WEBHOOK_URL")
    notification_timeout_sec: float = Field(default=10, alias="NOTIFICATION_TIMEOUT_SEC")
    admin_notification_recipient: str = Field(default="admin-queue", alias="ADMIN_NOTIFICATION_RECIPIENT")

    class Config:
        populate_by_name = True

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=False)
    return Settings(**os.environ)
