from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from the project root so it loads regardless of cwd
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(_ENV_FILE), ".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str
    database_ssl: bool = False
    # Upper bound for a single storage round trip before a retryable error is raised
    storage_timeout_seconds: float = 10.0

    # Bearer tokens are issued by the identity service with the same secret
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 15

    # CORS
    cors_origins: str = "http://localhost:3000"

    # All civil dates (today, past/future, day of week) are computed in this zone
    clinic_timezone: str = "Asia/Kolkata"

    # Explicit id of the single bookable practitioner; looked up by role when unset
    practitioner_id: int | None = None

    # Slot/appointment business rules
    booking_horizon_days: int = 7
    max_advance_booking_days: int = 365
    same_day_buffer_minutes: int = 5
    booking_requires_approval: bool = False

    # Maintenance
    maintenance_on_startup: bool = True
    maintenance_loop_enabled: bool = False
    maintenance_interval_seconds: int = 24 * 60 * 60
    cron_secret: str = ""

    # Env
    env: str = "development"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"


settings = Settings()
