from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Parking Allocation API"
    debug: bool = False
    environment: str = "production"
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./parking.db"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8080"]

    # Spot pool
    total_spots: int = 100
    reservation_threshold: float = 0.4

    # Timing rules
    grace_period_minutes: int = 15
    standard_booking_hours: int = 4
    min_reservation_lead_hours: int = 24
    max_reservation_days_ahead: int = 7
    walk_in_max_hours: int = 8
    walk_in_min_hours: int = 2
    max_extension_hours: int = 4
    extension_window_minutes: int = 60
    time_slot_minutes: int = 15
    slot_search_radius_hours: int = 1

    # Allocation
    allocation_retries: int = 3

    # Reconcilers
    reconcilers_enabled: bool = True
    expiry_interval_seconds: float = 60
    overstay_interval_seconds: float = 60


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
