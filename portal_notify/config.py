from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Redis settings
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20

    # Push gateway (wire-level push protocol lives behind it)
    PUSH_GATEWAY_URL: str = "http://localhost:8081"
    PUSH_GATEWAY_TOKEN: str | None = None
    PUSH_GATEWAY_TIMEOUT: float = 10.0

    # Auth settings
    JWT_SECRET: str | None = None
    JWT_AUDIENCE: str = "authenticated"

    HASHING_SECRET: str | None = None
    ENCRYPTION_KEY: str | None = None

    # Users without a stored timezone are scheduled in the school's timezone
    DEFAULT_TIMEZONE: str = "America/Mexico_City"

    # =================================================================
    # DELIVERY SETTINGS
    # =================================================================
    RATE_LIMIT_MAX_SENDS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    BULK_BATCH_SIZE: int = 10
    BULK_INTER_BATCH_DELAY_MS: int = 100

    OFFLINE_MAX_ATTEMPTS: int = 5
    OFFLINE_BACKOFF_BASE_SECONDS: float = 30.0
    OFFLINE_DRAIN_MAX_ENTRIES: int | None = None
    OFFLINE_DRAIN_INTERVAL_SECONDS: float = 60.0

    NETWORK_PROBE_INTERVAL_SECONDS: float = 30.0

    # =================================================================
    # ANALYTICS / ADAPTIVE SCHEDULING
    # =================================================================
    ANALYTICS_LOG_CAP: int = 1000
    ANALYTICS_WINDOW: int = 100
    DISENGAGED_THRESHOLD: float = 0.3

    # =================================================================
    # SUBSCRIPTIONS
    # =================================================================
    SUBSCRIPTION_MAX_RENEWAL_ATTEMPTS: int = 3
    SUBSCRIPTION_INACTIVE_DAYS: int = 30

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_rate_limits(self) -> dict:
        """Sliding window limits applied per recipient."""
        return {
            "max_sends": self.RATE_LIMIT_MAX_SENDS,
            "window_seconds": self.RATE_LIMIT_WINDOW_SECONDS,
        }

    def get_offline_queue_config(self) -> dict:
        """
        Get offline queue retry configuration.
        Development drains faster so retries are visible while testing.
        """
        config = {
            "max_attempts": self.OFFLINE_MAX_ATTEMPTS,
            "backoff_base_seconds": self.OFFLINE_BACKOFF_BASE_SECONDS,
            "drain_max_entries": self.OFFLINE_DRAIN_MAX_ENTRIES,
        }

        if self.environment == "development":
            config.update({"backoff_base_seconds": min(5.0, self.OFFLINE_BACKOFF_BASE_SECONDS)})

        return config


settings = Settings()
