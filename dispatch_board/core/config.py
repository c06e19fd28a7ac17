"""
Application configuration settings.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Dispatch Board Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production
    LOG_LEVEL: str = "INFO"

    # API
    API_V1_PREFIX: str = "/api/v1"

    # System of record
    STORE_BACKEND: str = "rest"  # rest, memory

    # Hosted backend (PostgREST dialect)
    BACKEND_URL: str = "http://localhost:54321/rest/v1"
    BACKEND_API_KEY: str = ""
    BACKEND_TIMEOUT_SECONDS: float = 10.0

    # Change notifications
    CHANGE_FEED: str = "memory"  # memory, redis
    REDIS_URL: str = "redis://localhost:6379"
    CHANGE_FEED_CHANNEL_PREFIX: str = "deliveries"

    # Reconciliation
    POLL_INTERVAL_SECONDS: float = 30.0
    NOTIFICATION_DEBOUNCE_MS: int = 100
    BOARD_IDLE_MINUTES: int = 15  # boards with no request or screen this long are stopped
    BOARD_SWEEP_INTERVAL_SECONDS: float = 60.0

    # Dispatch policy thresholds
    CONFLICT_WINDOW_MINUTES: int = 15
    PRODUCTION_LOOKAHEAD_HOURS: int = 2
    NIGHT_WINDOW_START_HOUR: int = 18
    NIGHT_WINDOW_END_HOUR: int = 0  # 0 = midnight
    MIN_JUSTIFICATION_LENGTH: int = 20
    TIMEZONE: str = "Africa/Casablanca"

    # Credit
    DEFAULT_CREDIT_LIMIT: float = 50000.0
    OVERDUE_INVOICE_DAYS: int = 30

    # Override approvals (CEO codes)
    APPROVAL_CODE_TTL_MINUTES: int = 30
    APPROVAL_MAX_ATTEMPTS: int = 3

    # Truck suggestions
    DEFAULT_TRUCK_CAPACITY_M3: float = 8.0

    # WebSocket settings
    WS_HEARTBEAT_INTERVAL: int = 30  # seconds

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:8080"]

    # Observability
    METRICS_ENABLED: bool = True
    METRICS_PATH: str = "/metrics"
    SENTRY_DSN: Optional[str] = None  # Set to enable Sentry error tracking

    def validate_production_settings(self) -> None:
        """Validate critical settings for production environment."""
        import logging

        logger = logging.getLogger(__name__)

        if not 0 <= self.NIGHT_WINDOW_START_HOUR <= 23:
            raise ValueError("NIGHT_WINDOW_START_HOUR must be between 0 and 23")
        if not 0 <= self.NIGHT_WINDOW_END_HOUR <= 23:
            raise ValueError("NIGHT_WINDOW_END_HOUR must be between 0 and 23")
        if self.CONFLICT_WINDOW_MINUTES <= 0:
            raise ValueError("CONFLICT_WINDOW_MINUTES must be positive")
        if self.MIN_JUSTIFICATION_LENGTH < 1:
            raise ValueError("MIN_JUSTIFICATION_LENGTH must be at least 1")
        if self.CHANGE_FEED not in ("memory", "redis"):
            raise ValueError(f"Unknown CHANGE_FEED: {self.CHANGE_FEED}")
        if self.STORE_BACKEND not in ("rest", "memory"):
            raise ValueError(f"Unknown STORE_BACKEND: {self.STORE_BACKEND}")
        if self.BOARD_IDLE_MINUTES < 1:
            raise ValueError("BOARD_IDLE_MINUTES must be at least 1")

        if self.ENVIRONMENT == "production":
            if not self.BACKEND_API_KEY:
                raise ValueError("BACKEND_API_KEY must be set in production")
            if self.DEBUG:
                raise ValueError("DEBUG must be False in production")
            if self.STORE_BACKEND == "memory":
                raise ValueError("STORE_BACKEND=memory is for tests and local runs only")
            if self.CHANGE_FEED == "memory":
                logger.warning(
                    "CHANGE_FEED=memory in production: push invalidation only "
                    "reaches this process, boards rely on polling."
                )
            if not self.SENTRY_DSN:
                logger.warning("SENTRY_DSN not configured. Error tracking disabled.")

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
