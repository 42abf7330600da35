"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Clinic Workflow Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./workflow_engine.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis Settings (Celery broker + event bus)
    REDIS_URL: str = "redis://localhost:6379/0"
    EVENT_BUS_ENABLED: bool = False
    EVENT_BUS_CHANNEL: str = "clinic.events"

    # Scheduler / dispatcher
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_SECONDS: float = 60.0
    SCHEDULER_MAX_WORKERS: int = 8
    SCHEDULER_BATCH_SIZE: int = 200
    CLAIM_LEASE_SECONDS: int = 300

    # Step execution
    STEP_TIMEOUT_SECONDS: float = 30.0
    STEP_MAX_ATTEMPTS: int = 3
    STEP_RETRY_DELAY_SECONDS: float = 300.0  # 5 minutes between attempts

    # Enrollment
    DEFAULT_DUPLICATE_PREVENTION_DAYS: int = 30

    # External capabilities
    MESSAGING_API_URL: str = "http://localhost:8081"
    MESSAGING_API_KEY: str = ""
    CRM_API_URL: str = "http://localhost:8082"
    CRM_API_KEY: str = ""
    PROVIDER_HTTP_TIMEOUT: float = 20.0

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8080"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def claim_lease_ms(self) -> int:
        return self.CLAIM_LEASE_SECONDS * 1000

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
