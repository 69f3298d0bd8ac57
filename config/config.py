"""
Configuration for Queue Service
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Service info
    SERVICE_NAME: str = "queue-service"
    SERVICE_PORT: int = 8002

    # PostgreSQL Database
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "queue_service"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"

    @property
    def DATABASE_URL(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # ==================== QUEUE PARAMETERS ====================
    # None means queues are unbounded unless a queue sets its own ceiling
    DEFAULT_QUEUE_CAPACITY: Optional[int] = None
    ESTIMATOR_SAMPLE_LIMIT: int = 50

    # ==================== UPSTREAM BROKER (MQTT) ====================
    # Publishes queue updates TO display boards/apps
    MQTT_ENABLED: bool = False
    UPSTREAM_BROKER_HOST: str = "mosquitto-upstream"
    UPSTREAM_BROKER_PORT: int = 1883
    UPSTREAM_TOPIC_PREFIX: str = "queues/updates"

    # ==================== EXTERNAL SERVICES ====================
    # Service catalog is synced at startup when set
    CATALOG_SERVICE_URL: Optional[str] = None
    CATALOG_SERVICE_TIMEOUT: int = 10

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )


settings = Settings()
