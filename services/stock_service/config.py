import os
from functools import lru_cache

from pydantic_settings import BaseSettings

from shared.database import build_database_url


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseSettings):
    """Application settings."""

    database_url: str = os.getenv("DATABASE_URL", "")
    postgres_user: str = os.getenv("POSTGRES_USER", "postgres")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "postgres")
    postgres_host: str = os.getenv("POSTGRES_HOST", "localhost")
    postgres_port: str = os.getenv("POSTGRES_PORT", "5432")
    postgres_db: str = os.getenv("POSTGRES_DB", "storefront")
    stock_service_port: int = int(os.getenv("STOCK_SERVICE_PORT", "8005"))

    # Stock Query Service cache
    stock_cache_backend: str = os.getenv("STOCK_CACHE_BACKEND", "memory")  # "memory" or "redis"
    stock_cache_ttl_seconds: float = float(os.getenv("STOCK_CACHE_TTL_SECONDS", "60"))
    redis_host: str = os.getenv("REDIS_HOST", "localhost")
    redis_port: int = int(os.getenv("REDIS_PORT", "6379"))

    # Stock event publishing
    kafka_enabled: bool = _env_flag("KAFKA_ENABLED", "false")
    kafka_bootstrap_servers: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    kafka_replication_factor: int = int(os.getenv("KAFKA_REPLICATION_FACTOR", "1"))

    # Sync queue
    queue_worker_enabled: bool = _env_flag("QUEUE_WORKER_ENABLED", "true")
    queue_poll_interval: float = float(os.getenv("QUEUE_POLL_INTERVAL", "30"))
    queue_batch_size: int = int(os.getenv("QUEUE_BATCH_SIZE", "20"))
    queue_max_attempts: int = int(os.getenv("QUEUE_MAX_ATTEMPTS", "5"))

    # Recovery recalculation
    recalculation_page_size: int = int(os.getenv("RECALCULATION_PAGE_SIZE", "100"))

    low_stock_threshold: int = int(os.getenv("LOW_STOCK_THRESHOLD", "5"))
    seed_products: bool = _env_flag("SEED_PRODUCTS", "false")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def sqlalchemy_url(self) -> str:
        """DATABASE_URL when set, otherwise the PostgreSQL URL from its parts."""
        if self.database_url:
            return self.database_url
        return build_database_url(
            self.postgres_user,
            self.postgres_password,
            self.postgres_host,
            self.postgres_port,
            self.postgres_db,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
