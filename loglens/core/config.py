from pydantic import field_validator
from pydantic_settings import BaseSettings


STORAGE_BACKENDS = ("memory", "relational", "opensearch")
WEBHOOK_PROVIDERS = ("generic", "slack", "discord")


class Settings(BaseSettings):
    # App
    APP_NAME: str = "LogLens"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Storage backend selected at startup
    STORAGE_BACKEND: str = "memory"

    # Database (relational backend + alert store)
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "loglens"
    POSTGRES_PASSWORD: str = "devpassword"
    POSTGRES_DB: str = "loglens"
    # Full URL override, e.g. sqlite+aiosqlite:///./loglens.db
    SQLALCHEMY_DATABASE_URL: str | None = None

    @property
    def DATABASE_URL(self) -> str:
        if self.SQLALCHEMY_DATABASE_URL:
            return self.SQLALCHEMY_DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # OpenSearch (full-text backend)
    OPENSEARCH_HOST: str = "localhost"
    OPENSEARCH_PORT: int = 9200
    OPENSEARCH_USERNAME: str | None = None
    OPENSEARCH_PASSWORD: str | None = None
    OPENSEARCH_USE_SSL: bool = False
    OPENSEARCH_VERIFY_CERTS: bool = True
    OPENSEARCH_INDEX: str = "loglens-logs"

    # Query limits
    MAX_QUERY_SPAN_DAYS: int = 30
    MAX_PAGE_SIZE: int = 1000
    AGGREGATION_BUCKET_CAP: int = 100
    AGGREGATION_BUCKET_CAPS: dict[str, int] = {}
    QUERY_TIMEOUT_SECONDS: float = 10.0
    # Turn backend outages into degraded (timed_out) results instead of raising
    QUERY_SOFT_TIMEOUT: bool = True

    # Alerting
    UNACKNOWLEDGED_CRITICAL_MINUTES: int = 15
    STALE_ACKNOWLEDGED_HOURS: int = 4
    NOTIFICATION_RETRY_LIMIT: int = 3
    TRIGGER_MAX_RETRIES: int = 3
    ALERT_SCAN_INTERVAL_SECONDS: int = 60
    # Minimum gap between repeated escalation notices for one alert
    ESCALATION_REPEAT_MINUTES: int = 30

    # Retention
    ALERT_RETENTION_DAYS: int = 365
    LOG_RETENTION_DAYS: int = 30

    # Notifications
    NOTIFICATION_WEBHOOK_URL: str | None = None
    NOTIFICATION_WEBHOOK_PROVIDER: str = "generic"
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0
    # Deliveries in flight at once from one scanner
    NOTIFICATION_CONCURRENCY: int = 10

    # Redis (scheduler locking)
    REDIS_URL: str = "redis://localhost:6379"

    @field_validator("STORAGE_BACKEND")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        backend = v.strip().lower()
        if backend not in STORAGE_BACKENDS:
            raise ValueError(
                f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)} (got {v!r})"
            )
        return backend

    @field_validator("NOTIFICATION_WEBHOOK_PROVIDER")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        provider = v.strip().lower()
        if provider not in WEBHOOK_PROVIDERS:
            raise ValueError(
                f"NOTIFICATION_WEBHOOK_PROVIDER must be one of {', '.join(WEBHOOK_PROVIDERS)}"
            )
        return provider

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return level

    @field_validator(
        "MAX_QUERY_SPAN_DAYS",
        "MAX_PAGE_SIZE",
        "AGGREGATION_BUCKET_CAP",
        "NOTIFICATION_RETRY_LIMIT",
        "TRIGGER_MAX_RETRIES",
        "ALERT_SCAN_INTERVAL_SECONDS",
        "NOTIFICATION_CONCURRENCY",
    )
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    def bucket_cap_for(self, field: str) -> int:
        """Aggregation bucket cap for a field, falling back to the global cap."""
        return self.AGGREGATION_BUCKET_CAPS.get(field, self.AGGREGATION_BUCKET_CAP)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
