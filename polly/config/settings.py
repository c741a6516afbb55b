from typing import List, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "Polly Notifications"
    VERSION: str = "0.1.0"
    API_PREFIX: str = "/api/v1"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./polly.db"

    # Authentication & Security
    JWT_SECRET_KEY: str = "<your-jwt-secret-key>"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    # Shared credential for cron and trigger callers
    SERVICE_ROLE_KEY: str = "<your-service-role-key>"

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Email delivery
    EMAIL_PROVIDER: str = "console"
    RESEND_API_KEY: str = "<your-resend-api-key>"
    RESEND_API_URL: str = "https://api.resend.com/emails"
    FROM_EMAIL: str = "notifications@alx-polly.com"
    FROM_NAME: str = "ALX-Polly Notifications"
    BASE_URL: str = "http://localhost:3000"
    EMAIL_TIMEOUT_SECONDS: float = 10.0

    # Notification processing
    NOTIFICATION_BATCH_SIZE: int = 50
    NOTIFICATION_SEND_CONCURRENCY: int = 10
    NOTIFICATION_SEND_CHUNK_DELAY_SECONDS: float = 1.0
    NOTIFICATION_STALE_GRACE_MINUTES: int = 60
    # Claims older than this are treated as abandoned by a crashed run
    NOTIFICATION_CLAIM_TIMEOUT_MINUTES: int = 15
    PROCESSOR_INTERVAL_MINUTES: int = 5

    @field_validator("ALLOWED_HOSTS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


settings = Settings()
