"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Mediaforge Transcoding API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Database (job store)
    DATABASE_URL: str = "sqlite+aiosqlite:///./mediaforge.db"
    DATABASE_ECHO: bool = False

    # Celery (maintenance tasks)
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    # Storage Configuration
    # STORAGE_BACKEND: local, s3, minio
    STORAGE_BACKEND: str = "local"

    # Local Storage (when STORAGE_BACKEND=local)
    LOCAL_STORAGE_PATH: str = "./storage"

    # S3/MinIO/Compatible Storage (when STORAGE_BACKEND=s3 or minio)
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_USE_SSL: bool = True

    # CDN Configuration (optional, for any backend)
    CDN_DOMAIN: Optional[str] = None
    CDN_ENABLED: bool = False

    # FFmpeg toolchain
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    FFMPEG_KILL_GRACE_SECONDS: float = 5.0
    TEMP_DIR: str = "/tmp/media-processing"

    # Transcoding queue
    MAX_CONCURRENT_TRANSCODING_JOBS: int = 3
    MAX_QUEUE_SIZE: int = 100
    JOB_MAX_RETRIES: int = 3
    JOB_TIMEOUT_SECONDS: float = 30 * 60
    CLEANUP_INTERVAL_SECONDS: float = 60 * 60
    JOB_RETENTION_DAYS: int = 7
    TEMP_FILE_MAX_AGE_HOURS: int = 24
    SHUTDOWN_GRACE_SECONDS: float = 60.0

    # Retry backoff: constant, linear, exponential
    RETRY_BACKOFF: str = "constant"
    RETRY_DELAY_SECONDS: float = 30.0
    RETRY_MAX_DELAY_SECONDS: float = 600.0
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_JITTER: float = 0.1

    # Streaming delivery
    STREAMING_PRIMARY_CDN_DOMAIN: str = "cdn.mediaforge.io"
    STREAMING_FALLBACK_CDN_DOMAINS: list[str] = [
        "media-origin.s3.amazonaws.com",
        "backup-cdn.mediaforge.io",
    ]
    STREAMING_REGION_DOMAINS: dict[str, str] = {
        "us-east-1": "us-east.cdn.mediaforge.io",
        "us-west-2": "us-west.cdn.mediaforge.io",
        "eu-west-1": "eu.cdn.mediaforge.io",
        "ap-southeast-1": "asia.cdn.mediaforge.io",
    }

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
