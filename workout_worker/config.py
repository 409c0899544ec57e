"""
Configuration management for the workout worker.

Centralizes all configuration loading from environment variables
and provides type-safe access to configuration values.
"""

import os
import tempfile
from typing import Dict, Any, Optional
from dataclasses import dataclass


@dataclass
class WorkerConfig:
    """Configuration for the workout worker"""

    # Job source settings
    JOB_SOURCE_TYPE: str = "postgres"  # postgres, sqs
    JOB_SOURCE_CONFIG: Dict[str, Any] = None

    # Storage settings
    DATABASE_URL: Optional[str] = None
    POSTGRES_POOL_SIZE: int = 5
    POSTGRES_TIMEOUT: int = 10

    # Model provider
    OPENAI_API_KEY: Optional[str] = None
    VISION_MODEL: str = "gpt-4o-mini"
    SYNTHESIS_MODEL: str = "gpt-4o-mini"

    # Pipeline settings
    FRAME_EXTRACTOR_URL: str = "https://ffmpeg-rest-production-0140.up.railway.app/video/frames"
    FRAME_EXTRACTOR_TIMEOUT_SEC: int = 300
    DOWNLOAD_TIMEOUT_SEC: float = 30.0
    VISION_MAX_CONCURRENT: int = 5
    TEXT_EXTRACTION_TIMEOUT_SEC: float = 180.0
    THUMBNAIL_SOURCE: str = "TikTok"
    TEMP_DIR: str = tempfile.gettempdir()

    # Queue behaviour
    POLL_INTERVAL_MS: int = 1500
    MAX_ATTEMPTS: int = 3
    BACKOFF_MULTIPLIER: float = 1.5
    MAX_BACKOFF_MS: int = 12000
    RATE_LIMIT_BASE_DELAY_SEC: float = 30.0
    RATE_LIMIT_MAX_DELAY_SEC: float = 300.0
    WORKER_CONCURRENCY: int = 1

    # Notifications
    ENABLE_NOTIFICATIONS: bool = True
    EXPO_PUSH_URL: str = "https://exp.host/--/api/v2/push/send"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "/app/data/worker"

    # HTTP server
    ENABLE_HTTP_SERVER: bool = False
    HTTP_PORT: int = 8000

    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """Load configuration from environment variables"""
        config = cls()

        # Job source configuration
        config.JOB_SOURCE_TYPE = os.getenv("JOB_SOURCE_TYPE", "postgres")
        config.JOB_SOURCE_CONFIG = cls._parse_job_source_config()

        # Storage configuration
        config.DATABASE_URL = os.getenv("DATABASE_URL")
        config.POSTGRES_POOL_SIZE = int(os.getenv("POSTGRES_POOL_SIZE", "5"))
        config.POSTGRES_TIMEOUT = int(os.getenv("POSTGRES_TIMEOUT", "10"))

        # Model provider
        config.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
        config.VISION_MODEL = os.getenv("VISION_MODEL", "gpt-4o-mini")
        config.SYNTHESIS_MODEL = os.getenv("SYNTHESIS_MODEL", "gpt-4o-mini")

        # Pipeline settings
        config.FRAME_EXTRACTOR_URL = os.getenv("FRAME_EXTRACTOR_URL", cls.FRAME_EXTRACTOR_URL)
        config.FRAME_EXTRACTOR_TIMEOUT_SEC = int(os.getenv("FRAME_EXTRACTOR_TIMEOUT_SEC", "300"))
        config.DOWNLOAD_TIMEOUT_SEC = float(os.getenv("DOWNLOAD_TIMEOUT_SEC", "30"))
        config.VISION_MAX_CONCURRENT = int(os.getenv("VISION_MAX_CONCURRENT", "5"))
        config.TEXT_EXTRACTION_TIMEOUT_SEC = float(os.getenv("TEXT_EXTRACTION_TIMEOUT_SEC", "180"))
        config.THUMBNAIL_SOURCE = os.getenv("THUMBNAIL_SOURCE", "TikTok")
        config.TEMP_DIR = os.getenv("TEMP_DIR", tempfile.gettempdir())

        # Queue behaviour
        config.POLL_INTERVAL_MS = int(os.getenv("WORKER_POLL_MS", "1500"))
        config.MAX_ATTEMPTS = int(os.getenv("WORKER_MAX_ATTEMPTS", "3"))
        config.BACKOFF_MULTIPLIER = float(os.getenv("WORKER_BACKOFF_MULTIPLIER", "1.5"))
        config.MAX_BACKOFF_MS = int(os.getenv("WORKER_MAX_BACKOFF_MS", "12000"))
        config.RATE_LIMIT_BASE_DELAY_SEC = float(os.getenv("RATE_LIMIT_BASE_DELAY_SEC", "30"))
        config.RATE_LIMIT_MAX_DELAY_SEC = float(os.getenv("RATE_LIMIT_MAX_DELAY_SEC", "300"))
        config.WORKER_CONCURRENCY = max(1, int(os.getenv("WORKER_CONCURRENCY", "1")))

        # Notifications
        config.ENABLE_NOTIFICATIONS = os.getenv("ENABLE_NOTIFICATIONS", "true").lower() == "true"
        config.EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", cls.EXPO_PUSH_URL)

        # Logging
        config.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        config.LOG_DIR = os.getenv("LOG_DIR", "/app/data/worker")

        # HTTP server
        config.ENABLE_HTTP_SERVER = os.getenv("WORKER_DEV_HTTP", "false").lower() == "true"
        config.HTTP_PORT = int(os.getenv("WORKER_HTTP_PORT", "8000"))

        return config

    @classmethod
    def _parse_job_source_config(cls) -> Dict[str, Any]:
        """Parse job source specific configuration"""
        job_source_type = os.getenv("JOB_SOURCE_TYPE", "postgres")

        if job_source_type == "postgres":
            return {
                "database_url": os.getenv("DATABASE_URL"),
                "connection_pool_size": int(os.getenv("POSTGRES_POOL_SIZE", "5")),
                "connection_timeout": int(os.getenv("POSTGRES_TIMEOUT", "10"))
            }
        elif job_source_type == "sqs":
            return {
                "queue_url": os.getenv("AWS_SQS_QUEUE_URL"),
                "region": os.getenv("AWS_REGION", "us-east-1"),
                "wait_time_seconds": int(os.getenv("SQS_WAIT_TIME", "20"))
            }
        else:
            return {}

    def validate(self) -> None:
        """Validate configuration and raise errors for missing required values"""
        required_vars = []

        if self.JOB_SOURCE_TYPE not in ("postgres", "sqs"):
            raise ValueError(f"Unsupported job source type: {self.JOB_SOURCE_TYPE}")

        # Workout records always live in Postgres
        if not self.DATABASE_URL:
            required_vars.append("DATABASE_URL")

        if self.JOB_SOURCE_TYPE == "sqs" and not (self.JOB_SOURCE_CONFIG or {}).get("queue_url"):
            required_vars.append("AWS_SQS_QUEUE_URL")

        if not self.FRAME_EXTRACTOR_URL:
            required_vars.append("FRAME_EXTRACTOR_URL")

        if required_vars:
            raise ValueError(f"Missing required environment variables: {', '.join(required_vars)}")

    def rate_limit_delay(self, attempts: int) -> float:
        """Backoff before re-running a rate-limited job, in seconds"""
        delay = self.RATE_LIMIT_BASE_DELAY_SEC * (self.BACKOFF_MULTIPLIER ** max(attempts - 1, 0))
        return min(delay, self.RATE_LIMIT_MAX_DELAY_SEC)
