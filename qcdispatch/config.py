"""Configuration management from environment variables."""

import os
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


def _delays(value: str) -> tuple[timedelta, ...]:
    return tuple(timedelta(seconds=int(part)) for part in value.split(",") if part.strip())


class Config:
    """Application configuration loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    ADMIN_CHAT_ID: str = os.getenv("ADMIN_CHAT_ID", "")
    APP_BASE_URL: str = os.getenv("APP_BASE_URL", "")

    # Database
    DATABASE_PATH: Path = Path(os.getenv("DATABASE_PATH", "./data/qcdispatch.db"))
    STORE_RETRY_ATTEMPTS: int = int(os.getenv("STORE_RETRY_ATTEMPTS", "5"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Scheduler
    HEARTBEAT_INTERVAL: int = int(os.getenv("HEARTBEAT_INTERVAL", "60"))
    DUE_WINDOW_MINUTES: int = int(os.getenv("DUE_WINDOW_MINUTES", "10"))

    # Delivery
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
    RETRY_DELAYS: tuple[timedelta, ...] = _delays(os.getenv("RETRY_DELAYS", "5,30,120"))
    NOTIFICATION_TTL_HOURS: int = int(os.getenv("NOTIFICATION_TTL_HOURS", "24"))
    LOW_PRIORITY_BATCH_DELAY: int = int(os.getenv("LOW_PRIORITY_BATCH_DELAY", "2"))

    # Milestones
    MILESTONE_INTERVAL: int = int(os.getenv("MILESTONE_INTERVAL", "3600"))
    DETECTION_RULES_PATH: str = os.getenv("DETECTION_RULES_PATH", "")
    DETECTION_CONCURRENCY: int = int(os.getenv("DETECTION_CONCURRENCY", "4"))

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        if not cls.TELEGRAM_BOT_TOKEN:
            raise ValueError("TELEGRAM_BOT_TOKEN environment variable is required")

        if cls.ADMIN_CHAT_ID and not cls.ADMIN_CHAT_ID.lstrip("-").isdigit():
            raise ValueError("ADMIN_CHAT_ID must be a numeric chat id")

        if not cls.RETRY_DELAYS:
            raise ValueError("RETRY_DELAYS needs at least one delay in seconds")

        if cls.MAX_RETRIES < 0:
            raise ValueError("MAX_RETRIES cannot be negative")

        if cls.DUE_WINDOW_MINUTES <= 0:
            raise ValueError("DUE_WINDOW_MINUTES must be positive")

        if cls.DETECTION_RULES_PATH and not Path(cls.DETECTION_RULES_PATH).is_file():
            raise ValueError(f"DETECTION_RULES_PATH not found: {cls.DETECTION_RULES_PATH}")

        # Ensure database directory exists
        cls.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)
