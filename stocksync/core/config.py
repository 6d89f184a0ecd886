# stocksync/core/config.py

import os
from functools import lru_cache
from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Database settings
    DATABASE_URL: str = ""

    # Shopify Admin API (the channel)
    SHOPIFY_SHOP_URL: Optional[str] = None
    SHOPIFY_ADMIN_API_ACCESS_TOKEN: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-10"
    SHOPIFY_LOOKUP_PAGE_SIZE: int = 250

    # Reconciliation scan
    DEFAULT_BATCH_SIZE: int = 50
    DEFAULT_BATCH_DELAY: float = 1.0          # seconds between pages
    LOOKUP_SUB_BATCH_SIZE: int = 500          # keys per bulk channel lookup
    LOOKUP_SUB_BATCH_DELAY: float = 0.5       # seconds between bulk lookups
    FUZZY_MATCH_THRESHOLD: Optional[int] = 80  # None disables fuzzy fallback

    # External calls
    EXTERNAL_CALL_TIMEOUT: float = 30.0
    RETRY_MAX_ATTEMPTS: int = 4
    RETRY_BACKOFF_BASE: float = 0.5
    RETRY_BACKOFF_MAX: float = 8.0
    RETRY_JITTER: float = 0.5

    # Circuit breaker
    BREAKER_FAIL_MAX: int = 5
    BREAKER_RESET_TIMEOUT: float = 60.0
    BREAKER_MONITORING_WINDOW: float = 60.0

    # Worker pools
    WORKER_CONCURRENCY_MANUAL: int = 5
    WORKER_CONCURRENCY_BATCH: int = 2
    WORKER_CONCURRENCY_SCHEDULED: int = 3
    JOB_RETRY_BASE_DELAY: float = 5.0
    JOB_RETRY_MAX_DELAY: float = 300.0
    JOB_RESULT_MAX_ERRORS: int = 20

    # Scheduled syncs
    SYNC_SCHEDULE_ENABLED: bool = False
    SYNC_SCHEDULE: str = "0 */4 * * *"  # every 4 hours

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists('.env') else None,
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings():
    """Cached settings to avoid loading .env file on every call"""
    return Settings()
