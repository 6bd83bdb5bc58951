"""Application configuration."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./db/recon.db"

    # Collaborators
    HUNTER_API_KEY: Optional[str] = None
    HUNTER_API_URL: str = "https://api.hunter.io/v2"
    HUNTER_TIMEOUT_SECONDS: float = 30.0
    AUTODISCOVER_URL: str = "https://autodiscover-s.outlook.com/autodiscover/autodiscover.svc"
    AUTODISCOVER_TIMEOUT_SECONDS: float = 15.0
    MARKITDOWN_URL: str = "http://127.0.0.1:8490"
    MARKITDOWN_TIMEOUT_SECONDS: float = 30.0
    LLM_API_URL: str = "http://127.0.0.1:11434/v1"
    LLM_API_KEY: Optional[str] = None
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_TIMEOUT_SECONDS: float = 120.0

    # Browser
    BROWSER_HEADLESS: bool = True
    BROWSER_USER_DATA_DIR: str = "./user_data"
    BROWSER_USER_AGENT: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/95.0.4638.54 Safari/537.36"
    )

    # Scraping behaviour
    SCRAPE_NAVIGATION_TIMEOUT_SECONDS: float = 7.0
    SCRAPE_SCROLL_SETTLE_SECONDS: float = 2.0
    SCRAPE_SETTLE_JITTER_SECONDS: float = 1.0

    # Stage concurrency
    DNS_CONCURRENCY: int = 20
    SCRAPE_CONCURRENCY: int = 3  # each worker holds a browser page
    PROFILE_CONCURRENCY: int = 2
    PRETEXT_CONCURRENCY: int = 2

    # Retry policies (max_attempts=1 means no retry)
    DNS_MAX_ATTEMPTS: int = 3
    DNS_RETRY_BACKOFF_SECONDS: float = 10.0
    SCRAPE_MAX_ATTEMPTS: int = 1
    SCRAPE_RETRY_BACKOFF_SECONDS: float = 60.0
    LLM_MAX_ATTEMPTS: int = 2
    LLM_RETRY_BACKOFF_SECONDS: float = 30.0

    # Job timeouts
    DNS_JOB_TIMEOUT_SECONDS: float = 30.0
    SCRAPE_JOB_TIMEOUT_SECONDS: float = 120.0
    LLM_JOB_TIMEOUT_SECONDS: float = 300.0
    DNS_LOOKUP_TIMEOUT_SECONDS: float = 5.0

    # Queue bookkeeping
    QUEUE_POLL_INTERVAL_SECONDS: float = 1.0
    QUEUE_LEASE_SECONDS: int = 600
    QUEUE_SHUTDOWN_GRACE_SECONDS: float = 10.0
    RECOVERY_INTERVAL_SECONDS: int = 60

    # Events
    EVENT_DELIVERY_TIMEOUT_SECONDS: float = 2.0

    # Process roles
    RUN_WORKERS: bool = True  # False: API only enqueues, recon.worker processes

    # Feature Flags
    AUTO_GENERATE_PROFILES: bool = False
    LOOKUP_SOURCE_DOMAIN_DNS: bool = True
    PROFILE_SOURCE_CHAR_LIMIT: int = 4000

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
