"""Application configuration."""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    
    # Database
    DATABASE_URL: str = "sqlite:///./progeodata.db"
    DB_ECHO: bool = False
    
    # Work queue
    QUEUE_MAX_RETRIES: int = 5
    RETRY_BASE_SECONDS: int = 3600          # 1 hour
    RETRY_MAX_EXPONENT: int = 5             # base * 2^5 = 32 hours max
    RETRY_JITTER_RATIO: float = 0.1
    DEFAULT_PRIORITY: int = 5
    CLAIM_BATCH_SIZE: int = 10
    STALE_CLAIM_SECONDS: int = 1800
    REQUEUE_COMPLETED_AFTER_DAYS: Optional[int] = 7   # None = completed items stay completed
    
    # External sources
    FETCH_TIMEOUT_SECONDS: float = 30.0
    RATE_LIMIT_MAX_WAIT_SECONDS: Optional[float] = None   # None = up to STALE_CLAIM_SECONDS / 2
    RATE_LIMIT_ERROR_COOLDOWN_SECONDS: int = 300
    RATE_LIMIT_ERRORS_BEFORE_COOLDOWN: int = 3
    DEFAULT_REQUESTS_PER_SECOND: Optional[int] = 1
    DEFAULT_REQUESTS_PER_MINUTE: Optional[int] = 60
    DEFAULT_REQUESTS_PER_HOUR: Optional[int] = 1000
    DEFAULT_REQUESTS_PER_DAY: Optional[int] = 10000
    SOURCES_CONFIG_PATH: Optional[str] = None              # JSON adapter definitions
    PROVIDERS_CONFIG_PATH: Optional[str] = None            # JSON enrichment provider definitions
    GOOGLE_KG_API_KEY: Optional[str] = None

    # Workers
    WORKER_CONCURRENCY: int = 2
    WORKER_IDLE_SECONDS: float = 5.0
    
    # Scoring policy
    ICP_DETECTOR_VERSION: str = "icp-v1"
    LEAD_SCORE_VERSION: str = "lead-v2"
    PUBLISHABLE_GRADES: List[str] = ["A", "B"]
    ENRICH_ICP_CATEGORIES: List[str] = ["high", "medium"]
    
    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TICK_SECONDS: int = 60
    HOUSEKEEPING_INTERVAL_SECONDS: int = 300
    
    # Alerts (operational views)
    ALERT_ERROR_RATE_THRESHOLD: float = 0.1
    ALERT_QUEUE_STALE_MINUTES: int = 30
    
    # Publishing
    PUBLIC_BASE_URL: str = "https://progeodata.com"
    
    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
