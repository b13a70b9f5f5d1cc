"""
Configuration management for the license sync service
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "License Sync Service"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_dir: Optional[str] = "logs"  # None/empty disables file logging

    # Database
    database_url: str = "sqlite:///./license_sync.db"

    # External license API
    external_license_api_url: str = "http://localhost:2341"
    external_license_api_key: Optional[str] = None
    external_license_api_timeout_ms: int = 30000
    external_license_api_user_agent: str = "License-Sync-Backend/1.0"

    # Batch processing
    license_sync_batch_size: int = 50
    license_sync_concurrency: int = 5
    license_sync_max_comprehensive: int = 10000
    license_sync_max_concurrent_batches: int = 5  # Concurrent page fetches

    # Retries (external API)
    license_sync_retry_attempts: int = 3
    license_sync_retry_delay_ms: int = 2000
    license_sync_retry_backoff_multiplier: float = 2.0

    # Database batching
    license_sync_db_bulk_batch_size: int = 100
    license_sync_page_size: int = 100  # Reconciliation page size

    # Defaults applied to records created from external data
    license_sync_default_product: str = "ABC Business Suite"

    # Monitoring
    license_sync_slow_sync_threshold_seconds: float = 300.0

    # Scheduling
    license_sync_scheduler_enabled: bool = True
    license_sync_schedule: str = "*/30 * * * *"
    license_sync_timezone: str = "UTC"

    # Feature Flags
    license_sync_comprehensive_enabled: bool = True
    license_sync_bidirectional_enabled: bool = False

    @field_validator("license_sync_batch_size")
    @classmethod
    def _check_batch_size(cls, v: int) -> int:
        if v < 1 or v > 1000:
            raise ValueError("LICENSE_SYNC_BATCH_SIZE must be between 1 and 1000")
        return v

    @field_validator("license_sync_concurrency")
    @classmethod
    def _check_concurrency(cls, v: int) -> int:
        if v < 1 or v > 20:
            raise ValueError("LICENSE_SYNC_CONCURRENCY must be between 1 and 20")
        return v

    @field_validator("license_sync_max_comprehensive")
    @classmethod
    def _check_max_comprehensive(cls, v: int) -> int:
        if v < 100 or v > 50000:
            raise ValueError("LICENSE_SYNC_MAX_COMPREHENSIVE must be between 100 and 50000")
        return v

    @field_validator("license_sync_max_concurrent_batches", "license_sync_db_bulk_batch_size", "license_sync_page_size")
    @classmethod
    def _check_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
