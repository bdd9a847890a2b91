#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Settings - Centralized configuration management
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    BATCH_CHUNK_SIZE,
    BATCH_STAGE_CONCURRENCY,
    BATCH_MAX_FILES,
    BATCH_LOG_HISTORY,
    PROGRESS_RECENT_LOGS,
    STAGE_MAX_ATTEMPTS,
    STAGE_RETRY_DELAY_SECONDS,
    STAGE_POLL_INTERVAL_SECONDS,
    STAGE_POLL_MAX_ATTEMPTS,
    STAGE_HTTP_TIMEOUT_SECONDS,
    REMOTE_BASE_URL,
    REMOTE_AGENT_NAME,
    RETENTION_MAX_AGE_SECONDS,
    OUTPUT_DIR,
)


# Base directory
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings, overridable through BATCHFLOW_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BATCHFLOW_",
        env_file=str(BASE_DIR / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========== Batch processing ==========
    chunk_size: int = BATCH_CHUNK_SIZE
    stage_concurrency: int = BATCH_STAGE_CONCURRENCY
    max_files_per_batch: int = BATCH_MAX_FILES
    log_history: int = BATCH_LOG_HISTORY
    recent_logs: int = PROGRESS_RECENT_LOGS

    # Deleting a Processing/Paused batch: cancel-then-delete, or reject
    reject_delete_while_active: bool = False

    # ========== Stage adapters ==========
    stage_max_attempts: int = STAGE_MAX_ATTEMPTS
    stage_retry_delay: float = STAGE_RETRY_DELAY_SECONDS
    poll_interval: float = STAGE_POLL_INTERVAL_SECONDS
    poll_max_attempts: int = STAGE_POLL_MAX_ATTEMPTS

    # ========== Remote extraction ==========
    remote_api_key: str = ""
    remote_base_url: str = REMOTE_BASE_URL
    remote_agent_name: str = REMOTE_AGENT_NAME
    remote_timeout: float = STAGE_HTTP_TIMEOUT_SECONDS

    # ========== Retention ==========
    retention_max_age_seconds: Optional[float] = RETENTION_MAX_AGE_SECONDS

    # ========== Directories ==========
    output_dir: Path = BASE_DIR / OUTPUT_DIR

    def summary(self) -> dict:
        """Configuration summary safe to log (no secrets)."""
        return {
            "chunk_size": self.chunk_size,
            "stage_concurrency": self.stage_concurrency,
            "stage_max_attempts": self.stage_max_attempts,
            "stage_retry_delay": self.stage_retry_delay,
            "poll_interval": self.poll_interval,
            "poll_max_attempts": self.poll_max_attempts,
            "retention_max_age_seconds": self.retention_max_age_seconds,
            "output_dir": str(self.output_dir),
        }


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings instance."""
    return Settings()
