from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from .constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CALL_TIMEOUT_SECONDS,
    DEFAULT_CLAIM_LEASE_SECONDS,
    DEFAULT_CONCURRENCY,
    DEFAULT_EXECUTION_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_SCAN_INTERVAL,
)


class SchedulerConfig(BaseModel):
    """Scan loop and claim settings."""

    scan_interval: float = Field(default=DEFAULT_SCAN_INTERVAL, gt=0)
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, gt=0)
    claim_lease_seconds: float = Field(default=DEFAULT_CLAIM_LEASE_SECONDS, gt=0)
    execution_timeout_seconds: float = Field(
        default=DEFAULT_EXECUTION_TIMEOUT_SECONDS, gt=0
    )
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, gt=0)

    @model_validator(mode="after")
    def _timeout_within_lease(self) -> "SchedulerConfig":
        if self.execution_timeout_seconds >= self.claim_lease_seconds:
            raise ValueError(
                "execution_timeout_seconds must be lower than claim_lease_seconds"
            )
        return self


class RetryConfig(BaseModel):
    """Retry policy for email and webhook delivery."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_base: float = Field(default=DEFAULT_BACKOFF_BASE, ge=0)
    backoff_jitter: float = Field(default=DEFAULT_BACKOFF_JITTER, ge=0)


class ServicesConfig(BaseModel):
    """Collaborator backends."""

    contact_store: Literal["inmemory"] = "inmemory"
    email: Literal["inmemory"] = "inmemory"
    contacts_path: Optional[str] = None
    call_timeout_seconds: float = Field(default=DEFAULT_CALL_TIMEOUT_SECONDS, gt=0)


class NurtureConfig(BaseModel):
    """Top-level configuration model."""

    scheduler: SchedulerConfig = SchedulerConfig()
    retry: RetryConfig = RetryConfig()
    services: ServicesConfig = ServicesConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> NurtureConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to NURTURE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("NURTURE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = NurtureConfig(**data)
    else:
        config = NurtureConfig()

    env_db_url = os.getenv("NURTURE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_log_level = os.getenv("NURTURE_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level
    return config
