from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_CONFIG_PATH,
    DEFAULT_MAX_EXECUTION_TIME_MS,
    DEFAULT_MAX_VALIDATION_REPAIRS,
)


class RunnerConfig(BaseModel):
    """Execution loop settings."""

    max_execution_time_ms: int = Field(default=DEFAULT_MAX_EXECUTION_TIME_MS, gt=0)
    persist_state: bool = True


class RetryConfig(BaseModel):
    """Retry and repair settings."""

    base_delay_ms: int = Field(default=DEFAULT_BASE_DELAY_MS, ge=0)
    max_validation_repairs: int = Field(default=DEFAULT_MAX_VALIDATION_REPAIRS, ge=0)


class StepflowConfig(BaseModel):
    """Top-level configuration model."""

    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> StepflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPFLOW_CONFIG env
            variable or 'stepflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPFLOW_CONFIG", DEFAULT_CONFIG_PATH)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepflowConfig(**data)
    else:
        config = StepflowConfig()

    env_db_url = os.getenv("STEPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_timeout = os.getenv("STEPFLOW_MAX_EXECUTION_TIME_MS")
    if env_timeout:
        config.runner.max_execution_time_ms = int(env_timeout)
    return config
