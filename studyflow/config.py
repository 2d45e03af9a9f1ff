from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .contracts import RetryPolicy


class AIConfig(BaseModel):
    """Settings for the text-completion capability."""

    default_model: str = "google-gla:gemini-2.5-flash"
    default_system_prompt: str = "You are a helpful assistant."


class ExecutionConfig(BaseModel):
    """Defaults applied by the step interpreter."""

    step_timeout: Optional[float] = Field(default=None, gt=0)
    run_timeout: Optional[float] = Field(default=None, gt=0)
    retry: RetryPolicy = RetryPolicy()


class SchedulerConfig(BaseModel):
    interval: float = Field(default=60.0, gt=0)
    next_run_interval: float = Field(default=24 * 60 * 60, gt=0)


class StudyflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    ai: AIConfig = AIConfig()
    execution: ExecutionConfig = ExecutionConfig()
    scheduler: SchedulerConfig = SchedulerConfig()


def load_config(path: Optional[str] = None) -> StudyflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STUDYFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STUDYFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StudyflowConfig(**data)
    else:
        config = StudyflowConfig()

    env_db_url = os.getenv("STUDYFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
