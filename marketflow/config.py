from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for the Redis cache backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "marketflow:"


class CacheConfig(BaseModel):
    """Cache configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class WorkflowConfig(BaseModel):
    """Workflow engine limits and defaults."""

    max_nodes_per_workflow: int = Field(default=50, gt=0)
    max_active_per_customer: int = Field(default=10, gt=0)
    execution_timeout: float = Field(default=300, gt=0)
    cache_ttl: int = Field(default=3600, ge=0)
    scheduler_batch_size: int = Field(default=100, gt=0)
    execution_retention_days: int = Field(default=30, ge=0)


class QueueConfig(BaseModel):
    """Event queue retry and retention settings."""

    batch_size: int = Field(default=100, gt=0)
    max_attempts: int = Field(default=5, gt=0)
    initial_backoff: float = Field(default=30, ge=0)
    retention_days: int = Field(default=7, ge=0)


class MarketflowConfig(BaseModel):
    """Top-level configuration model."""

    workflow: WorkflowConfig = WorkflowConfig()
    queue: QueueConfig = QueueConfig()
    cache: CacheConfig = CacheConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"
    # Provider codes the CLI binds to the recording provider.
    dry_run_providers: List[str] = Field(default_factory=lambda: ["inmemory"])


def load_config(path: Optional[str] = None) -> MarketflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to MARKETFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("MARKETFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = MarketflowConfig(**data)
    else:
        config = MarketflowConfig()

    env_db_url = os.getenv("MARKETFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_cache = os.getenv("MARKETFLOW_CACHE")
    if env_cache:
        config.cache.backend = env_cache.lower()
    env_level = os.getenv("MARKETFLOW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level.upper()
    return config
