from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import DEFAULT_LEASE_TTL, DEFAULT_POLL_INTERVAL


class EngineConfig(BaseModel):
    """Configuration for the workflow engine and its poller."""

    poll_interval: float = DEFAULT_POLL_INTERVAL
    # Seconds another engine waits before re-driving a running instance.
    lease_ttl: float = DEFAULT_LEASE_TTL


class StorageConfig(BaseModel):
    """Storage backend settings."""

    database_url: Optional[str] = None


class ResumableConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    storage: StorageConfig = StorageConfig()


def load_config(path: Optional[str] = None) -> ResumableConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to RESUMABLE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("RESUMABLE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ResumableConfig(**data)
    else:
        config = ResumableConfig()

    env_db_url = os.getenv("RESUMABLE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.storage.database_url = env_db_url
    env_interval = os.getenv("RESUMABLE_POLL_INTERVAL")
    if env_interval:
        config.engine.poll_interval = float(env_interval)
    env_lease = os.getenv("RESUMABLE_LEASE_TTL")
    if env_lease:
        config.engine.lease_ttl = float(env_lease)
    return config
