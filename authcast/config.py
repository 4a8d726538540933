"""
Configuration loading and validation.

Settings come from an optional YAML file, with AUTHCAST_* environment
variables (nested with "__", e.g. AUTHCAST_REDIS__URL) filling in anything
the file leaves out.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .keys import DEFAULT_SESSION_PREFIX


class RedisConfig(BaseModel):
    url: str = "redis://localhost:6379/0"


class StoreConfig(BaseModel):
    backend: Literal["redis", "memory"] = "redis"


class SessionsConfig(BaseModel):
    cookie_name: str = "connect.sid"
    key_prefix: str = DEFAULT_SESSION_PREFIX


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    ws_path: str = "/ws"


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True


class AuthcastConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="AUTHCAST_", env_nested_delimiter="__", extra="ignore"
    )

    redis: RedisConfig = Field(default_factory=RedisConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path | None = None) -> AuthcastConfig:
    """Load configuration from a YAML file, or from the environment alone."""
    if path is None:
        return AuthcastConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return AuthcastConfig(**raw)
