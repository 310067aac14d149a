from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CLAIM_TIMEOUT_SECONDS,
    DEFAULT_GRACE_PERIOD_SECONDS,
    DEFAULT_OAUTH_HTTP_TIMEOUT,
    DEFAULT_REFRESH_MARGIN_SECONDS,
    DEFAULT_RUN_TIMEOUT_MS,
    DEFAULT_SUBSCRIBER_QUEUE_SIZE,
    DEFAULT_TRANSITION_RETRIES,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Event transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    subscriber_queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE


class TokenConfig(BaseModel):
    """Signing settings for worker and run tokens."""

    algorithm: Literal["HS256", "RS256"] = "HS256"
    secret: Optional[str] = None
    private_key_path: Optional[str] = None
    public_key_path: Optional[str] = None
    issuer: str = "runwire"
    run_token_grace_seconds: int = DEFAULT_GRACE_PERIOD_SECONDS


class QueueConfig(BaseModel):
    """Claim queue and sweep timings."""

    claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS
    grace_period_seconds: int = DEFAULT_GRACE_PERIOD_SECONDS
    default_run_timeout_ms: int = DEFAULT_RUN_TIMEOUT_MS
    max_transition_retries: int = DEFAULT_TRANSITION_RETRIES


class OAuthClientConfig(BaseModel):
    """Token endpoint and client identity for one credential schema."""

    token_url: str
    client_id: str
    client_secret: str
    auth_method: Literal["body", "basic"] = "body"


class OAuthConfig(BaseModel):
    """OAuth refresh behaviour and per-schema clients."""

    refresh_margin_seconds: int = DEFAULT_REFRESH_MARGIN_SECONDS
    http_timeout: float = DEFAULT_OAUTH_HTTP_TIMEOUT
    clients: Dict[str, OAuthClientConfig] = Field(default_factory=dict)


class RunwireConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    transport: TransportConfig = TransportConfig()
    tokens: TokenConfig = TokenConfig()
    queue: QueueConfig = QueueConfig()
    oauth: OAuthConfig = OAuthConfig()


def load_config(path: Optional[str] = None) -> RunwireConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to RUNWIRE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("RUNWIRE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RunwireConfig(**data)
    else:
        config = RunwireConfig()

    env_db_url = os.getenv("RUNWIRE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_secret = os.getenv("RUNWIRE_WORKER_SECRET")
    if env_secret:
        config.tokens.secret = env_secret
    env_transport = os.getenv("RUNWIRE_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    return config
