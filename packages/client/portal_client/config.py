"""
Configuration loading and validation.

Loads chat client configuration from a YAML file. The session token is
resolved from an environment variable and never stored in the file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal
from urllib.parse import urlsplit, urlunsplit

import yaml
from pydantic import BaseModel, Field, field_validator


class ServerConfig(BaseModel):
    url: str = "http://localhost:8000"
    ws_path: str = "/ws"
    verify_tls: bool = True
    request_timeout_seconds: int = 30

    @field_validator("ws_path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @property
    def ws_url(self) -> str:
        """The realtime endpoint: http(s) base URL mapped to ws(s)."""
        parts = urlsplit(self.url)
        scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
        path = parts.path.rstrip("/") + self.ws_path
        return urlunsplit((scheme, parts.netloc, path, "", ""))


class SessionConfig(BaseModel):
    token_env: str = "PORTAL_SESSION_TOKEN"
    user_id: str | None = None
    reconnect_delay_seconds: float = Field(default=3.0, gt=0)
    history_limit: int = Field(default=50, ge=1, le=100)
    channel: str = "general"

    @property
    def token(self) -> str | None:
        return os.environ.get(self.token_env)


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "text"


class ClientConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str | Path) -> ClientConfig:
    """Load and validate client configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return ClientConfig.model_validate(raw)
