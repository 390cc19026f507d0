"""headb configuration management.

Configuration sources (in priority order):
1. Plain secret variables (OAUTH_CLIENT_ID, TOKEN_AEAD_KEY, PROVIDER_TOKEN_AEAD_KEY)
2. Config file (config.yaml)
3. Environment variables (HEADB_ prefix, ``__`` for nested sections)
4. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000

    # structlog output: level name, and JSON lines instead of console rendering
    log_level: Literal["debug", "info", "warning", "error"] = "info"
    log_json: bool = False


class DatabaseConfig(BaseModel):
    """Database configuration."""

    # SQLite by default; postgresql+asyncpg:// works the same way
    url: str = "sqlite+aiosqlite:///./headb.db"
    echo: bool = False


class OAuthConfig(BaseModel):
    """OAuth device-flow provider configuration.

    Defaults point at GitHub. Tests and self-hosted providers override the URLs.
    """

    client_id: str = ""
    device_code_url: str = "https://github.com/login/device/code"
    access_token_url: str = "https://github.com/login/oauth/access_token"
    identity_url: str = "https://api.github.com/user"

    # Used when the provider omits `interval` from the device code response
    default_interval_seconds: int = 5

    # Shared HTTP client
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    max_connections: int = 50


class SecurityConfig(BaseModel):
    """Credential configuration.

    Keys are given either as raw strings of the exact length or base64url-encoded.
    """

    # 32 bytes, seals bearer tokens (ChaCha20-Poly1305)
    token_aead_key: str = ""

    # 16/24/32 bytes, seals provider access tokens at rest (AES-GCM)
    provider_token_aead_key: str = ""

    # bcrypt work factor for API key verifiers
    bcrypt_rounds: int = Field(default=10, ge=4, le=31)

    # Bearer expiration claim
    bearer_lifetime_days: int = Field(default=99 * 365, ge=1)


class PermissionsConfig(BaseModel):
    """Permission evaluation configuration.

    combine_grants:
    - scoped_first: a database-scoped grant decides alone, the global grant
      is only consulted when no scoped grant exists
    - max: both grants are read and the higher role decides
    """

    combine_grants: Literal["scoped_first", "max"] = "scoped_first"


class Settings(BaseSettings):
    """headb application settings."""

    model_config = SettingsConfigDict(
        env_prefix="HEADB_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)


# Process secrets accepted under their plain names: env var -> (section, field)
_SECRET_ENV_VARS: dict[str, tuple[str, str]] = {
    "OAUTH_CLIENT_ID": ("oauth", "client_id"),
    "TOKEN_AEAD_KEY": ("security", "token_aead_key"),
    "PROVIDER_TOKEN_AEAD_KEY": ("security", "provider_token_aead_key"),
}


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. HEADB_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/headb/config.yaml
    """
    config_paths = [
        os.environ.get("HEADB_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/headb/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


def _apply_secret_env(config: dict) -> dict:
    """Overlay plain secret env vars onto the file config."""
    for env_name, (section, field) in _SECRET_ENV_VARS.items():
        value = os.environ.get(env_name)
        if value:
            config.setdefault(section, {})[field] = value
    return config


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Configuration is loaded from:
    1. Plain secret environment variables
    2. YAML config file (if exists)
    3. HEADB_ environment variables for sections the file leaves out
    4. Defaults
    """
    file_config = _apply_secret_env(_load_config_file())

    return Settings(**file_config)
