"""Configuration management for Typix.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the TYPIX_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (TYPIX_* prefix)
2. .env file in the project root
3. Default values defined in TypixConfig

Example .env file:
    TYPIX_RUNTIME=server
    TYPIX_DATABASE_PATH=data/typix.db
    TYPIX_FILE_STORAGE=disk
    TYPIX_PROVIDER_CLOUDFLARE_BUILTIN=false

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
Services receive a config explicitly so tests can build isolated instances.

Runtime Modes
-------------
- **server**: the process owns the database and calls provider APIs directly.
- **client**: the process runs next to the user (local-first). Providers that
  do not accept cross-origin browser calls are proxied through the server
  endpoint at ``server_url`` instead of being called directly.

Generation Timing
-----------------
- generation_stale_minutes: a pending/generating record older than this is
  marked failed with reason TIMEOUT the next time its status is read
- poll_initial_delay / poll_interval: client poller cadence in seconds
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TypixConfig(BaseSettings):
    """Main configuration for Typix.

    Attributes
    ----------
    Runtime:
        runtime : Literal["server", "client"]
            Execution context of this process
        server_url : str
            Base URL of the Typix server, used by the client runtime for
            proxied provider calls and by the REST client

    Server:
        server_host : str
            Bind address for uvicorn
        server_port : int
            Port for uvicorn (1024-65535)
        auth_required : bool
            Reject requests without an ``X-User-Id`` header
        local_user_id : str
            User id assumed when authentication is not required

    Storage:
        database_path : Path
            SQLite database file
        file_storage : Literal["base64", "disk"]
            Backend used for generated images and attachments
        file_storage_dir : Path
            Directory for the disk backend

    Providers:
        provider_cloudflare_builtin : bool
            Use the deployment's built-in Cloudflare credentials
        cloudflare_account_id, cloudflare_api_token : str | None
            Credentials used when the built-in Cloudflare mode is on
        request_timeout : float
            Timeout in seconds for provider HTTP requests

    Generation:
        generation_stale_minutes : float
            Staleness window for pending/generating records
        poll_initial_delay : float
            Seconds before the client's first status poll
        poll_interval : float
            Seconds between client status polls

    Examples
    --------
        >>> from typix.core.config import config
        >>> config.generation_stale_minutes
        5.0

        >>> custom = TypixConfig(runtime="client", server_url="http://localhost:8787")
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TYPIX_",
        case_sensitive=False,
    )

    # Runtime
    runtime: Literal["server", "client"] = Field(
        default="server",
        description="Execution context: 'server' or 'client' (local-first)",
    )
    server_url: str = Field(
        default="http://127.0.0.1:8787",
        description="Base URL of the Typix server (proxy target for non-CORS providers)",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=8787,
        description="Server port",
        ge=1024,
        le=65535,
    )
    auth_required: bool = Field(
        default=False,
        description="Require an X-User-Id header on every authenticated route",
    )
    local_user_id: str = Field(
        default="GUEST",
        description="User id used when no authenticated user is present",
    )

    # Storage
    database_path: Path = Field(
        default=Path("data/typix.db"),
        description="SQLite database file",
    )
    file_storage: Literal["base64", "disk"] = Field(
        default="base64",
        description="File storage backend for generated images and attachments",
    )
    file_storage_dir: Path = Field(
        default=Path("data/files"),
        description="Directory used by the disk file storage backend",
    )

    # Providers
    provider_cloudflare_builtin: bool = Field(
        default=False,
        description="Expose the built-in Cloudflare credential settings schema",
    )
    cloudflare_account_id: str | None = Field(
        default=None,
        description="Deployment Cloudflare account id used in built-in mode",
    )
    cloudflare_api_token: str | None = Field(
        default=None,
        description="Deployment Cloudflare API token used in built-in mode",
    )
    request_timeout: float = Field(
        default=120.0,
        description="Timeout in seconds for provider HTTP requests",
        gt=0,
    )

    # Generation lifecycle
    generation_stale_minutes: float = Field(
        default=5.0,
        description="Minutes after which a pending/generating record is timed out on read",
        gt=0,
    )
    poll_initial_delay: float = Field(
        default=3.0,
        description="Seconds before the first client status poll",
        ge=0,
    )
    poll_interval: float = Field(
        default=3.0,
        description="Seconds between client status polls",
        ge=0,
    )

    log_level: str = Field(
        default="INFO",
        description="Root logging level used by the CLI entry point",
    )

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        if self.file_storage == "disk":
            self.file_storage_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance
config = TypixConfig()
