"""Settings via pydantic-settings with ANTI_ env prefix.

Cloud endpoints, OAuth parameters and cascade polling knobs all live here
so a single .env file can point the proxy at a different deployment.
"""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ANTI_", env_file=".env", extra="ignore")

    log_level: str = "info"

    # Backend selection when the caller does not pick one
    default_backend: Literal["cloud", "cascade"] = "cloud"

    # Cloud (REST) backend, tried in order
    cloud_base_urls: list[str] = Field(
        default_factory=lambda: [
            "https://daily-cloudcode-pa.googleapis.com",
            "https://daily-cloudcode-pa.sandbox.googleapis.com",
            "https://cloudcode-pa.googleapis.com",
        ]
    )
    generate_path: str = "/v1internal:generateContent"
    stream_path: str = "/v1internal:streamGenerateContent"
    user_agent: str = "antigravity/1.104.0 darwin/arm64"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Generation limits
    default_max_tokens: int = 4096
    thinking_min_output_tokens: int = 1000

    # OAuth / identity provider
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    oauth_auth_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    oauth_userinfo_url: str = "https://www.googleapis.com/oauth2/v1/userinfo?alt=json"
    oauth_project_url: str = "https://cloudcode-pa.googleapis.com/v1internal:loadCodeAssist"
    oauth_scopes: list[str] = Field(
        default_factory=lambda: [
            "https://www.googleapis.com/auth/cloud-platform",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
            "https://www.googleapis.com/auth/cclog",
            "https://www.googleapis.com/auth/experimentsandconfigs",
        ]
    )
    refresh_margin_seconds: int = 300
    credentials_path: str = "~/.anti-api/auth.json"
    credentials_provider: str = "antigravity"

    # Cascade (local RPC) backend
    language_server_host: str = "127.0.0.1"
    language_server_port: int | None = None
    language_server_csrf_token: str = ""
    cascade_poll_interval: float = 0.5  # seconds between trajectory reads
    cascade_timeout: float = 120.0  # overall wait for a terminal step
    cascade_request_timeout: float = 30.0  # per RPC call
    stream_chunk_size: int = 20  # characters per synthetic delta

    @model_validator(mode="after")
    def _validate_cascade(self) -> "Settings":
        if self.cascade_poll_interval < 0:
            raise ValueError("cascade_poll_interval must be >= 0")
        if self.cascade_timeout <= 0:
            raise ValueError("cascade_timeout must be > 0")
        if self.stream_chunk_size < 1:
            raise ValueError("stream_chunk_size must be >= 1")
        if not self.cloud_base_urls:
            raise ValueError("cloud_base_urls must contain at least one URL")
        return self


def configure_logging(settings: Settings) -> None:
    """Apply the process-wide log format and level."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
