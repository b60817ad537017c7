"""
Application configuration using Pydantic Settings.

Configuration values can be set via environment variables or .env file.
A single Settings instance is built at process start and handed to the
components that need it.
"""

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, Any, Dict, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


@dataclass(frozen=True)
class ExtractionLimits:
    """Resource limits applied while unpacking an uploaded archive."""

    max_files: int = 10_000
    max_file_size: int = 50 * MIB


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "GitHub Uploader"
    version: str = "1.0.0"
    environment: str = "development"
    debug: bool = False
    dev_mode: bool = False
    host: str = "0.0.0.0"
    port: int = 3000
    base_url: str = "http://localhost:3000"

    # GitHub OAuth application
    github_client_id: str = ""
    github_client_secret: str = ""
    github_api_url: str = "https://api.github.com"
    github_oauth_url: str = "https://github.com/login/oauth"
    github_oauth_scope: str = "user:email,repo,public_repo"
    github_request_timeout: float = 30.0

    # Session / token signing
    session_secret: str = ""
    session_max_age_seconds: int = 24 * 60 * 60
    session_sweep_interval_seconds: float = 60.0
    session_cookie_name: str = "session_token"

    # Upload limits
    max_upload_size: int = 100 * MIB
    max_file_size: int = 50 * MIB
    max_files_per_archive: int = 10_000
    max_name_attempts: int = 100
    upload_timeout_seconds: float = 600.0
    temp_dir: str = "./temp"

    # CORS
    cors_origins: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

    # Rate limiting configuration
    rate_limit_default: str = "100/minute"
    rate_limit_upload: str = "10/minute"
    rate_limit_auth: str = "20/minute"

    # Optional Redis URL for distributed rate limiting
    redis_url: Optional[str] = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, value: Any) -> List[str]:
        """Accept a JSON list or a comma-separated string."""
        if isinstance(value, str):
            value = value.strip()
            if value.startswith("["):
                return [str(origin) for origin in json.loads(value)]
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def oauth_redirect_uri(self) -> str:
        return f"{self.base_url.rstrip('/')}/auth/github/callback"

    @property
    def extraction_limits(self) -> ExtractionLimits:
        return ExtractionLimits(
            max_files=self.max_files_per_archive,
            max_file_size=self.max_file_size,
        )

    def validate_config(self) -> List[str]:
        """
        Check the settings for values the service cannot run with.

        Returns:
            A list of human-readable problems; empty when the config is usable
        """
        from uploader.core.security import validate_secret_key

        errors: List[str] = []

        if self.port < 1 or self.port > 65535:
            errors.append("Port must be between 1 and 65535")

        if len(self.github_client_id) < 10:
            errors.append("GitHub Client ID is invalid")

        if len(self.github_client_secret) < 10:
            errors.append("GitHub Client Secret is invalid")

        try:
            validate_secret_key(self.session_secret)
        except ValueError as e:
            errors.append(f"Session secret rejected: {e}")

        if self.max_upload_size < MIB:
            errors.append("Max upload size must be at least 1MB")

        return errors

    def safe_summary(self) -> Dict[str, Any]:
        """Config snapshot suitable for logging (no secrets)."""
        client_id = self.github_client_id
        return {
            "environment": self.environment,
            "port": self.port,
            "base_url": self.base_url,
            "github": {
                "client_id": client_id[:8] + "..." if client_id else "",
                "redirect_uri": self.oauth_redirect_uri,
            },
            "upload": {
                "max_upload_size": self.max_upload_size,
                "max_file_size": self.max_file_size,
                "max_files_per_archive": self.max_files_per_archive,
                "temp_dir": self.temp_dir,
            },
            "rate_limit": {
                "default": self.rate_limit_default,
                "upload": self.rate_limit_upload,
                "auth": self.rate_limit_auth,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build the process-wide settings once."""
    return Settings()
