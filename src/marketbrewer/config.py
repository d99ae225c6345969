"""Application configuration via pydantic-settings."""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

KALSHI_API_URL = "https://api.elections.kalshi.com/trade-api/v2"
KALSHI_WS_URL = "wss://api.elections.kalshi.com/trade-api/ws/v2"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Core
    env: Literal["development", "staging", "production"] = Field(
        default="development", alias="MARKETBREWER_ENV"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", alias="MARKETBREWER_LOG_LEVEL"
    )

    # HTTP server
    server_host: str = Field(default="0.0.0.0", alias="SERVER_HOST")
    server_port: int = Field(default=3001, alias="SERVER_PORT")
    cors_origins: Annotated[list[str], NoDecode] = Field(default=["*"], alias="CORS_ORIGINS")

    # Kalshi
    kalshi_api_url: str = Field(default=KALSHI_API_URL, alias="KALSHI_API_URL")
    kalshi_ws_url: str = Field(default=KALSHI_WS_URL, alias="KALSHI_WS_URL")
    kalshi_api_key_id: SecretStr | None = Field(default=None, alias="KALSHI_API_KEY_ID")
    kalshi_private_key_path: str = Field(default="", alias="KALSHI_PRIVATE_KEY_PATH")
    kalshi_request_timeout: float | None = Field(
        default=None,
        alias="KALSHI_REQUEST_TIMEOUT",
        description="Upstream timeout in seconds; unset means no timeout",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str] | None) -> list[str]:
        if v is None:
            return ["*"]
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                v = json.loads(v)
            else:
                v = [o.strip() for o in v.split(",") if o.strip()]
        return [o.rstrip("/") for o in v] or ["*"]

    @field_validator("kalshi_api_key_id", mode="before")
    @classmethod
    def empty_key_id_is_none(cls, v: str | SecretStr | None) -> str | SecretStr | None:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("kalshi_request_timeout", mode="before")
    @classmethod
    def empty_timeout_is_none(cls, v: str | float | None) -> str | float | None:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def kalshi_auth_configured(self) -> bool:
        """True when a Kalshi API key id is set."""
        return self.kalshi_api_key_id is not None

    @property
    def resolved_private_key_path(self) -> Path | None:
        """Private key path with ``~`` expanded, or None if unset."""
        if not self.kalshi_private_key_path:
            return None
        return Path(self.kalshi_private_key_path).expanduser()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
