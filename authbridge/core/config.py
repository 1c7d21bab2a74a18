from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Iterable

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Environment-driven client configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AUTHBRIDGE_",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    API_URL: str = "https://sih-project-pojd.onrender.com/api"
    TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)
    WITH_CREDENTIALS: bool = True

    LOGIN_ROUTE: str = "/auth/login"
    REFRESH_PATH: str = "/login/refresh-token"
    # Requests whose URL contains any of these never trigger a refresh.
    RECOVERY_EXCLUDED_PATHS: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["/login", "/refresh-token"])
    DEDUPE_REFRESH: bool = False

    SESSION_FILE: Path | None = None
    SESSION_DB_URL: str | None = None

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    @field_validator("API_URL", mode="before")
    @classmethod
    def strip_trailing_slash(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("API_URL must be a non-empty string")
        return value.strip().rstrip("/")

    @field_validator("REFRESH_PATH", mode="before")
    @classmethod
    def ensure_leading_slash(cls, value: Any) -> str:
        value = str(value or "").strip()
        if not value.startswith("/"):
            value = "/" + value
        return value

    @field_validator("RECOVERY_EXCLUDED_PATHS", mode="before")
    @classmethod
    def parse_excluded_paths(cls, value: Any) -> list[str]:
        if value in (None, "", []):
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, Iterable):
            return [str(item).strip() for item in value if str(item).strip()]
        raise TypeError("RECOVERY_EXCLUDED_PATHS must be a comma separated string or list")

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def upper_log_level(cls, value: Any) -> str:
        return str(value or "INFO").upper()

    @property
    def refresh_url(self) -> str:
        return f"{self.API_URL}{self.REFRESH_PATH}"


@lru_cache(maxsize=1)
def get_settings() -> ClientSettings:
    return ClientSettings()
