# src/webapp_auth_bff/config.py

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Literal, Union

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# .env is at the project root, two levels up from src/webapp_auth_bff/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

LIST_FIELDS = ("BFF_SCOPES", "PUBLIC_PATHS", "PROTECTED_REDIRECT_PATHS", "PROTECTED_API_PATHS")


class Settings(BaseSettings):
    # === Identity provider (Entra ID) ===
    BFF_TENANT_ID: str
    BFF_CLIENT_ID: str
    BFF_CLIENT_SECRET: str
    BFF_AUTHORITY_HOST: AnyHttpUrl = "https://login.microsoftonline.com"
    BFF_REDIRECT_URI: AnyHttpUrl
    BFF_POST_LOGOUT_REDIRECT_URI: AnyHttpUrl
    # Pydantic sees these as a comma-separated string from the env first,
    # the validator below turns them into List[str]
    BFF_SCOPES: Union[str, List[str]] = ["User.Read"]
    PROVIDER_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    # === Session Management ===
    SESSION_SECRET_KEY: str = Field(..., min_length=32)
    SESSION_COOKIE_NAME: str = "session_id"
    SESSION_COOKIE_MAX_AGE: int = Field(default=60 * 60 * 4, gt=0)  # 4 hours
    SESSION_COOKIE_SECURE: bool = True
    SESSION_COOKIE_SAMESITE: Literal["lax", "strict", "none"] = "none"

    # === Token lifecycle ===
    TOKEN_REFRESH_COOLDOWN_SECONDS: int = Field(default=30 * 60, ge=0)
    PENDING_FLOW_MAX_AGE_SECONDS: int = Field(default=10 * 60, gt=0)

    # === Request gating ===
    PUBLIC_PATHS: Union[str, List[str]] = ["/favicon.ico", "/manifest.json", "/static/*"]
    PROTECTED_REDIRECT_PATHS: Union[str, List[str]] = ["/", "/index.html", "/users/*"]
    PROTECTED_API_PATHS: Union[str, List[str]] = ["/v2/*"]
    DEFAULT_POST_LOGIN_PATH: str = "/"

    LOG_LEVEL: str = "INFO"

    # === MSAL Configuration (derived properties) ===
    @property
    def BFF_AUTHORITY(self) -> str:
        return f"{str(self.BFF_AUTHORITY_HOST).rstrip('/')}/{self.BFF_TENANT_ID}"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @field_validator(*LIST_FIELDS, mode="before")
    @classmethod
    def parse_comma_separated(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        if isinstance(v, (list, tuple)):
            return [str(item).strip() for item in v if str(item).strip()]
        raise TypeError("Expected a comma-separated string or a list.")

    @field_validator("PUBLIC_PATHS", "PROTECTED_REDIRECT_PATHS", "PROTECTED_API_PATHS", "DEFAULT_POST_LOGIN_PATH")
    @classmethod
    def paths_are_absolute(cls, v: Union[str, List[str]]) -> Union[str, List[str]]:
        for path in ([v] if isinstance(v, str) else v):
            if not path.startswith("/"):
                raise ValueError(f"Path patterns must start with '/', got: {path!r}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def known_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def check_cookie_policy(self) -> "Settings":
        # browsers drop SameSite=None cookies without Secure
        if self.SESSION_COOKIE_SAMESITE == "none" and not self.SESSION_COOKIE_SECURE:
            raise ValueError("SESSION_COOKIE_SAMESITE=none requires SESSION_COOKIE_SECURE=true")
        return self


@lru_cache()
def get_settings() -> Settings:
    if ENV_FILE_PATH.exists():
        load_dotenv(dotenv_path=ENV_FILE_PATH, override=False)
        logger.info("Loaded .env file from: %s", ENV_FILE_PATH)
    else:
        logger.info(".env file not found at %s. Relying on environment variables.", ENV_FILE_PATH)
    return Settings()
