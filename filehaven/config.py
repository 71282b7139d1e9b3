from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from filehaven.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; production switches cookies to their secure variant."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


SESSION_COOKIE_NAME = "filehaven.session-token"
SECURE_SESSION_COOKIE_NAME = "__Secure-filehaven.session-token"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/filehaven", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/filehaven", "SHARED_FS_ROOT")
    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI; allows pre-registered OAuth codes.",
    )
    # Session token signing
    auth_secret: str | None = env_field(None, "AUTH_SECRET")
    jwt_issuer: str = env_field("filehaven", "JWT_ISSUER")
    jwt_audience: str = env_field("filehaven-web", "JWT_AUDIENCE")
    session_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "SESSION_TTL_MINUTES",
        description="Lifetime of the session cookie and its token",
    )
    # Shared secret for the /api namespace
    api_key: str | None = env_field(None, "API_KEY")
    api_access_contact: str = env_field(
        "admin@filehaven.local",
        "API_ACCESS_CONTACT",
        description="Contact shown to callers rejected for a missing or invalid API key",
    )
    # OAuth settings
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    allow_federated_account_linking: bool = env_field(
        True,
        "ALLOW_FEDERATED_ACCOUNT_LINKING",
        description="Let a federated sign-in attach to an identity registered with another provider",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    signin_path: str = env_field("/auth/signin", "SIGNIN_PATH")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("auth_secret", "api_key")
    @classmethod
    def _blank_secret_is_unset(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("signin_path")
    @classmethod
    def _validate_signin_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("SIGNIN_PATH must be an absolute path")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def session_cookie_name(self) -> str:
        return SECURE_SESSION_COOKIE_NAME if self.is_production else SESSION_COOKIE_NAME

    def missing_secrets(self) -> list[str]:
        """Names of required secrets that are not configured."""
        missing = []
        if not self.auth_secret:
            missing.append("AUTH_SECRET")
        if not self.api_key:
            missing.append("API_KEY")
        return missing


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        missing = _settings_cache.missing_secrets()
        if missing:
            logger.error(
                "configuration_incomplete",
                missing=missing,
                message="requests needing these values will be refused",
            )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
