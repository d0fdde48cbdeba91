from __future__ import annotations

import ipaddress
import os
from pathlib import Path
from typing import Any, List, Optional

from pydantic import AnyHttpUrl, Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine.url import make_url


DEV_DEFAULT_JWT_SECRET = "dev_secret_DO_NOT_USE_IN_PRODUCTION_generate_real_secret_with_secrets_module"
DEFAULT_DB_PASSWORDS = {
    "localdev_password_change_in_production",
    "postgres",
    "password",
    "",
}
SECRET_FILE_KEYS = ("JWT_SECRET", "OPENAI_API_KEY", "DEEPSEEK_API_KEY", "DATABASE_URL", "REDIS_URL")
DEFAULT_SAFETY_CLAUSE = "IMPORTANT: Avoid generating inappropriate, offensive or harmful content."


def _load_secret_files() -> dict[str, str | None]:
    """
    Allow secrets to come from file paths referenced via {NAME}_FILE env vars
    (Docker/K8s secrets). Returns a partial settings dict.
    """
    values: dict[str, str | None] = {}
    for key in SECRET_FILE_KEYS:
        path = os.getenv(f"{key}_FILE")
        if not path:
            continue
        try:
            content = Path(path).read_text().strip()
        except FileNotFoundError as exc:
            raise ValueError(f"{key}_FILE points to missing file: {path}") from exc
        values[key] = content
    return values


def _parse_list(value: Any) -> Any:
    """Accept a JSON array or a comma-separated string for list settings."""
    if value is None:
        return []
    if isinstance(value, str):
        import json

        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return [v.strip() for v in value.split(",") if v.strip()]
        if isinstance(parsed, list):
            return [str(v).strip() for v in parsed if str(v).strip()]
        if isinstance(parsed, str):
            return [parsed.strip()] if parsed.strip() else []
        return []
    return value


class Settings(BaseSettings):
    """Relay configuration with validation and production safety checks."""

    # Environment / mode
    ENVIRONMENT: str = "development"  # development | test | staging | production

    # Secrets
    JWT_SECRET: str = DEV_DEFAULT_JWT_SECRET

    # Database
    DATABASE_URL: str = "sqlite:///./chatrelay.db"

    # Redis (rate limiting, turn locks)
    REDIS_URL: Optional[str] = None
    REQUIRE_REDIS_IN_PRODUCTION: bool = True

    # Security toggles
    ALLOW_DEV_LOGIN: bool = False
    REQUIRE_CSRF_HEADER: bool = True

    # Auth / JWT
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    JWT_ISSUER: str = "chatrelay"
    JWT_AUDIENCE: str = "chatrelay-users"

    # CORS / rate limiting
    CORS_ORIGINS: List[AnyHttpUrl] = Field(default_factory=list)
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: List[str] = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    CORS_ALLOW_HEADERS: List[str] = ["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"]
    RATE_LIMIT_PER_MINUTE: int = 120
    CHAT_RATE_LIMIT_PER_MINUTE: int = 10
    TRUSTED_PROXY_IPS: List[str] = []
    METRICS_ALLOW_ALL: bool = False
    MAX_JSON_MB: int = 1

    # Providers
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    DEEPSEEK_API_KEY: str | None = None
    DEEPSEEK_BASE_URL: str = "https://api.deepseek.com"
    PROVIDER_HTTP_TIMEOUT_S: float = 120.0
    PROVIDER_RETRY_ATTEMPTS: int = 3
    PROVIDER_MOCK_MODE: bool = False
    ALLOW_MOCK_IN_PROD: bool = False

    # Knowledge-base runs
    KB_POLL_MAX_ATTEMPTS: int = 60
    KB_POLL_INTERVAL_S: float = 1.0

    # Relay
    TURN_TIMEOUT_S: float = 300.0
    STREAM_KEEPALIVE_SECS: float = 10.0
    MAX_CONCURRENT_STREAMS: int = 50
    STREAM_QUEUE_SIZE: int = 64
    DEBUG_ERRORS: bool = False

    # Metering
    MIN_TOKENS_TO_CHAT: int = 100
    MAX_MESSAGE_LENGTH: int = 10_000
    SAFETY_CLAUSE: str = DEFAULT_SAFETY_CLAUSE

    # Caching / locking
    ASSISTANT_CACHE_TTL_S: int = 300
    TURN_LOCK_TTL_S: int = 360

    _env_file = ".env" if (os.getenv("ENVIRONMENT") or "development").lower() != "production" else None

    model_config = SettingsConfigDict(
        env_file=_env_file,
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        # *_FILE secrets are read before environment variables.
        return (
            init_settings,
            _load_secret_files,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    # ----- Field-level validation -------------------------------------------------

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, value: str, _info: ValidationInfo) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return value

    @field_validator("CORS_ORIGINS", "TRUSTED_PROXY_IPS", mode="before")
    @classmethod
    def parse_list_fields(cls, value: Any) -> Any:
        return _parse_list(value)

    @field_validator("TRUSTED_PROXY_IPS")
    @classmethod
    def validate_trusted_proxies(cls, value: List[str]) -> List[str]:
        """Ensure each trusted proxy entry is a valid IP or CIDR."""
        networks = []
        for cidr in value:
            try:
                networks.append(str(ipaddress.ip_network(cidr, strict=False)))
            except ValueError as exc:
                raise ValueError(f"Invalid TRUSTED_PROXY_IPS entry '{cidr}': {exc}")
        return networks

    @field_validator("CORS_ALLOW_CREDENTIALS")
    @classmethod
    def validate_cors_credentials(cls, value: bool, info: ValidationInfo) -> bool:
        if value:
            origins = info.data.get("CORS_ORIGINS") or []
            if any(str(o).strip() == "*" for o in origins):
                raise ValueError("CORS_ORIGINS cannot include '*' when CORS_ALLOW_CREDENTIALS=true")
        return value

    @field_validator("ENVIRONMENT")
    @classmethod
    def normalize_environment(cls, value: str) -> str:
        value = value.lower()
        if value not in {"development", "test", "staging", "production"}:
            raise ValueError("ENVIRONMENT must be one of: development, test, staging, production")
        return value

    @field_validator("KB_POLL_MAX_ATTEMPTS", "MAX_CONCURRENT_STREAMS", "STREAM_QUEUE_SIZE", "PROVIDER_RETRY_ATTEMPTS")
    @classmethod
    def validate_positive_int(cls, value: int, info: ValidationInfo) -> int:
        if value < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return value

    @field_validator("KB_POLL_INTERVAL_S", "TURN_TIMEOUT_S", "PROVIDER_HTTP_TIMEOUT_S")
    @classmethod
    def validate_positive_float(cls, value: float, info: ValidationInfo) -> float:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("MIN_TOKENS_TO_CHAT")
    @classmethod
    def validate_min_tokens(cls, value: int) -> int:
        if value < 0:
            raise ValueError("MIN_TOKENS_TO_CHAT cannot be negative")
        return value

    # ----- Cross-field / production invariants -----------------------------------

    @model_validator(mode="after")
    def validate_turn_lock_ttl(self) -> "Settings":
        """A turn lock must outlive the longest permitted turn."""
        if self.TURN_LOCK_TTL_S < self.TURN_TIMEOUT_S:
            self.TURN_LOCK_TTL_S = int(self.TURN_TIMEOUT_S) + 60
        return self

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        """Enforce strong invariants when running in production."""
        if self.ENVIRONMENT != "production":
            return self

        if self.ALLOW_DEV_LOGIN:
            raise ValueError("ALLOW_DEV_LOGIN must be false in production")

        if self.DATABASE_URL.startswith("sqlite:"):
            raise ValueError(
                "SQLite (DATABASE_URL starting with 'sqlite:') is not allowed in production; use PostgreSQL instead."
            )

        url = make_url(self.DATABASE_URL)
        pwd = url.password or ""
        if pwd in DEFAULT_DB_PASSWORDS:
            raise ValueError(
                "Default/blank database password is not allowed in production. Set a strong password in DATABASE_URL."
            )

        if self.JWT_SECRET == DEV_DEFAULT_JWT_SECRET:
            raise ValueError("Default JWT_SECRET is not allowed in production")

        if self.REQUIRE_REDIS_IN_PRODUCTION and not self.REDIS_URL:
            raise ValueError("REDIS_URL is required in production when REQUIRE_REDIS_IN_PRODUCTION=true")

        if not self.REQUIRE_CSRF_HEADER:
            raise ValueError("REQUIRE_CSRF_HEADER must be true in production")

        if self.PROVIDER_MOCK_MODE and not self.ALLOW_MOCK_IN_PROD:
            raise ValueError("PROVIDER_MOCK_MODE requires ALLOW_MOCK_IN_PROD=true in production")

        if self.DEBUG_ERRORS:
            raise ValueError("DEBUG_ERRORS must be false in production")
        return self


settings = Settings()
