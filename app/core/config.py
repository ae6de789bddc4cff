from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    access_token_max_age_days: int = Field(default=30, alias="ACCESS_TOKEN_MAX_AGE_DAYS")

    # Storage
    ledger_backend: str = Field(default="mongo", alias="LEDGER_BACKEND")  # mongo | memory
    mongodb_uri: str = Field(default="mongodb://localhost:27017/?replicaSet=rs0", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="meterd", alias="MONGODB_DB_NAME")
    store_timeout_seconds: float = Field(default=2.0, alias="STORE_TIMEOUT_SECONDS")

    # Redis (rate limiting); empty disables
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    rate_limit_requests: int = Field(default=100, alias="RATE_LIMIT_REQUESTS")
    rate_limit_window_seconds: int = Field(default=900, alias="RATE_LIMIT_WINDOW_SECONDS")

    # Document processing backend
    document_service_url: str = Field(default="http://localhost:8080", alias="DOCUMENT_SERVICE_URL")
    document_service_timeout_seconds: float = Field(default=60.0, alias="DOCUMENT_SERVICE_TIMEOUT_SECONDS")
    max_upload_bytes: int = Field(default=5 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Pricing (credits)
    starting_grant_credits: int = Field(default=100, alias="STARTING_GRANT_CREDITS")
    default_operation_cost: int = Field(default=1, alias="DEFAULT_OPERATION_COST")
    credits_per_welcome: int = Field(default=1, alias="CREDITS_PER_WELCOME")
    credits_per_document_identification: int = Field(default=2, alias="CREDITS_PER_DOCUMENT_IDENTIFICATION")
    credits_per_pan_signature_extraction: int = Field(default=3, alias="CREDITS_PER_PAN_SIGNATURE_EXTRACTION")

    # Entitlements: 0 means no ceiling
    api_calls_ceiling: int = Field(default=1000, alias="API_CALLS_CEILING")

    # Ledger commit retry
    ledger_retry_attempts: int = Field(default=3, alias="LEDGER_RETRY_ATTEMPTS")
    ledger_retry_backoff_seconds: float = Field(default=0.2, alias="LEDGER_RETRY_BACKOFF_SECONDS")

    # Live notifications
    notification_queue_size: int = Field(default=100, alias="NOTIFICATION_QUEUE_SIZE")


@lru_cache
def get_settings() -> Settings:
    return Settings()
