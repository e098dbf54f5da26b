from __future__ import annotations

from dataclasses import dataclass
import os


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    app_env: str
    database_url: str
    jwt_secret: str
    jwt_algorithm: str
    access_token_ttl_minutes: int
    cors_origins: list[str]
    default_currency: str
    invoice_due_days: int
    public_hash_bytes: int
    number_retry_attempts: int
    log_level: str
    create_schema: bool


def load_settings() -> Settings:
    app_env = os.getenv("APP_ENV", "development")
    # Public links are the only credential for public actions; never below 128 bits.
    public_hash_bytes = max(16, int(os.getenv("PUBLIC_HASH_BYTES", "16")))
    return Settings(
        app_env=app_env,
        database_url=os.getenv("DATABASE_URL", "sqlite:///./freelancedesk.db"),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_ttl_minutes=int(os.getenv("ACCESS_TOKEN_TTL_MINUTES", "30")),
        cors_origins=_parse_csv(
            os.getenv(
                "CORS_ORIGINS",
                "http://localhost:5173,http://localhost:3000",
            )
        ),
        default_currency=os.getenv("DEFAULT_CURRENCY", "USD").upper(),
        invoice_due_days=int(os.getenv("INVOICE_DUE_DAYS", "30")),
        public_hash_bytes=public_hash_bytes,
        number_retry_attempts=max(1, int(os.getenv("NUMBER_RETRY_ATTEMPTS", "5"))),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        create_schema=_parse_bool(os.getenv("CREATE_SCHEMA"), app_env != "production"),
    )


settings = load_settings()
