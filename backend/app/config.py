import json
from typing import Annotated
from urllib.parse import urlparse

from pydantic import AliasChoices, AnyUrl, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _cors_origin_from_url(value: str | None) -> str | None:
    if not value:
        return None
    raw = value.strip()
    if not raw:
        return None
    parsed = urlparse(raw)
    scheme = (parsed.scheme or "").lower().strip()
    if scheme not in {"http", "https"}:
        return None
    hostname = (parsed.hostname or "").strip()
    if not hostname:
        return None
    port = parsed.port
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        return f"{scheme}://{hostname}:{port}"
    return f"{scheme}://{hostname}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env", "../.env"), extra="ignore")

    database_url: AnyUrl | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_expires_minutes: int = 15
    frontend_base_url: str | None = "http://localhost:3000"
    stripe_secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "STRIPE_SECRET_KEY",
            "STRIPE_TEST_SECRET_KEY",
            "STRIPE_LIVE_SECRET_KEY",
        ),
    )
    stripe_test_secret_key: str | None = Field(
        default=None, validation_alias="STRIPE_TEST_SECRET_KEY"
    )
    stripe_live_secret_key: str | None = Field(
        default=None, validation_alias="STRIPE_LIVE_SECRET_KEY"
    )
    stripe_publishable_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "STRIPE_PUBLISHABLE_KEY",
            "NEXT_PUBLIC_STRIPE_PUBLISHABLE_KEY",
            "STRIPE_TEST_PUBLISHABLE_KEY",
        ),
    )
    stripe_webhook_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "STRIPE_WEBHOOK_SECRET",
            "STRIPE_TEST_WEBHOOK_SECRET",
            "STRIPE_LIVE_WEBHOOK_SECRET",
        ),
    )
    # Invoices still carry payment_intent on this version; newer versions moved it.
    stripe_api_version: str = "2024-06-20"
    stripe_service_prices: Annotated[dict[int, str], NoDecode] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("STRIPE_SERVICE_PRICES", "SERVICE_PRICE_IDS"),
    )
    subscription_duplicate_window_seconds: int = 30
    pending_payment_stale_minutes: int = 10
    subscription_default_period_days: int = 30
    cors_allow_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    cors_allow_origin_regex: str | None = r"http://(localhost|127\.0\.0\.1)(:\d+)?"
    log_level: str = "INFO"
    sentry_dsn: str | None = Field(
        default=None, validation_alias=AliasChoices("SENTRY_DSN", "BACKEND_SENTRY_DSN")
    )
    sentry_traces_sample_rate: float = Field(
        default=0.0,
        validation_alias=AliasChoices(
            "SENTRY_TRACES_SAMPLE_RATE",
            "BACKEND_SENTRY_TRACES_SAMPLE_RATE",
        ),
    )

    @model_validator(mode="after")
    def _populate_defaults(self):
        if self.database_url is None:
            raise ValueError("DATABASE_URL is required")

        frontend_origin = _cors_origin_from_url(self.frontend_base_url)
        if frontend_origin:
            existing = {origin.strip().lower() for origin in self.cors_allow_origins if origin}
            if frontend_origin.strip().lower() not in existing:
                self.cors_allow_origins.append(frontend_origin)

        return self

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value):
        if isinstance(value, str):
            if value.strip().startswith("["):
                return json.loads(value)
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("stripe_service_prices", mode="before")
    @classmethod
    def _parse_service_prices(cls, value):
        # Accept "1:price_a,2:price_b" in addition to the JSON form.
        if not isinstance(value, str):
            return value
        raw = value.strip()
        if not raw:
            return {}
        if raw.startswith("{"):
            return json.loads(raw)
        pairs = [chunk.split(":", 1) for chunk in raw.split(",") if ":" in chunk]
        return {int(key.strip()): price.strip() for key, price in pairs}


settings = Settings()
