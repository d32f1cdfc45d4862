import json
from typing import List, Literal, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Onboarding Billing Service"
    env: str = "dev"
    secret_key: str
    checkout_token_expire_minutes: int = Field(default=60, ge=1, le=1440)
    admin_api_key: str | None = None

    # DATABASE
    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # PAYMENT PROVIDER
    payment_provider_default: Literal["stub", "stripe"] = "stub"
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str = "whsec_test_local"
    stripe_base_package_price_id: str | None = None
    provider_timeout_seconds: float = Field(default=15.0, gt=0, le=120)
    provider_max_attempts: int = Field(default=3, ge=1, le=10)
    provider_backoff_initial_seconds: float = Field(default=0.25, ge=0, le=30)
    provider_backoff_max_seconds: float = Field(default=4.0, ge=0, le=120)

    # PRICING
    billing_currency: str = Field(default="eur", min_length=3, max_length=3)
    base_package_amount: int = Field(default=3500, ge=0)
    language_addon_amount: int = Field(default=7500, ge=0)
    commitment_months: int = Field(default=12, ge=1, le=60)
    schedule_end_behavior: Literal["release", "cancel"] = "release"
    discount_codes: list[dict] = Field(default_factory=list)

    # CHECKOUT HARDENING
    checkout_rate_limit_max_attempts: int = Field(default=5, ge=1)
    checkout_rate_limit_window_seconds: int = Field(default=3600, ge=1)
    checkout_claim_ttl_seconds: int = Field(default=120, ge=5, le=3600)

    # WEBHOOKS
    webhook_signature_tolerance_seconds: int = Field(default=300, ge=1, le=3600)
    webhook_test_bypass_enabled: bool = False
    background_workers: int = Field(default=4, ge=1, le=64)
    background_shutdown_timeout_seconds: float = Field(default=30.0, gt=0, le=600)

    # NOTIFICATIONS
    admin_notification_email: str | None = None
    smtp_host: str | None = None
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_sender_email: str | None = None
    smtp_use_starttls: bool = True
    smtp_use_ssl: bool = False

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator("discount_codes", mode="before")
    @classmethod
    def parse_discount_codes(cls, v: Union[str, list, None]) -> list:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            parsed = json.loads(v)
            if not isinstance(parsed, list):
                raise ValueError("DISCOUNT_CODES JSON value must be a list")
            return parsed
        return v

    @field_validator(
        "stripe_secret_key",
        "stripe_base_package_price_id",
        "admin_api_key",
        "admin_notification_email",
        "smtp_host",
        "smtp_username",
        "smtp_password",
        "smtp_sender_email",
        mode="before",
    )
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("billing_currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def is_production(self) -> bool:
        return self.env.lower().strip() in {"prod", "production"}

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        if not self.is_production:
            return self

        weak_secrets = {
            "",
            "change_me",
            "change_me_please_to_a_long_random_string",
            "dev-secret-key-change-before-prod",
        }
        if self.secret_key.strip() in weak_secrets or len(self.secret_key.strip()) < 32:
            raise ValueError("SECRET_KEY must be a strong random value in production")

        if self.webhook_test_bypass_enabled:
            raise ValueError("WEBHOOK_TEST_BYPASS_ENABLED cannot be set in production")
        if self.stripe_webhook_secret.startswith("whsec_test_"):
            raise ValueError("STRIPE_WEBHOOK_SECRET must be a live webhook secret in production")
        if self.payment_provider_default == "stripe" and not self.stripe_secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required in production")

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        if self.smtp_use_ssl and self.smtp_use_starttls:
            raise ValueError("Set only one of SMTP_USE_SSL or SMTP_USE_STARTTLS in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
