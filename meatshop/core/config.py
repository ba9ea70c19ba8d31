import json
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_list(value: Union[str, List[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    raise ValueError(value)


class Settings(BaseSettings):
    app_name: str = "Butcher Shop Backend"
    env: str = "dev"

    # DATABASE
    # "sqlite://" keeps everything in memory for the lifetime of the process.
    database_url: str = "sqlite://"
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)
    seed_demo_data: bool = True

    # PRICING
    currency: str = "AED"
    vat_rate: float = Field(default=0.05, ge=0, le=1)
    default_delivery_fee: float = Field(default=20.0, ge=0)
    default_delivery_minutes: int = Field(default=60, ge=1)
    order_number_prefix: str = "ORD-"
    order_number_start: int = Field(default=1000, ge=0)

    # PAYMENTS
    payment_provider_default: str = "simulated"
    payment_success_rate: float = Field(default=0.95, ge=0, le=1)
    refund_success_rate: float = Field(default=0.98, ge=0, le=1)
    payment_gateway_delay_ms: int = Field(default=200, ge=0, le=30_000)

    # NOTIFICATIONS
    sms_provider_default: str = "simulated_sms"
    email_provider_default: str = "simulated_email"
    sms_success_rate: float = Field(default=0.95, ge=0, le=1)
    email_success_rate: float = Field(default=0.98, ge=0, le=1)
    notification_gateway_delay_ms: int = Field(default=100, ge=0, le=30_000)
    tracking_base_url: str = "https://butcher.ae/track"
    smtp_host: str | None = None
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_sender_email: str | None = None
    smtp_reply_to_email: str | None = None
    smtp_use_starttls: bool = True
    smtp_use_ssl: bool = False

    # INVENTORY
    low_stock_default_threshold: int = Field(default=5, ge=0)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:8080"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str], None]) -> List[str]:
        if isinstance(v, str) and v.strip().startswith("["):
            v = json.loads(v)
            if not isinstance(v, list):
                raise ValueError("CORS_ORIGINS JSON value must be a list")
        return _split_list(v)

    @field_validator(
        "smtp_host",
        "smtp_username",
        "smtp_password",
        "smtp_sender_email",
        "smtp_reply_to_email",
        mode="before",
    )
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")
        if self.database_url in {"sqlite://", "sqlite:///:memory:"}:
            raise ValueError("DATABASE_URL must point at a persistent database in production")
        if self.seed_demo_data:
            raise ValueError("SEED_DEMO_DATA must be disabled in production")

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
