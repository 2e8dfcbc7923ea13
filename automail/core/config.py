import json
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Automail Sequencing Engine"
    env: str = "dev"

    # DATABASE
    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # SCHEDULER
    scheduler_enabled: bool = True
    scheduler_tick_seconds: int = Field(default=60, ge=1, le=3600)
    trigger_feed_interval_seconds: int = Field(default=60, ge=1, le=3600)
    trigger_sweep_enabled: bool = False
    trigger_sweep_interval_minutes: int = Field(default=60, ge=1, le=1440)
    trigger_event_max_attempts: int = Field(default=5, ge=1, le=20)

    # DISPATCH
    dispatch_batch_size: int = Field(default=50, ge=1, le=1000)
    dispatch_max_workers: int = Field(default=4, ge=1, le=64)
    claim_lease_seconds: int = Field(default=300, ge=5, le=86_400)
    delivery_retry_backoff_minutes: int = Field(default=15, ge=0, le=10080)
    delivery_max_attempts: int = Field(default=3, ge=1, le=20)
    external_call_timeout_seconds: float = Field(default=20.0, gt=0, le=600)
    dispatch_error_alert_threshold: int = Field(default=3, ge=1)

    # DELIVERY
    delivery_provider: str = "stub"
    smtp_host: str | None = None
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_sender_email: str | None = None
    smtp_sender_name: str | None = None
    smtp_reply_to_email: str | None = None
    smtp_use_starttls: bool = True
    smtp_use_ssl: bool = False

    # CONTENT GENERATION
    content_provider: str = "stub"
    ai_model: str = "gpt-4o-mini"
    ai_temperature: float = 0.7
    openai_api_key: str | None = None
    openai_base_url: str | None = None

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

    @field_validator(
        "smtp_host",
        "smtp_username",
        "smtp_password",
        "smtp_sender_email",
        "smtp_sender_name",
        "smtp_reply_to_email",
        "openai_api_key",
        "openai_base_url",
        mode="before",
    )
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("delivery_provider", "content_provider", mode="before")
    @classmethod
    def normalize_provider_names(cls, value: str | None) -> str:
        cleaned = str(value or "").strip().lower()
        return cleaned or "stub"

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        if self.smtp_use_ssl and self.smtp_use_starttls:
            raise ValueError("Set only one of SMTP_USE_SSL or SMTP_USE_STARTTLS in production")
        if self.delivery_provider == "smtp" and not (self.smtp_host and self.smtp_sender_email):
            raise ValueError("SMTP_HOST and SMTP_SENDER_EMAIL are required when DELIVERY_PROVIDER=smtp")
        if self.content_provider == "openai" and not self.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when CONTENT_PROVIDER=openai")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
