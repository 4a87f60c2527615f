import json
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "CRM Automation Engine"
    env: str = "dev"
    log_level: str = "INFO"
    secret_key: str = "dev-secret-key-change-before-prod"

    # DATABASE
    database_url: str = "sqlite:///./crm_automation.db"
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # WEBHOOK DELIVERY
    webhook_user_agent_product: str = "PrioridadesApp"
    webhook_default_max_retries: int = Field(default=3, ge=0, le=10)
    webhook_default_timeout_ms: int = Field(default=10_000, ge=1000, le=30_000)
    webhook_backoff_base: int = Field(default=3, ge=2, le=10)
    webhook_circuit_breaker_threshold: int = Field(default=10, ge=1, le=1000)
    webhook_response_body_limit: int = Field(default=10_000, ge=100, le=1_000_000)
    webhook_log_retention_days: int = Field(default=30, ge=1, le=365)
    webhook_pending_lease_seconds: int = Field(default=120, ge=35, le=3600)
    webhook_max_workers: int = Field(default=8, ge=1, le=128)
    webhook_fanout_batch_size: int = Field(default=50, ge=1, le=1000)
    webhook_fanout_pause_ms: int = Field(default=250, ge=0, le=60_000)

    # WORKFLOW ACTIONS
    messaging_provider_default: str = "email_stub"
    action_http_timeout_ms: int = Field(default=10_000, ge=1000, le=30_000)

    # PERIODIC JOBS
    scheduler_enabled: bool = False
    retry_sweep_interval_seconds: int = Field(default=60, ge=5, le=3600)
    scheduled_actions_interval_seconds: int = Field(default=60, ge=5, le=3600)
    log_reaper_interval_seconds: int = Field(default=3600, ge=60, le=86_400)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

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

    @field_validator("webhook_user_agent_product", mode="before")
    @classmethod
    def normalize_product_name(cls, value: str | None) -> str:
        cleaned = str(value or "").strip()
        return cleaned or "PrioridadesApp"

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        weak_secrets = {
            "",
            "change_me",
            "dev-secret-key-change-before-prod",
        }
        if self.secret_key.strip() in weak_secrets or len(self.secret_key.strip()) < 32:
            raise ValueError("SECRET_KEY must be a strong random value in production")

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")

        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL cannot point to SQLite in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
