from datetime import datetime
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from crm_automation.schemas.common import PaginationMeta, validate_header_map
from crm_automation.schemas.event import WebhookEventTag


DeliveryStatus = Literal["pending", "success", "failed", "retrying"]


def _validate_target_url(value: str) -> str:
    normalized = value.strip()
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("url must be an absolute http:// or https:// URL")
    return normalized


def _dedupe_events(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    deduped: list[str] = []
    for item in value:
        if item not in deduped:
            deduped.append(item)
    return deduped


class WebhookFiltersIn(BaseModel):
    pipeline_id: str | None = Field(default=None, max_length=64)
    stage_id: str | None = Field(default=None, max_length=64)
    owner_id: str | None = Field(default=None, max_length=64)
    min_value: float | None = None
    max_value: float | None = None

    @model_validator(mode="after")
    def validate_value_range(self) -> "WebhookFiltersIn":
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise ValueError("min_value must not exceed max_value")
        return self


WebhookFiltersOut = WebhookFiltersIn


class WebhookSubscriptionCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    url: str = Field(min_length=10, max_length=500)
    events: list[WebhookEventTag] = Field(min_length=1, max_length=18)
    filters: WebhookFiltersIn | None = None
    headers: dict[str, str] | None = None
    is_active: bool = True
    max_retries: int = Field(default=3, ge=0, le=10)
    timeout_ms: int = Field(default=10000, ge=1000, le=30000)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "ERP sync",
                "url": "https://erp.example.com/hooks/crm",
                "events": ["deal.won", "deal.lost"],
                "filters": {"pipeline_id": "pipe-1", "min_value": 1000},
                "headers": {"X-Api-Key": "erp-key"},
                "max_retries": 3,
                "timeout_ms": 10000,
            }
        }
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        return _validate_target_url(value)

    @field_validator("events")
    @classmethod
    def validate_events(cls, value: list[str]) -> list[str]:
        return _dedupe_events(value)

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        return validate_header_map(value)


class WebhookSubscriptionUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    url: str | None = Field(default=None, min_length=10, max_length=500)
    events: list[WebhookEventTag] | None = Field(default=None, min_length=1, max_length=18)
    filters: WebhookFiltersIn | None = None
    headers: dict[str, str] | None = None
    is_active: bool | None = None
    max_retries: int | None = Field(default=None, ge=0, le=10)
    timeout_ms: int | None = Field(default=None, ge=1000, le=30000)

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _validate_target_url(value)

    @field_validator("events")
    @classmethod
    def validate_events(cls, value: list[str] | None) -> list[str] | None:
        return _dedupe_events(value)

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        return validate_header_map(value)

    @model_validator(mode="after")
    def validate_has_updates(self) -> "WebhookSubscriptionUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self


class WebhookSubscriptionOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    url: str
    events: list[str]
    filters: WebhookFiltersOut | None = None
    headers: dict[str, str] | None = None
    is_active: bool
    is_suspended: bool
    max_retries: int
    timeout_ms: int
    secret_hint: str
    total_sent: int
    total_failed: int
    consecutive_failures: int
    last_triggered_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    created_by_user_id: str
    created_at: datetime
    updated_at: datetime


class WebhookSubscriptionCreateOut(WebhookSubscriptionOut):
    signing_secret: str


class WebhookSubscriptionRotateSecretOut(BaseModel):
    subscription_id: str
    signing_secret: str
    rotated_at: datetime


class WebhookSubscriptionListOut(BaseModel):
    items: list[WebhookSubscriptionOut]
    pagination: PaginationMeta
    is_active: bool | None = None


class WebhookDeliveryLogOut(BaseModel):
    id: str
    subscription_id: str
    subscription_name: str
    event: str
    status: DeliveryStatus
    attempts: int
    request_url: str
    response_status: int | None = None
    response_time_ms: int | None = None
    error: str | None = None
    next_retry_at: datetime | None = None
    entity_type: str
    entity_id: str
    entity_name: str | None = None
    triggered_by: str | None = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime


class WebhookDeliveryLogDetailOut(WebhookDeliveryLogOut):
    payload: dict[str, Any]
    request_headers: dict[str, str] | None = None
    request_body: str
    response_headers: dict[str, str] | None = None
    response_body: str | None = None


class WebhookDeliveryLogListOut(BaseModel):
    items: list[WebhookDeliveryLogOut]
    pagination: PaginationMeta
    subscription_id: str | None = None
    status: DeliveryStatus | None = None
    event: str | None = None


class WebhookStatsOut(BaseModel):
    subscription_id: str
    total: int
    success: int
    failed: int
    pending: int
    avg_response_time_ms: float | None = None


class WebhookTestOut(BaseModel):
    success: bool
    status_code: int | None = None
    response_time_ms: int | None = None
    error: str | None = None
    log: WebhookDeliveryLogDetailOut


class WebhookRetryRunOut(BaseModel):
    recovered: int
    due: int
    retried: int
    succeeded: int
    failed: int
    skipped: int


class WebhookLogPurgeOut(BaseModel):
    deleted: int
