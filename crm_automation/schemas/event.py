from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator

from crm_automation.schemas.common import validate_json_map


EntityType = Literal["deal", "contact", "client", "activity", "quote", "task"]
EventSource = Literal["web", "api", "workflow", "import"]
WebhookEventTag = Literal[
    "deal.created",
    "deal.updated",
    "deal.stage_changed",
    "deal.won",
    "deal.lost",
    "deal.deleted",
    "contact.created",
    "contact.updated",
    "contact.deleted",
    "client.created",
    "client.updated",
    "client.deleted",
    "activity.created",
    "task.completed",
    "quote.created",
    "quote.sent",
    "quote.accepted",
    "quote.rejected",
]
RuleOnlyEventTag = Literal["deal.value_changed", "task.overdue"]
EventTag = Literal[WebhookEventTag, RuleOnlyEventTag]

WEBHOOK_EVENT_TAGS: tuple[str, ...] = get_args(WebhookEventTag)
RULE_ONLY_EVENT_TAGS: tuple[str, ...] = get_args(RuleOnlyEventTag)


class EventContextIn(BaseModel):
    entity_type: EntityType
    entity_id: str = Field(min_length=1, max_length=64)
    entity_name: str | None = Field(default=None, max_length=255)
    current: dict[str, Any] = Field(default_factory=dict)
    previous: dict[str, Any] | None = None
    changed_fields: list[str] | None = Field(default=None, max_length=200)
    user_id: str | None = Field(default=None, max_length=36)
    user_name: str | None = Field(default=None, max_length=120)
    source: EventSource = "web"

    @field_validator("current", "previous")
    @classmethod
    def validate_snapshot(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        return validate_json_map(value, max_entries=500, max_bytes=262144)


class EventIn(EventContextIn):
    event: EventTag

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "event": "deal.stage_changed",
                "entity_type": "deal",
                "entity_id": "deal-123",
                "entity_name": "Acme renewal",
                "current": {
                    "title": "Acme renewal",
                    "value": 25000,
                    "stage": {"id": "stage-won", "name": "Won", "isWon": True, "isClosed": True},
                },
                "previous": {"stage": {"id": "stage-negotiation", "name": "Negotiation"}},
                "changed_fields": ["stageId"],
                "user_id": "user-1",
                "user_name": "Ada",
                "source": "web",
            }
        }
    )


class EventAcceptedOut(BaseModel):
    accepted: bool
    event: EventTag
    entity_type: EntityType
    entity_id: str
