from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from crm_automation.core.id_utils import generate_action_id
from crm_automation.schemas.common import PaginationMeta, validate_header_map, validate_json_map
from crm_automation.schemas.event import EntityType, EventContextIn


WorkflowTriggerType = Literal[
    "deal_created",
    "deal_updated",
    "deal_stage_changed",
    "deal_value_changed",
    "deal_won",
    "deal_lost",
    "deal_deleted",
    "contact_created",
    "contact_updated",
    "contact_deleted",
    "client_created",
    "client_updated",
    "client_deleted",
    "activity_created",
    "task_completed",
    "task_overdue",
    "quote_created",
    "quote_sent",
    "quote_accepted",
    "quote_rejected",
]
ConditionOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "greater_or_equal",
    "less_or_equal",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "is_empty",
    "is_not_empty",
    "in_list",
    "not_in_list",
]
LogicalOperator = Literal["AND", "OR"]
ExecutionStatus = Literal["running", "waiting", "completed", "failed", "partial"]
ActionLogStatus = Literal["completed", "failed", "scheduled"]
MutationStatus = Literal["pending", "applied", "rejected"]
WorkflowTemplateKey = Literal[
    "deal_won_notification",
    "deal_lost_followup",
    "high_value_deal_alert",
    "deal_stage_changed",
    "new_contact_welcome",
    "task_overdue_reminder",
    "quote_accepted",
    "quote_rejected_followup",
]

_DUE_IN_PATTERN = r"^\+?\s*\d+\s*(day|days|week|weeks|month|months)$"


class WorkflowConditionIn(BaseModel):
    field: str = Field(min_length=1, max_length=120)
    operator: ConditionOperator = "equals"
    value: Any | None = None
    logical_operator: LogicalOperator = "AND"


WorkflowConditionOut = WorkflowConditionIn


class SendMessageConfig(BaseModel):
    provider: Literal["email_stub", "sms_stub", "whatsapp_stub"] | None = None
    recipient: str | None = Field(default=None, max_length=255)
    recipient_from: str | None = Field(default=None, max_length=120)
    subject: str | None = Field(default=None, max_length=255)
    content: str = Field(min_length=1, max_length=4000)

    @model_validator(mode="after")
    def validate_recipient(self) -> "SendMessageConfig":
        if not (self.recipient or self.recipient_from):
            raise ValueError("recipient or recipient_from is required")
        return self


class SendNotificationConfig(BaseModel):
    recipient_type: Literal["owner", "specific_user", "users"] = "owner"
    recipient_id: str | None = Field(default=None, max_length=36)
    recipient_ids: list[str] = Field(default_factory=list, max_length=100)
    title: str | None = Field(default=None, max_length=160)
    message: str = Field(min_length=1, max_length=1000)
    priority: Literal["low", "normal", "medium", "high"] = "normal"

    @model_validator(mode="after")
    def validate_recipients(self) -> "SendNotificationConfig":
        if self.recipient_type == "specific_user" and not self.recipient_id:
            raise ValueError("recipient_id is required for specific_user notifications")
        if self.recipient_type == "users" and not self.recipient_ids:
            raise ValueError("recipient_ids is required for users notifications")
        return self


class CreateTaskConfig(BaseModel):
    title: str = Field(min_length=1, max_length=160)
    description: str | None = Field(default=None, max_length=500)
    due_in: str | None = Field(default=None, pattern=_DUE_IN_PATTERN)
    assign_to: Literal["owner", "trigger_user", "specific_user"] = "owner"
    assignee_id: str | None = Field(default=None, max_length=36)

    @model_validator(mode="after")
    def validate_assignee(self) -> "CreateTaskConfig":
        if self.assign_to == "specific_user" and not self.assignee_id:
            raise ValueError("assignee_id is required when assign_to is specific_user")
        return self


class CreateActivityConfig(BaseModel):
    activity_type: Literal["note", "call", "email", "meeting"] = "note"
    title: str = Field(min_length=1, max_length=160)
    description: str | None = Field(default=None, max_length=1000)


class UpdateFieldConfig(BaseModel):
    target_entity: EntityType | None = None
    field_name: str = Field(min_length=1, max_length=80, pattern=r"^[A-Za-z_][A-Za-z0-9_.]*$")
    field_value: str | int | float | bool | None = None


class MoveStageConfig(BaseModel):
    stage_id: str = Field(min_length=1, max_length=64)


class AssignOwnerConfig(BaseModel):
    assignment_type: Literal["specific", "round_robin"] = "specific"
    new_owner_id: str | None = Field(default=None, max_length=36)
    candidate_user_ids: list[str] = Field(default_factory=list, max_length=100)

    @model_validator(mode="after")
    def validate_assignment(self) -> "AssignOwnerConfig":
        if self.assignment_type == "specific" and not self.new_owner_id:
            raise ValueError("new_owner_id is required for specific assignment")
        if self.assignment_type == "round_robin" and not self.candidate_user_ids:
            raise ValueError("candidate_user_ids is required for round_robin assignment")
        return self


class TagConfig(BaseModel):
    tag: str = Field(min_length=1, max_length=60)


class CallWebhookConfig(BaseModel):
    url: str = Field(min_length=8, max_length=500)
    method: Literal["POST", "PUT", "PATCH", "GET"] = "POST"
    headers: dict[str, str] | None = None
    payload: dict[str, Any] | None = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized.lower().startswith(("http://", "https://", "{{")):
            raise ValueError("url must start with http:// or https://")
        return normalized

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        return validate_header_map(value)

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        return validate_json_map(value)


class DelayConfig(BaseModel):
    delay_minutes: int = Field(ge=1, le=43200)


class _ActionBase(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=40)
    delay_minutes: int = Field(default=0, ge=0, le=43200)
    order: int = Field(default=0, ge=0, le=1000)


class SendMessageAction(_ActionBase):
    type: Literal["send_message"]
    config: SendMessageConfig


class SendNotificationAction(_ActionBase):
    type: Literal["send_notification"]
    config: SendNotificationConfig


class CreateTaskAction(_ActionBase):
    type: Literal["create_task"]
    config: CreateTaskConfig


class CreateActivityAction(_ActionBase):
    type: Literal["create_activity"]
    config: CreateActivityConfig


class UpdateFieldAction(_ActionBase):
    type: Literal["update_field"]
    config: UpdateFieldConfig


class MoveStageAction(_ActionBase):
    type: Literal["move_stage"]
    config: MoveStageConfig


class AssignOwnerAction(_ActionBase):
    type: Literal["assign_owner"]
    config: AssignOwnerConfig


class AddTagAction(_ActionBase):
    type: Literal["add_tag"]
    config: TagConfig


class RemoveTagAction(_ActionBase):
    type: Literal["remove_tag"]
    config: TagConfig


class CallWebhookAction(_ActionBase):
    type: Literal["call_webhook"]
    config: CallWebhookConfig


class DelayAction(_ActionBase):
    type: Literal["delay"]
    config: DelayConfig


WorkflowAction = Annotated[
    Union[
        SendMessageAction,
        SendNotificationAction,
        CreateTaskAction,
        CreateActivityAction,
        UpdateFieldAction,
        MoveStageAction,
        AssignOwnerAction,
        AddTagAction,
        RemoveTagAction,
        CallWebhookAction,
        DelayAction,
    ],
    Field(discriminator="type"),
]
WorkflowActionType = Literal[
    "send_message",
    "send_notification",
    "create_task",
    "create_activity",
    "update_field",
    "move_stage",
    "assign_owner",
    "add_tag",
    "remove_tag",
    "call_webhook",
    "delay",
]

workflow_action_adapter: TypeAdapter[WorkflowAction] = TypeAdapter(WorkflowAction)


def _finalize_actions(actions: list[WorkflowAction]) -> list[WorkflowAction]:
    if not actions:
        raise ValueError("At least one action is required")
    seen: set[str] = set()
    for action in actions:
        if not action.id:
            action.id = generate_action_id()
        if action.id in seen:
            raise ValueError(f"Duplicate action id '{action.id}'")
        seen.add(action.id)
    return actions


class WorkflowRuleCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    is_active: bool = True
    trigger_type: WorkflowTriggerType
    conditions: list[WorkflowConditionIn] = Field(default_factory=list, max_length=50)
    actions: list[WorkflowAction] = Field(default_factory=list, max_length=50)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Big deal won",
                "trigger_type": "deal_won",
                "conditions": [
                    {"field": "deal.value", "operator": "greater_than", "value": 10000, "logical_operator": "AND"}
                ],
                "actions": [
                    {
                        "type": "send_notification",
                        "config": {"recipient_type": "owner", "message": "Won {{deal.title}}"},
                    },
                    {
                        "type": "create_task",
                        "config": {"title": "Kickoff {{deal.title}}", "due_in": "+3 days"},
                        "order": 1,
                    },
                ],
            }
        }
    )

    @model_validator(mode="after")
    def validate_actions(self) -> "WorkflowRuleCreateIn":
        _finalize_actions(self.actions)
        return self


class WorkflowRuleUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None
    trigger_type: WorkflowTriggerType | None = None
    conditions: list[WorkflowConditionIn] | None = Field(default=None, max_length=50)
    actions: list[WorkflowAction] | None = Field(default=None, max_length=50)

    @model_validator(mode="after")
    def validate_has_updates(self) -> "WorkflowRuleUpdateIn":
        if (
            self.name is None
            and self.description is None
            and self.is_active is None
            and self.trigger_type is None
            and self.conditions is None
            and self.actions is None
        ):
            raise ValueError("At least one field must be provided")
        if self.actions is not None:
            _finalize_actions(self.actions)
        return self


class WorkflowRuleOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    is_active: bool
    trigger_type: WorkflowTriggerType
    conditions: list[WorkflowConditionOut]
    actions: list[WorkflowAction]
    template_key: str | None = None
    version: int
    execution_count: int
    last_executed_at: datetime | None = None
    created_by_user_id: str
    updated_by_user_id: str | None = None
    created_at: datetime
    updated_at: datetime


class WorkflowRuleListOut(BaseModel):
    items: list[WorkflowRuleOut]
    pagination: PaginationMeta
    is_active: bool | None = None
    trigger_type: WorkflowTriggerType | None = None


class WorkflowRuleTestIn(BaseModel):
    context: EventContextIn

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "context": {
                    "entity_type": "deal",
                    "entity_id": "deal-123",
                    "entity_name": "Acme renewal",
                    "current": {"title": "Acme renewal", "value": 25000, "ownerId": "user-1"},
                }
            }
        }
    )


class ConditionResultOut(BaseModel):
    index: int
    field: str
    operator: ConditionOperator
    logical_operator: LogicalOperator
    passed: bool


class ActionPreviewOut(BaseModel):
    action_id: str
    type: WorkflowActionType
    order: int
    delay_minutes: int
    rendered_config: dict[str, Any]


class WorkflowRuleTestOut(BaseModel):
    rule_id: str
    matched: bool
    conditions: list[ConditionResultOut]
    actions: list[ActionPreviewOut]


class ActionLogOut(BaseModel):
    action_id: str
    type: str
    status: ActionLogStatus
    success: bool
    error: str | None = None
    details: dict[str, Any] | None = None
    executed_at: datetime | None = None


class WorkflowExecutionOut(BaseModel):
    id: str
    workflow_id: str
    workflow_name: str
    trigger_type: str
    entity_type: str
    entity_id: str
    entity_name: str | None = None
    status: ExecutionStatus
    action_logs: list[ActionLogOut]
    error_message: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None


class WorkflowExecutionListOut(BaseModel):
    items: list[WorkflowExecutionOut]
    pagination: PaginationMeta
    workflow_id: str | None = None
    status: ExecutionStatus | None = None


class WorkflowTemplateOut(BaseModel):
    template_key: WorkflowTemplateKey
    name: str
    description: str
    category: str
    trigger_type: WorkflowTriggerType
    conditions: list[WorkflowConditionOut]
    actions: list[WorkflowAction]


class WorkflowTemplateCatalogOut(BaseModel):
    items: list[WorkflowTemplateOut]


class WorkflowTemplateInstallIn(BaseModel):
    template_key: WorkflowTemplateKey
    activate: bool = True

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "template_key": "deal_won_notification",
                "activate": True,
            }
        }
    )


class WorkflowTemplateInstallOut(BaseModel):
    template: WorkflowTemplateOut
    rule: WorkflowRuleOut


class EntityMutationOut(BaseModel):
    id: str
    workflow_id: str
    execution_id: str | None = None
    entity_type: str
    entity_id: str
    operation: str
    payload: dict[str, Any] | None = None
    status: MutationStatus
    applied_at: datetime | None = None
    created_at: datetime


class EntityMutationListOut(BaseModel):
    items: list[EntityMutationOut]
    pagination: PaginationMeta
    status: MutationStatus | None = None


class EntityMutationAckIn(BaseModel):
    status: Literal["applied", "rejected"] = "applied"


class ScheduledActionRunOut(BaseModel):
    due: int
    resumed: int
    failed: int
