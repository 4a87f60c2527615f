import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from crm_automation.models.workflow import CrmWorkflow
from crm_automation.schemas.workflow import workflow_action_adapter
from crm_automation.services.action_executor import sort_actions
from crm_automation.services.condition_evaluator import condition_results, fold_condition_results
from crm_automation.services.dispatch_context import DispatchContext, build_rule_context
from crm_automation.services.templating import render_value, template_context


@dataclass(frozen=True)
class RuleTestResult:
    matched: bool
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]


_WORKFLOW_TEMPLATE_LIBRARY: list[dict[str, Any]] = [
    {
        "template_key": "deal_won_notification",
        "name": "Deal Won Notification",
        "description": "Notify the owner, email them and plan an after-sale follow-up when a deal is won.",
        "category": "deals",
        "trigger_type": "deal_won",
        "conditions": [],
        "actions": [
            {
                "id": "act_won_notify",
                "type": "send_notification",
                "order": 0,
                "config": {
                    "recipient_type": "owner",
                    "title": "Deal won",
                    "message": "Deal won: {{deal.title}} for {{deal.value}}",
                    "priority": "high",
                },
            },
            {
                "id": "act_won_email",
                "type": "send_message",
                "order": 1,
                "config": {
                    "provider": "email_stub",
                    "recipient_from": "deal.ownerId.email",
                    "subject": "Congratulations! Deal won: {{deal.title}}",
                    "content": "You closed \"{{deal.title}}\" for {{deal.value}}.",
                },
            },
            {
                "id": "act_won_task",
                "type": "create_task",
                "order": 2,
                "config": {
                    "title": "After-sale follow-up: {{deal.title}}",
                    "description": "Check in with the client to confirm they are satisfied.",
                    "due_in": "+7 days",
                    "assign_to": "owner",
                },
            },
        ],
    },
    {
        "template_key": "deal_lost_followup",
        "name": "Deal Lost Follow-up",
        "description": "Ask the owner to record why a deal was lost and review it.",
        "category": "deals",
        "trigger_type": "deal_lost",
        "conditions": [],
        "actions": [
            {
                "id": "act_lost_notify",
                "type": "send_notification",
                "order": 0,
                "config": {
                    "recipient_type": "owner",
                    "message": "Deal lost: {{deal.title}}. Please record the loss reason.",
                    "priority": "medium",
                },
            },
            {
                "id": "act_lost_task",
                "type": "create_task",
                "order": 1,
                "config": {
                    "title": "Lost deal review: {{deal.title}}",
                    "description": "Review why the deal was lost and write down the lessons learned.",
                    "due_in": "+3 days",
                    "assign_to": "owner",
                },
            },
        ],
    },
    {
        "template_key": "high_value_deal_alert",
        "name": "High Value Deal Alert",
        "description": "Alert the owner when a deal above 100000 is created.",
        "category": "deals",
        "trigger_type": "deal_created",
        "conditions": [
            {"field": "deal.value", "operator": "greater_than", "value": 100000, "logical_operator": "AND"},
        ],
        "actions": [
            {
                "id": "act_high_value_notify",
                "type": "send_notification",
                "order": 0,
                "config": {
                    "recipient_type": "owner",
                    "message": "New high value deal: {{deal.title}} ({{deal.value}})",
                    "priority": "high",
                },
            },
        ],
    },
    {
        "template_key": "deal_stage_changed",
        "name": "Stage Change Log",
        "description": "Record an activity whenever a deal moves between stages.",
        "category": "deals",
        "trigger_type": "deal_stage_changed",
        "conditions": [],
        "actions": [
            {
                "id": "act_stage_activity",
                "type": "create_activity",
                "order": 0,
                "config": {
                    "activity_type": "note",
                    "title": "Stage change",
                    "description": "Deal moved from {{previousStage}} to {{newStage}}",
                },
            },
        ],
    },
    {
        "template_key": "new_contact_welcome",
        "name": "New Contact Welcome",
        "description": "Welcome new contacts by email and schedule an introduction call.",
        "category": "contacts",
        "trigger_type": "contact_created",
        "conditions": [
            {"field": "contact.email", "operator": "is_not_empty", "value": None, "logical_operator": "AND"},
        ],
        "actions": [
            {
                "id": "act_welcome_email",
                "type": "send_message",
                "order": 0,
                "config": {
                    "provider": "email_stub",
                    "recipient_from": "contact.email",
                    "subject": "Welcome aboard",
                    "content": "Dear {{contact.firstName}},\n\nThanks for connecting with us. We will be in touch soon.",
                },
            },
            {
                "id": "act_welcome_task",
                "type": "create_task",
                "order": 1,
                "config": {
                    "title": "Introduction call: {{contact.fullName}}",
                    "description": "Call the new contact to introduce the team.",
                    "due_in": "+2 days",
                    "assign_to": "owner",
                },
            },
        ],
    },
    {
        "template_key": "task_overdue_reminder",
        "name": "Overdue Task Reminder",
        "description": "Notify the owner when a task becomes overdue.",
        "category": "tasks",
        "trigger_type": "task_overdue",
        "conditions": [],
        "actions": [
            {
                "id": "act_overdue_notify",
                "type": "send_notification",
                "order": 0,
                "config": {
                    "recipient_type": "owner",
                    "message": "Task overdue: {{task.title}}",
                    "priority": "high",
                },
            },
        ],
    },
    {
        "template_key": "quote_accepted",
        "name": "Quote Accepted",
        "description": "Notify the owner and queue order processing when a quote is accepted.",
        "category": "quotes",
        "trigger_type": "quote_accepted",
        "conditions": [],
        "actions": [
            {
                "id": "act_quote_accepted_notify",
                "type": "send_notification",
                "order": 0,
                "config": {
                    "recipient_type": "owner",
                    "message": "Quote accepted: {{quote.quoteNumber}}",
                    "priority": "high",
                },
            },
            {
                "id": "act_quote_accepted_task",
                "type": "create_task",
                "order": 1,
                "config": {
                    "title": "Process order: {{quote.quoteNumber}}",
                    "description": "The quote was accepted. Proceed with the order.",
                    "due_in": "+1 day",
                    "assign_to": "owner",
                },
            },
        ],
    },
    {
        "template_key": "quote_rejected_followup",
        "name": "Quote Rejected Follow-up",
        "description": "Create a review task when a quote is rejected.",
        "category": "quotes",
        "trigger_type": "quote_rejected",
        "conditions": [],
        "actions": [
            {
                "id": "act_quote_rejected_notify",
                "type": "send_notification",
                "order": 0,
                "config": {
                    "recipient_type": "owner",
                    "message": "Quote rejected: {{quote.quoteNumber}}",
                    "priority": "medium",
                },
            },
            {
                "id": "act_quote_rejected_task",
                "type": "create_task",
                "order": 1,
                "config": {
                    "title": "Follow up rejected quote: {{quote.quoteNumber}}",
                    "description": "Contact the client to understand the objections and offer alternatives.",
                    "due_in": "+2 days",
                    "assign_to": "owner",
                },
            },
        ],
    },
]


def list_workflow_templates() -> list[dict[str, Any]]:
    return [json.loads(json.dumps(item)) for item in _WORKFLOW_TEMPLATE_LIBRARY]


def get_workflow_template(template_key: str) -> dict[str, Any]:
    normalized = (template_key or "").strip().lower()
    for template in _WORKFLOW_TEMPLATE_LIBRARY:
        if template["template_key"] == normalized:
            return json.loads(json.dumps(template))
    available = ", ".join(sorted(item["template_key"] for item in _WORKFLOW_TEMPLATE_LIBRARY))
    raise ValueError(f"Unknown template '{template_key}'. Available: {available}")


def install_template_rule(
    db: Session,
    *,
    business_id: str,
    actor_user_id: str,
    template_key: str,
    activate: bool = True,
) -> tuple[CrmWorkflow, dict[str, Any]]:
    """Create the template's workflow, or reset a previously installed copy to the template."""
    template = get_workflow_template(template_key)
    existing = db.execute(
        select(CrmWorkflow).where(
            CrmWorkflow.business_id == business_id,
            func.lower(CrmWorkflow.template_key) == template["template_key"],
        )
    ).scalar_one_or_none()

    if existing:
        existing.description = template["description"]
        existing.is_active = activate
        existing.trigger_type = template["trigger_type"]
        existing.conditions_json = template["conditions"]
        existing.actions_json = template["actions"]
        existing.updated_by_user_id = actor_user_id
        existing.version += 1
        return existing, template

    workflow = CrmWorkflow(
        id=str(uuid.uuid4()),
        business_id=business_id,
        name=_unique_rule_name(db, business_id=business_id, seed_name=template["name"]),
        description=template["description"],
        is_active=activate,
        trigger_type=template["trigger_type"],
        conditions_json=template["conditions"],
        actions_json=template["actions"],
        template_key=template["template_key"],
        version=1,
        execution_count=0,
        created_by_user_id=actor_user_id,
        updated_by_user_id=actor_user_id,
    )
    db.add(workflow)
    db.flush()
    return workflow, template


def event_tag_for_trigger(trigger_type: str) -> str:
    """``deal_stage_changed`` -> ``deal.stage_changed``."""
    return (trigger_type or "").replace("_", ".", 1)


def dry_run_rule(workflow: CrmWorkflow, *, ctx: DispatchContext, now: datetime | None = None) -> RuleTestResult:
    """Dry run: evaluate conditions and render action configs without side effects."""
    context = build_rule_context(event_tag_for_trigger(workflow.trigger_type), ctx)
    conditions = [item for item in (workflow.conditions_json or []) if isinstance(item, dict)]
    results = condition_results(conditions, context)
    matched = fold_condition_results(conditions, results)

    condition_rows = [
        {
            "index": index,
            "field": str(condition.get("field") or ""),
            "operator": str(condition.get("operator") or "equals"),
            "logical_operator": str(condition.get("logical_operator") or "AND"),
            "passed": passed,
        }
        for index, (condition, passed) in enumerate(zip(conditions, results))
    ]

    rendered_context = template_context(context, now=now)
    previews: list[dict[str, Any]] = []
    for raw in sort_actions(workflow.actions_json):
        try:
            action = workflow_action_adapter.validate_python(raw)
        except ValidationError:
            continue
        previews.append(
            {
                "action_id": action.id or "",
                "type": action.type,
                "order": action.order,
                "delay_minutes": action.delay_minutes,
                "rendered_config": render_value(action.config.model_dump(), rendered_context),
            }
        )
    return RuleTestResult(matched=matched, conditions=condition_rows, actions=previews)


def record_workflow_run(db: Session, *, workflow_id: str, now: datetime | None = None) -> None:
    db.execute(
        update(CrmWorkflow)
        .where(CrmWorkflow.id == workflow_id)
        .values(
            execution_count=CrmWorkflow.execution_count + 1,
            last_executed_at=now or datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )


def workflow_name_taken(db: Session, *, business_id: str, name: str, exclude_id: str | None = None) -> bool:
    stmt = select(CrmWorkflow.id).where(
        CrmWorkflow.business_id == business_id,
        func.lower(CrmWorkflow.name) == name.strip().lower(),
    )
    if exclude_id:
        stmt = stmt.where(CrmWorkflow.id != exclude_id)
    return db.execute(stmt.limit(1)).first() is not None


def _unique_rule_name(db: Session, *, business_id: str, seed_name: str) -> str:
    base = (seed_name or "Workflow").strip() or "Workflow"
    candidate = base
    suffix = 2
    while workflow_name_taken(db, business_id=business_id, name=candidate):
        candidate = f"{base} ({suffix})"
        suffix += 1
    return candidate
