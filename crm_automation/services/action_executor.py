import calendar
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from crm_automation.core.config import settings
from crm_automation.core.observability import log_event
from crm_automation.models.workflow import (
    AutomationNotification,
    AutomationOutboundMessage,
    AutomationTask,
    CrmWorkflow,
    EntityMutationRequest,
    WorkflowExecution,
    WorkflowScheduledAction,
)
from crm_automation.schemas.workflow import workflow_action_adapter
from crm_automation.services.condition_evaluator import resolve_path
from crm_automation.services.messaging_provider import (
    MessageSendRequest,
    MessagingProvider,
    get_messaging_provider,
)
from crm_automation.services.templating import render_value, template_context

logger = logging.getLogger("crm_automation.actions")

_DUE_IN_RE = re.compile(r"\+?\s*(\d+)\s*(days?|weeks?|months?)", re.IGNORECASE)


@dataclass(frozen=True)
class ActionOutcome:
    action_id: str
    type: str
    success: bool
    error: str | None = None
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class ExecutionResult:
    execution_id: str
    status: str
    actions_executed: list[ActionOutcome] = field(default_factory=list)
    scheduled_action_id: str | None = None

    @property
    def success(self) -> bool:
        return self.status in {"completed", "waiting"} and all(item.success for item in self.actions_executed)


@dataclass(frozen=True)
class ScheduledActionSummary:
    due: int
    resumed: int
    failed: int


def sort_actions(actions: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    """Ascending ``order``; ties keep list position."""
    items = [item for item in actions or [] if isinstance(item, dict)]
    return [item for _, item in sorted(enumerate(items), key=lambda pair: (_order_of(pair[1]), pair[0]))]


def parse_due_in(value: str | None, *, now: datetime) -> datetime | None:
    if not value:
        return None
    match = _DUE_IN_RE.search(value)
    if not match:
        return None
    amount = int(match.group(1))
    unit = match.group(2).lower()
    if unit.startswith("day"):
        return now + timedelta(days=amount)
    if unit.startswith("week"):
        return now + timedelta(weeks=amount)
    return _add_months(now, amount)


class ActionExecutor:
    """Runs a matched workflow's actions in order, best effort.

    Each action is parsed into its typed config, rendered against the event context and
    performs one side effect. A failing action is recorded and the chain moves on.
    Delays persist a ``WorkflowScheduledAction`` continuation instead of sleeping.
    """

    def __init__(
        self,
        *,
        messaging_providers: dict[str, MessagingProvider],
        http_client: httpx.Client,
        default_provider: str | None = None,
        http_timeout_ms: int | None = None,
    ) -> None:
        self._providers = messaging_providers
        self._http = http_client
        self._default_provider = default_provider or settings.messaging_provider_default
        self._http_timeout = (http_timeout_ms or settings.action_http_timeout_ms) / 1000
        self._handlers: dict[str, Callable[..., dict[str, Any]]] = {
            "send_message": self._send_message,
            "send_notification": self._send_notification,
            "create_task": self._create_task,
            "create_activity": self._create_activity,
            "update_field": self._update_field,
            "move_stage": self._move_stage,
            "assign_owner": self._assign_owner,
            "add_tag": self._add_tag,
            "remove_tag": self._remove_tag,
            "call_webhook": self._call_webhook,
        }

    def execute(
        self,
        db: Session,
        *,
        workflow: CrmWorkflow,
        context: dict[str, Any],
    ) -> ExecutionResult:
        started = datetime.now(timezone.utc)
        execution = WorkflowExecution(
            id=str(uuid.uuid4()),
            business_id=workflow.business_id,
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            trigger_type=workflow.trigger_type,
            entity_type=str(context.get("entity_type") or ""),
            entity_id=str(context.get("entity_id") or ""),
            entity_name=context.get("entity_name"),
            status="running",
            action_logs_json=[],
            started_at=started,
        )
        db.add(execution)
        db.flush()
        return self._run_chain(
            db,
            workflow=workflow,
            execution=execution,
            actions=sort_actions(workflow.actions_json),
            context=context,
            first_delay_served=False,
        )

    def run_due_scheduled_actions(
        self,
        db: Session,
        *,
        now: datetime | None = None,
        limit: int = 100,
    ) -> ScheduledActionSummary:
        moment = now or datetime.now(timezone.utc)
        due_ids = db.execute(
            select(WorkflowScheduledAction.id)
            .where(
                WorkflowScheduledAction.status == "pending",
                WorkflowScheduledAction.run_at <= moment,
            )
            .order_by(WorkflowScheduledAction.run_at.asc())
            .limit(limit)
        ).scalars().all()

        resumed = 0
        failed = 0
        for scheduled_id in due_ids:
            claimed = db.execute(
                update(WorkflowScheduledAction)
                .where(
                    WorkflowScheduledAction.id == scheduled_id,
                    WorkflowScheduledAction.status == "pending",
                )
                .values(status="running", updated_at=moment)
            ).rowcount
            db.commit()
            if claimed != 1:
                continue
            try:
                if self._resume(db, scheduled_id=scheduled_id):
                    resumed += 1
                else:
                    failed += 1
                db.commit()
            except Exception as exc:  # noqa: BLE001
                db.rollback()
                failed += 1
                db.execute(
                    update(WorkflowScheduledAction)
                    .where(WorkflowScheduledAction.id == scheduled_id)
                    .values(status="failed", error_message=_short_error(exc))
                )
                db.commit()
                log_event(
                    logger,
                    "scheduled_action_failed",
                    scheduled_action_id=scheduled_id,
                    error=_short_error(exc),
                )
        return ScheduledActionSummary(due=len(due_ids), resumed=resumed, failed=failed)

    def _resume(self, db: Session, *, scheduled_id: str) -> bool:
        scheduled = db.get(WorkflowScheduledAction, scheduled_id)
        workflow = db.get(CrmWorkflow, scheduled.workflow_id)
        execution = db.get(WorkflowExecution, scheduled.execution_id)
        if workflow is None or not workflow.is_active or execution is None:
            scheduled.status = "failed"
            scheduled.error_message = "Workflow disabled or deleted"
            if execution is not None:
                execution.status = _final_status(execution.action_logs_json or [])
                execution.error_message = "Workflow disabled or deleted"
                execution.completed_at = datetime.now(timezone.utc)
            return False

        wanted = list(scheduled.action_ids_json or [])
        by_id = {str(item.get("id")): item for item in sort_actions(workflow.actions_json)}
        actions = [by_id[action_id] for action_id in wanted if action_id in by_id]
        scheduled.status = "completed"
        self._run_chain(
            db,
            workflow=workflow,
            execution=execution,
            actions=actions,
            context=scheduled.context_json or {},
            first_delay_served=scheduled.delay_served,
        )
        return True

    def _run_chain(
        self,
        db: Session,
        *,
        workflow: CrmWorkflow,
        execution: WorkflowExecution,
        actions: list[dict[str, Any]],
        context: dict[str, Any],
        first_delay_served: bool,
    ) -> ExecutionResult:
        outcomes: list[ActionOutcome] = []
        logs = list(execution.action_logs_json or [])
        rendered_context = template_context(context)

        for index, raw in enumerate(actions):
            action_id = str(raw.get("id") or f"action_{index}")
            action_type = str(raw.get("type") or "")
            delay_minutes = _as_int(raw.get("delay_minutes"))
            if delay_minutes > 0 and not (index == 0 and first_delay_served):
                scheduled = self._schedule(
                    db,
                    workflow=workflow,
                    execution=execution,
                    action_ids=[str(item.get("id")) for item in actions[index:]],
                    context=context,
                    delay_minutes=delay_minutes,
                    delay_served=True,
                )
                logs.append(_log_entry(action_id, action_type, status="scheduled", success=True,
                                       details={"run_at": scheduled.run_at.isoformat()}))
                return self._finish(execution, logs, outcomes, waiting_on=scheduled.id)

            outcome = self._run_action(db, raw=raw, action_id=action_id, context=rendered_context,
                                       execution=execution, workflow=workflow)
            outcomes.append(outcome)
            logs.append(_log_entry(action_id, action_type, status="completed" if outcome.success else "failed",
                                   success=outcome.success, error=outcome.error, details=outcome.details))

            if action_type == "delay" and outcome.success and index + 1 < len(actions):
                scheduled = self._schedule(
                    db,
                    workflow=workflow,
                    execution=execution,
                    action_ids=[str(item.get("id")) for item in actions[index + 1:]],
                    context=context,
                    delay_minutes=int(outcome.details["delay_minutes"]),
                    delay_served=False,
                )
                return self._finish(execution, logs, outcomes, waiting_on=scheduled.id)

        return self._finish(execution, logs, outcomes, waiting_on=None)

    def _run_action(
        self,
        db: Session,
        *,
        raw: dict[str, Any],
        action_id: str,
        context: dict[str, Any],
        execution: WorkflowExecution,
        workflow: CrmWorkflow,
    ) -> ActionOutcome:
        action_type = str(raw.get("type") or "")
        try:
            action = workflow_action_adapter.validate_python(raw)
        except ValidationError as exc:
            return ActionOutcome(
                action_id=action_id,
                type=action_type,
                success=False,
                error=_short_error(f"Invalid action config: {exc.errors()[0].get('msg', 'invalid')}"),
            )

        if action.type == "delay":
            return ActionOutcome(
                action_id=action_id,
                type=action.type,
                success=True,
                details={"delay_minutes": action.config.delay_minutes},
            )

        config = render_value(action.config.model_dump(), context)
        try:
            details = self._handlers[action.type](
                db,
                config=config,
                context=context,
                execution=execution,
                workflow=workflow,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                "workflow_action_failed",
                workflow_id=workflow.id,
                execution_id=execution.id,
                action_id=action_id,
                action_type=action.type,
                error=_short_error(exc),
            )
            return ActionOutcome(action_id=action_id, type=action.type, success=False, error=_short_error(exc))
        return ActionOutcome(action_id=action_id, type=action.type, success=True, details=details)

    def _schedule(
        self,
        db: Session,
        *,
        workflow: CrmWorkflow,
        execution: WorkflowExecution,
        action_ids: list[str],
        context: dict[str, Any],
        delay_minutes: int,
        delay_served: bool,
    ) -> WorkflowScheduledAction:
        scheduled = WorkflowScheduledAction(
            id=str(uuid.uuid4()),
            business_id=workflow.business_id,
            workflow_id=workflow.id,
            execution_id=execution.id,
            action_ids_json=action_ids,
            delay_served=delay_served,
            context_json=context,
            status="pending",
            run_at=datetime.now(timezone.utc) + timedelta(minutes=delay_minutes),
        )
        db.add(scheduled)
        db.flush()
        return scheduled

    def _finish(
        self,
        execution: WorkflowExecution,
        logs: list[dict[str, Any]],
        outcomes: list[ActionOutcome],
        *,
        waiting_on: str | None,
    ) -> ExecutionResult:
        execution.action_logs_json = logs
        if waiting_on:
            execution.status = "waiting"
        else:
            execution.status = _final_status(logs)
            completed = datetime.now(timezone.utc)
            execution.completed_at = completed
            execution.duration_ms = int((completed - _aware(execution.started_at)).total_seconds() * 1000)
            failures = [item.get("error") for item in logs if item.get("status") == "failed"]
            execution.error_message = _short_error(str(failures[-1])) if failures else None
        return ExecutionResult(
            execution_id=execution.id,
            status=execution.status,
            actions_executed=outcomes,
            scheduled_action_id=waiting_on,
        )

    def _send_message(self, db: Session, *, config: dict[str, Any], context: dict[str, Any],
                      execution: WorkflowExecution, workflow: CrmWorkflow) -> dict[str, Any]:
        provider_name = config.get("provider") or self._default_provider
        recipient = str(config.get("recipient") or "").strip()
        if not recipient and config.get("recipient_from"):
            resolved = resolve_path(context, str(config["recipient_from"]))
            if resolved is not None:
                recipient = str(resolved).strip()
        if not recipient:
            raise ValueError("send_message action requires recipient or resolvable recipient_from")

        content = str(config.get("content") or "").strip()
        if not content:
            raise ValueError("send_message action content resolved to empty")
        subject = str(config.get("subject") or "").strip() or None

        provider = get_messaging_provider(self._providers, provider_name)
        result = provider.send_message(
            MessageSendRequest(
                business_id=workflow.business_id,
                recipient=recipient,
                content=content,
                subject=subject,
            )
        )
        outbound = AutomationOutboundMessage(
            id=str(uuid.uuid4()),
            business_id=workflow.business_id,
            execution_id=execution.id,
            provider=result.provider,
            recipient=recipient,
            subject=subject,
            content=content,
            status=result.status,
            external_message_id=result.message_id,
        )
        db.add(outbound)
        db.flush()
        return {
            "provider": result.provider,
            "status": result.status,
            "recipient": recipient,
            "message_id": result.message_id,
            "outbound_message_id": outbound.id,
        }

    def _send_notification(self, db: Session, *, config: dict[str, Any], context: dict[str, Any],
                           execution: WorkflowExecution, workflow: CrmWorkflow) -> dict[str, Any]:
        recipient_type = config.get("recipient_type") or "owner"
        if recipient_type == "owner":
            owner_id = _owner_id(context)
            recipients = [owner_id] if owner_id else []
        elif recipient_type == "specific_user":
            recipients = [str(config.get("recipient_id") or "")]
        else:
            recipients = [str(item) for item in config.get("recipient_ids") or []]
        recipients = list(dict.fromkeys(item for item in recipients if item))
        if not recipients:
            raise ValueError("No notification recipients could be resolved")

        title = str(config.get("title") or "").strip() or _default_title(context)
        message = str(config.get("message") or "").strip() or "A CRM automation ran"
        for recipient_id in recipients:
            db.add(
                AutomationNotification(
                    id=str(uuid.uuid4()),
                    business_id=workflow.business_id,
                    execution_id=execution.id,
                    recipient_user_id=recipient_id,
                    title=title[:160],
                    message=message[:1000],
                    priority=config.get("priority") or "normal",
                )
            )
        db.flush()
        return {"notifications_sent": len(recipients), "recipient_ids": recipients}

    def _create_task(self, db: Session, *, config: dict[str, Any], context: dict[str, Any],
                     execution: WorkflowExecution, workflow: CrmWorkflow) -> dict[str, Any]:
        title = str(config.get("title") or "").strip()
        if not title:
            raise ValueError("create_task action title resolved to empty")
        description = str(config.get("description") or "").strip() or None
        due_at = parse_due_in(config.get("due_in"), now=datetime.now(timezone.utc))

        assign_to = config.get("assign_to") or "owner"
        if assign_to == "specific_user":
            assignee = config.get("assignee_id")
        elif assign_to == "trigger_user":
            assignee = context.get("user_id")
        else:
            assignee = _owner_id(context) or context.get("user_id")

        task = AutomationTask(
            id=str(uuid.uuid4()),
            business_id=workflow.business_id,
            execution_id=execution.id,
            entity_type=str(context.get("entity_type") or ""),
            entity_id=str(context.get("entity_id") or ""),
            title=title[:160],
            description=description[:500] if description else None,
            status="open",
            assignee_user_id=str(assignee) if assignee else None,
            due_at=due_at,
        )
        db.add(task)
        db.flush()
        return {
            "task_id": task.id,
            "title": task.title,
            "due_at": due_at.isoformat() if due_at else None,
            "assignee_user_id": task.assignee_user_id,
        }

    def _create_activity(self, db: Session, *, config: dict[str, Any], context: dict[str, Any],
                         execution: WorkflowExecution, workflow: CrmWorkflow) -> dict[str, Any]:
        title = str(config.get("title") or "").strip()
        if not title:
            raise ValueError("create_activity action title resolved to empty")
        payload = {
            "activity_type": config.get("activity_type") or "note",
            "title": title,
            "description": config.get("description"),
            "deal_id": _related_id(context, "deal"),
            "contact_id": _related_id(context, "contact"),
            "client_id": _related_id(context, "client"),
            "created_by": context.get("user_id") or _owner_id(context),
        }
        return self._queue_mutation(
            db,
            workflow=workflow,
            execution=execution,
            entity_type=str(context.get("entity_type") or ""),
            entity_id=str(context.get("entity_id") or ""),
            operation="create_activity",
            payload=payload,
        )

    def _update_field(self, db: Session, *, config: dict[str, Any], context: dict[str, Any],
                      execution: WorkflowExecution, workflow: CrmWorkflow) -> dict[str, Any]:
        target = config.get("target_entity") or str(context.get("entity_type") or "")
        entity_id = _related_id(context, target)
        if not entity_id:
            raise ValueError(f"No {target or 'entity'} id found in event context")
        return self._queue_mutation(
            db,
            workflow=workflow,
            execution=execution,
            entity_type=target,
            entity_id=entity_id,
            operation="update_field",
            payload={"field": config["field_name"], "value": config.get("field_value")},
        )

    def _move_stage(self, db: Session, *, config: dict[str, Any], context: dict[str, Any],
                    execution: WorkflowExecution, workflow: CrmWorkflow) -> dict[str, Any]:
        deal_id = _related_id(context, "deal")
        if not deal_id:
            raise ValueError("No deal in event context to move")
        return self._queue_mutation(
            db,
            workflow=workflow,
            execution=execution,
            entity_type="deal",
            entity_id=deal_id,
            operation="move_stage",
            payload={"stage_id": config["stage_id"]},
        )

    def _assign_owner(self, db: Session, *, config: dict[str, Any], context: dict[str, Any],
                      execution: WorkflowExecution, workflow: CrmWorkflow) -> dict[str, Any]:
        deal_id = _related_id(context, "deal")
        if not deal_id:
            raise ValueError("No deal in event context to assign")

        if config.get("assignment_type") == "round_robin":
            candidates = [str(item) for item in config.get("candidate_user_ids") or [] if item]
            if not candidates:
                raise ValueError("round_robin assignment has no candidates")
            previous = db.execute(
                select(func.count(EntityMutationRequest.id)).where(
                    EntityMutationRequest.workflow_id == workflow.id,
                    EntityMutationRequest.operation == "assign_owner",
                )
            ).scalar_one()
            owner_id = candidates[int(previous) % len(candidates)]
        else:
            owner_id = str(config.get("new_owner_id") or "").strip()
        if not owner_id:
            raise ValueError("Could not determine the new owner")

        return self._queue_mutation(
            db,
            workflow=workflow,
            execution=execution,
            entity_type="deal",
            entity_id=deal_id,
            operation="assign_owner",
            payload={"owner_id": owner_id},
        )

    def _add_tag(self, db: Session, **kwargs: Any) -> dict[str, Any]:
        return self._tag_mutation(db, operation="add_tag", **kwargs)

    def _remove_tag(self, db: Session, **kwargs: Any) -> dict[str, Any]:
        return self._tag_mutation(db, operation="remove_tag", **kwargs)

    def _tag_mutation(self, db: Session, *, operation: str, config: dict[str, Any], context: dict[str, Any],
                      execution: WorkflowExecution, workflow: CrmWorkflow) -> dict[str, Any]:
        tag = str(config.get("tag") or "").strip()
        if not tag:
            raise ValueError(f"{operation} action requires tag")
        for entity_type in ("deal", "contact"):
            entity_id = _related_id(context, entity_type)
            if entity_id:
                return self._queue_mutation(
                    db,
                    workflow=workflow,
                    execution=execution,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    operation=operation,
                    payload={"tag": tag},
                )
        raise ValueError("No deal or contact in event context to tag")

    def _call_webhook(self, db: Session, *, config: dict[str, Any], context: dict[str, Any],
                      execution: WorkflowExecution, workflow: CrmWorkflow) -> dict[str, Any]:
        url = str(config.get("url") or "").strip()
        if not url.lower().startswith(("http://", "https://")):
            raise ValueError("call_webhook url must resolve to an http(s) URL")
        method = config.get("method") or "POST"
        headers = {"Content-Type": "application/json"}
        headers.update({str(key): str(value) for key, value in (config.get("headers") or {}).items()})
        body = config.get("payload") if method != "GET" else None

        response = self._http.request(method, url, headers=headers, json=body, timeout=self._http_timeout)
        if not response.is_success:
            raise ValueError(f"Webhook call returned HTTP {response.status_code}")
        return {"status_code": response.status_code, "url": url, "method": method}

    def _queue_mutation(
        self,
        db: Session,
        *,
        workflow: CrmWorkflow,
        execution: WorkflowExecution,
        entity_type: str,
        entity_id: str,
        operation: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        request = EntityMutationRequest(
            id=str(uuid.uuid4()),
            business_id=workflow.business_id,
            workflow_id=workflow.id,
            execution_id=execution.id,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            payload_json=payload,
            status="pending",
        )
        db.add(request)
        db.flush()
        return {
            "mutation_id": request.id,
            "operation": operation,
            "entity_type": entity_type,
            "entity_id": entity_id,
            **payload,
        }


def _log_entry(
    action_id: str,
    action_type: str,
    *,
    status: str,
    success: bool,
    error: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "action_id": action_id,
        "type": action_type,
        "status": status,
        "success": success,
        "error": error,
        "details": details,
        "executed_at": datetime.now(timezone.utc).isoformat(),
    }


def _final_status(logs: list[dict[str, Any]]) -> str:
    ran = [item for item in logs if item.get("status") in {"completed", "failed"}]
    if not ran:
        return "completed"
    succeeded = sum(1 for item in ran if item.get("success"))
    if succeeded == len(ran):
        return "completed"
    if succeeded == 0:
        return "failed"
    return "partial"


def _ref_id(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("_id") or value.get("id")
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _related_id(context: dict[str, Any], entity_type: str) -> str | None:
    if not entity_type:
        return None
    if context.get("entity_type") == entity_type:
        return _ref_id(context.get("entity_id"))
    related = _ref_id(context.get(entity_type))
    if related:
        return related
    current = context.get("current") if isinstance(context.get("current"), dict) else {}
    return _ref_id(current.get(f"{entity_type}Id")) or _ref_id(current.get(f"{entity_type}_id"))


def _owner_id(context: dict[str, Any]) -> str | None:
    for source in (context.get("deal"), context.get("current")):
        if not isinstance(source, dict):
            continue
        for key in ("ownerId", "owner_id", "owner"):
            owner = _ref_id(source.get(key))
            if owner:
                return owner
    return None


def _default_title(context: dict[str, Any]) -> str:
    entity_type = context.get("entity_type")
    current = context.get("current") if isinstance(context.get("current"), dict) else {}
    if entity_type == "activity":
        return f"New activity: {current.get('type') or 'activity'}"
    if entity_type == "deal":
        return f"Deal: {current.get('title') or context.get('entity_name') or 'untitled'}"
    if entity_type == "contact":
        name = f"{current.get('firstName') or ''} {current.get('lastName') or ''}".strip()
        return f"Contact: {name or context.get('entity_name') or 'unnamed'}"
    if entity_type == "client":
        return f"Client: {current.get('name') or context.get('entity_name') or 'unnamed'}"
    return "CRM automation"


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _order_of(action: dict[str, Any]) -> int:
    return _as_int(action.get("order"))


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Workflow action failed"
    return text[:255]
