import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_automation.core.config import settings
from crm_automation.core.observability import log_event
from crm_automation.models.webhook import WebhookSubscription
from crm_automation.models.workflow import CrmWorkflow
from crm_automation.schemas.event import RULE_ONLY_EVENT_TAGS
from crm_automation.services.action_executor import ActionExecutor
from crm_automation.services.condition_evaluator import evaluate_conditions
from crm_automation.services.dispatch_context import DispatchContext, build_rule_context, stage_flag, stage_of
from crm_automation.services.task_queue import BackgroundTaskQueue
from crm_automation.services.webhook_delivery import WebhookDeliveryService, is_suspended, matches_filters
from crm_automation.services.workflow_service import record_workflow_run

logger = logging.getLogger("crm_automation.dispatch")


@dataclass(frozen=True)
class DispatchSummary:
    event: str
    rules_matched: int = 0
    execution_ids: list[str] = field(default_factory=list)
    webhooks_enqueued: int = 0
    derived: list["DispatchSummary"] = field(default_factory=list)


def derived_events(event_tag: str, ctx: DispatchContext) -> list[str]:
    """Events raised as a consequence of ``event_tag``."""
    if event_tag == "deal.stage_changed":
        stage = stage_of(ctx.current)
        if stage_flag(stage, "isWon"):
            return ["deal.won"]
        if stage_flag(stage, "isClosed"):
            return ["deal.lost"]
        return []
    if event_tag == "deal.updated" and "value" in (ctx.changed_fields or []):
        return ["deal.value_changed"]
    return []


class TriggerDispatcher:
    """Entry point for domain events.

    Matching workflows run synchronously, each in its own transaction. Matching webhook
    subscriptions only get a delivery task queued. Neither path raises into the caller.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        executor: ActionExecutor,
        delivery: WebhookDeliveryService,
        queue: BackgroundTaskQueue,
        breaker_threshold: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._executor = executor
        self._delivery = delivery
        self._queue = queue
        self._breaker_threshold = breaker_threshold or settings.webhook_circuit_breaker_threshold

    def dispatch(self, event_tag: str, ctx: DispatchContext, *, cascade: bool = True) -> DispatchSummary:
        matched, execution_ids = self._run_rules(event_tag, ctx)
        enqueued = 0
        if event_tag not in RULE_ONLY_EVENT_TAGS:
            enqueued = self._enqueue_webhooks(event_tag, ctx)

        derived: list[DispatchSummary] = []
        if cascade:
            for derived_tag in derived_events(event_tag, ctx):
                derived.append(self.dispatch(derived_tag, ctx, cascade=False))

        log_event(
            logger,
            "event_dispatched",
            business_id=ctx.business_id,
            webhook_event=event_tag,
            entity_type=ctx.entity_type,
            entity_id=ctx.entity_id,
            rules_matched=matched,
            webhooks_enqueued=enqueued,
            derived=[item.event for item in derived],
        )
        return DispatchSummary(
            event=event_tag,
            rules_matched=matched,
            execution_ids=execution_ids,
            webhooks_enqueued=enqueued,
            derived=derived,
        )

    def _run_rules(self, event_tag: str, ctx: DispatchContext) -> tuple[int, list[str]]:
        trigger_type = event_tag.replace(".", "_")
        matched = 0
        execution_ids: list[str] = []
        db = self._session_factory()
        try:
            workflows = db.execute(
                select(CrmWorkflow)
                .where(
                    CrmWorkflow.business_id == ctx.business_id,
                    CrmWorkflow.trigger_type == trigger_type,
                    CrmWorkflow.is_active.is_(True),
                )
                .order_by(CrmWorkflow.created_at.asc(), CrmWorkflow.id.asc())
            ).scalars().all()
            context = build_rule_context(event_tag, ctx)
            for workflow in workflows:
                try:
                    if not evaluate_conditions(workflow.conditions_json or [], context):
                        continue
                    result = self._executor.execute(db, workflow=workflow, context=context)
                    record_workflow_run(db, workflow_id=workflow.id, now=datetime.now(timezone.utc))
                    db.commit()
                    matched += 1
                    execution_ids.append(result.execution_id)
                    log_event(
                        logger,
                        "workflow_executed",
                        workflow_id=workflow.id,
                        execution_id=result.execution_id,
                        status=result.status,
                        actions=len(result.actions_executed),
                    )
                except Exception as exc:  # noqa: BLE001
                    db.rollback()
                    log_event(
                        logger,
                        "workflow_dispatch_failed",
                        level=logging.ERROR,
                        workflow_id=workflow.id,
                        webhook_event=event_tag,
                        error=str(exc),
                    )
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            log_event(
                logger,
                "rule_dispatch_failed",
                level=logging.ERROR,
                business_id=ctx.business_id,
                webhook_event=event_tag,
                error=str(exc),
            )
        finally:
            db.close()
        return matched, execution_ids

    def _enqueue_webhooks(self, event_tag: str, ctx: DispatchContext) -> int:
        db = self._session_factory()
        try:
            subscriptions = db.execute(
                select(WebhookSubscription)
                .where(
                    WebhookSubscription.business_id == ctx.business_id,
                    WebhookSubscription.is_active.is_(True),
                    WebhookSubscription.consecutive_failures < self._breaker_threshold,
                )
                .order_by(WebhookSubscription.created_at.asc(), WebhookSubscription.id.asc())
            ).scalars().all()
            targets = [
                item.id
                for item in subscriptions
                if event_tag in (item.events_json or [])
                and not is_suspended(item, threshold=self._breaker_threshold)
                and matches_filters(item.filters_json, ctx)
            ]
            self._queue.submit_many(
                [(self._delivery.deliver_by_id, (subscription_id, event_tag, ctx)) for subscription_id in targets]
            )
            return len(targets)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                "webhook_dispatch_failed",
                level=logging.ERROR,
                business_id=ctx.business_id,
                webhook_event=event_tag,
                error=str(exc),
            )
            return 0
        finally:
            db.close()
