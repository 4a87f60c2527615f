import logging
from datetime import datetime, timezone
from typing import Callable

import httpx
from sqlalchemy.orm import Session

from crm_automation.core.config import settings
from crm_automation.core.observability import log_event
from crm_automation.services.action_executor import ActionExecutor, ScheduledActionSummary
from crm_automation.services.dispatch_context import DispatchContext
from crm_automation.services.dispatcher import DispatchSummary, TriggerDispatcher
from crm_automation.services.messaging_provider import MessagingProvider, default_messaging_providers
from crm_automation.services.retry_scheduler import RetryScheduler, RetrySweepSummary
from crm_automation.services.task_queue import BackgroundTaskQueue
from crm_automation.services.webhook_delivery import WebhookDeliveryService, purge_expired_logs

logger = logging.getLogger("crm_automation.engine")


class AutomationEngine:
    """Builds the automation services once and exposes the operations callers need."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        transport: httpx.BaseTransport | None = None,
        messaging_providers: dict[str, MessagingProvider] | None = None,
        queue: BackgroundTaskQueue | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.http_client = httpx.Client(transport=transport, follow_redirects=False)
        self.queue = queue or BackgroundTaskQueue()
        self.executor = ActionExecutor(
            messaging_providers=messaging_providers or default_messaging_providers(),
            http_client=self.http_client,
        )
        self.delivery = WebhookDeliveryService(session_factory=session_factory, http_client=self.http_client)
        self.retry_scheduler = RetryScheduler(session_factory=session_factory, delivery=self.delivery)
        self.dispatcher = TriggerDispatcher(
            session_factory=session_factory,
            executor=self.executor,
            delivery=self.delivery,
            queue=self.queue,
        )

    def dispatch(self, event_tag: str, ctx: DispatchContext) -> DispatchSummary | None:
        try:
            return self.dispatcher.dispatch(event_tag, ctx)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                "dispatch_crashed",
                level=logging.ERROR,
                business_id=ctx.business_id,
                webhook_event=event_tag,
                error=str(exc),
            )
            return None

    def retry_due(self, *, now: datetime | None = None) -> RetrySweepSummary:
        return self.retry_scheduler.retry_due(now=now)

    def run_due_scheduled_actions(self, *, now: datetime | None = None, limit: int = 100) -> ScheduledActionSummary:
        db = self.session_factory()
        try:
            return self.executor.run_due_scheduled_actions(db, now=now, limit=limit)
        finally:
            db.close()

    def purge_expired_logs(self, *, now: datetime | None = None) -> int:
        db = self.session_factory()
        try:
            deleted = purge_expired_logs(db, now=now or datetime.now(timezone.utc))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if deleted:
            log_event(logger, "webhook_logs_purged", deleted=deleted)
        return deleted

    def join(self, timeout: float | None = None) -> bool:
        return self.queue.join(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self.queue.shutdown(wait=wait)
        self.http_client.close()
        log_event(logger, "automation_engine_stopped", env=settings.env)
