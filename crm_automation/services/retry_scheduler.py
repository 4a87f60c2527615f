import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from crm_automation.core.config import settings
from crm_automation.core.observability import log_event
from crm_automation.models.webhook import WebhookDeliveryLog, WebhookSubscription
from crm_automation.services.webhook_delivery import WebhookDeliveryService

logger = logging.getLogger("crm_automation.retry")

DISABLED_OR_DELETED = "Webhook disabled or deleted"
ATTEMPT_INTERRUPTED = "Delivery attempt interrupted"


@dataclass(frozen=True)
class RetrySweepSummary:
    recovered: int
    due: int
    retried: int
    succeeded: int
    failed: int
    skipped: int


def claim_retry(db: Session, *, log_id: str, now: datetime) -> bool:
    """Compare-and-set ``retrying -> pending``; only one sweeper wins a row."""
    result = db.execute(
        update(WebhookDeliveryLog)
        .where(
            WebhookDeliveryLog.id == log_id,
            WebhookDeliveryLog.status == "retrying",
            WebhookDeliveryLog.next_retry_at <= now,
        )
        .values(
            status="pending",
            attempts=WebhookDeliveryLog.attempts + 1,
            next_retry_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def fail_orphaned(db: Session, *, log_id: str, now: datetime) -> bool:
    result = db.execute(
        update(WebhookDeliveryLog)
        .where(
            WebhookDeliveryLog.id == log_id,
            WebhookDeliveryLog.status == "retrying",
        )
        .values(
            status="failed",
            error=DISABLED_OR_DELETED,
            next_retry_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def recover_stale_pending(db: Session, *, now: datetime, lease_seconds: int | None = None) -> int:
    """Hand rows abandoned mid-attempt back to the sweep.

    A row whose interrupted attempt was already its last one is failed instead and
    counted against the subscription's health.
    """
    cutoff = now - timedelta(seconds=lease_seconds or settings.webhook_pending_lease_seconds)
    stale = (
        WebhookDeliveryLog.status == "pending",
        WebhookDeliveryLog.updated_at <= cutoff,
    )
    rows = db.execute(
        select(
            WebhookDeliveryLog.id,
            WebhookDeliveryLog.subscription_id,
            WebhookDeliveryLog.attempts,
            WebhookSubscription.max_retries,
        )
        .outerjoin(WebhookSubscription, WebhookSubscription.id == WebhookDeliveryLog.subscription_id)
        .where(*stale)
    ).all()
    for log_id, subscription_id, attempts, max_retries in rows:
        if max_retries is None or attempts <= max_retries:
            continue
        result = db.execute(
            update(WebhookDeliveryLog)
            .where(WebhookDeliveryLog.id == log_id, *stale)
            .values(status="failed", error=ATTEMPT_INTERRUPTED, next_retry_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        db.execute(
            update(WebhookSubscription)
            .where(WebhookSubscription.id == subscription_id)
            .values(
                consecutive_failures=WebhookSubscription.consecutive_failures + 1,
                total_failed=WebhookSubscription.total_failed + 1,
                last_error=ATTEMPT_INTERRUPTED,
                last_error_at=now,
            )
        )
        log_event(
            logger,
            "webhook_retry_exhausted",
            log_id=log_id,
            subscription_id=subscription_id,
            attempts=attempts,
            error=ATTEMPT_INTERRUPTED,
        )

    result = db.execute(
        update(WebhookDeliveryLog)
        .where(*stale)
        .values(status="retrying", next_retry_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(result.rowcount or 0)


class RetryScheduler:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        delivery: WebhookDeliveryService,
        lease_seconds: int | None = None,
        batch_size: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._delivery = delivery
        self._lease_seconds = lease_seconds or settings.webhook_pending_lease_seconds
        self._batch_size = batch_size

    def retry_due(self, *, now: datetime | None = None) -> RetrySweepSummary:
        moment = now or datetime.now(timezone.utc)
        db = self._session_factory()
        try:
            return self._sweep(db, moment)
        finally:
            db.close()

    def _sweep(self, db: Session, now: datetime) -> RetrySweepSummary:
        recovered = recover_stale_pending(db, now=now, lease_seconds=self._lease_seconds)
        due_ids = db.execute(
            select(WebhookDeliveryLog.id)
            .where(
                WebhookDeliveryLog.status == "retrying",
                WebhookDeliveryLog.next_retry_at <= now,
            )
            .order_by(WebhookDeliveryLog.next_retry_at.asc())
            .limit(self._batch_size)
        ).scalars().all()

        retried = succeeded = failed = skipped = 0
        for log_id in due_ids:
            try:
                log = db.get(WebhookDeliveryLog, log_id)
                if log is None:
                    skipped += 1
                    continue
                subscription = db.get(WebhookSubscription, log.subscription_id)
                if subscription is None or not subscription.is_active:
                    if fail_orphaned(db, log_id=log_id, now=now):
                        failed += 1
                        log_event(
                            logger,
                            "webhook_retry_abandoned",
                            log_id=log_id,
                            subscription_id=log.subscription_id,
                            error=DISABLED_OR_DELETED,
                        )
                    else:
                        skipped += 1
                    continue
                if not claim_retry(db, log_id=log_id, now=now):
                    skipped += 1
                    continue

                db.refresh(log)
                outcome = self._delivery.send_attempt(db, log=log, subscription=subscription)
                retried += 1
                if outcome.success:
                    succeeded += 1
                elif outcome.status == "failed":
                    failed += 1
            except Exception as exc:  # noqa: BLE001
                db.rollback()
                skipped += 1
                log_event(
                    logger,
                    "webhook_retry_crashed",
                    level=logging.ERROR,
                    log_id=log_id,
                    error=str(exc),
                )

        summary = RetrySweepSummary(
            recovered=recovered,
            due=len(due_ids),
            retried=retried,
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
        )
        if due_ids or recovered:
            log_event(logger, "webhook_retry_sweep", **asdict(summary))
        return summary
