import uuid
from datetime import datetime, timedelta, timezone

from crm_automation.models.webhook import WebhookDeliveryLog, WebhookSubscription
from crm_automation.services.dispatch_context import DispatchContext
from crm_automation.services.retry_scheduler import (
    ATTEMPT_INTERRUPTED,
    DISABLED_OR_DELETED,
    claim_retry,
    recover_stale_pending,
)
from crm_automation.services.secret_vault import encrypt_secret


def _subscription(db, **overrides) -> WebhookSubscription:
    values = {
        "id": str(uuid.uuid4()),
        "business_id": "biz-1",
        "name": f"Hook {uuid.uuid4().hex[:6]}",
        "url": "https://hooks.example.com/crm",
        "secret_encrypted": encrypt_secret("whsec_retry_secret"),
        "events_json": ["deal.won"],
        "is_active": True,
        "max_retries": 3,
        "timeout_ms": 10000,
        "total_sent": 0,
        "total_failed": 0,
        "consecutive_failures": 0,
        "created_by_user_id": "user-1",
    }
    values.update(overrides)
    subscription = WebhookSubscription(**values)
    db.add(subscription)
    db.commit()
    return subscription


def _ctx() -> DispatchContext:
    return DispatchContext(
        business_id="biz-1",
        entity_type="deal",
        entity_id="deal-1",
        entity_name="Acme renewal",
        current={"title": "Acme renewal", "value": 25000},
        user_id="user-1",
    )


def _pending_log(
    db, *, subscription: WebhookSubscription, updated_at: datetime, attempts: int = 1
) -> WebhookDeliveryLog:
    log = WebhookDeliveryLog(
        id=str(uuid.uuid4()),
        business_id=subscription.business_id,
        subscription_id=subscription.id,
        subscription_name=subscription.name,
        event="deal.won",
        payload_json={"event": "deal.won"},
        request_url=subscription.url,
        request_body='{"event":"deal.won"}',
        status="pending",
        attempts=attempts,
        entity_type="deal",
        entity_id="deal-1",
        expires_at=updated_at + timedelta(days=30),
        created_at=updated_at,
        updated_at=updated_at,
    )
    db.add(log)
    db.commit()
    return log


def _after(minutes: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=minutes, seconds=5)


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo else value


def test_failed_delivery_backs_off_then_fails_terminally(session_local, automation, webhook_target):
    webhook_target.status_code = 503
    db = session_local()
    try:
        subscription = _subscription(db)
        outcome = automation.delivery.deliver(db, subscription=subscription, event_tag="deal.won", ctx=_ctx())
        assert (outcome.status, outcome.attempts) == ("retrying", 1)
        log_id = outcome.log_id
        subscription_id = subscription.id
    finally:
        db.close()

    early = automation.retry_due(now=_after(2))
    assert early.due == 0

    expected_backoff = [timedelta(minutes=9), timedelta(minutes=27)]
    for attempt, wait_minutes in ((2, 3), (3, 9)):
        summary = automation.retry_due(now=_after(wait_minutes))
        assert (summary.due, summary.retried, summary.failed) == (1, 1, 0)

        db = session_local()
        try:
            log = db.get(WebhookDeliveryLog, log_id)
            assert log.status == "retrying"
            assert log.attempts == attempt
            assert _naive(log.next_retry_at) - _naive(log.updated_at) == expected_backoff[attempt - 2]
        finally:
            db.close()

    final = automation.retry_due(now=_after(27))
    assert (final.due, final.retried, final.failed) == (1, 1, 1)

    db = session_local()
    try:
        log = db.get(WebhookDeliveryLog, log_id)
        assert log.status == "failed"
        assert log.attempts == 4
        assert log.next_retry_at is None

        stored = db.get(WebhookSubscription, subscription_id)
        assert stored.total_failed == 1
        assert stored.total_sent == 0
        assert stored.consecutive_failures == 4
    finally:
        db.close()

    assert len(webhook_target.requests) == 4
    assert automation.retry_due(now=_after(600)).due == 0


def test_retry_success_resets_failure_streak(session_local, automation, webhook_target):
    webhook_target.unreachable = True
    db = session_local()
    try:
        subscription = _subscription(db)
        outcome = automation.delivery.deliver(db, subscription=subscription, event_tag="deal.won", ctx=_ctx())
        log_id = outcome.log_id
        subscription_id = subscription.id
    finally:
        db.close()

    webhook_target.unreachable = False
    summary = automation.retry_due(now=_after(3))
    assert (summary.retried, summary.succeeded) == (1, 1)

    db = session_local()
    try:
        log = db.get(WebhookDeliveryLog, log_id)
        assert log.status == "success"
        assert log.attempts == 2
        assert log.error is None
        assert db.get(WebhookSubscription, subscription_id).consecutive_failures == 0
        assert db.get(WebhookSubscription, subscription_id).total_sent == 1
    finally:
        db.close()

    # the body is stored once and resent byte for byte
    assert webhook_target.requests[0].content == webhook_target.requests[1].content


def test_claim_is_compare_and_set(session_local, automation, webhook_target):
    webhook_target.status_code = 500
    db = session_local()
    try:
        subscription = _subscription(db)
        log_id = automation.delivery.deliver(
            db, subscription=subscription, event_tag="deal.won", ctx=_ctx()
        ).log_id
    finally:
        db.close()

    first = session_local()
    second = session_local()
    try:
        assert claim_retry(first, log_id=log_id, now=datetime.now(timezone.utc)) is False
        assert claim_retry(first, log_id=log_id, now=_after(3)) is True
        assert claim_retry(second, log_id=log_id, now=_after(3)) is False

        log = second.get(WebhookDeliveryLog, log_id)
        assert log.status == "pending"
        assert log.attempts == 2
        assert log.next_retry_at is None
    finally:
        first.close()
        second.close()

    # a claimed row is no longer visible to the sweep
    assert automation.retry_due(now=_after(3)).due == 0


def test_retry_for_deleted_or_disabled_subscription_is_abandoned(session_local, automation, webhook_target):
    webhook_target.status_code = 502
    db = session_local()
    try:
        deleted = _subscription(db)
        disabled = _subscription(db)
        deleted_log = automation.delivery.deliver(db, subscription=deleted, event_tag="deal.won", ctx=_ctx()).log_id
        disabled_log = automation.delivery.deliver(
            db, subscription=disabled, event_tag="deal.won", ctx=_ctx()
        ).log_id

        db.delete(deleted)
        disabled.is_active = False
        db.commit()
    finally:
        db.close()

    sent_before = len(webhook_target.requests)
    summary = automation.retry_due(now=_after(3))
    assert (summary.due, summary.retried, summary.failed) == (2, 0, 2)
    assert len(webhook_target.requests) == sent_before

    db = session_local()
    try:
        for log_id in (deleted_log, disabled_log):
            log = db.get(WebhookDeliveryLog, log_id)
            assert log.status == "failed"
            assert log.error == DISABLED_OR_DELETED
            assert log.next_retry_at is None
    finally:
        db.close()


def test_stale_pending_rows_are_recovered(session_local, automation, webhook_target):
    now = datetime.now(timezone.utc)
    db = session_local()
    try:
        subscription = _subscription(db)
        stale = _pending_log(db, subscription=subscription, updated_at=now - timedelta(minutes=10))
        fresh = _pending_log(db, subscription=subscription, updated_at=now - timedelta(seconds=5))
        stale_id, fresh_id = stale.id, fresh.id
    finally:
        db.close()

    summary = automation.retry_due(now=now)
    assert (summary.recovered, summary.due, summary.succeeded) == (1, 1, 1)
    assert len(webhook_target.requests) == 1

    db = session_local()
    try:
        assert db.get(WebhookDeliveryLog, stale_id).status == "success"
        assert db.get(WebhookDeliveryLog, stale_id).attempts == 2
        assert db.get(WebhookDeliveryLog, fresh_id).status == "pending"
        assert recover_stale_pending(db, now=now + timedelta(minutes=5), lease_seconds=120) == 1
        db.expire_all()
        assert db.get(WebhookDeliveryLog, fresh_id).status == "retrying"
    finally:
        db.close()


def test_exhausted_stale_pending_rows_fail_instead_of_requeueing(session_local, automation, webhook_target):
    now = datetime.now(timezone.utc)
    db = session_local()
    try:
        subscription = _subscription(db, max_retries=3)
        exhausted = _pending_log(db, subscription=subscription, updated_at=now - timedelta(minutes=10), attempts=4)
        resumable = _pending_log(db, subscription=subscription, updated_at=now - timedelta(minutes=10), attempts=3)
        exhausted_id, resumable_id, subscription_id = exhausted.id, resumable.id, subscription.id

        assert recover_stale_pending(db, now=now, lease_seconds=120) == 1
        db.expire_all()

        log = db.get(WebhookDeliveryLog, exhausted_id)
        assert log.status == "failed"
        assert log.error == ATTEMPT_INTERRUPTED
        assert log.next_retry_at is None
        assert db.get(WebhookDeliveryLog, resumable_id).status == "retrying"

        stored = db.get(WebhookSubscription, subscription_id)
        assert stored.total_failed == 1
        assert stored.consecutive_failures == 1
        assert stored.last_error == ATTEMPT_INTERRUPTED
    finally:
        db.close()

    summary = automation.retry_due(now=now)
    assert (summary.due, summary.succeeded) == (1, 1)
    assert len(webhook_target.requests) == 1


def test_unsendable_request_fails_through_the_retry_state_machine(session_local, automation, webhook_target):
    db = session_local()
    try:
        # stored directly; the API rejects non-ASCII header values
        subscription = _subscription(db, headers_json={"X-Team": "café"}, max_retries=1)
        outcome = automation.delivery.deliver(db, subscription=subscription, event_tag="deal.won", ctx=_ctx())
        log_id, subscription_id = outcome.log_id, subscription.id
    finally:
        db.close()

    assert (outcome.status, outcome.attempts) == ("retrying", 1)
    assert outcome.error.startswith("UnicodeEncodeError")

    summary = automation.retry_due(now=_after(3))
    assert (summary.due, summary.retried, summary.failed) == (1, 1, 1)
    for minutes in (10, 30, 90):
        assert automation.retry_due(now=_after(minutes)).due == 0

    db = session_local()
    try:
        log = db.get(WebhookDeliveryLog, log_id)
        assert log.status == "failed"
        assert log.attempts == 2
        assert log.request_headers_json["X-Team"] == "café"

        stored = db.get(WebhookSubscription, subscription_id)
        assert stored.consecutive_failures == 2
        assert stored.total_failed == 1
        assert stored.last_error.startswith("UnicodeEncodeError")
    finally:
        db.close()

    assert webhook_target.requests == []
