import json
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from pytest_httpx import HTTPXMock

from crm_automation.core.config import settings
from crm_automation.models.webhook import WebhookDeliveryLog, WebhookSubscription
from crm_automation.services.dispatch_context import DispatchContext
from crm_automation.services.secret_vault import SecretVaultError, decrypt_secret, encrypt_secret, secret_hint
from crm_automation.services.webhook_delivery import (
    WebhookDeliveryService,
    backoff_delay,
    build_payload,
    delivery_stats,
    is_suspended,
    matches_filters,
    purge_expired_logs,
    serialize_payload,
    sign_payload,
    truncate_response,
    verify_signature,
)

HOOK_URL = "https://hooks.example.com/crm"


def _subscription(db, *, secret: str = "whsec_test_secret", **overrides) -> WebhookSubscription:
    values = {
        "id": str(uuid.uuid4()),
        "business_id": "biz-1",
        "name": f"Hook {uuid.uuid4().hex[:6]}",
        "url": HOOK_URL,
        "secret_encrypted": encrypt_secret(secret),
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


def _deal_ctx(**overrides) -> DispatchContext:
    values = {
        "business_id": "biz-1",
        "entity_type": "deal",
        "entity_id": "deal-1",
        "entity_name": "Acme renewal",
        "current": {"title": "Acme renewal", "value": 25000},
        "user_id": "user-1",
        "user_name": "Ada",
    }
    values.update(overrides)
    return DispatchContext(**values)


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo else value


@pytest.fixture()
def delivery(session_local):
    client = httpx.Client()
    yield WebhookDeliveryService(session_factory=session_local, http_client=client)
    client.close()


def test_payload_shape_and_canonical_serialization():
    now = datetime(2026, 5, 4, 10, 30, 15, 123456, tzinfo=timezone.utc)
    ctx = _deal_ctx(previous={"value": 1000}, changed_fields=["value"], source="api")
    payload = build_payload(subscription_id="sub-1", event_tag="deal.updated", ctx=ctx, now=now)

    assert payload == {
        "event": "deal.updated",
        "timestamp": "2026-05-04T10:30:15.123Z",
        "webhookId": "sub-1",
        "data": {
            "current": {"title": "Acme renewal", "value": 25000},
            "previous": {"value": 1000},
            "changes": ["value"],
        },
        "meta": {"source": "api", "triggeredBy": {"userId": "user-1", "userName": "Ada"}},
    }
    body = serialize_payload(payload)
    assert " " not in body.replace("Acme renewal", "")
    assert json.loads(body) == payload

    minimal = build_payload(subscription_id="sub-1", event_tag="deal.won", ctx=_deal_ctx(user_id=None), now=now)
    assert set(minimal["data"]) == {"current"}
    assert minimal["meta"] == {"source": "web"}

    anonymous = build_payload(subscription_id="sub-1", event_tag="deal.won", ctx=_deal_ctx(user_name=None), now=now)
    assert "triggeredBy" not in anonymous["meta"]


def test_signature_helpers():
    body = b'{"event":"deal.won"}'
    signature = sign_payload(secret="whsec_abc", body=body)

    assert len(signature) == 64
    assert verify_signature(secret="whsec_abc", body=body, signature=signature)
    assert verify_signature(secret="whsec_abc", body=body, signature=signature.upper())
    assert not verify_signature(secret="whsec_other", body=body, signature=signature)
    assert not verify_signature(secret="whsec_abc", body=body + b" ", signature=signature)


def test_secret_vault_round_trip_and_hint(monkeypatch):
    monkeypatch.setattr(settings, "secret_key", "vault-key-one")
    cipher = encrypt_secret("whsec_abcdefghijklmnop")
    assert cipher != "whsec_abcdefghijklmnop"
    assert "abcdefghijklmnop" not in cipher
    assert encrypt_secret("whsec_abcdefghijklmnop") != cipher
    assert decrypt_secret(cipher) == "whsec_abcdefghijklmnop"
    assert secret_hint("whsec_abcdefghijklmnop") == "whsec_...mnop"
    assert secret_hint("short") == "*****"

    monkeypatch.setattr(settings, "secret_key", "vault-key-two")
    with pytest.raises(SecretVaultError):
        decrypt_secret(cipher)
    with pytest.raises(SecretVaultError):
        decrypt_secret("not-a-token")


def test_backoff_breaker_and_truncation_helpers():
    assert [backoff_delay(n, base=3) for n in (1, 2, 3)] == [
        timedelta(minutes=3),
        timedelta(minutes=9),
        timedelta(minutes=27),
    ]
    assert is_suspended(WebhookSubscription(consecutive_failures=9), threshold=10) is False
    assert is_suspended(WebhookSubscription(consecutive_failures=10), threshold=10) is True

    assert truncate_response(None) is None
    assert truncate_response("short", limit=10) == "short"
    assert truncate_response("abcdefghijkl", limit=10) == "abcdefghij... (truncated)"


def test_subscription_filters():
    ctx = _deal_ctx(
        current={
            "value": 5000,
            "pipelineId": "pipe-1",
            "stage": {"_id": "stage-2", "name": "Proposal"},
            "ownerId": {"_id": "user-7"},
        }
    )
    assert matches_filters(None, ctx)
    assert matches_filters({}, ctx)
    assert matches_filters({"pipeline_id": "pipe-1", "stage_id": "stage-2", "owner_id": "user-7"}, ctx)
    assert matches_filters({"min_value": 1000, "max_value": 5000}, ctx)
    assert not matches_filters({"pipeline_id": "pipe-9"}, ctx)
    assert not matches_filters({"stage_id": "stage-1"}, ctx)
    assert not matches_filters({"owner_id": "user-8"}, ctx)
    assert not matches_filters({"min_value": 5001}, ctx)
    assert not matches_filters({"max_value": 4999}, ctx)
    assert matches_filters({"max_value": 10}, _deal_ctx(current={}))


def test_successful_delivery_is_signed_and_logged(session_local, delivery, httpx_mock: HTTPXMock):
    httpx_mock.add_response(url=HOOK_URL, status_code=200, text='{"received":true}')
    db = session_local()
    try:
        subscription = _subscription(
            db,
            headers_json={"X-Tenant": "acme", "X-Webhook-Event": "spoofed", "user-agent": "spoofed"},
        )
        outcome = delivery.deliver(db, subscription=subscription, event_tag="deal.won", ctx=_deal_ctx())

        assert outcome.success
        assert outcome.attempts == 1
        assert outcome.status_code == 200

        request = httpx_mock.get_requests()[0]
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["X-Webhook-Id"] == subscription.id
        assert request.headers["X-Webhook-Event"] == "deal.won"
        assert request.headers["X-Webhook-Timestamp"].isdigit()
        assert request.headers["User-Agent"] == f"{settings.webhook_user_agent_product}-Webhook/1.0"
        assert request.headers["X-Tenant"] == "acme"
        assert verify_signature(
            secret="whsec_test_secret",
            body=request.content,
            signature=request.headers["X-Webhook-Signature"],
        )

        db.expire_all()
        log = db.get(WebhookDeliveryLog, outcome.log_id)
        assert log.status == "success"
        assert log.request_body == request.content.decode("utf-8")
        assert log.response_status == 200
        assert log.response_body == '{"received":true}'
        assert log.next_retry_at is None
        assert _naive(log.expires_at) - _naive(log.created_at) == timedelta(days=30)
        assert log.triggered_by == "user-1"

        stored = db.get(WebhookSubscription, subscription.id)
        assert stored.total_sent == 1
        assert stored.consecutive_failures == 0
        assert stored.last_success_at is not None
    finally:
        db.close()


def test_failed_delivery_schedules_retry_with_backoff(session_local, delivery, httpx_mock: HTTPXMock):
    httpx_mock.add_response(url=HOOK_URL, status_code=503, text="down for maintenance")
    db = session_local()
    try:
        subscription = _subscription(db)
        before = datetime.now(timezone.utc)
        outcome = delivery.deliver(db, subscription=subscription, event_tag="deal.won", ctx=_deal_ctx())
        after = datetime.now(timezone.utc)

        assert outcome.status == "retrying"
        assert outcome.error == "HTTP 503: Service Unavailable"
        retry_at = _naive(outcome.next_retry_at)
        assert _naive(before + timedelta(minutes=3)) <= retry_at <= _naive(after + timedelta(minutes=3))

        db.expire_all()
        log = db.get(WebhookDeliveryLog, outcome.log_id)
        assert log.response_status == 503
        assert log.response_body == "down for maintenance"

        stored = db.get(WebhookSubscription, subscription.id)
        assert stored.consecutive_failures == 1
        assert stored.total_failed == 0
        assert stored.last_error == "HTTP 503: Service Unavailable"
    finally:
        db.close()


def test_zero_max_retries_fails_immediately(session_local, delivery, httpx_mock: HTTPXMock):
    httpx_mock.add_exception(httpx.ConnectError("connection refused"))
    db = session_local()
    try:
        subscription = _subscription(db, max_retries=0)
        outcome = delivery.deliver(db, subscription=subscription, event_tag="deal.won", ctx=_deal_ctx())

        assert outcome.status == "failed"
        assert outcome.status_code is None
        assert outcome.next_retry_at is None
        assert "connection refused" in outcome.error

        db.expire_all()
        stored = db.get(WebhookSubscription, subscription.id)
        assert stored.total_failed == 1
        assert stored.consecutive_failures == 1
    finally:
        db.close()


def test_undecryptable_secret_counts_as_failed_attempt(session_local, delivery, httpx_mock: HTTPXMock):
    db = session_local()
    try:
        subscription = _subscription(db, max_retries=0)
        subscription.secret_encrypted = "sealed-with-an-old-key"
        db.commit()

        outcome = delivery.deliver(db, subscription=subscription, event_tag="deal.won", ctx=_deal_ctx())

        assert outcome.status == "failed"
        assert outcome.status_code is None
        assert outcome.error.startswith("SecretVaultError")
        assert httpx_mock.get_requests() == []

        db.expire_all()
        stored = db.get(WebhookSubscription, subscription.id)
        assert stored.total_failed == 1
        assert stored.consecutive_failures == 1
        assert stored.last_error == outcome.error
    finally:
        db.close()


def test_timeout_reports_configured_limit(session_local, delivery, httpx_mock: HTTPXMock):
    httpx_mock.add_exception(httpx.ReadTimeout("too slow"))
    db = session_local()
    try:
        subscription = _subscription(db, timeout_ms=2500)
        outcome = delivery.deliver(db, subscription=subscription, event_tag="deal.won", ctx=_deal_ctx())

        assert outcome.status == "retrying"
        assert outcome.error == "Timeout after 2500ms"
    finally:
        db.close()


def test_large_response_bodies_are_truncated(session_local, delivery, httpx_mock: HTTPXMock):
    limit = settings.webhook_response_body_limit
    httpx_mock.add_response(url=HOOK_URL, status_code=200, text="x" * (limit + 50))
    db = session_local()
    try:
        subscription = _subscription(db)
        outcome = delivery.deliver(db, subscription=subscription, event_tag="deal.won", ctx=_deal_ctx())

        db.expire_all()
        log = db.get(WebhookDeliveryLog, outcome.log_id)
        assert log.response_body == "x" * limit + "... (truncated)"
    finally:
        db.close()


def test_send_test_requires_events_and_uses_sample_deal(session_local, delivery, httpx_mock: HTTPXMock):
    httpx_mock.add_response(url=HOOK_URL, status_code=204)
    db = session_local()
    try:
        empty = _subscription(db, events_json=[])
        with pytest.raises(ValueError, match="no events"):
            delivery.send_test(db, subscription=empty, user_id="user-1", user_name="Ada")

        subscription = _subscription(db, events_json=["deal.stage_changed", "deal.won"])
        outcome = delivery.send_test(db, subscription=subscription, user_id="user-1", user_name="Ada")
        assert outcome.success

        body = json.loads(httpx_mock.get_requests()[0].content)
        assert body["event"] == "deal.stage_changed"
        assert body["data"]["current"]["title"] == "Test Deal"
        assert body["meta"]["source"] == "api"
    finally:
        db.close()


def test_deliver_by_id_skips_inactive_subscriptions(session_local, delivery):
    db = session_local()
    try:
        subscription_id = _subscription(db, is_active=False).id
    finally:
        db.close()

    assert delivery.deliver_by_id(subscription_id, "deal.won", _deal_ctx()) is None
    assert delivery.deliver_by_id("missing", "deal.won", _deal_ctx()) is None


def test_stats_and_expired_log_purge(session_local, delivery, httpx_mock: HTTPXMock):
    httpx_mock.add_response(url=HOOK_URL, status_code=200)
    httpx_mock.add_response(url=HOOK_URL, status_code=500)
    db = session_local()
    try:
        subscription = _subscription(db)
        delivery.deliver(db, subscription=subscription, event_tag="deal.won", ctx=_deal_ctx())
        delivery.deliver(db, subscription=subscription, event_tag="deal.won", ctx=_deal_ctx())

        stats = delivery_stats(db, subscription_id=subscription.id)
        assert (stats.total, stats.success, stats.failed, stats.pending) == (2, 1, 0, 1)
        assert stats.avg_response_time_ms is not None

        assert purge_expired_logs(db, now=datetime.now(timezone.utc)) == 0
        assert purge_expired_logs(db, now=datetime.now(timezone.utc) + timedelta(days=31)) == 2
        db.commit()
        assert delivery_stats(db, subscription_id=subscription.id).total == 0
    finally:
        db.close()
