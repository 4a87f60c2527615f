import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from crm_automation.core.config import settings
from crm_automation.core.observability import log_event
from crm_automation.models.webhook import WebhookDeliveryLog, WebhookSubscription
from crm_automation.services.dispatch_context import DispatchContext, stage_of
from crm_automation.services.secret_vault import decrypt_secret

logger = logging.getLogger("crm_automation.webhooks")

SAMPLE_DEAL_ID = "000000000000000000000000"
_TRUNCATION_MARKER = "... (truncated)"
_RESERVED_HEADERS = {
    "content-type",
    "user-agent",
    "x-webhook-id",
    "x-webhook-event",
    "x-webhook-timestamp",
    "x-webhook-signature",
}


@dataclass(frozen=True)
class DeliveryOutcome:
    log_id: str
    subscription_id: str
    status: str
    attempts: int
    status_code: int | None = None
    response_time_ms: int | None = None
    error: str | None = None
    next_retry_at: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class DeliveryStats:
    total: int
    success: int
    failed: int
    pending: int
    avg_response_time_ms: float | None


def build_payload(
    *,
    subscription_id: str,
    event_tag: str,
    ctx: DispatchContext,
    now: datetime,
) -> dict[str, Any]:
    data: dict[str, Any] = {"current": ctx.current}
    if ctx.previous is not None:
        data["previous"] = ctx.previous
    if ctx.changed_fields:
        data["changes"] = list(ctx.changed_fields)
    meta: dict[str, Any] = {"source": ctx.source}
    if ctx.user_id and ctx.user_name:
        meta["triggeredBy"] = {"userId": ctx.user_id, "userName": ctx.user_name}
    return {
        "event": event_tag,
        "timestamp": now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "webhookId": subscription_id,
        "data": data,
        "meta": meta,
    }


def serialize_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def sign_payload(*, secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(*, secret: str, body: bytes, signature: str) -> bool:
    expected = sign_payload(secret=secret, body=body)
    return hmac.compare_digest(expected, (signature or "").strip().lower())


def backoff_delay(attempts: int, *, base: int | None = None) -> timedelta:
    return timedelta(minutes=(base or settings.webhook_backoff_base) ** attempts)


def is_suspended(subscription: WebhookSubscription, *, threshold: int | None = None) -> bool:
    limit = threshold or settings.webhook_circuit_breaker_threshold
    return subscription.consecutive_failures >= limit


def truncate_response(text: str | None, *, limit: int | None = None) -> str | None:
    if text is None:
        return None
    max_chars = limit or settings.webhook_response_body_limit
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + _TRUNCATION_MARKER


def matches_filters(filters: dict[str, Any] | None, ctx: DispatchContext) -> bool:
    """Structural subscription filters; every configured filter must match."""
    if not filters:
        return True
    current = ctx.current or {}

    pipeline_id = filters.get("pipeline_id")
    if pipeline_id and _ref_of(current, "pipeline") != str(pipeline_id):
        return False

    stage_id = filters.get("stage_id")
    if stage_id:
        stage = stage_of(current)
        actual = _ref(stage) if stage is not None else _ref_of(current, "stage")
        if actual != str(stage_id):
            return False

    owner_id = filters.get("owner_id")
    if owner_id and _ref_of(current, "owner") != str(owner_id):
        return False

    min_value = filters.get("min_value")
    max_value = filters.get("max_value")
    if min_value is not None or max_value is not None:
        value = _numeric(current.get("value"))
        if min_value is not None and value < float(min_value):
            return False
        if max_value is not None and value > float(max_value):
            return False
    return True


def sample_context(*, business_id: str, user_id: str | None, user_name: str | None) -> DispatchContext:
    now = datetime.now(timezone.utc).isoformat()
    return DispatchContext(
        business_id=business_id,
        entity_type="deal",
        entity_id=SAMPLE_DEAL_ID,
        entity_name="Test Deal",
        current={
            "_id": SAMPLE_DEAL_ID,
            "title": "Test Deal",
            "value": 50000,
            "currency": "USD",
            "probability": 50,
            "stage": {"_id": "000000000000000000000001", "name": "Test stage", "isWon": False, "isClosed": False},
            "createdAt": now,
            "updatedAt": now,
        },
        user_id=user_id,
        user_name=user_name,
        source="api",
    )


class WebhookDeliveryService:
    """Signs, sends and records webhook deliveries.

    One ``WebhookDeliveryLog`` row is created per delivery and mutated in place across
    retries. The body stored on the row is the exact string that gets signed and sent.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        http_client: httpx.Client,
        user_agent_product: str | None = None,
        backoff_base: int | None = None,
        retention_days: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._http = http_client
        product = user_agent_product or settings.webhook_user_agent_product
        self._user_agent = f"{product}-Webhook/1.0"
        self._backoff_base = backoff_base or settings.webhook_backoff_base
        self._retention = timedelta(days=retention_days or settings.webhook_log_retention_days)

    def deliver_by_id(self, subscription_id: str, event_tag: str, ctx: DispatchContext) -> DeliveryOutcome | None:
        """Background entry point: runs in its own session and never raises."""
        db = self._session_factory()
        try:
            subscription = db.get(WebhookSubscription, subscription_id)
            if subscription is None or not subscription.is_active:
                log_event(
                    logger,
                    "webhook_delivery_skipped",
                    subscription_id=subscription_id,
                    webhook_event=event_tag,
                    reason="inactive_or_missing",
                )
                return None
            return self.deliver(db, subscription=subscription, event_tag=event_tag, ctx=ctx)
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            log_event(
                logger,
                "webhook_delivery_crashed",
                level=logging.ERROR,
                subscription_id=subscription_id,
                webhook_event=event_tag,
                error=str(exc),
            )
            return None
        finally:
            db.close()

    def deliver(
        self,
        db: Session,
        *,
        subscription: WebhookSubscription,
        event_tag: str,
        ctx: DispatchContext,
    ) -> DeliveryOutcome:
        now = datetime.now(timezone.utc)
        payload = build_payload(subscription_id=subscription.id, event_tag=event_tag, ctx=ctx, now=now)
        log = WebhookDeliveryLog(
            id=str(uuid.uuid4()),
            business_id=subscription.business_id,
            subscription_id=subscription.id,
            subscription_name=subscription.name,
            event=event_tag,
            payload_json=payload,
            request_url=subscription.url,
            request_body=serialize_payload(payload),
            status="pending",
            attempts=1,
            entity_type=ctx.entity_type,
            entity_id=ctx.entity_id,
            entity_name=ctx.entity_name,
            triggered_by=ctx.user_id,
            expires_at=now + self._retention,
            created_at=now,
            updated_at=now,
        )
        db.add(log)
        db.commit()
        return self.send_attempt(db, log=log, subscription=subscription)

    def send_attempt(
        self,
        db: Session,
        *,
        log: WebhookDeliveryLog,
        subscription: WebhookSubscription,
    ) -> DeliveryOutcome:
        """POST the stored body once and move the log through its state machine."""
        body = log.request_body.encode("utf-8")
        timeout_seconds = subscription.timeout_ms / 1000

        headers: dict[str, str] | None = None
        status_code: int | None = None
        response_headers: dict[str, str] | None = None
        response_body: str | None = None
        error: str | None = None
        started = time.perf_counter()
        try:
            headers = self._headers(subscription=subscription, event_tag=log.event, body=body)
            response = self._http.post(log.request_url, content=body, headers=headers, timeout=timeout_seconds)
            status_code = response.status_code
            response_headers = dict(response.headers)
            response_body = truncate_response(response.text)
            if not response.is_success:
                error = f"HTTP {response.status_code}: {response.reason_phrase}".strip()
        except httpx.TimeoutException:
            error = f"Timeout after {subscription.timeout_ms}ms"
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            error = _short_error(exc) or exc.__class__.__name__
        except Exception as exc:  # noqa: BLE001
            # request could not be built or sent; counts as a failed attempt
            error = f"{exc.__class__.__name__}: {exc}"
            log_event(
                logger,
                "webhook_request_error",
                level=logging.ERROR,
                log_id=log.id,
                subscription_id=subscription.id,
                error=error,
            )
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        now = datetime.now(timezone.utc)
        log.request_headers_json = headers
        log.response_status = status_code
        log.response_headers_json = response_headers
        log.response_body = response_body
        log.response_time_ms = elapsed_ms
        log.updated_at = now

        if error is None:
            log.status = "success"
            log.error = None
            log.next_retry_at = None
            db.execute(
                update(WebhookSubscription)
                .where(WebhookSubscription.id == subscription.id)
                .values(
                    total_sent=WebhookSubscription.total_sent + 1,
                    consecutive_failures=0,
                    last_success_at=now,
                    last_triggered_at=now,
                )
            )
        else:
            terminal = log.attempts > subscription.max_retries
            log.error = _short_error(error)
            if terminal:
                log.status = "failed"
                log.next_retry_at = None
            else:
                log.status = "retrying"
                log.next_retry_at = now + backoff_delay(log.attempts, base=self._backoff_base)
            values: dict[str, Any] = {
                "consecutive_failures": WebhookSubscription.consecutive_failures + 1,
                "last_error_at": now,
                "last_error": log.error,
                "last_triggered_at": now,
            }
            if terminal:
                values["total_failed"] = WebhookSubscription.total_failed + 1
            db.execute(
                update(WebhookSubscription).where(WebhookSubscription.id == subscription.id).values(**values)
            )
        db.commit()

        log_event(
            logger,
            "webhook_delivery",
            level=logging.INFO if error is None else logging.WARNING,
            log_id=log.id,
            subscription_id=subscription.id,
            webhook_event=log.event,
            status=log.status,
            attempts=log.attempts,
            status_code=status_code,
            response_time_ms=elapsed_ms,
            error=log.error,
        )
        return DeliveryOutcome(
            log_id=log.id,
            subscription_id=subscription.id,
            status=log.status,
            attempts=log.attempts,
            status_code=status_code,
            response_time_ms=elapsed_ms,
            error=log.error,
            next_retry_at=log.next_retry_at,
        )

    def send_test(
        self,
        db: Session,
        *,
        subscription: WebhookSubscription,
        user_id: str | None,
        user_name: str | None,
    ) -> DeliveryOutcome:
        events = subscription.events_json or []
        if not events:
            raise ValueError("Webhook has no events configured")
        ctx = sample_context(business_id=subscription.business_id, user_id=user_id, user_name=user_name)
        return self.deliver(db, subscription=subscription, event_tag=str(events[0]), ctx=ctx)

    def _headers(self, *, subscription: WebhookSubscription, event_tag: str, body: bytes) -> dict[str, str]:
        secret = decrypt_secret(subscription.secret_encrypted)
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Id": subscription.id,
            "X-Webhook-Event": event_tag,
            "X-Webhook-Timestamp": str(int(time.time())),
            "X-Webhook-Signature": sign_payload(secret=secret, body=body),
            "User-Agent": self._user_agent,
        }
        for name, value in (subscription.headers_json or {}).items():
            if str(name).lower() in _RESERVED_HEADERS:
                continue
            headers[str(name)] = str(value)
        return headers


def delivery_stats(db: Session, *, subscription_id: str) -> DeliveryStats:
    rows = db.execute(
        select(WebhookDeliveryLog.status, func.count(WebhookDeliveryLog.id))
        .where(WebhookDeliveryLog.subscription_id == subscription_id)
        .group_by(WebhookDeliveryLog.status)
    ).all()
    counts = {str(status): int(count) for status, count in rows}
    avg_response = db.execute(
        select(func.avg(WebhookDeliveryLog.response_time_ms)).where(
            WebhookDeliveryLog.subscription_id == subscription_id,
            WebhookDeliveryLog.response_time_ms.is_not(None),
        )
    ).scalar_one_or_none()
    return DeliveryStats(
        total=sum(counts.values()),
        success=counts.get("success", 0),
        failed=counts.get("failed", 0),
        pending=counts.get("pending", 0) + counts.get("retrying", 0),
        avg_response_time_ms=round(float(avg_response), 2) if avg_response is not None else None,
    )


def purge_expired_logs(db: Session, *, now: datetime | None = None) -> int:
    moment = now or datetime.now(timezone.utc)
    result = db.execute(
        delete(WebhookDeliveryLog)
        .where(WebhookDeliveryLog.expires_at <= moment)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def _ref(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("_id") or value.get("id")
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def _ref_of(current: dict[str, Any], name: str) -> str | None:
    for key in (f"{name}Id", f"{name}_id", name):
        if key in current and current[key] is not None:
            return _ref(current[key])
    return None


def _numeric(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Webhook delivery failed"
    return text[:500]
