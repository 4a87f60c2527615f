import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_automation.core.api_docs import error_responses
from crm_automation.core.deps import TenantAccess, get_db, get_engine, get_tenant
from crm_automation.models.webhook import WebhookDeliveryLog, WebhookSubscription
from crm_automation.schemas.common import pagination
from crm_automation.schemas.webhook import (
    DeliveryStatus,
    WebhookDeliveryLogDetailOut,
    WebhookDeliveryLogListOut,
    WebhookDeliveryLogOut,
    WebhookFiltersOut,
    WebhookLogPurgeOut,
    WebhookRetryRunOut,
    WebhookStatsOut,
    WebhookSubscriptionCreateIn,
    WebhookSubscriptionCreateOut,
    WebhookSubscriptionListOut,
    WebhookSubscriptionOut,
    WebhookSubscriptionRotateSecretOut,
    WebhookSubscriptionUpdateIn,
    WebhookTestOut,
)
from crm_automation.services.engine import AutomationEngine
from crm_automation.services.secret_vault import (
    SecretVaultError,
    decrypt_secret,
    encrypt_secret,
    generate_webhook_secret,
    secret_hint,
)
from crm_automation.services.webhook_delivery import delivery_stats, is_suspended

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
UNREADABLE_SECRET_HINT = "unreadable, rotate the secret"


def _subscription_or_404(db: Session, *, business_id: str, subscription_id: str) -> WebhookSubscription:
    row = db.execute(
        select(WebhookSubscription).where(
            WebhookSubscription.id == subscription_id,
            WebhookSubscription.business_id == business_id,
        )
    ).scalar_one_or_none()
    if not row:
        raise HTTPException(status_code=404, detail="Webhook subscription not found")
    return row


def _log_or_404(db: Session, *, business_id: str, log_id: str) -> WebhookDeliveryLog:
    row = db.execute(
        select(WebhookDeliveryLog).where(
            WebhookDeliveryLog.id == log_id,
            WebhookDeliveryLog.business_id == business_id,
        )
    ).scalar_one_or_none()
    if not row:
        raise HTTPException(status_code=404, detail="Webhook delivery log not found")
    return row


def _name_taken(db: Session, *, business_id: str, name: str, exclude_id: str | None = None) -> bool:
    stmt = select(WebhookSubscription.id).where(
        WebhookSubscription.business_id == business_id,
        func.lower(WebhookSubscription.name) == name.strip().lower(),
    )
    if exclude_id:
        stmt = stmt.where(WebhookSubscription.id != exclude_id)
    return db.execute(stmt.limit(1)).first() is not None


def _secret_hint_for(item: WebhookSubscription) -> str:
    try:
        return secret_hint(decrypt_secret(item.secret_encrypted))
    except SecretVaultError:
        return UNREADABLE_SECRET_HINT


def _subscription_out(item: WebhookSubscription) -> WebhookSubscriptionOut:
    return WebhookSubscriptionOut(
        id=item.id,
        name=item.name,
        description=item.description,
        url=item.url,
        events=list(item.events_json or []),
        filters=WebhookFiltersOut.model_validate(item.filters_json) if isinstance(item.filters_json, dict) else None,
        headers=item.headers_json if isinstance(item.headers_json, dict) else None,
        is_active=item.is_active,
        is_suspended=is_suspended(item),
        max_retries=item.max_retries,
        timeout_ms=item.timeout_ms,
        secret_hint=_secret_hint_for(item),
        total_sent=item.total_sent,
        total_failed=item.total_failed,
        consecutive_failures=item.consecutive_failures,
        last_triggered_at=item.last_triggered_at,
        last_success_at=item.last_success_at,
        last_error_at=item.last_error_at,
        last_error=item.last_error,
        created_by_user_id=item.created_by_user_id,
        created_at=item.created_at,
        updated_at=item.updated_at,
    )


def _log_fields(item: WebhookDeliveryLog) -> dict:
    return {
        "id": item.id,
        "subscription_id": item.subscription_id,
        "subscription_name": item.subscription_name,
        "event": item.event,
        "status": item.status,
        "attempts": item.attempts,
        "request_url": item.request_url,
        "response_status": item.response_status,
        "response_time_ms": item.response_time_ms,
        "error": item.error,
        "next_retry_at": item.next_retry_at,
        "entity_type": item.entity_type,
        "entity_id": item.entity_id,
        "entity_name": item.entity_name,
        "triggered_by": item.triggered_by,
        "expires_at": item.expires_at,
        "created_at": item.created_at,
        "updated_at": item.updated_at,
    }


def _log_out(item: WebhookDeliveryLog) -> WebhookDeliveryLogOut:
    return WebhookDeliveryLogOut(**_log_fields(item))


def _log_detail_out(item: WebhookDeliveryLog) -> WebhookDeliveryLogDetailOut:
    return WebhookDeliveryLogDetailOut(
        **_log_fields(item),
        payload=item.payload_json if isinstance(item.payload_json, dict) else {},
        request_headers=item.request_headers_json if isinstance(item.request_headers_json, dict) else None,
        request_body=item.request_body,
        response_headers=item.response_headers_json if isinstance(item.response_headers_json, dict) else None,
        response_body=item.response_body,
    )


@router.post(
    "/subscriptions",
    response_model=WebhookSubscriptionCreateOut,
    status_code=201,
    summary="Create webhook subscription",
    responses=error_responses(400, 409, 422, 500, path="/webhooks/subscriptions"),
)
def create_subscription(
    payload: WebhookSubscriptionCreateIn,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    if _name_taken(db, business_id=access.business_id, name=payload.name):
        raise HTTPException(status_code=409, detail="Webhook subscription name already exists")

    signing_secret = generate_webhook_secret()
    row = WebhookSubscription(
        id=str(uuid.uuid4()),
        business_id=access.business_id,
        name=payload.name.strip(),
        description=payload.description.strip() if payload.description else None,
        url=payload.url,
        secret_encrypted=encrypt_secret(signing_secret),
        events_json=list(payload.events),
        filters_json=payload.filters.model_dump(exclude_none=True) if payload.filters else None,
        headers_json=payload.headers,
        is_active=payload.is_active,
        max_retries=payload.max_retries,
        timeout_ms=payload.timeout_ms,
        total_sent=0,
        total_failed=0,
        consecutive_failures=0,
        created_by_user_id=access.user_id,
        updated_by_user_id=access.user_id,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Webhook subscription name already exists") from None
    db.refresh(row)
    return WebhookSubscriptionCreateOut(
        **_subscription_out(row).model_dump(),
        signing_secret=signing_secret,
    )


@router.get(
    "/subscriptions",
    response_model=WebhookSubscriptionListOut,
    summary="List webhook subscriptions",
    responses=error_responses(400, 422, 500, path="/webhooks/subscriptions"),
)
def list_subscriptions(
    is_active: bool | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    count_stmt = select(func.count(WebhookSubscription.id)).where(
        WebhookSubscription.business_id == access.business_id
    )
    stmt = select(WebhookSubscription).where(WebhookSubscription.business_id == access.business_id)
    if is_active is not None:
        count_stmt = count_stmt.where(WebhookSubscription.is_active.is_(is_active))
        stmt = stmt.where(WebhookSubscription.is_active.is_(is_active))

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(WebhookSubscription.updated_at.desc(), WebhookSubscription.id.asc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [_subscription_out(row) for row in rows]
    return WebhookSubscriptionListOut(
        items=items,
        pagination=pagination(total=total, limit=limit, offset=offset, count=len(items)),
        is_active=is_active,
    )


@router.get(
    "/subscriptions/{subscription_id}",
    response_model=WebhookSubscriptionOut,
    summary="Get webhook subscription",
    responses=error_responses(400, 404, 500, path="/webhooks/subscriptions"),
)
def get_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    return _subscription_out(
        _subscription_or_404(db, business_id=access.business_id, subscription_id=subscription_id)
    )


@router.patch(
    "/subscriptions/{subscription_id}",
    response_model=WebhookSubscriptionOut,
    summary="Update webhook subscription",
    responses=error_responses(400, 404, 409, 422, 500, path="/webhooks/subscriptions"),
)
def update_subscription(
    subscription_id: str,
    payload: WebhookSubscriptionUpdateIn,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    row = _subscription_or_404(db, business_id=access.business_id, subscription_id=subscription_id)
    if payload.name is not None:
        if _name_taken(db, business_id=access.business_id, name=payload.name, exclude_id=row.id):
            raise HTTPException(status_code=409, detail="Webhook subscription name already exists")
        row.name = payload.name.strip()
    if payload.description is not None:
        row.description = payload.description.strip() or None
    if payload.url is not None:
        row.url = payload.url
    if payload.events is not None:
        row.events_json = list(payload.events)
    if "filters" in payload.model_fields_set:
        row.filters_json = payload.filters.model_dump(exclude_none=True) if payload.filters else None
    if "headers" in payload.model_fields_set:
        row.headers_json = payload.headers
    if payload.is_active is not None:
        row.is_active = payload.is_active
    if payload.max_retries is not None:
        row.max_retries = payload.max_retries
    if payload.timeout_ms is not None:
        row.timeout_ms = payload.timeout_ms
    row.updated_by_user_id = access.user_id

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Webhook subscription name already exists") from None
    db.refresh(row)
    return _subscription_out(row)


@router.delete(
    "/subscriptions/{subscription_id}",
    status_code=204,
    summary="Delete webhook subscription",
    responses=error_responses(400, 404, 500, path="/webhooks/subscriptions"),
)
def delete_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    row = _subscription_or_404(db, business_id=access.business_id, subscription_id=subscription_id)
    # delivery logs are kept until they expire
    db.delete(row)
    db.commit()
    return Response(status_code=204)


@router.post(
    "/subscriptions/{subscription_id}/rotate-secret",
    response_model=WebhookSubscriptionRotateSecretOut,
    summary="Rotate webhook signing secret",
    responses=error_responses(400, 404, 500, path="/webhooks/subscriptions"),
)
def rotate_secret(
    subscription_id: str,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    row = _subscription_or_404(db, business_id=access.business_id, subscription_id=subscription_id)
    signing_secret = generate_webhook_secret()
    row.secret_encrypted = encrypt_secret(signing_secret)
    row.updated_by_user_id = access.user_id
    rotated_at = datetime.now(timezone.utc)
    db.commit()
    return WebhookSubscriptionRotateSecretOut(
        subscription_id=row.id,
        signing_secret=signing_secret,
        rotated_at=rotated_at,
    )


@router.post(
    "/subscriptions/{subscription_id}/reset-health",
    response_model=WebhookSubscriptionOut,
    summary="Clear the failure streak and lift a circuit-breaker suspension",
    responses=error_responses(400, 404, 500, path="/webhooks/subscriptions"),
)
def reset_health(
    subscription_id: str,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    row = _subscription_or_404(db, business_id=access.business_id, subscription_id=subscription_id)
    row.consecutive_failures = 0
    row.last_error = None
    row.updated_by_user_id = access.user_id
    db.commit()
    db.refresh(row)
    return _subscription_out(row)


@router.post(
    "/subscriptions/{subscription_id}/test",
    response_model=WebhookTestOut,
    summary="Send a sample deal event to the subscription",
    responses=error_responses(400, 404, 500, path="/webhooks/subscriptions"),
)
def test_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
    engine: AutomationEngine = Depends(get_engine),
):
    row = _subscription_or_404(db, business_id=access.business_id, subscription_id=subscription_id)
    try:
        outcome = engine.delivery.send_test(
            db,
            subscription=row,
            user_id=access.user_id,
            user_name=access.user_name,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    log = _log_or_404(db, business_id=access.business_id, log_id=outcome.log_id)
    return WebhookTestOut(
        success=outcome.success,
        status_code=outcome.status_code,
        response_time_ms=outcome.response_time_ms,
        error=outcome.error,
        log=_log_detail_out(log),
    )


@router.get(
    "/subscriptions/{subscription_id}/stats",
    response_model=WebhookStatsOut,
    summary="Delivery statistics for a subscription",
    responses=error_responses(400, 404, 500, path="/webhooks/subscriptions"),
)
def get_stats(
    subscription_id: str,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    row = _subscription_or_404(db, business_id=access.business_id, subscription_id=subscription_id)
    stats = delivery_stats(db, subscription_id=row.id)
    return WebhookStatsOut(
        subscription_id=row.id,
        total=stats.total,
        success=stats.success,
        failed=stats.failed,
        pending=stats.pending,
        avg_response_time_ms=stats.avg_response_time_ms,
    )


@router.get(
    "/logs",
    response_model=WebhookDeliveryLogListOut,
    summary="List webhook delivery logs",
    responses=error_responses(400, 422, 500, path="/webhooks/logs"),
)
def list_logs(
    subscription_id: str | None = Query(default=None),
    status: DeliveryStatus | None = Query(default=None),
    event: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    count_stmt = select(func.count(WebhookDeliveryLog.id)).where(WebhookDeliveryLog.business_id == access.business_id)
    stmt = select(WebhookDeliveryLog).where(WebhookDeliveryLog.business_id == access.business_id)
    normalized_subscription_id = subscription_id.strip() if subscription_id else None
    normalized_event = event.strip() if event else None
    if normalized_subscription_id:
        count_stmt = count_stmt.where(WebhookDeliveryLog.subscription_id == normalized_subscription_id)
        stmt = stmt.where(WebhookDeliveryLog.subscription_id == normalized_subscription_id)
    if status:
        count_stmt = count_stmt.where(WebhookDeliveryLog.status == status)
        stmt = stmt.where(WebhookDeliveryLog.status == status)
    if normalized_event:
        count_stmt = count_stmt.where(WebhookDeliveryLog.event == normalized_event)
        stmt = stmt.where(WebhookDeliveryLog.event == normalized_event)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(WebhookDeliveryLog.created_at.desc(), WebhookDeliveryLog.id.asc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [_log_out(row) for row in rows]
    return WebhookDeliveryLogListOut(
        items=items,
        pagination=pagination(total=total, limit=limit, offset=offset, count=len(items)),
        subscription_id=normalized_subscription_id,
        status=status,
        event=normalized_event,
    )


@router.get(
    "/logs/{log_id}",
    response_model=WebhookDeliveryLogDetailOut,
    summary="Get webhook delivery log with request and response",
    responses=error_responses(400, 404, 500, path="/webhooks/logs"),
)
def get_log(
    log_id: str,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    return _log_detail_out(_log_or_404(db, business_id=access.business_id, log_id=log_id))


@router.post(
    "/retry/run",
    response_model=WebhookRetryRunOut,
    summary="Resend deliveries whose retry is due",
    responses=error_responses(400, 500, path="/webhooks/retry/run"),
)
def run_retries(
    _: TenantAccess = Depends(get_tenant),
    engine: AutomationEngine = Depends(get_engine),
):
    summary = engine.retry_due()
    return WebhookRetryRunOut(
        recovered=summary.recovered,
        due=summary.due,
        retried=summary.retried,
        succeeded=summary.succeeded,
        failed=summary.failed,
        skipped=summary.skipped,
    )


@router.post(
    "/logs/purge",
    response_model=WebhookLogPurgeOut,
    summary="Remove delivery logs past their expiry",
    responses=error_responses(400, 500, path="/webhooks/logs/purge"),
)
def purge_logs(
    _: TenantAccess = Depends(get_tenant),
    engine: AutomationEngine = Depends(get_engine),
):
    return WebhookLogPurgeOut(deleted=engine.purge_expired_logs())
