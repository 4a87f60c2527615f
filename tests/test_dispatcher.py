import json
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from crm_automation.models.webhook import WebhookDeliveryLog, WebhookSubscription
from crm_automation.models.workflow import (
    AutomationNotification,
    AutomationTask,
    CrmWorkflow,
    EntityMutationRequest,
    WorkflowExecution,
)
from crm_automation.services.dispatch_context import DispatchContext
from crm_automation.services.dispatcher import derived_events
from crm_automation.services.secret_vault import encrypt_secret
from crm_automation.services.workflow_service import install_template_rule

WON_STAGE = {"_id": "stage-won", "name": "Won", "isWon": True, "isClosed": True}
LOST_STAGE = {"_id": "stage-lost", "name": "Lost", "isWon": False, "isClosed": True}
OPEN_STAGE = {"_id": "stage-neg", "name": "Negotiation", "isWon": False, "isClosed": False}


def _subscription(db, *, events: list[str], business_id: str = "biz-1", **overrides) -> WebhookSubscription:
    values = {
        "id": str(uuid.uuid4()),
        "business_id": business_id,
        "name": f"Hook {uuid.uuid4().hex[:6]}",
        "url": "https://hooks.example.com/crm",
        "secret_encrypted": encrypt_secret("whsec_dispatch"),
        "events_json": events,
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


def _rule(db, *, trigger_type: str, name: str, conditions=None, is_active: bool = True, business_id="biz-1"):
    rule = CrmWorkflow(
        id=str(uuid.uuid4()),
        business_id=business_id,
        name=name,
        is_active=is_active,
        trigger_type=trigger_type,
        conditions_json=conditions or [],
        actions_json=[
            {
                "id": "a_notify",
                "type": "send_notification",
                "config": {"recipient_type": "specific_user", "recipient_id": "user-9", "message": name},
            }
        ],
        version=1,
        execution_count=0,
        created_by_user_id="user-1",
    )
    db.add(rule)
    db.commit()
    return rule


def _deal_ctx(*, current: dict, previous: dict | None = None, changed_fields=None, business_id="biz-1"):
    return DispatchContext(
        business_id=business_id,
        entity_type="deal",
        entity_id="deal-1",
        entity_name="Acme renewal",
        current=current,
        previous=previous,
        changed_fields=changed_fields,
        user_id="user-1",
        user_name="Ada",
    )


def test_derived_events():
    won = _deal_ctx(current={"stage": WON_STAGE})
    lost = _deal_ctx(current={"stage": {"_id": "s", "is_closed": True}})
    still_open = _deal_ctx(current={"stage": OPEN_STAGE})
    value_change = _deal_ctx(current={"value": 10}, changed_fields=["value", "title"])

    assert derived_events("deal.stage_changed", won) == ["deal.won"]
    assert derived_events("deal.stage_changed", lost) == ["deal.lost"]
    assert derived_events("deal.stage_changed", still_open) == []
    assert derived_events("deal.updated", value_change) == ["deal.value_changed"]
    assert derived_events("deal.updated", _deal_ctx(current={}, changed_fields=["title"])) == []
    assert derived_events("deal.won", won) == []


def test_stage_change_into_won_runs_rules_and_queues_webhooks(session_local, automation, webhook_target):
    webhook_target.unreachable = True
    db = session_local()
    try:
        won_rule, _ = install_template_rule(
            db, business_id="biz-1", actor_user_id="user-1", template_key="deal_won_notification"
        )
        stage_rule, _ = install_template_rule(
            db, business_id="biz-1", actor_user_id="user-1", template_key="deal_stage_changed"
        )
        db.commit()
        won_rule_id, stage_rule_id = won_rule.id, stage_rule.id
        subscription_id = _subscription(db, events=["deal.stage_changed", "deal.won"]).id
    finally:
        db.close()

    ctx = _deal_ctx(
        current={
            "title": "Acme renewal",
            "value": 25000,
            "ownerId": {"_id": "user-7", "email": "owner@example.com"},
            "stage": WON_STAGE,
        },
        previous={"stage": OPEN_STAGE},
        changed_fields=["stageId"],
    )
    summary = automation.dispatch("deal.stage_changed", ctx)
    assert automation.join(timeout=5)

    assert summary.rules_matched == 1
    assert summary.webhooks_enqueued == 1
    assert [item.event for item in summary.derived] == ["deal.won"]
    assert summary.derived[0].rules_matched == 1
    assert summary.derived[0].webhooks_enqueued == 1
    assert summary.derived[0].derived == []

    db = session_local()
    try:
        executions = db.execute(select(WorkflowExecution)).scalars().all()
        by_workflow = {item.workflow_id: item for item in executions}
        assert set(by_workflow) == {won_rule_id, stage_rule_id}
        assert by_workflow[won_rule_id].status == "completed"
        assert by_workflow[won_rule_id].trigger_type == "deal_won"
        assert len(by_workflow[won_rule_id].action_logs_json) == 3

        activity = db.execute(select(EntityMutationRequest)).scalar_one()
        assert activity.operation == "create_activity"
        assert activity.payload_json["description"] == "Deal moved from Negotiation to Won"

        notification = db.execute(select(AutomationNotification)).scalar_one()
        assert notification.recipient_user_id == "user-7"
        assert notification.message == "Deal won: Acme renewal for 25000"
        assert db.execute(select(AutomationTask)).scalar_one().assignee_user_id == "user-7"

        won_rule = db.get(CrmWorkflow, won_rule_id)
        assert won_rule.execution_count == 1
        assert won_rule.last_executed_at is not None

        logs = db.execute(select(WebhookDeliveryLog).order_by(WebhookDeliveryLog.event.asc())).scalars().all()
        assert [item.event for item in logs] == ["deal.stage_changed", "deal.won"]
        assert all(item.status == "retrying" for item in logs)
        assert all(item.attempts == 1 for item in logs)

        subscription = db.get(WebhookSubscription, subscription_id)
        assert subscription.consecutive_failures == 2
        assert subscription.last_error
    finally:
        db.close()

    bodies = [json.loads(request.content) for request in webhook_target.requests]
    assert sorted(body["event"] for body in bodies) == ["deal.stage_changed", "deal.won"]
    assert all(body["data"]["current"]["stage"]["name"] == "Won" for body in bodies)


def test_stage_change_into_closed_stage_raises_lost(session_local, automation):
    db = session_local()
    try:
        _rule(db, trigger_type="deal_lost", name="Lost follow-up")
    finally:
        db.close()

    summary = automation.dispatch("deal.stage_changed", _deal_ctx(current={"stage": LOST_STAGE}))
    assert [item.event for item in summary.derived] == ["deal.lost"]
    assert summary.derived[0].rules_matched == 1


def test_value_change_is_rule_only(session_local, automation, webhook_target):
    db = session_local()
    try:
        _rule(
            db,
            trigger_type="deal_value_changed",
            name="Big jump",
            conditions=[{"field": "deal.value", "operator": "greater_than", "value": 1000}],
        )
        _subscription(db, events=["deal.updated"])
    finally:
        db.close()

    summary = automation.dispatch(
        "deal.updated",
        _deal_ctx(current={"value": 5000}, previous={"value": 500}, changed_fields=["value"]),
    )
    assert summary.rules_matched == 0
    assert summary.webhooks_enqueued == 1
    assert summary.derived[0].event == "deal.value_changed"
    assert summary.derived[0].rules_matched == 1
    assert summary.derived[0].webhooks_enqueued == 0
    assert len(webhook_target.requests) == 1


def test_only_active_matching_rules_of_the_tenant_run(session_local, automation):
    db = session_local()
    try:
        _rule(db, trigger_type="deal_won", name="Runs")
        _rule(db, trigger_type="deal_won", name="Inactive", is_active=False)
        _rule(db, trigger_type="deal_lost", name="Other trigger")
        _rule(db, trigger_type="deal_won", name="Other tenant", business_id="biz-2")
        _rule(
            db,
            trigger_type="deal_won",
            name="Condition fails",
            conditions=[{"field": "deal.value", "operator": "greater_than", "value": 100000}],
        )
    finally:
        db.close()

    summary = automation.dispatch("deal.won", _deal_ctx(current={"value": 500}))
    assert summary.rules_matched == 1

    db = session_local()
    try:
        execution = db.execute(select(WorkflowExecution)).scalar_one()
        assert execution.workflow_name == "Runs"
        assert execution.business_id == "biz-1"
    finally:
        db.close()


def test_failing_rule_does_not_block_other_rules(session_local, automation, monkeypatch):
    db = session_local()
    try:
        _rule(db, trigger_type="deal_won", name="Explodes")
        _rule(db, trigger_type="deal_won", name="Survives")
    finally:
        db.close()

    original_execute = automation.executor.execute

    def flaky_execute(db, *, workflow, context):
        if workflow.name == "Explodes":
            raise RuntimeError("boom")
        return original_execute(db, workflow=workflow, context=context)

    monkeypatch.setattr(automation.executor, "execute", flaky_execute)

    summary = automation.dispatch("deal.won", _deal_ctx(current={"value": 1}))
    assert summary.rules_matched == 1

    db = session_local()
    try:
        execution = db.execute(select(WorkflowExecution)).scalar_one()
        assert execution.workflow_name == "Survives"
        rules = {item.name: item for item in db.execute(select(CrmWorkflow)).scalars()}
        assert rules["Explodes"].execution_count == 0
        assert rules["Survives"].execution_count == 1
    finally:
        db.close()


def test_webhook_selection_honours_breaker_events_filters_and_tenant(session_local, automation, webhook_target):
    db = session_local()
    try:
        healthy = _subscription(db, events=["deal.won"], consecutive_failures=9).id
        _subscription(db, events=["deal.won"], consecutive_failures=10)
        _subscription(db, events=["deal.won"], is_active=False)
        _subscription(db, events=["deal.lost"])
        _subscription(db, events=["deal.won"], business_id="biz-2")
        _subscription(db, events=["deal.won"], filters_json={"min_value": 100000})
        filtered_in = _subscription(db, events=["deal.won"], filters_json={"pipeline_id": "pipe-1"}).id
    finally:
        db.close()

    summary = automation.dispatch("deal.won", _deal_ctx(current={"value": 500, "pipelineId": "pipe-1"}))
    assert summary.webhooks_enqueued == 2

    sent_to = {request.headers["X-Webhook-Id"] for request in webhook_target.requests}
    assert sent_to == {healthy, filtered_in}


def test_dispatch_errors_never_reach_the_caller(session_local, automation, monkeypatch):
    def broken_dispatch(event_tag, ctx, cascade=True):
        raise RuntimeError("database is gone")

    monkeypatch.setattr(automation.dispatcher, "dispatch", broken_dispatch)
    assert automation.dispatch("deal.won", _deal_ctx(current={})) is None


def test_stage_change_subscriptions_deliver_independently(session_local, automation, webhook_target):
    webhook_target.unreachable_hosts.add("down.example.com")
    db = session_local()
    try:
        won_rule_id = _rule(db, trigger_type="deal_won", name="Won alert").id
        down_id = _subscription(
            db, events=["deal.stage_changed", "deal.won"], url="https://down.example.com/hook"
        ).id
        up_id = _subscription(db, events=["deal.stage_changed", "deal.won"], url="https://up.example.com/hook").id
    finally:
        db.close()

    ctx = _deal_ctx(current={"title": "Acme renewal", "stage": WON_STAGE}, previous={"stage": OPEN_STAGE})
    summary = automation.dispatch("deal.stage_changed", ctx)
    assert automation.join(timeout=5)
    assert summary.webhooks_enqueued == 2
    assert summary.derived[0].webhooks_enqueued == 2

    db = session_local()
    try:
        logs = db.execute(select(WebhookDeliveryLog)).scalars().all()
        by_target = {(item.subscription_id, item.event): item.status for item in logs}
        assert by_target == {
            (down_id, "deal.stage_changed"): "retrying",
            (down_id, "deal.won"): "retrying",
            (up_id, "deal.stage_changed"): "success",
            (up_id, "deal.won"): "success",
        }

        down = db.get(WebhookSubscription, down_id)
        up = db.get(WebhookSubscription, up_id)
        assert (down.consecutive_failures, down.total_sent) == (2, 0)
        assert (up.consecutive_failures, up.total_sent) == (0, 2)

        execution = db.execute(select(WorkflowExecution)).scalar_one()
        assert execution.workflow_id == won_rule_id
        assert execution.status == "completed"
    finally:
        db.close()

    hosts = sorted(request.url.host for request in webhook_target.requests)
    assert hosts == ["down.example.com", "down.example.com", "up.example.com", "up.example.com"]


def test_breaker_trips_after_real_failures_and_success_resets_it(session_local, automation, webhook_target):
    webhook_target.status_code = 500
    db = session_local()
    try:
        subscription_id = _subscription(db, events=["deal.won"], max_retries=1).id
    finally:
        db.close()

    def _log_count() -> int:
        db = session_local()
        try:
            return len(db.execute(select(WebhookDeliveryLog.id)).all())
        finally:
            db.close()

    won = _deal_ctx(current={"title": "Acme renewal", "stage": WON_STAGE})
    for _ in range(5):
        assert automation.dispatch("deal.won", won).webhooks_enqueued == 1

    sweep = automation.retry_due(now=datetime.now(timezone.utc) + timedelta(minutes=3, seconds=5))
    assert (sweep.due, sweep.retried, sweep.failed) == (5, 5, 5)

    db = session_local()
    try:
        subscription = db.get(WebhookSubscription, subscription_id)
        assert subscription.consecutive_failures == 10
        assert subscription.total_failed == 5
        statuses = db.execute(select(WebhookDeliveryLog.status)).scalars().all()
        assert statuses == ["failed"] * 5
    finally:
        db.close()

    sent_before = len(webhook_target.requests)
    assert automation.dispatch("deal.won", won).webhooks_enqueued == 0
    assert _log_count() == 5
    assert len(webhook_target.requests) == sent_before

    webhook_target.status_code = 200
    db = session_local()
    try:
        subscription = db.get(WebhookSubscription, subscription_id)
        outcome = automation.delivery.send_test(db, subscription=subscription, user_id="user-1", user_name="Ada")
        assert outcome.success
        db.expire_all()
        assert db.get(WebhookSubscription, subscription_id).consecutive_failures == 0
    finally:
        db.close()

    assert automation.dispatch("deal.won", won).webhooks_enqueued == 1
    assert _log_count() == 7
