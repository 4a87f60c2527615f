"""create automation engine tables

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 10:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261017_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_workflows",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("trigger_type", sa.String(length=40), nullable=False),
        sa.Column("conditions_json", sa.JSON(), nullable=True),
        sa.Column("actions_json", sa.JSON(), nullable=True),
        sa.Column("template_key", sa.String(length=60), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("execution_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by_user_id", sa.String(length=36), nullable=False),
        sa.Column("updated_by_user_id", sa.String(length=36), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("business_id", "name", name="uq_crm_workflows_business_name"),
    )
    op.create_index("ix_crm_workflows_business_id", "crm_workflows", ["business_id"], unique=False)
    op.create_index("ix_crm_workflows_trigger_type", "crm_workflows", ["trigger_type"], unique=False)
    op.create_index("ix_crm_workflows_template_key", "crm_workflows", ["template_key"], unique=False)
    op.create_index("ix_crm_workflows_created_by_user_id", "crm_workflows", ["created_by_user_id"], unique=False)
    op.create_index(
        "ix_crm_workflows_business_trigger_active",
        "crm_workflows",
        ["business_id", "trigger_type", "is_active"],
        unique=False,
    )

    op.create_table(
        "workflow_executions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("workflow_id", sa.String(length=36), nullable=False),
        sa.Column("workflow_name", sa.String(length=120), nullable=False),
        sa.Column("trigger_type", sa.String(length=40), nullable=False),
        sa.Column("entity_type", sa.String(length=20), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("entity_name", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
        sa.Column("action_logs_json", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_executions_business_id", "workflow_executions", ["business_id"], unique=False)
    op.create_index("ix_workflow_executions_workflow_id", "workflow_executions", ["workflow_id"], unique=False)
    op.create_index(
        "ix_workflow_executions_workflow_created_at",
        "workflow_executions",
        ["workflow_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_workflow_executions_business_status_created_at",
        "workflow_executions",
        ["business_id", "status", "created_at"],
        unique=False,
    )

    op.create_table(
        "workflow_scheduled_actions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("workflow_id", sa.String(length=36), nullable=False),
        sa.Column("execution_id", sa.String(length=36), nullable=False),
        sa.Column("action_ids_json", sa.JSON(), nullable=False),
        sa.Column("delay_served", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("context_json", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_workflow_scheduled_actions_business_id", "workflow_scheduled_actions", ["business_id"], unique=False
    )
    op.create_index(
        "ix_workflow_scheduled_actions_workflow_id", "workflow_scheduled_actions", ["workflow_id"], unique=False
    )
    op.create_index(
        "ix_workflow_scheduled_actions_execution_id", "workflow_scheduled_actions", ["execution_id"], unique=False
    )
    op.create_index(
        "ix_workflow_scheduled_actions_status_run_at",
        "workflow_scheduled_actions",
        ["status", "run_at"],
        unique=False,
    )

    op.create_table(
        "automation_tasks",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("execution_id", sa.String(length=36), nullable=True),
        sa.Column("entity_type", sa.String(length=20), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=160), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
        sa.Column("assignee_user_id", sa.String(length=36), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_tasks_business_id", "automation_tasks", ["business_id"], unique=False)
    op.create_index("ix_automation_tasks_execution_id", "automation_tasks", ["execution_id"], unique=False)
    op.create_index("ix_automation_tasks_assignee_user_id", "automation_tasks", ["assignee_user_id"], unique=False)
    op.create_index(
        "ix_automation_tasks_business_status_created_at",
        "automation_tasks",
        ["business_id", "status", "created_at"],
        unique=False,
    )

    op.create_table(
        "automation_notifications",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("execution_id", sa.String(length=36), nullable=True),
        sa.Column("recipient_user_id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(length=160), nullable=False),
        sa.Column("message", sa.String(length=1000), nullable=False),
        sa.Column("priority", sa.String(length=20), nullable=False, server_default="normal"),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_notifications_business_id", "automation_notifications", ["business_id"], unique=False
    )
    op.create_index(
        "ix_automation_notifications_execution_id", "automation_notifications", ["execution_id"], unique=False
    )
    op.create_index(
        "ix_automation_notifications_recipient_user_id",
        "automation_notifications",
        ["recipient_user_id"],
        unique=False,
    )

    op.create_table(
        "automation_outbound_messages",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("execution_id", sa.String(length=36), nullable=True),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("recipient", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("external_message_id", sa.String(length=80), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_outbound_messages_business_id", "automation_outbound_messages", ["business_id"], unique=False
    )
    op.create_index(
        "ix_automation_outbound_messages_execution_id",
        "automation_outbound_messages",
        ["execution_id"],
        unique=False,
    )

    op.create_table(
        "entity_mutation_requests",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("workflow_id", sa.String(length=36), nullable=False),
        sa.Column("execution_id", sa.String(length=36), nullable=True),
        sa.Column("entity_type", sa.String(length=20), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("operation", sa.String(length=30), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_entity_mutation_requests_business_id", "entity_mutation_requests", ["business_id"], unique=False
    )
    op.create_index(
        "ix_entity_mutation_requests_workflow_id", "entity_mutation_requests", ["workflow_id"], unique=False
    )
    op.create_index(
        "ix_entity_mutation_requests_execution_id", "entity_mutation_requests", ["execution_id"], unique=False
    )
    op.create_index(
        "ix_entity_mutation_requests_business_status_created_at",
        "entity_mutation_requests",
        ["business_id", "status", "created_at"],
        unique=False,
    )

    op.create_table(
        "webhook_subscriptions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("url", sa.String(length=500), nullable=False),
        sa.Column("secret_encrypted", sa.String(length=2048), nullable=False),
        sa.Column("events_json", sa.JSON(), nullable=False),
        sa.Column("filters_json", sa.JSON(), nullable=True),
        sa.Column("headers_json", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("timeout_ms", sa.Integer(), nullable=False, server_default="10000"),
        sa.Column("total_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("created_by_user_id", sa.String(length=36), nullable=False),
        sa.Column("updated_by_user_id", sa.String(length=36), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("business_id", "name", name="uq_webhook_subscriptions_business_name"),
    )
    op.create_index("ix_webhook_subscriptions_business_id", "webhook_subscriptions", ["business_id"], unique=False)
    op.create_index(
        "ix_webhook_subscriptions_created_by_user_id",
        "webhook_subscriptions",
        ["created_by_user_id"],
        unique=False,
    )
    op.create_index(
        "ix_webhook_subscriptions_business_active",
        "webhook_subscriptions",
        ["business_id", "is_active"],
        unique=False,
    )

    op.create_table(
        "webhook_delivery_logs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("subscription_id", sa.String(length=36), nullable=False),
        sa.Column("subscription_name", sa.String(length=120), nullable=False),
        sa.Column("event", sa.String(length=60), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("request_url", sa.String(length=500), nullable=False),
        sa.Column("request_headers_json", sa.JSON(), nullable=True),
        sa.Column("request_body", sa.Text(), nullable=False),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_headers_json", sa.JSON(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("error", sa.String(length=500), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("entity_type", sa.String(length=20), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("entity_name", sa.String(length=255), nullable=True),
        sa.Column("triggered_by", sa.String(length=36), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_delivery_logs_business_id", "webhook_delivery_logs", ["business_id"], unique=False)
    op.create_index(
        "ix_webhook_delivery_logs_subscription_id", "webhook_delivery_logs", ["subscription_id"], unique=False
    )
    op.create_index("ix_webhook_delivery_logs_event", "webhook_delivery_logs", ["event"], unique=False)
    op.create_index("ix_webhook_delivery_logs_expires_at", "webhook_delivery_logs", ["expires_at"], unique=False)
    op.create_index(
        "ix_webhook_delivery_logs_status_next_retry_at",
        "webhook_delivery_logs",
        ["status", "next_retry_at"],
        unique=False,
    )
    op.create_index(
        "ix_webhook_delivery_logs_subscription_created_at",
        "webhook_delivery_logs",
        ["subscription_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_webhook_delivery_logs_subscription_created_at", table_name="webhook_delivery_logs")
    op.drop_index("ix_webhook_delivery_logs_status_next_retry_at", table_name="webhook_delivery_logs")
    op.drop_index("ix_webhook_delivery_logs_expires_at", table_name="webhook_delivery_logs")
    op.drop_index("ix_webhook_delivery_logs_event", table_name="webhook_delivery_logs")
    op.drop_index("ix_webhook_delivery_logs_subscription_id", table_name="webhook_delivery_logs")
    op.drop_index("ix_webhook_delivery_logs_business_id", table_name="webhook_delivery_logs")
    op.drop_table("webhook_delivery_logs")

    op.drop_index("ix_webhook_subscriptions_business_active", table_name="webhook_subscriptions")
    op.drop_index("ix_webhook_subscriptions_created_by_user_id", table_name="webhook_subscriptions")
    op.drop_index("ix_webhook_subscriptions_business_id", table_name="webhook_subscriptions")
    op.drop_table("webhook_subscriptions")

    op.drop_index("ix_entity_mutation_requests_business_status_created_at", table_name="entity_mutation_requests")
    op.drop_index("ix_entity_mutation_requests_execution_id", table_name="entity_mutation_requests")
    op.drop_index("ix_entity_mutation_requests_workflow_id", table_name="entity_mutation_requests")
    op.drop_index("ix_entity_mutation_requests_business_id", table_name="entity_mutation_requests")
    op.drop_table("entity_mutation_requests")

    op.drop_index("ix_automation_outbound_messages_execution_id", table_name="automation_outbound_messages")
    op.drop_index("ix_automation_outbound_messages_business_id", table_name="automation_outbound_messages")
    op.drop_table("automation_outbound_messages")

    op.drop_index("ix_automation_notifications_recipient_user_id", table_name="automation_notifications")
    op.drop_index("ix_automation_notifications_execution_id", table_name="automation_notifications")
    op.drop_index("ix_automation_notifications_business_id", table_name="automation_notifications")
    op.drop_table("automation_notifications")

    op.drop_index("ix_automation_tasks_business_status_created_at", table_name="automation_tasks")
    op.drop_index("ix_automation_tasks_assignee_user_id", table_name="automation_tasks")
    op.drop_index("ix_automation_tasks_execution_id", table_name="automation_tasks")
    op.drop_index("ix_automation_tasks_business_id", table_name="automation_tasks")
    op.drop_table("automation_tasks")

    op.drop_index("ix_workflow_scheduled_actions_status_run_at", table_name="workflow_scheduled_actions")
    op.drop_index("ix_workflow_scheduled_actions_execution_id", table_name="workflow_scheduled_actions")
    op.drop_index("ix_workflow_scheduled_actions_workflow_id", table_name="workflow_scheduled_actions")
    op.drop_index("ix_workflow_scheduled_actions_business_id", table_name="workflow_scheduled_actions")
    op.drop_table("workflow_scheduled_actions")

    op.drop_index("ix_workflow_executions_business_status_created_at", table_name="workflow_executions")
    op.drop_index("ix_workflow_executions_workflow_created_at", table_name="workflow_executions")
    op.drop_index("ix_workflow_executions_workflow_id", table_name="workflow_executions")
    op.drop_index("ix_workflow_executions_business_id", table_name="workflow_executions")
    op.drop_table("workflow_executions")

    op.drop_index("ix_crm_workflows_business_trigger_active", table_name="crm_workflows")
    op.drop_index("ix_crm_workflows_created_by_user_id", table_name="crm_workflows")
    op.drop_index("ix_crm_workflows_template_key", table_name="crm_workflows")
    op.drop_index("ix_crm_workflows_trigger_type", table_name="crm_workflows")
    op.drop_index("ix_crm_workflows_business_id", table_name="crm_workflows")
    op.drop_table("crm_workflows")
