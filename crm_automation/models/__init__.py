from crm_automation.models.workflow import (
    AutomationNotification,
    AutomationOutboundMessage,
    AutomationTask,
    CrmWorkflow,
    EntityMutationRequest,
    WorkflowExecution,
    WorkflowScheduledAction,
)
from crm_automation.models.webhook import WebhookDeliveryLog, WebhookSubscription
