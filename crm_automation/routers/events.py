from dataclasses import replace

from fastapi import APIRouter, Depends

from crm_automation.core.api_docs import error_responses
from crm_automation.core.deps import TenantAccess, get_engine, get_tenant
from crm_automation.schemas.event import EventAcceptedOut, EventIn
from crm_automation.services.dispatch_context import DispatchContext
from crm_automation.services.engine import AutomationEngine

router = APIRouter(prefix="/events", tags=["events"])


@router.post(
    "",
    response_model=EventAcceptedOut,
    status_code=202,
    summary="Ingest a CRM domain event",
    description=(
        "Runs matching workflows and queues webhook deliveries. Failures inside the "
        "automation engine are logged and never reported back to the emitter."
    ),
    responses=error_responses(400, 422, 500, path="/events"),
)
def ingest_event(
    payload: EventIn,
    access: TenantAccess = Depends(get_tenant),
    engine: AutomationEngine = Depends(get_engine),
):
    ctx = DispatchContext.from_schema(business_id=access.business_id, payload=payload)
    if ctx.user_id is None:
        ctx = replace(ctx, user_id=access.user_id, user_name=ctx.user_name or access.user_name)
    engine.dispatch(payload.event, ctx)
    return EventAcceptedOut(
        accepted=True,
        event=payload.event,
        entity_type=payload.entity_type,
        entity_id=payload.entity_id,
    )
