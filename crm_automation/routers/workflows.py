import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_automation.core.api_docs import error_responses
from crm_automation.core.deps import TenantAccess, get_db, get_engine, get_tenant
from crm_automation.models.workflow import CrmWorkflow, EntityMutationRequest, WorkflowExecution
from crm_automation.schemas.common import pagination
from crm_automation.schemas.workflow import (
    ActionLogOut,
    ActionPreviewOut,
    ConditionResultOut,
    EntityMutationAckIn,
    EntityMutationListOut,
    EntityMutationOut,
    ExecutionStatus,
    MutationStatus,
    ScheduledActionRunOut,
    WorkflowConditionOut,
    WorkflowExecutionListOut,
    WorkflowExecutionOut,
    WorkflowRuleCreateIn,
    WorkflowRuleListOut,
    WorkflowRuleOut,
    WorkflowRuleTestIn,
    WorkflowRuleTestOut,
    WorkflowRuleUpdateIn,
    WorkflowTemplateCatalogOut,
    WorkflowTemplateInstallIn,
    WorkflowTemplateInstallOut,
    WorkflowTemplateOut,
    WorkflowTriggerType,
    workflow_action_adapter,
)
from crm_automation.services.dispatch_context import DispatchContext
from crm_automation.services.engine import AutomationEngine
from crm_automation.services.workflow_service import (
    dry_run_rule,
    install_template_rule,
    list_workflow_templates,
    workflow_name_taken,
)

router = APIRouter(prefix="/workflows", tags=["workflows"])


def _rule_or_404(db: Session, *, business_id: str, rule_id: str) -> CrmWorkflow:
    rule = db.execute(
        select(CrmWorkflow).where(
            CrmWorkflow.id == rule_id,
            CrmWorkflow.business_id == business_id,
        )
    ).scalar_one_or_none()
    if not rule:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return rule


def _execution_or_404(db: Session, *, business_id: str, execution_id: str) -> WorkflowExecution:
    execution = db.execute(
        select(WorkflowExecution).where(
            WorkflowExecution.id == execution_id,
            WorkflowExecution.business_id == business_id,
        )
    ).scalar_one_or_none()
    if not execution:
        raise HTTPException(status_code=404, detail="Workflow execution not found")
    return execution


def _conditions_out(items: list | None) -> list[WorkflowConditionOut]:
    return [WorkflowConditionOut.model_validate(item) for item in (items or []) if isinstance(item, dict)]


def _actions_out(items: list | None) -> list:
    return [workflow_action_adapter.validate_python(item) for item in (items or []) if isinstance(item, dict)]


def _rule_out(rule: CrmWorkflow) -> WorkflowRuleOut:
    return WorkflowRuleOut(
        id=rule.id,
        name=rule.name,
        description=rule.description,
        is_active=rule.is_active,
        trigger_type=rule.trigger_type,
        conditions=_conditions_out(rule.conditions_json),
        actions=_actions_out(rule.actions_json),
        template_key=rule.template_key,
        version=rule.version,
        execution_count=rule.execution_count,
        last_executed_at=rule.last_executed_at,
        created_by_user_id=rule.created_by_user_id,
        updated_by_user_id=rule.updated_by_user_id,
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def _template_out(item: dict) -> WorkflowTemplateOut:
    return WorkflowTemplateOut(
        template_key=item["template_key"],
        name=item["name"],
        description=item["description"],
        category=item["category"],
        trigger_type=item["trigger_type"],
        conditions=_conditions_out(item.get("conditions")),
        actions=_actions_out(item.get("actions")),
    )


def _execution_out(execution: WorkflowExecution) -> WorkflowExecutionOut:
    logs = execution.action_logs_json if isinstance(execution.action_logs_json, list) else []
    return WorkflowExecutionOut(
        id=execution.id,
        workflow_id=execution.workflow_id,
        workflow_name=execution.workflow_name,
        trigger_type=execution.trigger_type,
        entity_type=execution.entity_type,
        entity_id=execution.entity_id,
        entity_name=execution.entity_name,
        status=execution.status,
        action_logs=[ActionLogOut.model_validate(item) for item in logs if isinstance(item, dict)],
        error_message=execution.error_message,
        started_at=execution.started_at,
        completed_at=execution.completed_at,
        duration_ms=execution.duration_ms,
    )


def _mutation_out(mutation: EntityMutationRequest) -> EntityMutationOut:
    return EntityMutationOut(
        id=mutation.id,
        workflow_id=mutation.workflow_id,
        execution_id=mutation.execution_id,
        entity_type=mutation.entity_type,
        entity_id=mutation.entity_id,
        operation=mutation.operation,
        payload=mutation.payload_json if isinstance(mutation.payload_json, dict) else None,
        status=mutation.status,
        applied_at=mutation.applied_at,
        created_at=mutation.created_at,
    )


@router.get(
    "/templates",
    response_model=WorkflowTemplateCatalogOut,
    summary="List workflow templates",
    responses=error_responses(400, 500, path="/workflows/templates"),
)
def list_templates(
    _: TenantAccess = Depends(get_tenant),
):
    return WorkflowTemplateCatalogOut(items=[_template_out(item) for item in list_workflow_templates()])


@router.post(
    "/templates/install",
    response_model=WorkflowTemplateInstallOut,
    summary="Install workflow template",
    responses=error_responses(400, 422, 500, path="/workflows/templates/install"),
)
def install_template(
    payload: WorkflowTemplateInstallIn,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    rule, template = install_template_rule(
        db,
        business_id=access.business_id,
        actor_user_id=access.user_id,
        template_key=payload.template_key,
        activate=payload.activate,
    )
    db.commit()
    db.refresh(rule)
    return WorkflowTemplateInstallOut(template=_template_out(template), rule=_rule_out(rule))


@router.post(
    "/rules",
    response_model=WorkflowRuleOut,
    status_code=201,
    summary="Create workflow",
    responses=error_responses(400, 409, 422, 500),
)
def create_rule(
    payload: WorkflowRuleCreateIn,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    if workflow_name_taken(db, business_id=access.business_id, name=payload.name):
        raise HTTPException(status_code=409, detail="Workflow name already exists")
    rule = CrmWorkflow(
        id=str(uuid.uuid4()),
        business_id=access.business_id,
        name=payload.name.strip(),
        description=payload.description,
        is_active=payload.is_active,
        trigger_type=payload.trigger_type,
        conditions_json=[item.model_dump() for item in payload.conditions],
        actions_json=[item.model_dump() for item in payload.actions],
        version=1,
        execution_count=0,
        created_by_user_id=access.user_id,
        updated_by_user_id=access.user_id,
    )
    db.add(rule)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Workflow name already exists") from None
    db.refresh(rule)
    return _rule_out(rule)


@router.get(
    "/rules",
    response_model=WorkflowRuleListOut,
    summary="List workflows",
    responses=error_responses(400, 422, 500),
)
def list_rules(
    is_active: bool | None = Query(default=None),
    trigger_type: WorkflowTriggerType | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    count_stmt = select(func.count(CrmWorkflow.id)).where(CrmWorkflow.business_id == access.business_id)
    stmt = select(CrmWorkflow).where(CrmWorkflow.business_id == access.business_id)
    if is_active is not None:
        count_stmt = count_stmt.where(CrmWorkflow.is_active.is_(is_active))
        stmt = stmt.where(CrmWorkflow.is_active.is_(is_active))
    if trigger_type:
        count_stmt = count_stmt.where(CrmWorkflow.trigger_type == trigger_type)
        stmt = stmt.where(CrmWorkflow.trigger_type == trigger_type)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(CrmWorkflow.updated_at.desc(), CrmWorkflow.id.asc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [_rule_out(row) for row in rows]
    return WorkflowRuleListOut(
        items=items,
        pagination=pagination(total=total, limit=limit, offset=offset, count=len(items)),
        is_active=is_active,
        trigger_type=trigger_type,
    )


@router.get(
    "/rules/{rule_id}",
    response_model=WorkflowRuleOut,
    summary="Get workflow",
    responses=error_responses(400, 404, 500),
)
def get_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    return _rule_out(_rule_or_404(db, business_id=access.business_id, rule_id=rule_id))


@router.patch(
    "/rules/{rule_id}",
    response_model=WorkflowRuleOut,
    summary="Update workflow",
    responses=error_responses(400, 404, 409, 422, 500),
)
def update_rule(
    rule_id: str,
    payload: WorkflowRuleUpdateIn,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    rule = _rule_or_404(db, business_id=access.business_id, rule_id=rule_id)
    changed = False
    if payload.name is not None:
        if workflow_name_taken(db, business_id=access.business_id, name=payload.name, exclude_id=rule.id):
            raise HTTPException(status_code=409, detail="Workflow name already exists")
        rule.name = payload.name.strip()
        changed = True
    if payload.description is not None:
        rule.description = payload.description
        changed = True
    if payload.is_active is not None:
        rule.is_active = payload.is_active
        changed = True
    if payload.trigger_type is not None:
        rule.trigger_type = payload.trigger_type
        changed = True
    if payload.conditions is not None:
        rule.conditions_json = [item.model_dump() for item in payload.conditions]
        changed = True
    if payload.actions is not None:
        rule.actions_json = [item.model_dump() for item in payload.actions]
        changed = True

    if changed:
        rule.version += 1
        rule.updated_by_user_id = access.user_id

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Workflow name already exists") from None
    db.refresh(rule)
    return _rule_out(rule)


@router.delete(
    "/rules/{rule_id}",
    status_code=204,
    summary="Delete workflow",
    responses=error_responses(400, 404, 500),
)
def delete_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    rule = _rule_or_404(db, business_id=access.business_id, rule_id=rule_id)
    # execution history and pending continuations stay; the sweep fails the latter
    db.delete(rule)
    db.commit()
    return Response(status_code=204)


@router.post(
    "/rules/{rule_id}/test",
    response_model=WorkflowRuleTestOut,
    summary="Evaluate workflow against a sample event (dry run)",
    responses=error_responses(400, 404, 422, 500),
)
def test_rule(
    rule_id: str,
    payload: WorkflowRuleTestIn,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    rule = _rule_or_404(db, business_id=access.business_id, rule_id=rule_id)
    ctx = DispatchContext.from_schema(business_id=access.business_id, payload=payload.context)
    result = dry_run_rule(rule, ctx=ctx)
    return WorkflowRuleTestOut(
        rule_id=rule.id,
        matched=result.matched,
        conditions=[ConditionResultOut(**item) for item in result.conditions],
        actions=[ActionPreviewOut(**item) for item in result.actions],
    )


@router.get(
    "/executions",
    response_model=WorkflowExecutionListOut,
    summary="List workflow executions with action logs",
    responses=error_responses(400, 422, 500, path="/workflows/executions"),
)
def list_executions(
    workflow_id: str | None = Query(default=None),
    status: ExecutionStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    count_stmt = select(func.count(WorkflowExecution.id)).where(WorkflowExecution.business_id == access.business_id)
    stmt = select(WorkflowExecution).where(WorkflowExecution.business_id == access.business_id)
    normalized_workflow_id = workflow_id.strip() if workflow_id else None
    if normalized_workflow_id:
        count_stmt = count_stmt.where(WorkflowExecution.workflow_id == normalized_workflow_id)
        stmt = stmt.where(WorkflowExecution.workflow_id == normalized_workflow_id)
    if status:
        count_stmt = count_stmt.where(WorkflowExecution.status == status)
        stmt = stmt.where(WorkflowExecution.status == status)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(WorkflowExecution.started_at.desc(), WorkflowExecution.id.asc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [_execution_out(row) for row in rows]
    return WorkflowExecutionListOut(
        items=items,
        pagination=pagination(total=total, limit=limit, offset=offset, count=len(items)),
        workflow_id=normalized_workflow_id,
        status=status,
    )


@router.get(
    "/executions/{execution_id}",
    response_model=WorkflowExecutionOut,
    summary="Get workflow execution",
    responses=error_responses(400, 404, 500, path="/workflows/executions"),
)
def get_execution(
    execution_id: str,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    return _execution_out(_execution_or_404(db, business_id=access.business_id, execution_id=execution_id))


@router.get(
    "/mutations",
    response_model=EntityMutationListOut,
    summary="List entity changes requested by workflow actions",
    responses=error_responses(400, 422, 500, path="/workflows/mutations"),
)
def list_mutations(
    status: MutationStatus | None = Query(default="pending"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    count_stmt = select(func.count(EntityMutationRequest.id)).where(
        EntityMutationRequest.business_id == access.business_id
    )
    stmt = select(EntityMutationRequest).where(EntityMutationRequest.business_id == access.business_id)
    if status:
        count_stmt = count_stmt.where(EntityMutationRequest.status == status)
        stmt = stmt.where(EntityMutationRequest.status == status)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(EntityMutationRequest.created_at.asc(), EntityMutationRequest.id.asc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    items = [_mutation_out(row) for row in rows]
    return EntityMutationListOut(
        items=items,
        pagination=pagination(total=total, limit=limit, offset=offset, count=len(items)),
        status=status,
    )


@router.post(
    "/mutations/{mutation_id}/ack",
    response_model=EntityMutationOut,
    summary="Acknowledge an entity change request",
    responses=error_responses(400, 404, 409, 422, 500, path="/workflows/mutations"),
)
def ack_mutation(
    mutation_id: str,
    payload: EntityMutationAckIn,
    db: Session = Depends(get_db),
    access: TenantAccess = Depends(get_tenant),
):
    mutation = db.execute(
        select(EntityMutationRequest).where(
            EntityMutationRequest.id == mutation_id,
            EntityMutationRequest.business_id == access.business_id,
        )
    ).scalar_one_or_none()
    if not mutation:
        raise HTTPException(status_code=404, detail="Mutation request not found")
    if mutation.status != "pending":
        raise HTTPException(status_code=409, detail=f"Mutation request already {mutation.status}")
    mutation.status = payload.status
    mutation.applied_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(mutation)
    return _mutation_out(mutation)


@router.post(
    "/scheduled/run",
    response_model=ScheduledActionRunOut,
    summary="Resume delayed workflow actions that are due",
    responses=error_responses(400, 422, 500, path="/workflows/scheduled/run"),
)
def run_scheduled_actions(
    limit: int = Query(default=100, ge=1, le=1000),
    _: TenantAccess = Depends(get_tenant),
    engine: AutomationEngine = Depends(get_engine),
):
    summary = engine.run_due_scheduled_actions(limit=limit)
    return ScheduledActionRunOut(due=summary.due, resumed=summary.resumed, failed=summary.failed)
