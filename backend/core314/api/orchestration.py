"""
Orchestrator API Routes.

Trigger endpoint plus flow management.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from core314.api.deps import (
    SCOPE_FLOWS_MANAGE,
    SCOPE_ORCHESTRATOR_TRIGGER,
    DbSession,
    Principal,
    require_scope,
)
from core314.core.automation.orchestrator import FlowRegistry, Orchestrator
from core314.core.schemas import (
    FlowClone,
    FlowCreate,
    FlowListResponse,
    FlowResponse,
    FlowSchema,
    OrchestratorTriggerRequest,
    OrchestratorTriggerResponse,
)

router = APIRouter(prefix="/orchestrator", tags=["orchestrator"])
flows_router = APIRouter(prefix="/flows", tags=["flows"])


# ==========================================================================
# Trigger
# ==========================================================================

@router.options("/trigger", include_in_schema=False)
async def trigger_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK)


@router.post("/trigger", response_model=OrchestratorTriggerResponse)
async def trigger_orchestration(
    request: OrchestratorTriggerRequest,
    db: DbSession,
    principal: Annotated[Principal, Depends(require_scope(SCOPE_ORCHESTRATOR_TRIGGER))],
) -> OrchestratorTriggerResponse:
    """
    Select the flow for a trigger and queue its action steps.

    Returns 404 when no active flow matches the trigger.
    """
    orchestrator = Orchestrator(db, principal.user_id)
    run = await orchestrator.orchestrate(
        trigger_type=request.trigger_type,
        trigger_context=request.trigger_context,
        trigger_source=request.trigger_source,
        decision_event_id=request.decision_event_id,
        recommendation_id=request.recommendation_id,
        flow_id=request.flow_id,
    )
    return OrchestratorTriggerResponse(
        orchestration_run_id=run.run_id,
        flow_id=run.flow.id,
        flow_name=run.flow.flow_name,
        execution_mode=run.flow.execution_mode,
        steps_created=len(run.entries),
        execution_queue_ids=run.execution_queue_ids,
        estimated_duration_ms=run.estimated_duration_ms,
    )


# ==========================================================================
# Flows
# ==========================================================================

FlowManager = Annotated[Principal, Depends(require_scope(SCOPE_FLOWS_MANAGE))]


@flows_router.post("", response_model=FlowResponse, status_code=status.HTTP_201_CREATED)
async def create_flow(request: FlowCreate, db: DbSession, principal: FlowManager) -> FlowResponse:
    """Create a flow. Steps and conditions are validated before anything is stored."""
    fields = request.model_dump(exclude={"flow_name", "trigger_type", "flow_steps", "execution_mode", "conditions"})
    flow = await FlowRegistry(db, principal.user_id).create(
        flow_name=request.flow_name,
        trigger_type=request.trigger_type,
        flow_steps=request.flow_steps,
        execution_mode=request.execution_mode,
        conditions=request.conditions,
        **fields,
    )
    await db.commit()
    return FlowResponse(flow=FlowSchema.model_validate(flow))


@flows_router.get("", response_model=FlowListResponse)
async def list_flows(
    db: DbSession,
    principal: FlowManager,
    active_only: bool = Query(False),
    trigger_type: Optional[str] = Query(None),
) -> FlowListResponse:
    flows = await FlowRegistry(db, principal.user_id).list_flows(active_only=active_only, trigger_type=trigger_type)
    return FlowListResponse(flows=[FlowSchema.model_validate(f) for f in flows])


@flows_router.get("/{flow_id}", response_model=FlowResponse)
async def get_flow(flow_id: UUID, db: DbSession, principal: FlowManager) -> FlowResponse:
    flow = await FlowRegistry(db, principal.user_id).get(flow_id)
    return FlowResponse(flow=FlowSchema.model_validate(flow))


@flows_router.post("/{flow_id}/deactivate", response_model=FlowResponse)
async def deactivate_flow(flow_id: UUID, db: DbSession, principal: FlowManager) -> FlowResponse:
    """Flows are never deleted; deactivated flows stop matching triggers."""
    flow = await FlowRegistry(db, principal.user_id).deactivate(flow_id)
    await db.commit()
    return FlowResponse(flow=FlowSchema.model_validate(flow))


@flows_router.post("/{flow_id}/clone", response_model=FlowResponse, status_code=status.HTTP_201_CREATED)
async def clone_flow(
    flow_id: UUID,
    db: DbSession,
    principal: FlowManager,
    request: Optional[FlowClone] = None,
) -> FlowResponse:
    flow = await FlowRegistry(db, principal.user_id).clone(flow_id, request.flow_name if request else None)
    await db.commit()
    return FlowResponse(flow=FlowSchema.model_validate(flow))
