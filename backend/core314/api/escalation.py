"""
Escalation API Routes.

Trigger endpoint, rule management and the escalation event lifecycle.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from core314.api.deps import (
    SCOPE_ESCALATIONS_MANAGE,
    SCOPE_ESCALATIONS_TRIGGER,
    DbSession,
    Notifier,
    Principal,
    require_scope,
)
from core314.core.automation.escalation import EscalationHandler, EscalationRuleRegistry
from core314.core.schemas import (
    EscalationEventListResponse,
    EscalationEventResponse,
    EscalationEventSchema,
    EscalationResolve,
    EscalationRuleCreate,
    EscalationRuleListResponse,
    EscalationRuleResponse,
    EscalationRuleSchema,
    EscalationTriggerRequest,
    EscalationTriggerResponse,
    SlaCheckResponse,
)

router = APIRouter(prefix="/escalations", tags=["escalations"])

EscalationManager = Annotated[Principal, Depends(require_scope(SCOPE_ESCALATIONS_MANAGE))]


# ==========================================================================
# Trigger
# ==========================================================================

@router.options("/trigger", include_in_schema=False)
async def trigger_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK)


@router.post("/trigger", response_model=EscalationTriggerResponse)
async def trigger_escalation(
    request: EscalationTriggerRequest,
    db: DbSession,
    notifier: Notifier,
    principal: Annotated[Principal, Depends(require_scope(SCOPE_ESCALATIONS_TRIGGER))],
) -> EscalationTriggerResponse:
    """
    Escalate a failure through the first matching rule.

    No matching rule is a successful no-op without an event id.
    """
    handler = EscalationHandler(db, principal.user_id, notifier)
    outcome = await handler.escalate(
        escalation_reason=request.escalation_reason,
        trigger_context=request.trigger_context,
        execution_queue_id=request.execution_queue_id,
        execution_log_id=request.execution_log_id,
        auto_remediate=request.auto_remediate,
    )
    await db.commit()

    if outcome.event is None:
        return EscalationTriggerResponse(message=outcome.message)
    return EscalationTriggerResponse(
        escalation_event_id=outcome.event.id,
        escalation_rule_id=outcome.rule.id,
        escalation_level=outcome.event.escalation_level,
        actions_performed=outcome.actions_performed,
        notifications_sent=outcome.notifications_sent,
        remediation_attempted=outcome.remediation_attempted,
        remediation_successful=outcome.remediation_successful,
    )


# ==========================================================================
# Rules
# ==========================================================================

@router.post("/rules", response_model=EscalationRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(request: EscalationRuleCreate, db: DbSession, principal: EscalationManager) -> EscalationRuleResponse:
    fields = request.model_dump(mode="json", exclude={"rule_name"})
    rule = await EscalationRuleRegistry(db, principal.user_id).create(request.rule_name, **fields)
    await db.commit()
    return EscalationRuleResponse(rule=EscalationRuleSchema.model_validate(rule))


@router.get("/rules", response_model=EscalationRuleListResponse)
async def list_rules(
    db: DbSession,
    principal: EscalationManager,
    active_only: bool = Query(False),
) -> EscalationRuleListResponse:
    rules = await EscalationRuleRegistry(db, principal.user_id).list_rules(active_only=active_only)
    return EscalationRuleListResponse(rules=[EscalationRuleSchema.model_validate(r) for r in rules])


# ==========================================================================
# Events
# ==========================================================================

@router.get("/events", response_model=EscalationEventListResponse)
async def active_events(db: DbSession, notifier: Notifier, principal: EscalationManager) -> EscalationEventListResponse:
    events = await EscalationHandler(db, principal.user_id, notifier).active_events()
    return EscalationEventListResponse(events=[EscalationEventSchema.model_validate(e) for e in events])


@router.post("/events/{event_id}/acknowledge", response_model=EscalationEventResponse)
async def acknowledge_event(
    event_id: UUID,
    db: DbSession,
    notifier: Notifier,
    principal: EscalationManager,
) -> EscalationEventResponse:
    event = await EscalationHandler(db, principal.user_id, notifier).acknowledge(event_id, principal.user_id)
    await db.commit()
    return EscalationEventResponse(event=EscalationEventSchema.model_validate(event))


@router.post("/events/{event_id}/resolve", response_model=EscalationEventResponse)
async def resolve_event(
    event_id: UUID,
    request: EscalationResolve,
    db: DbSession,
    notifier: Notifier,
    principal: EscalationManager,
) -> EscalationEventResponse:
    event = await EscalationHandler(db, principal.user_id, notifier).resolve(
        event_id,
        principal.user_id,
        resolution_notes=request.resolution_notes,
        successful=request.successful,
    )
    await db.commit()
    return EscalationEventResponse(event=EscalationEventSchema.model_validate(event))


@router.post("/sla-check", response_model=SlaCheckResponse)
async def check_sla(db: DbSession, notifier: Notifier, principal: EscalationManager) -> SlaCheckResponse:
    """Mark SLA breaches on open escalation events."""
    breaches = await EscalationHandler(db, principal.user_id, notifier).check_sla()
    await db.commit()
    return SlaCheckResponse(**breaches)
