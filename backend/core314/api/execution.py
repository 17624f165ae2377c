"""
Executor API Routes.

Execute endpoint plus queue management (approvals, cancellation, expiry,
stalled-claim recovery and reporting).
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from core314.api.deps import (
    SCOPE_EXECUTOR_EXECUTE,
    SCOPE_QUEUE_MANAGE,
    DbSession,
    Notifier,
    Principal,
    require_scope,
)
from core314.core.automation.executor import Executor
from core314.core.automation.queue import ExecutionQueue
from core314.core.schemas import (
    ApprovalDecision,
    ExecutionLogListResponse,
    ExecutionLogSchema,
    ExecutorExecuteRequest,
    ExecutorExecuteResponse,
    ExpireResponse,
    QueueEntryListResponse,
    QueueEntryResponse,
    QueueEntrySchema,
    QueueStatisticsResponse,
    ReclaimResponse,
)

router = APIRouter(prefix="/executor", tags=["executor"])
queue_router = APIRouter(prefix="/queue", tags=["queue"])


# ==========================================================================
# Execute
# ==========================================================================

@router.options("/execute", include_in_schema=False)
async def execute_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK)


@router.post("/execute", response_model=ExecutorExecuteResponse)
async def execute_action(
    request: ExecutorExecuteRequest,
    db: DbSession,
    notifier: Notifier,
    principal: Annotated[Principal, Depends(require_scope(SCOPE_EXECUTOR_EXECUTE))],
) -> ExecutorExecuteResponse:
    """
    Execute one queue entry.

    A failed dispatch still answers 200 with ``success: false``; the entry
    is either rescheduled (``retry_scheduled``) or permanently failed.
    """
    executor = Executor(db, principal.user_id, notifier)
    result = await executor.execute(request.execution_queue_id)
    entry = result.entry
    return ExecutorExecuteResponse(
        success=result.success,
        execution_queue_id=entry.id,
        execution_log_id=result.execution_log_id,
        action_type=entry.action_type,
        action_target=entry.action_target,
        status=entry.status,
        execution_duration_ms=entry.execution_duration_ms,
        execution_result=entry.execution_result,
        error=result.error,
        error_code=result.error_code,
        retry_scheduled=result.retry_scheduled,
        current_retry_attempt=entry.current_retry_attempt,
        next_retry_at=entry.next_retry_at if result.retry_scheduled else None,
        escalation_event_id=result.escalation_event_id,
    )


# ==========================================================================
# Queue management
# ==========================================================================

QueueManager = Annotated[Principal, Depends(require_scope(SCOPE_QUEUE_MANAGE))]


@queue_router.get("/pending-approvals", response_model=QueueEntryListResponse)
async def pending_approvals(db: DbSession, principal: QueueManager) -> QueueEntryListResponse:
    entries = await ExecutionQueue(db, principal.user_id).pending_approvals()
    return QueueEntryListResponse(entries=[QueueEntrySchema.model_validate(e) for e in entries])


@queue_router.get("/statistics", response_model=QueueStatisticsResponse)
async def queue_statistics(
    db: DbSession,
    principal: QueueManager,
    window_hours: int = Query(24, ge=1, le=24 * 90),
) -> QueueStatisticsResponse:
    stats = await ExecutionQueue(db, principal.user_id).statistics(window_hours)
    return QueueStatisticsResponse(**vars(stats))


@queue_router.get("/failures", response_model=ExecutionLogListResponse)
async def recent_failures(
    db: DbSession,
    principal: QueueManager,
    limit: int = Query(20, ge=1, le=200),
) -> ExecutionLogListResponse:
    logs = await ExecutionQueue(db, principal.user_id).recent_failures(limit)
    return ExecutionLogListResponse(logs=[ExecutionLogSchema.model_validate(log) for log in logs])


@queue_router.post("/expire", response_model=ExpireResponse)
async def expire_overdue(db: DbSession, principal: QueueManager) -> ExpireResponse:
    expired = await ExecutionQueue(db, principal.user_id).expire_overdue()
    await db.commit()
    return ExpireResponse(expired=expired)


@queue_router.post("/reclaim", response_model=ReclaimResponse)
async def reclaim_stalled(db: DbSession, notifier: Notifier, principal: QueueManager) -> ReclaimResponse:
    """Recover in-progress entries whose executor lease ran out."""
    reclaimed = await Executor(db, principal.user_id, notifier).reclaim_stalled()
    return ReclaimResponse(reclaimed=reclaimed)


@queue_router.get("/{entry_id}", response_model=QueueEntryResponse)
async def get_entry(entry_id: UUID, db: DbSession, principal: QueueManager) -> QueueEntryResponse:
    entry = await ExecutionQueue(db, principal.user_id).get(entry_id)
    return QueueEntryResponse(entry=QueueEntrySchema.model_validate(entry))


@queue_router.post("/{entry_id}/approve", response_model=QueueEntryResponse)
async def approve_entry(
    entry_id: UUID,
    db: DbSession,
    principal: QueueManager,
    request: Optional[ApprovalDecision] = None,
) -> QueueEntryResponse:
    entry = await ExecutionQueue(db, principal.user_id).approve(
        entry_id, principal.user_id, request.notes if request else None
    )
    await db.commit()
    return QueueEntryResponse(entry=QueueEntrySchema.model_validate(entry))


@queue_router.post("/{entry_id}/reject", response_model=QueueEntryResponse)
async def reject_entry(
    entry_id: UUID,
    db: DbSession,
    principal: QueueManager,
    request: Optional[ApprovalDecision] = None,
) -> QueueEntryResponse:
    entry = await ExecutionQueue(db, principal.user_id).reject(
        entry_id, principal.user_id, request.notes if request else None
    )
    await db.commit()
    return QueueEntryResponse(entry=QueueEntrySchema.model_validate(entry))


@queue_router.post("/{entry_id}/cancel", response_model=QueueEntryResponse)
async def cancel_entry(entry_id: UUID, db: DbSession, principal: QueueManager) -> QueueEntryResponse:
    entry = await ExecutionQueue(db, principal.user_id).cancel(entry_id)
    await db.commit()
    return QueueEntryResponse(entry=QueueEntrySchema.model_validate(entry))
