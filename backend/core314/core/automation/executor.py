"""
Executor - claims queue entries and performs their actions.

Each call runs one entry through claim -> dispatch -> record:

- success: entry completed, one execution log row, flow statistics bumped
- delivery failure with attempts left: back to pending with exponential backoff
- otherwise: entry failed, one execution log row, the flow's on_error_action
  applied (escalate, abort the run, or start the fallback flow)

Retried attempts never write to the execution log.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core314.core.automation.actions import ActionDispatcher, ActionOutcome
from core314.core.automation.escalation import EscalationHandler
from core314.core.automation.notifications import NotificationService
from core314.core.automation.orchestrator import orchestrate_fallback
from core314.core.automation.queue import ExecutionQueue
from core314.core.config import Settings, settings as default_settings
from core314.core.exceptions import AutomationError, DeliveryError
from core314.core.models import (
    ExecutionLog,
    ExecutionQueueEntry,
    LogStatus,
    OnErrorAction,
    OrchestrationFlow,
    utcnow,
)

logger = structlog.get_logger()


@dataclass
class ExecutionResult:
    entry: ExecutionQueueEntry
    success: bool
    log: Optional[ExecutionLog] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_scheduled: bool = False
    escalation_event_id: Optional[UUID] = None
    claim_lost: bool = False

    @property
    def execution_log_id(self) -> Optional[UUID]:
        return self.log.id if self.log else None


class Executor:
    """Runs queued actions for one user."""

    def __init__(
        self,
        db: AsyncSession,
        user_id: UUID,
        notifier: NotificationService,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.user_id = user_id
        self.notifier = notifier
        self.config = config or default_settings
        self.queue = ExecutionQueue(db, user_id, self.config)
        self.dispatcher = ActionDispatcher(db, notifier)

    async def execute(self, entry_id: Optional[UUID] = None) -> ExecutionResult:
        """
        Execute one entry: the given one, or the next eligible one.

        Raises:
            NotFoundError: no such entry, or nothing eligible
            InvalidTransitionError: the given entry cannot run now
        """
        if entry_id is None:
            await self.reclaim_stalled()
        entry = await self.queue.claim(entry_id)
        return await self.run(entry)

    async def run(self, entry: ExecutionQueueEntry) -> ExecutionResult:
        """Dispatch a claimed entry and record the outcome."""
        try:
            outcome = await self.dispatcher.dispatch(entry)
        except DeliveryError as e:
            return await self._record_failure(
                entry,
                error=e.message,
                error_code=e.error_code,
                retryable=e.retryable,
                http_status=e.http_status,
            )
        except SQLAlchemyError:
            raise
        except Exception as e:
            # A crashing handler fails the entry for good instead of leaving it claimed
            logger.exception("action_dispatch_crashed", execution_queue_id=str(entry.id), action_type=entry.action_type)
            await self.db.rollback()
            await self.db.refresh(entry)
            message = e.message if isinstance(e, AutomationError) else f"{type(e).__name__}: {e}"
            return await self._record_failure(entry, error=message, error_code="ACTION_FAILED", retryable=False)
        return await self._record_success(entry, outcome)

    async def reclaim_stalled(self) -> list[UUID]:
        """Treat in-progress entries past their lease as failed attempts."""
        reclaimed = []
        for entry in await self.queue.stalled():
            # A lost claim on an earlier entry rolls back and expires the rest
            await self.db.refresh(entry)
            logger.warning("queue_entry_lease_expired", execution_queue_id=str(entry.id))
            result = await self._record_failure(
                entry,
                error="Execution lease expired before completion",
                error_code="LEASE_EXPIRED",
                retryable=True,
            )
            if not result.claim_lost:
                reclaimed.append(entry.id)
        return reclaimed

    # ----------------------------------------------------------------------
    # Outcome recording
    # ----------------------------------------------------------------------

    async def _record_success(self, entry: ExecutionQueueEntry, outcome: ActionOutcome) -> ExecutionResult:
        now = utcnow()
        if not await self.queue.mark_completed(entry, now, outcome.result):
            return await self._claim_lost(entry)
        log = self._append_log(entry, now, LogStatus.COMPLETED, outcome=outcome)
        await self._update_flow_stats(entry, success=True, now=now)
        await self.db.commit()

        logger.info(
            "queue_entry_completed",
            execution_queue_id=str(entry.id),
            action_type=entry.action_type,
            duration_ms=entry.execution_duration_ms,
        )
        return ExecutionResult(entry=entry, success=True, log=log)

    async def _record_failure(
        self,
        entry: ExecutionQueueEntry,
        error: str,
        error_code: str,
        retryable: bool,
        http_status: Optional[int] = None,
    ) -> ExecutionResult:
        now = utcnow()
        if retryable and self.queue.retries_left(entry):
            if not await self.queue.schedule_retry(entry, now, error, error_code):
                return await self._claim_lost(entry)
            await self.db.commit()
            logger.warning(
                "queue_entry_retry_scheduled",
                execution_queue_id=str(entry.id),
                attempt=entry.current_retry_attempt,
                next_retry_at=entry.next_retry_at.isoformat(),
                error=error,
            )
            return ExecutionResult(
                entry=entry,
                success=False,
                error=error,
                error_code=error_code,
                retry_scheduled=True,
            )

        if not await self.queue.mark_failed(entry, now, error, error_code):
            return await self._claim_lost(entry)
        log = self._append_log(entry, now, LogStatus.FAILED, error=error, error_code=error_code, http_status=http_status)
        await self._update_flow_stats(entry, success=False, now=now)
        await self.db.commit()
        logger.error(
            "queue_entry_failed",
            execution_queue_id=str(entry.id),
            action_type=entry.action_type,
            attempts=entry.current_retry_attempt + 1,
            error=error,
        )

        result = ExecutionResult(entry=entry, success=False, log=log, error=error, error_code=error_code)
        result.escalation_event_id = await self._apply_error_policy(entry, log)
        return result

    async def _claim_lost(self, entry: ExecutionQueueEntry) -> ExecutionResult:
        """
        The lease ran out and another executor settled or re-claimed the entry.

        Nothing from this attempt is kept: no status change, no log row, no
        statistics. The entry is reloaded so callers see its current state.
        """
        await self.db.rollback()
        await self.db.refresh(entry)
        return ExecutionResult(
            entry=entry,
            success=False,
            error="Execution lease was lost before the outcome was recorded",
            error_code="CLAIM_LOST",
            claim_lost=True,
        )

    def _append_log(
        self,
        entry: ExecutionQueueEntry,
        now: datetime,
        status: LogStatus,
        outcome: Optional[ActionOutcome] = None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
    ) -> ExecutionLog:
        started_at = entry.started_at or now
        log = ExecutionLog(
            user_id=entry.user_id,
            execution_queue_id=entry.id,
            orchestration_flow_id=entry.orchestration_flow_id,
            decision_event_id=entry.decision_event_id,
            recommendation_id=entry.recommendation_id,
            action_type=entry.action_type,
            action_target=entry.action_target,
            action_payload=entry.action_payload,
            action_config=entry.action_config,
            execution_status=status,
            success=status == LogStatus.COMPLETED,
            execution_result=outcome.result if outcome else None,
            execution_error=error,
            execution_error_code=error_code,
            started_at=started_at,
            completed_at=now,
            execution_duration_ms=entry.execution_duration_ms or 0,
            queue_wait_time_ms=max(0, int((started_at - entry.created_at).total_seconds() * 1000)),
            retry_attempt=entry.current_retry_attempt,
            http_status_code=outcome.http_status_code if outcome else http_status,
            http_response_time_ms=outcome.http_response_time_ms if outcome else None,
            integration_name=outcome.integration_name if outcome else None,
            integration_endpoint=outcome.integration_endpoint if outcome else None,
            integration_method=outcome.integration_method if outcome else None,
            context_data=entry.context_data,
            triggered_by="automation",
        )
        self.db.add(log)
        return log

    async def _update_flow_stats(self, entry: ExecutionQueueEntry, success: bool, now: datetime) -> None:
        """Single UPDATE so concurrent executors never lose increments."""
        if entry.orchestration_flow_id is None:
            return
        await self.db.execute(
            update(OrchestrationFlow)
            .where(OrchestrationFlow.id == entry.orchestration_flow_id)
            .values(
                total_executions=OrchestrationFlow.total_executions + 1,
                successful_executions=OrchestrationFlow.successful_executions + (1 if success else 0),
                failed_executions=OrchestrationFlow.failed_executions + (0 if success else 1),
                total_execution_time_ms=OrchestrationFlow.total_execution_time_ms + (entry.execution_duration_ms or 0),
                last_executed_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    # ----------------------------------------------------------------------
    # Flow error policy
    # ----------------------------------------------------------------------

    async def _apply_error_policy(self, entry: ExecutionQueueEntry, log: ExecutionLog) -> Optional[UUID]:
        """
        Apply the owning flow's on_error_action after a permanent failure.

        The failure is already recorded; problems here are logged and never
        change the execution result.
        """
        if entry.orchestration_flow_id is None:
            return None
        flow = (
            await self.db.execute(select(OrchestrationFlow).where(OrchestrationFlow.id == entry.orchestration_flow_id))
        ).scalar_one_or_none()
        if flow is None:
            return None

        try:
            if flow.on_error_action == OnErrorAction.ESCALATE:
                handler = EscalationHandler(self.db, self.user_id, self.notifier, self.config)
                outcome = await handler.escalate(
                    escalation_reason=f"Execution failed: {entry.execution_error}",
                    trigger_context={},
                    execution_queue_id=entry.id,
                    execution_log_id=log.id,
                )
                await self.db.commit()
                return outcome.event.id if outcome.event else None
            if flow.on_error_action == OnErrorAction.ABORT and entry.orchestration_run_id:
                await self.queue.cancel_run(entry.orchestration_run_id, reason=f"Aborted after step {entry.step_id} failed")
                await self.db.commit()
            elif flow.on_error_action == OnErrorAction.FALLBACK:
                await orchestrate_fallback(self.db, flow, _original_context(entry))
                await self.db.commit()
        except AutomationError as e:
            await self.db.rollback()
            await self.db.refresh(entry)
            await self.db.refresh(log)
            logger.warning(
                "error_policy_failed",
                execution_queue_id=str(entry.id),
                on_error_action=flow.on_error_action.value,
                error=e.message,
            )
        return None


def _original_context(entry: ExecutionQueueEntry) -> dict[str, Any]:
    context = dict(entry.context_data or {})
    context.pop("trigger_source", None)
    return context
