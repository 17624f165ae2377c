"""
Execution Queue - eligibility, claiming and status transitions.

A pending entry is claimable when its approval is satisfied, its schedule
and retry backoff have passed, it has not expired and its dependencies are
met. Claims are exclusive: rows are locked with SKIP LOCKED where the
backend supports it, and the pending -> in_progress flip is a
compare-and-set UPDATE, so two executors can never take the same entry.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core314.core.config import Settings, settings as default_settings
from core314.core.database import supports_skip_locked
from core314.core.exceptions import InvalidTransitionError, NotFoundError
from core314.core.models import (
    ApprovalStatus,
    DependencyMode,
    ExecutionLog,
    ExecutionQueueEntry,
    QueueStatus,
    utcnow,
)

logger = structlog.get_logger()


def _as_uuid(value: Any) -> Optional[UUID]:
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except ValueError:
        return None


def _percentile(ordered: list[int], pct: float) -> Optional[int]:
    """Nearest-rank percentile of an already sorted list."""
    if not ordered:
        return None
    rank = max(1, -(-len(ordered) * pct // 100))
    return ordered[int(rank) - 1]


@dataclass
class QueueStatistics:
    window_hours: int
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: Optional[float]
    avg_duration_ms: Optional[int]
    p50_duration_ms: Optional[int]
    p95_duration_ms: Optional[int]
    p99_duration_ms: Optional[int]
    by_action_type: dict[str, dict[str, int]]
    queue_by_status: dict[str, int]


class ExecutionQueue:
    """Queue operations scoped to one owning user."""

    def __init__(self, db: AsyncSession, user_id: UUID, config: Optional[Settings] = None):
        self.db = db
        self.user_id = user_id
        self.config = config or default_settings

    # ----------------------------------------------------------------------
    # Lookup
    # ----------------------------------------------------------------------

    async def get(self, entry_id: UUID) -> ExecutionQueueEntry:
        entry = (
            await self.db.execute(
                select(ExecutionQueueEntry).where(
                    ExecutionQueueEntry.id == entry_id,
                    ExecutionQueueEntry.user_id == self.user_id,
                )
            )
        ).scalar_one_or_none()
        if entry is None:
            raise NotFoundError("Execution queue entry not found")
        return entry

    # ----------------------------------------------------------------------
    # Eligibility
    # ----------------------------------------------------------------------

    @staticmethod
    def is_due(entry: ExecutionQueueEntry, now: datetime) -> bool:
        if entry.scheduled_for is not None and entry.scheduled_for > now:
            return False
        if entry.next_retry_at is not None and entry.next_retry_at > now:
            return False
        return True

    @staticmethod
    def is_overdue(entry: ExecutionQueueEntry, now: datetime) -> bool:
        return entry.expires_at is not None and entry.expires_at <= now

    async def dependencies_satisfied(self, entry: ExecutionQueueEntry) -> bool:
        """``all``: every dependency completed. ``any``: at least one completed."""
        dependency_ids = [dep for dep in (_as_uuid(d) for d in entry.depends_on or []) if dep]
        if not dependency_ids:
            return True

        completed = (
            await self.db.execute(
                select(func.count())
                .select_from(ExecutionQueueEntry)
                .where(
                    ExecutionQueueEntry.id.in_(dependency_ids),
                    ExecutionQueueEntry.status == QueueStatus.COMPLETED,
                )
            )
        ).scalar_one()

        if entry.dependency_mode == DependencyMode.ANY:
            return completed > 0
        return completed == len(dependency_ids)

    # ----------------------------------------------------------------------
    # Claiming
    # ----------------------------------------------------------------------

    async def claim(self, entry_id: Optional[UUID] = None) -> ExecutionQueueEntry:
        """
        Claim one entry for execution and commit the claim.

        With ``entry_id`` that entry must itself be eligible; otherwise the
        highest-priority (lowest number), oldest eligible entry is taken.

        Raises:
            NotFoundError: unknown entry, or nothing eligible
            InvalidTransitionError: explicit entry not claimable right now
        """
        now = utcnow()
        if entry_id is not None:
            entry = await self._claim_explicit(entry_id, now)
        else:
            entry = await self._claim_next(now)
        await self.db.commit()
        logger.info(
            "queue_entry_claimed",
            execution_queue_id=str(entry.id),
            action_type=entry.action_type,
            attempt=entry.current_retry_attempt,
        )
        return entry

    async def _claim_explicit(self, entry_id: UUID, now: datetime) -> ExecutionQueueEntry:
        entry = await self.get(entry_id)
        if entry.status != QueueStatus.PENDING:
            raise InvalidTransitionError(
                f"Execution queue entry is {entry.status.value}, not pending"
            )
        if self.is_overdue(entry, now):
            await self._expire(entry, now)
            await self.db.commit()
            raise InvalidTransitionError("Execution queue entry has expired")
        if not entry.approval_satisfied:
            raise InvalidTransitionError("Execution queue entry is awaiting approval")
        if not self.is_due(entry, now):
            raise InvalidTransitionError("Execution queue entry is not due yet")
        if not await self.dependencies_satisfied(entry):
            raise InvalidTransitionError("Execution queue entry dependencies are not satisfied")
        if not await self._take(entry, now):
            raise InvalidTransitionError("Execution queue entry was claimed by another executor")
        return entry

    async def _claim_next(self, now: datetime) -> ExecutionQueueEntry:
        # Walk the whole eligible set in pages; blocked dependents of a failed
        # step can fill any fixed window ahead of a runnable entry.
        page_size = self.config.EXECUTOR_CANDIDATE_SCAN_LIMIT
        last: Optional[ExecutionQueueEntry] = None
        while True:
            stmt = self._candidates(now, after=last).limit(page_size)
            if supports_skip_locked(self.db):
                stmt = stmt.with_for_update(skip_locked=True)

            page = (await self.db.execute(stmt)).scalars().all()
            for entry in page:
                if self.is_overdue(entry, now):
                    await self._expire(entry, now)
                    continue
                if not await self.dependencies_satisfied(entry):
                    continue
                if await self._take(entry, now):
                    return entry
            if len(page) < page_size:
                break
            last = page[-1]

        # Persist any lazy expiries before reporting an empty queue
        await self.db.commit()
        raise NotFoundError("No eligible execution queue entries")

    def _candidates(self, now: datetime, after: Optional[ExecutionQueueEntry] = None) -> Select:
        """Pending, approved and due entries in claim order, keyset-paged past ``after``."""
        stmt = select(ExecutionQueueEntry).where(
            ExecutionQueueEntry.user_id == self.user_id,
            ExecutionQueueEntry.status == QueueStatus.PENDING,
            or_(
                ExecutionQueueEntry.requires_approval.is_(False),
                ExecutionQueueEntry.approval_status.in_(
                    [ApprovalStatus.APPROVED, ApprovalStatus.AUTO_APPROVED]
                ),
            ),
            or_(ExecutionQueueEntry.scheduled_for.is_(None), ExecutionQueueEntry.scheduled_for <= now),
            or_(ExecutionQueueEntry.next_retry_at.is_(None), ExecutionQueueEntry.next_retry_at <= now),
        )
        if after is not None:
            same_priority = ExecutionQueueEntry.priority == after.priority
            stmt = stmt.where(
                or_(
                    ExecutionQueueEntry.priority > after.priority,
                    and_(same_priority, ExecutionQueueEntry.created_at > after.created_at),
                    and_(
                        same_priority,
                        ExecutionQueueEntry.created_at == after.created_at,
                        ExecutionQueueEntry.id > after.id,
                    ),
                )
            )
        return stmt.order_by(
            ExecutionQueueEntry.priority.asc(),
            ExecutionQueueEntry.created_at.asc(),
            ExecutionQueueEntry.id.asc(),
        )

    async def _take(self, entry: ExecutionQueueEntry, now: datetime) -> bool:
        """Compare-and-set pending -> in_progress. False if someone else won."""
        result = await self.db.execute(
            update(ExecutionQueueEntry)
            .where(
                ExecutionQueueEntry.id == entry.id,
                ExecutionQueueEntry.status == QueueStatus.PENDING,
            )
            .values(
                status=QueueStatus.IN_PROGRESS,
                started_at=now,
                lease_expires_at=now + timedelta(seconds=self.config.EXECUTION_LEASE_SECONDS),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self.db.refresh(entry)
        return True

    async def _expire(self, entry: ExecutionQueueEntry, now: datetime) -> None:
        result = await self.db.execute(
            update(ExecutionQueueEntry)
            .where(
                ExecutionQueueEntry.id == entry.id,
                ExecutionQueueEntry.status == QueueStatus.PENDING,
            )
            .values(status=QueueStatus.EXPIRED, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("queue_entry_expired", execution_queue_id=str(entry.id))
        await self.db.refresh(entry)

    async def stalled(self, now: Optional[datetime] = None) -> list[ExecutionQueueEntry]:
        """In-progress entries whose lease has run out."""
        now = now or utcnow()
        result = await self.db.execute(
            select(ExecutionQueueEntry)
            .where(
                ExecutionQueueEntry.user_id == self.user_id,
                ExecutionQueueEntry.status == QueueStatus.IN_PROGRESS,
                ExecutionQueueEntry.lease_expires_at.is_not(None),
                ExecutionQueueEntry.lease_expires_at <= now,
            )
            .order_by(ExecutionQueueEntry.lease_expires_at.asc())
        )
        return list(result.scalars().all())

    # ----------------------------------------------------------------------
    # Transitions
    # ----------------------------------------------------------------------
    # Outcome writes are compare-and-set against the claim: they land only
    # while the entry is still in_progress under the lease it was claimed
    # with. Each returns False when that claim has been lost.

    async def mark_completed(self, entry: ExecutionQueueEntry, now: datetime, result: dict[str, Any]) -> bool:
        return await self._settle(
            entry,
            status=QueueStatus.COMPLETED,
            completed_at=now,
            lease_expires_at=None,
            execution_result=result,
            execution_error=None,
            execution_error_code=None,
            execution_duration_ms=self._elapsed_ms(entry, now),
        )

    async def schedule_retry(self, entry: ExecutionQueueEntry, now: datetime, error: str, error_code: str) -> bool:
        """Return to pending with exponential backoff: backoff * 2^attempt."""
        delay = entry.retry_backoff_seconds * (2 ** entry.current_retry_attempt)
        return await self._settle(
            entry,
            status=QueueStatus.PENDING,
            current_retry_attempt=entry.current_retry_attempt + 1,
            last_retry_at=now,
            next_retry_at=now + timedelta(seconds=delay),
            lease_expires_at=None,
            execution_error=error,
            execution_error_code=error_code,
            execution_duration_ms=self._elapsed_ms(entry, now),
        )

    async def mark_failed(self, entry: ExecutionQueueEntry, now: datetime, error: str, error_code: str) -> bool:
        return await self._settle(
            entry,
            status=QueueStatus.FAILED,
            completed_at=now,
            lease_expires_at=None,
            execution_error=error,
            execution_error_code=error_code,
            execution_duration_ms=self._elapsed_ms(entry, now),
        )

    async def _settle(self, entry: ExecutionQueueEntry, **values: Any) -> bool:
        result = await self.db.execute(
            update(ExecutionQueueEntry)
            .where(
                ExecutionQueueEntry.id == entry.id,
                ExecutionQueueEntry.status == QueueStatus.IN_PROGRESS,
                ExecutionQueueEntry.lease_expires_at == entry.lease_expires_at,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "queue_entry_claim_lost",
                execution_queue_id=str(entry.id),
                attempted_status=values["status"].value,
            )
            return False
        await self.db.refresh(entry)
        return True

    @staticmethod
    def retries_left(entry: ExecutionQueueEntry) -> bool:
        """max_retry_attempts is the total number of attempts allowed."""
        return entry.current_retry_attempt + 1 < entry.max_retry_attempts

    @staticmethod
    def _elapsed_ms(entry: ExecutionQueueEntry, now: datetime) -> int:
        if entry.started_at is None:
            return 0
        return max(0, int((now - entry.started_at).total_seconds() * 1000))

    async def clone_for_retry(self, entry: ExecutionQueueEntry) -> ExecutionQueueEntry:
        """Issue a fresh pending copy of ``entry`` (terminal entries stay final)."""
        clone = ExecutionQueueEntry(
            user_id=entry.user_id,
            orchestration_flow_id=entry.orchestration_flow_id,
            orchestration_run_id=entry.orchestration_run_id,
            decision_event_id=entry.decision_event_id,
            recommendation_id=entry.recommendation_id,
            step_id=entry.step_id,
            action_type=entry.action_type,
            action_target=entry.action_target,
            action_payload=dict(entry.action_payload or {}),
            action_config=dict(entry.action_config or {}),
            priority=entry.priority,
            urgency=entry.urgency,
            requires_approval=False,
            max_retry_attempts=entry.max_retry_attempts,
            retry_backoff_seconds=entry.retry_backoff_seconds,
            expires_at=entry.expires_at,
            context_data={**(entry.context_data or {}), "retry_of": str(entry.id)},
            tags=list(entry.tags or []),
        )
        self.db.add(clone)
        await self.db.flush()
        return clone

    # ----------------------------------------------------------------------
    # Approval and cancellation
    # ----------------------------------------------------------------------

    async def approve(self, entry_id: UUID, approver_id: UUID, notes: Optional[str] = None) -> ExecutionQueueEntry:
        entry = await self._awaiting_approval(entry_id)
        entry.approval_status = ApprovalStatus.APPROVED
        entry.approved_by = approver_id
        entry.approved_at = utcnow()
        entry.approval_notes = notes
        await self.db.flush()
        logger.info("queue_entry_approved", execution_queue_id=str(entry.id))
        return entry

    async def reject(self, entry_id: UUID, approver_id: UUID, notes: Optional[str] = None) -> ExecutionQueueEntry:
        """Rejection cancels the entry."""
        entry = await self._awaiting_approval(entry_id)
        now = utcnow()
        entry.approval_status = ApprovalStatus.REJECTED
        entry.approved_by = approver_id
        entry.approved_at = now
        entry.approval_notes = notes
        entry.transition_to(QueueStatus.CANCELLED)
        entry.completed_at = now
        await self.db.flush()
        logger.info("queue_entry_rejected", execution_queue_id=str(entry.id))
        return entry

    async def _awaiting_approval(self, entry_id: UUID) -> ExecutionQueueEntry:
        entry = await self.get(entry_id)
        if (
            entry.status != QueueStatus.PENDING
            or not entry.requires_approval
            or entry.approval_status != ApprovalStatus.PENDING
        ):
            raise InvalidTransitionError("Execution queue entry is not awaiting approval")
        return entry

    async def cancel(self, entry_id: UUID) -> ExecutionQueueEntry:
        """Cancel a pending entry. In-flight and terminal entries cannot be cancelled."""
        entry = await self.get(entry_id)
        if entry.status != QueueStatus.PENDING:
            raise InvalidTransitionError(f"Execution queue entry is {entry.status.value}, not pending")
        entry.transition_to(QueueStatus.CANCELLED)
        entry.completed_at = utcnow()
        await self.db.flush()
        return entry

    async def cancel_run(self, run_id: UUID, reason: str) -> list[UUID]:
        """Cancel every still-pending entry of one orchestration run."""
        result = await self.db.execute(
            select(ExecutionQueueEntry).where(
                ExecutionQueueEntry.user_id == self.user_id,
                ExecutionQueueEntry.orchestration_run_id == run_id,
                ExecutionQueueEntry.status == QueueStatus.PENDING,
            )
        )
        now = utcnow()
        cancelled = []
        for entry in result.scalars().all():
            entry.transition_to(QueueStatus.CANCELLED)
            entry.completed_at = now
            entry.execution_error = reason
            cancelled.append(entry.id)
        await self.db.flush()
        logger.info("orchestration_run_halted", orchestration_run_id=str(run_id), cancelled=len(cancelled))
        return cancelled

    async def pending_approvals(self) -> list[ExecutionQueueEntry]:
        result = await self.db.execute(
            select(ExecutionQueueEntry)
            .where(
                ExecutionQueueEntry.user_id == self.user_id,
                ExecutionQueueEntry.status == QueueStatus.PENDING,
                ExecutionQueueEntry.requires_approval.is_(True),
                ExecutionQueueEntry.approval_status == ApprovalStatus.PENDING,
            )
            .order_by(ExecutionQueueEntry.priority.asc(), ExecutionQueueEntry.created_at.asc())
        )
        return list(result.scalars().all())

    async def expire_overdue(self) -> int:
        """Bulk-expire pending entries past their expiry time."""
        now = utcnow()
        result = await self.db.execute(
            update(ExecutionQueueEntry)
            .where(
                ExecutionQueueEntry.user_id == self.user_id,
                ExecutionQueueEntry.status == QueueStatus.PENDING,
                ExecutionQueueEntry.expires_at.is_not(None),
                ExecutionQueueEntry.expires_at <= now,
            )
            .values(status=QueueStatus.EXPIRED, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info("queue_entries_expired", count=result.rowcount)
        return result.rowcount

    # ----------------------------------------------------------------------
    # Reporting
    # ----------------------------------------------------------------------

    async def statistics(self, window_hours: int = 24) -> QueueStatistics:
        since = utcnow() - timedelta(hours=window_hours)
        logs = (
            await self.db.execute(
                select(ExecutionLog.action_type, ExecutionLog.success, ExecutionLog.execution_duration_ms)
                .where(ExecutionLog.user_id == self.user_id, ExecutionLog.created_at >= since)
            )
        ).all()

        by_action_type: dict[str, dict[str, int]] = {}
        durations = []
        successful = 0
        for action_type, success, duration in logs:
            bucket = by_action_type.setdefault(action_type, {"total": 0, "successful": 0, "failed": 0})
            bucket["total"] += 1
            bucket["successful" if success else "failed"] += 1
            successful += 1 if success else 0
            durations.append(duration)
        durations.sort()

        status_rows = (
            await self.db.execute(
                select(ExecutionQueueEntry.status, func.count())
                .where(ExecutionQueueEntry.user_id == self.user_id)
                .group_by(ExecutionQueueEntry.status)
            )
        ).all()

        total = len(logs)
        return QueueStatistics(
            window_hours=window_hours,
            total_executions=total,
            successful_executions=successful,
            failed_executions=total - successful,
            success_rate=round(successful / total * 100, 2) if total else None,
            avg_duration_ms=round(sum(durations) / total) if total else None,
            p50_duration_ms=_percentile(durations, 50),
            p95_duration_ms=_percentile(durations, 95),
            p99_duration_ms=_percentile(durations, 99),
            by_action_type=by_action_type,
            queue_by_status={status.value: count for status, count in status_rows},
        )

    async def recent_failures(self, limit: int = 20) -> list[ExecutionLog]:
        result = await self.db.execute(
            select(ExecutionLog)
            .where(ExecutionLog.user_id == self.user_id, ExecutionLog.success.is_(False))
            .order_by(ExecutionLog.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
