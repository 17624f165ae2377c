"""
Executor and execution queue: claiming, dispatch, retries and the log.
"""

import json
from datetime import timedelta
from typing import Any
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core314.core.automation.executor import Executor
from core314.core.automation.notifications import NotificationService
from core314.core.automation.orchestrator import OrchestrationResult, Orchestrator
from core314.core.automation.queue import ExecutionQueue
from core314.core.config import Settings
from core314.core.exceptions import ImmutableRecordError, InvalidTransitionError, NotFoundError
from core314.core.models import (
    AutomationTask,
    DependencyMode,
    EscalationEvent,
    ExecutionLog,
    ExecutionMode,
    ExecutionQueueEntry,
    LogStatus,
    OnErrorAction,
    QueueStatus,
    TaskStatus,
    User,
    utcnow,
)
from tests.conftest import TestingSessionLocal
from tests.helpers import PARTNER_URL, SLACK_URL, RecordingTransport, action_step, create_flow, create_rule


async def _run_flow(db: AsyncSession, user: User, steps: list[dict[str, Any]], **flow_fields: Any) -> OrchestrationResult:
    flow = await create_flow(db, user.id, steps, **flow_fields)
    return await Orchestrator(db, user.id).orchestrate(flow.trigger_type, {"source": "test"}, flow_id=flow.id)


async def _logs(db: AsyncSession) -> list[ExecutionLog]:
    return list((await db.execute(select(ExecutionLog))).scalars().all())


class TestDispatch:
    async def test_successful_notification(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        run = await _run_flow(db_session, test_user, [action_step("a", action_payload={"message": "Deal closed"})])
        entry = run.entries[0]

        result = await Executor(db_session, test_user.id, notifier).execute(entry.id)

        assert result.success is True
        assert entry.status == QueueStatus.COMPLETED
        assert entry.completed_at is not None
        assert http_log.urls() == [SLACK_URL]
        assert "Deal closed" in json.loads(http_log.requests[0].content)["text"]

        log = (await _logs(db_session))[0]
        assert log.id == result.execution_log_id
        assert log.success is True
        assert log.execution_status == LogStatus.COMPLETED
        assert log.execution_queue_id == entry.id
        assert log.http_status_code == 200
        assert log.integration_endpoint == SLACK_URL

    async def test_api_call_get_sends_no_body(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        step = action_step(
            "a",
            action_type="api_call",
            action_target="crm",
            action_config={"url": PARTNER_URL, "method": "GET"},
            action_payload={"ignored": True},
        )
        run = await _run_flow(db_session, test_user, [step])

        result = await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        assert result.success is True
        request = http_log.requests[0]
        assert request.method == "GET"
        assert request.content == b""
        assert result.log.integration_name == "crm"
        assert result.log.integration_method == "GET"

    async def test_trigger_webhook_posts_envelope(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        step = action_step("a", action_type="trigger_webhook", action_target=PARTNER_URL, action_payload={"id": 7})
        run = await _run_flow(db_session, test_user, [step])

        await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        body = json.loads(http_log.requests[0].content)
        assert body == {
            "action_type": "trigger_webhook",
            "execution_queue_id": str(run.entries[0].id),
            "payload": {"id": 7},
        }

    async def test_create_task(self, db_session: AsyncSession, test_user: User, notifier: NotificationService):
        step = action_step("a", action_type="create_task", action_payload={"title": "Call the customer"})
        run = await _run_flow(db_session, test_user, [step])

        result = await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        task = (await db_session.execute(select(AutomationTask))).scalar_one()
        assert task.title == "Call the customer"
        assert task.source == "automation"
        assert task.execution_queue_id == run.entries[0].id
        assert result.entry.execution_result == {"task_id": str(task.id)}

    async def test_update_record(self, db_session: AsyncSession, test_user: User, notifier: NotificationService):
        task = AutomationTask(user_id=test_user.id, title="Follow up")
        db_session.add(task)
        await db_session.commit()
        step = action_step(
            "a",
            action_type="update_record",
            action_target="automation_task",
            action_payload={"record_id": str(task.id), "values": {"status": "done"}},
        )
        run = await _run_flow(db_session, test_user, [step])

        result = await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        assert result.success is True
        await db_session.refresh(task)
        assert task.status == TaskStatus.DONE

    async def test_update_record_cannot_reach_other_users(
        self, db_session: AsyncSession, test_user: User, other_user: User, notifier: NotificationService
    ):
        task = AutomationTask(user_id=other_user.id, title="Not yours")
        db_session.add(task)
        await db_session.commit()
        step = action_step(
            "a",
            action_type="update_record",
            action_target="automation_task",
            action_payload={"record_id": str(task.id), "values": {"status": "done"}},
        )
        run = await _run_flow(db_session, test_user, [step], on_error_action=OnErrorAction.SKIP)

        result = await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        assert result.success is False
        assert result.error_code == "ACTION_FAILED"
        await db_session.refresh(task)
        assert task.status == TaskStatus.OPEN

    async def test_unknown_action_type_fails_without_side_effects(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        entry = ExecutionQueueEntry(user_id=test_user.id, action_type="teleport", action_target="mars")
        db_session.add(entry)
        await db_session.commit()

        result = await Executor(db_session, test_user.id, notifier).execute(entry.id)

        assert result.success is False
        assert result.retry_scheduled is False
        assert result.error == "Unknown action type: teleport"
        assert entry.status == QueueStatus.FAILED
        assert http_log.requests == []
        assert len(await _logs(db_session)) == 1

    async def test_unrecognized_notification_priority_is_delivered_as_normal(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        step = action_step(
            "a",
            action_target="webhook",
            action_config={"url": PARTNER_URL},
            action_payload={"message": "Renewal due", "priority": "medium"},
        )
        run = await _run_flow(db_session, test_user, [step])

        result = await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        assert result.success is True
        assert run.entries[0].status == QueueStatus.COMPLETED
        assert json.loads(http_log.requests[0].content)["priority"] == "normal"

    async def test_crashing_handler_fails_entry_instead_of_leaving_it_claimed(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        step = action_step("a", action_type="create_task", action_payload={"title": "Call the customer"})
        run = await _run_flow(db_session, test_user, [step], on_error_action=OnErrorAction.SKIP)
        executor = Executor(db_session, test_user.id, notifier)

        async def crash(entry: ExecutionQueueEntry):
            raise KeyError("assignee")

        executor.dispatcher._handlers["create_task"] = crash

        result = await executor.execute(run.entries[0].id)

        assert result.success is False
        assert result.retry_scheduled is False
        assert result.error_code == "ACTION_FAILED"
        assert result.error == "KeyError: 'assignee'"
        assert run.entries[0].status == QueueStatus.FAILED
        assert run.entries[0].lease_expires_at is None
        assert len(await _logs(db_session)) == 1

    async def test_action_timeout_stays_inside_the_lease(
        self, db_session: AsyncSession, test_user: User, http_log: RecordingTransport
    ):
        config = Settings(EXECUTION_LEASE_SECONDS=10)
        step = action_step(
            "a",
            action_type="api_call",
            action_target="crm",
            action_config={"url": PARTNER_URL, "timeout_seconds": 600},
        )
        run = await _run_flow(db_session, test_user, [step])

        async with httpx.AsyncClient(transport=httpx.MockTransport(http_log)) as http_client:
            notifier = NotificationService(client=http_client, config=config)
            result = await Executor(db_session, test_user.id, notifier, config).execute(run.entries[0].id)

        assert result.success is True
        assert http_log.requests[0].extensions["timeout"]["read"] == 8.0


class TestSequentialDependencies:
    async def test_second_step_waits_for_first(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        run = await _run_flow(db_session, test_user, [action_step("first"), action_step("second")])
        first, second = run.entries
        executor = Executor(db_session, test_user.id, notifier)

        with pytest.raises(InvalidTransitionError, match="dependencies"):
            await executor.execute(second.id)
        assert second.status == QueueStatus.PENDING

        await executor.execute(first.id)
        result = await executor.execute(second.id)

        assert result.success is True
        assert second.status == QueueStatus.COMPLETED

    async def test_auto_select_skips_blocked_entries(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        run = await _run_flow(db_session, test_user, [action_step("first"), action_step("second")])
        executor = Executor(db_session, test_user.id, notifier)

        first_result = await executor.execute()
        second_result = await executor.execute()

        assert first_result.entry.id == run.entries[0].id
        assert second_result.entry.id == run.entries[1].id
        with pytest.raises(NotFoundError):
            await executor.execute()

    async def test_auto_select_looks_past_a_window_of_blocked_dependents(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        http_log.fail(PARTNER_URL, 500)
        steps = [action_step("s0", action_config={"webhook_url": PARTNER_URL}, max_retry_attempts=1)]
        steps += [action_step(f"s{i}") for i in range(1, 52)]
        blocked = await _run_flow(db_session, test_user, steps, on_error_action=OnErrorAction.SKIP)
        ready = await _run_flow(db_session, test_user, [action_step("ready")], trigger_type="manual", flow_name="Ready")
        executor = Executor(db_session, test_user.id, notifier)
        await executor.execute(blocked.entries[0].id)

        result = await executor.execute()

        assert len(blocked.entries) - 1 > executor.config.EXECUTOR_CANDIDATE_SCAN_LIMIT
        assert result.entry.id == ready.entries[0].id
        assert result.success is True
        assert all(e.status == QueueStatus.PENDING for e in blocked.entries[1:])

    async def test_any_dependency_mode(self, db_session: AsyncSession, test_user: User, notifier: NotificationService):
        first = ExecutionQueueEntry(user_id=test_user.id, action_type="create_task", action_target="internal")
        second = ExecutionQueueEntry(user_id=test_user.id, action_type="create_task", action_target="internal")
        db_session.add_all([first, second])
        await db_session.flush()
        waiting = ExecutionQueueEntry(
            user_id=test_user.id,
            action_type="create_task",
            action_target="internal",
            depends_on=[str(first.id), str(second.id)],
            dependency_mode=DependencyMode.ANY,
        )
        db_session.add(waiting)
        await db_session.commit()
        executor = Executor(db_session, test_user.id, notifier)

        await executor.execute(first.id)
        result = await executor.execute(waiting.id)

        assert result.success is True


class TestClaimOrdering:
    async def test_highest_priority_first(self, db_session: AsyncSession, test_user: User, notifier: NotificationService):
        steps = [action_step("low", priority=7), action_step("urgent", priority=1), action_step("mid", priority=3)]
        await _run_flow(db_session, test_user, steps, execution_mode=ExecutionMode.PARALLEL)
        executor = Executor(db_session, test_user.id, notifier)

        order = [(await executor.execute()).entry.step_id for _ in range(3)]

        assert order == ["urgent", "mid", "low"]

    async def test_oldest_first_within_priority(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        await _run_flow(db_session, test_user, [action_step("a")], flow_name="One")
        await _run_flow(db_session, test_user, [action_step("b")], flow_name="Two")

        result = await Executor(db_session, test_user.id, notifier).execute()

        assert result.entry.step_id == "a"

    async def test_empty_queue(self, db_session: AsyncSession, test_user: User, notifier: NotificationService):
        with pytest.raises(NotFoundError, match="No eligible"):
            await Executor(db_session, test_user.id, notifier).execute()

    async def test_unknown_entry(self, db_session: AsyncSession, test_user: User, notifier: NotificationService):
        with pytest.raises(NotFoundError, match="not found"):
            await Executor(db_session, test_user.id, notifier).execute(uuid4())

    async def test_other_users_entry_is_not_found(
        self, db_session: AsyncSession, test_user: User, other_user: User, notifier: NotificationService
    ):
        entry = ExecutionQueueEntry(user_id=other_user.id, action_type="create_task", action_target="internal")
        db_session.add(entry)
        await db_session.commit()

        with pytest.raises(NotFoundError):
            await Executor(db_session, test_user.id, notifier).execute(entry.id)
        assert entry.status == QueueStatus.PENDING

    async def test_completed_entry_cannot_run_again(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        run = await _run_flow(db_session, test_user, [action_step("a")])
        executor = Executor(db_session, test_user.id, notifier)
        await executor.execute(run.entries[0].id)

        with pytest.raises(InvalidTransitionError, match="not pending"):
            await executor.execute(run.entries[0].id)

    async def test_claim_marks_in_progress_with_lease(self, db_session: AsyncSession, test_user: User):
        run = await _run_flow(db_session, test_user, [action_step("a")])

        entry = await ExecutionQueue(db_session, test_user.id).claim(run.entries[0].id)

        assert entry.status == QueueStatus.IN_PROGRESS
        assert entry.started_at is not None
        assert entry.lease_expires_at > entry.started_at


class TestEligibility:
    async def test_awaiting_approval(self, db_session: AsyncSession, test_user: User, notifier: NotificationService):
        run = await _run_flow(db_session, test_user, [action_step("a", requires_approval=True)])
        entry = run.entries[0]
        executor = Executor(db_session, test_user.id, notifier)

        with pytest.raises(InvalidTransitionError, match="approval"):
            await executor.execute(entry.id)
        with pytest.raises(NotFoundError):
            await executor.execute()

        await ExecutionQueue(db_session, test_user.id).approve(entry.id, test_user.id, "looks fine")
        await db_session.commit()
        result = await executor.execute()

        assert result.entry.id == entry.id
        assert result.success is True

    async def test_rejection_cancels(self, db_session: AsyncSession, test_user: User):
        run = await _run_flow(db_session, test_user, [action_step("a", requires_approval=True)])
        queue = ExecutionQueue(db_session, test_user.id)

        entry = await queue.reject(run.entries[0].id, test_user.id, "not now")

        assert entry.status == QueueStatus.CANCELLED
        assert entry.approval_notes == "not now"
        with pytest.raises(InvalidTransitionError):
            await queue.approve(entry.id, test_user.id)

    async def test_scheduled_entry_not_due(self, db_session: AsyncSession, test_user: User, notifier: NotificationService):
        run = await _run_flow(db_session, test_user, [action_step("a", delay_seconds=3600)])
        executor = Executor(db_session, test_user.id, notifier)

        with pytest.raises(InvalidTransitionError, match="not due"):
            await executor.execute(run.entries[0].id)
        with pytest.raises(NotFoundError):
            await executor.execute()

    async def test_expired_entry_is_marked_and_refused(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        run = await _run_flow(db_session, test_user, [action_step("a", expires_in_minutes=5)])
        entry = run.entries[0]
        entry.expires_at = utcnow() - timedelta(minutes=1)
        await db_session.commit()

        with pytest.raises(InvalidTransitionError, match="expired"):
            await Executor(db_session, test_user.id, notifier).execute(entry.id)

        assert entry.status == QueueStatus.EXPIRED

    async def test_auto_select_expires_overdue_entries(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        run = await _run_flow(db_session, test_user, [action_step("a", expires_in_minutes=5)])
        entry = run.entries[0]
        entry.expires_at = utcnow() - timedelta(minutes=1)
        await db_session.commit()

        with pytest.raises(NotFoundError):
            await Executor(db_session, test_user.id, notifier).execute()

        await db_session.refresh(entry)
        assert entry.status == QueueStatus.EXPIRED

    async def test_bulk_expiry(self, db_session: AsyncSession, test_user: User):
        run = await _run_flow(
            db_session,
            test_user,
            [action_step("a", expires_in_minutes=5), action_step("b")],
            execution_mode=ExecutionMode.PARALLEL,
        )
        run.entries[0].expires_at = utcnow() - timedelta(minutes=1)
        await db_session.commit()

        expired = await ExecutionQueue(db_session, test_user.id).expire_overdue()
        await db_session.commit()

        assert expired == 1
        await db_session.refresh(run.entries[0])
        await db_session.refresh(run.entries[1])
        assert run.entries[0].status == QueueStatus.EXPIRED
        assert run.entries[1].status == QueueStatus.PENDING

    async def test_cancel_only_pending(self, db_session: AsyncSession, test_user: User, notifier: NotificationService):
        run = await _run_flow(db_session, test_user, [action_step("a"), action_step("b")])
        queue = ExecutionQueue(db_session, test_user.id)
        await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        cancelled = await queue.cancel(run.entries[1].id)

        assert cancelled.status == QueueStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            await queue.cancel(run.entries[0].id)


class TestRetries:
    async def test_retry_then_permanent_failure(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        http_log.fail(SLACK_URL, 503)
        run = await _run_flow(
            db_session, test_user, [action_step("a", max_retry_attempts=2, retry_backoff_seconds=0)]
        )
        entry = run.entries[0]
        executor = Executor(db_session, test_user.id, notifier)

        first = await executor.execute(entry.id)

        assert first.success is False
        assert first.retry_scheduled is True
        assert entry.status == QueueStatus.PENDING
        assert entry.current_retry_attempt == 1
        assert entry.execution_error_code == "DELIVERY_FAILED"
        assert await _logs(db_session) == []

        second = await executor.execute(entry.id)

        assert second.success is False
        assert second.retry_scheduled is False
        assert entry.status == QueueStatus.FAILED
        logs = await _logs(db_session)
        assert len(logs) == 1
        assert logs[0].success is False
        assert logs[0].execution_status == LogStatus.FAILED
        assert logs[0].retry_attempt == 1
        assert logs[0].http_status_code == 503
        assert len(http_log.requests) == 2

    async def test_backoff_is_exponential(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        http_log.fail(SLACK_URL, 500)
        run = await _run_flow(
            db_session, test_user, [action_step("a", max_retry_attempts=5, retry_backoff_seconds=10)]
        )
        entry = run.entries[0]
        executor = Executor(db_session, test_user.id, notifier)

        result = await executor.execute(entry.id)
        assert entry.next_retry_at - entry.last_retry_at == timedelta(seconds=10)

        with pytest.raises(InvalidTransitionError, match="not due"):
            await executor.execute(entry.id)

        entry.next_retry_at = utcnow() - timedelta(seconds=1)
        await db_session.commit()
        await executor.execute(entry.id)

        assert result.retry_scheduled is True
        assert entry.current_retry_attempt == 2
        assert entry.next_retry_at - entry.last_retry_at == timedelta(seconds=20)

    async def test_transport_errors_are_retried(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        http_log.unreachable.add(SLACK_URL)
        run = await _run_flow(db_session, test_user, [action_step("a", max_retry_attempts=3)])

        result = await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        assert result.retry_scheduled is True
        assert result.error_code == "DELIVERY_FAILED"

    async def test_single_attempt_budget_fails_immediately(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        http_log.fail(SLACK_URL, 500)
        run = await _run_flow(db_session, test_user, [action_step("a", max_retry_attempts=1)])

        result = await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        assert result.retry_scheduled is False
        assert run.entries[0].status == QueueStatus.FAILED


class TestLeaseReclaim:
    async def _stall(self, db: AsyncSession, user: User, **step_config: Any) -> ExecutionQueueEntry:
        run = await _run_flow(db, user, [action_step("a", **step_config)])
        entry = await ExecutionQueue(db, user.id).claim(run.entries[0].id)
        entry.lease_expires_at = utcnow() - timedelta(seconds=1)
        await db.commit()
        return entry

    async def test_stalled_entry_returns_to_pending(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        entry = await self._stall(db_session, test_user, max_retry_attempts=3, retry_backoff_seconds=0)

        reclaimed = await Executor(db_session, test_user.id, notifier).reclaim_stalled()

        assert reclaimed == [entry.id]
        assert entry.status == QueueStatus.PENDING
        assert entry.current_retry_attempt == 1
        assert entry.execution_error_code == "LEASE_EXPIRED"

    async def test_stalled_entry_without_budget_fails(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        entry = await self._stall(db_session, test_user, max_retry_attempts=1)

        await Executor(db_session, test_user.id, notifier).reclaim_stalled()

        assert entry.status == QueueStatus.FAILED
        logs = await _logs(db_session)
        assert [log.execution_error_code for log in logs] == ["LEASE_EXPIRED"]

    async def test_live_lease_is_left_alone(self, db_session: AsyncSession, test_user: User, notifier: NotificationService):
        run = await _run_flow(db_session, test_user, [action_step("a")])
        await ExecutionQueue(db_session, test_user.id).claim(run.entries[0].id)

        assert await Executor(db_session, test_user.id, notifier).reclaim_stalled() == []

    async def test_auto_execute_reclaims_first(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        entry = await self._stall(db_session, test_user, max_retry_attempts=3, retry_backoff_seconds=0)

        result = await Executor(db_session, test_user.id, notifier).execute()

        assert result.entry.id == entry.id
        assert result.success is True

    async def test_late_outcome_after_reclaim_is_discarded(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        run = await _run_flow(
            db_session, test_user, [action_step("a", max_retry_attempts=1)], on_error_action=OnErrorAction.SKIP
        )
        executor = Executor(db_session, test_user.id, notifier)
        claimed = await executor.queue.claim(run.entries[0].id)

        # A second worker sees the lease run out and settles the entry first
        async with TestingSessionLocal() as other:
            await other.execute(
                update(ExecutionQueueEntry)
                .where(ExecutionQueueEntry.id == claimed.id)
                .values(lease_expires_at=utcnow() - timedelta(seconds=1))
                .execution_options(synchronize_session=False)
            )
            await other.commit()
            assert await Executor(other, test_user.id, notifier).reclaim_stalled() == [claimed.id]

        result = await executor.run(claimed)

        assert result.success is False
        assert result.claim_lost is True
        assert result.log is None
        assert result.error_code == "CLAIM_LOST"
        assert claimed.status == QueueStatus.FAILED
        assert claimed.execution_error_code == "LEASE_EXPIRED"
        logs = await _logs(db_session)
        assert [log.execution_error_code for log in logs] == ["LEASE_EXPIRED"]
        await db_session.refresh(run.flow)
        assert run.flow.total_executions == 1
        assert run.flow.failed_executions == 1


class TestExecutionLog:
    async def test_log_rows_cannot_be_updated(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        run = await _run_flow(db_session, test_user, [action_step("a")])
        result = await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        result.log.execution_error = "rewritten"
        with pytest.raises(ImmutableRecordError):
            await db_session.flush()
        await db_session.rollback()

    async def test_log_rows_cannot_be_deleted(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService
    ):
        run = await _run_flow(db_session, test_user, [action_step("a")])
        result = await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        await db_session.delete(result.log)
        with pytest.raises(ImmutableRecordError):
            await db_session.flush()
        await db_session.rollback()


class TestFlowStatistics:
    async def test_counts_and_average(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        flow = await create_flow(
            db_session,
            test_user.id,
            [action_step("ok"), action_step("broken", action_config={"webhook_url": PARTNER_URL}, max_retry_attempts=1)],
            execution_mode=ExecutionMode.PARALLEL,
            on_error_action=OnErrorAction.SKIP,
        )
        http_log.fail(PARTNER_URL, 500)
        run = await Orchestrator(db_session, test_user.id).orchestrate(flow.trigger_type, {})
        executor = Executor(db_session, test_user.id, notifier)

        for entry in run.entries:
            await executor.execute(entry.id)
        await db_session.refresh(flow)

        assert flow.total_executions == 2
        assert flow.successful_executions == 1
        assert flow.failed_executions == 1
        assert flow.success_rate == 50.0
        assert flow.avg_execution_time_ms is not None
        assert flow.last_executed_at is not None

    async def test_retries_do_not_count(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        http_log.fail(SLACK_URL, 500)
        flow = await create_flow(db_session, test_user.id, [action_step("a", max_retry_attempts=3)])
        run = await Orchestrator(db_session, test_user.id).orchestrate(flow.trigger_type, {})

        await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)
        await db_session.refresh(flow)

        assert flow.total_executions == 0

    async def test_queue_statistics(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        http_log.fail(PARTNER_URL, 500)
        steps = [
            action_step("ok"),
            action_step("broken", action_type="trigger_webhook", action_target=PARTNER_URL, max_retry_attempts=1),
        ]
        run = await _run_flow(
            db_session, test_user, steps, execution_mode=ExecutionMode.PARALLEL, on_error_action=OnErrorAction.SKIP
        )
        executor = Executor(db_session, test_user.id, notifier)
        for entry in run.entries:
            await executor.execute(entry.id)

        queue = ExecutionQueue(db_session, test_user.id)
        stats = await queue.statistics()
        failures = await queue.recent_failures()

        assert stats.total_executions == 2
        assert stats.success_rate == 50.0
        assert stats.by_action_type["trigger_webhook"] == {"total": 1, "successful": 0, "failed": 1}
        assert stats.queue_by_status == {"completed": 1, "failed": 1}
        assert stats.p50_duration_ms is not None
        assert [log.action_type for log in failures] == ["trigger_webhook"]


class TestErrorPolicy:
    async def test_abort_cancels_rest_of_run(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        http_log.fail(PARTNER_URL, 500)
        steps = [
            action_step("a", action_config={"webhook_url": PARTNER_URL}, max_retry_attempts=1),
            action_step("b"),
            action_step("c"),
        ]
        run = await _run_flow(db_session, test_user, steps, on_error_action=OnErrorAction.ABORT)

        await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        assert [e.status for e in run.entries] == [QueueStatus.FAILED, QueueStatus.CANCELLED, QueueStatus.CANCELLED]

    async def test_fallback_flow_is_started(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        http_log.fail(PARTNER_URL, 500)
        fallback = await create_flow(
            db_session, test_user.id, [action_step("manual_review", action_type="create_task")],
            trigger_type="manual", flow_name="Fallback",
        )
        run = await _run_flow(
            db_session,
            test_user,
            [action_step("a", action_config={"webhook_url": PARTNER_URL}, max_retry_attempts=1)],
            on_error_action=OnErrorAction.FALLBACK,
            fallback_flow_id=fallback.id,
        )

        await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        fallback_entries = (
            await db_session.execute(
                select(ExecutionQueueEntry).where(ExecutionQueueEntry.orchestration_flow_id == fallback.id)
            )
        ).scalars().all()
        assert [e.step_id for e in fallback_entries] == ["manual_review"]
        assert fallback_entries[0].context_data["source"] == "test"
        assert fallback_entries[0].context_data["trigger_source"] == "fallback"

    async def test_escalate_opens_event(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        http_log.fail(PARTNER_URL, 500)
        await create_rule(db_session, test_user.id, escalation_levels=[{"level": 1, "actions": ["create_ticket"]}])
        run = await _run_flow(
            db_session,
            test_user,
            [action_step("a", action_config={"webhook_url": PARTNER_URL}, max_retry_attempts=1)],
        )

        result = await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        event = (await db_session.execute(select(EscalationEvent))).scalar_one()
        assert result.escalation_event_id == event.id
        assert event.execution_queue_id == run.entries[0].id
        assert event.execution_log_id == result.execution_log_id

    async def test_escalate_without_rule_is_quiet(
        self, db_session: AsyncSession, test_user: User, notifier: NotificationService, http_log: RecordingTransport
    ):
        http_log.fail(SLACK_URL, 500)
        run = await _run_flow(db_session, test_user, [action_step("a", max_retry_attempts=1)])

        result = await Executor(db_session, test_user.id, notifier).execute(run.entries[0].id)

        assert result.success is False
        assert result.escalation_event_id is None
