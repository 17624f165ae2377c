"""
HTTP surface: authentication, trigger endpoints, flow/queue/escalation management.
"""

import json
from uuid import uuid4

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from core314.api.deps import SCOPE_EXECUTOR_EXECUTE, create_access_token, create_delegation_token
from core314.api.main import app
from core314.core.models import ExecutionMode, User
from tests.helpers import PARTNER_URL, SLACK_URL, RecordingTransport, action_step, create_flow


API = "/api/v1"


def _headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


async def _trigger(client: AsyncClient, headers: dict[str, str], trigger_type: str = "threshold_exceeded", **body):
    return await client.post(
        f"{API}/orchestrator/trigger",
        json={"trigger_type": trigger_type, **body},
        headers=headers,
    )


# ==========================================================================
# Authentication
# ==========================================================================

class TestAuthentication:
    async def test_missing_token(self, client: AsyncClient):
        response = await _trigger(client, {})

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json() == {"success": False, "error": "Not authenticated", "code": "AUTHENTICATION_FAILED"}

    async def test_garbage_token(self, client: AsyncClient):
        response = await _trigger(client, {"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid or expired token"

    async def test_inactive_user(self, client: AsyncClient, inactive_user: User):
        response = await _trigger(client, _headers(inactive_user))

        assert response.status_code == 401
        assert response.json()["error"] == "User account is deactivated"

    async def test_unknown_user(self, client: AsyncClient, db_session: AsyncSession):
        headers = {"Authorization": f"Bearer {create_access_token(uuid4())}"}

        response = await _trigger(client, headers)

        assert response.status_code == 401
        assert response.json()["error"] == "User not found"

    async def test_delegation_scope_is_enforced(
        self, client: AsyncClient, executor_service_headers: dict[str, str]
    ):
        response = await _trigger(client, executor_service_headers)

        assert response.status_code == 401
        assert "orchestrator:trigger" in response.json()["error"]

    async def test_delegation_token_can_execute(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        auth_headers: dict[str, str],
        executor_service_headers: dict[str, str],
    ):
        await create_flow(db_session, test_user.id, [action_step("a")])
        trigger = await _trigger(client, auth_headers)

        response = await client.post(
            f"{API}/executor/execute",
            json={"execution_queue_id": trigger.json()["execution_queue_ids"][0]},
            headers=executor_service_headers,
        )

        assert response.status_code == 200
        assert response.json()["success"] is True

    async def test_delegation_token_without_service_is_rejected(self, client: AsyncClient, test_user: User):
        token = create_delegation_token(test_user.id, service="", scopes=[SCOPE_EXECUTOR_EXECUTE])

        response = await client.post(
            f"{API}/executor/execute",
            json={"auto_execute": True},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid delegation token"

    async def test_preflight_needs_no_token(self, client: AsyncClient):
        for path in ("/orchestrator/trigger", "/executor/execute", "/escalations/trigger"):
            response = await client.options(f"{API}{path}")
            assert response.status_code == 200, path


# ==========================================================================
# Orchestrator
# ==========================================================================

class TestOrchestratorTrigger:
    async def test_no_matching_flow(self, client: AsyncClient, auth_headers: dict[str, str]):
        response = await _trigger(client, auth_headers, trigger_type="nonexistent_trigger")

        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": "No matching orchestration flow found",
            "code": "NOT_FOUND",
        }

    async def test_queues_action_steps(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        auth_headers: dict[str, str],
    ):
        flow = await create_flow(db_session, test_user.id, [action_step("a"), action_step("b")])

        response = await _trigger(client, auth_headers, trigger_context={"metric": "cpu"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["flow_id"] == str(flow.id)
        assert data["execution_mode"] == "sequential"
        assert data["steps_created"] == 2
        assert len(data["execution_queue_ids"]) == 2
        assert data["estimated_duration_ms"] == 2000

    async def test_missing_trigger_type(self, client: AsyncClient, auth_headers: dict[str, str]):
        response = await client.post(f"{API}/orchestrator/trigger", json={}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert response.json()["error"].startswith("trigger_type")


class TestFlows:
    async def test_create_list_clone_deactivate(self, client: AsyncClient, auth_headers: dict[str, str]):
        created = await client.post(
            f"{API}/flows",
            json={
                "flow_name": "CPU alert",
                "trigger_type": "threshold_exceeded",
                "flow_steps": [action_step("notify")],
                "retry_policy": {"max_attempts": 2, "backoff_seconds": 5},
            },
            headers=auth_headers,
        )
        assert created.status_code == 201
        flow = created.json()["flow"]
        assert flow["flow_version"] == 1
        assert flow["retry_policy"] == {"max_attempts": 2, "backoff_seconds": 5}

        cloned = await client.post(f"{API}/flows/{flow['id']}/clone", json={"flow_name": "CPU alert v2"}, headers=auth_headers)
        assert cloned.status_code == 201
        assert cloned.json()["flow"]["flow_name"] == "CPU alert v2"
        assert cloned.json()["flow"]["flow_version"] == 2
        assert cloned.json()["flow"]["is_active"] is False

        listed = await client.get(f"{API}/flows", headers=auth_headers)
        assert len(listed.json()["flows"]) == 2
        active = await client.get(f"{API}/flows", params={"active_only": True}, headers=auth_headers)
        assert [f["flow_name"] for f in active.json()["flows"]] == ["CPU alert"]

        deactivated = await client.post(f"{API}/flows/{flow['id']}/deactivate", headers=auth_headers)
        assert deactivated.json()["flow"]["is_active"] is False
        active = await client.get(f"{API}/flows", params={"active_only": True}, headers=auth_headers)
        assert active.json()["flows"] == []

    async def test_flow_without_action_steps(self, client: AsyncClient, auth_headers: dict[str, str]):
        response = await client.post(
            f"{API}/flows",
            json={
                "flow_name": "Empty",
                "trigger_type": "threshold_exceeded",
                "flow_steps": [{"id": "c", "type": "condition"}],
            },
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Flow must contain at least one action step"

    async def test_other_users_flow_is_hidden(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        other_user: User,
        auth_headers: dict[str, str],
    ):
        flow = await create_flow(db_session, other_user.id, [action_step("a")])

        response = await client.get(f"{API}/flows/{flow.id}", headers=auth_headers)

        assert response.status_code == 404


# ==========================================================================
# Executor and queue
# ==========================================================================

class TestExecutor:
    async def test_trigger_then_execute(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        auth_headers: dict[str, str],
        http_log: RecordingTransport,
    ):
        await create_flow(db_session, test_user.id, [action_step("a")])
        trigger = await _trigger(client, auth_headers)
        entry_id = trigger.json()["execution_queue_ids"][0]

        response = await client.post(f"{API}/executor/execute", json={"execution_queue_id": entry_id}, headers=auth_headers)

        data = response.json()
        assert response.status_code == 200
        assert data["success"] is True
        assert data["status"] == "completed"
        assert data["execution_log_id"] is not None
        assert http_log.urls() == [SLACK_URL]

    async def test_auto_execute(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        auth_headers: dict[str, str],
    ):
        await create_flow(db_session, test_user.id, [action_step("a")])
        await _trigger(client, auth_headers)

        first = await client.post(f"{API}/executor/execute", json={"auto_execute": True}, headers=auth_headers)
        second = await client.post(f"{API}/executor/execute", json={"auto_execute": True}, headers=auth_headers)

        assert first.json()["success"] is True
        assert second.status_code == 404
        assert second.json()["error"] == "No eligible execution queue entries"

    async def test_request_needs_a_target(self, client: AsyncClient, auth_headers: dict[str, str]):
        response = await client.post(f"{API}/executor/execute", json={}, headers=auth_headers)

        assert response.status_code == 400
        assert "Provide execution_queue_id or set auto_execute" in response.json()["error"]

    async def test_failure_is_reported_in_body(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        auth_headers: dict[str, str],
        http_log: RecordingTransport,
    ):
        http_log.fail(PARTNER_URL, 502)
        await create_flow(
            db_session,
            test_user.id,
            [action_step("a", action_config={"webhook_url": PARTNER_URL}, max_retry_attempts=2)],
        )
        await _trigger(client, auth_headers)

        response = await client.post(f"{API}/executor/execute", json={"auto_execute": True}, headers=auth_headers)

        data = response.json()
        assert response.status_code == 200
        assert data["success"] is False
        assert data["status"] == "pending"
        assert data["retry_scheduled"] is True
        assert data["current_retry_attempt"] == 1
        assert data["next_retry_at"] is not None
        assert data["error_code"] == "DELIVERY_FAILED"

    async def test_blocked_entry_conflicts(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        auth_headers: dict[str, str],
    ):
        await create_flow(db_session, test_user.id, [action_step("a"), action_step("b")])
        trigger = await _trigger(client, auth_headers)
        second = trigger.json()["execution_queue_ids"][1]

        response = await client.post(f"{API}/executor/execute", json={"execution_queue_id": second}, headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"


class TestQueue:
    async def test_approval_flow(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        auth_headers: dict[str, str],
    ):
        await create_flow(db_session, test_user.id, [action_step("a")], requires_approval=True)
        trigger = await _trigger(client, auth_headers)
        entry_id = trigger.json()["execution_queue_ids"][0]

        pending = await client.get(f"{API}/queue/pending-approvals", headers=auth_headers)
        assert [e["id"] for e in pending.json()["entries"]] == [entry_id]

        blocked = await client.post(f"{API}/executor/execute", json={"execution_queue_id": entry_id}, headers=auth_headers)
        assert blocked.status_code == 409

        approved = await client.post(f"{API}/queue/{entry_id}/approve", json={"notes": "ok"}, headers=auth_headers)
        assert approved.json()["entry"]["approval_status"] == "approved"
        assert approved.json()["entry"]["approval_notes"] == "ok"

        executed = await client.post(f"{API}/executor/execute", json={"execution_queue_id": entry_id}, headers=auth_headers)
        assert executed.json()["success"] is True

    async def test_cancel(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        auth_headers: dict[str, str],
    ):
        await create_flow(db_session, test_user.id, [action_step("a")])
        trigger = await _trigger(client, auth_headers)
        entry_id = trigger.json()["execution_queue_ids"][0]

        cancelled = await client.post(f"{API}/queue/{entry_id}/cancel", headers=auth_headers)
        again = await client.post(f"{API}/queue/{entry_id}/cancel", headers=auth_headers)

        assert cancelled.json()["entry"]["status"] == "cancelled"
        assert again.status_code == 409

    async def test_entry_of_other_user_is_hidden(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        other_user: User,
        auth_headers: dict[str, str],
    ):
        await create_flow(db_session, test_user.id, [action_step("a")])
        trigger = await _trigger(client, auth_headers)
        entry_id = trigger.json()["execution_queue_ids"][0]

        own = await client.get(f"{API}/queue/{entry_id}", headers=auth_headers)
        foreign = await client.get(f"{API}/queue/{entry_id}", headers=_headers(other_user))

        assert own.status_code == 200
        assert foreign.status_code == 404

    async def test_statistics_and_failures(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        auth_headers: dict[str, str],
        http_log: RecordingTransport,
    ):
        http_log.fail(PARTNER_URL, 500)
        await create_flow(
            db_session,
            test_user.id,
            [
                action_step("ok"),
                action_step("bad", action_config={"webhook_url": PARTNER_URL}, max_retry_attempts=1),
            ],
            execution_mode=ExecutionMode.PARALLEL,
        )
        await _trigger(client, auth_headers)
        for _ in range(2):
            await client.post(f"{API}/executor/execute", json={"auto_execute": True}, headers=auth_headers)

        stats = (await client.get(f"{API}/queue/statistics", headers=auth_headers)).json()
        failures = (await client.get(f"{API}/queue/failures", headers=auth_headers)).json()

        assert stats["total_executions"] == 2
        assert stats["successful_executions"] == 1
        assert stats["failed_executions"] == 1
        assert stats["success_rate"] == 50.0
        assert stats["queue_by_status"] == {"completed": 1, "failed": 1}
        assert len(failures["logs"]) == 1
        assert failures["logs"][0]["http_status_code"] == 500

    async def test_maintenance_endpoints(self, client: AsyncClient, auth_headers: dict[str, str]):
        expired = await client.post(f"{API}/queue/expire", headers=auth_headers)
        reclaimed = await client.post(f"{API}/queue/reclaim", headers=auth_headers)

        assert expired.json() == {"success": True, "expired": 0}
        assert reclaimed.json() == {"success": True, "reclaimed": []}


# ==========================================================================
# Escalations
# ==========================================================================

class TestEscalations:
    async def _create_rule(self, client: AsyncClient, headers: dict[str, str], **fields) -> dict:
        body = {
            "rule_name": "Timeouts",
            "trigger_conditions": {"failure_category": "timeout"},
            "escalation_levels": [
                {"level": 1, "actions": ["notify_user"], "notify_channels": ["slack"]},
                {"level": 2, "actions": ["page_oncall"]},
            ],
            "notification_channels": {"slack": {"webhook_url": SLACK_URL}},
            "sla_enabled": True,
            "sla_response_time_minutes": 15,
            **fields,
        }
        response = await client.post(f"{API}/escalations/rules", json=body, headers=headers)
        assert response.status_code == 201
        return response.json()["rule"]

    async def test_trigger_and_lifecycle(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        http_log: RecordingTransport,
    ):
        rule = await self._create_rule(client, auth_headers)

        triggered = await client.post(
            f"{API}/escalations/trigger",
            json={"escalation_reason": "Sync timed out", "trigger_context": {"failure_category": "timeout"}},
            headers=auth_headers,
        )
        data = triggered.json()
        assert triggered.status_code == 200
        assert data["escalation_rule_id"] == rule["id"]
        assert data["escalation_level"] == 1
        assert data["notifications_sent"][0]["channel"] == "slack"
        assert data["notifications_sent"][0]["success"] is True
        assert http_log.urls() == [SLACK_URL]

        event_id = data["escalation_event_id"]
        events = await client.get(f"{API}/escalations/events", headers=auth_headers)
        assert [e["id"] for e in events.json()["events"]] == [event_id]
        assert events.json()["events"][0]["sla_response_deadline"] is not None

        acked = await client.post(f"{API}/escalations/events/{event_id}/acknowledge", headers=auth_headers)
        assert acked.json()["event"]["status"] == "acknowledged"

        resolved = await client.post(
            f"{API}/escalations/events/{event_id}/resolve",
            json={"resolution_notes": "Partner API recovered"},
            headers=auth_headers,
        )
        assert resolved.json()["event"]["status"] == "resolved"

        rules = await client.get(f"{API}/escalations/rules", headers=auth_headers)
        assert rules.json()["rules"][0]["successful_resolutions"] == 1
        assert (await client.get(f"{API}/escalations/events", headers=auth_headers)).json()["events"] == []

    async def test_no_matching_rule(self, client: AsyncClient, auth_headers: dict[str, str]):
        await self._create_rule(client, auth_headers)

        response = await client.post(
            f"{API}/escalations/trigger",
            json={"escalation_reason": "Auth failed", "trigger_context": {"failure_category": "auth"}},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["escalation_event_id"] is None
        assert response.json()["message"] == "No matching escalation rule"

    async def test_unknown_level_action_rejected(self, client: AsyncClient, auth_headers: dict[str, str]):
        response = await client.post(
            f"{API}/escalations/rules",
            json={"rule_name": "Bad", "escalation_levels": [{"level": 1, "actions": ["call_mom"]}]},
            headers=auth_headers,
        )

        assert response.status_code == 400

    async def test_resolve_twice_conflicts(self, client: AsyncClient, auth_headers: dict[str, str]):
        await self._create_rule(client, auth_headers, trigger_conditions={})
        triggered = await client.post(
            f"{API}/escalations/trigger", json={"escalation_reason": "x"}, headers=auth_headers
        )
        event_id = triggered.json()["escalation_event_id"]

        first = await client.post(f"{API}/escalations/events/{event_id}/resolve", json={}, headers=auth_headers)
        second = await client.post(f"{API}/escalations/events/{event_id}/resolve", json={}, headers=auth_headers)

        assert first.status_code == 200
        assert second.status_code == 409

    async def test_unknown_event(self, client: AsyncClient, auth_headers: dict[str, str]):
        response = await client.post(f"{API}/escalations/events/{uuid4()}/acknowledge", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "Escalation event not found"

    async def test_sla_check(self, client: AsyncClient, auth_headers: dict[str, str]):
        response = await client.post(f"{API}/escalations/sla-check", headers=auth_headers)

        assert response.json() == {"success": True, "response_breaches": 0, "resolution_breaches": 0}


# ==========================================================================
# Health
# ==========================================================================

class TestHealth:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "connected"

    async def test_unknown_route(self, client: AsyncClient):
        response = await client.get(f"{API}/nope")

        assert response.status_code == 404
        assert response.json()["success"] is False

    async def test_unhandled_errors_hide_exception_text(self):
        handler = app.exception_handlers[Exception]
        request = Request(
            {"type": "http", "method": "POST", "path": f"{API}/executor/execute", "headers": [], "query_string": b""}
        )

        response = await handler(request, RuntimeError("password=hunter2 at db.internal:5432"))

        assert response.status_code == 500
        assert json.loads(response.body) == {
            "success": False,
            "error": "An unexpected error occurred",
            "code": "INTERNAL_ERROR",
        }
