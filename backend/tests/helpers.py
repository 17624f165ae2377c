"""Builders and stubs shared by the test modules."""

from typing import Any, Optional
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from core314.core.automation.escalation import EscalationRuleRegistry
from core314.core.automation.orchestrator import FlowRegistry
from core314.core.models import EscalationRule, ExecutionMode, OrchestrationFlow

SLACK_URL = "https://hooks.slack.test/services/T000/B000"
TEAMS_URL = "https://teams.test/webhook/abc"
PAGERDUTY_URL = "https://events.pagerduty.test/v2/enqueue"
PARTNER_URL = "https://partner.test/api/records"


class RecordingTransport:
    """MockTransport handler: records requests, fails the URLs it is told to."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.failures: dict[str, int] = {}
        self.unreachable: set[str] = set()

    def fail(self, url: str, status_code: int = 500) -> None:
        self.failures[url] = status_code

    def urls(self) -> list[str]:
        return [str(request.url) for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url in self.unreachable:
            raise httpx.ConnectError("Connection refused", request=request)
        status_code = self.failures.get(url, 200)
        return httpx.Response(status_code, json={"ok": status_code < 400})


def action_step(
    step_id: str,
    action_type: str = "send_notification",
    action_target: str = "slack",
    inputs: Optional[list[str]] = None,
    **config: Any,
) -> dict[str, Any]:
    """Build an action step; notification steps post to the test Slack hook by default."""
    step_config: dict[str, Any] = {"action_type": action_type, "action_target": action_target, **config}
    if action_type == "send_notification" and "action_config" not in config:
        step_config["action_config"] = {"webhook_url": SLACK_URL}
        step_config.setdefault("action_payload", {"message": f"step {step_id}"})
    return {
        "id": step_id,
        "type": "action",
        "config": step_config,
        "connections": {"inputs": [{"sourceStepId": source} for source in inputs or []]},
    }


def passive_step(step_id: str, step_type: str = "condition", inputs: Optional[list[str]] = None) -> dict[str, Any]:
    return {
        "id": step_id,
        "type": step_type,
        "config": {},
        "connections": {"inputs": [{"sourceStepId": source} for source in inputs or []]},
    }


async def create_flow(
    db: AsyncSession,
    user_id: UUID,
    steps: list[dict[str, Any]],
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
    trigger_type: str = "threshold_exceeded",
    flow_name: str = "Test Flow",
    conditions: Optional[list[dict[str, Any]]] = None,
    **fields: Any,
) -> OrchestrationFlow:
    flow = await FlowRegistry(db, user_id).create(
        flow_name=flow_name,
        trigger_type=trigger_type,
        flow_steps=steps,
        execution_mode=execution_mode,
        conditions=conditions,
        **fields,
    )
    await db.commit()
    return flow


async def create_rule(db: AsyncSession, user_id: UUID, rule_name: str = "Test Rule", **fields: Any) -> EscalationRule:
    rule = await EscalationRuleRegistry(db, user_id).create(rule_name, **fields)
    await db.commit()
    return rule
