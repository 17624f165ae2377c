"""
Action Dispatch - performs the side effect described by a queue entry.

Delivery failures surface as DeliveryError (retryable); malformed or
unsupported actions raise ActionError and are never retried.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core314.core.automation.notifications import HttpOutcome, NotificationService
from core314.core.automation.steps import UPDATABLE_RECORDS
from core314.core.exceptions import ActionError
from core314.core.models import (
    AutomationTask,
    EscalationEvent,
    ExecutionQueueEntry,
    OrchestrationFlow,
)

logger = structlog.get_logger()

_RECORD_MODELS: dict[str, type] = {
    "orchestration_flow": OrchestrationFlow,
    "escalation_event": EscalationEvent,
    "automation_task": AutomationTask,
}


@dataclass
class ActionOutcome:
    """What a successful dispatch produced, plus integration metadata for the log."""
    result: dict[str, Any] = field(default_factory=dict)
    integration_name: Optional[str] = None
    integration_endpoint: Optional[str] = None
    integration_method: Optional[str] = None
    http_status_code: Optional[int] = None
    http_response_time_ms: Optional[int] = None

    @classmethod
    def from_http(cls, integration: str, outcome: HttpOutcome, **result: Any) -> "ActionOutcome":
        return cls(
            result={"status_code": outcome.status_code, "response": outcome.body, **result},
            integration_name=integration,
            integration_endpoint=outcome.url,
            integration_method=outcome.method,
            http_status_code=outcome.status_code,
            http_response_time_ms=outcome.response_time_ms,
        )


class ActionDispatcher:
    """Maps action_type to a handler. Unknown types fail without any external call."""

    def __init__(self, db: AsyncSession, notifier: NotificationService):
        self.db = db
        self.notifier = notifier
        self._handlers: dict[str, Callable[[ExecutionQueueEntry], Awaitable[ActionOutcome]]] = {
            "send_notification": self._send_notification,
            "api_call": self._api_call,
            "trigger_webhook": self._post_webhook,
            "data_sync": self._post_webhook,
            "update_record": self._update_record,
            "create_task": self._create_task,
        }

    async def dispatch(self, entry: ExecutionQueueEntry) -> ActionOutcome:
        handler = self._handlers.get(entry.action_type)
        if handler is None:
            raise ActionError(f"Unknown action type: {entry.action_type}")
        logger.info(
            "dispatching_action",
            execution_queue_id=str(entry.id),
            action_type=entry.action_type,
            action_target=entry.action_target,
        )
        return await handler(entry)

    # ----------------------------------------------------------------------
    # Handlers
    # ----------------------------------------------------------------------

    async def _send_notification(self, entry: ExecutionQueueEntry) -> ActionOutcome:
        notification = self.notifier.templates.queue_action(entry.action_payload)
        outcome = await self.notifier.deliver(entry.action_target, notification, entry.action_config)
        return ActionOutcome.from_http(entry.action_target, outcome, channel=entry.action_target, delivered=True)

    async def _api_call(self, entry: ExecutionQueueEntry) -> ActionOutcome:
        config = entry.action_config or {}
        url = config.get("url")
        if not url:
            raise ActionError("api_call requires action_config.url")
        method = str(config.get("method", "POST")).upper()
        outcome = await self.notifier.request(
            method,
            url,
            json=None if method == "GET" else entry.action_payload,
            headers=config.get("headers"),
            timeout=config.get("timeout_seconds"),
            channel="api_call",
        )
        return ActionOutcome.from_http(entry.action_target, outcome)

    async def _post_webhook(self, entry: ExecutionQueueEntry) -> ActionOutcome:
        config = entry.action_config or {}
        url = config.get("url") or entry.action_target
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ActionError(f"{entry.action_type} requires a webhook URL")
        outcome = await self.notifier.request(
            "POST",
            url,
            json={
                "action_type": entry.action_type,
                "execution_queue_id": str(entry.id),
                "payload": entry.action_payload,
            },
            headers=config.get("headers"),
            timeout=config.get("timeout_seconds"),
            channel=entry.action_type,
        )
        return ActionOutcome.from_http(config.get("integration_name") or entry.action_type, outcome)

    async def _update_record(self, entry: ExecutionQueueEntry) -> ActionOutcome:
        kind = entry.action_target
        allowed = UPDATABLE_RECORDS.get(kind)
        if allowed is None:
            raise ActionError(f"Record kind '{kind}' cannot be updated by automation")

        payload = entry.action_payload or {}
        values: dict[str, Any] = payload.get("values") or {}
        rejected = set(values) - allowed
        if rejected:
            raise ActionError(f"Fields not updatable on {kind}: {sorted(rejected)}")
        try:
            record_id = UUID(str(payload.get("record_id")))
        except ValueError as e:
            raise ActionError("update_record requires a valid record_id") from e

        model = _RECORD_MODELS[kind]
        record = (
            await self.db.execute(
                select(model).where(model.id == record_id, model.user_id == entry.user_id)
            )
        ).scalar_one_or_none()
        if record is None:
            raise ActionError(f"{kind} {record_id} not found")

        for name, value in values.items():
            enum_cls = getattr(model.__table__.c[name].type, "enum_class", None)
            if enum_cls is not None:
                try:
                    value = enum_cls(value)
                except ValueError as e:
                    raise ActionError(f"Invalid value for {kind}.{name}: {value}") from e
            setattr(record, name, value)
        await self.db.flush()

        return ActionOutcome(
            result={"record_kind": kind, "record_id": str(record_id), "updated_fields": sorted(values)},
            integration_name="internal",
        )

    async def _create_task(self, entry: ExecutionQueueEntry) -> ActionOutcome:
        payload = entry.action_payload or {}
        task = AutomationTask(
            user_id=entry.user_id,
            title=payload.get("title") or f"Automation task ({entry.action_target})",
            description=payload.get("description"),
            source="automation",
            execution_queue_id=entry.id,
            details=payload.get("details") or {},
        )
        self.db.add(task)
        await self.db.flush()
        return ActionOutcome(result={"task_id": str(task.id)}, integration_name="internal")
