"""
Escalation Handler - fallback policy for failed or delayed executions.

A failure is matched against the user's active escalation rules, highest
priority first. The first rule that matches and is not throttled opens an
escalation event at its first level:

    notify_user / notify_admin / page_oncall  -> channel deliveries
    create_ticket                             -> automation task
    halt_flow                                 -> cancel the rest of the run

Each delivery is attempted independently; a broken channel is recorded and
never blocks the others. Optional auto-remediation can retry the failed
work, start the flow's fallback flow, or cancel the entry.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core314.core.automation.conditions import match_trigger_conditions
from core314.core.automation.notifications import DeliveryResult, NotificationService
from core314.core.automation.orchestrator import orchestrate_fallback
from core314.core.automation.queue import ExecutionQueue
from core314.core.config import Settings, settings as default_settings
from core314.core.exceptions import AutomationError, InvalidTransitionError, NotFoundError, ValidationError
from core314.core.models import (
    AutomationTask,
    EscalationEvent,
    EscalationRule,
    EscalationStatus,
    ExecutionLog,
    ExecutionQueueEntry,
    OrchestrationFlow,
    QueueStatus,
    User,
    utcnow,
)

logger = structlog.get_logger()

NOTIFY_ACTIONS = ("notify_user", "notify_admin", "page_oncall")
LEVEL_ACTIONS = frozenset({*NOTIFY_ACTIONS, "create_ticket", "halt_flow"})
REMEDIATION_TYPES = frozenset({"retry", "fallback_flow", "cancel"})


@dataclass
class EscalationOutcome:
    rule: Optional[EscalationRule] = None
    event: Optional[EscalationEvent] = None
    actions_performed: list[dict[str, Any]] = field(default_factory=list)
    notifications_sent: list[dict[str, Any]] = field(default_factory=list)
    remediation_attempted: bool = False
    remediation_successful: Optional[bool] = None
    message: Optional[str] = None


# ==========================================================================
# Rules
# ==========================================================================

def validate_escalation_levels(levels: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Levels must have unique positive numbers and known actions."""
    seen = set()
    for level in levels:
        number = level.get("level")
        if not isinstance(number, int) or number < 1:
            raise ValidationError("Escalation level numbers must be positive integers")
        if number in seen:
            raise ValidationError(f"Duplicate escalation level {number}")
        seen.add(number)
        unknown = set(level.get("actions") or []) - LEVEL_ACTIONS
        if unknown:
            raise ValidationError(f"Unknown escalation actions: {sorted(unknown)}")
    return sorted(levels, key=lambda lvl: lvl["level"])


class EscalationRuleRegistry:
    def __init__(self, db: AsyncSession, user_id: UUID):
        self.db = db
        self.user_id = user_id

    async def create(self, rule_name: str, **fields: Any) -> EscalationRule:
        fields["escalation_levels"] = validate_escalation_levels(fields.get("escalation_levels") or [])
        unknown = {a.get("type") for a in fields.get("remediation_actions") or []} - REMEDIATION_TYPES
        if unknown:
            raise ValidationError(f"Unknown remediation types: {sorted(map(str, unknown))}")
        rule = EscalationRule(user_id=self.user_id, rule_name=rule_name, **fields)
        self.db.add(rule)
        await self.db.flush()
        logger.info("escalation_rule_created", rule_id=str(rule.id), rule_name=rule_name)
        return rule

    async def list_rules(self, active_only: bool = False) -> list[EscalationRule]:
        stmt = select(EscalationRule).where(EscalationRule.user_id == self.user_id)
        if active_only:
            stmt = stmt.where(EscalationRule.is_active.is_(True))
        result = await self.db.execute(stmt.order_by(EscalationRule.priority.asc(), EscalationRule.created_at.asc()))
        return list(result.scalars().all())


def rule_applies(rule: EscalationRule, context: dict[str, Any]) -> bool:
    """Trigger conditions and applies_to filters. An empty filter accepts everything."""
    if rule.applies_to_action_types and context.get("action_type") not in rule.applies_to_action_types:
        return False
    if rule.applies_to_flows:
        flow_id = context.get("orchestration_flow_id")
        if flow_id is None or str(flow_id) not in {str(f) for f in rule.applies_to_flows}:
            return False
    return match_trigger_conditions(rule.trigger_conditions, context)


# ==========================================================================
# Handler
# ==========================================================================

class EscalationHandler:
    """Escalation and event lifecycle for one user."""

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

    # ----------------------------------------------------------------------
    # Failure context
    # ----------------------------------------------------------------------

    async def build_context(
        self,
        escalation_reason: str,
        trigger_context: dict[str, Any],
        execution_queue_id: Optional[UUID] = None,
        execution_log_id: Optional[UUID] = None,
    ) -> tuple[dict[str, Any], Optional[ExecutionQueueEntry], Optional[ExecutionLog]]:
        """Derive the failure context from the referenced entry and log; request fields win."""
        context: dict[str, Any] = {}
        entry = None
        log = None

        if execution_log_id is not None:
            log = (
                await self.db.execute(
                    select(ExecutionLog).where(
                        ExecutionLog.id == execution_log_id,
                        ExecutionLog.user_id == self.user_id,
                    )
                )
            ).scalar_one_or_none()
            if log is None:
                raise NotFoundError("Execution log entry not found")
            if execution_queue_id is None:
                execution_queue_id = log.execution_queue_id

        if execution_queue_id is not None:
            entry = await self.queue.get(execution_queue_id)
            context.update({
                "action_type": entry.action_type,
                "action_target": entry.action_target,
                "execution_status": entry.status.value,
                "error": entry.execution_error,
                "error_code": entry.execution_error_code,
                "retry_attempt": entry.current_retry_attempt,
                "priority": entry.priority,
                "urgency": entry.urgency.value,
                "orchestration_flow_id": str(entry.orchestration_flow_id) if entry.orchestration_flow_id else None,
            })

        if log is not None:
            context.update({
                "action_type": log.action_type,
                "action_target": log.action_target,
                "execution_status": log.execution_status.value,
                "error": log.execution_error,
                "error_code": log.execution_error_code,
                "retry_attempt": log.retry_attempt,
                "http_status_code": log.http_status_code,
                "orchestration_flow_id": str(log.orchestration_flow_id) if log.orchestration_flow_id else None,
            })

        context = {k: v for k, v in context.items() if v is not None}
        context.update(trigger_context or {})
        context["escalation_reason"] = escalation_reason
        return context, entry, log

    # ----------------------------------------------------------------------
    # Rule selection
    # ----------------------------------------------------------------------

    async def match_rule(
        self,
        context: dict[str, Any],
        entry: Optional[ExecutionQueueEntry],
        now: datetime,
    ) -> Optional[EscalationRule]:
        rules = await EscalationRuleRegistry(self.db, self.user_id).list_rules(active_only=True)
        for rule in rules:
            if not rule_applies(rule, context):
                continue
            if await self.is_throttled(rule, entry, now):
                logger.info("escalation_rule_throttled", rule_id=str(rule.id), rule_name=rule.rule_name)
                continue
            return rule
        return None

    async def is_throttled(
        self,
        rule: EscalationRule,
        entry: Optional[ExecutionQueueEntry],
        now: datetime,
    ) -> bool:
        async def fired_since(since: datetime, queue_id: Optional[UUID] = None) -> int:
            stmt = (
                select(func.count())
                .select_from(EscalationEvent)
                .where(EscalationEvent.escalation_rule_id == rule.id, EscalationEvent.triggered_at >= since)
            )
            if queue_id is not None:
                stmt = stmt.where(EscalationEvent.execution_queue_id == queue_id)
            return (await self.db.execute(stmt)).scalar_one()

        if await fired_since(now - timedelta(hours=1)) >= rule.max_escalations_per_hour:
            return True
        if await fired_since(now - timedelta(days=1)) >= rule.max_escalations_per_day:
            return True
        if entry is not None and rule.cooldown_period_minutes > 0:
            cooldown_start = now - timedelta(minutes=rule.cooldown_period_minutes)
            if await fired_since(cooldown_start, entry.id) > 0:
                return True
        return False

    # ----------------------------------------------------------------------
    # Escalation
    # ----------------------------------------------------------------------

    async def escalate(
        self,
        escalation_reason: str,
        trigger_context: dict[str, Any],
        execution_queue_id: Optional[UUID] = None,
        execution_log_id: Optional[UUID] = None,
        auto_remediate: bool = False,
    ) -> EscalationOutcome:
        """
        Match a rule and escalate at its first level.

        No matching rule is not an error: the outcome carries no event.
        """
        now = utcnow()
        context, entry, log = await self.build_context(
            escalation_reason, trigger_context, execution_queue_id, execution_log_id
        )

        rule = await self.match_rule(context, entry, now)
        if rule is None:
            logger.info("no_escalation_rule_matched", execution_queue_id=str(execution_queue_id))
            return EscalationOutcome(message="No matching escalation rule")

        levels = validate_escalation_levels(list(rule.escalation_levels or []))
        level = levels[0] if levels else {"level": 1, "actions": [], "notify_channels": []}

        event = EscalationEvent(
            user_id=self.user_id,
            escalation_rule_id=rule.id,
            execution_queue_id=entry.id if entry else None,
            execution_log_id=log.id if log else None,
            orchestration_flow_id=entry.orchestration_flow_id if entry else (log.orchestration_flow_id if log else None),
            escalation_level=level["level"],
            escalation_reason=escalation_reason,
            trigger_conditions_met={key: context.get(key) for key in (rule.trigger_conditions or {})},
            status=EscalationStatus.TRIGGERED,
            triggered_at=now,
            context_data=context,
        )
        if rule.sla_enabled:
            if rule.sla_response_time_minutes:
                event.sla_response_deadline = now + timedelta(minutes=rule.sla_response_time_minutes)
            if rule.sla_resolution_time_minutes:
                event.sla_resolution_deadline = now + timedelta(minutes=rule.sla_resolution_time_minutes)
        self.db.add(event)
        await self.db.flush()

        outcome = EscalationOutcome(rule=rule, event=event)
        await self._perform_level(rule, level, event, context, entry, outcome)

        if auto_remediate and rule.auto_remediation_enabled and rule.remediation_actions:
            await self._remediate(rule, entry, context, outcome)

        event.actions_performed = outcome.actions_performed
        event.notifications_sent = outcome.notifications_sent
        event.remediation_attempted = outcome.remediation_attempted
        event.remediation_successful = outcome.remediation_successful

        rule.total_escalations += 1
        rule.last_triggered_at = now
        await self.db.flush()

        logger.info(
            "escalation_triggered",
            escalation_event_id=str(event.id),
            rule_name=rule.rule_name,
            level=event.escalation_level,
            notifications=len(outcome.notifications_sent),
        )
        return outcome

    async def _perform_level(
        self,
        rule: EscalationRule,
        level: dict[str, Any],
        event: EscalationEvent,
        context: dict[str, Any],
        entry: Optional[ExecutionQueueEntry],
        outcome: EscalationOutcome,
    ) -> None:
        actions = list(level.get("actions") or [])
        notification = self.notifier.templates.escalation_triggered(
            rule_name=rule.rule_name,
            level=event.escalation_level,
            reason=event.escalation_reason,
            action=next((a for a in actions if a in NOTIFY_ACTIONS), "notify_user"),
            context=context,
        )

        for action in actions:
            if action in NOTIFY_ACTIONS:
                results = await self._notify(action, rule, level, notification)
                outcome.notifications_sent.extend({"action": action, **r.to_dict()} for r in results)
                outcome.actions_performed.append({
                    "action": action,
                    "success": bool(results) and all(r.success for r in results),
                    "channels": [r.channel for r in results],
                })
            elif action == "create_ticket":
                task = AutomationTask(
                    user_id=self.user_id,
                    title=f"[Escalation L{event.escalation_level}] {rule.rule_name}",
                    description=event.escalation_reason,
                    source="escalation",
                    execution_queue_id=entry.id if entry else None,
                    escalation_event_id=event.id,
                    details={"context": context},
                )
                self.db.add(task)
                await self.db.flush()
                outcome.actions_performed.append({"action": action, "success": True, "task_id": str(task.id)})
            elif action == "halt_flow":
                if entry is None or entry.orchestration_run_id is None:
                    outcome.actions_performed.append(
                        {"action": action, "success": False, "error": "No orchestration run to halt"}
                    )
                    continue
                cancelled = await self.queue.cancel_run(
                    entry.orchestration_run_id, reason=f"Halted by escalation rule {rule.rule_name}"
                )
                outcome.actions_performed.append({"action": action, "success": True, "cancelled": len(cancelled)})
            else:
                outcome.actions_performed.append({"action": action, "success": False, "error": "Unknown action"})

    async def _notify(
        self,
        action: str,
        rule: EscalationRule,
        level: dict[str, Any],
        notification: Any,
    ) -> list[DeliveryResult]:
        channels = list(level.get("notify_channels") or [])
        if action == "page_oncall" and "pagerduty" not in channels:
            channels.append("pagerduty")

        configs = {channel: dict((rule.notification_channels or {}).get(channel) or {}) for channel in channels}
        if "email" in configs and "to" not in configs["email"]:
            recipient = await self._email_recipient(action)
            if recipient:
                configs["email"]["to"] = recipient
        return await self.notifier.deliver_many(channels, notification, configs)

    async def _email_recipient(self, action: str) -> Optional[str]:
        if action == "notify_user":
            user = await self.db.get(User, self.user_id)
            return user.email if user else None
        return self.config.ADMIN_EMAIL

    async def _remediate(
        self,
        rule: EscalationRule,
        entry: Optional[ExecutionQueueEntry],
        context: dict[str, Any],
        outcome: EscalationOutcome,
    ) -> None:
        outcome.remediation_attempted = True
        succeeded = True
        for remediation in rule.remediation_actions:
            kind = remediation.get("type")
            record: dict[str, Any] = {"action": f"remediation:{kind}"}
            try:
                record.update(await self._apply_remediation(kind, entry, context))
                record["success"] = True
            except AutomationError as e:
                record.update(success=False, error=e.message)
                succeeded = False
            outcome.actions_performed.append(record)
        outcome.remediation_successful = succeeded

    async def _apply_remediation(
        self,
        kind: Optional[str],
        entry: Optional[ExecutionQueueEntry],
        context: dict[str, Any],
    ) -> dict[str, Any]:
        if entry is None:
            raise ValidationError("Remediation needs an execution queue entry")

        if kind == "retry":
            if entry.status != QueueStatus.FAILED:
                raise InvalidTransitionError(f"Entry is {entry.status.value}; only failed entries are retried")
            clone = await self.queue.clone_for_retry(entry)
            return {"execution_queue_id": str(clone.id)}

        if kind == "cancel":
            cancelled = await self.queue.cancel(entry.id)
            return {"execution_queue_id": str(cancelled.id)}

        if kind == "fallback_flow":
            flow = (
                await self.db.execute(select(OrchestrationFlow).where(OrchestrationFlow.id == entry.orchestration_flow_id))
            ).scalar_one_or_none() if entry.orchestration_flow_id else None
            if flow is None:
                raise NotFoundError("Entry has no orchestration flow")
            run = await orchestrate_fallback(self.db, flow, dict(entry.context_data or {}))
            if run is None:
                raise NotFoundError("Flow has no fallback flow")
            return {
                "fallback_flow_id": str(run.flow.id),
                "execution_queue_ids": [str(i) for i in run.execution_queue_ids],
            }

        raise ValidationError(f"Unknown remediation type: {kind}")

    # ----------------------------------------------------------------------
    # Event lifecycle
    # ----------------------------------------------------------------------

    async def get_event(self, event_id: UUID) -> EscalationEvent:
        event = (
            await self.db.execute(
                select(EscalationEvent).where(
                    EscalationEvent.id == event_id,
                    EscalationEvent.user_id == self.user_id,
                )
            )
        ).scalar_one_or_none()
        if event is None:
            raise NotFoundError("Escalation event not found")
        return event

    async def active_events(self) -> list[EscalationEvent]:
        result = await self.db.execute(
            select(EscalationEvent)
            .where(
                EscalationEvent.user_id == self.user_id,
                EscalationEvent.status.in_(EscalationStatus.open()),
            )
            .order_by(EscalationEvent.triggered_at.desc())
        )
        return list(result.scalars().all())

    async def acknowledge(self, event_id: UUID, acknowledged_by: UUID) -> EscalationEvent:
        event = await self.get_event(event_id)
        if event.status != EscalationStatus.TRIGGERED:
            raise InvalidTransitionError(f"Escalation event is {event.status.value}")
        now = utcnow()
        event.status = EscalationStatus.ACKNOWLEDGED
        event.acknowledged_by = acknowledged_by
        event.acknowledged_at = now
        if event.sla_response_deadline and now > event.sla_response_deadline:
            event.sla_response_breached = True
        await self.db.flush()
        return event

    async def resolve(
        self,
        event_id: UUID,
        resolved_by: UUID,
        resolution_notes: Optional[str] = None,
        successful: bool = True,
    ) -> EscalationEvent:
        """Close an open event and fold its duration into the rule's statistics."""
        event = await self.get_event(event_id)
        if not event.is_open:
            raise InvalidTransitionError(f"Escalation event is {event.status.value}")
        now = utcnow()
        duration = int((now - event.triggered_at).total_seconds() // 60)

        event.status = EscalationStatus.RESOLVED if successful else EscalationStatus.FAILED
        event.resolved_by = resolved_by
        event.resolved_at = now
        event.resolution_notes = resolution_notes
        event.resolution_duration_minutes = duration
        if event.sla_resolution_deadline and now > event.sla_resolution_deadline:
            event.sla_resolution_breached = True

        rule = await self.db.get(EscalationRule, event.escalation_rule_id)
        if successful:
            rule.successful_resolutions += 1
            rule.total_resolution_minutes += duration
        else:
            rule.failed_resolutions += 1
        await self.db.flush()
        return event

    async def check_sla(self) -> dict[str, int]:
        """Flag open events whose response or resolution deadline has passed."""
        now = utcnow()
        response_breaches = 0
        resolution_breaches = 0
        for event in await self.active_events():
            if (
                event.status == EscalationStatus.TRIGGERED
                and not event.sla_response_breached
                and event.sla_response_deadline
                and now > event.sla_response_deadline
            ):
                event.sla_response_breached = True
                response_breaches += 1
            if (
                not event.sla_resolution_breached
                and event.sla_resolution_deadline
                and now > event.sla_resolution_deadline
            ):
                event.sla_resolution_breached = True
                resolution_breaches += 1
        await self.db.flush()
        if response_breaches or resolution_breaches:
            logger.warning(
                "escalation_sla_breached",
                response_breaches=response_breaches,
                resolution_breaches=resolution_breaches,
            )
        return {"response_breaches": response_breaches, "resolution_breaches": resolution_breaches}
