"""
Orchestrator - turns a trigger into queued work.

Selects one active flow for the trigger, expands its action steps into
execution queue entries wired according to the flow's execution mode, and
writes them in a single transaction.

    sequential: A -> B -> C       (each entry depends on the previous one)
    parallel:   A, B, C           (no dependencies)
    graph:      from each step's input connections
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core314.core.automation.conditions import evaluate_conditions
from core314.core.automation.steps import (
    input_step_ids,
    topological_order,
    validate_conditions,
    validate_flow_steps,
)
from core314.core.config import Settings, settings as default_settings
from core314.core.exceptions import NotFoundError
from core314.core.models import (
    ApprovalStatus,
    DecisionAuditLog,
    ExecutionMode,
    ExecutionQueueEntry,
    OrchestrationFlow,
    Urgency,
    utcnow,
)

logger = structlog.get_logger()


@dataclass
class OrchestrationResult:
    flow: OrchestrationFlow
    run_id: UUID
    entries: list[ExecutionQueueEntry] = field(default_factory=list)
    estimated_duration_ms: int = 0

    @property
    def execution_queue_ids(self) -> list[UUID]:
        return [entry.id for entry in self.entries]


# ==========================================================================
# Flow registry
# ==========================================================================

class FlowRegistry:
    """Create, look up, deactivate and clone a user's flows."""

    def __init__(self, db: AsyncSession, user_id: UUID):
        self.db = db
        self.user_id = user_id

    async def create(
        self,
        flow_name: str,
        trigger_type: str,
        flow_steps: list[dict[str, Any]],
        execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
        conditions: Optional[list[dict[str, Any]]] = None,
        **fields: Any,
    ) -> OrchestrationFlow:
        """Validate and store a new flow. Malformed steps raise ValidationError."""
        flow = OrchestrationFlow(
            user_id=self.user_id,
            flow_name=flow_name,
            trigger_type=trigger_type,
            execution_mode=execution_mode,
            flow_steps=validate_flow_steps(flow_steps, execution_mode),
            conditions=validate_conditions(conditions or []),
            **fields,
        )
        if flow.fallback_flow_id is not None:
            await self.get(flow.fallback_flow_id)
        self.db.add(flow)
        await self.db.flush()
        logger.info("flow_created", flow_id=str(flow.id), flow_name=flow_name, mode=execution_mode.value)
        return flow

    async def get(self, flow_id: UUID) -> OrchestrationFlow:
        flow = (
            await self.db.execute(
                select(OrchestrationFlow).where(
                    OrchestrationFlow.id == flow_id,
                    OrchestrationFlow.user_id == self.user_id,
                )
            )
        ).scalar_one_or_none()
        if flow is None:
            raise NotFoundError("Flow not found")
        return flow

    async def list_flows(self, active_only: bool = False, trigger_type: Optional[str] = None) -> list[OrchestrationFlow]:
        stmt = select(OrchestrationFlow).where(OrchestrationFlow.user_id == self.user_id)
        if active_only:
            stmt = stmt.where(OrchestrationFlow.is_active.is_(True))
        if trigger_type:
            stmt = stmt.where(OrchestrationFlow.trigger_type == trigger_type)
        result = await self.db.execute(stmt.order_by(OrchestrationFlow.created_at.desc()))
        return list(result.scalars().all())

    async def deactivate(self, flow_id: UUID) -> OrchestrationFlow:
        flow = await self.get(flow_id)
        flow.is_active = False
        await self.db.flush()
        return flow

    async def clone(self, flow_id: UUID, flow_name: Optional[str] = None) -> OrchestrationFlow:
        """Copy a flow as the next version. Clones start inactive with fresh statistics."""
        source = await self.get(flow_id)
        clone = OrchestrationFlow(
            user_id=self.user_id,
            flow_name=flow_name or f"{source.flow_name} (copy)",
            flow_description=source.flow_description,
            flow_category=source.flow_category,
            flow_version=source.flow_version + 1,
            is_active=False,
            trigger_type=source.trigger_type,
            trigger_config=dict(source.trigger_config or {}),
            conditions=list(source.conditions or []),
            flow_steps=list(source.flow_steps or []),
            execution_mode=source.execution_mode,
            max_execution_time_seconds=source.max_execution_time_seconds,
            retry_policy=dict(source.retry_policy or {}),
            requires_approval=source.requires_approval,
            on_error_action=source.on_error_action,
            fallback_flow_id=source.fallback_flow_id,
            error_notification_channels=list(source.error_notification_channels or []),
            tags=list(source.tags or []),
        )
        self.db.add(clone)
        await self.db.flush()
        return clone


# ==========================================================================
# Orchestrator
# ==========================================================================

class Orchestrator:
    """Flow selection and step expansion for one user."""

    def __init__(self, db: AsyncSession, user_id: UUID, config: Optional[Settings] = None):
        self.db = db
        self.user_id = user_id
        self.config = config or default_settings

    async def select_flow(
        self,
        trigger_type: str,
        trigger_context: dict[str, Any],
        flow_id: Optional[UUID] = None,
    ) -> OrchestrationFlow:
        """
        An explicit flow_id bypasses trigger matching. Otherwise the newest
        active flow for the trigger whose conditions all hold wins.
        """
        if flow_id is not None:
            flow = (
                await self.db.execute(
                    select(OrchestrationFlow).where(
                        OrchestrationFlow.id == flow_id,
                        OrchestrationFlow.user_id == self.user_id,
                        OrchestrationFlow.is_active.is_(True),
                    )
                )
            ).scalar_one_or_none()
            if flow is None:
                raise NotFoundError("Flow not found or inactive")
            return flow

        result = await self.db.execute(
            select(OrchestrationFlow)
            .where(
                OrchestrationFlow.user_id == self.user_id,
                OrchestrationFlow.trigger_type == trigger_type,
                OrchestrationFlow.is_active.is_(True),
            )
            .order_by(OrchestrationFlow.created_at.desc())
        )
        for flow in result.scalars().all():
            if evaluate_conditions(flow.conditions, trigger_context):
                return flow
        raise NotFoundError("No matching orchestration flow found")

    async def orchestrate(
        self,
        trigger_type: str,
        trigger_context: dict[str, Any],
        trigger_source: Optional[str] = None,
        decision_event_id: Optional[UUID] = None,
        recommendation_id: Optional[UUID] = None,
        flow_id: Optional[UUID] = None,
        commit: bool = True,
    ) -> OrchestrationResult:
        """
        Queue the action steps of the selected flow.

        Every call creates a new, independent run; identical triggers are
        not deduplicated. With ``commit=False`` the entries are only flushed
        and the caller owns the transaction.
        """
        flow = await self.select_flow(trigger_type, trigger_context, flow_id)
        run = OrchestrationResult(flow=flow, run_id=uuid4())
        context = dict(trigger_context)
        if trigger_source:
            context.setdefault("trigger_source", trigger_source)

        action_steps = self._ordered_action_steps(flow)
        dependencies = self._resolve_dependencies(flow, action_steps)

        queue_ids: dict[str, UUID] = {}
        for step in action_steps:
            entry = self._build_entry(
                flow,
                step,
                run.run_id,
                context,
                depends_on=[queue_ids[source] for source in dependencies[step["id"]]],
                decision_event_id=decision_event_id,
                recommendation_id=recommendation_id,
            )
            queue_ids[step["id"]] = entry.id
            run.entries.append(entry)

        self.db.add_all(run.entries)

        if decision_event_id is not None:
            self.db.add(DecisionAuditLog(
                user_id=self.user_id,
                decision_event_id=decision_event_id,
                event_type="orchestration_started",
                event_category="execution",
                event_description=(
                    f'Orchestration flow "{flow.flow_name}" started with {len(run.entries)} steps'
                ),
                actor_type="system",
                execution_success=True,
                event_metadata={
                    "flow_id": str(flow.id),
                    "orchestration_run_id": str(run.run_id),
                    "execution_queue_ids": [str(i) for i in run.execution_queue_ids],
                    "execution_mode": flow.execution_mode.value,
                },
            ))

        if commit:
            await self.db.commit()
        else:
            await self.db.flush()

        run.estimated_duration_ms = self.estimate_duration(flow, action_steps, dependencies)
        logger.info(
            "orchestration_started",
            flow_id=str(flow.id),
            flow_name=flow.flow_name,
            orchestration_run_id=str(run.run_id),
            steps_created=len(run.entries),
        )
        return run

    # ----------------------------------------------------------------------
    # Step expansion
    # ----------------------------------------------------------------------

    @staticmethod
    def _ordered_action_steps(flow: OrchestrationFlow) -> list[dict[str, Any]]:
        steps = flow.flow_steps or []
        if flow.execution_mode == ExecutionMode.GRAPH:
            steps = topological_order(steps)
        return [step for step in steps if step.get("type") == "action"]

    @staticmethod
    def _resolve_dependencies(
        flow: OrchestrationFlow,
        action_steps: list[dict[str, Any]],
    ) -> dict[str, list[str]]:
        """Map each action step id to the action step ids it waits for."""
        if flow.execution_mode == ExecutionMode.PARALLEL:
            return {step["id"]: [] for step in action_steps}

        if flow.execution_mode == ExecutionMode.SEQUENTIAL:
            deps: dict[str, list[str]] = {}
            previous: Optional[str] = None
            for step in action_steps:
                deps[step["id"]] = [previous] if previous else []
                previous = step["id"]
            return deps

        # Graph: connections through trigger/condition/delay steps are
        # followed back to the nearest action steps.
        action_ids = {step["id"] for step in action_steps}
        upstream: dict[str, list[str]] = {}
        deps = {}
        for step in topological_order(flow.flow_steps or []):
            resolved: list[str] = []
            for source in input_step_ids(step):
                for dep in ([source] if source in action_ids else upstream.get(source, [])):
                    if dep not in resolved:
                        resolved.append(dep)
            if step["id"] in action_ids:
                deps[step["id"]] = resolved
                upstream[step["id"]] = [step["id"]]
            else:
                upstream[step["id"]] = resolved
        return deps

    def _build_entry(
        self,
        flow: OrchestrationFlow,
        step: dict[str, Any],
        run_id: UUID,
        context: dict[str, Any],
        depends_on: list[UUID],
        decision_event_id: Optional[UUID],
        recommendation_id: Optional[UUID],
    ) -> ExecutionQueueEntry:
        config = step.get("config") or {}
        policy = flow.retry_policy or {}
        now = utcnow()
        requires_approval = bool(config.get("requires_approval") or flow.requires_approval)

        max_attempts = config.get("max_retry_attempts") or policy.get("max_attempts")
        backoff = config.get("retry_backoff_seconds")
        if backoff is None:
            backoff = policy.get("backoff_seconds", self.config.DEFAULT_RETRY_BACKOFF_SECONDS)

        return ExecutionQueueEntry(
            id=uuid4(),
            user_id=self.user_id,
            orchestration_flow_id=flow.id,
            orchestration_run_id=run_id,
            decision_event_id=decision_event_id,
            recommendation_id=recommendation_id,
            step_id=step["id"],
            action_type=config["action_type"],
            action_target=config.get("action_target", "default"),
            action_payload=config.get("action_payload") or {},
            action_config=config.get("action_config") or {},
            priority=config.get("priority", 5),
            urgency=Urgency(config.get("urgency", "medium")),
            requires_approval=requires_approval,
            approval_status=ApprovalStatus.PENDING if requires_approval else None,
            scheduled_for=(
                now + timedelta(seconds=config["delay_seconds"]) if config.get("delay_seconds") else None
            ),
            expires_at=(
                now + timedelta(minutes=config["expires_in_minutes"]) if config.get("expires_in_minutes") else None
            ),
            max_retry_attempts=max_attempts or self.config.DEFAULT_MAX_RETRY_ATTEMPTS,
            retry_backoff_seconds=backoff,
            depends_on=[str(dep) for dep in depends_on],
            context_data=context,
            tags=config.get("tags") or [],
        )

    def estimate_duration(
        self,
        flow: OrchestrationFlow,
        action_steps: list[dict[str, Any]],
        dependencies: dict[str, list[str]],
    ) -> int:
        """Sequential: sum. Parallel: max. Graph: longest dependency path."""
        default = self.config.DEFAULT_STEP_DURATION_MS
        durations = {
            step["id"]: (step.get("config") or {}).get("estimated_duration_ms") or default
            for step in action_steps
        }
        if not durations:
            return 0
        if flow.execution_mode == ExecutionMode.SEQUENTIAL:
            return sum(durations.values())
        if flow.execution_mode == ExecutionMode.PARALLEL:
            return max(durations.values())

        finish: dict[str, int] = {}
        for step in action_steps:
            start = max((finish[dep] for dep in dependencies[step["id"]]), default=0)
            finish[step["id"]] = start + durations[step["id"]]
        return max(finish.values())


async def orchestrate_fallback(
    db: AsyncSession,
    flow: OrchestrationFlow,
    trigger_context: dict[str, Any],
) -> Optional[OrchestrationResult]:
    """
    Start a flow's fallback flow with the original context, if it has one.

    Only flushes: fallbacks run inside an executor or escalation transaction
    that the caller commits.
    """
    if flow.fallback_flow_id is None:
        return None
    orchestrator = Orchestrator(db, flow.user_id)
    return await orchestrator.orchestrate(
        trigger_type=flow.trigger_type,
        trigger_context=trigger_context,
        trigger_source="fallback",
        flow_id=flow.fallback_flow_id,
        commit=False,
    )
