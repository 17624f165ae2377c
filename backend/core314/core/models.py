"""
Core314 Automation Engine - Database Models
============================================

SQLAlchemy models for the orchestration pipeline:

    orchestration_flows -> execution_queue -> execution_log
                                  |
                                  v
              escalation_rules -> escalation_events

The execution log is an append-only audit trail; the ORM rejects updates
and deletes against it, and the PostgreSQL migration installs a trigger
doing the same at the database level.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core314.core.database import Base
from core314.core.exceptions import ImmutableRecordError, InvalidTransitionError


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize timestamps to UTC when timezone info is missing (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    """Store enum values (not member names) as plain strings."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


# ==========================================================================
# Enums
# ==========================================================================

class UserRole(str, enum.Enum):
    """User roles for access control."""
    ADMIN = "admin"
    USER = "user"


class ExecutionMode(str, enum.Enum):
    """How a flow's action steps are wired together."""
    SEQUENTIAL = "sequential"  # Each step waits for the previous one
    PARALLEL = "parallel"      # No dependencies
    GRAPH = "graph"            # Dependencies from step input connections


class OnErrorAction(str, enum.Enum):
    ESCALATE = "escalate"
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"
    FALLBACK = "fallback"


class QueueStatus(str, enum.Enum):
    """Execution queue entry status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @classmethod
    def terminal(cls) -> frozenset["QueueStatus"]:
        return frozenset({cls.COMPLETED, cls.FAILED, cls.CANCELLED, cls.EXPIRED})


class Urgency(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"


class DependencyMode(str, enum.Enum):
    ALL = "all"  # Every dependency must complete
    ANY = "any"  # One completed dependency is enough


class LogStatus(str, enum.Enum):
    """Outcome recorded in the execution log."""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class EscalationStatus(str, enum.Enum):
    TRIGGERED = "triggered"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def open(cls) -> frozenset["EscalationStatus"]:
        return frozenset({cls.TRIGGERED, cls.ACKNOWLEDGED, cls.IN_PROGRESS})


class TaskStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    # Client-side default keeps microsecond precision for queue ordering
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


def _uuid_pk() -> Mapped[UUID]:
    return mapped_column(Uuid, primary_key=True, default=uuid4)


def _owner_fk() -> Mapped[UUID]:
    return mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


# ==========================================================================
# Models
# ==========================================================================

class User(Base, TimestampMixin):
    """
    Account that owns flows, queue entries and escalation rules.

    Credentials are verified elsewhere; this table only anchors ownership.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = _uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole),
        default=UserRole.USER,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class OrchestrationFlow(Base, TimestampMixin):
    """
    Stored definition of a multi-step automation.

    Flows are never deleted, only deactivated. Statistics are kept as a
    count+sum pair and updated with single UPDATE statements so concurrent
    executors never lose increments.
    """

    __tablename__ = "orchestration_flows"

    id: Mapped[UUID] = _uuid_pk()
    user_id: Mapped[UUID] = _owner_fk()

    flow_name: Mapped[str] = mapped_column(String(255), nullable=False)
    flow_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    flow_category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    flow_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    # Trigger
    trigger_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    trigger_config: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    conditions: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    # Steps
    flow_steps: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    execution_mode: Mapped[ExecutionMode] = mapped_column(
        _enum_column(ExecutionMode),
        default=ExecutionMode.SEQUENTIAL,
        nullable=False,
    )
    max_execution_time_seconds: Mapped[int] = mapped_column(Integer, default=300, nullable=False)
    retry_policy: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Error handling
    on_error_action: Mapped[OnErrorAction] = mapped_column(
        _enum_column(OnErrorAction),
        default=OnErrorAction.ESCALATE,
        nullable=False,
    )
    fallback_flow_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("orchestration_flows.id", ondelete="SET NULL"),
        nullable=True,
    )
    error_notification_channels: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    # Statistics
    total_executions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_executions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_executions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_execution_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    tags: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    @property
    def avg_execution_time_ms(self) -> Optional[int]:
        if not self.total_executions:
            return None
        return round(self.total_execution_time_ms / self.total_executions)

    @property
    def success_rate(self) -> Optional[float]:
        """Percentage of successful executions (0-100)."""
        if not self.total_executions:
            return None
        return round(self.successful_executions / self.total_executions * 100, 2)

    def __repr__(self) -> str:
        return f"<OrchestrationFlow {self.flow_name} [{self.execution_mode.value}]>"


class ExecutionQueueEntry(Base, TimestampMixin):
    """
    One unit of work derived from a flow step.

    Status moves pending -> in_progress -> completed/failed, with failed
    attempts returning to pending while the retry budget lasts. Terminal
    statuses are final.
    """

    __tablename__ = "execution_queue"

    id: Mapped[UUID] = _uuid_pk()
    user_id: Mapped[UUID] = _owner_fk()

    # Origin
    orchestration_flow_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("orchestration_flows.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    orchestration_run_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)
    decision_event_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)
    recommendation_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    step_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Action descriptor
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    action_target: Mapped[str] = mapped_column(String(255), nullable=False)
    action_payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    action_config: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    status: Mapped[QueueStatus] = mapped_column(
        _enum_column(QueueStatus),
        default=QueueStatus.PENDING,
        nullable=False,
        index=True,
    )
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)  # 1 highest .. 10 lowest
    urgency: Mapped[Urgency] = mapped_column(
        _enum_column(Urgency),
        default=Urgency.MEDIUM,
        nullable=False,
    )

    # Approval
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    approval_status: Mapped[Optional[ApprovalStatus]] = mapped_column(
        _enum_column(ApprovalStatus),
        nullable=True,
    )
    approved_by: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approval_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Scheduling
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Retry
    max_retry_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    current_retry_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_backoff_seconds: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Execution
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    execution_result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    execution_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    execution_error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Dependencies (queue entry ids as strings)
    depends_on: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    dependency_mode: Mapped[DependencyMode] = mapped_column(
        _enum_column(DependencyMode),
        default=DependencyMode.ALL,
        nullable=False,
    )

    context_data: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    tags: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in QueueStatus.terminal()

    @property
    def approval_satisfied(self) -> bool:
        if not self.requires_approval:
            return True
        return self.approval_status in (ApprovalStatus.APPROVED, ApprovalStatus.AUTO_APPROVED)

    def transition_to(self, status: QueueStatus) -> None:
        """Change status, refusing to leave a terminal state."""
        if self.is_terminal and status != self.status:
            raise InvalidTransitionError(
                f"Execution queue entry {self.id} is {self.status.value} and cannot become {status.value}"
            )
        self.status = status

    def __repr__(self) -> str:
        return f"<ExecutionQueueEntry {self.action_type}:{self.action_target} [{self.status.value}]>"


class ExecutionLog(Base):
    """
    Immutable record of one terminal dispatch outcome.

    Written exactly once per queue entry when it completes or permanently
    fails. Retried attempts leave no log row.
    """

    __tablename__ = "execution_log"

    id: Mapped[UUID] = _uuid_pk()
    user_id: Mapped[UUID] = _owner_fk()

    execution_queue_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("execution_queue.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    orchestration_flow_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("orchestration_flows.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    decision_event_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    recommendation_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)

    action_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action_target: Mapped[str] = mapped_column(String(255), nullable=False)
    action_payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    action_config: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    execution_status: Mapped[LogStatus] = mapped_column(_enum_column(LogStatus), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, index=True)
    execution_result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    execution_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    execution_error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    execution_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    queue_wait_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    retry_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Integration metadata
    http_status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    http_response_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    integration_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    integration_endpoint: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    integration_method: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    context_data: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(100), default="automation", nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<ExecutionLog {self.action_type} success={self.success}>"


@event.listens_for(ExecutionLog, "before_update")
def _reject_log_update(_mapper: Any, _connection: Any, target: ExecutionLog) -> None:
    raise ImmutableRecordError(f"Execution log {target.id} is append-only")


@event.listens_for(ExecutionLog, "before_delete")
def _reject_log_delete(_mapper: Any, _connection: Any, target: ExecutionLog) -> None:
    raise ImmutableRecordError(f"Execution log {target.id} is append-only")


class DecisionAuditLog(Base):
    """Append-only audit trail for decision events (orchestration start)."""

    __tablename__ = "decision_audit_log"

    id: Mapped[UUID] = _uuid_pk()
    user_id: Mapped[UUID] = _owner_fk()
    decision_event_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_category: Mapped[str] = mapped_column(String(100), nullable=False)
    event_description: Mapped[str] = mapped_column(Text, nullable=False)
    actor_type: Mapped[str] = mapped_column(String(50), default="system", nullable=False)
    execution_success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    event_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class AutomationTask(Base, TimestampMixin):
    """Internal task or ticket raised by an action or an escalation."""

    __tablename__ = "automation_tasks"

    id: Mapped[UUID] = _uuid_pk()
    user_id: Mapped[UUID] = _owner_fk()
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[TaskStatus] = mapped_column(
        _enum_column(TaskStatus),
        default=TaskStatus.OPEN,
        nullable=False,
    )
    source: Mapped[str] = mapped_column(String(50), default="automation", nullable=False)  # automation, escalation
    execution_queue_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    escalation_event_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    details: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    def __repr__(self) -> str:
        return f"<AutomationTask {self.title[:40]} [{self.status.value}]>"


class EscalationRule(Base, TimestampMixin):
    """
    Fallback policy for failed or delayed executions.

    escalation_levels: [{level, delay_minutes, actions, notify_channels}]
    notification_channels: {"slack": {...}, "email": {"to": ...}, ...}
    remediation_actions: [{"type": "retry" | "fallback_flow" | "cancel"}]
    """

    __tablename__ = "escalation_rules"

    id: Mapped[UUID] = _uuid_pk()
    user_id: Mapped[UUID] = _owner_fk()

    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    rule_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rule_category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)  # 1 highest

    trigger_conditions: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    applies_to_action_types: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    applies_to_flows: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    escalation_levels: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    notification_channels: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    auto_remediation_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    remediation_actions: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    # SLA
    sla_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sla_response_time_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sla_resolution_time_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Throttling
    max_escalations_per_hour: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    max_escalations_per_day: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    cooldown_period_minutes: Mapped[int] = mapped_column(Integer, default=5, nullable=False)

    # Statistics
    total_escalations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_resolutions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_resolutions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_resolution_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def avg_resolution_time_minutes(self) -> Optional[float]:
        if not self.successful_resolutions:
            return None
        return round(self.total_resolution_minutes / self.successful_resolutions, 2)

    def __repr__(self) -> str:
        return f"<EscalationRule {self.rule_name} p{self.priority}>"


class EscalationEvent(Base, TimestampMixin):
    """One firing of an escalation rule, tracked against its SLA."""

    __tablename__ = "escalation_events"

    id: Mapped[UUID] = _uuid_pk()
    user_id: Mapped[UUID] = _owner_fk()

    escalation_rule_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("escalation_rules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    execution_queue_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("execution_queue.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    execution_log_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("execution_log.id", ondelete="SET NULL"),
        nullable=True,
    )
    orchestration_flow_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("orchestration_flows.id", ondelete="SET NULL"),
        nullable=True,
    )

    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)
    escalation_reason: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_conditions_met: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    status: Mapped[EscalationStatus] = mapped_column(
        _enum_column(EscalationStatus),
        default=EscalationStatus.TRIGGERED,
        nullable=False,
        index=True,
    )
    acknowledged_by: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    actions_performed: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    notifications_sent: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    remediation_attempted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    remediation_successful: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    # SLA tracking
    sla_response_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_resolution_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_response_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sla_resolution_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    resolution_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    context_data: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    rule: Mapped["EscalationRule"] = relationship(lazy="selectin")

    @property
    def is_open(self) -> bool:
        return self.status in EscalationStatus.open()

    def __repr__(self) -> str:
        return f"<EscalationEvent L{self.escalation_level} [{self.status.value}]>"


# ==========================================================================
# Timezone normalization on load
# ==========================================================================

_DATETIME_FIELDS: dict[type, tuple[str, ...]] = {
    OrchestrationFlow: ("created_at", "updated_at", "last_executed_at"),
    ExecutionQueueEntry: (
        "created_at", "updated_at", "approved_at", "scheduled_for", "expires_at",
        "last_retry_at", "next_retry_at", "started_at", "completed_at", "lease_expires_at",
    ),
    ExecutionLog: ("started_at", "completed_at", "created_at"),
    EscalationRule: ("created_at", "updated_at", "last_triggered_at"),
    EscalationEvent: (
        "created_at", "updated_at", "acknowledged_at", "resolved_at",
        "sla_response_deadline", "sla_resolution_deadline", "triggered_at",
    ),
}


def _normalize_on_load(target: Any, _context: Any) -> None:
    for name in _DATETIME_FIELDS[type(target)]:
        value = target.__dict__.get(name)
        if value is not None and value.tzinfo is None:
            # Write through __dict__ so the instance is not marked dirty
            target.__dict__[name] = ensure_utc(value)


for _model in _DATETIME_FIELDS:
    event.listen(_model, "load", _normalize_on_load)
    event.listen(_model, "refresh", lambda target, context, attrs: _normalize_on_load(target, context))
