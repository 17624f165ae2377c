"""
Core314 Automation Engine - Pydantic Schemas
=============================================

Request and response schemas for the HTTP API. Every response carries a
``success`` flag.
"""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from core314.core.models import (
    ApprovalStatus,
    EscalationStatus,
    ExecutionMode,
    LogStatus,
    OnErrorAction,
    QueueStatus,
    Urgency,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class SuccessResponse(BaseSchema):
    success: bool = True


class ErrorResponse(BaseSchema):
    """Error response schema."""

    success: bool = False
    error: str
    code: Optional[str] = None


class HealthResponse(SuccessResponse):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str


# ==========================================================================
# Orchestrator
# ==========================================================================

class OrchestratorTriggerRequest(BaseSchema):
    trigger_type: str = Field(..., min_length=1, max_length=100)
    trigger_source: str = Field("api", max_length=100)
    trigger_context: dict[str, Any] = Field(default_factory=dict)
    decision_event_id: Optional[UUID] = None
    recommendation_id: Optional[UUID] = None
    flow_id: Optional[UUID] = None


class OrchestratorTriggerResponse(SuccessResponse):
    orchestration_run_id: UUID
    flow_id: UUID
    flow_name: str
    execution_mode: ExecutionMode
    steps_created: int
    execution_queue_ids: list[UUID]
    estimated_duration_ms: int


# ==========================================================================
# Flows
# ==========================================================================

class RetryPolicy(BaseSchema):
    max_attempts: int = Field(3, ge=1, le=10)
    backoff_seconds: int = Field(10, ge=0)


class FlowCreate(BaseSchema):
    flow_name: str = Field(..., min_length=1, max_length=255)
    flow_description: Optional[str] = None
    flow_category: Optional[str] = Field(None, max_length=100)
    trigger_type: str = Field(..., min_length=1, max_length=100)
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    flow_steps: list[dict[str, Any]] = Field(..., min_length=1)
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    max_execution_time_seconds: int = Field(300, ge=1)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    requires_approval: bool = False
    on_error_action: OnErrorAction = OnErrorAction.ESCALATE
    fallback_flow_id: Optional[UUID] = None
    error_notification_channels: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    is_active: bool = True


class FlowClone(BaseSchema):
    flow_name: Optional[str] = Field(None, min_length=1, max_length=255)


class FlowSchema(BaseSchema):
    id: UUID
    flow_name: str
    flow_description: Optional[str] = None
    flow_category: Optional[str] = None
    flow_version: int
    is_active: bool
    trigger_type: str
    trigger_config: dict[str, Any]
    conditions: list[dict[str, Any]]
    flow_steps: list[dict[str, Any]]
    execution_mode: ExecutionMode
    max_execution_time_seconds: int
    retry_policy: dict[str, Any]
    requires_approval: bool
    on_error_action: OnErrorAction
    fallback_flow_id: Optional[UUID] = None
    tags: list[str]
    total_executions: int
    successful_executions: int
    failed_executions: int
    avg_execution_time_ms: Optional[int] = None
    success_rate: Optional[float] = None
    last_executed_at: Optional[datetime] = None
    created_at: datetime


class FlowResponse(SuccessResponse):
    flow: FlowSchema


class FlowListResponse(SuccessResponse):
    flows: list[FlowSchema]


# ==========================================================================
# Executor and queue
# ==========================================================================

class ExecutorExecuteRequest(BaseSchema):
    execution_queue_id: Optional[UUID] = None
    auto_execute: bool = False

    @model_validator(mode="after")
    def _needs_target(self) -> "ExecutorExecuteRequest":
        if self.execution_queue_id is None and not self.auto_execute:
            raise ValueError("Provide execution_queue_id or set auto_execute")
        return self


class ExecutorExecuteResponse(SuccessResponse):
    execution_queue_id: UUID
    execution_log_id: Optional[UUID] = None
    action_type: str
    action_target: str
    status: QueueStatus
    execution_duration_ms: Optional[int] = None
    execution_result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_scheduled: bool = False
    current_retry_attempt: int = 0
    next_retry_at: Optional[datetime] = None
    escalation_event_id: Optional[UUID] = None


class QueueEntrySchema(BaseSchema):
    id: UUID
    orchestration_flow_id: Optional[UUID] = None
    orchestration_run_id: Optional[UUID] = None
    step_id: Optional[str] = None
    action_type: str
    action_target: str
    status: QueueStatus
    priority: int
    urgency: Urgency
    requires_approval: bool
    approval_status: Optional[ApprovalStatus] = None
    approval_notes: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    max_retry_attempts: int
    current_retry_attempt: int
    next_retry_at: Optional[datetime] = None
    depends_on: list[str]
    execution_error: Optional[str] = None
    created_at: datetime


class QueueEntryResponse(SuccessResponse):
    entry: QueueEntrySchema


class QueueEntryListResponse(SuccessResponse):
    entries: list[QueueEntrySchema]


class ApprovalDecision(BaseSchema):
    notes: Optional[str] = Field(None, max_length=2000)


class ExpireResponse(SuccessResponse):
    expired: int


class ReclaimResponse(SuccessResponse):
    reclaimed: list[UUID]


class QueueStatisticsResponse(SuccessResponse):
    window_hours: int
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: Optional[float] = None
    avg_duration_ms: Optional[int] = None
    p50_duration_ms: Optional[int] = None
    p95_duration_ms: Optional[int] = None
    p99_duration_ms: Optional[int] = None
    by_action_type: dict[str, dict[str, int]]
    queue_by_status: dict[str, int]


class ExecutionLogSchema(BaseSchema):
    id: UUID
    execution_queue_id: Optional[UUID] = None
    orchestration_flow_id: Optional[UUID] = None
    action_type: str
    action_target: str
    execution_status: LogStatus
    success: bool
    execution_error: Optional[str] = None
    execution_error_code: Optional[str] = None
    execution_duration_ms: int
    retry_attempt: int
    http_status_code: Optional[int] = None
    created_at: datetime


class ExecutionLogListResponse(SuccessResponse):
    logs: list[ExecutionLogSchema]


# ==========================================================================
# Escalation
# ==========================================================================

EscalationAction = Literal["notify_user", "notify_admin", "page_oncall", "create_ticket", "halt_flow"]
ChannelName = Literal["slack", "teams", "email", "webhook", "pagerduty"]


class EscalationTriggerRequest(BaseSchema):
    execution_queue_id: Optional[UUID] = None
    execution_log_id: Optional[UUID] = None
    escalation_reason: str = Field(..., min_length=1)
    trigger_context: dict[str, Any] = Field(default_factory=dict)
    auto_remediate: bool = False


class EscalationTriggerResponse(SuccessResponse):
    escalation_event_id: Optional[UUID] = None
    escalation_rule_id: Optional[UUID] = None
    escalation_level: Optional[int] = None
    actions_performed: list[dict[str, Any]] = Field(default_factory=list)
    notifications_sent: list[dict[str, Any]] = Field(default_factory=list)
    remediation_attempted: bool = False
    remediation_successful: Optional[bool] = None
    message: Optional[str] = None


class EscalationLevelSchema(BaseSchema):
    level: int = Field(..., ge=1)
    delay_minutes: int = Field(0, ge=0)
    actions: list[EscalationAction] = Field(default_factory=list)
    notify_channels: list[ChannelName] = Field(default_factory=list)


class RemediationActionSchema(BaseSchema):
    model_config = ConfigDict(extra="allow")

    type: Literal["retry", "fallback_flow", "cancel"]


class EscalationRuleCreate(BaseSchema):
    rule_name: str = Field(..., min_length=1, max_length=255)
    rule_description: Optional[str] = None
    rule_category: Optional[str] = Field(None, max_length=100)
    is_active: bool = True
    priority: int = Field(5, ge=1, le=10)
    trigger_conditions: dict[str, Any] = Field(default_factory=dict)
    applies_to_action_types: list[str] = Field(default_factory=list)
    applies_to_flows: list[UUID] = Field(default_factory=list)
    escalation_levels: list[EscalationLevelSchema] = Field(default_factory=list)
    notification_channels: dict[str, dict[str, Any]] = Field(default_factory=dict)
    auto_remediation_enabled: bool = False
    remediation_actions: list[RemediationActionSchema] = Field(default_factory=list)
    sla_enabled: bool = False
    sla_response_time_minutes: Optional[int] = Field(None, ge=1)
    sla_resolution_time_minutes: Optional[int] = Field(None, ge=1)
    max_escalations_per_hour: int = Field(10, ge=1)
    max_escalations_per_day: int = Field(50, ge=1)
    cooldown_period_minutes: int = Field(5, ge=0)


class EscalationRuleSchema(BaseSchema):
    id: UUID
    rule_name: str
    rule_description: Optional[str] = None
    is_active: bool
    priority: int
    trigger_conditions: dict[str, Any]
    applies_to_action_types: list[str]
    applies_to_flows: list[str]
    escalation_levels: list[dict[str, Any]]
    auto_remediation_enabled: bool
    sla_enabled: bool
    total_escalations: int
    successful_resolutions: int
    failed_resolutions: int
    avg_resolution_time_minutes: Optional[float] = None
    last_triggered_at: Optional[datetime] = None
    created_at: datetime


class EscalationRuleResponse(SuccessResponse):
    rule: EscalationRuleSchema


class EscalationRuleListResponse(SuccessResponse):
    rules: list[EscalationRuleSchema]


class EscalationEventSchema(BaseSchema):
    id: UUID
    escalation_rule_id: UUID
    execution_queue_id: Optional[UUID] = None
    execution_log_id: Optional[UUID] = None
    escalation_level: int
    escalation_reason: str
    status: EscalationStatus
    actions_performed: list[dict[str, Any]]
    notifications_sent: list[dict[str, Any]]
    remediation_attempted: bool
    remediation_successful: Optional[bool] = None
    sla_response_deadline: Optional[datetime] = None
    sla_resolution_deadline: Optional[datetime] = None
    sla_response_breached: bool
    sla_resolution_breached: bool
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    resolution_duration_minutes: Optional[int] = None
    triggered_at: datetime


class EscalationEventResponse(SuccessResponse):
    event: EscalationEventSchema


class EscalationEventListResponse(SuccessResponse):
    events: list[EscalationEventSchema]


class EscalationResolve(BaseSchema):
    resolution_notes: Optional[str] = Field(None, max_length=5000)
    successful: bool = True


class SlaCheckResponse(SuccessResponse):
    response_breaches: int
    resolution_breaches: int
