"""
Flow Definition Schema - Steps, actions and conditions.

Flow steps are stored as JSON but validated here, at flow-creation time,
as tagged variants: one action model per ``action_type`` and a closed set
of condition operators. A malformed flow is rejected when it is saved, not
when the executor first tries to dispatch it.
"""

from collections import deque
from typing import Annotated, Any, Literal, Optional, Union, get_args

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError as PydanticValidationError,
    model_validator,
)

from core314.core.exceptions import ValidationError
from core314.core.models import ExecutionMode, Urgency


ConditionOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "contains",
    "in",
]

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]

# Record kinds the update_record action may touch
UPDATABLE_RECORDS: dict[str, frozenset[str]] = {
    "orchestration_flow": frozenset({"is_active", "flow_description", "tags"}),
    "escalation_event": frozenset({"status", "resolution_notes"}),
    "automation_task": frozenset({"status", "title", "description", "details"}),
}


# ==========================================================================
# Conditions
# ==========================================================================

class FlowCondition(BaseModel):
    """Gate evaluated against the trigger context."""

    field: str = Field(..., min_length=1)
    operator: ConditionOperator
    value: Any = None

    @model_validator(mode="after")
    def _in_needs_list(self) -> "FlowCondition":
        if self.operator == "in" and not isinstance(self.value, list):
            raise ValueError("'in' conditions require a list value")
        return self


# ==========================================================================
# Actions
# ==========================================================================

class _ActionBase(BaseModel):
    """Fields shared by every action step."""

    model_config = ConfigDict(extra="allow")

    action_target: str = "default"
    action_payload: dict[str, Any] = Field(default_factory=dict)
    action_config: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(5, ge=1, le=10)
    urgency: Urgency = Urgency.MEDIUM
    requires_approval: bool = False
    estimated_duration_ms: Optional[int] = Field(None, ge=0)
    max_retry_attempts: Optional[int] = Field(None, ge=1, le=10)
    retry_backoff_seconds: Optional[int] = Field(None, ge=0)
    delay_seconds: Optional[int] = Field(None, ge=0)
    expires_in_minutes: Optional[int] = Field(None, ge=1)
    tags: list[str] = Field(default_factory=list)


class SendNotificationAction(_ActionBase):
    action_type: Literal["send_notification"]
    action_target: Literal["slack", "teams", "email", "webhook", "pagerduty"]


class ApiCallAction(_ActionBase):
    action_type: Literal["api_call"]
    action_target: str = "custom_api"

    @model_validator(mode="after")
    def _needs_endpoint(self) -> "ApiCallAction":
        url = self.action_config.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ValueError("api_call requires action_config.url (http/https)")
        method = str(self.action_config.get("method", "POST")).upper()
        if method not in get_args(HttpMethod):
            raise ValueError(f"Unsupported HTTP method: {method}")
        return self


class UpdateRecordAction(_ActionBase):
    action_type: Literal["update_record"]

    @model_validator(mode="after")
    def _allowlisted(self) -> "UpdateRecordAction":
        allowed = UPDATABLE_RECORDS.get(self.action_target)
        if allowed is None:
            raise ValueError(f"Record kind '{self.action_target}' cannot be updated by automation")
        fields = set(self.action_payload.get("values", {}))
        if fields - allowed:
            raise ValueError(f"Fields not updatable: {sorted(fields - allowed)}")
        return self


class _WebhookAction(_ActionBase):
    @model_validator(mode="after")
    def _needs_url(self) -> "_WebhookAction":
        url = self.action_config.get("url") or self.action_target
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ValueError(f"{self.action_type} requires a URL in action_config.url or action_target")
        return self


class DataSyncAction(_WebhookAction):
    action_type: Literal["data_sync"]


class TriggerWebhookAction(_WebhookAction):
    action_type: Literal["trigger_webhook"]


class CreateTaskAction(_ActionBase):
    action_type: Literal["create_task"]
    action_target: str = "internal"


ActionConfig = Annotated[
    Union[
        SendNotificationAction,
        ApiCallAction,
        UpdateRecordAction,
        DataSyncAction,
        CreateTaskAction,
        TriggerWebhookAction,
    ],
    Field(discriminator="action_type"),
]

ACTION_TYPES = frozenset(
    {"send_notification", "api_call", "update_record", "data_sync", "create_task", "trigger_webhook"}
)


# ==========================================================================
# Steps
# ==========================================================================

class StepConnection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_step_id: str = Field(..., alias="sourceStepId")


class StepConnections(BaseModel):
    inputs: list[StepConnection] = Field(default_factory=list)
    outputs: list[dict[str, Any]] = Field(default_factory=list)


class ActionStep(BaseModel):
    id: str = Field(..., min_length=1)
    type: Literal["action"]
    config: ActionConfig
    position: Optional[dict[str, Any]] = None
    connections: StepConnections = Field(default_factory=StepConnections)


class PassiveStep(BaseModel):
    """Builder-only step (trigger, condition, delay); never queued."""

    id: str = Field(..., min_length=1)
    type: Literal["trigger", "condition", "delay"]
    config: dict[str, Any] = Field(default_factory=dict)
    position: Optional[dict[str, Any]] = None
    connections: StepConnections = Field(default_factory=StepConnections)


FlowStep = Annotated[Union[ActionStep, PassiveStep], Field(discriminator="type")]

_steps_adapter = TypeAdapter(list[FlowStep])
_conditions_adapter = TypeAdapter(list[FlowCondition])


# ==========================================================================
# Validation entry points
# ==========================================================================

def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    location = ".".join(str(part) for part in err.get("loc", ()))
    return f"{location}: {err.get('msg')}" if location else str(err.get("msg"))


def validate_flow_steps(raw_steps: list[dict[str, Any]], execution_mode: ExecutionMode) -> list[dict[str, Any]]:
    """
    Validate a flow's steps and return them in canonical JSON form.

    Raises ValidationError for malformed steps, duplicate ids, dangling
    graph connections or cycles.
    """
    try:
        steps = _steps_adapter.validate_python(raw_steps)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid flow step - {_first_error(e)}") from e

    ids = [step.id for step in steps]
    duplicates = {step_id for step_id in ids if ids.count(step_id) > 1}
    if duplicates:
        raise ValidationError(f"Duplicate step ids: {sorted(duplicates)}")

    if not any(isinstance(step, ActionStep) for step in steps):
        raise ValidationError("Flow must contain at least one action step")

    if execution_mode == ExecutionMode.GRAPH:
        known = set(ids)
        for step in steps:
            for conn in step.connections.inputs:
                if conn.source_step_id not in known:
                    raise ValidationError(
                        f"Step '{step.id}' references unknown step '{conn.source_step_id}'"
                    )
        topological_order([s.model_dump(by_alias=True) for s in steps])

    return [step.model_dump(mode="json", by_alias=True, exclude_none=True) for step in steps]


def validate_conditions(raw_conditions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    try:
        conditions = _conditions_adapter.validate_python(raw_conditions)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid flow condition - {_first_error(e)}") from e
    return [c.model_dump(mode="json") for c in conditions]


def input_step_ids(step: dict[str, Any]) -> list[str]:
    """Source step ids of a stored step's input connections."""
    inputs = (step.get("connections") or {}).get("inputs") or []
    result = []
    for conn in inputs:
        source = conn.get("sourceStepId") or conn.get("source_step_id")
        if source:
            result.append(source)
    return result


def topological_order(steps: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Order steps so every source step precedes its dependents.

    Declaration order is kept among independent steps. Raises
    ValidationError when the connections contain a cycle.
    """
    by_id = {step["id"]: step for step in steps}
    indegree = {step_id: 0 for step_id in by_id}
    dependents: dict[str, list[str]] = {step_id: [] for step_id in by_id}

    for step in steps:
        for source in input_step_ids(step):
            if source in by_id:
                indegree[step["id"]] += 1
                dependents[source].append(step["id"])

    ready = deque(step["id"] for step in steps if indegree[step["id"]] == 0)
    ordered: list[dict[str, Any]] = []
    while ready:
        step_id = ready.popleft()
        ordered.append(by_id[step_id])
        for child in dependents[step_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)

    if len(ordered) != len(steps):
        cyclic = sorted(step_id for step_id, degree in indegree.items() if degree > 0)
        raise ValidationError(f"Flow graph contains a cycle through steps {cyclic}")
    return ordered
