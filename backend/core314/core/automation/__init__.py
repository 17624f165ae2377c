"""
Core314 Automation Pipeline
===========================

Trigger -> Orchestrator -> Execution Queue -> Executor -> Escalation Handler

Components:
- Orchestrator / FlowRegistry: flow selection and step expansion
- ExecutionQueue: eligibility, exclusive claims, approvals, expiry
- Executor: action dispatch, retries with backoff, execution log
- EscalationHandler: rule matching, notifications, remediation, SLA
- NotificationService: Slack, Teams, email, PagerDuty and webhook delivery
"""

from core314.core.automation.escalation import EscalationHandler, EscalationRuleRegistry
from core314.core.automation.executor import Executor
from core314.core.automation.notifications import NotificationService
from core314.core.automation.orchestrator import FlowRegistry, Orchestrator
from core314.core.automation.queue import ExecutionQueue

__all__ = [
    "EscalationHandler",
    "EscalationRuleRegistry",
    "ExecutionQueue",
    "Executor",
    "FlowRegistry",
    "NotificationService",
    "Orchestrator",
]
