"""Core314 automation tables

Revision ID: 001_core314_automation
Revises:
Create Date: 2026-10-19

Creates the orchestration pipeline schema: flows, execution queue,
append-only execution log, decision audit log, automation tasks and the
escalation rule/event pair.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_core314_automation'
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def _owner():
    return sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)


def upgrade() -> None:
    # ==========================================================================
    # Users
    # ==========================================================================

    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='user'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # ==========================================================================
    # Orchestration
    # ==========================================================================

    op.create_table(
        'orchestration_flows',
        sa.Column('id', sa.Uuid(), nullable=False),
        _owner(),
        sa.Column('flow_name', sa.String(length=255), nullable=False),
        sa.Column('flow_description', sa.Text(), nullable=True),
        sa.Column('flow_category', sa.String(length=100), nullable=True),
        sa.Column('flow_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('trigger_type', sa.String(length=100), nullable=False),
        sa.Column('trigger_config', _json(), nullable=False, server_default='{}'),
        sa.Column('conditions', _json(), nullable=False, server_default='[]'),
        sa.Column('flow_steps', _json(), nullable=False, server_default='[]'),
        sa.Column('execution_mode', sa.String(length=32), nullable=False, server_default='sequential'),
        sa.Column('max_execution_time_seconds', sa.Integer(), nullable=False, server_default='300'),
        sa.Column('retry_policy', _json(), nullable=False, server_default='{}'),
        sa.Column('requires_approval', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('on_error_action', sa.String(length=32), nullable=False, server_default='escalate'),
        sa.Column('fallback_flow_id', sa.Uuid(), nullable=True),
        sa.Column('error_notification_channels', _json(), nullable=False, server_default='[]'),
        sa.Column('total_executions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_executions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_executions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_execution_time_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tags', _json(), nullable=False, server_default='[]'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['fallback_flow_id'], ['orchestration_flows.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_orchestration_flows_user_id', 'orchestration_flows', ['user_id'], unique=False)
    op.create_index('ix_orchestration_flows_is_active', 'orchestration_flows', ['is_active'], unique=False)
    op.create_index('ix_orchestration_flows_trigger_type', 'orchestration_flows', ['trigger_type'], unique=False)

    # ==========================================================================
    # Execution queue and log
    # ==========================================================================

    op.create_table(
        'execution_queue',
        sa.Column('id', sa.Uuid(), nullable=False),
        _owner(),
        sa.Column('orchestration_flow_id', sa.Uuid(), nullable=True),
        sa.Column('orchestration_run_id', sa.Uuid(), nullable=True),
        sa.Column('decision_event_id', sa.Uuid(), nullable=True),
        sa.Column('recommendation_id', sa.Uuid(), nullable=True),
        sa.Column('step_id', sa.String(length=100), nullable=True),
        sa.Column('action_type', sa.String(length=100), nullable=False),
        sa.Column('action_target', sa.String(length=255), nullable=False),
        sa.Column('action_payload', _json(), nullable=False, server_default='{}'),
        sa.Column('action_config', _json(), nullable=False, server_default='{}'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('urgency', sa.String(length=32), nullable=False, server_default='medium'),
        sa.Column('requires_approval', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('approval_status', sa.String(length=32), nullable=True),
        sa.Column('approved_by', sa.Uuid(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approval_notes', sa.Text(), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('max_retry_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('current_retry_attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('retry_backoff_seconds', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('last_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('execution_duration_ms', sa.Integer(), nullable=True),
        sa.Column('execution_result', _json(), nullable=True),
        sa.Column('execution_error', sa.Text(), nullable=True),
        sa.Column('execution_error_code', sa.String(length=100), nullable=True),
        sa.Column('depends_on', _json(), nullable=False, server_default='[]'),
        sa.Column('dependency_mode', sa.String(length=32), nullable=False, server_default='all'),
        sa.Column('context_data', _json(), nullable=False, server_default='{}'),
        sa.Column('tags', _json(), nullable=False, server_default='[]'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['orchestration_flow_id'], ['orchestration_flows.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_execution_queue_user_id', 'execution_queue', ['user_id'], unique=False)
    op.create_index('ix_execution_queue_orchestration_flow_id', 'execution_queue', ['orchestration_flow_id'], unique=False)
    op.create_index('ix_execution_queue_orchestration_run_id', 'execution_queue', ['orchestration_run_id'], unique=False)
    op.create_index('ix_execution_queue_decision_event_id', 'execution_queue', ['decision_event_id'], unique=False)
    op.create_index('ix_execution_queue_status', 'execution_queue', ['status'], unique=False)
    # Claim order: priority then age, pending rows only
    op.create_index(
        'ix_execution_queue_claim_order',
        'execution_queue',
        ['user_id', 'priority', 'created_at'],
        unique=False,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        'execution_log',
        sa.Column('id', sa.Uuid(), nullable=False),
        _owner(),
        sa.Column('execution_queue_id', sa.Uuid(), nullable=True),
        sa.Column('orchestration_flow_id', sa.Uuid(), nullable=True),
        sa.Column('decision_event_id', sa.Uuid(), nullable=True),
        sa.Column('recommendation_id', sa.Uuid(), nullable=True),
        sa.Column('action_type', sa.String(length=100), nullable=False),
        sa.Column('action_target', sa.String(length=255), nullable=False),
        sa.Column('action_payload', _json(), nullable=False, server_default='{}'),
        sa.Column('action_config', _json(), nullable=False, server_default='{}'),
        sa.Column('execution_status', sa.String(length=32), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('execution_result', _json(), nullable=True),
        sa.Column('execution_error', sa.Text(), nullable=True),
        sa.Column('execution_error_code', sa.String(length=100), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('execution_duration_ms', sa.Integer(), nullable=False),
        sa.Column('queue_wait_time_ms', sa.Integer(), nullable=True),
        sa.Column('retry_attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('http_status_code', sa.Integer(), nullable=True),
        sa.Column('http_response_time_ms', sa.Integer(), nullable=True),
        sa.Column('integration_name', sa.String(length=100), nullable=True),
        sa.Column('integration_endpoint', sa.String(length=500), nullable=True),
        sa.Column('integration_method', sa.String(length=10), nullable=True),
        sa.Column('context_data', _json(), nullable=False, server_default='{}'),
        sa.Column('triggered_by', sa.String(length=100), nullable=False, server_default='automation'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['execution_queue_id'], ['execution_queue.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['orchestration_flow_id'], ['orchestration_flows.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_execution_log_user_id', 'execution_log', ['user_id'], unique=False)
    op.create_index('ix_execution_log_execution_queue_id', 'execution_log', ['execution_queue_id'], unique=False)
    op.create_index('ix_execution_log_orchestration_flow_id', 'execution_log', ['orchestration_flow_id'], unique=False)
    op.create_index('ix_execution_log_action_type', 'execution_log', ['action_type'], unique=False)
    op.create_index('ix_execution_log_success', 'execution_log', ['success'], unique=False)
    op.create_index('ix_execution_log_created_at', 'execution_log', ['created_at'], unique=False)

    # Append-only at the database level
    op.execute("""
        CREATE OR REPLACE FUNCTION execution_log_reject_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'execution_log is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER execution_log_append_only
        BEFORE UPDATE OR DELETE ON execution_log
        FOR EACH ROW EXECUTE FUNCTION execution_log_reject_mutation()
    """)

    op.create_table(
        'decision_audit_log',
        sa.Column('id', sa.Uuid(), nullable=False),
        _owner(),
        sa.Column('decision_event_id', sa.Uuid(), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('event_category', sa.String(length=100), nullable=False),
        sa.Column('event_description', sa.Text(), nullable=False),
        sa.Column('actor_type', sa.String(length=50), nullable=False, server_default='system'),
        sa.Column('execution_success', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('metadata', _json(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_decision_audit_log_user_id', 'decision_audit_log', ['user_id'], unique=False)
    op.create_index('ix_decision_audit_log_decision_event_id', 'decision_audit_log', ['decision_event_id'], unique=False)

    op.create_table(
        'automation_tasks',
        sa.Column('id', sa.Uuid(), nullable=False),
        _owner(),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='open'),
        sa.Column('source', sa.String(length=50), nullable=False, server_default='automation'),
        sa.Column('execution_queue_id', sa.Uuid(), nullable=True),
        sa.Column('escalation_event_id', sa.Uuid(), nullable=True),
        sa.Column('details', _json(), nullable=False, server_default='{}'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_automation_tasks_user_id', 'automation_tasks', ['user_id'], unique=False)

    # ==========================================================================
    # Escalation
    # ==========================================================================

    op.create_table(
        'escalation_rules',
        sa.Column('id', sa.Uuid(), nullable=False),
        _owner(),
        sa.Column('rule_name', sa.String(length=255), nullable=False),
        sa.Column('rule_description', sa.Text(), nullable=True),
        sa.Column('rule_category', sa.String(length=100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('trigger_conditions', _json(), nullable=False, server_default='{}'),
        sa.Column('applies_to_action_types', _json(), nullable=False, server_default='[]'),
        sa.Column('applies_to_flows', _json(), nullable=False, server_default='[]'),
        sa.Column('escalation_levels', _json(), nullable=False, server_default='[]'),
        sa.Column('notification_channels', _json(), nullable=False, server_default='{}'),
        sa.Column('auto_remediation_enabled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('remediation_actions', _json(), nullable=False, server_default='[]'),
        sa.Column('sla_enabled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('sla_response_time_minutes', sa.Integer(), nullable=True),
        sa.Column('sla_resolution_time_minutes', sa.Integer(), nullable=True),
        sa.Column('max_escalations_per_hour', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('max_escalations_per_day', sa.Integer(), nullable=False, server_default='50'),
        sa.Column('cooldown_period_minutes', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('total_escalations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_resolutions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_resolutions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_resolution_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_triggered_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_escalation_rules_user_id', 'escalation_rules', ['user_id'], unique=False)
    op.create_index('ix_escalation_rules_is_active', 'escalation_rules', ['is_active'], unique=False)

    op.create_table(
        'escalation_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        _owner(),
        sa.Column('escalation_rule_id', sa.Uuid(), nullable=False),
        sa.Column('execution_queue_id', sa.Uuid(), nullable=True),
        sa.Column('execution_log_id', sa.Uuid(), nullable=True),
        sa.Column('orchestration_flow_id', sa.Uuid(), nullable=True),
        sa.Column('escalation_level', sa.Integer(), nullable=False),
        sa.Column('escalation_reason', sa.Text(), nullable=False),
        sa.Column('trigger_conditions_met', _json(), nullable=False, server_default='{}'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='triggered'),
        sa.Column('acknowledged_by', sa.Uuid(), nullable=True),
        sa.Column('acknowledged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by', sa.Uuid(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('actions_performed', _json(), nullable=False, server_default='[]'),
        sa.Column('notifications_sent', _json(), nullable=False, server_default='[]'),
        sa.Column('remediation_attempted', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('remediation_successful', sa.Boolean(), nullable=True),
        sa.Column('sla_response_deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sla_resolution_deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sla_response_breached', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('sla_resolution_breached', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('triggered_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('resolution_duration_minutes', sa.Integer(), nullable=True),
        sa.Column('context_data', _json(), nullable=False, server_default='{}'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['escalation_rule_id'], ['escalation_rules.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['execution_queue_id'], ['execution_queue.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['execution_log_id'], ['execution_log.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['orchestration_flow_id'], ['orchestration_flows.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_escalation_events_user_id', 'escalation_events', ['user_id'], unique=False)
    op.create_index('ix_escalation_events_escalation_rule_id', 'escalation_events', ['escalation_rule_id'], unique=False)
    op.create_index('ix_escalation_events_execution_queue_id', 'escalation_events', ['execution_queue_id'], unique=False)
    op.create_index('ix_escalation_events_status', 'escalation_events', ['status'], unique=False)


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('escalation_events')
    op.drop_table('escalation_rules')
    op.drop_table('automation_tasks')
    op.drop_table('decision_audit_log')
    op.execute("DROP TRIGGER IF EXISTS execution_log_append_only ON execution_log")
    op.execute("DROP FUNCTION IF EXISTS execution_log_reject_mutation()")
    op.drop_table('execution_log')
    op.drop_table('execution_queue')
    op.drop_table('orchestration_flows')
    op.drop_table('users')
