"""Initial schedule tracking schema

Revision ID: 001_schedule_tracking
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_schedule_tracking'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy Enum columns store member names
SCHEDULE_STATUS = ('SCHEDULED', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')
SESSION_STATUS = (
    'SCHEDULED', 'MONITORING_ACTIVE', 'CLOCKED_IN', 'ON_BREAK', 'COMPLETED',
    'NO_SHOW', 'ERROR', 'CANCELLED', 'ARCHIVED',
)
SESSION_EVENT_TYPE = (
    'SESSION_CREATED', 'MONITORING_STARTED', 'EMPLOYEE_ARRIVED', 'EMPLOYEE_DEPARTED',
    'LOCATION_UPDATE', 'AUTO_CLOCK_IN', 'MANUAL_CLOCK_IN', 'BREAK_STARTED', 'BREAK_ENDED',
    'AUTO_CLOCK_OUT', 'MANUAL_CLOCK_OUT', 'OVERTIME_STARTED', 'OVERTIME_APPROVED',
    'SCHEDULE_MODIFIED', 'NO_SHOW', 'ERROR_OCCURRED', 'ERROR_RESOLVED', 'SESSION_REPAIRED',
    'SESSION_TERMINATED', 'SESSION_ARCHIVED',
)
TRIGGERED_BY = ('SCHEDULE', 'EMPLOYEE', 'SYSTEM', 'ADMIN', 'GEOFENCE')


def _ts_default():
    # CURRENT_TIMESTAMP works on both SQLite and Postgres
    return sa.text('CURRENT_TIMESTAMP')


def upgrade() -> None:
    op.create_table(
        'job_sites',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_site_id', sa.String(), nullable=False),
        sa.Column('company_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('radius_meters', sa.Float(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=_ts_default(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_job_sites_id'), 'job_sites', ['id'], unique=False)
    op.create_index(op.f('ix_job_sites_job_site_id'), 'job_sites', ['job_site_id'], unique=True)
    op.create_index(op.f('ix_job_sites_company_id'), 'job_sites', ['company_id'], unique=False)

    op.create_table(
        'schedules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('schedule_id', sa.String(), nullable=False),
        sa.Column('employee_id', sa.String(), nullable=False),
        sa.Column('company_id', sa.String(), nullable=False),
        sa.Column('job_site_id', sa.String(), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('shift_type', sa.String(), nullable=False),
        sa.Column('break_allowance_minutes', sa.Integer(), nullable=False),
        sa.Column('expected_hours', sa.Float(), nullable=True),
        sa.Column('recurrence_rule', sa.String(), nullable=True),
        sa.Column('requires_approval', sa.Boolean(), nullable=False),
        sa.Column('status', sa.Enum(*SCHEDULE_STATUS, name='schedulestatus'), nullable=False),
        sa.Column('time_zone', sa.String(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=_ts_default(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=_ts_default(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_schedules_id'), 'schedules', ['id'], unique=False)
    op.create_index(op.f('ix_schedules_schedule_id'), 'schedules', ['schedule_id'], unique=True)
    op.create_index(op.f('ix_schedules_employee_id'), 'schedules', ['employee_id'], unique=False)
    op.create_index(op.f('ix_schedules_company_id'), 'schedules', ['company_id'], unique=False)
    op.create_index(op.f('ix_schedules_job_site_id'), 'schedules', ['job_site_id'], unique=False)
    op.create_index(op.f('ix_schedules_start_time'), 'schedules', ['start_time'], unique=False)

    op.create_table(
        'schedule_changes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('schedule_id', sa.String(), nullable=False),
        sa.Column('changed_by', sa.String(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('field', sa.String(), nullable=False),
        sa.Column('old_value', sa.JSON(), nullable=True),
        sa.Column('new_value', sa.JSON(), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_schedule_changes_id'), 'schedule_changes', ['id'], unique=False)
    op.create_index(op.f('ix_schedule_changes_schedule_id'), 'schedule_changes', ['schedule_id'], unique=False)

    op.create_table(
        'company_policy_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.String(), nullable=False),
        sa.Column('settings_json', sa.JSON(), nullable=False),
        sa.Column('updated_by', sa.String(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=_ts_default(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_company_policy_settings_id'), 'company_policy_settings', ['id'], unique=False)
    op.create_index(op.f('ix_company_policy_settings_company_id'), 'company_policy_settings', ['company_id'], unique=True)

    op.create_table(
        'tracking_consents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('employee_id', sa.String(), nullable=False),
        sa.Column('auto_tracking_enabled', sa.Boolean(), nullable=False),
        sa.Column('consent_given', sa.Boolean(), nullable=False),
        sa.Column('consent_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('consent_version', sa.String(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=_ts_default(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_tracking_consents_id'), 'tracking_consents', ['id'], unique=False)
    op.create_index(op.f('ix_tracking_consents_employee_id'), 'tracking_consents', ['employee_id'], unique=True)

    op.create_table(
        'schedule_sessions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('schedule_id', sa.String(), nullable=False),
        sa.Column('occurrence_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('employee_id', sa.String(), nullable=False),
        sa.Column('company_id', sa.String(), nullable=False),
        sa.Column('status', sa.Enum(*SESSION_STATUS, name='sessionstatus'), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('document', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=_ts_default(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=_ts_default(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('schedule_id', 'occurrence_start', name='uq_schedule_sessions_occurrence'),
    )
    op.create_index(op.f('ix_schedule_sessions_schedule_id'), 'schedule_sessions', ['schedule_id'], unique=False)
    op.create_index(op.f('ix_schedule_sessions_employee_id'), 'schedule_sessions', ['employee_id'], unique=False)
    op.create_index(op.f('ix_schedule_sessions_company_id'), 'schedule_sessions', ['company_id'], unique=False)
    op.create_index(op.f('ix_schedule_sessions_status'), 'schedule_sessions', ['status'], unique=False)

    op.create_table(
        'schedule_session_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.Enum(*SESSION_EVENT_TYPE, name='sessioneventtype'), nullable=False),
        sa.Column('triggered_by', sa.Enum(*TRIGGERED_BY, name='triggeredby'), nullable=False),
        sa.Column('actor_id', sa.String(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('meta_json', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('session_id', 'event_id', name='uq_schedule_session_events_event'),
    )
    op.create_index(op.f('ix_schedule_session_events_id'), 'schedule_session_events', ['id'], unique=False)
    op.create_index(op.f('ix_schedule_session_events_session_id'), 'schedule_session_events', ['session_id'], unique=False)
    op.create_index(op.f('ix_schedule_session_events_occurred_at'), 'schedule_session_events', ['occurred_at'], unique=False)

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor_id', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('meta_json', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=_ts_default(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_audit_logs_id'), 'audit_logs', ['id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_audit_logs_id'), table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index(op.f('ix_schedule_session_events_occurred_at'), table_name='schedule_session_events')
    op.drop_index(op.f('ix_schedule_session_events_session_id'), table_name='schedule_session_events')
    op.drop_index(op.f('ix_schedule_session_events_id'), table_name='schedule_session_events')
    op.drop_table('schedule_session_events')
    op.drop_index(op.f('ix_schedule_sessions_status'), table_name='schedule_sessions')
    op.drop_index(op.f('ix_schedule_sessions_company_id'), table_name='schedule_sessions')
    op.drop_index(op.f('ix_schedule_sessions_employee_id'), table_name='schedule_sessions')
    op.drop_index(op.f('ix_schedule_sessions_schedule_id'), table_name='schedule_sessions')
    op.drop_table('schedule_sessions')
    op.drop_index(op.f('ix_tracking_consents_employee_id'), table_name='tracking_consents')
    op.drop_index(op.f('ix_tracking_consents_id'), table_name='tracking_consents')
    op.drop_table('tracking_consents')
    op.drop_index(op.f('ix_company_policy_settings_company_id'), table_name='company_policy_settings')
    op.drop_index(op.f('ix_company_policy_settings_id'), table_name='company_policy_settings')
    op.drop_table('company_policy_settings')
    op.drop_index(op.f('ix_schedule_changes_schedule_id'), table_name='schedule_changes')
    op.drop_index(op.f('ix_schedule_changes_id'), table_name='schedule_changes')
    op.drop_table('schedule_changes')
    op.drop_index(op.f('ix_schedules_start_time'), table_name='schedules')
    op.drop_index(op.f('ix_schedules_job_site_id'), table_name='schedules')
    op.drop_index(op.f('ix_schedules_company_id'), table_name='schedules')
    op.drop_index(op.f('ix_schedules_employee_id'), table_name='schedules')
    op.drop_index(op.f('ix_schedules_schedule_id'), table_name='schedules')
    op.drop_index(op.f('ix_schedules_id'), table_name='schedules')
    op.drop_table('schedules')
    op.drop_index(op.f('ix_job_sites_company_id'), table_name='job_sites')
    op.drop_index(op.f('ix_job_sites_job_site_id'), table_name='job_sites')
    op.drop_index(op.f('ix_job_sites_id'), table_name='job_sites')
    op.drop_table('job_sites')
