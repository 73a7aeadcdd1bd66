"""Initial schema - clients, appointments, workflows, enrollments, execution_logs

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create tables for the PracticeFlow workflow engine"""

    op.create_table(
        'clients',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=True),
        sa.Column('last_name', sa.String(length=100), nullable=True),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phones', sa.JSON(), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('portal_status', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_clients_id'), 'clients', ['id'], unique=False)
    op.create_index(op.f('ix_clients_org_id'), 'clients', ['org_id'], unique=False)

    op.create_table(
        'appointments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=255), nullable=False),
        sa.Column('date_time', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('provider', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_appointments_id'), 'appointments', ['id'], unique=False)
    op.create_index(op.f('ix_appointments_org_id'), 'appointments', ['org_id'], unique=False)
    op.create_index(op.f('ix_appointments_client_id'), 'appointments', ['client_id'], unique=False)
    op.create_index(op.f('ix_appointments_date_time'), 'appointments', ['date_time'], unique=False)
    op.create_index(op.f('ix_appointments_status'), 'appointments', ['status'], unique=False)

    op.create_table(
        'workflows',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('trigger', sa.String(length=50), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('conditions', sa.JSON(), nullable=False),
        sa.Column('blocks', sa.JSON(), nullable=False),
        sa.Column('connections', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='draft'),
        sa.Column('prevent_duplicates', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('duplicate_prevention_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('total_runs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_runs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_runs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_run_at', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_workflows_id'), 'workflows', ['id'], unique=False)
    op.create_index(op.f('ix_workflows_org_id'), 'workflows', ['org_id'], unique=False)
    op.create_index(op.f('ix_workflows_name'), 'workflows', ['name'], unique=False)
    op.create_index(op.f('ix_workflows_trigger'), 'workflows', ['trigger'], unique=False)
    op.create_index(op.f('ix_workflows_status'), 'workflows', ['status'], unique=False)

    op.create_table(
        'workflow_enrollments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('workflow_id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('current_status', sa.String(length=20), nullable=False),
        sa.Column('current_step', sa.String(length=100), nullable=False),
        sa.Column('enrolled_at', sa.BigInteger(), nullable=False),
        sa.Column('paused_at', sa.BigInteger(), nullable=True),
        sa.Column('resumed_at', sa.BigInteger(), nullable=True),
        sa.Column('completed_at', sa.BigInteger(), nullable=True),
        sa.Column('next_execution_at', sa.BigInteger(), nullable=True),
        sa.Column('enrollment_reason', sa.String(length=255), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('waiting', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('claimed_until', sa.BigInteger(), nullable=True),
        sa.Column('event_context', sa.JSON(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['workflow_id'], ['workflows.id'], ),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_workflow_enrollments_id'), 'workflow_enrollments', ['id'], unique=False)
    op.create_index(op.f('ix_workflow_enrollments_org_id'), 'workflow_enrollments', ['org_id'], unique=False)
    op.create_index(op.f('ix_workflow_enrollments_workflow_id'), 'workflow_enrollments', ['workflow_id'], unique=False)
    op.create_index(op.f('ix_workflow_enrollments_client_id'), 'workflow_enrollments', ['client_id'], unique=False)
    op.create_index(op.f('ix_workflow_enrollments_current_status'), 'workflow_enrollments', ['current_status'], unique=False)
    op.create_index(op.f('ix_workflow_enrollments_next_execution_at'), 'workflow_enrollments', ['next_execution_at'], unique=False)
    op.create_index('ix_enrollments_workflow_client', 'workflow_enrollments', ['workflow_id', 'client_id'], unique=False)
    op.create_index('ix_enrollments_due', 'workflow_enrollments', ['current_status', 'next_execution_at'], unique=False)

    op.create_table(
        'execution_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('workflow_id', sa.Integer(), nullable=False),
        sa.Column('enrollment_id', sa.Integer(), nullable=True),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('step_id', sa.String(length=100), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('executed_at', sa.BigInteger(), nullable=False),
        sa.Column('execution_time_ms', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['workflow_id'], ['workflows.id'], ),
        sa.ForeignKeyConstraint(['enrollment_id'], ['workflow_enrollments.id'], ),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_execution_logs_id'), 'execution_logs', ['id'], unique=False)
    op.create_index(op.f('ix_execution_logs_org_id'), 'execution_logs', ['org_id'], unique=False)
    op.create_index(op.f('ix_execution_logs_workflow_id'), 'execution_logs', ['workflow_id'], unique=False)
    op.create_index(op.f('ix_execution_logs_enrollment_id'), 'execution_logs', ['enrollment_id'], unique=False)
    op.create_index(op.f('ix_execution_logs_client_id'), 'execution_logs', ['client_id'], unique=False)
    op.create_index(op.f('ix_execution_logs_status'), 'execution_logs', ['status'], unique=False)
    op.create_index(op.f('ix_execution_logs_executed_at'), 'execution_logs', ['executed_at'], unique=False)


def downgrade() -> None:
    """Drop all PracticeFlow tables"""
    op.drop_table('execution_logs')
    op.drop_table('workflow_enrollments')
    op.drop_table('workflows')
    op.drop_table('appointments')
    op.drop_table('clients')
