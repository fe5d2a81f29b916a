"""Initial schema - government_projects, states, project_executions

Revision ID: 001
Revises:
Create Date: 2025-12-01

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create tables for the execution engine"""

    op.create_table(
        'government_projects',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=30), nullable=False),
        sa.Column('refined_project', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('analysis_data', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('processing_logs', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_government_projects_id'), 'government_projects', ['id'], unique=False)
    op.create_index(op.f('ix_government_projects_user_id'), 'government_projects', ['user_id'], unique=False)
    op.create_index(op.f('ix_government_projects_status'), 'government_projects', ['status'], unique=False)

    op.create_table(
        'states',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('budget', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('gdp', sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column('approval_rating', sa.Numeric(precision=5, scale=2), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_states_id'), 'states', ['id'], unique=False)
    op.create_index(op.f('ix_states_user_id'), 'states', ['user_id'], unique=True)

    op.create_table(
        'project_executions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=False),
        sa.Column('execution_type', sa.String(length=20), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('executed_at', sa.DateTime(), nullable=True),
        sa.Column('payment_amount', sa.Numeric(precision=15, scale=2), nullable=True),
        sa.Column('installment_number', sa.Integer(), nullable=True),
        sa.Column('total_installments', sa.Integer(), nullable=True),
        sa.Column('economic_effects', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('social_effects', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('claim_token', sa.String(length=255), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['project_id'], ['government_projects.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_project_executions_id'), 'project_executions', ['id'], unique=False)
    op.create_index(op.f('ix_project_executions_project_id'), 'project_executions', ['project_id'], unique=False)
    op.create_index(op.f('ix_project_executions_status'), 'project_executions', ['status'], unique=False)
    # Due-check query: status = 'pending' AND scheduled_for <= now
    op.create_index(
        'ix_project_executions_status_scheduled_for',
        'project_executions',
        ['status', 'scheduled_for'],
        unique=False
    )


def downgrade() -> None:
    """Drop all tables"""
    op.drop_index('ix_project_executions_status_scheduled_for', table_name='project_executions')
    op.drop_index(op.f('ix_project_executions_status'), table_name='project_executions')
    op.drop_index(op.f('ix_project_executions_project_id'), table_name='project_executions')
    op.drop_index(op.f('ix_project_executions_id'), table_name='project_executions')
    op.drop_table('project_executions')

    op.drop_index(op.f('ix_states_user_id'), table_name='states')
    op.drop_index(op.f('ix_states_id'), table_name='states')
    op.drop_table('states')

    op.drop_index(op.f('ix_government_projects_status'), table_name='government_projects')
    op.drop_index(op.f('ix_government_projects_user_id'), table_name='government_projects')
    op.drop_index(op.f('ix_government_projects_id'), table_name='government_projects')
    op.drop_table('government_projects')
