"""Create generation scheduler tables

Revision ID: 5c1e0a7d9b21
Revises:
Create Date: 2026-10-19 09:14:02.118344

"""
from alembic import op
import sqlalchemy as sa

revision = '5c1e0a7d9b21'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'tracked_trend',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('title', sa.String(length=300), nullable=False),
        sa.Column('category', sa.String(length=100), nullable=False),
        sa.Column('search_volume', sa.Integer(), nullable=False),
        sa.Column('formatted_traffic', sa.String(length=50), nullable=True),
        sa.Column('source', sa.String(length=100), nullable=False),
        sa.Column('first_seen', sa.DateTime(), nullable=False),
        sa.Column('last_seen', sa.DateTime(), nullable=False),
        sa.Column('article_generated', sa.Boolean(), nullable=False),
        sa.Column('article_id', sa.Integer(), nullable=True),
        sa.Column('article_generated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('tracked_trend', schema=None) as batch_op:
        batch_op.create_index('idx_tracked_trend_generated_seen', ['article_generated', 'last_seen'], unique=False)

    op.create_table(
        'daily_plan',
        sa.Column('date', sa.String(length=10), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('date'),
    )

    op.create_table(
        'generation_job',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('plan_date', sa.String(length=10), nullable=False),
        sa.Column('trend_id', sa.String(length=32), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('article_id', sa.Integer(), nullable=True),
        sa.Column('quality_score', sa.Float(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['plan_date'], ['daily_plan.date']),
        sa.ForeignKeyConstraint(['trend_id'], ['tracked_trend.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('plan_date', 'position', name='uq_generation_job_plan_position'),
    )
    with op.batch_alter_table('generation_job', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_generation_job_plan_date'), ['plan_date'], unique=False)
        batch_op.create_index('idx_generation_job_status_started', ['status', 'started_at'], unique=False)

    op.create_table(
        'quota_usage',
        sa.Column('bucket', sa.String(length=20), nullable=False),
        sa.Column('period', sa.String(length=10), nullable=False),
        sa.Column('period_key', sa.String(length=10), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False),
        sa.Column('ceiling', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('count <= ceiling', name='ck_quota_usage_within_ceiling'),
        sa.PrimaryKeyConstraint('bucket'),
    )
    with op.batch_alter_table('quota_usage', schema=None) as batch_op:
        batch_op.create_index('idx_quota_usage_period_key', ['period', 'period_key'], unique=False)

    op.create_table(
        'scheduler_run_state',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('is_running', sa.Boolean(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('stopped_at', sa.DateTime(), nullable=True),
        sa.Column('last_tick_at', sa.DateTime(), nullable=True),
        sa.Column('last_tick_status', sa.String(length=40), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'article',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('slug', sa.String(length=200), nullable=False),
        sa.Column('title', sa.String(length=300), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('trend_id', sa.String(length=32), nullable=True),
        sa.Column('quality_score', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['trend_id'], ['tracked_trend.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
    )


def downgrade():
    op.drop_table('article')
    op.drop_table('scheduler_run_state')

    with op.batch_alter_table('quota_usage', schema=None) as batch_op:
        batch_op.drop_index('idx_quota_usage_period_key')
    op.drop_table('quota_usage')

    with op.batch_alter_table('generation_job', schema=None) as batch_op:
        batch_op.drop_index('idx_generation_job_status_started')
        batch_op.drop_index(batch_op.f('ix_generation_job_plan_date'))
    op.drop_table('generation_job')

    op.drop_table('daily_plan')

    with op.batch_alter_table('tracked_trend', schema=None) as batch_op:
        batch_op.drop_index('idx_tracked_trend_generated_seen')
    op.drop_table('tracked_trend')
