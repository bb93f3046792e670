"""add_badges_and_leaderboard_snapshots

Requires the content platform schema (users, rules, votes, rule_metrics_daily,
audit_logs) to exist already: user_badges references users.id. Run the
platform migrations first, or set ``depends_on`` to the revision that
creates users when both histories share one alembic environment.

Revision ID: 001_gamification_engine
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '001_gamification_engine'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # users, rules, votes, rule_metrics_daily and audit_logs belong to the
    # content platform's migrations; only engine-owned tables are created here.
    op.create_table(
        'badges',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('slug', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('criteria', postgresql.JSONB(), nullable=False),
        sa.UniqueConstraint('slug', name='uq_badges_slug'),
    )

    op.create_table(
        'user_badges',
        sa.Column('user_id', sa.String(length=36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('badge_id', sa.Integer(), sa.ForeignKey('badges.id', ondelete='CASCADE'), nullable=False),
        sa.Column('awarded_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('user_id', 'badge_id', name='pk_user_badges'),
    )
    op.create_index('ix_user_badges_user_awarded', 'user_badges', ['user_id', 'awarded_at'])

    op.create_table(
        'leaderboard_snapshots',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('period', sa.String(length=20), nullable=False),
        sa.Column('scope', sa.String(length=20), nullable=False),
        sa.Column('scope_ref', sa.String(length=100), nullable=True),
        sa.Column('scope_key', sa.String(length=100), nullable=False, server_default=''),
        sa.Column('snapshot_date', sa.Date(), nullable=False),
        sa.Column('rank', postgresql.JSONB(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        # One snapshot per board per day; same-day recomputes upsert into it
        sa.UniqueConstraint(
            'period', 'scope', 'scope_key', 'snapshot_date',
            name='uq_leaderboard_snapshot_day',
        ),
        sa.CheckConstraint(
            "(scope = 'GLOBAL') = (scope_ref IS NULL)",
            name='ck_leaderboard_snapshot_scope_ref',
        ),
    )
    op.create_index(
        'ix_leaderboard_snapshot_recent',
        'leaderboard_snapshots',
        ['period', 'scope', 'scope_key', 'created_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_leaderboard_snapshot_recent', table_name='leaderboard_snapshots')
    op.drop_table('leaderboard_snapshots')
    op.drop_index('ix_user_badges_user_awarded', table_name='user_badges')
    op.drop_table('user_badges')
    op.drop_table('badges')
