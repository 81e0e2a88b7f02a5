"""create rounds, round_results and scores

Revision ID: 5c2d9e7a1f30
Revises:
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2d9e7a1f30'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'rounds',
        sa.Column('round_id', sa.String(length=64), primary_key=True),
        sa.Column('room', sa.String(length=64), nullable=False),
        sa.Column('start_at', sa.DateTime(), nullable=False),
        sa.Column('end_at', sa.DateTime(), nullable=False),
        sa.Column('max_time', sa.Integer(), nullable=False),
        sa.Column('max_mult', sa.Float(), nullable=False),
        sa.Column('target', sa.Float(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='running'),
    )
    op.create_index('ix_rounds_room', 'rounds', ['room'])

    op.create_table(
        'round_results',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('round_id', sa.String(length=64), sa.ForeignKey('rounds.round_id'), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=32), nullable=False),
        sa.Column('value', sa.Float(), nullable=False),
        sa.Column('diff', sa.Float(), nullable=False),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('crashed', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('room', sa.String(length=64), nullable=False),
        sa.UniqueConstraint('round_id', 'user_id', name='uq_round_results_round_user'),
    )
    op.create_index('ix_round_results_round_id', 'round_results', ['round_id'])

    op.create_table(
        'scores',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=32), nullable=False),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('value', sa.Float(), nullable=False),
        sa.Column('target', sa.Float(), nullable=False),
        sa.Column('diff', sa.Float(), nullable=False),
        sa.Column('crashed', sa.Boolean(), nullable=False),
        sa.Column('room', sa.String(length=64), nullable=True),
        sa.Column('round_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_scores_user_id', 'scores', ['user_id'])
    op.create_index('ix_scores_room', 'scores', ['room'])
    op.create_index('ix_scores_created_at', 'scores', ['created_at'])


def downgrade():
    op.drop_index('ix_scores_created_at', table_name='scores')
    op.drop_index('ix_scores_room', table_name='scores')
    op.drop_index('ix_scores_user_id', table_name='scores')
    op.drop_table('scores')
    op.drop_index('ix_round_results_round_id', table_name='round_results')
    op.drop_table('round_results')
    op.drop_index('ix_rounds_room', table_name='rounds')
    op.drop_table('rounds')
