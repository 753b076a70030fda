"""Initial RankForge schema (ranks, groups, players, tasks, tournaments, ledgers)

Revision ID: a1f0c3d5e7b9
Revises:
Create Date: 2026-10-18T09:12:44.318207
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1f0c3d5e7b9'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- ranks ---
    op.create_table(
        'ranks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(32), nullable=False),
        sa.Column('min_xp', sa.Integer(), nullable=False),
        sa.Column('xp_booster', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('min_xp >= 0', name='ck_rank_min_xp'),
        sa.CheckConstraint('xp_booster >= 1.0', name='ck_rank_booster'),
    )
    op.create_index('ix_ranks_name', 'ranks', ['name'], unique=True)
    op.create_index('ix_ranks_min_xp', 'ranks', ['min_xp'], unique=True)

    # --- groups ---
    op.create_table(
        'groups',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(32), nullable=False),
        sa.Column('xp_booster', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('xp_booster >= 1.0', name='ck_group_booster'),
    )
    op.create_index('ix_groups_name', 'groups', ['name'], unique=True)

    # --- players ---
    op.create_table(
        'players',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('username', sa.String(15), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('role', sa.Enum('OWNER', 'ADMIN', 'MODERATOR', 'USER', name='playerrole'), nullable=False, server_default='USER'),
        sa.Column('rank_id', sa.String(), sa.ForeignKey('ranks.id'), nullable=True),
        sa.Column('total_xp', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('total_xp >= 0', name='ck_player_total_xp'),
    )
    op.create_index('ix_players_username', 'players', ['username'], unique=True)
    op.create_index('ix_players_email', 'players', ['email'], unique=True)
    op.create_index('ix_players_role', 'players', ['role'])
    op.create_index('ix_players_rank_id', 'players', ['rank_id'])
    op.create_index('ix_players_total_xp', 'players', ['total_xp'])
    op.create_index('ix_players_last_updated', 'players', ['last_updated'])

    op.create_table(
        'player_groups',
        sa.Column('player_id', sa.String(), sa.ForeignKey('players.id', ondelete='CASCADE'), nullable=False),
        sa.Column('group_id', sa.String(), sa.ForeignKey('groups.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('player_id', 'group_id'),
    )

    # --- verification_codes ---
    op.create_table(
        'verification_codes',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('player_id', sa.String(), sa.ForeignKey('players.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('code', sa.String(5), nullable=False),
        sa.Column('purpose', sa.Enum('VERIFY', 'RESET', name='codepurpose'), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_verification_codes_player_id', 'verification_codes', ['player_id'])
    op.create_index('ix_verification_codes_email', 'verification_codes', ['email'])

    # --- tournaments ---
    op.create_table(
        'tournaments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(64), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('max_participants', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('max_participants >= 1', name='ck_tournament_capacity'),
        sa.CheckConstraint('start_time < end_time', name='ck_tournament_window'),
    )
    op.create_index('ix_tournaments_start_time', 'tournaments', ['start_time'])
    op.create_index('ix_tournaments_end_time', 'tournaments', ['end_time'])

    op.create_table(
        'tournament_participants',
        sa.Column('tournament_id', sa.String(), sa.ForeignKey('tournaments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('player_id', sa.String(), sa.ForeignKey('players.id', ondelete='CASCADE'), nullable=False),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('tournament_id', 'player_id'),
    )
    op.create_index('ix_tournament_participants_player_id', 'tournament_participants', ['player_id'])

    op.create_table(
        'tournament_ranks',
        sa.Column('tournament_id', sa.String(), sa.ForeignKey('tournaments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('rank_id', sa.String(), sa.ForeignKey('ranks.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('tournament_id', 'rank_id'),
    )

    # --- tasks ---
    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('title', sa.String(32), nullable=False),
        sa.Column('xp_reward', sa.Integer(), nullable=False),
        sa.Column('max_completions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cooldown_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('category', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('groups', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('players_bypass', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('tournament_id', sa.String(), sa.ForeignKey('tournaments.id', ondelete='CASCADE'), nullable=True),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('xp_reward > 0', name='ck_task_reward'),
        sa.CheckConstraint('max_completions >= 0', name='ck_task_max_completions'),
        sa.CheckConstraint('cooldown_seconds >= 0', name='ck_task_cooldown'),
        sa.CheckConstraint(
            '(category = 0 AND tournament_id IS NOT NULL AND max_completions <= 1) '
            'OR (category <> 0 AND tournament_id IS NULL)',
            name='ck_task_tournament_variant',
        ),
    )
    op.create_index('ix_tasks_category', 'tasks', ['category'])
    op.create_index('ix_tasks_tournament_id', 'tasks', ['tournament_id'])
    op.create_index('ix_tasks_start_time', 'tasks', ['start_time'])
    op.create_index('ix_tasks_end_time', 'tasks', ['end_time'])
    op.create_index('idx_task_window', 'tasks', ['start_time', 'end_time'])

    # --- player_task_progress ---
    op.create_table(
        'player_task_progress',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('player_id', sa.String(), sa.ForeignKey('players.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('completions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_completed', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('player_id', 'task_id', name='uq_progress_player_task'),
        sa.CheckConstraint('completions >= 0', name='ck_progress_completions'),
    )
    op.create_index('ix_player_task_progress_player_id', 'player_task_progress', ['player_id'])
    op.create_index('ix_player_task_progress_task_id', 'player_task_progress', ['task_id'])

    # --- xp_grants ---
    op.create_table(
        'xp_grants',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('player_id', sa.String(), sa.ForeignKey('players.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='SET NULL'), nullable=True),
        sa.Column('completion_number', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('granted_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('player_id', 'task_id', 'completion_number', name='uq_grant_completion'),
    )
    op.create_index('ix_xp_grants_player_id', 'xp_grants', ['player_id'])
    op.create_index('ix_xp_grants_task_id', 'xp_grants', ['task_id'])
    op.create_index('ix_xp_grants_granted_at', 'xp_grants', ['granted_at'])

    # --- audit_logs ---
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('action', sa.Enum(
            'PLAYER_REGISTERED', 'PLAYER_VERIFIED', 'PLAYER_UPDATED', 'PASSWORD_RESET',
            'TASK_COMPLETED', 'TOURNAMENT_TASK_COMPLETED', 'TASK_CREATED', 'TASK_UPDATED',
            'TASK_DELETED', 'RANK_UPDATED', 'RANK_CREATED', 'GROUP_CREATED', 'ANOMALY_DETECTED',
            'TOURNAMENT_JOINED', 'TOURNAMENT_CREATED', 'TOURNAMENT_UPDATED', 'TOURNAMENT_DELETED',
            'LEADERBOARD_CACHE_RESET',
            name='auditaction',
        ), nullable=False),
        sa.Column('player_id', sa.String(), sa.ForeignKey('players.id', ondelete='SET NULL'), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_player_id', 'audit_logs', ['player_id'])
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('xp_grants')
    op.drop_table('player_task_progress')
    op.drop_table('tasks')
    op.drop_table('tournament_ranks')
    op.drop_table('tournament_participants')
    op.drop_table('tournaments')
    op.drop_table('verification_codes')
    op.drop_table('player_groups')
    op.drop_table('players')
    op.drop_table('groups')
    op.drop_table('ranks')
    sa.Enum(name='auditaction').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='codepurpose').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='playerrole').drop(op.get_bind(), checkfirst=True)
