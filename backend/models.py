# models.py — Database models for RankForge
# - String UUID primary keys everywhere
# - 4-tier role system (owner, admin, moderator, user)
# - Rank tiers keyed by minimum XP, group boosters
# - Tasks, tournaments, per-player completion ledger
# - Append-only audit log and XP grant ledger

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum, IntEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer, Float,
    Enum as SQLEnum, ForeignKey, Index, Table, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import declarative_base, relationship, validates
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on the way out; values are normalised back to UTC.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# ============================================================
# ENUMS
# ============================================================

class PlayerRole(str, PyEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MODERATOR = "moderator"
    USER = "user"


STAFF_ROLES = (PlayerRole.MODERATOR, PlayerRole.ADMIN, PlayerRole.OWNER)


class TaskCategory(IntEnum):
    TOURNAMENT = 0
    DAILY = 1
    WEEKLY = 2
    SPECIAL = 3


GLOBAL_GROUP = "global"


class AuditAction(str, PyEnum):
    PLAYER_REGISTERED = "player_registered"
    PLAYER_VERIFIED = "player_verified"
    PLAYER_UPDATED = "player_updated"
    PASSWORD_RESET = "password_reset"
    TASK_COMPLETED = "task_completed"
    TOURNAMENT_TASK_COMPLETED = "tournament_task_completed"
    TASK_CREATED = "task_created"
    TASK_UPDATED = "task_updated"
    TASK_DELETED = "task_deleted"
    RANK_UPDATED = "rank_updated"
    RANK_CREATED = "rank_created"
    GROUP_CREATED = "group_created"
    ANOMALY_DETECTED = "anomaly_detected"
    TOURNAMENT_JOINED = "tournament_joined"
    TOURNAMENT_CREATED = "tournament_created"
    TOURNAMENT_UPDATED = "tournament_updated"
    TOURNAMENT_DELETED = "tournament_deleted"
    LEADERBOARD_CACHE_RESET = "leaderboard_cache_reset"


class CodePurpose(str, PyEnum):
    VERIFY = "verify"
    RESET = "reset"


# ============================================================
# ASSOCIATIONS
# ============================================================

player_groups = Table(
    "player_groups",
    Base.metadata,
    Column("player_id", String, ForeignKey("players.id", ondelete="CASCADE"), primary_key=True),
    Column("group_id", String, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
)

tournament_participants = Table(
    "tournament_participants",
    Base.metadata,
    Column("tournament_id", String, ForeignKey("tournaments.id", ondelete="CASCADE"), primary_key=True),
    Column("player_id", String, ForeignKey("players.id", ondelete="CASCADE"), primary_key=True, index=True),
    Column("joined_at", UTCDateTime, default=utcnow),
)

tournament_ranks = Table(
    "tournament_ranks",
    Base.metadata,
    Column("tournament_id", String, ForeignKey("tournaments.id", ondelete="CASCADE"), primary_key=True),
    Column("rank_id", String, ForeignKey("ranks.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================
# RANKS & GROUPS
# ============================================================

class Rank(Base):
    __tablename__ = "ranks"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String(32), unique=True, nullable=False, index=True)
    min_xp = Column(Integer, unique=True, nullable=False, index=True)
    xp_booster = Column(Float, nullable=False, default=1.0)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("min_xp >= 0", name="ck_rank_min_xp"),
        CheckConstraint("xp_booster >= 1.0", name="ck_rank_booster"),
    )


class Group(Base):
    __tablename__ = "groups"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String(32), unique=True, nullable=False, index=True)
    xp_booster = Column(Float, nullable=False, default=1.0)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("xp_booster >= 1.0", name="ck_group_booster"),
    )


# ============================================================
# PLAYERS
# ============================================================

class Player(Base):
    __tablename__ = "players"

    id = Column(String, primary_key=True, default=new_uuid)
    username = Column(String(15), unique=True, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    verified = Column(Boolean, default=False, nullable=False)
    role = Column(SQLEnum(PlayerRole), default=PlayerRole.USER, nullable=False, index=True)
    rank_id = Column(String, ForeignKey("ranks.id"), nullable=True, index=True)
    total_xp = Column(Integer, default=0, nullable=False, index=True)
    last_updated = Column(UTCDateTime, default=utcnow, nullable=False, index=True)
    created_at = Column(UTCDateTime, default=utcnow)

    # Relationships
    rank = relationship("Rank", lazy="selectin")
    groups = relationship("Group", secondary=player_groups, lazy="selectin")

    __table_args__ = (
        CheckConstraint("total_xp >= 0", name="ck_player_total_xp"),
    )

    @property
    def group_names(self):
        return {g.name for g in self.groups}

    @property
    def is_staff(self) -> bool:
        return PlayerRole(self.role) in STAFF_ROLES


class VerificationCode(Base):
    __tablename__ = "verification_codes"

    id = Column(String, primary_key=True, default=new_uuid)
    player_id = Column(String, ForeignKey("players.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    code = Column(String(5), nullable=False)
    purpose = Column(SQLEnum(CodePurpose), nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)


# ============================================================
# TOURNAMENTS
# ============================================================

class Tournament(Base):
    __tablename__ = "tournaments"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String(64), nullable=False)
    start_time = Column(UTCDateTime, nullable=False, index=True)
    end_time = Column(UTCDateTime, nullable=False, index=True)
    max_participants = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    participants = relationship("Player", secondary=tournament_participants, lazy="selectin")
    eligible_ranks = relationship("Rank", secondary=tournament_ranks, lazy="selectin")

    __table_args__ = (
        CheckConstraint("max_participants >= 1", name="ck_tournament_capacity"),
        CheckConstraint("start_time < end_time", name="ck_tournament_window"),
    )

    def is_active(self, now: datetime) -> bool:
        return self.start_time <= now < self.end_time

    @property
    def participant_ids(self):
        return {p.id for p in self.participants}


# ============================================================
# TASKS
# ============================================================

class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    title = Column(String(32), nullable=False)
    xp_reward = Column(Integer, nullable=False)
    max_completions = Column(Integer, nullable=False, default=0)  # 0 = unlimited
    cooldown_seconds = Column(Integer, nullable=False, default=0)  # 0 = none
    category = Column(Integer, nullable=False, default=int(TaskCategory.DAILY), index=True)
    groups = Column(JSON, nullable=False, default=list)  # group names, "global" = everyone
    players_bypass = Column(JSON, nullable=False, default=list)  # player ids
    tournament_id = Column(String, ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=True, index=True)
    start_time = Column(UTCDateTime, nullable=True, index=True)
    end_time = Column(UTCDateTime, nullable=True, index=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    tournament = relationship("Tournament", lazy="selectin")

    __table_args__ = (
        CheckConstraint("xp_reward > 0", name="ck_task_reward"),
        CheckConstraint("max_completions >= 0", name="ck_task_max_completions"),
        CheckConstraint("cooldown_seconds >= 0", name="ck_task_cooldown"),
        CheckConstraint(
            "(category = 0 AND tournament_id IS NOT NULL AND max_completions <= 1) "
            "OR (category <> 0 AND tournament_id IS NULL)",
            name="ck_task_tournament_variant",
        ),
        Index("idx_task_window", "start_time", "end_time"),
    )

    @validates("category")
    def _validate_category(self, key, value):
        return int(TaskCategory(value))

    @property
    def task_category(self) -> TaskCategory:
        return TaskCategory(self.category)

    @property
    def is_tournament_task(self) -> bool:
        return self.category == TaskCategory.TOURNAMENT

    @property
    def completion_limit(self) -> int:
        """Effective limit: tournament tasks are single-shot."""
        if self.is_tournament_task:
            return 1
        return self.max_completions or 0

    def in_window(self, now: datetime) -> bool:
        if self.start_time is not None and now < self.start_time:
            return False
        if self.end_time is not None and now > self.end_time:
            return False
        return True


class PlayerTaskProgress(Base):
    __tablename__ = "player_task_progress"

    id = Column(String, primary_key=True, default=new_uuid)
    player_id = Column(String, ForeignKey("players.id", ondelete="CASCADE"), nullable=False, index=True)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    completions = Column(Integer, nullable=False, default=0)
    last_completed = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("player_id", "task_id", name="uq_progress_player_task"),
        CheckConstraint("completions >= 0", name="ck_progress_completions"),
    )


class XpGrant(Base):
    """One row per awarded completion; the unique key makes replays inert."""
    __tablename__ = "xp_grants"

    id = Column(String, primary_key=True, default=new_uuid)
    player_id = Column(String, ForeignKey("players.id", ondelete="CASCADE"), nullable=False, index=True)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True)
    completion_number = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    granted_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("player_id", "task_id", "completion_number", name="uq_grant_completion"),
    )


# ============================================================
# AUDIT LOG (append-only)
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    player_id = Column(String, ForeignKey("players.id", ondelete="SET NULL"), nullable=True, index=True)
    details = Column(JSON, nullable=False, default=dict)
    timestamp = Column(UTCDateTime, default=utcnow, nullable=False, index=True)
